"""Command-line interface for nfsdsctl.

The CLI wires configuration, the structured operations log and the remote
clients together, runs the workflows, and renders their results with Rich.
"""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .models import (
    DiagnosticStatus,
    ExportDescriptor,
    HostHandle,
    MountStatus,
    ProtocolVersion,
    ProvisioningRequest,
    RunStatus,
)
from .providers import (
    ComputeClient,
    ComputeError,
    RestStorageClient,
    StorageClient,
    StorageError,
    VSphereComputeClient,
)
from .utils import serialize_diagnostic, serialize_run_result
from .workflow import (
    AttachmentOptions,
    AttachmentWorkflow,
    ProvisioningOptions,
    RunCoordinator,
    RunResult,
    VerifyPolicy,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to an alternate config.yml.",
    dir_okay=False,
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON output.")
CLUSTER_OPTION = typer.Option(..., "--cluster", help="Compute cluster to attach to.")

_RUN_STATUS_STYLE = {
    RunStatus.SUCCESS: "[green]SUCCESS[/green]",
    RunStatus.PARTIAL_SUCCESS: "[yellow]PARTIAL[/yellow]",
    RunStatus.FAILED: "[red]FAILED[/red]",
}
_MOUNT_STATUS_STYLE = {
    MountStatus.MOUNTED: "[green]MOUNTED[/green]",
    MountStatus.FAILED: "[red]FAILED[/red]",
}
_DIAGNOSTIC_STYLE = {
    DiagnosticStatus.PASS: "[green]PASS[/green]",
    DiagnosticStatus.WARN: "[yellow]WARN[/yellow]",
    DiagnosticStatus.FAIL: "[red]FAIL[/red]",
    DiagnosticStatus.SKIP: "[dim]SKIP[/dim]",
}
_STEP_STATUS_LOG = {
    "ok": "success",
    "warning": "warning",
    "fatal": "error",
    "skipped": "skipped",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        NFS datastore provisioning CLI.

        Creates a file system on the storage array, applies export, quota,
        snapshot and auto-directory policies, and mounts the export on every
        host of a compute cluster.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect nfsdsctl configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Objects shared by every command invocation."""

    config: AppConfig
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION.value) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the nfsdsctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"nfsdsctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION.value,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _build_storage_client(config: AppConfig) -> StorageClient:
    storage = config.storage
    if not storage.endpoint or not storage.api_token:
        raise ConfigError("storage.endpoint and storage.api_token must be configured.")
    return RestStorageClient(
        endpoint=storage.endpoint,
        api_token=storage.api_token,
        api_version=storage.api_version,
        verify_tls=storage.verify_tls,
        timeout=storage.timeout,
    )


def _build_compute_client(config: AppConfig) -> ComputeClient:
    compute = config.compute
    if not compute.endpoint or not compute.username or compute.password is None:
        raise ConfigError(
            "compute.endpoint, compute.username and compute.password must be configured."
        )
    return VSphereComputeClient(
        endpoint=compute.endpoint,
        username=compute.username,
        password=compute.password,
        port=compute.port,
        verify_tls=compute.verify_tls,
        timeout=compute.timeout,
    )


def _with_endpoints(
    config: AppConfig,
    storage_endpoint: str | None,
    compute_endpoint: str | None,
) -> AppConfig:
    if storage_endpoint:
        config = replace(config, storage=replace(config.storage, endpoint=storage_endpoint))
    if compute_endpoint:
        config = replace(config, compute=replace(config.compute, endpoint=compute_endpoint))
    return config


def _close_client(client: object) -> None:
    close = getattr(client, "close", None)
    if callable(close):
        close()


def _attachment_options(
    config: AppConfig,
    *,
    max_concurrency: int | None = None,
    settle_delay: float | None = None,
    verify_after_mount: str | None = None,
    diagnostics: bool | None = None,
    parallel_sessions: int | None = None,
) -> AttachmentOptions:
    attach = config.attach
    return AttachmentOptions(
        max_concurrency=max_concurrency or attach.max_concurrency,
        settle_delay=attach.settle_delay if settle_delay is None else settle_delay,
        verify_after_mount=VerifyPolicy(verify_after_mount or attach.verify_after_mount),
        diagnostics=attach.diagnostics if diagnostics is None else diagnostics,
        parallel_sessions=parallel_sessions or attach.parallel_sessions,
        single_session_fallback=attach.single_session_fallback,
    )


def _record_steps(op: OperationScope, result: RunResult) -> None:
    for record in result.provisioning.records:
        op.add_step(
            f"storage.{record.name}",
            status=_STEP_STATUS_LOG[record.status.value],
            detail=record.detail,
        )
    if result.attachment is None:
        return
    for record in result.attachment.records:
        op.add_step(
            f"compute.{record.name}",
            status=_STEP_STATUS_LOG[record.status.value],
            detail=record.detail,
        )


def _render_run_result(result: RunResult) -> None:
    """Render a run result as a textual summary."""
    console.print(
        f"Run summary for [bold]{result.request.name}[/bold]: "
        f"{_RUN_STATUS_STYLE[result.status]}"
    )
    for record in result.provisioning.records:
        line = f"  {record.name}: {record.status.value}"
        if record.detail:
            line += f" ({record.detail})"
        console.print(line)

    if result.export is not None:
        export = result.export
        console.print(
            f"Export: {export.server_address}:{export.path} ({export.protocol.value})"
        )
    if result.degraded_policies:
        joined = ", ".join(kind.value for kind in result.degraded_policies)
        console.print(f"[yellow]Degraded governance policies: {joined}[/yellow]")

    for diagnostic in result.diagnostics:
        console.print(
            f"{_DIAGNOSTIC_STYLE[diagnostic.status]} [{diagnostic.kind.value}] "
            f"{diagnostic.host}: {diagnostic.message}"
        )

    if result.attachment is not None and result.attachment.error:
        console.print(f"[red]Attachment aborted: {result.attachment.error}[/red]")

    report = result.mount_report
    if report is None:
        return
    table = Table(title="Datastore mounts")
    table.add_column("Host")
    table.add_column("Version")
    table.add_column("Status")
    table.add_column("Capacity")
    table.add_column("Detail")
    for outcome in report.outcomes:
        capacity = ""
        if outcome.capacity_bytes is not None:
            capacity = f"{outcome.capacity_bytes / 1024**3:.1f} GiB"
        table.add_row(
            outcome.host.name,
            outcome.host.version,
            _MOUNT_STATUS_STYLE[outcome.status],
            capacity,
            outcome.error or "",
        )
    console.print(table)
    console.print(
        f"Hosts: mounted={report.mounted} failed={report.failed} total={report.total}"
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def provision(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name shared by the file system, export and policies."),
    cluster: str = CLUSTER_OPTION,
    capacity: str | None = typer.Option(
        None, "--capacity", help="Quota limit such as 10T (required with --quota)."
    ),
    protocol: str = typer.Option("v3", "--protocol", help="NFS protocol: v3 or v4.1."),
    quota: bool = typer.Option(False, "--quota/--no-quota", help="Apply a quota policy."),
    snapshot: bool = typer.Option(
        False, "--snapshot/--no-snapshot", help="Apply a snapshot policy."
    ),
    snapshot_interval: str | None = typer.Option(
        None, "--snapshot-interval", help="Snapshot cadence, e.g. 1h or 1d."
    ),
    snapshot_retention: str | None = typer.Option(
        None, "--snapshot-retention", help="How long snapshots are kept, e.g. 7d."
    ),
    snapshot_label: str | None = typer.Option(
        None, "--snapshot-label", help="Client label recorded on snapshots."
    ),
    datastore: str | None = typer.Option(
        None, "--datastore", help="Datastore name on the hosts (defaults to NAME)."
    ),
    storage_endpoint: str | None = typer.Option(
        None, "--storage-endpoint", help="Override storage.endpoint for this run."
    ),
    compute_endpoint: str | None = typer.Option(
        None, "--compute-endpoint", help="Override compute.endpoint for this run."
    ),
    max_concurrency: int | None = typer.Option(
        None, "--max-concurrency", min=1, help="Upper bound on parallel host mounts."
    ),
    settle_delay: float | None = typer.Option(
        None, "--settle-delay", min=0.0, help="Seconds to wait before verifying a mount."
    ),
    verify_after_mount: str | None = typer.Option(
        None,
        "--verify-after-mount",
        help="When to verify mounts: always, multi-session or never.",
    ),
    parallel_sessions: int | None = typer.Option(
        None, "--parallel-sessions", min=1, help="Sessions per mount for v4.1."
    ),
    diagnostics: bool | None = typer.Option(
        None, "--diagnostics/--no-diagnostics", help="Run advisory pre-flight checks."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision a file system and mount it on every host of a cluster."""
    runtime = _get_runtime(ctx)
    config = _with_endpoints(runtime.config, storage_endpoint, compute_endpoint)
    with runtime.logger.operation(
        "provision",
        args={
            "name": name,
            "cluster": cluster,
            "capacity": capacity,
            "protocol": protocol,
            "quota": quota,
            "snapshot": snapshot,
            "json": json_output,
        },
        target={"kind": "datastore", "name": datastore or name, "cluster": cluster},
    ) as op:
        try:
            request = ProvisioningRequest(
                name=name,
                capacity=capacity,
                protocol=ProtocolVersion.parse(protocol),
                quota_enabled=quota,
                snapshot_enabled=snapshot,
                snapshot_interval=snapshot_interval or config.snapshot.interval,
                snapshot_retention=snapshot_retention or config.snapshot.retention,
                snapshot_client_label=snapshot_label or config.snapshot.client_label,
            )
            request.validate()
            options = _attachment_options(
                config,
                max_concurrency=max_concurrency,
                settle_delay=settle_delay,
                verify_after_mount=verify_after_mount,
                diagnostics=diagnostics,
                parallel_sessions=parallel_sessions,
            )
            storage = _build_storage_client(config)
            compute = _build_compute_client(config)
        except (ValueError, ConfigError) as exc:
            _command_error(op, str(exc))

        server_address = config.server_address
        if not server_address:
            _command_error(op, "Unable to determine the NFS server address.")

        coordinator = RunCoordinator(
            storage,
            compute,
            server_address=server_address,
            provisioning_options=ProvisioningOptions(
                client_pattern=config.export.client_pattern,
                access=config.export.access,
                permission=config.export.permission,
            ),
            attachment_options=options,
        )
        try:
            result = coordinator.run(request, cluster, datastore_name=datastore)
        finally:
            _close_client(compute)

        _record_steps(op, result)
        payload = serialize_run_result(result)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_run_result(result)

        log_context = {"result": payload}
        if result.exit_code != ExitCode.OK.value:
            op.error(
                f"Provisioning {request.name} failed.",
                rc=result.exit_code,
                context=log_context,
            )
            raise typer.Exit(code=result.exit_code)
        if result.status is RunStatus.SUCCESS and not result.degraded_policies:
            op.success(f"Provisioned {request.name} on {cluster}.", changed=1, context=log_context)
            return
        warnings = [f"degraded:{kind.value}" for kind in result.degraded_policies]
        report = result.mount_report
        if report is not None and report.failed:
            warnings.extend(
                f"mount-failed:{outcome.host.name}"
                for outcome in report.outcomes
                if not outcome.mounted
            )
        op.warning(
            f"Provisioned {request.name} on {cluster} with warnings.",
            warnings=warnings,
            changed=1,
            context=log_context,
        )


@app.command()
def discover(
    ctx: typer.Context,
    cluster: str = CLUSTER_OPTION,
    protocol: str = typer.Option("v4.1", "--protocol", help="Protocol to check readiness for."),
    datastore: str | None = typer.Option(
        None, "--datastore", help="Datastore name to look for among existing mounts."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List cluster hosts and run advisory diagnostics on the first one."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "discover",
        args={"cluster": cluster, "protocol": protocol, "json": json_output},
        target={"kind": "cluster", "name": cluster},
    ) as op:
        try:
            protocol_version = ProtocolVersion.parse(protocol)
            compute = _build_compute_client(config)
        except (ValueError, ConfigError) as exc:
            _command_error(op, str(exc))

        server_address = config.server_address or ""
        try:
            target = compute.resolve_cluster(cluster)
            hosts: tuple[HostHandle, ...] = target.hosts
            if not hosts:
                _command_error(op, f"Cluster '{cluster}' has no hosts.", rc=ExitCode.FAILED.value)
            probe_export = ExportDescriptor(
                path="/",
                export_name=datastore or "",
                protocol=protocol_version,
                server_address=server_address,
            )
            workflow = AttachmentWorkflow(compute, _attachment_options(config))
            results = workflow.diagnose(hosts[0], probe_export, datastore or "")
        except ComputeError as exc:
            _command_error(op, str(exc), rc=ExitCode.FAILED.value)
        finally:
            _close_client(compute)

        host_payload = [
            {"name": host.name, "version": host.version, "build": host.build}
            for host in hosts
        ]
        payload = {
            "cluster": cluster,
            "hosts": host_payload,
            "diagnostics": [serialize_diagnostic(item) for item in results],
        }
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(title=f"Cluster {cluster}")
            table.add_column("Host")
            table.add_column("Version")
            table.add_column("Build")
            for host in hosts:
                table.add_row(host.name, host.version, host.build)
            console.print(table)
            for item in results:
                console.print(
                    f"{_DIAGNOSTIC_STYLE[item.status]} [{item.kind.value}] "
                    f"{item.host}: {item.message}"
                )
        op.success(f"Discovered {len(hosts)} host(s) in {cluster}.", context=payload)


@app.command()
def destroy(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="File system to remove."),
    eradicate: bool = typer.Option(
        False, "--eradicate", help="Eradicate instead of leaving it recoverable."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not prompt for confirmation."),
) -> None:
    """Remove a provisioned file system from the storage array."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "destroy",
        args={"name": name, "eradicate": eradicate, "yes": yes},
        target={"kind": "file-system", "name": name},
    ) as op:
        if not yes and not typer.confirm(f"Remove file system {name}?", default=False):
            op.add_step("confirm", status="skipped", detail="declined")
            console.print("Aborted.")
            op.success("Destroy declined.", changed=0)
            return
        try:
            storage = _build_storage_client(runtime.config)
        except ConfigError as exc:
            _command_error(op, str(exc))
        try:
            storage.remove_file_system(name, eradicate)
        except StorageError as exc:
            _command_error(op, str(exc), rc=ExitCode.FAILED.value)
        action = "Eradicated" if eradicate else "Destroyed"
        console.print(f"{action} file system {name}.")
        op.success(f"{action} file system {name}.", changed=1)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Print the resolved configuration with secrets redacted."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        payload = runtime.config.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"nfsdsctl {__version__}")
            for section, value in payload.items():
                console.print(f"[bold]{section}[/bold]: {value}")
        op.context["nfsdsctl_version"] = __version__
        op.success("Rendered configuration.", changed=0)


__all__ = ["app", "config_app"]
