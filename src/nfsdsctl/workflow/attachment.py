"""Compute-side fan-out: mount the export on every host of a cluster."""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from enum import Enum

from ..models import (
    ClusterTarget,
    DiagnosticKind,
    DiagnosticResult,
    DiagnosticStatus,
    ErrorKind,
    ExportDescriptor,
    HostHandle,
    MountOutcome,
    MountReport,
    MountStatus,
    RunStatus,
)
from ..providers.compute import ComputeClient, ComputeError
from .executor import run_bounded
from .steps import StepRecord, StepStatus

LOGGER = logging.getLogger(__name__)

DIAGNOSTIC_KINDS: tuple[DiagnosticKind, ...] = (
    DiagnosticKind.PLATFORM_VERSION,
    DiagnosticKind.FIREWALL,
    DiagnosticKind.REACHABILITY,
    DiagnosticKind.ADAPTERS,
    DiagnosticKind.MOUNTS,
)


class VerifyPolicy(str, Enum):
    """When to confirm a mount after the settle delay."""

    ALWAYS = "always"
    MULTI_SESSION = "multi-session"
    NEVER = "never"


@dataclass(slots=True, frozen=True)
class AttachmentOptions:
    """Runtime tunables for the attachment fan-out."""

    max_concurrency: int = 16
    settle_delay: float = 5.0
    verify_after_mount: VerifyPolicy = VerifyPolicy.ALWAYS
    diagnostics: bool = True
    parallel_sessions: int = 4
    single_session_fallback: bool = False


@dataclass(slots=True, frozen=True)
class MountStrategy:
    """One way of mounting; tried only after a failure listed in ``applies_after``."""

    name: str
    parallel_sessions: int
    applies_after: frozenset[ErrorKind] = frozenset()


@dataclass(slots=True, frozen=True)
class AttachmentOutcome:
    """Cluster resolution, advisory diagnostics and per-host mount results."""

    cluster: ClusterTarget | None
    report: MountReport | None
    diagnostics: tuple[DiagnosticResult, ...]
    records: tuple[StepRecord, ...]
    error: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def status(self) -> RunStatus:
        """Return the attachment status derived from the mount report."""
        if self.report is None:
            return RunStatus.FAILED
        return self.report.status


def mount_strategies(
    export: ExportDescriptor,
    options: AttachmentOptions,
) -> tuple[MountStrategy, ...]:
    """Return the ordered mount strategies for *export*."""
    sessions = options.parallel_sessions if export.protocol.multi_session else 1
    strategies = [MountStrategy(name="requested", parallel_sessions=max(1, sessions))]
    if options.single_session_fallback and sessions > 1:
        strategies.append(
            MountStrategy(
                name="single-session",
                parallel_sessions=1,
                applies_after=frozenset({ErrorKind.VERSION_UNSUPPORTED}),
            )
        )
    return tuple(strategies)


class AttachmentWorkflow:
    """Resolve a cluster and mount the export on each host concurrently."""

    def __init__(
        self,
        compute: ComputeClient,
        options: AttachmentOptions | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Store the compute client, options and the settle-delay sleeper."""
        self._compute = compute
        self._options = options or AttachmentOptions()
        self._sleep = sleep

    @property
    def options(self) -> AttachmentOptions:
        """Return the options for this workflow."""
        return self._options

    def run(
        self,
        cluster_name: str,
        export: ExportDescriptor,
        datastore_name: str,
    ) -> AttachmentOutcome:
        """Attach *export* as *datastore_name* on every host of *cluster_name*."""
        if not export.server_address:
            raise ValueError("Export descriptor has no server address.")

        records: list[StepRecord] = []
        try:
            cluster = self._compute.resolve_cluster(cluster_name)
        except ComputeError as exc:
            records.append(
                StepRecord("cluster-resolve", StepStatus.FATAL, exc.message, exc.kind)
            )
            return AttachmentOutcome(None, None, (), tuple(records), exc.message, exc.kind)

        if not cluster.hosts:
            message = f"Cluster '{cluster_name}' has no hosts."
            records.append(
                StepRecord("cluster-resolve", StepStatus.FATAL, message, ErrorKind.NOT_FOUND)
            )
            return AttachmentOutcome(
                cluster, None, (), tuple(records), message, ErrorKind.NOT_FOUND
            )
        records.append(
            StepRecord("cluster-resolve", StepStatus.OK, f"{len(cluster.hosts)} host(s)")
        )

        diagnostics: tuple[DiagnosticResult, ...] = ()
        if export.protocol.multi_session and self._options.diagnostics:
            diagnostics = self.diagnose(cluster.hosts[0], export, datastore_name)
            warned = sum(1 for result in diagnostics if result.status is not DiagnosticStatus.PASS)
            records.append(
                StepRecord(
                    "diagnostics",
                    StepStatus.WARNING if warned else StepStatus.OK,
                    f"{len(diagnostics)} check(s), {warned} advisory",
                )
            )
        else:
            records.append(StepRecord("diagnostics", StepStatus.SKIPPED, "not requested"))

        strategies = mount_strategies(export, self._options)
        outcomes = run_bounded(
            lambda host: self._mount_host(host, export, datastore_name, strategies),
            cluster.hosts,
            self._options.max_concurrency,
        )
        for outcome in outcomes:
            records.append(
                StepRecord(
                    f"mount:{outcome.host.name}",
                    StepStatus.OK if outcome.mounted else StepStatus.WARNING,
                    outcome.error,
                    outcome.error_kind,
                )
            )
        report = MountReport(outcomes=tuple(outcomes))
        LOGGER.info(
            "mounted %s on %d/%d host(s) of %s",
            datastore_name,
            report.mounted,
            report.total,
            cluster_name,
        )
        return AttachmentOutcome(cluster, report, diagnostics, tuple(records))

    def diagnose(
        self,
        host: HostHandle,
        export: ExportDescriptor,
        datastore_name: str,
    ) -> tuple[DiagnosticResult, ...]:
        """Run every advisory diagnostic against *host*; never raises."""
        params = {
            "protocol": export.protocol.value,
            "server_address": export.server_address,
            "parallel_sessions": self._options.parallel_sessions,
            "datastore_name": datastore_name,
        }

        def _run(kind: DiagnosticKind) -> DiagnosticResult:
            try:
                return self._compute.run_diagnostic(host, kind, params)
            except ComputeError as exc:
                return DiagnosticResult(kind, host.name, DiagnosticStatus.FAIL, exc.message)
            except Exception as exc:  # pragma: no cover - advisory only
                LOGGER.debug("diagnostic %s raised: %s", kind.value, traceback.format_exc())
                return DiagnosticResult(
                    kind,
                    host.name,
                    DiagnosticStatus.FAIL,
                    f"Diagnostic raised an unexpected error: {exc}",
                )

        return tuple(run_bounded(_run, DIAGNOSTIC_KINDS, self._options.max_concurrency))

    # ------------------------------------------------------------------
    def _mount_host(
        self,
        host: HostHandle,
        export: ExportDescriptor,
        datastore_name: str,
        strategies: Sequence[MountStrategy],
    ) -> MountOutcome:
        try:
            return self._mount_with_fallbacks(host, export, datastore_name, strategies)
        except Exception as exc:
            LOGGER.debug("mount on %s raised: %s", host.name, traceback.format_exc())
            return _failed(
                host, f"Mount raised an unexpected error: {exc}", None, strategies[0].name
            )

    def _mount_with_fallbacks(
        self,
        host: HostHandle,
        export: ExportDescriptor,
        datastore_name: str,
        strategies: Sequence[MountStrategy],
    ) -> MountOutcome:
        first, *fallbacks = strategies
        attempts = [first.name]
        outcome = self._attempt(host, export, datastore_name, first)
        for strategy in fallbacks:
            if outcome.mounted or outcome.error_kind not in strategy.applies_after:
                break
            LOGGER.warning(
                "mount on %s failed (%s); trying %s", host.name, outcome.error, strategy.name
            )
            attempts.append(strategy.name)
            outcome = self._attempt(host, export, datastore_name, strategy)
        return replace(outcome, attempts=tuple(attempts))

    def _attempt(
        self,
        host: HostHandle,
        export: ExportDescriptor,
        datastore_name: str,
        strategy: MountStrategy,
    ) -> MountOutcome:
        try:
            outcome = self._compute.mount_export(
                host,
                datastore_name,
                export.path,
                export.server_address or "",
                export.protocol,
                strategy.parallel_sessions,
            )
        except ComputeError as exc:
            return _failed(host, exc.message, exc.kind, strategy.name)
        except Exception as exc:
            return _failed(host, f"Mount raised an unexpected error: {exc}", None, strategy.name)

        if not outcome.mounted:
            return replace(outcome, host=host, strategy=strategy.name)
        if not self._should_verify(export):
            return replace(outcome, host=host, strategy=strategy.name)

        self._sleep(self._options.settle_delay)
        try:
            info = self._compute.verify_datastore(host, datastore_name)
        except ComputeError as exc:
            return _failed(host, exc.message, exc.kind, strategy.name)
        except Exception as exc:
            message = f"Verification raised an unexpected error: {exc}"
            return _failed(host, message, None, strategy.name)
        if info is None:
            return _failed(
                host,
                f"Datastore {datastore_name} not present after "
                f"{self._options.settle_delay:g}s settle delay.",
                ErrorKind.NOT_FOUND,
                strategy.name,
            )
        return MountOutcome(
            host=host,
            status=MountStatus.MOUNTED,
            capacity_bytes=info.capacity_bytes,
            free_bytes=info.free_bytes,
            strategy=strategy.name,
        )

    def _should_verify(self, export: ExportDescriptor) -> bool:
        policy = self._options.verify_after_mount
        if policy is VerifyPolicy.ALWAYS:
            return True
        if policy is VerifyPolicy.MULTI_SESSION:
            return export.protocol.multi_session
        return False


def _failed(
    host: HostHandle,
    message: str,
    kind: ErrorKind | None,
    strategy: str,
) -> MountOutcome:
    return MountOutcome(
        host=host,
        status=MountStatus.FAILED,
        error=message,
        error_kind=kind,
        strategy=strategy,
    )


__all__ = [
    "DIAGNOSTIC_KINDS",
    "AttachmentOptions",
    "AttachmentOutcome",
    "AttachmentWorkflow",
    "MountStrategy",
    "VerifyPolicy",
    "mount_strategies",
]
