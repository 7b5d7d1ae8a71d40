"""Storage-side provisioning: file system, governance policies and export."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from ..models import (
    ExportDescriptor,
    FileSystemHandle,
    PolicyBinding,
    PolicyKind,
    ProvisioningRequest,
)
from ..providers.storage import StorageClient, StorageError
from .steps import Severity, StepRecord, StepStatus, WorkflowState, run_step, skip_step

LOGGER = logging.getLogger(__name__)

STEP_FILE_SYSTEM = "file-system"
STEP_EXPORT = "export-policy"
STEP_QUOTA = "quota-policy"
STEP_SNAPSHOT = "snapshot-policy"
STEP_AUTODIR = "autodir-policy"
STEP_RESOLVE = "export-resolve"

STEP_SEVERITY: Mapping[str, Severity] = {
    STEP_FILE_SYSTEM: Severity.FATAL,
    STEP_EXPORT: Severity.FATAL,
    STEP_QUOTA: Severity.DEGRADED,
    STEP_SNAPSHOT: Severity.DEGRADED,
    STEP_AUTODIR: Severity.DEGRADED,
    STEP_RESOLVE: Severity.FATAL,
}

_POLICY_STEPS: Mapping[str, PolicyKind] = {
    STEP_EXPORT: PolicyKind.EXPORT,
    STEP_QUOTA: PolicyKind.QUOTA,
    STEP_SNAPSHOT: PolicyKind.SNAPSHOT,
    STEP_AUTODIR: PolicyKind.AUTODIR,
}


@dataclass(slots=True, frozen=True)
class ProvisioningOptions:
    """Export rule defaults applied to every request."""

    client_pattern: str = "*"
    access: str = "no-root-squash"
    permission: str = "rw"


@dataclass(slots=True, frozen=True)
class ProvisioningOutcome:
    """What the storage side produced for a request."""

    request: ProvisioningRequest
    file_system: FileSystemHandle | None
    export: ExportDescriptor | None
    bindings: tuple[PolicyBinding, ...]
    records: tuple[StepRecord, ...]
    fatal_step: str | None = None

    @property
    def fatal(self) -> bool:
        """Return ``True`` when attachment cannot proceed."""
        return self.fatal_step is not None

    @property
    def bound_policies(self) -> tuple[PolicyKind, ...]:
        """Return the policy kinds that were actually bound."""
        return tuple(binding.kind for binding in self.bindings)

    @property
    def degraded_policies(self) -> tuple[PolicyKind, ...]:
        """Return the optional policies that failed without aborting the run."""
        return tuple(
            _POLICY_STEPS[record.name]
            for record in self.records
            if record.status is StepStatus.WARNING and record.name in _POLICY_STEPS
        )


def policy_name(request: ProvisioningRequest, kind: PolicyKind) -> str:
    """Return the policy name derived from the request name."""
    return f"{request.name}-{kind.value}"


def _call_sequence(calls: Sequence[tuple[str, Callable[[], object]]]) -> None:
    for label, call in calls:
        try:
            call()
        except StorageError as exc:
            raise StorageError(exc.kind, f"{label}: {exc.message}") from exc


class ProvisioningWorkflow:
    """Linear storage workflow with optional quota and snapshot branches."""

    def __init__(self, storage: StorageClient, options: ProvisioningOptions | None = None) -> None:
        """Store the storage client and export defaults."""
        self._storage = storage
        self._options = options or ProvisioningOptions()

    def run(self, request: ProvisioningRequest) -> ProvisioningOutcome:
        """Provision *request*; stop at the first fatal step."""
        state = WorkflowState()
        for name, action, skip_reason in self._plan(request):
            if skip_reason is not None:
                state, _ = skip_step(state, name, skip_reason)
                continue
            state, result = run_step(state, name, action, STEP_SEVERITY)
            if result.is_fatal:
                LOGGER.error(
                    "provisioning of %s aborted at %s: %s", request.name, name, result.error
                )
                return self._outcome(request, state, fatal_step=name)
            if result.status is StepStatus.WARNING:
                LOGGER.warning("%s degraded for %s: %s", name, request.name, result.error)
        return self._outcome(request, state)

    # ------------------------------------------------------------------
    def _plan(
        self,
        request: ProvisioningRequest,
    ) -> list[tuple[str, Callable[[WorkflowState], object], str | None]]:
        quota_skip = None if request.quota_enabled else "quota disabled"
        snapshot_skip = None if request.snapshot_enabled else "snapshot disabled"
        return [
            (STEP_FILE_SYSTEM, lambda _state: self._create_file_system(request), None),
            (STEP_EXPORT, lambda state: self._bind_export(request, state), None),
            (STEP_QUOTA, lambda state: self._bind_quota(request, state), quota_skip),
            (STEP_SNAPSHOT, lambda state: self._bind_snapshot(request, state), snapshot_skip),
            (STEP_AUTODIR, lambda state: self._bind_autodir(request, state), None),
            (STEP_RESOLVE, lambda state: self._resolve_export(request, state), None),
        ]

    def _resolve_export(
        self, request: ProvisioningRequest, state: WorkflowState
    ) -> ExportDescriptor:
        return self._storage.resolve_export(_directory(state), request.protocol)

    def _create_file_system(self, request: ProvisioningRequest) -> FileSystemHandle:
        handle = self._storage.create_file_system(request.name)
        if not handle.managed_directory:
            directory = self._storage.get_managed_directory(request.name)
            handle = FileSystemHandle(name=handle.name, managed_directory=directory)
        return handle

    def _bind_export(self, request: ProvisioningRequest, state: WorkflowState) -> PolicyBinding:
        directory = _directory(state)
        name = policy_name(request, PolicyKind.EXPORT)
        options = self._options
        _call_sequence(
            (
                ("create export policy", lambda: self._storage.create_export_policy(name)),
                (
                    "add export rule",
                    lambda: self._storage.add_export_rule(
                        name,
                        options.client_pattern,
                        options.access,
                        options.permission,
                        request.protocol,
                    ),
                ),
                (
                    "bind export policy",
                    lambda: self._storage.bind_export_policy(directory, name, request.name),
                ),
            )
        )
        return PolicyBinding(PolicyKind.EXPORT, name, directory)

    def _bind_quota(self, request: ProvisioningRequest, state: WorkflowState) -> PolicyBinding:
        directory = _directory(state)
        name = policy_name(request, PolicyKind.QUOTA)
        limit = request.limit_bytes
        _call_sequence(
            (
                ("create quota policy", lambda: self._storage.create_quota_policy(name)),
                ("add quota rule", lambda: self._storage.add_quota_rule(name, limit)),
                ("bind quota policy", lambda: self._storage.bind_quota_policy(directory, name)),
            )
        )
        return PolicyBinding(PolicyKind.QUOTA, name, directory)

    def _bind_snapshot(self, request: ProvisioningRequest, state: WorkflowState) -> PolicyBinding:
        directory = _directory(state)
        name = policy_name(request, PolicyKind.SNAPSHOT)
        _call_sequence(
            (
                ("create snapshot policy", lambda: self._storage.create_snapshot_policy(name)),
                (
                    "add snapshot rule",
                    lambda: self._storage.add_snapshot_rule(
                        name,
                        request.snapshot_client_label,
                        request.interval_ms,
                        request.retention_ms,
                    ),
                ),
                (
                    "bind snapshot policy",
                    lambda: self._storage.bind_snapshot_policy(directory, name),
                ),
            )
        )
        return PolicyBinding(PolicyKind.SNAPSHOT, name, directory)

    def _bind_autodir(self, request: ProvisioningRequest, state: WorkflowState) -> PolicyBinding:
        directory = _directory(state)
        name = policy_name(request, PolicyKind.AUTODIR)
        _call_sequence(
            (
                ("create autodir policy", lambda: self._storage.create_autodir_policy(name)),
                ("bind autodir policy", lambda: self._storage.bind_autodir_policy(directory, name)),
            )
        )
        return PolicyBinding(PolicyKind.AUTODIR, name, directory)

    def _outcome(
        self,
        request: ProvisioningRequest,
        state: WorkflowState,
        *,
        fatal_step: str | None = None,
    ) -> ProvisioningOutcome:
        handle = state.get(STEP_FILE_SYSTEM)
        export = state.get(STEP_RESOLVE)
        bindings = tuple(
            value
            for value in (state.get(step) for step in _POLICY_STEPS)
            if isinstance(value, PolicyBinding)
        )
        return ProvisioningOutcome(
            request=request,
            file_system=handle if isinstance(handle, FileSystemHandle) else None,
            export=export if isinstance(export, ExportDescriptor) else None,
            bindings=bindings,
            records=state.records,
            fatal_step=fatal_step,
        )


def _directory(state: WorkflowState) -> str:
    handle = state.get(STEP_FILE_SYSTEM)
    if not isinstance(handle, FileSystemHandle):  # pragma: no cover - guarded by step order
        raise RuntimeError("file system step has not completed")
    return handle.managed_directory


__all__ = [
    "STEP_SEVERITY",
    "ProvisioningOptions",
    "ProvisioningOutcome",
    "ProvisioningWorkflow",
    "policy_name",
]
