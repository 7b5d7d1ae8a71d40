"""Tests for the storage-side provisioning workflow."""
from __future__ import annotations

from nfsdsctl.models import ErrorKind, PolicyKind, ProtocolVersion, ProvisioningRequest
from nfsdsctl.providers.storage import StorageError
from nfsdsctl.workflow.provisioning import (
    STEP_AUTODIR,
    STEP_EXPORT,
    STEP_FILE_SYSTEM,
    STEP_QUOTA,
    STEP_RESOLVE,
    STEP_SNAPSHOT,
    ProvisioningOptions,
    ProvisioningOutcome,
    ProvisioningWorkflow,
    policy_name,
)
from nfsdsctl.workflow.steps import StepStatus
from tests.fakes import FakeStorageClient

QUOTA_CALLS = {"create_quota_policy", "add_quota_rule", "bind_quota_policy"}
SNAPSHOT_CALLS = {"create_snapshot_policy", "add_snapshot_rule", "bind_snapshot_policy"}


def _statuses(outcome: ProvisioningOutcome) -> dict[str, StepStatus]:
    return {record.name: record.status for record in outcome.records}


def test_minimal_request_runs_mandatory_steps_in_order() -> None:
    """Without quota or snapshot the workflow creates, exports, autodirs, resolves."""
    storage = FakeStorageClient()

    outcome = ProvisioningWorkflow(storage).run(ProvisioningRequest(name="ds01"))

    assert storage.names() == [
        "create_file_system",
        "create_export_policy",
        "add_export_rule",
        "bind_export_policy",
        "create_autodir_policy",
        "bind_autodir_policy",
        "resolve_export",
    ]
    assert outcome.fatal is False
    assert outcome.export is not None
    assert outcome.export.path == "/ds01"
    assert outcome.bound_policies == (PolicyKind.EXPORT, PolicyKind.AUTODIR)
    statuses = _statuses(outcome)
    assert statuses[STEP_QUOTA] is StepStatus.SKIPPED
    assert statuses[STEP_SNAPSHOT] is StepStatus.SKIPPED
    assert SNAPSHOT_CALLS.isdisjoint(storage.names())


def test_quota_disabled_issues_no_quota_calls() -> None:
    """Disabled quota never reaches the storage client."""
    storage = FakeStorageClient()

    ProvisioningWorkflow(storage).run(ProvisioningRequest(name="ds01", capacity="10T"))

    assert QUOTA_CALLS.isdisjoint(storage.names())


def test_full_request_binds_every_policy_to_managed_directory() -> None:
    """Every policy is derived from the request name and bound to the root directory."""
    storage = FakeStorageClient()
    request = ProvisioningRequest(
        name="ds01",
        capacity="10T",
        protocol=ProtocolVersion.V41,
        quota_enabled=True,
        snapshot_enabled=True,
        snapshot_interval="1h",
        snapshot_retention="2d",
        snapshot_client_label="nightly",
    )

    outcome = ProvisioningWorkflow(storage).run(request)

    assert outcome.bound_policies == (
        PolicyKind.EXPORT,
        PolicyKind.QUOTA,
        PolicyKind.SNAPSHOT,
        PolicyKind.AUTODIR,
    )
    assert all(binding.directory == "ds01:root" for binding in outcome.bindings)
    assert ("add_quota_rule", ("ds01-quota", 10 * 1024**4)) in storage.calls
    assert (
        "add_snapshot_rule",
        ("ds01-snapshot", "nightly", 3_600_000, 172_800_000),
    ) in storage.calls
    assert outcome.export is not None
    assert outcome.export.protocol is ProtocolVersion.V41


def test_export_rule_uses_options_and_request_protocol() -> None:
    """The client rule carries the configured defaults and the requested protocol."""
    storage = FakeStorageClient()
    options = ProvisioningOptions(client_pattern="10.0.0.0/24", access="root-squash")

    ProvisioningWorkflow(storage, options).run(
        ProvisioningRequest(name="ds01", protocol=ProtocolVersion.V41)
    )

    assert (
        "add_export_rule",
        ("ds01-export", "10.0.0.0/24", "root-squash", "rw", ProtocolVersion.V41),
    ) in storage.calls
    assert ("bind_export_policy", ("ds01:root", "ds01-export", "ds01")) in storage.calls


def test_create_file_system_called_once() -> None:
    """The file system is created exactly once per run."""
    storage = FakeStorageClient()

    ProvisioningWorkflow(storage).run(
        ProvisioningRequest(name="ds01", capacity="1T", quota_enabled=True, snapshot_enabled=True)
    )

    assert storage.names().count("create_file_system") == 1


def test_managed_directory_looked_up_when_missing() -> None:
    """An empty managed directory triggers a lookup."""
    storage = FakeStorageClient()
    storage.empty_managed_directory = True

    outcome = ProvisioningWorkflow(storage).run(ProvisioningRequest(name="ds01"))

    assert "get_managed_directory" in storage.names()
    assert outcome.file_system is not None
    assert outcome.file_system.managed_directory == "ds01:root"


def test_file_system_failure_is_fatal_and_stops_workflow() -> None:
    """Nothing else runs when the file system cannot be created."""
    storage = FakeStorageClient(
        failures={"create_file_system": StorageError(ErrorKind.UNREACHABLE, "timeout")}
    )

    outcome = ProvisioningWorkflow(storage).run(ProvisioningRequest(name="ds01"))

    assert storage.names() == ["create_file_system"]
    assert outcome.fatal_step == STEP_FILE_SYSTEM
    assert outcome.export is None
    assert outcome.records[-1].error_kind is ErrorKind.UNREACHABLE


def test_export_failure_is_fatal() -> None:
    """Without an export there is nothing for hosts to mount."""
    storage = FakeStorageClient(
        failures={"bind_export_policy": StorageError(ErrorKind.REJECTED, "bad name")}
    )

    outcome = ProvisioningWorkflow(storage).run(ProvisioningRequest(name="ds01"))

    assert outcome.fatal_step == STEP_EXPORT
    assert "create_autodir_policy" not in storage.names()
    assert outcome.records[-1].detail == "bind export policy: bad name"


def test_snapshot_rule_failure_is_degraded_and_workflow_continues() -> None:
    """A rejected snapshot rule still reaches autodir and export resolution."""
    storage = FakeStorageClient(
        failures={"add_snapshot_rule": StorageError(ErrorKind.REJECTED, "interval too short")}
    )

    outcome = ProvisioningWorkflow(storage).run(
        ProvisioningRequest(name="ds01", snapshot_enabled=True, snapshot_interval="1m")
    )

    names = storage.names()
    assert "bind_snapshot_policy" not in names
    assert "bind_autodir_policy" in names
    assert "resolve_export" in names
    assert outcome.fatal is False
    assert outcome.export is not None
    assert outcome.degraded_policies == (PolicyKind.SNAPSHOT,)
    assert _statuses(outcome)[STEP_SNAPSHOT] is StepStatus.WARNING
    assert PolicyKind.SNAPSHOT not in outcome.bound_policies


def test_quota_and_autodir_failures_are_degraded() -> None:
    """Governance policies never abort the run."""
    storage = FakeStorageClient(
        failures={
            "create_quota_policy": StorageError(ErrorKind.ALREADY_EXISTS, "exists"),
            "bind_autodir_policy": StorageError(ErrorKind.REJECTED, "nope"),
        }
    )

    outcome = ProvisioningWorkflow(storage).run(
        ProvisioningRequest(name="ds01", capacity="1T", quota_enabled=True)
    )

    assert outcome.fatal is False
    assert outcome.degraded_policies == (PolicyKind.QUOTA, PolicyKind.AUTODIR)
    assert _statuses(outcome)[STEP_RESOLVE] is StepStatus.OK
    assert _statuses(outcome)[STEP_AUTODIR] is StepStatus.WARNING


def test_export_resolution_failure_is_fatal() -> None:
    """An unresolvable export leaves nothing to attach."""
    storage = FakeStorageClient(
        failures={"resolve_export": StorageError(ErrorKind.NOT_BOUND, "no export")}
    )

    outcome = ProvisioningWorkflow(storage).run(ProvisioningRequest(name="ds01"))

    assert outcome.fatal_step == STEP_RESOLVE
    assert outcome.export is None
    assert outcome.bound_policies == (PolicyKind.EXPORT, PolicyKind.AUTODIR)


def test_policy_name_derives_from_request() -> None:
    """Policy names are ``<name>-<kind>``."""
    request = ProvisioningRequest(name="ds01")
    assert policy_name(request, PolicyKind.AUTODIR) == "ds01-autodir"
