"""Tests for the vCenter compute client with a stubbed inventory."""
from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest
from pyVmomi import vim, vmodl

from nfsdsctl.models import (
    DiagnosticKind,
    DiagnosticStatus,
    ErrorKind,
    HostHandle,
    MountStatus,
    ProtocolVersion,
)
from nfsdsctl.providers.compute import (
    ComputeError,
    VSphereComputeClient,
    parse_platform_version,
    supports_multi_session,
)


class DummyDatastoreSystem:
    """Captures NAS datastore specs and optionally raises a fault."""

    def __init__(self, host: SimpleNamespace, fault: Exception | None = None) -> None:
        self.host = host
        self.fault = fault
        self.specs: list[Any] = []

    def CreateNasDatastore(self, spec: Any) -> None:  # noqa: N802 - vSphere API name
        self.specs.append(spec)
        if self.fault is not None:
            raise self.fault
        self.host.datastore.append(_datastore(spec.localPath))


def _datastore(name: str, *, accessible: bool = True, kind: str = "NFS") -> SimpleNamespace:
    summary = SimpleNamespace(
        accessible=accessible, capacity=2048, freeSpace=1024, type=kind
    )
    return SimpleNamespace(name=name, summary=summary)


def _vnic(device: str, ip: str, mask: str = "255.255.255.0") -> SimpleNamespace:
    return SimpleNamespace(
        device=device,
        spec=SimpleNamespace(ip=SimpleNamespace(ipAddress=ip, subnetMask=mask), mtu=9000),
    )


def _host_system(name: str = "esx-01", *, fault: Exception | None = None) -> SimpleNamespace:
    host = SimpleNamespace(name=name, datastore=[])
    firewall = SimpleNamespace(
        firewallInfo=SimpleNamespace(
            ruleset=[
                SimpleNamespace(key="nfsClient", enabled=True),
                SimpleNamespace(key="nfs41Client", enabled=False),
            ]
        )
    )
    network = SimpleNamespace(
        networkInfo=SimpleNamespace(vnic=[_vnic("vmk0", "10.0.0.21"), _vnic("vmk1", "10.1.0.21")])
    )
    host.configManager = SimpleNamespace(
        datastoreSystem=DummyDatastoreSystem(host, fault),
        firewallSystem=firewall,
        networkSystem=network,
    )
    return host


@pytest.fixture()
def client() -> VSphereComputeClient:
    """Return a client that never connects for real."""
    return VSphereComputeClient(endpoint="vcenter.example.com", username="admin", password="pw")


def _install_inventory(
    monkeypatch: pytest.MonkeyPatch,
    objects: dict[str, Any],
) -> None:
    def fake_find(self: VSphereComputeClient, vim_type: Any, name: str) -> Any | None:
        return objects.get(name)

    monkeypatch.setattr(VSphereComputeClient, "_find_object", fake_find)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("8.0.1", "8.0.1"),
        ("7.0.3", "7.0.3"),
        ("8.0 Update 2", "8.0.2"),
        ("", None),
    ],
)
def test_parse_platform_version(raw: str, expected: str | None) -> None:
    """Dotted and ``Update`` spellings are both understood."""
    parsed = parse_platform_version(raw)
    assert (str(parsed) if parsed is not None else None) == expected


@pytest.mark.parametrize(
    ("version", "supported"),
    [
        ("8.0.1", True),
        ("8.0.2", True),
        ("9.0", True),
        ("8.0", False),
        ("7.0.3", False),
        ("", False),
    ],
)
def test_supports_multi_session(version: str, supported: bool) -> None:
    """Multi-session mounts need 8.0.1 or later."""
    assert supports_multi_session(version) is supported


def test_resolve_cluster_returns_hosts_in_order(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Hosts keep inventory order and carry their product version."""
    hosts = [
        SimpleNamespace(
            name=f"esx-0{index}",
            config=SimpleNamespace(product=SimpleNamespace(version="8.0.2", build=f"{index}00")),
        )
        for index in (1, 2)
    ]
    _install_inventory(monkeypatch, {"prod": SimpleNamespace(host=hosts)})

    cluster = client.resolve_cluster("prod")

    assert [host.name for host in cluster.hosts] == ["esx-01", "esx-02"]
    assert [host.index for host in cluster.hosts] == [0, 1]
    assert cluster.hosts[1].build == "200"


def test_resolve_unknown_cluster(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A missing cluster is reported distinctly."""
    _install_inventory(monkeypatch, {})

    with pytest.raises(ComputeError) as excinfo:
        client.resolve_cluster("nope")

    assert excinfo.value.kind is ErrorKind.CLUSTER_NOT_FOUND


def test_mount_rejects_multi_session_on_old_host(client: VSphereComputeClient) -> None:
    """Old hosts fail fast before any API call."""
    host = HostHandle(name="esx-01", version="7.0.3")

    with pytest.raises(ComputeError) as excinfo:
        client.mount_export(host, "ds01", "/ds01", "10.0.0.5", ProtocolVersion.V41, 4)

    assert excinfo.value.kind is ErrorKind.VERSION_UNSUPPORTED


def test_mount_v3_builds_nas_spec(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """NFSv3 mounts go through CreateNasDatastore with an NFS spec."""
    host_system = _host_system()
    _install_inventory(monkeypatch, {"esx-01": host_system})
    host = HostHandle(name="esx-01", version="7.0.3")

    outcome = client.mount_export(host, "ds01", "/ds01", "10.0.0.5", ProtocolVersion.V3, 1)

    assert outcome.status is MountStatus.MOUNTED
    (spec,) = host_system.configManager.datastoreSystem.specs
    assert spec.type == "NFS"
    assert spec.remoteHost == "10.0.0.5"
    assert spec.remotePath == "/ds01"
    assert spec.localPath == "ds01"
    assert spec.accessMode == "readWrite"


def test_duplicate_name_with_existing_datastore_counts_as_mounted(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Re-running against a host that already has the datastore is not a failure."""
    host_system = _host_system(fault=vim.fault.DuplicateName(msg="duplicate"))
    host_system.datastore.append(_datastore("ds01"))
    _install_inventory(monkeypatch, {"esx-01": host_system})

    outcome = client.mount_export(
        HostHandle(name="esx-01", version="8.0.2"), "ds01", "/ds01", "10.0.0.5",
        ProtocolVersion.V3, 1,
    )

    assert outcome.mounted


def test_platform_fault_is_mount_rejected(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Other API faults are reported as rejected mounts."""
    host_system = _host_system(fault=vim.fault.PlatformConfigFault(msg="NFS mount failed"))
    _install_inventory(monkeypatch, {"esx-01": host_system})

    with pytest.raises(ComputeError) as excinfo:
        client.mount_export(
            HostHandle(name="esx-01", version="8.0.2"), "ds01", "/ds01", "10.0.0.5",
            ProtocolVersion.V3, 1,
        )

    assert excinfo.value.kind is ErrorKind.MOUNT_REJECTED
    assert "NFS mount failed" in excinfo.value.message


def test_invalid_connection_count_is_version_unsupported(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A rejected session count maps to a version mismatch."""
    fault = vmodl.fault.InvalidArgument(invalidProperty="spec.connectionCount")
    host_system = _host_system(fault=fault)
    _install_inventory(monkeypatch, {"esx-01": host_system})

    with pytest.raises(ComputeError) as excinfo:
        client.mount_export(
            HostHandle(name="esx-01", version="8.0.2"), "ds01", "/ds01", "10.0.0.5",
            ProtocolVersion.V3, 1,
        )

    assert excinfo.value.kind is ErrorKind.VERSION_UNSUPPORTED


def test_verify_datastore(client: VSphereComputeClient, monkeypatch: pytest.MonkeyPatch) -> None:
    """Only accessible datastores count as present."""
    host_system = _host_system()
    host_system.datastore.extend([_datastore("ds01"), _datastore("stale", accessible=False)])
    _install_inventory(monkeypatch, {"esx-01": host_system})
    host = HostHandle(name="esx-01", version="8.0.2")

    info = client.verify_datastore(host, "ds01")

    assert info is not None
    assert (info.capacity_bytes, info.free_bytes) == (2048, 1024)
    assert client.verify_datastore(host, "stale") is None
    assert client.verify_datastore(host, "absent") is None


def test_unknown_host_is_not_found(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Hosts removed from inventory mid-run are reported."""
    _install_inventory(monkeypatch, {})

    with pytest.raises(ComputeError) as excinfo:
        client.verify_datastore(HostHandle(name="esx-09", version="8.0.2"), "ds01")

    assert excinfo.value.kind is ErrorKind.NOT_FOUND


class _RemovedHost:
    """Host whose property fetches fail as if it left the inventory."""

    name = "esx-01"

    @property
    def datastore(self) -> list[Any]:
        raise vmodl.fault.ManagedObjectNotFound(msg="host removed")


def test_verify_datastore_maps_removed_host_fault(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Property fetch faults surface as a client error, not a raw fault."""
    _install_inventory(monkeypatch, {"esx-01": _RemovedHost()})

    with pytest.raises(ComputeError) as excinfo:
        client.verify_datastore(HostHandle(name="esx-01", version="8.0.2"), "ds01")

    assert excinfo.value.kind is ErrorKind.NOT_FOUND
    assert "host removed" in excinfo.value.message


def test_inventory_lookup_fault_is_unreachable(client: VSphereComputeClient) -> None:
    """A session that cannot read inventory is reported as unreachable."""

    def retrieve_content() -> Any:
        raise vmodl.RuntimeFault(msg="session expired")

    client._service_instance = SimpleNamespace(RetrieveContent=retrieve_content)

    with pytest.raises(ComputeError) as excinfo:
        client.resolve_cluster("prod")

    assert excinfo.value.kind is ErrorKind.UNREACHABLE


def test_version_diagnostic_does_not_touch_inventory(client: VSphereComputeClient) -> None:
    """The version check only uses the resolved host handle."""
    result = client.run_diagnostic(
        HostHandle(name="esx-01", version="8.0"),
        DiagnosticKind.PLATFORM_VERSION,
        {"parallel_sessions": 4},
    )

    assert result.status is DiagnosticStatus.WARN
    assert "4 parallel sessions" in result.message


def test_firewall_and_reachability_diagnostics(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Firewall state and subnet adjacency are advisory findings."""
    _install_inventory(monkeypatch, {"esx-01": _host_system()})
    host = HostHandle(name="esx-01", version="8.0.2")
    params = {"protocol": "v4.1", "server_address": "10.1.0.50", "datastore_name": "ds01"}

    firewall = client.run_diagnostic(host, DiagnosticKind.FIREWALL, params)
    reach = client.run_diagnostic(host, DiagnosticKind.REACHABILITY, params)
    routed = client.run_diagnostic(
        host, DiagnosticKind.REACHABILITY, {**params, "server_address": "172.16.0.9"}
    )
    named = client.run_diagnostic(
        host, DiagnosticKind.REACHABILITY, {**params, "server_address": "array01"}
    )

    assert firewall.status is DiagnosticStatus.WARN
    assert "nfs41Client is disabled" in firewall.message
    assert reach.status is DiagnosticStatus.PASS
    assert reach.data == {"adapters": ["vmk1"]}
    assert routed.status is DiagnosticStatus.WARN
    assert named.status is DiagnosticStatus.SKIP


def test_mounts_diagnostic_warns_on_existing_datastore(
    client: VSphereComputeClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An already-mounted datastore of the same name is flagged."""
    host_system = _host_system()
    host_system.datastore.extend(
        [_datastore("ds01", kind="NFS41"), _datastore("local", kind="VMFS")]
    )
    _install_inventory(monkeypatch, {"esx-01": host_system})
    host = HostHandle(name="esx-01", version="8.0.2")

    result = client.run_diagnostic(host, DiagnosticKind.MOUNTS, {"datastore_name": "ds01"})
    adapters = client.run_diagnostic(host, DiagnosticKind.ADAPTERS, {})

    assert result.status is DiagnosticStatus.WARN
    assert result.data == {"mounts": [{"name": "ds01", "type": "NFS41"}]}
    assert adapters.status is DiagnosticStatus.PASS
    assert len(adapters.data["adapters"]) == 2  # type: ignore[index]
