"""Virtualization control plane capability interface and its vCenter implementation."""
from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from packaging.version import Version
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from ..models import (
    ClusterTarget,
    DatastoreInfo,
    DiagnosticKind,
    DiagnosticResult,
    DiagnosticStatus,
    ErrorKind,
    HostHandle,
    MountOutcome,
    MountStatus,
    ProtocolVersion,
)

LOGGER = logging.getLogger(__name__)

MIN_MULTI_SESSION_VERSION = Version("8.0.1")

_FIREWALL_RULESETS = {
    ProtocolVersion.V3: "nfsClient",
    ProtocolVersion.V41: "nfs41Client",
}
_NAS_TYPES = {
    ProtocolVersion.V3: "NFS",
    ProtocolVersion.V41: "NFS41",
}


class ComputeError(RuntimeError):
    """Raised when the virtualization control plane rejects a request."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        """Store the error *kind* alongside the message."""
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        """Return ``kind: message``."""
        return f"{self.kind.value}: {self.message}"


def parse_platform_version(raw: str) -> Version | None:
    """Parse ``8.0.1`` (or ``8.0 Update 1``) into a comparable version."""
    text = raw.strip()
    update = re.search(r"update\s*(\d+)", text, re.IGNORECASE)
    numbers = re.findall(r"\d+", text.split(" ")[0])
    if update and len(numbers) == 2:
        numbers.append(update.group(1))
    if not numbers:
        return None
    return Version(".".join(numbers))


def supports_multi_session(version: str) -> bool:
    """Return ``True`` when *version* meets the multi-session minimum."""
    parsed = parse_platform_version(version)
    return parsed is not None and parsed >= MIN_MULTI_SESSION_VERSION


class ComputeClient(Protocol):
    """Operations the attachment workflow needs from the control plane."""

    def resolve_cluster(self, name: str) -> ClusterTarget:
        """Resolve *name* to its hosts; ``CLUSTER_NOT_FOUND`` when missing."""
        ...

    def run_diagnostic(
        self,
        host: HostHandle,
        kind: DiagnosticKind,
        params: Mapping[str, Any],
    ) -> DiagnosticResult:
        """Run an advisory probe against *host*."""
        ...

    def mount_export(
        self,
        host: HostHandle,
        datastore_name: str,
        export_path: str,
        server_address: str,
        protocol: ProtocolVersion,
        parallel_sessions: int,
    ) -> MountOutcome:
        """Mount the export on *host* as *datastore_name*."""
        ...

    def verify_datastore(self, host: HostHandle, name: str) -> DatastoreInfo | None:
        """Return datastore capacity on *host*, ``None`` when absent."""
        ...


def _fault_message(fault: Exception) -> str:
    message = getattr(fault, "msg", None) or str(fault)
    return str(message).strip() or type(fault).__name__


@dataclass(slots=True)
class VSphereComputeClient:
    """:class:`ComputeClient` backed by the vCenter API through pyVmomi."""

    endpoint: str
    username: str
    password: str
    port: int = 443
    verify_tls: bool = True
    timeout: float = 30.0
    _service_instance: Any = field(default=None, init=False, repr=False)

    def connect(self) -> Any:
        """Open (or reuse) the vCenter session."""
        if self._service_instance is not None:
            return self._service_instance
        try:
            self._service_instance = SmartConnect(
                host=self.endpoint,
                user=self.username,
                pwd=self.password,
                port=self.port,
                disableSslCertValidation=not self.verify_tls,
                connectionPoolTimeout=int(self.timeout),
            )
        except vim.fault.InvalidLogin as exc:
            raise ComputeError(ErrorKind.REJECTED, _fault_message(exc)) from exc
        except (OSError, vmodl.MethodFault) as exc:
            raise ComputeError(ErrorKind.UNREACHABLE, f"{self.endpoint}: {exc}") from exc
        return self._service_instance

    def close(self) -> None:
        """Close the vCenter session if one is open."""
        if self._service_instance is None:
            return
        Disconnect(self._service_instance)
        self._service_instance = None

    # ------------------------------------------------------------------
    def resolve_cluster(self, name: str) -> ClusterTarget:
        """Resolve cluster *name* to its hosts in inventory order."""
        cluster = self._find_object(vim.ClusterComputeResource, name)
        if cluster is None:
            raise ComputeError(ErrorKind.CLUSTER_NOT_FOUND, f"Cluster '{name}' not found.")
        hosts: list[HostHandle] = []
        for index, host in enumerate(cluster.host):
            product = host.config.product if host.config else None
            hosts.append(
                HostHandle(
                    name=host.name,
                    version=str(getattr(product, "version", "") or ""),
                    build=str(getattr(product, "build", "") or ""),
                    index=index,
                )
            )
        return ClusterTarget(name=name, hosts=tuple(hosts))

    def run_diagnostic(
        self,
        host: HostHandle,
        kind: DiagnosticKind,
        params: Mapping[str, Any],
    ) -> DiagnosticResult:
        """Run advisory diagnostic *kind* against *host*."""
        if kind is DiagnosticKind.PLATFORM_VERSION:
            return self._diagnose_version(host, params)
        host_system = self._require_host(host)
        if kind is DiagnosticKind.FIREWALL:
            return self._diagnose_firewall(host, host_system, params)
        if kind is DiagnosticKind.REACHABILITY:
            return self._diagnose_reachability(host, host_system, params)
        if kind is DiagnosticKind.ADAPTERS:
            return self._diagnose_adapters(host, host_system)
        return self._diagnose_mounts(host, host_system, params)

    def mount_export(
        self,
        host: HostHandle,
        datastore_name: str,
        export_path: str,
        server_address: str,
        protocol: ProtocolVersion,
        parallel_sessions: int,
    ) -> MountOutcome:
        """Create an NFS datastore on *host*."""
        multi_session = protocol.multi_session and parallel_sessions > 1
        if multi_session and not supports_multi_session(host.version):
            minimum = str(MIN_MULTI_SESSION_VERSION)
            raise ComputeError(
                ErrorKind.VERSION_UNSUPPORTED,
                f"{host.name} runs {host.version or 'unknown'}; "
                f"multi-session mounts need {minimum} or later.",
            )
        host_system = self._require_host(host)
        spec = vim.host.NasVolume.Specification(
            remoteHost=server_address,
            remoteHostNames=[server_address],
            remotePath=export_path,
            localPath=datastore_name,
            accessMode="readWrite",
            type=_NAS_TYPES[protocol],
        )
        if multi_session:
            spec.connectionCount = parallel_sessions
        try:
            host_system.configManager.datastoreSystem.CreateNasDatastore(spec)
        except vim.fault.DuplicateName as exc:
            if self._find_host_datastore(host_system, datastore_name) is None:
                raise ComputeError(ErrorKind.MOUNT_REJECTED, _fault_message(exc)) from exc
            LOGGER.info("%s already has datastore %s mounted", host.name, datastore_name)
        except vmodl.fault.InvalidArgument as exc:
            if "connectioncount" in str(getattr(exc, "invalidProperty", "")).lower():
                raise ComputeError(ErrorKind.VERSION_UNSUPPORTED, _fault_message(exc)) from exc
            raise ComputeError(ErrorKind.MOUNT_REJECTED, _fault_message(exc)) from exc
        except vmodl.MethodFault as exc:
            raise ComputeError(ErrorKind.MOUNT_REJECTED, _fault_message(exc)) from exc
        except OSError as exc:
            raise ComputeError(ErrorKind.UNREACHABLE, f"{host.name}: {exc}") from exc
        return MountOutcome(host=host, status=MountStatus.MOUNTED)

    def verify_datastore(self, host: HostHandle, name: str) -> DatastoreInfo | None:
        """Return capacity details for datastore *name* as seen from *host*."""
        host_system = self._require_host(host)
        try:
            datastore = self._find_host_datastore(host_system, name)
            if datastore is None:
                return None
            summary = datastore.summary
        except vmodl.fault.ManagedObjectNotFound as exc:
            message = f"{host.name}: {_fault_message(exc)}"
            raise ComputeError(ErrorKind.NOT_FOUND, message) from exc
        except vmodl.MethodFault as exc:
            message = f"{host.name}: {_fault_message(exc)}"
            raise ComputeError(ErrorKind.UNREACHABLE, message) from exc
        except OSError as exc:
            raise ComputeError(ErrorKind.UNREACHABLE, f"{host.name}: {exc}") from exc
        if not summary.accessible:
            return None
        return DatastoreInfo(
            capacity_bytes=int(summary.capacity),
            free_bytes=int(summary.freeSpace),
        )

    # ------------------------------------------------------------------
    def _diagnose_version(self, host: HostHandle, params: Mapping[str, Any]) -> DiagnosticResult:
        minimum = str(MIN_MULTI_SESSION_VERSION)
        data = {"version": host.version, "build": host.build, "minimum": minimum}
        if supports_multi_session(host.version):
            status = DiagnosticStatus.PASS
            message = f"{host.name} {host.version} supports multi-session mounts."
        else:
            status = DiagnosticStatus.WARN
            sessions = params.get("parallel_sessions", 1)
            message = (
                f"{host.name} {host.version or 'unknown'} predates {minimum}; "
                f"{sessions} parallel sessions will be rejected."
            )
        return DiagnosticResult(DiagnosticKind.PLATFORM_VERSION, host.name, status, message, data)

    def _diagnose_firewall(
        self,
        host: HostHandle,
        host_system: Any,
        params: Mapping[str, Any],
    ) -> DiagnosticResult:
        protocol = ProtocolVersion.parse(params.get("protocol", ProtocolVersion.V41))
        ruleset_key = _FIREWALL_RULESETS[protocol]
        firewall = host_system.configManager.firewallSystem
        rulesets = {ruleset.key: ruleset for ruleset in firewall.firewallInfo.ruleset}
        ruleset = rulesets.get(ruleset_key)
        if ruleset is None:
            return DiagnosticResult(
                DiagnosticKind.FIREWALL,
                host.name,
                DiagnosticStatus.WARN,
                f"Firewall ruleset {ruleset_key} not present on {host.name}.",
            )
        status = DiagnosticStatus.PASS if ruleset.enabled else DiagnosticStatus.WARN
        state = "enabled" if ruleset.enabled else "disabled"
        return DiagnosticResult(
            DiagnosticKind.FIREWALL,
            host.name,
            status,
            f"Firewall ruleset {ruleset_key} is {state}.",
            {"ruleset": ruleset_key, "enabled": bool(ruleset.enabled)},
        )

    def _diagnose_reachability(
        self,
        host: HostHandle,
        host_system: Any,
        params: Mapping[str, Any],
    ) -> DiagnosticResult:
        server = str(params.get("server_address", ""))
        try:
            server_ip = ipaddress.ip_address(server)
        except ValueError:
            return DiagnosticResult(
                DiagnosticKind.REACHABILITY,
                host.name,
                DiagnosticStatus.SKIP,
                f"Server '{server}' is not an IP address; subnet check skipped.",
            )
        local: list[str] = []
        for vnic in self._vnics(host_system):
            ip_config = vnic.spec.ip
            if not ip_config.ipAddress or not ip_config.subnetMask:
                continue
            network = ipaddress.ip_network(
                f"{ip_config.ipAddress}/{ip_config.subnetMask}", strict=False
            )
            if server_ip in network:
                local.append(vnic.device)
        if local:
            return DiagnosticResult(
                DiagnosticKind.REACHABILITY,
                host.name,
                DiagnosticStatus.PASS,
                f"{server} is on the same subnet as {', '.join(local)}.",
                {"adapters": local},
            )
        return DiagnosticResult(
            DiagnosticKind.REACHABILITY,
            host.name,
            DiagnosticStatus.WARN,
            f"No vmkernel adapter shares a subnet with {server}; traffic will be routed.",
        )

    def _diagnose_adapters(self, host: HostHandle, host_system: Any) -> DiagnosticResult:
        adapters = [
            {"device": vnic.device, "ip": vnic.spec.ip.ipAddress, "mtu": vnic.spec.mtu}
            for vnic in self._vnics(host_system)
        ]
        status = DiagnosticStatus.PASS if adapters else DiagnosticStatus.WARN
        return DiagnosticResult(
            DiagnosticKind.ADAPTERS,
            host.name,
            status,
            f"{len(adapters)} vmkernel adapter(s) found.",
            {"adapters": adapters},
        )

    def _diagnose_mounts(
        self,
        host: HostHandle,
        host_system: Any,
        params: Mapping[str, Any],
    ) -> DiagnosticResult:
        mounts = [
            {"name": datastore.name, "type": datastore.summary.type}
            for datastore in host_system.datastore
            if str(datastore.summary.type).upper().startswith("NFS")
        ]
        wanted = params.get("datastore_name")
        if wanted and any(mount["name"] == wanted for mount in mounts):
            return DiagnosticResult(
                DiagnosticKind.MOUNTS,
                host.name,
                DiagnosticStatus.WARN,
                f"Datastore {wanted} is already mounted on {host.name}.",
                {"mounts": mounts},
            )
        return DiagnosticResult(
            DiagnosticKind.MOUNTS,
            host.name,
            DiagnosticStatus.PASS,
            f"{len(mounts)} NFS datastore(s) mounted on {host.name}.",
            {"mounts": mounts},
        )

    def _vnics(self, host_system: Any) -> list[Any]:
        network_info = host_system.configManager.networkSystem.networkInfo
        return list(network_info.vnic or [])

    def _find_host_datastore(self, host_system: Any, name: str) -> Any | None:
        for datastore in host_system.datastore:
            if datastore.name == name:
                return datastore
        return None

    def _require_host(self, host: HostHandle) -> Any:
        host_system = self._find_object(vim.HostSystem, host.name)
        if host_system is None:
            raise ComputeError(ErrorKind.NOT_FOUND, f"Host '{host.name}' not found.")
        return host_system

    def _find_object(self, vim_type: Any, name: str) -> Any | None:
        service_instance = self.connect()
        try:
            content = service_instance.RetrieveContent()
            view = content.viewManager.CreateContainerView(content.rootFolder, [vim_type], True)
        except (OSError, vmodl.MethodFault) as exc:
            raise ComputeError(ErrorKind.UNREACHABLE, f"{self.endpoint}: {exc}") from exc
        try:
            for managed_object in view.view:
                if managed_object.name == name:
                    return managed_object
        except (OSError, vmodl.MethodFault) as exc:
            raise ComputeError(ErrorKind.UNREACHABLE, f"{self.endpoint}: {exc}") from exc
        finally:
            view.Destroy()
        return None


__all__ = [
    "MIN_MULTI_SESSION_VERSION",
    "ComputeClient",
    "ComputeError",
    "VSphereComputeClient",
    "parse_platform_version",
    "supports_multi_session",
]
