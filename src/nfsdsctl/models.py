"""Data model shared by the storage, compute and workflow layers."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Failure taxonomy reported by the remote clients."""

    UNREACHABLE = "unreachable"
    ALREADY_EXISTS = "already-exists"
    NOT_FOUND = "not-found"
    CLUSTER_NOT_FOUND = "cluster-not-found"
    NOT_BOUND = "not-bound"
    MOUNT_REJECTED = "mount-rejected"
    VERSION_UNSUPPORTED = "version-unsupported"
    REJECTED = "rejected"


class ProtocolVersion(str, Enum):
    """NFS protocol selector for the export rule and the datastore mount."""

    V3 = "v3"
    V41 = "v4.1"

    @property
    def multi_session(self) -> bool:
        """Return ``True`` for protocol versions that allow parallel sessions."""
        return self is ProtocolVersion.V41

    @classmethod
    def parse(cls, raw: str | ProtocolVersion) -> ProtocolVersion:
        """Parse loose spellings such as ``3``, ``nfs41`` or ``v4.1``."""
        if isinstance(raw, ProtocolVersion):
            return raw
        text = str(raw).strip().lower()
        for prefix in ("nfsv", "nfs", "v"):
            if text.startswith(prefix):
                text = text[len(prefix) :]
                break
        if text == "3":
            return cls.V3
        if text in {"4.1", "41"}:
            return cls.V41
        raise ValueError(f"Unsupported protocol version {raw!r}. Allowed: v3, v4.1.")


_CAPACITY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgtp]?)(i?b)?\s*$", re.IGNORECASE)
_CAPACITY_MULTIPLIERS = {
    "": 1,
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
    "p": 1024**5,
}

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*(ms|s|m|h|d|w)?\s*$", re.IGNORECASE)
_DURATION_MULTIPLIERS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}


def parse_capacity(raw: str | int) -> int:
    """Convert ``10T``/``512G``/``4096`` into a byte count (binary units)."""
    if isinstance(raw, bool):
        raise ValueError(f"Invalid capacity {raw!r}.")
    if isinstance(raw, int):
        value = raw
    else:
        match = _CAPACITY_PATTERN.match(str(raw))
        if not match:
            raise ValueError(f"Invalid capacity {raw!r} (expected e.g. 10T, 512G, 4096).")
        number, suffix, _unit = match.groups()
        value = int(float(number) * _CAPACITY_MULTIPLIERS[suffix.lower()])
    if value <= 0:
        raise ValueError(f"Capacity must be a positive byte count. Got {raw!r}.")
    return value


def parse_duration_ms(raw: str | int) -> int:
    """Convert ``1d``/``12h``/``30m`` into milliseconds; bare integers are seconds."""
    if isinstance(raw, bool):
        raise ValueError(f"Invalid duration {raw!r}.")
    if isinstance(raw, int):
        value = raw * 1000
    else:
        match = _DURATION_PATTERN.match(str(raw))
        if not match:
            raise ValueError(f"Invalid duration {raw!r} (expected e.g. 30m, 12h, 1d).")
        number, suffix = match.groups()
        value = int(number) * _DURATION_MULTIPLIERS[(suffix or "s").lower()]
    if value <= 0:
        raise ValueError(f"Duration must be positive. Got {raw!r}.")
    return value


@dataclass(slots=True, frozen=True)
class ProvisioningRequest:
    """Everything needed to provision and attach one shared datastore."""

    name: str
    capacity: str | None = None
    protocol: ProtocolVersion = ProtocolVersion.V3
    quota_enabled: bool = False
    snapshot_enabled: bool = False
    snapshot_interval: str = "1d"
    snapshot_retention: str = "7d"
    snapshot_client_label: str = "nfsdsctl"

    def validate(self) -> None:
        """Raise ``ValueError`` when the request cannot be provisioned."""
        if not self.name or not self.name.strip():
            raise ValueError("Request name must be a non-empty string.")
        if self.quota_enabled:
            if self.capacity is None:
                raise ValueError("A capacity is required when quota is enabled.")
            parse_capacity(self.capacity)
        if self.snapshot_enabled:
            parse_duration_ms(self.snapshot_interval)
            parse_duration_ms(self.snapshot_retention)
            if not self.snapshot_client_label.strip():
                raise ValueError("Snapshot client label must be non-empty.")

    @property
    def limit_bytes(self) -> int:
        """Return the quota limit in bytes."""
        if self.capacity is None:
            raise ValueError("Request has no capacity.")
        return parse_capacity(self.capacity)

    @property
    def interval_ms(self) -> int:
        """Return the snapshot interval in milliseconds."""
        return parse_duration_ms(self.snapshot_interval)

    @property
    def retention_ms(self) -> int:
        """Return the snapshot retention in milliseconds."""
        return parse_duration_ms(self.snapshot_retention)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "capacity": self.capacity,
            "protocol": self.protocol.value,
            "quota_enabled": self.quota_enabled,
            "snapshot_enabled": self.snapshot_enabled,
            "snapshot_interval": self.snapshot_interval,
            "snapshot_retention": self.snapshot_retention,
            "snapshot_client_label": self.snapshot_client_label,
        }


@dataclass(slots=True, frozen=True)
class FileSystemHandle:
    """A created file system and its implicit managed root directory."""

    name: str
    managed_directory: str


class PolicyKind(str, Enum):
    """Kinds of governance policies bound to the managed directory."""

    EXPORT = "export"
    QUOTA = "quota"
    SNAPSHOT = "snapshot"
    AUTODIR = "autodir"


@dataclass(slots=True, frozen=True)
class PolicyBinding:
    """Policy *policy_name* of *kind* is attached to *directory*."""

    kind: PolicyKind
    policy_name: str
    directory: str


@dataclass(slots=True, frozen=True)
class ExportDescriptor:
    """Resolved network path that hosts mount."""

    path: str
    export_name: str
    protocol: ProtocolVersion
    server_address: str | None = None

    def with_server(self, server_address: str) -> ExportDescriptor:
        """Return a copy carrying *server_address*."""
        return ExportDescriptor(
            path=self.path,
            export_name=self.export_name,
            protocol=self.protocol,
            server_address=server_address,
        )


@dataclass(slots=True, frozen=True)
class HostHandle:
    """A compute host as resolved from its cluster."""

    name: str
    version: str
    build: str = ""
    index: int = 0


@dataclass(slots=True, frozen=True)
class ClusterTarget:
    """A cluster and its hosts in resolution order."""

    name: str
    hosts: tuple[HostHandle, ...]


class DiagnosticKind(str, Enum):
    """Advisory checks run against a representative host."""

    PLATFORM_VERSION = "platform-version"
    FIREWALL = "firewall"
    REACHABILITY = "reachability"
    ADAPTERS = "adapters"
    MOUNTS = "mounts"


class DiagnosticStatus(str, Enum):
    """Outcome of an advisory diagnostic."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"
    SKIP = "skip"


@dataclass(slots=True, frozen=True)
class DiagnosticResult:
    """Informational result of a remote diagnostic."""

    kind: DiagnosticKind
    host: str
    status: DiagnosticStatus
    message: str
    data: Mapping[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class DatastoreInfo:
    """Observed datastore properties on a host."""

    capacity_bytes: int
    free_bytes: int


class MountStatus(str, Enum):
    """Per-host mount outcome."""

    MOUNTED = "mounted"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class MountOutcome:
    """Result of attaching the export on a single host."""

    host: HostHandle
    status: MountStatus
    error: str | None = None
    error_kind: ErrorKind | None = None
    capacity_bytes: int | None = None
    free_bytes: int | None = None
    strategy: str | None = None
    attempts: Sequence[str] = field(default_factory=tuple)

    @property
    def mounted(self) -> bool:
        """Return ``True`` when the host mounted the datastore."""
        return self.status is MountStatus.MOUNTED


class RunStatus(str, Enum):
    """Overall status of an attachment or a full run."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial-success"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class MountReport:
    """Ordered per-host outcomes plus aggregate counts."""

    outcomes: tuple[MountOutcome, ...]

    @property
    def total(self) -> int:
        """Return the number of hosts attempted."""
        return len(self.outcomes)

    @property
    def mounted(self) -> int:
        """Return how many hosts mounted the datastore."""
        return sum(1 for outcome in self.outcomes if outcome.mounted)

    @property
    def failed(self) -> int:
        """Return how many hosts failed to mount."""
        return self.total - self.mounted

    @property
    def status(self) -> RunStatus:
        """Derive the attachment status from the counts."""
        if self.total == 0 or self.mounted == 0:
            return RunStatus.FAILED
        if self.failed == 0:
            return RunStatus.SUCCESS
        return RunStatus.PARTIAL_SUCCESS


__all__ = [
    "ClusterTarget",
    "DatastoreInfo",
    "DiagnosticKind",
    "DiagnosticResult",
    "DiagnosticStatus",
    "ErrorKind",
    "ExportDescriptor",
    "FileSystemHandle",
    "HostHandle",
    "MountOutcome",
    "MountReport",
    "MountStatus",
    "PolicyBinding",
    "PolicyKind",
    "ProtocolVersion",
    "ProvisioningRequest",
    "RunStatus",
    "parse_capacity",
    "parse_duration_ms",
]
