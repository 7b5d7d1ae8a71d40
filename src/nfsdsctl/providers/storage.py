"""Storage controller capability interface and its REST implementation."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from ..models import ErrorKind, ExportDescriptor, FileSystemHandle, ProtocolVersion

LOGGER = logging.getLogger(__name__)

_NFS_VERSION_VALUES = {
    ProtocolVersion.V3: "nfsv3",
    ProtocolVersion.V41: "nfsv4",
}


class StorageError(RuntimeError):
    """Raised when the storage controller rejects a request or is unreachable."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        """Store the error *kind* alongside the message."""
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        """Return ``kind: message``."""
        return f"{self.kind.value}: {self.message}"


class StorageClient(Protocol):
    """Operations the provisioning workflow needs from the storage controller."""

    def create_file_system(self, name: str) -> FileSystemHandle:
        """Create file system *name*; ``ALREADY_EXISTS`` when the name is taken."""
        ...

    def get_managed_directory(self, fs_name: str) -> str:
        """Return the root managed directory created with *fs_name*."""
        ...

    def create_export_policy(self, name: str) -> None:
        """Create an NFS export policy."""
        ...

    def add_export_rule(
        self,
        policy_name: str,
        client_pattern: str,
        access: str,
        permission: str,
        protocol: ProtocolVersion,
    ) -> None:
        """Add a client rule to an export policy."""
        ...

    def bind_export_policy(self, directory: str, policy_name: str, export_name: str) -> None:
        """Export *directory* as *export_name* under *policy_name*."""
        ...

    def create_quota_policy(self, name: str) -> None:
        """Create a quota policy."""
        ...

    def add_quota_rule(self, policy_name: str, limit_bytes: int) -> None:
        """Add an enforced limit to a quota policy."""
        ...

    def bind_quota_policy(self, directory: str, policy_name: str) -> None:
        """Attach a quota policy to *directory*."""
        ...

    def create_snapshot_policy(self, name: str) -> None:
        """Create a snapshot policy."""
        ...

    def add_snapshot_rule(
        self,
        policy_name: str,
        client_label: str,
        interval_ms: int,
        retention_ms: int,
    ) -> None:
        """Add a cadence rule to a snapshot policy."""
        ...

    def bind_snapshot_policy(self, directory: str, policy_name: str) -> None:
        """Attach a snapshot policy to *directory*."""
        ...

    def create_autodir_policy(self, name: str) -> None:
        """Create an auto-directory policy."""
        ...

    def bind_autodir_policy(self, directory: str, policy_name: str) -> None:
        """Attach an auto-directory policy to *directory*."""
        ...

    def resolve_export(self, directory: str, protocol: ProtocolVersion) -> ExportDescriptor:
        """Return the *protocol* export for *directory*; ``NOT_BOUND`` if none."""
        ...

    def remove_file_system(self, name: str, eradicate: bool) -> None:
        """Destroy file system *name*, optionally eradicating it."""
        ...


def _error_messages(response: requests.Response) -> list[str]:
    try:
        payload = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return [text] if text else []
    messages: list[str] = []
    if isinstance(payload, Mapping):
        for entry in payload.get("errors", []) or []:
            if isinstance(entry, Mapping):
                message = str(entry.get("message", "")).strip()
                context = entry.get("context")
                if message:
                    messages.append(f"{context}: {message}" if context else message)
    return messages


def _classify(status_code: int, message: str) -> ErrorKind:
    lowered = message.lower()
    if status_code == 409 or "already exists" in lowered or "already in use" in lowered:
        return ErrorKind.ALREADY_EXISTS
    if status_code == 404 or "does not exist" in lowered or "not found" in lowered:
        return ErrorKind.NOT_FOUND
    if status_code in {502, 503, 504}:
        return ErrorKind.UNREACHABLE
    return ErrorKind.REJECTED


@dataclass(slots=True)
class RestStorageClient:
    """:class:`StorageClient` backed by the array's REST 2.x API."""

    endpoint: str
    api_token: str
    api_version: str = "2.4"
    verify_tls: bool = True
    timeout: float = 30.0
    session: requests.Session = field(default_factory=requests.Session)
    _auth_token: str | None = field(default=None, init=False, repr=False)

    @property
    def base_url(self) -> str:
        """Return the versioned API base URL."""
        host = self.endpoint.rstrip("/")
        if not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        return f"{host}/api/{self.api_version}"

    # ------------------------------------------------------------------
    def create_file_system(self, name: str) -> FileSystemHandle:
        """Create file system *name*."""
        self._request("POST", "file-systems", params={"names": name}, json={})
        return FileSystemHandle(name=name, managed_directory=self.get_managed_directory(name))

    def get_managed_directory(self, fs_name: str) -> str:
        """Return the managed root directory of *fs_name*."""
        payload = self._request(
            "GET",
            "directories",
            params={"file_system_names": fs_name},
        )
        for item in payload.get("items", []):
            name = item.get("name") if isinstance(item, Mapping) else None
            if isinstance(name, str) and name.endswith(":root"):
                return name
        return f"{fs_name}:root"

    def create_export_policy(self, name: str) -> None:
        """Create an NFS export policy."""
        self._request("POST", "policies/nfs", params={"names": name}, json={"enabled": True})

    def add_export_rule(
        self,
        policy_name: str,
        client_pattern: str,
        access: str,
        permission: str,
        protocol: ProtocolVersion,
    ) -> None:
        """Add a client rule to an NFS export policy."""
        rule = {
            "client": client_pattern,
            "access": access,
            "permission": permission,
            "nfs_version": [_NFS_VERSION_VALUES[protocol]],
        }
        self._request(
            "POST",
            "policies/nfs/client-rules",
            params={"policy_names": policy_name},
            json={"rules": [rule]},
        )

    def bind_export_policy(self, directory: str, policy_name: str, export_name: str) -> None:
        """Create the directory export."""
        self._request(
            "POST",
            "directory-exports",
            params={"directory_names": directory, "policy_names": policy_name},
            json={"export_name": export_name},
        )

    def create_quota_policy(self, name: str) -> None:
        """Create a quota policy."""
        self._request("POST", "policies/quota", params={"names": name}, json={"enabled": True})

    def add_quota_rule(self, policy_name: str, limit_bytes: int) -> None:
        """Add an enforced quota limit."""
        self._request(
            "POST",
            "policies/quota/rules",
            params={"policy_names": policy_name},
            json={"rules": [{"quota_limit": limit_bytes, "enforced": True}]},
        )

    def bind_quota_policy(self, directory: str, policy_name: str) -> None:
        """Attach a quota policy to *directory*."""
        self._bind_directory_policy("quota", directory, policy_name)

    def create_snapshot_policy(self, name: str) -> None:
        """Create a snapshot policy."""
        self._request("POST", "policies/snapshot", params={"names": name}, json={"enabled": True})

    def add_snapshot_rule(
        self,
        policy_name: str,
        client_label: str,
        interval_ms: int,
        retention_ms: int,
    ) -> None:
        """Add a snapshot cadence rule."""
        rule = {"client_name": client_label, "every": interval_ms, "keep_for": retention_ms}
        self._request(
            "POST",
            "policies/snapshot/rules",
            params={"policy_names": policy_name},
            json={"rules": [rule]},
        )

    def bind_snapshot_policy(self, directory: str, policy_name: str) -> None:
        """Attach a snapshot policy to *directory*."""
        self._bind_directory_policy("snapshot", directory, policy_name)

    def create_autodir_policy(self, name: str) -> None:
        """Create an auto-directory policy."""
        self._request("POST", "policies/autodir", params={"names": name}, json={"enabled": True})

    def bind_autodir_policy(self, directory: str, policy_name: str) -> None:
        """Attach an auto-directory policy to *directory*."""
        self._bind_directory_policy("autodir", directory, policy_name)

    def resolve_export(self, directory: str, protocol: ProtocolVersion) -> ExportDescriptor:
        """Return the export created for *directory*, mounted over *protocol*."""
        payload = self._request("GET", "directory-exports", params={"directory_names": directory})
        items = [item for item in payload.get("items", []) if isinstance(item, Mapping)]
        if not items:
            raise StorageError(ErrorKind.NOT_BOUND, f"No export is bound to {directory}.")
        item = items[0]
        export_name = str(item.get("export_name") or "").strip()
        if not export_name:
            raise StorageError(ErrorKind.NOT_BOUND, f"Export for {directory} has no name.")
        path = f"/{export_name}"
        if protocol is ProtocolVersion.V41:
            path = str(item.get("path") or path)
        return ExportDescriptor(path=path, export_name=export_name, protocol=protocol)

    def remove_file_system(self, name: str, eradicate: bool) -> None:
        """Destroy (and optionally eradicate) file system *name*."""
        self._request("PATCH", "file-systems", params={"names": name}, json={"destroyed": True})
        if eradicate:
            self._request("DELETE", "file-systems", params={"names": name})

    # ------------------------------------------------------------------
    def _bind_directory_policy(self, policy_type: str, directory: str, policy_name: str) -> None:
        self._request(
            "POST",
            f"directories/policies/{policy_type}",
            params={"member_names": directory},
            json={"policies": [{"policy": {"name": policy_name}}]},
        )

    def _login(self) -> str:
        if self._auth_token:
            return self._auth_token
        try:
            response = self.session.post(
                f"{self.base_url}/login",
                headers={"api-token": self.api_token},
                verify=self.verify_tls,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StorageError(ErrorKind.UNREACHABLE, f"{self.endpoint}: {exc}") from exc
        if response.status_code >= 400:
            messages = _error_messages(response) or [f"HTTP {response.status_code}"]
            raise StorageError(ErrorKind.REJECTED, f"login failed: {'; '.join(messages)}")
        token = response.headers.get("x-auth-token")
        if not token:
            raise StorageError(ErrorKind.REJECTED, "login response carried no x-auth-token.")
        self._auth_token = token
        return token

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {
            "x-auth-token": self._login(),
            "accept": "application/json",
            "content-type": "application/json",
        }
        url = f"{self.base_url}/{path}"
        LOGGER.debug("storage %s %s params=%s", method, path, params)
        try:
            response = self.session.request(
                method,
                url,
                params=dict(params or {}),
                json=dict(json) if json is not None else None,
                headers=headers,
                verify=self.verify_tls,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StorageError(ErrorKind.UNREACHABLE, f"{method} {path}: {exc}") from exc
        if response.status_code >= 400:
            messages = _error_messages(response) or [f"HTTP {response.status_code}"]
            joined = "; ".join(messages)
            kind = _classify(response.status_code, joined)
            raise StorageError(kind, f"{method} {path} failed: {joined}")
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}


__all__ = ["RestStorageClient", "StorageClient", "StorageError"]
