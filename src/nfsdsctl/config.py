"""Configuration loader for nfsdsctl.

Values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/nfsdsctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``NFSDSCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export NFSDSCTL_STORAGE__ENDPOINT=array01.example.com
    export NFSDSCTL_ATTACH__MAX_CONCURRENCY=4

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Credentials are passed through untouched; the resolved
configuration is exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast
from urllib.parse import urlparse

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - only reachable without PyYAML
    raise RuntimeError(
        "PyYAML is required to load nfsdsctl configuration. Install with "
        "`pip install nfsdsctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "NFSDSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
REDACTED = "********"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class StorageEndpointConfig:
    """Storage controller connection settings."""

    endpoint: str | None = None
    api_token: str | None = None
    api_version: str = "2.4"
    verify_tls: bool = True
    timeout: float = 30.0

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a serialisable representation."""
        token = self.api_token
        if redact and token:
            token = REDACTED
        return {
            "endpoint": self.endpoint,
            "api_token": token,
            "api_version": self.api_version,
            "verify_tls": self.verify_tls,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class ComputeEndpointConfig:
    """Virtualization control plane connection settings."""

    endpoint: str | None = None
    username: str | None = None
    password: str | None = None
    port: int = 443
    verify_tls: bool = True
    timeout: float = 30.0

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a serialisable representation."""
        password = self.password
        if redact and password:
            password = REDACTED
        return {
            "endpoint": self.endpoint,
            "username": self.username,
            "password": password,
            "port": self.port,
            "verify_tls": self.verify_tls,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class ExportDefaultsConfig:
    """Client rule applied to the export policy."""

    client_pattern: str = "*"
    access: str = "no-root-squash"
    permission: str = "rw"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "client_pattern": self.client_pattern,
            "access": self.access,
            "permission": self.permission,
        }


@dataclass(frozen=True)
class SnapshotDefaultsConfig:
    """Default snapshot cadence used when a request omits it."""

    client_label: str = "nfsdsctl"
    interval: str = "1d"
    retention: str = "7d"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "client_label": self.client_label,
            "interval": self.interval,
            "retention": self.retention,
        }


@dataclass(frozen=True)
class AttachConfig:
    """Attachment fan-out tunables."""

    max_concurrency: int = 16
    settle_delay: float = 5.0
    verify_after_mount: str = "always"
    diagnostics: bool = True
    parallel_sessions: int = 4
    single_session_fallback: bool = False
    server_address: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_concurrency": self.max_concurrency,
            "settle_delay": self.settle_delay,
            "verify_after_mount": self.verify_after_mount,
            "diagnostics": self.diagnostics,
            "parallel_sessions": self.parallel_sessions,
            "single_session_fallback": self.single_session_fallback,
            "server_address": self.server_address,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for nfsdsctl."""

    config_file: Path
    logs_dir: Path
    storage: StorageEndpointConfig
    compute: ComputeEndpointConfig
    export: ExportDefaultsConfig
    snapshot: SnapshotDefaultsConfig
    attach: AttachConfig

    @property
    def server_address(self) -> str | None:
        """Return the NFS server address hosts should mount from."""
        if self.attach.server_address:
            return self.attach.server_address
        endpoint = self.storage.endpoint
        if not endpoint:
            return None
        parsed = urlparse(endpoint if "://" in endpoint else f"//{endpoint}")
        return parsed.hostname or endpoint

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "storage": self.storage.to_dict(redact=redact),
            "compute": self.compute.to_dict(redact=redact),
            "export": self.export.to_dict(),
            "snapshot": self.snapshot.to_dict(),
            "attach": self.attach.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/nfsdsctl/config.yml",
    "logs_dir": "/var/log/nfsdsctl",
    "storage": {
        "endpoint": None,
        "api_token": None,
        "api_version": "2.4",
        "verify_tls": True,
        "timeout": 30.0,
    },
    "compute": {
        "endpoint": None,
        "username": None,
        "password": None,
        "port": 443,
        "verify_tls": True,
        "timeout": 30.0,
    },
    "export": {
        "client_pattern": "*",
        "access": "no-root-squash",
        "permission": "rw",
    },
    "snapshot": {
        "client_label": "nfsdsctl",
        "interval": "1d",
        "retention": "7d",
    },
    "attach": {
        "max_concurrency": 16,
        "settle_delay": 5.0,
        "verify_after_mount": "always",
        "diagnostics": True,
        "parallel_sessions": 4,
        "single_session_fallback": False,
        "server_address": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_VERIFY_POLICIES = {"always", "multi-session", "never"}
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("storage", "compute", "export", "snapshot", "attach")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    attach = _as_dict(raw.get("attach"), "attach")
    policy = attach.get("verify_after_mount")
    if policy is not None and str(policy) not in ALLOWED_VERIFY_POLICIES:
        allowed = ", ".join(sorted(ALLOWED_VERIFY_POLICIES))
        raise ConfigError(
            f"Unsupported attach.verify_after_mount '{policy}'. Allowed: {allowed}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    storage_map = _as_dict(raw.get("storage"), "storage")
    storage = StorageEndpointConfig(
        endpoint=_optional_str(storage_map.get("endpoint")),
        api_token=_optional_str(storage_map.get("api_token")),
        api_version=str(storage_map.get("api_version", "2.4")),
        verify_tls=_expect_bool(storage_map.get("verify_tls"), "storage.verify_tls", default=True),
        timeout=_expect_positive_float(storage_map.get("timeout"), "storage.timeout", default=30.0),
    )

    compute_map = _as_dict(raw.get("compute"), "compute")
    compute = ComputeEndpointConfig(
        endpoint=_optional_str(compute_map.get("endpoint")),
        username=_optional_str(compute_map.get("username")),
        password=_optional_str(compute_map.get("password")),
        port=_expect_int(compute_map.get("port"), "compute.port", default=443),
        verify_tls=_expect_bool(compute_map.get("verify_tls"), "compute.verify_tls", default=True),
        timeout=_expect_positive_float(compute_map.get("timeout"), "compute.timeout", default=30.0),
    )

    export_map = _as_dict(raw.get("export"), "export")
    export = ExportDefaultsConfig(
        client_pattern=str(export_map.get("client_pattern", "*")),
        access=str(export_map.get("access", "no-root-squash")),
        permission=str(export_map.get("permission", "rw")),
    )

    snapshot_map = _as_dict(raw.get("snapshot"), "snapshot")
    snapshot = SnapshotDefaultsConfig(
        client_label=str(snapshot_map.get("client_label", "nfsdsctl")),
        interval=str(snapshot_map.get("interval", "1d")),
        retention=str(snapshot_map.get("retention", "7d")),
    )

    attach_map = _as_dict(raw.get("attach"), "attach")
    max_concurrency = _expect_int(
        attach_map.get("max_concurrency"), "attach.max_concurrency", default=16
    )
    if max_concurrency < 1:
        raise ConfigError("attach.max_concurrency must be at least 1.")
    parallel_sessions = _expect_int(
        attach_map.get("parallel_sessions"), "attach.parallel_sessions", default=4
    )
    if parallel_sessions < 1:
        raise ConfigError("attach.parallel_sessions must be at least 1.")
    settle_delay = _expect_non_negative_float(
        attach_map.get("settle_delay"), "attach.settle_delay", default=5.0
    )
    attach = AttachConfig(
        max_concurrency=max_concurrency,
        settle_delay=settle_delay,
        verify_after_mount=str(attach_map.get("verify_after_mount", "always")),
        diagnostics=_expect_bool(attach_map.get("diagnostics"), "attach.diagnostics", default=True),
        parallel_sessions=parallel_sessions,
        single_session_fallback=_expect_bool(
            attach_map.get("single_session_fallback"),
            "attach.single_session_fallback",
            default=False,
        ),
        server_address=_optional_str(attach_map.get("server_address")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        storage=storage,
        compute=compute,
        export=export,
        snapshot=snapshot,
        attach=attach,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "AttachConfig",
    "ComputeEndpointConfig",
    "ConfigError",
    "ExportDefaultsConfig",
    "SnapshotDefaultsConfig",
    "StorageEndpointConfig",
    "load_config",
]
