"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from nfsdsctl.models import ExportDescriptor, ProtocolVersion


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip timing-sensitive fan-out tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "mutation_timeout: relies on real sleeps to reorder completions"
    )


@pytest.fixture()
def v3_export() -> ExportDescriptor:
    """Return a resolved NFSv3 export with a server address."""
    return ExportDescriptor(
        path="/ds01",
        export_name="ds01",
        protocol=ProtocolVersion.V3,
        server_address="10.0.0.5",
    )


@pytest.fixture()
def v41_export() -> ExportDescriptor:
    """Return a resolved NFSv4.1 export with a server address."""
    return ExportDescriptor(
        path="/ds01",
        export_name="ds01",
        protocol=ProtocolVersion.V41,
        server_address="10.0.0.5",
    )


@pytest.fixture()
def cli_env(tmp_path: Path) -> dict[str, str]:
    """Return environment overrides pointing configuration at *tmp_path*."""
    return {
        "NFSDSCTL_CONFIG_FILE": str(tmp_path / "config.yml"),
        "NFSDSCTL_LOGS_DIR": str(tmp_path / "logs"),
        "NFSDSCTL_STORAGE__ENDPOINT": "array01.example.com",
        "NFSDSCTL_STORAGE__API_TOKEN": "secret-token",
        "NFSDSCTL_COMPUTE__ENDPOINT": "vcenter.example.com",
        "NFSDSCTL_COMPUTE__USERNAME": "administrator@vsphere.local",
        "NFSDSCTL_COMPUTE__PASSWORD": "hunter2",
        "NFSDSCTL_ATTACH__SETTLE_DELAY": "0",
        "NFSDSCTL_ATTACH__SERVER_ADDRESS": "10.0.0.5",
    }
