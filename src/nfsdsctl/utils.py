"""Utility helpers for serialising run results."""
from __future__ import annotations

from .logging import sanitize_payload
from .models import DiagnosticResult, MountOutcome
from .workflow.coordinator import RunResult
from .workflow.steps import StepRecord


def serialize_step(record: StepRecord) -> dict[str, object]:
    """Convert a workflow step record into a JSON-serialisable mapping."""
    payload: dict[str, object] = {"name": record.name, "status": record.status.value}
    if record.detail:
        payload["detail"] = record.detail
    if record.error_kind is not None:
        payload["error_kind"] = record.error_kind.value
    if record.duration_ms is not None:
        payload["duration_ms"] = record.duration_ms
    return payload


def serialize_diagnostic(result: DiagnosticResult) -> dict[str, object]:
    """Convert a diagnostic result into a JSON-serialisable mapping."""
    payload: dict[str, object] = {
        "kind": result.kind.value,
        "host": result.host,
        "status": result.status.value,
        "message": result.message,
    }
    if result.data:
        payload["data"] = sanitize_payload(result.data)
    return payload


def serialize_mount(outcome: MountOutcome) -> dict[str, object]:
    """Convert a per-host mount outcome into a JSON-serialisable mapping."""
    payload: dict[str, object] = {
        "host": outcome.host.name,
        "version": outcome.host.version,
        "build": outcome.host.build,
        "status": outcome.status.value,
    }
    if outcome.error:
        payload["error"] = outcome.error
    if outcome.error_kind is not None:
        payload["error_kind"] = outcome.error_kind.value
    if outcome.capacity_bytes is not None:
        payload["capacity_bytes"] = outcome.capacity_bytes
    if outcome.free_bytes is not None:
        payload["free_bytes"] = outcome.free_bytes
    if outcome.strategy:
        payload["strategy"] = outcome.strategy
    if outcome.attempts:
        payload["attempts"] = list(outcome.attempts)
    return payload


def serialize_run_result(result: RunResult) -> dict[str, object]:
    """Convert a run result into a JSON-serialisable mapping."""
    report = result.mount_report
    summary: dict[str, object] = {
        "status": result.status.value,
        "exit_code": result.exit_code,
        "degraded_policies": [kind.value for kind in result.degraded_policies],
        "bound_policies": [kind.value for kind in result.provisioning.bound_policies],
    }
    if report is not None:
        summary["hosts"] = {
            "total": report.total,
            "mounted": report.mounted,
            "failed": report.failed,
        }
    if result.provisioning.fatal_step:
        summary["fatal_step"] = result.provisioning.fatal_step

    export_payload: dict[str, object] | None = None
    if result.export is not None:
        export_payload = {
            "path": result.export.path,
            "export_name": result.export.export_name,
            "protocol": result.export.protocol.value,
            "server_address": result.export.server_address,
        }

    attachment_steps: list[dict[str, object]] = []
    if result.attachment is not None:
        attachment_steps = [serialize_step(record) for record in result.attachment.records]

    return {
        "summary": summary,
        "request": result.request.to_dict(),
        "export": export_payload,
        "provisioning": [serialize_step(record) for record in result.provisioning.records],
        "attachment": attachment_steps,
        "diagnostics": [serialize_diagnostic(item) for item in result.diagnostics],
        "mounts": [serialize_mount(item) for item in report.outcomes] if report else [],
    }


__all__ = [
    "serialize_diagnostic",
    "serialize_mount",
    "serialize_run_result",
    "serialize_step",
]
