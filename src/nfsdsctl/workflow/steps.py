"""Step-result type and the small engine that threads it through a workflow.

Each workflow step returns a :class:`StepResult`: ``ok`` with a value,
``warning`` when the step failed but the run may continue, or ``fatal`` when
downstream steps would lack required input. Whether a remote failure is fatal
or degraded is decided by a per-workflow severity table, never by the step.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum

from ..models import ErrorKind
from ..providers.compute import ComputeError
from ..providers.storage import StorageError


class StepStatus(str, Enum):
    """Outcome of a single workflow step."""

    OK = "ok"
    WARNING = "warning"
    FATAL = "fatal"
    SKIPPED = "skipped"


class Severity(str, Enum):
    """How a failing step affects the rest of the run."""

    FATAL = "fatal"
    DEGRADED = "degraded"


@dataclass(slots=True, frozen=True)
class StepRecord:
    """Log entry describing how a step ended."""

    name: str
    status: StepStatus
    detail: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: int | None = None


@dataclass(slots=True, frozen=True)
class StepResult:
    """Tagged success / recoverable-warning / fatal-error value."""

    status: StepStatus
    value: object | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, value: object | None = None) -> StepResult:
        """Return a successful result carrying *value*."""
        return cls(status=StepStatus.OK, value=value)

    @classmethod
    def warning(cls, error: str, kind: ErrorKind | None = None) -> StepResult:
        """Return a recoverable failure."""
        return cls(status=StepStatus.WARNING, error=error, error_kind=kind)

    @classmethod
    def fatal(cls, error: str, kind: ErrorKind | None = None) -> StepResult:
        """Return a failure that aborts the run."""
        return cls(status=StepStatus.FATAL, error=error, error_kind=kind)

    @classmethod
    def skipped(cls, reason: str) -> StepResult:
        """Return a result for a step disabled by the request."""
        return cls(status=StepStatus.SKIPPED, error=reason)

    @property
    def is_fatal(self) -> bool:
        """Return ``True`` when the run must stop."""
        return self.status is StepStatus.FATAL


@dataclass(slots=True, frozen=True)
class WorkflowState:
    """Immutable accumulator passed from step to step."""

    records: tuple[StepRecord, ...] = ()
    values: Mapping[str, object] = field(default_factory=dict)
    degraded: tuple[str, ...] = ()

    def get(self, name: str) -> object | None:
        """Return the value produced by step *name*."""
        return self.values.get(name)

    def with_record(self, record: StepRecord) -> WorkflowState:
        """Return a new state with *record* appended."""
        degraded = self.degraded
        if record.status is StepStatus.WARNING:
            degraded = (*degraded, record.name)
        return replace(self, records=(*self.records, record), degraded=degraded)

    def with_value(self, name: str, value: object) -> WorkflowState:
        """Return a new state where step *name* produced *value*."""
        values = dict(self.values)
        values[name] = value
        return replace(self, values=values)

    @property
    def fatal(self) -> bool:
        """Return ``True`` if any recorded step was fatal."""
        return any(record.status is StepStatus.FATAL for record in self.records)


StepAction = Callable[[WorkflowState], object]


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def run_step(
    state: WorkflowState,
    name: str,
    action: StepAction,
    severities: Mapping[str, Severity],
) -> tuple[WorkflowState, StepResult]:
    """Execute *action* and fold its outcome into a new state."""
    start = time.perf_counter()
    try:
        value = action(state)
    except (StorageError, ComputeError) as exc:
        severity = severities.get(name, Severity.FATAL)
        if severity is Severity.FATAL:
            result = StepResult.fatal(exc.message, exc.kind)
        else:
            result = StepResult.warning(exc.message, exc.kind)
        record = StepRecord(
            name=name,
            status=result.status,
            detail=exc.message,
            error_kind=exc.kind,
            duration_ms=_duration_ms(start),
        )
        return state.with_record(record), result

    record = StepRecord(name=name, status=StepStatus.OK, duration_ms=_duration_ms(start))
    return state.with_record(record).with_value(name, value), StepResult.ok(value)


def skip_step(state: WorkflowState, name: str, reason: str) -> tuple[WorkflowState, StepResult]:
    """Record *name* as skipped without running anything."""
    record = StepRecord(name=name, status=StepStatus.SKIPPED, detail=reason)
    return state.with_record(record), StepResult.skipped(reason)


__all__ = [
    "Severity",
    "StepAction",
    "StepRecord",
    "StepResult",
    "StepStatus",
    "WorkflowState",
    "run_step",
    "skip_step",
]
