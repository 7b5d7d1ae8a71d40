"""Provisioning and attachment workflows."""

from __future__ import annotations

from .attachment import (
    AttachmentOptions,
    AttachmentOutcome,
    AttachmentWorkflow,
    MountStrategy,
    VerifyPolicy,
    mount_strategies,
)
from .coordinator import RunCoordinator, RunResult
from .executor import run_bounded
from .provisioning import (
    STEP_SEVERITY,
    ProvisioningOptions,
    ProvisioningOutcome,
    ProvisioningWorkflow,
    policy_name,
)
from .steps import Severity, StepRecord, StepResult, StepStatus, WorkflowState, run_step, skip_step

__all__ = [
    "AttachmentOptions",
    "AttachmentOutcome",
    "AttachmentWorkflow",
    "MountStrategy",
    "ProvisioningOptions",
    "ProvisioningOutcome",
    "ProvisioningWorkflow",
    "RunCoordinator",
    "RunResult",
    "STEP_SEVERITY",
    "Severity",
    "StepRecord",
    "StepResult",
    "StepStatus",
    "VerifyPolicy",
    "WorkflowState",
    "mount_strategies",
    "policy_name",
    "run_bounded",
    "run_step",
    "skip_step",
]
