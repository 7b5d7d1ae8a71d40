"""Sequence provisioning then attachment and summarise the run."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..exit_codes import ExitCode
from ..models import (
    DiagnosticResult,
    ExportDescriptor,
    MountReport,
    PolicyKind,
    ProvisioningRequest,
    RunStatus,
)
from ..providers.compute import ComputeClient
from ..providers.storage import StorageClient
from .attachment import AttachmentOptions, AttachmentOutcome, AttachmentWorkflow
from .provisioning import ProvisioningOptions, ProvisioningOutcome, ProvisioningWorkflow

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RunResult:
    """Terminal artifact of a provisioning-and-attachment run."""

    request: ProvisioningRequest
    status: RunStatus
    provisioning: ProvisioningOutcome
    export: ExportDescriptor | None = None
    attachment: AttachmentOutcome | None = None

    @property
    def mount_report(self) -> MountReport | None:
        """Return the per-host report when attachment was reached."""
        return self.attachment.report if self.attachment else None

    @property
    def diagnostics(self) -> tuple[DiagnosticResult, ...]:
        """Return advisory diagnostics gathered during attachment."""
        return self.attachment.diagnostics if self.attachment else ()

    @property
    def degraded_policies(self) -> tuple[PolicyKind, ...]:
        """Return governance policies that failed without aborting the run."""
        return self.provisioning.degraded_policies

    @property
    def exit_code(self) -> int:
        """Return 0 when at least one host mounted, otherwise 1."""
        report = self.mount_report
        if self.status is RunStatus.FAILED or report is None or report.mounted == 0:
            return ExitCode.FAILED.value
        return ExitCode.OK.value


class RunCoordinator:
    """Run the storage workflow, then the compute fan-out when it is safe to."""

    def __init__(
        self,
        storage: StorageClient,
        compute: ComputeClient,
        *,
        server_address: str,
        provisioning_options: ProvisioningOptions | None = None,
        attachment_options: AttachmentOptions | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire both clients and workflow options together."""
        self._storage = storage
        self._compute = compute
        self._server_address = server_address
        self._provisioning = ProvisioningWorkflow(storage, provisioning_options)
        self._attachment = AttachmentWorkflow(compute, attachment_options, sleep=sleep)

    def run(
        self,
        request: ProvisioningRequest,
        cluster: str,
        *,
        datastore_name: str | None = None,
    ) -> RunResult:
        """Provision *request* and attach it across *cluster*.

        Raises ``ValueError`` when the request itself is invalid; every remote
        failure is reported through the returned :class:`RunResult`.
        """
        request.validate()
        provisioning = self._provisioning.run(request)
        if provisioning.fatal or provisioning.export is None:
            LOGGER.error("run for %s failed during provisioning", request.name)
            return RunResult(
                request=request,
                status=RunStatus.FAILED,
                provisioning=provisioning,
                export=provisioning.export,
            )

        export = provisioning.export
        if not export.server_address:
            export = export.with_server(self._server_address)

        attachment = self._attachment.run(cluster, export, datastore_name or request.name)
        return RunResult(
            request=request,
            status=attachment.status,
            provisioning=provisioning,
            export=export,
            attachment=attachment,
        )


__all__ = ["RunCoordinator", "RunResult"]
