"""Remote system clients for nfsdsctl."""
from __future__ import annotations

from .compute import (
    MIN_MULTI_SESSION_VERSION,
    ComputeClient,
    ComputeError,
    VSphereComputeClient,
    supports_multi_session,
)
from .storage import RestStorageClient, StorageClient, StorageError

__all__ = [
    "MIN_MULTI_SESSION_VERSION",
    "ComputeClient",
    "ComputeError",
    "RestStorageClient",
    "StorageClient",
    "StorageError",
    "VSphereComputeClient",
    "supports_multi_session",
]
