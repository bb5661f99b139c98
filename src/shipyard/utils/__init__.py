"""Utility exports for filesystem and concurrency helpers."""

from shipyard.utils.concurrency import (
    CancellationToken,
    WaitOutcome,
    WaitResult,
    wait_cancellable,
)
from shipyard.utils.fs import is_within, safe_delete, write_private_file

__all__ = [
    "CancellationToken",
    "WaitOutcome",
    "WaitResult",
    "is_within",
    "safe_delete",
    "wait_cancellable",
    "write_private_file",
]
