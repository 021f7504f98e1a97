"""
Error taxonomy for incremental image operations.

Every failure surfaced by pull, push and push_vet is one of these classes.
Transport errors (``storage.oci_errors``) are chained as ``__cause__`` so the
caller sees both the failing stage and the underlying reason.
"""
from __future__ import annotations

from typing import Optional

__all__ = [
    "IncrementalError",
    "ReferenceResolutionError",
    "ManifestFetchError",
    "ManifestParseError",
    "BlobMissingError",
    "TransferError",
    "ResourceCleanupError",
    "OperationCancelled",
    "DeadlineExceeded",
]


class IncrementalError(Exception):
    """
    Base class for incremental image errors.

    Args:
        message: Human readable description, prefixed with the failing step
        stage: Optional short name of the step that failed ("base", "final",
            "destination", "source", "copy")
    """

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class ReferenceResolutionError(IncrementalError):
    """Reference string is malformed or its image source cannot be opened."""
    pass


class ManifestFetchError(IncrementalError):
    """Network or I/O failure while retrieving a manifest."""
    pass


class ManifestParseError(IncrementalError):
    """Manifest or manifest list payload is unrecognized or malformed."""
    pass


class BlobMissingError(IncrementalError):
    """
    A layer is neither in the local diff archive nor in the destination.

    Raised by push_vet. Pushing the archive would produce an image whose
    manifest references a blob nobody has.
    """

    def __init__(self, digest: str, *, stage: Optional[str] = None):
        super().__init__(f"{digest} not found in destination", stage=stage)
        self.digest = digest


class TransferError(IncrementalError):
    """Copying an image failed (auth, connection, disk, policy)."""
    pass


class ResourceCleanupError(IncrementalError):
    """
    A temporary file could not be removed.

    Never raised: logged as a warning so it cannot mask the error (or the
    success) of the operation that created the file.
    """
    pass


class OperationCancelled(IncrementalError):
    """The operation context was cancelled."""
    pass


class DeadlineExceeded(OperationCancelled):
    """The operation context deadline passed."""
    pass
