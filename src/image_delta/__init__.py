"""
image-delta: pull, vet and push incremental container image differences.
"""
from .context import OperationContext
from .errors import (
    BlobMissingError,
    DeadlineExceeded,
    IncrementalError,
    ManifestFetchError,
    ManifestParseError,
    OperationCancelled,
    ReferenceResolutionError,
    ResourceCleanupError,
    TransferError,
)
from .incremental import SCRATCH, Authentications, Incremental, RemoveOnClose
from .manifest_index import ManifestsIndex
from .settings import Settings, create_settings_from_env
from .storage.base import Credentials
from .writer import Writer

__version__ = "0.1.0"

__all__ = [
    "OperationContext",
    "Incremental",
    "Authentications",
    "RemoveOnClose",
    "SCRATCH",
    "ManifestsIndex",
    "Writer",
    "Settings",
    "create_settings_from_env",
    "Credentials",
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
