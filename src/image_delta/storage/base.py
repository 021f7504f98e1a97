"""
Transport interfaces for image-delta.

These protocols define the boundary between the incremental logic and the
transports that move manifests and blobs around, enabling clean dependency
injection and testing with fakes.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Callable,
    Iterable,
    Iterator,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..context import OperationContext
    from ..manifest import Descriptor

__all__ = [
    "Credentials",
    "SystemContext",
    "BlobReader",
    "ImageReference",
    "ImageSource",
    "ImageDestination",
    "RegistryClient",
    "ClientFactory",
    "CHUNK_SIZE",
]

# Streaming unit for blob transfers
CHUNK_SIZE = 1024 * 1024  # 1 MiB


@dataclass(frozen=True)
class Credentials:
    """Username and password (or token) for one registry."""
    username: str
    password: str

    @classmethod
    def parse(cls, value: str) -> Credentials:
        """
        Parse ``USER:PASSWORD``.

        Raises:
            ValueError: If the separator or the username is missing
        """
        username, sep, password = value.partition(":")
        if not sep or not username:
            raise ValueError("credentials must be in the form USER:PASSWORD")
        return cls(username=username, password=password)

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class SystemContext:
    """
    Per-reference transport configuration.

    Attributes:
        credentials: Explicit credentials; None falls back to the Docker config
        insecure: Allow plain HTTP and skip TLS verification
        tmpdir: Scratch directory for archive extraction and staging
        http_timeout_s: Read/write timeout for registry requests
    """
    credentials: Optional[Credentials] = None
    insecure: bool = False
    tmpdir: Optional[str] = None
    http_timeout_s: float = 30.0


class BlobReader:
    """
    Streamed blob content.

    Iterating yields chunks of bytes. ``close()`` releases the underlying file
    or HTTP response and is safe to call more than once.
    """

    def __init__(self, chunks: Iterable[bytes], close: Optional[Callable[[], None]] = None,
                 size: int = -1):
        self._chunks = iter(chunks)
        self._close = close
        self.size = size
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        return self._chunks

    def read_all(self) -> bytes:
        return b"".join(self._chunks)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._close is not None:
            self._close()

    def __enter__(self) -> BlobReader:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


@runtime_checkable
class ImageReference(Protocol):
    """
    Locator for an image within one transport.

    A reference is cheap and does no I/O until a source or destination is
    opened from it.
    """

    @property
    def transport_name(self) -> str:
        """Transport prefix, e.g. "docker" or "oci-archive"."""
        ...

    def string_within_transport(self) -> str:
        """Reference without the transport prefix."""
        ...

    def new_image_source(self, ctx: OperationContext, sysctx: SystemContext) -> ImageSource:
        """
        Open the image for reading.

        Raises:
            OciError: If the image cannot be opened
        """
        ...

    def new_image_destination(self, ctx: OperationContext, sysctx: SystemContext) -> ImageDestination:
        """
        Open the image for writing.

        Raises:
            OciError: If the destination cannot be prepared
        """
        ...


@runtime_checkable
class ImageSource(Protocol):
    """Read side of a transport."""

    def get_manifest(self, ctx: OperationContext,
                     instance_digest: Optional[str] = None) -> Tuple[bytes, str]:
        """
        Fetch a manifest.

        Args:
            ctx: Operation context
            instance_digest: Child manifest digest; None for the top-level one

        Returns:
            (raw manifest bytes, media type)

        Raises:
            OciNotFound: If the manifest does not exist
            OciError: For other failures
        """
        ...

    def get_blob(self, ctx: OperationContext, digest: str) -> BlobReader:
        """
        Open a blob for streaming.

        Raises:
            OciNotFound: If the blob is not stored in this source
            OciError: For other failures
        """
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class ImageDestination(Protocol):
    """Write side of a transport."""

    @property
    def reference(self) -> ImageReference:
        ...

    def try_reusing_blob(self, ctx: OperationContext, descriptor: Descriptor) -> bool:
        """
        Ask whether the blob can be skipped.

        Returns:
            True if the destination already has (or will have) the blob and
            the copy must not transfer it.
        """
        ...

    def put_blob(self, ctx: OperationContext, stream: Iterable[bytes],
                 descriptor: Descriptor) -> None:
        """
        Store a blob, verifying it hashes to ``descriptor.digest``.

        Raises:
            OciDigestMismatch: If the content does not match the digest
            OciError: For other failures
        """
        ...

    def put_manifest(self, ctx: OperationContext, manifest: bytes, media_type: str,
                     instance_digest: Optional[str] = None) -> None:
        """
        Store a manifest.

        Args:
            instance_digest: Digest of a child manifest of a list being
                copied; None for the top-level manifest
        """
        ...

    def commit(self, ctx: OperationContext) -> None:
        """Make everything written so far visible."""
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class RegistryClient(Protocol):
    """
    Repository-scoped registry operations used by the docker transport.

    Implemented by ``RegistryHTTP``; tests plug in an in-memory fake through
    a ``ClientFactory``.
    """

    def get_manifest(self, repo: str, ref: str) -> Tuple[bytes, str]:
        ...

    def open_blob(self, repo: str, digest: str) -> BlobReader:
        ...

    def blob_exists(self, repo: str, digest: str) -> bool:
        ...

    def put_blob(self, repo: str, digest: str, data: Iterable[bytes],
                 size: int | None = None) -> None:
        ...

    def put_manifest(self, repo: str, ref: str, media_type: str, payload: bytes) -> str:
        ...

    def close(self) -> None:
        ...


# (registry host, system context) -> client
ClientFactory = Callable[[str, SystemContext], RegistryClient]
