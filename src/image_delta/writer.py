"""
Incremental write destination.

``Writer`` wraps a destination reference so that copying an image into it
only transfers layers that are not already part of a base image. The copy
engine asks every destination whether a blob can be reused before
transferring it; the wrapped destination answers from a ``ManifestsIndex``
of the base image and forwards everything else untouched.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from .context import OperationContext
from .manifest import Descriptor
from .manifest_index import DEFAULT_FETCH_WORKERS, ManifestsIndex
from .storage.base import ImageDestination, ImageReference, ImageSource, SystemContext

__all__ = ["Writer", "ReusingDestination"]

logger = logging.getLogger(__name__)


class ReusingDestination:
    """
    Destination decorator answering ``try_reusing_blob`` from a base index.

    Owns the wrapped destination: closing the decorator closes it.
    """

    def __init__(self, destination: ImageDestination, base: ManifestsIndex):
        self._destination = destination
        self._base = base

    @property
    def reference(self) -> ImageReference:
        return self._destination.reference

    def try_reusing_blob(self, ctx: OperationContext, descriptor: Descriptor) -> bool:
        """
        Skip blobs that are layers of the base image.

        Returns True iff the base index has the digest; otherwise False so the
        copy writes the blob through the normal path.
        """
        if self._base.has_layer(descriptor.digest):
            logger.debug(f"Layer {descriptor.digest} present in base, skipping")
            return True
        return False

    def put_blob(self, ctx: OperationContext, stream: Iterable[bytes],
                 descriptor: Descriptor) -> None:
        self._destination.put_blob(ctx, stream, descriptor)

    def put_manifest(self, ctx: OperationContext, manifest: bytes, media_type: str,
                     instance_digest: Optional[str] = None) -> None:
        self._destination.put_manifest(ctx, manifest, media_type, instance_digest)

    def commit(self, ctx: OperationContext) -> None:
        self._destination.commit(ctx)

    def close(self) -> None:
        self._destination.close()


class Writer:
    """
    Image reference whose destination skips the layers of a base image.

    Use ``from_scratch`` when there is no base (everything is copied) and
    ``from_base`` to skip the layers of an existing image. The writer can be
    handed to the copy engine wherever an ``ImageReference`` is expected.
    """

    def __init__(self, reference: ImageReference, base: ManifestsIndex):
        self._reference = reference
        self.base = base

    @property
    def transport_name(self) -> str:
        return self._reference.transport_name

    def string_within_transport(self) -> str:
        return self._reference.string_within_transport()

    def new_image_source(self, ctx: OperationContext, sysctx: SystemContext) -> ImageSource:
        return self._reference.new_image_source(ctx, sysctx)

    def new_image_destination(self, ctx: OperationContext, sysctx: SystemContext) -> ReusingDestination:
        """Open the wrapped destination and decorate it with the base index."""
        destination = self._reference.new_image_destination(ctx, sysctx)
        return ReusingDestination(destination, self.base)

    def __str__(self) -> str:
        return f"{self.transport_name}:{self.string_within_transport()}"

    @classmethod
    def from_scratch(cls, ctx: OperationContext, to: ImageReference,
                     sysctx: SystemContext) -> Writer:
        """Writer with an empty base: nothing is skipped."""
        ctx.check()
        return cls(to, ManifestsIndex(sysctx))

    @classmethod
    def from_base(cls, ctx: OperationContext, base: ImageReference, to: ImageReference,
                  sysctx: SystemContext, *, max_workers: int = DEFAULT_FETCH_WORKERS) -> Writer:
        """
        Writer skipping every layer of ``base``.

        The base manifests are fetched before anything is written.

        Raises:
            ReferenceResolutionError, ManifestFetchError, ManifestParseError:
                If the base image cannot be indexed
        """
        index = ManifestsIndex(sysctx, max_workers=max_workers)
        index.fetch(ctx, base)
        return cls(to, index)
