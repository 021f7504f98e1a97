"""
Layer index over the manifests of one image.

``ManifestsIndex`` fetches every platform manifest of an image (the image
itself, or all children of its manifest list) and answers "is this layer part
of that image" for the incremental writer and for push vetting.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Tuple

from .context import OperationContext
from .errors import ManifestFetchError, ReferenceResolutionError
from .manifest import Manifest, build_digest_set, is_multi_image, parse_manifest, parse_manifest_list
from .storage.base import ImageReference, ImageSource, SystemContext
from .storage.oci_errors import OciError

__all__ = ["ManifestsIndex", "DEFAULT_FETCH_WORKERS"]

logger = logging.getLogger(__name__)

DEFAULT_FETCH_WORKERS = 4


@dataclass(frozen=True)
class _Snapshot:
    manifests: Tuple[Manifest, ...] = ()
    digests: frozenset = frozenset()


class ManifestsIndex:
    """
    Indexes the layers referred by all manifests of one image.

    The fetched manifests and their layer digests live in one immutable
    snapshot. A fetch builds a complete new snapshot and installs it with a
    single assignment, so readers see either the previous or the new set and
    never a mix. A failed or cancelled fetch leaves the previous snapshot in
    place. Fetches on the same index are serialised.

    An index that was never fetched is empty: ``has_layer`` is False for every
    digest. That is how a "scratch" base is represented.
    """

    def __init__(self, sysctx: SystemContext, *, max_workers: int = DEFAULT_FETCH_WORKERS):
        """
        Args:
            sysctx: Transport configuration used to open the image source
            max_workers: Upper bound of concurrent child manifest fetches for
                manifest lists (1 fetches them sequentially)
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.sysctx = sysctx
        self.max_workers = max_workers
        self._fetch_lock = threading.Lock()
        self._snapshot = _Snapshot()

    def has_layer(self, digest: str) -> bool:
        """True if any indexed manifest refers to the layer."""
        return digest in self._snapshot.digests

    def manifests(self) -> List[Manifest]:
        """Manifests of the last successful fetch (a copy)."""
        return list(self._snapshot.manifests)

    @property
    def digests(self) -> frozenset:
        """Layer digests of the last successful fetch."""
        return self._snapshot.digests

    def fetch(self, ctx: OperationContext, reference: ImageReference) -> None:
        """
        Fetch the manifests of ``reference`` and rebuild the index.

        Raises:
            ReferenceResolutionError: If the image source cannot be opened
            ManifestFetchError: If a manifest cannot be retrieved
            ManifestParseError: If a manifest payload is invalid
            OperationCancelled: If ``ctx`` is cancelled or expires
        """
        ctx.check()
        try:
            source = reference.new_image_source(ctx, self.sysctx)
        except OciError as e:
            raise ReferenceResolutionError(f"error creating image source: {e}") from e
        try:
            self.fetch_from_source(ctx, source)
        finally:
            source.close()

    def fetch_from_source(self, ctx: OperationContext, source: ImageSource) -> None:
        """Same as ``fetch`` on an already opened source (left open)."""
        with self._fetch_lock:
            raw, media_type = self._get_manifest(ctx, source, None)
            if is_multi_image(media_type):
                manifests = self._fetch_from_list(ctx, source, raw, media_type)
            else:
                manifests = [parse_manifest(raw, media_type)]
            snapshot = _Snapshot(manifests=tuple(manifests), digests=build_digest_set(manifests))
            self._snapshot = snapshot
            logger.debug(f"Indexed {len(snapshot.digests)} layers from {len(snapshot.manifests)} manifests")

    def _get_manifest(self, ctx: OperationContext, source: ImageSource,
                      instance_digest: str | None) -> Tuple[bytes, str]:
        ctx.check()
        try:
            return source.get_manifest(ctx, instance_digest)
        except OciError as e:
            what = "child manifest" if instance_digest else "manifest"
            raise ManifestFetchError(f"error getting {what}: {e}") from e

    def _fetch_child(self, ctx: OperationContext, source: ImageSource, digest: str) -> Manifest:
        raw, media_type = self._get_manifest(ctx, source, digest)
        return parse_manifest(raw, media_type)

    def _fetch_from_list(self, ctx: OperationContext, source: ImageSource,
                         raw: bytes, media_type: str) -> List[Manifest]:
        """Fetch every child of a manifest list; all succeed or nothing is returned."""
        digests = parse_manifest_list(raw, media_type).instances()
        workers = min(self.max_workers, len(digests))
        if workers <= 1:
            return [self._fetch_child(ctx, source, digest) for digest in digests]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="manifest-fetch") as pool:
            futures = [pool.submit(self._fetch_child, ctx, source, digest) for digest in digests]
            try:
                return [future.result() for future in futures]
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
