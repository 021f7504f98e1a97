"""
Image copy engine.

Copies an image, or a platform selection of a manifest list, from a source
reference into a destination reference. Before each blob is transferred the
destination is asked whether it can reuse it; this is the hook incremental
pulls use to leave out layers of a base image.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, TextIO

from .context import OperationContext
from .errors import TransferError
from .manifest import (
    Descriptor,
    Manifest,
    Platform,
    is_multi_image,
    parse_manifest,
    parse_manifest_list,
)
from .platforms import choose_instance, host_platform
from .policy import PolicyContext
from .storage.base import ImageDestination, ImageReference, ImageSource, SystemContext
from .storage.oci_errors import OciError

__all__ = ["ImageListSelection", "CopyOptions", "copy_image"]

logger = logging.getLogger(__name__)


class ImageListSelection(enum.Enum):
    """Which instances of a manifest list are copied."""
    COPY_SYSTEM_IMAGE = "system"
    COPY_ALL_IMAGES = "all"


@dataclass
class CopyOptions:
    """
    Options for ``copy_image``.

    Attributes:
        report: Stream receiving one progress line per step (None discards)
        source_ctx: Transport configuration for the source
        destination_ctx: Transport configuration for the destination
        selection: Instances of a manifest list to copy
        platform: Platform matched by COPY_SYSTEM_IMAGE (host when None)
    """
    report: Optional[TextIO] = None
    source_ctx: SystemContext = field(default_factory=SystemContext)
    destination_ctx: SystemContext = field(default_factory=SystemContext)
    selection: ImageListSelection = ImageListSelection.COPY_SYSTEM_IMAGE
    platform: Optional[Platform] = None


def _short(digest: str) -> str:
    return digest.split(":", 1)[-1][:12]


class _Copier:
    """State of one copy_image call."""

    def __init__(self, ctx: OperationContext, source: ImageSource,
                 dest: ImageDestination, options: CopyOptions):
        self.ctx = ctx
        self.source = source
        self.dest = dest
        self.options = options

    def report(self, message: str) -> None:
        if self.options.report is not None:
            self.options.report.write(message + "\n")
            self.options.report.flush()

    def copy(self) -> None:
        raw, media_type = self.get_manifest(None)
        if not is_multi_image(media_type):
            self.copy_single(raw, media_type, None)
        elif self.options.selection is ImageListSelection.COPY_ALL_IMAGES:
            manifest_list = parse_manifest_list(raw, media_type)
            self.report(f"Copying {len(manifest_list.manifests)} images from manifest list")
            for i, entry in enumerate(manifest_list.manifests, start=1):
                self.report(f"Copying image {entry.digest} ({i}/{len(manifest_list.manifests)})")
                child_raw, child_type = self.get_manifest(entry.digest)
                self.copy_single(child_raw, child_type, entry.digest)
            self.report("Writing manifest list to image destination")
            self.put_manifest(raw, media_type, None)
        else:
            manifest_list = parse_manifest_list(raw, media_type)
            wanted = self.options.platform or host_platform()
            entry = choose_instance(manifest_list, wanted)
            logger.debug(f"Selected {entry.digest} for {wanted}")
            child_raw, child_type = self.get_manifest(entry.digest)
            self.copy_single(child_raw, child_type, None)
        self.ctx.check()
        try:
            self.dest.commit(self.ctx)
        except OciError as e:
            raise TransferError(f"error committing destination: {e}", stage="copy") from e

    def copy_single(self, raw: bytes, media_type: str, instance_digest: Optional[str]) -> None:
        manifest = parse_manifest(raw, media_type)
        self.copy_blobs(manifest)
        self.report("Writing manifest to image destination")
        self.put_manifest(raw, manifest.media_type, instance_digest)

    def copy_blobs(self, manifest: Manifest) -> None:
        for descriptor in manifest.blobs():
            kind = "config" if descriptor is manifest.config else "blob"
            self.ctx.check()
            if self.try_reusing_blob(descriptor):
                self.report(f"Copying {kind} {_short(descriptor.digest)} skipped: already exists")
                continue
            self.report(f"Copying {kind} {_short(descriptor.digest)}")
            self.copy_blob(descriptor)

    def try_reusing_blob(self, descriptor: Descriptor) -> bool:
        try:
            return self.dest.try_reusing_blob(self.ctx, descriptor)
        except OciError as e:
            raise TransferError(f"error checking blob {descriptor.digest}: {e}", stage="copy") from e

    def copy_blob(self, descriptor: Descriptor) -> None:
        try:
            with self.source.get_blob(self.ctx, descriptor.digest) as reader:
                self.dest.put_blob(self.ctx, self._checked(reader), descriptor)
        except OciError as e:
            raise TransferError(f"error copying blob {descriptor.digest}: {e}", stage="copy") from e

    def _checked(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in chunks:
            self.ctx.check()
            yield chunk

    def get_manifest(self, instance_digest: Optional[str]):
        self.ctx.check()
        try:
            return self.source.get_manifest(self.ctx, instance_digest)
        except OciError as e:
            raise TransferError(f"error reading manifest: {e}", stage="copy") from e

    def put_manifest(self, raw: bytes, media_type: str, instance_digest: Optional[str]) -> None:
        self.ctx.check()
        try:
            self.dest.put_manifest(self.ctx, raw, media_type, instance_digest)
        except OciError as e:
            raise TransferError(f"error writing manifest: {e}", stage="copy") from e


def copy_image(ctx: OperationContext, policy: PolicyContext, dest_ref: ImageReference,
               src_ref: ImageReference, options: Optional[CopyOptions] = None) -> None:
    """
    Copy the image at ``src_ref`` into ``dest_ref``.

    Args:
        ctx: Operation context, checked before every manifest and blob
        policy: Trust policy evaluated against the source
        dest_ref: Destination reference (e.g. an incremental ``Writer``)
        src_ref: Source reference
        options: Copy options

    Raises:
        TransferError: If the policy rejects the image or any transfer fails
        ManifestParseError: If a manifest cannot be parsed
        OperationCancelled: If ``ctx`` is cancelled or expires
    """
    options = options or CopyOptions()
    if not policy.is_image_allowed(src_ref):
        raise TransferError(
            f"source image {src_ref.transport_name}:{src_ref.string_within_transport()} "
            "rejected by policy",
            stage="copy",
        )
    ctx.check()
    try:
        source = src_ref.new_image_source(ctx, options.source_ctx)
    except OciError as e:
        raise TransferError(f"error opening source image: {e}", stage="copy") from e
    try:
        try:
            dest = dest_ref.new_image_destination(ctx, options.destination_ctx)
        except OciError as e:
            raise TransferError(f"error opening destination image: {e}", stage="copy") from e
        try:
            _Copier(ctx, source, dest, options).copy()
        finally:
            dest.close()
    finally:
        source.close()
