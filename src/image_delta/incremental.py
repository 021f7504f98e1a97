"""
Incremental image operations.

``Incremental`` pulls the difference between a base and a final image into
an OCI archive, vets that a destination registry holds every layer such an
archive leaves out, and pushes the archive to that destination.

Example:
    inc = Incremental(settings, report=sys.stderr)
    ctx = OperationContext.background()
    with inc.pull(ctx, "registry.example.com/app:v1", "registry.example.com/app:v2") as archive:
        shutil.copyfileobj(archive, out)
    inc.push_vet(ctx, "diff.tar", "mirror.example.com/app:v2")
    inc.push(ctx, "diff.tar", "mirror.example.com/app:v2")
"""
from __future__ import annotations

import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from typing import Iterator, Optional, TextIO

from .context import OperationContext
from .errors import (
    BlobMissingError,
    IncrementalError,
    OperationCancelled,
    ReferenceResolutionError,
    ResourceCleanupError,
    TransferError,
)
from .manifest_index import ManifestsIndex
from .policy import PolicyContext, default_policy_context
from .settings import Settings
from .storage.base import ClientFactory, Credentials, ImageSource, SystemContext
from .storage.docker import DockerReference
from .storage.oci_archive import OciArchiveReference
from .storage.oci_errors import OciError
from .storage.transports import docker_reference
from .transfer import CopyOptions, ImageListSelection, copy_image
from .writer import Writer

__all__ = ["SCRATCH", "Authentications", "RemoveOnClose", "Incremental"]

logger = logging.getLogger(__name__)

# Base reference meaning "no base image": the pull copies every layer
SCRATCH = "scratch"


@dataclass(frozen=True)
class Authentications:
    """
    Credentials for the three registries an incremental workflow touches.

    For a difference between an image on registry X and one on registry Y,
    later pushed to registry Z: ``base_auth`` is for X, ``final_auth`` for Y
    and ``push_auth`` for Z. None falls back to the Docker config.
    """
    base_auth: Optional[Credentials] = None
    final_auth: Optional[Credentials] = None
    push_auth: Optional[Credentials] = None


class RemoveOnClose:
    """
    Readable handle on a temporary file that is deleted when closed.

    ``close()`` closes the file and removes it exactly once, whether or not
    anything was read. A failed removal is logged, never raised.
    """

    def __init__(self, fileobj, path: str):
        self._file = fileobj
        self.path = path
        self._released = False

    @classmethod
    def open(cls, path: str) -> RemoveOnClose:
        return cls(open(path, "rb"), path)

    @property
    def name(self) -> str:
        return self.path

    @property
    def closed(self) -> bool:
        return self._released

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        return self._file.read(size)

    def readinto(self, buffer) -> int:
        return self._file.readinto(buffer)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._file)

    def close(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._file.close()
        finally:
            _remove_file(self.path)

    def __enter__(self) -> RemoveOnClose:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"RemoveOnClose({self.path!r}, closed={self._released})"


def _remove_file(path: str) -> None:
    """Remove ``path`` if it exists; failures are logged as ResourceCleanupError."""
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        err = ResourceCleanupError(f"error removing temporary file {path}: {e}")
        logger.warning(str(err))


def _restage(exc: IncrementalError, message: str, stage: str) -> IncrementalError:
    """Same error class with ``message`` prepended and ``stage`` set."""
    return type(exc)(f"{message}: {exc}", stage=stage)


class Incremental:
    """
    Pull, vet and push incremental image differences.

    Args:
        settings: Configuration (defaults to ``Settings()``)
        report: Text stream receiving copy progress (None discards it)
        auths: Registry credentials
        client_factory: Builds registry clients (defaults to the HTTP client)
        policy: Trust policy (defaults to accepting everything)
    """

    def __init__(self, settings: Optional[Settings] = None, *, report: Optional[TextIO] = None,
                 auths: Optional[Authentications] = None,
                 client_factory: Optional[ClientFactory] = None,
                 policy: Optional[PolicyContext] = None):
        self.settings = settings or Settings()
        self.report = report
        self.auths = auths or Authentications()
        self.client_factory = client_factory
        self.policy = policy or default_policy_context()

    @property
    def tmpdir(self) -> str:
        return self.settings.tmpdir or tempfile.gettempdir()

    @property
    def selection(self) -> ImageListSelection:
        if self.settings.all_platforms:
            return ImageListSelection.COPY_ALL_IMAGES
        return ImageListSelection.COPY_SYSTEM_IMAGE

    def _sysctx(self, credentials: Optional[Credentials] = None, insecure: bool = False) -> SystemContext:
        return SystemContext(
            credentials=credentials,
            insecure=insecure,
            tmpdir=self.tmpdir,
            http_timeout_s=self.settings.http_timeout_s,
        )

    def _copy_options(self, source_ctx: SystemContext, destination_ctx: SystemContext) -> CopyOptions:
        return CopyOptions(
            report=self.report,
            source_ctx=source_ctx,
            destination_ctx=destination_ctx,
            selection=self.selection,
            platform=self.settings.platform,
        )

    def _parse(self, reference: str, what: str) -> DockerReference:
        try:
            return docker_reference(reference, client_factory=self.client_factory)
        except ReferenceResolutionError as e:
            raise _restage(e, f"error parsing {what} reference", what) from e

    def pull(self, ctx: OperationContext, base: str, final: str) -> RemoveOnClose:
        """
        Pull the difference between ``base`` and ``final`` into an OCI archive.

        The archive's manifests describe ``final`` in full but it only holds the
        blobs ``base`` lacks. With ``base`` equal to ``"scratch"`` every blob is
        included. Close the returned handle to delete the archive.

        Raises:
            ReferenceResolutionError: If a reference is malformed or cannot be opened
            ManifestFetchError, ManifestParseError: If the base cannot be indexed
            TransferError: If copying the final image fails
            OperationCancelled: If ``ctx`` is cancelled or expires
        """
        ctx.check()
        final_ref = self._parse(final, "final")
        base_ref = None if base == SCRATCH else self._parse(base, "base")

        path = os.path.join(self.tmpdir, f"{uuid.uuid4()}.tar")
        archive_ref = OciArchiveReference(path)
        logger.debug(f"Pulling {final_ref} over {base_ref or SCRATCH} into {path}")
        try:
            base_ctx = self._sysctx(self.auths.base_auth, self.settings.insecure_base)
            try:
                if base_ref is None:
                    writer = Writer.from_scratch(ctx, archive_ref, base_ctx)
                else:
                    writer = Writer.from_base(ctx, base_ref, archive_ref, base_ctx,
                                              max_workers=self.settings.manifest_fetch_workers)
            except OperationCancelled:
                raise
            except IncrementalError as e:
                raise _restage(e, "error creating incremental writer", "base") from e

            options = self._copy_options(
                source_ctx=self._sysctx(self.auths.final_auth, self.settings.insecure_final),
                destination_ctx=self._sysctx(),
            )
            try:
                copy_image(ctx, self.policy, writer, final_ref, options)
            except OperationCancelled:
                raise
            except IncrementalError as e:
                raise _restage(e, "failed copying layers", "final") from e

            try:
                return RemoveOnClose.open(path)
            except OSError as e:
                raise TransferError(f"error opening tarball: {e}", stage="final") from e
        except BaseException:
            _remove_file(path)
            raise

    def push_vet(self, ctx: OperationContext, archive_path: str, destination: str) -> None:
        """
        Check that ``destination`` holds every layer the archive lacks.

        Nothing is written anywhere.

        Raises:
            BlobMissingError: For the first layer absent from both the archive
                and the destination
            ReferenceResolutionError, ManifestFetchError, ManifestParseError:
                If either side cannot be indexed
            OperationCancelled: If ``ctx`` is cancelled or expires
        """
        ctx.check()
        dst_ref = self._parse(destination, "destination")
        workers = self.settings.manifest_fetch_workers

        dst_index = ManifestsIndex(self._sysctx(self.auths.push_auth, self.settings.insecure_push),
                                   max_workers=workers)
        try:
            dst_index.fetch(ctx, dst_ref)
        except OperationCancelled:
            raise
        except IncrementalError as e:
            raise _restage(e, "error fetching destination manifests", "destination") from e

        local_ctx = self._sysctx()
        try:
            source = OciArchiveReference(archive_path).new_image_source(ctx, local_ctx)
        except OciError as e:
            raise ReferenceResolutionError(f"error creating source image: {e}", stage="source") from e
        try:
            src_index = ManifestsIndex(local_ctx, max_workers=workers)
            try:
                src_index.fetch_from_source(ctx, source)
            except OperationCancelled:
                raise
            except IncrementalError as e:
                raise _restage(e, "error fetching source manifests", "source") from e

            for manifest in src_index.manifests():
                for layer in manifest.layer_infos():
                    ctx.check()
                    if self._in_archive(ctx, source, layer.digest):
                        continue
                    if dst_index.has_layer(layer.digest):
                        continue
                    raise BlobMissingError(layer.digest, stage="destination")
        finally:
            source.close()

    @staticmethod
    def _in_archive(ctx: OperationContext, source: ImageSource, digest: str) -> bool:
        try:
            blob = source.get_blob(ctx, digest)
        except OciError as e:
            logger.debug(f"Layer {digest} not in archive: {e}")
            return False
        blob.close()
        return True

    def push(self, ctx: OperationContext, archive_path: str, destination: str) -> None:
        """
        Copy the archive into ``destination`` as-is.

        Layers the archive lacks must already be in the destination repository
        (see ``push_vet``); otherwise the copy fails.

        Raises:
            ReferenceResolutionError: If the destination reference is malformed
            TransferError: If the copy fails
            OperationCancelled: If ``ctx`` is cancelled or expires
        """
        ctx.check()
        dst_ref = self._parse(destination, "destination")
        src_ref = OciArchiveReference(archive_path)
        options = self._copy_options(
            source_ctx=self._sysctx(),
            destination_ctx=self._sysctx(self.auths.push_auth, self.settings.insecure_push),
        )
        logger.debug(f"Pushing {src_ref} to {dst_ref}")
        try:
            copy_image(ctx, self.policy, dst_ref, src_ref, options)
        except OperationCancelled:
            raise
        except IncrementalError as e:
            raise _restage(e, "failed copying layers", "copy") from e
