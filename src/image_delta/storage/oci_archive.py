"""
OCI archive transport.

An oci-archive is a tarball of an OCI image layout: ``oci-layout``,
``index.json`` and content-addressed files under ``blobs/<alg>/<hex>``.
Sources extract the layout into a scratch directory; destinations stage one
there and write the tarball on commit.

Archives produced by incremental pulls are allowed to lack blobs that their
manifests reference; reading such a blob raises ``OciNotFound``.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..manifest import Descriptor, guess_media_type
from .base import CHUNK_SIZE, BlobReader, SystemContext
from .oci_errors import OciDigestMismatch, OciError, OciNotFound
from .oci_media_types import (
    OCI_BLOBS_DIR,
    OCI_IMAGE_INDEX,
    OCI_INDEX_FILE,
    OCI_LAYOUT_FILE,
    OCI_LAYOUT_VERSION,
    OCI_REF_NAME_ANNOTATION,
)

__all__ = [
    "OCI_ARCHIVE_TRANSPORT",
    "OciArchiveReference",
    "OciArchiveSource",
    "OciArchiveDestination",
]

logger = logging.getLogger(__name__)

OCI_ARCHIVE_TRANSPORT = "oci-archive"

_BLOB_MEMBER_RE = re.compile(r"^blobs/([a-z0-9][a-z0-9+._-]*)/([a-zA-Z0-9=_-]+)$")
_DIGEST_RE = re.compile(r"^([a-z0-9][a-z0-9+._-]*):([a-zA-Z0-9=_-]+)$")


def _split_digest(digest: str) -> Tuple[str, str]:
    match = _DIGEST_RE.match(digest or "")
    if not match:
        raise OciError(f"invalid digest: {digest!r}")
    return match.group(1), match.group(2)


def _blob_path(root: Path, digest: str) -> Path:
    algorithm, encoded = _split_digest(digest)
    return root / OCI_BLOBS_DIR / algorithm / encoded


class OciArchiveReference:
    """
    Path of an OCI archive, optionally with the image name inside it.

    The image name matches the ``org.opencontainers.image.ref.name``
    annotation of an ``index.json`` entry.
    """

    def __init__(self, path: str | os.PathLike, image_name: Optional[str] = None):
        self.path = os.fspath(path)
        self.image_name = image_name or None

    @property
    def transport_name(self) -> str:
        return OCI_ARCHIVE_TRANSPORT

    def string_within_transport(self) -> str:
        return f"{self.path}:{self.image_name}" if self.image_name else self.path

    def new_image_source(self, ctx, sysctx: SystemContext) -> OciArchiveSource:
        return OciArchiveSource(self, tmpdir=sysctx.tmpdir)

    def new_image_destination(self, ctx, sysctx: SystemContext) -> OciArchiveDestination:
        return OciArchiveDestination(self, tmpdir=sysctx.tmpdir)

    def __str__(self) -> str:
        return f"{OCI_ARCHIVE_TRANSPORT}:{self.string_within_transport()}"

    def __repr__(self) -> str:
        return f"OciArchiveReference({self.path!r}, image_name={self.image_name!r})"


def _member_name(member: tarfile.TarInfo) -> str:
    name = member.name
    while name.startswith("./"):
        name = name[2:]
    return name


def _make_staging_dir(tmpdir: Optional[str]) -> Path:
    try:
        return Path(tempfile.mkdtemp(prefix="oci-archive-", dir=tmpdir))
    except OSError as e:
        raise OciError(f"error creating staging directory in {tmpdir}: {e}") from e


def _extract_layout(archive: Path, target: Path) -> None:
    """
    Extract the layout members of ``archive`` into ``target``.

    Only regular files named ``oci-layout``, ``index.json`` or
    ``blobs/<alg>/<hex>`` are written; anything else is skipped, so member
    names can never escape ``target``.
    """
    try:
        with tarfile.open(archive, "r:*") as tar:
            for member in tar:
                name = _member_name(member)
                if not member.isfile():
                    continue
                if name in (OCI_LAYOUT_FILE, OCI_INDEX_FILE):
                    dest = target / name
                else:
                    match = _BLOB_MEMBER_RE.match(name)
                    if not match:
                        logger.debug(f"Skipping archive member {member.name}")
                        continue
                    dest = target / OCI_BLOBS_DIR / match.group(1) / match.group(2)
                dest.parent.mkdir(parents=True, exist_ok=True)
                fileobj = tar.extractfile(member)
                if fileobj is None:
                    continue
                with fileobj, open(dest, "wb") as out:
                    shutil.copyfileobj(fileobj, out, CHUNK_SIZE)
    except (tarfile.TarError, OSError) as e:
        raise OciError(f"error reading archive {archive}: {e}") from e


def _read_index(root: Path) -> List[Dict[str, Any]]:
    if not (root / OCI_LAYOUT_FILE).is_file():
        raise OciError(f"archive is not an OCI image layout: missing {OCI_LAYOUT_FILE}")
    try:
        index = json.loads((root / OCI_INDEX_FILE).read_bytes())
    except FileNotFoundError as e:
        raise OciError(f"archive is not an OCI image layout: missing {OCI_INDEX_FILE}") from e
    except (OSError, ValueError) as e:
        raise OciError(f"invalid {OCI_INDEX_FILE}: {e}") from e
    manifests = index.get("manifests") if isinstance(index, dict) else None
    if not isinstance(manifests, list) or not all(isinstance(m, dict) for m in manifests):
        raise OciError(f"invalid {OCI_INDEX_FILE}: manifests must be a list of descriptors")
    return manifests


def _select_entry(entries: List[Dict[str, Any]], image_name: Optional[str]) -> Dict[str, Any]:
    if image_name:
        for entry in entries:
            if (entry.get("annotations") or {}).get(OCI_REF_NAME_ANNOTATION) == image_name:
                return entry
        raise OciNotFound(f"no image named {image_name!r} in archive")
    if not entries:
        raise OciError("archive contains no images")
    if len(entries) > 1:
        raise OciError("archive contains more than one image; an image name is required")
    return entries[0]


class OciArchiveSource:
    """Reads an image out of an extracted OCI archive."""

    def __init__(self, reference: OciArchiveReference, tmpdir: Optional[str] = None):
        archive = Path(reference.path)
        if not archive.is_file():
            raise OciNotFound(f"archive {archive} does not exist")
        self.reference = reference
        self._root = _make_staging_dir(tmpdir)
        try:
            _extract_layout(archive, self._root)
            self._entry = _select_entry(_read_index(self._root), reference.image_name)
            _split_digest(self._entry.get("digest", ""))
        except Exception:
            shutil.rmtree(self._root, ignore_errors=True)
            raise

    def get_manifest(self, ctx, instance_digest: Optional[str] = None) -> Tuple[bytes, str]:
        digest = instance_digest or self._entry["digest"]
        path = _blob_path(self._root, digest)
        try:
            raw = path.read_bytes()
        except FileNotFoundError as e:
            raise OciNotFound(f"manifest {digest} not found in archive") from e
        except OSError as e:
            raise OciError(f"error reading manifest {digest}: {e}") from e
        media_type = "" if instance_digest else self._entry.get("mediaType", "")
        return raw, media_type or guess_media_type(raw)

    def get_blob(self, ctx, digest: str) -> BlobReader:
        path = _blob_path(self._root, digest)
        try:
            f = open(path, "rb")
        except FileNotFoundError as e:
            raise OciNotFound(f"blob {digest} not found in archive") from e
        except OSError as e:
            raise OciError(f"error reading blob {digest}: {e}") from e
        size = os.fstat(f.fileno()).st_size
        return BlobReader(iter(lambda: f.read(CHUNK_SIZE), b""), f.close, size=size)

    def close(self) -> None:
        shutil.rmtree(self._root, ignore_errors=True)


class OciArchiveDestination:
    """
    Stages an OCI image layout and writes it as a tarball on commit.

    Blobs are verified against their digest as they are written. The archive
    is built next to the target path and renamed into place, so the target
    either does not exist or is complete.
    """

    def __init__(self, reference: OciArchiveReference, tmpdir: Optional[str] = None):
        self._reference = reference
        self._root = _make_staging_dir(tmpdir)
        self._entry: Optional[Dict[str, Any]] = None

    @property
    def reference(self) -> OciArchiveReference:
        return self._reference

    def try_reusing_blob(self, ctx, descriptor) -> bool:
        return _blob_path(self._root, descriptor.digest).is_file()

    def put_blob(self, ctx, stream: Iterable[bytes], descriptor) -> None:
        algorithm, encoded = _split_digest(descriptor.digest)
        try:
            hasher = hashlib.new(algorithm)
        except ValueError as e:
            raise OciError(f"unsupported digest algorithm {algorithm}") from e

        final = _blob_path(self._root, descriptor.digest)
        final.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=final.parent, prefix=encoded[:12] + ".", suffix=".tmp")
        size = 0
        try:
            with os.fdopen(fd, "wb") as out:
                for chunk in stream:
                    hasher.update(chunk)
                    out.write(chunk)
                    size += len(chunk)
            actual = f"{algorithm}:{hasher.hexdigest()}"
            if actual != descriptor.digest:
                raise OciDigestMismatch(
                    f"blob digest mismatch: expected {descriptor.digest}, got {actual}",
                    expected=descriptor.digest, actual=actual,
                )
            if descriptor.size >= 0 and size != descriptor.size:
                raise OciError(f"blob {descriptor.digest} size mismatch: expected {descriptor.size}, got {size}")
            os.replace(temp_path, final)
        except OSError as e:
            raise OciError(f"error writing blob {descriptor.digest}: {e}") from e
        finally:
            if os.path.exists(temp_path):
                os.unlink(temp_path)

    def put_manifest(self, ctx, manifest: bytes, media_type: str,
                     instance_digest: Optional[str] = None) -> None:
        digest = f"sha256:{hashlib.sha256(manifest).hexdigest()}"
        if instance_digest is not None and instance_digest != digest:
            raise OciDigestMismatch(
                f"manifest digest mismatch: expected {instance_digest}, got {digest}",
                expected=instance_digest, actual=digest,
            )
        path = _blob_path(self._root, digest)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(manifest)
        except OSError as e:
            raise OciError(f"error writing manifest {digest}: {e}") from e
        if instance_digest is None:
            annotations = {OCI_REF_NAME_ANNOTATION: self._reference.image_name} if self._reference.image_name else {}
            self._entry = Descriptor(digest=digest, size=len(manifest), media_type=media_type,
                                     annotations=annotations).to_dict()

    def commit(self, ctx) -> None:
        """
        Write ``oci-layout`` and ``index.json`` and tar the layout to the target path.

        Raises:
            OciError: If no manifest was written or the archive cannot be created
        """
        if self._entry is None:
            raise OciError("cannot commit an archive without a manifest")
        index = {"schemaVersion": 2, "mediaType": OCI_IMAGE_INDEX, "manifests": [self._entry]}
        try:
            (self._root / OCI_LAYOUT_FILE).write_text(
                json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION}))
            (self._root / OCI_INDEX_FILE).write_text(json.dumps(index))
            (self._root / OCI_BLOBS_DIR).mkdir(exist_ok=True)
            _write_deterministic_tar(self._root, Path(self._reference.path))
        except OSError as e:
            raise OciError(f"error writing archive {self._reference.path}: {e}") from e
        logger.debug(f"Wrote archive {self._reference.path}")

    def close(self) -> None:
        shutil.rmtree(self._root, ignore_errors=True)


def _iter_entries_sorted(root: Path) -> Iterator[Tuple[Path, str]]:
    """Yield (path, arcname) for every entry under ``root``, sorted by arcname."""
    entries = []
    for path in root.rglob("*"):
        entries.append((path, path.relative_to(root).as_posix()))
    entries.sort(key=lambda item: item[1])
    yield from entries


def _canonical(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    tarinfo.uid = tarinfo.gid = 0
    tarinfo.uname = tarinfo.gname = ""
    tarinfo.mtime = 0
    tarinfo.mode = 0o755 if tarinfo.isdir() else 0o644
    return tarinfo


def _write_deterministic_tar(root: Path, out_path: Path) -> None:
    """Tar ``root`` into ``out_path`` with canonical headers and an atomic rename."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(suffix=".tmp", dir=out_path.parent, prefix=out_path.name + ".")
    try:
        with os.fdopen(temp_fd, "wb") as f:
            with tarfile.open(fileobj=f, mode="w", format=tarfile.USTAR_FORMAT) as tar:
                for path, arcname in _iter_entries_sorted(root):
                    tar.add(path, arcname=arcname, recursive=False, filter=_canonical)
        os.replace(temp_path, out_path)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise
