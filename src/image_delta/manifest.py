"""
Manifest and manifest list parsing.

Turns raw manifest payloads (OCI image manifest, OCI image index, Docker
schema 2 manifest and manifest list, Docker schema 1) into small immutable
value objects. Only the fields needed to enumerate blobs and pick platform
instances are modelled; the raw bytes are kept so manifests can be written
out unchanged.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ManifestParseError
from .storage.oci_media_types import (
    DOCKER_V2_SCHEMA1_MANIFEST,
    DOCKER_V2_SCHEMA1_SIGNED_MANIFEST,
    DOCKER_V2_SCHEMA2_MANIFEST,
    MULTI_IMAGE_TYPES,
    OCI_IMAGE_INDEX,
    OCI_IMAGE_MANIFEST,
    SINGLE_IMAGE_TYPES,
)

__all__ = [
    "Descriptor",
    "Platform",
    "Manifest",
    "ManifestList",
    "DIGEST_RE",
    "validate_digest",
    "is_multi_image",
    "guess_media_type",
    "parse_manifest",
    "parse_manifest_list",
    "build_digest_set",
]

DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")

# Layer digests of schema 1 manifests are listed top layer first
_SCHEMA1_TYPES = frozenset({DOCKER_V2_SCHEMA1_MANIFEST, DOCKER_V2_SCHEMA1_SIGNED_MANIFEST})


def validate_digest(digest: str) -> str:
    """
    Check ``digest`` against the OCI digest grammar.

    Raises:
        ManifestParseError: If the digest is malformed
    """
    if not isinstance(digest, str) or not DIGEST_RE.match(digest):
        raise ManifestParseError(f"invalid digest: {digest!r}")
    return digest


@dataclass(frozen=True)
class Platform:
    """Platform of a manifest list entry."""
    os: str
    architecture: str
    variant: str = ""

    def __str__(self) -> str:
        base = f"{self.os}/{self.architecture}"
        return f"{base}/{self.variant}" if self.variant else base


@dataclass(frozen=True)
class Descriptor:
    """
    Content descriptor.

    A layer or config entry of a manifest, or a child entry of a manifest
    list (then ``platform`` is usually set).
    """
    digest: str
    size: int = -1
    media_type: str = ""
    platform: Optional[Platform] = None
    annotations: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_dict(cls, data: Any) -> Descriptor:
        if not isinstance(data, dict):
            raise ManifestParseError(f"descriptor must be an object, got {type(data).__name__}")
        digest = validate_digest(data.get("digest"))
        size = data.get("size", -1)
        if not isinstance(size, int) or isinstance(size, bool):
            raise ManifestParseError(f"descriptor {digest} has non-integer size")
        platform = None
        raw_platform = data.get("platform")
        if isinstance(raw_platform, dict):
            platform = Platform(
                os=str(raw_platform.get("os", "")),
                architecture=str(raw_platform.get("architecture", "")),
                variant=str(raw_platform.get("variant", "") or ""),
            )
        annotations = data.get("annotations") or {}
        return cls(
            digest=digest,
            size=size,
            media_type=str(data.get("mediaType", "") or ""),
            platform=platform,
            annotations=dict(annotations) if isinstance(annotations, dict) else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"mediaType": self.media_type, "digest": self.digest, "size": self.size}
        if self.platform is not None:
            out["platform"] = {"os": self.platform.os, "architecture": self.platform.architecture}
            if self.platform.variant:
                out["platform"]["variant"] = self.platform.variant
        if self.annotations:
            out["annotations"] = dict(self.annotations)
        return out


@dataclass(frozen=True)
class Manifest:
    """
    One platform-specific image manifest.

    Attributes:
        media_type: Manifest media type
        config: Config blob descriptor (None for schema 1)
        layers: Layer descriptors, base layer first
        raw: Payload exactly as fetched
    """
    media_type: str
    config: Optional[Descriptor]
    layers: Tuple[Descriptor, ...]
    raw: bytes = field(repr=False, compare=False)

    def layer_infos(self) -> List[Descriptor]:
        return list(self.layers)

    def blobs(self) -> List[Descriptor]:
        """Config (when present) followed by the layers, in copy order."""
        head = [self.config] if self.config is not None else []
        return head + list(self.layers)


@dataclass(frozen=True)
class ManifestList:
    """OCI image index or Docker manifest list."""
    media_type: str
    manifests: Tuple[Descriptor, ...]
    raw: bytes = field(repr=False, compare=False)

    def instances(self) -> List[str]:
        """Child manifest digests in document order."""
        return [entry.digest for entry in self.manifests]


def is_multi_image(media_type: str) -> bool:
    return media_type in MULTI_IMAGE_TYPES


def _load_json(raw: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ManifestParseError(f"error parsing manifest: invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ManifestParseError("error parsing manifest: top level must be an object")
    return data


def guess_media_type(raw: bytes) -> str:
    """
    Infer the media type of a manifest payload.

    Used when a transport returns no (or a generic) content type. Follows the
    ``mediaType`` field when present, otherwise the document shape.

    Raises:
        ManifestParseError: If the payload is not a recognizable manifest
    """
    data = _load_json(raw)
    declared = data.get("mediaType")
    if isinstance(declared, str) and declared:
        return declared
    schema = data.get("schemaVersion")
    if schema == 1:
        return DOCKER_V2_SCHEMA1_SIGNED_MANIFEST if "signatures" in data else DOCKER_V2_SCHEMA1_MANIFEST
    if "manifests" in data:
        return OCI_IMAGE_INDEX
    if "layers" in data or "config" in data:
        return OCI_IMAGE_MANIFEST
    raise ManifestParseError("error parsing manifest: unrecognized manifest document")


def _normalize_media_type(raw: bytes, media_type: str) -> str:
    media_type = (media_type or "").split(";", 1)[0].strip()
    if media_type in SINGLE_IMAGE_TYPES or media_type in MULTI_IMAGE_TYPES:
        return media_type
    return guess_media_type(raw)


def parse_manifest(raw: bytes, media_type: str = "") -> Manifest:
    """
    Parse a single-image manifest.

    Args:
        raw: Manifest payload
        media_type: Content type reported by the transport; guessed from the
            payload when empty or generic

    Raises:
        ManifestParseError: For lists, unknown media types or malformed documents
    """
    media_type = _normalize_media_type(raw, media_type)
    if is_multi_image(media_type):
        raise ManifestParseError(f"error parsing manifest: {media_type} is a manifest list")
    data = _load_json(raw)

    if media_type in _SCHEMA1_TYPES:
        fs_layers = data.get("fsLayers")
        if not isinstance(fs_layers, list):
            raise ManifestParseError("error parsing manifest: schema 1 manifest without fsLayers")
        layers: List[Descriptor] = []
        seen = set()
        for entry in reversed(fs_layers):
            if not isinstance(entry, dict):
                raise ManifestParseError("error parsing manifest: malformed fsLayers entry")
            digest = validate_digest(entry.get("blobSum"))
            if digest in seen:
                continue
            seen.add(digest)
            layers.append(Descriptor(digest=digest, media_type="application/octet-stream"))
        return Manifest(media_type=media_type, config=None, layers=tuple(layers), raw=raw)

    if media_type not in (OCI_IMAGE_MANIFEST, DOCKER_V2_SCHEMA2_MANIFEST):
        raise ManifestParseError(f"error parsing manifest: unsupported media type {media_type}")
    if "config" not in data:
        raise ManifestParseError("error parsing manifest: missing config descriptor")
    raw_layers = data.get("layers", [])
    if not isinstance(raw_layers, list):
        raise ManifestParseError("error parsing manifest: layers must be a list")
    return Manifest(
        media_type=media_type,
        config=Descriptor.from_dict(data["config"]),
        layers=tuple(Descriptor.from_dict(layer) for layer in raw_layers),
        raw=raw,
    )


def parse_manifest_list(raw: bytes, media_type: str = "") -> ManifestList:
    """
    Parse an OCI image index or Docker manifest list.

    Raises:
        ManifestParseError: If the payload is not a list or is malformed
    """
    media_type = _normalize_media_type(raw, media_type)
    if not is_multi_image(media_type):
        raise ManifestParseError(f"error parsing manifests: {media_type} is not a manifest list")
    data = _load_json(raw)
    entries = data.get("manifests")
    if not isinstance(entries, list):
        raise ManifestParseError("error parsing manifests: manifests must be a list")
    return ManifestList(
        media_type=media_type,
        manifests=tuple(Descriptor.from_dict(entry) for entry in entries),
        raw=raw,
    )


def build_digest_set(manifests: Iterable[Manifest]) -> frozenset:
    """Union of the layer digests of ``manifests`` (config blobs excluded)."""
    return frozenset(layer.digest for man in manifests for layer in man.layers)

