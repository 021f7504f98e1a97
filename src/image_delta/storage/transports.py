"""
Transport-qualified image names.

``docker://[domain/]repository[:tag|@digest]`` and
``oci-archive:path[:image-name]``.
"""
from __future__ import annotations

from typing import Optional

from ..errors import ReferenceResolutionError
from .base import ClientFactory, ImageReference
from .docker import DOCKER_TRANSPORT, parse_docker_reference
from .oci_archive import OCI_ARCHIVE_TRANSPORT, OciArchiveReference

__all__ = ["parse_image_name", "docker_reference", "oci_archive_reference"]


def docker_reference(value: str, *, client_factory: Optional[ClientFactory] = None) -> ImageReference:
    """Parse a registry reference, with or without the ``docker://`` prefix."""
    if value.startswith(f"{DOCKER_TRANSPORT}://"):
        return parse_image_name(value, client_factory=client_factory)
    return parse_docker_reference(value, client_factory=client_factory)


def oci_archive_reference(value: str) -> OciArchiveReference:
    """Parse ``path[:image-name]`` (the part after ``oci-archive:``)."""
    path, _, image_name = value.partition(":")
    if not path:
        raise ReferenceResolutionError(f"invalid oci-archive reference {value!r}: missing path")
    return OciArchiveReference(path, image_name or None)


def parse_image_name(name: str, *, client_factory: Optional[ClientFactory] = None) -> ImageReference:
    """
    Parse a transport-qualified image name.

    Raises:
        ReferenceResolutionError: For unknown transports or malformed references
    """
    transport, sep, within = name.partition(":")
    if not sep:
        raise ReferenceResolutionError(f"invalid image name {name!r}, expected transport:reference")
    if transport == DOCKER_TRANSPORT:
        if not within.startswith("//"):
            raise ReferenceResolutionError(f"invalid image name {name!r}: docker references start with '//'")
        return parse_docker_reference(within, client_factory=client_factory)
    if transport == OCI_ARCHIVE_TRANSPORT:
        return oci_archive_reference(within)
    raise ReferenceResolutionError(f"unknown transport {transport!r} in image name {name!r}")
