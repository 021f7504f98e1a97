"""
Docker registry transport.

References look like ``[domain[:port]/]repository[:tag][@digest]`` with the
Docker Hub conventions: no domain means docker.io, and single component
repositories on docker.io live under ``library/``.
"""
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple

from ..errors import ReferenceResolutionError
from .base import BlobReader, ClientFactory, RegistryClient, SystemContext
from .oci_errors import OciDigestMismatch
from .registry_http import create_registry_client

__all__ = [
    "DOCKER_TRANSPORT",
    "DEFAULT_DOMAIN",
    "DEFAULT_TAG",
    "parse_docker_reference",
    "DockerReference",
    "DockerImageSource",
    "DockerImageDestination",
]

logger = logging.getLogger(__name__)

DOCKER_TRANSPORT = "docker"
DEFAULT_DOMAIN = "docker.io"
DEFAULT_TAG = "latest"
_OFFICIAL_PREFIX = "library/"

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")


@dataclass(frozen=True)
class DockerReference:
    """
    Image in a registry repository.

    Exactly one of ``tag`` and ``digest`` is set.
    """
    domain: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None
    client_factory: ClientFactory = field(default=create_registry_client, compare=False, repr=False)

    @property
    def transport_name(self) -> str:
        return DOCKER_TRANSPORT

    @property
    def ref(self) -> str:
        """Tag or digest addressing the top-level manifest."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def name(self) -> str:
        return f"{self.domain}/{self.repository}"

    def string_within_transport(self) -> str:
        if self.digest:
            return f"//{self.name}@{self.digest}"
        return f"//{self.name}:{self.tag}"

    def new_image_source(self, ctx, sysctx: SystemContext) -> DockerImageSource:
        return DockerImageSource(self, self.client_factory(self.domain, sysctx))

    def new_image_destination(self, ctx, sysctx: SystemContext) -> DockerImageDestination:
        return DockerImageDestination(self, self.client_factory(self.domain, sysctx))

    def __str__(self) -> str:
        return f"{DOCKER_TRANSPORT}:{self.string_within_transport()}"


def _split_domain(name: str) -> Tuple[str, str]:
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        domain, remainder = first, rest
    else:
        domain, remainder = DEFAULT_DOMAIN, name
    if domain == "index.docker.io":
        domain = DEFAULT_DOMAIN
    if domain == DEFAULT_DOMAIN and "/" not in remainder:
        remainder = _OFFICIAL_PREFIX + remainder
    return domain, remainder


def parse_docker_reference(value: str, *,
                           client_factory: Optional[ClientFactory] = None) -> DockerReference:
    """
    Parse a docker reference (with or without the leading ``//``).

    Examples:
        "alpine" -> docker.io/library/alpine:latest
        "localhost:5000/app:v1" -> localhost:5000/app:v1
        "quay.io/org/app@sha256:..." -> pinned by digest

    Raises:
        ReferenceResolutionError: If the reference is malformed
    """
    original = value
    if value.startswith("//"):
        value = value[2:]
    if not value:
        raise ReferenceResolutionError("invalid reference: empty reference")

    name, _, digest = value.partition("@")
    if digest and not _DIGEST_RE.match(digest):
        raise ReferenceResolutionError(f"invalid reference {original!r}: malformed digest {digest!r}")

    tag = None
    last_slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > last_slash:
        name, tag = name[:colon], name[colon + 1:]
        if not _TAG_RE.match(tag):
            raise ReferenceResolutionError(f"invalid reference {original!r}: malformed tag {tag!r}")

    if tag and digest:
        raise ReferenceResolutionError(
            f"invalid reference {original!r}: references with both a tag and a digest are not supported"
        )

    if not name:
        raise ReferenceResolutionError(f"invalid reference {original!r}: missing repository")
    domain, repository = _split_domain(name)
    for component in repository.split("/"):
        if not _COMPONENT_RE.match(component):
            raise ReferenceResolutionError(
                f"invalid reference {original!r}: repository component {component!r} "
                "must be lowercase alphanumerics separated by '.', '_' or '-'"
            )

    return DockerReference(
        domain=domain,
        repository=repository,
        tag=None if digest else (tag or DEFAULT_TAG),
        digest=digest or None,
        client_factory=client_factory or create_registry_client,
    )


class DockerImageSource:
    """Reads manifests and blobs of one repository."""

    def __init__(self, reference: DockerReference, client: RegistryClient):
        self.reference = reference
        self.client = client

    def get_manifest(self, ctx, instance_digest: Optional[str] = None) -> Tuple[bytes, str]:
        ref = instance_digest or self.reference.ref
        logger.debug(f"Fetching manifest {self.reference.name}@{ref}")
        return self.client.get_manifest(self.reference.repository, ref)

    def get_blob(self, ctx, digest: str) -> BlobReader:
        return self.client.open_blob(self.reference.repository, digest)

    def close(self) -> None:
        self.client.close()


class DockerImageDestination:
    """
    Writes an image into one repository.

    Blobs already in the repository are reused instead of uploaded. Child
    manifests of a list are stored by digest, the top-level manifest under
    the reference tag (or digest).
    """

    def __init__(self, reference: DockerReference, client: RegistryClient):
        self._reference = reference
        self.client = client

    @property
    def reference(self) -> DockerReference:
        return self._reference

    def try_reusing_blob(self, ctx, descriptor) -> bool:
        exists = self.client.blob_exists(self._reference.repository, descriptor.digest)
        if exists:
            logger.debug(f"Blob {descriptor.digest} already in {self._reference.name}")
        return exists

    def put_blob(self, ctx, stream: Iterable[bytes], descriptor) -> None:
        size = descriptor.size if descriptor.size >= 0 else None
        self.client.put_blob(self._reference.repository, descriptor.digest, stream, size=size)

    def put_manifest(self, ctx, manifest: bytes, media_type: str,
                     instance_digest: Optional[str] = None) -> None:
        if instance_digest is not None:
            ref = instance_digest
        elif self._reference.digest is not None:
            local = f"sha256:{hashlib.sha256(manifest).hexdigest()}"
            if local != self._reference.digest:
                raise OciDigestMismatch(
                    f"manifest digest {local} does not match reference {self._reference}",
                    expected=self._reference.digest, actual=local,
                )
            ref = self._reference.digest
        else:
            ref = self._reference.ref
        self.client.put_manifest(self._reference.repository, ref, media_type, manifest)

    def commit(self, ctx) -> None:
        # registry writes are visible as soon as the manifest is stored
        pass

    def close(self) -> None:
        self.client.close()
