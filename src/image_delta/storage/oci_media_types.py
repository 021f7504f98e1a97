"""
OCI and Docker media types.

Single source of truth for the manifest, index and layout constants used by
the parsers and transports.
"""
from __future__ import annotations

# Single-image manifests
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_V2_SCHEMA2_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_V2_SCHEMA1_MANIFEST = "application/vnd.docker.distribution.manifest.v1+json"
DOCKER_V2_SCHEMA1_SIGNED_MANIFEST = "application/vnd.docker.distribution.manifest.v1+prettyjws"

# Multi-platform lists
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_V2_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

MULTI_IMAGE_TYPES = frozenset({OCI_IMAGE_INDEX, DOCKER_V2_LIST})
SINGLE_IMAGE_TYPES = frozenset({
    OCI_IMAGE_MANIFEST,
    DOCKER_V2_SCHEMA2_MANIFEST,
    DOCKER_V2_SCHEMA1_MANIFEST,
    DOCKER_V2_SCHEMA1_SIGNED_MANIFEST,
})

# Sent as Accept when fetching manifests (in order of preference)
ACCEPTED_MANIFEST_TYPES = [
    OCI_IMAGE_INDEX,
    DOCKER_V2_LIST,
    OCI_IMAGE_MANIFEST,
    DOCKER_V2_SCHEMA2_MANIFEST,
    DOCKER_V2_SCHEMA1_SIGNED_MANIFEST,
    DOCKER_V2_SCHEMA1_MANIFEST,
]

# OCI image layout (the content of an oci-archive tarball)
OCI_LAYOUT_FILE = "oci-layout"
OCI_LAYOUT_VERSION = "1.0.0"
OCI_INDEX_FILE = "index.json"
OCI_BLOBS_DIR = "blobs"
OCI_REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"


__all__ = [
    "OCI_IMAGE_MANIFEST",
    "DOCKER_V2_SCHEMA2_MANIFEST",
    "DOCKER_V2_SCHEMA1_MANIFEST",
    "DOCKER_V2_SCHEMA1_SIGNED_MANIFEST",
    "OCI_IMAGE_INDEX",
    "DOCKER_V2_LIST",
    "MULTI_IMAGE_TYPES",
    "SINGLE_IMAGE_TYPES",
    "ACCEPTED_MANIFEST_TYPES",
    "OCI_LAYOUT_FILE",
    "OCI_LAYOUT_VERSION",
    "OCI_INDEX_FILE",
    "OCI_BLOBS_DIR",
    "OCI_REF_NAME_ANNOTATION",
]
