"""
OCI transport error classes.

Taxonomy of failures raised by the registry and archive transports. HTTP
status codes and archive I/O problems are mapped onto these classes so the
incremental layer can wrap them with the stage that produced them.
"""
from __future__ import annotations


class OciError(Exception):
    """
    Base class for all transport errors.

    Covers network failures, malformed archives and any registry response
    that does not map onto a more specific class below.
    """
    pass


class OciAuthError(OciError):
    """
    Authentication or authorization error.

    Raised when:
    - HTTP 401 Unauthorized after the challenge flow was attempted
    - HTTP 403 Forbidden (insufficient permissions)
    """
    pass


class OciNotFound(OciError):
    """
    Manifest, blob or repository does not exist.

    Raised when:
    - HTTP 404 Not Found
    - a blob is absent from an oci-archive (e.g. skipped by an incremental pull)
    """
    pass


class OciDigestMismatch(OciError):
    """
    Content digest validation failed.

    Raised when:
    - a blob written to a destination does not hash to its declared digest
    - the registry reports a manifest digest different from the local one
    """

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class OciUnsupportedMediaType(OciError):
    """
    Media type not supported by registry or client.

    Raised when:
    - HTTP 415 Unsupported Media Type
    - the registry returns a manifest kind this client does not understand
    """
    pass


class OciTooLarge(OciError):
    """HTTP 413 Payload Too Large."""
    pass


class OciRateLimited(OciError):
    """HTTP 429 Too Many Requests."""
    pass


__all__ = [
    "OciError",
    "OciAuthError",
    "OciNotFound",
    "OciDigestMismatch",
    "OciUnsupportedMediaType",
    "OciTooLarge",
    "OciRateLimited",
]
