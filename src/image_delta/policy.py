"""
Image trust policy.

The copy engine asks a ``PolicyContext`` whether an image may be copied
before it opens the source. Signature verification is out of scope; the
shipped requirements either accept or reject every image.
"""
from __future__ import annotations

from typing import Protocol, Sequence

from .storage.base import ImageReference

__all__ = ["PolicyRequirement", "InsecureAcceptAnything", "Reject", "PolicyContext", "default_policy_context"]


class PolicyRequirement(Protocol):
    def is_satisfied(self, reference: ImageReference) -> bool:
        ...


class InsecureAcceptAnything:
    """Accept every image."""

    def is_satisfied(self, reference: ImageReference) -> bool:
        return True


class Reject:
    """Reject every image."""

    def is_satisfied(self, reference: ImageReference) -> bool:
        return False


class PolicyContext:
    """All requirements must be satisfied for an image to be allowed."""

    def __init__(self, requirements: Sequence[PolicyRequirement]):
        if not requirements:
            raise ValueError("a policy needs at least one requirement")
        self.requirements = tuple(requirements)

    def is_image_allowed(self, reference: ImageReference) -> bool:
        return all(req.is_satisfied(reference) for req in self.requirements)


def default_policy_context() -> PolicyContext:
    """Policy used by ``Incremental`` unless another one is given: accept anything."""
    return PolicyContext([InsecureAcceptAnything()])
