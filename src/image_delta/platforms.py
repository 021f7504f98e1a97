"""
Host platform detection and manifest list instance selection.
"""
from __future__ import annotations

import platform as _platform
from typing import Optional

from .errors import TransferError
from .manifest import Descriptor, ManifestList, Platform

__all__ = ["host_platform", "normalize_architecture", "choose_instance"]

# platform.machine() -> (OCI architecture, variant)
_MACHINE_MAP = {
    "x86_64": ("amd64", ""),
    "amd64": ("amd64", ""),
    "aarch64": ("arm64", ""),
    "arm64": ("arm64", ""),
    "armv8l": ("arm64", ""),
    "armv7l": ("arm", "v7"),
    "armv7": ("arm", "v7"),
    "armv6l": ("arm", "v6"),
    "i386": ("386", ""),
    "i686": ("386", ""),
    "x86": ("386", ""),
    "ppc64le": ("ppc64le", ""),
    "s390x": ("s390x", ""),
    "riscv64": ("riscv64", ""),
}


def normalize_architecture(machine: str) -> tuple[str, str]:
    """Map a ``platform.machine()`` value onto (architecture, variant)."""
    return _MACHINE_MAP.get(machine.lower(), (machine.lower(), ""))


def host_platform(os: Optional[str] = None, architecture: Optional[str] = None,
                  variant: Optional[str] = None) -> Platform:
    """
    Platform to select from manifest lists.

    Each argument overrides the detected value when given.
    """
    detected_arch, detected_variant = normalize_architecture(_platform.machine())
    if architecture and architecture != detected_arch:
        detected_variant = ""
    return Platform(
        os=os or _platform.system().lower(),
        architecture=architecture or detected_arch,
        variant=variant if variant is not None else detected_variant,
    )


def _variant_matches(wanted: Platform, candidate: Platform) -> bool:
    if not wanted.variant:
        return True
    if candidate.variant == wanted.variant:
        return True
    # arm64 images rarely declare their (only) variant
    return wanted.architecture == "arm64" and wanted.variant == "v8" and not candidate.variant


def choose_instance(manifest_list: ManifestList, wanted: Platform) -> Descriptor:
    """
    Pick the list entry for ``wanted``.

    Raises:
        TransferError: If no entry matches
    """
    for entry in manifest_list.manifests:
        candidate = entry.platform
        if candidate is None:
            continue
        if candidate.os == wanted.os and candidate.architecture == wanted.architecture \
                and _variant_matches(wanted, candidate):
            return entry
    raise TransferError(f"no image found in manifest list for architecture {wanted}", stage="copy")
