"""
Settings and configuration for image-delta.

Centralizes configuration values and provides validation with fail-fast behavior.
Loaded from environment variables by the CLI; library callers may construct
``Settings`` directly.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Optional

from .manifest import Platform
from .platforms import host_platform

__all__ = ["Settings", "create_settings_from_env"]

_PLATFORM_FIELD_RE = r"^[a-z0-9_-]+$"


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for incremental operations.

    Transport Settings:
        tmpdir: Directory for pulled archives and scratch data (system default if None)
        insecure_base: Allow HTTP / unverified TLS for the base registry
        insecure_final: Allow HTTP / unverified TLS for the final registry
        insecure_push: Allow HTTP / unverified TLS for the push destination
        http_timeout_s: HTTP request timeout in seconds

    Image Selection:
        all_platforms: Copy every instance of a manifest list instead of the host one
        platform_os: Override the host operating system
        platform_architecture: Override the host architecture
        platform_variant: Override the host architecture variant

    Indexing:
        manifest_fetch_workers: Concurrent child manifest fetches (1 = sequential)
    """
    tmpdir: Optional[str] = None
    insecure_base: bool = False
    insecure_final: bool = False
    insecure_push: bool = False
    http_timeout_s: float = 30.0

    all_platforms: bool = False
    platform_os: Optional[str] = None
    platform_architecture: Optional[str] = None
    platform_variant: Optional[str] = None

    manifest_fetch_workers: int = 4

    def __post_init__(self):
        """Validate settings on construction."""
        if self.tmpdir is not None and not os.path.isdir(self.tmpdir):
            raise ValueError(f"tmpdir does not exist or is not a directory: {self.tmpdir}")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        if self.manifest_fetch_workers < 1:
            raise ValueError(f"manifest_fetch_workers must be at least 1, got {self.manifest_fetch_workers}")

        for name in ("platform_os", "platform_architecture", "platform_variant"):
            value = getattr(self, name)
            if value is not None and not re.match(_PLATFORM_FIELD_RE, value):
                raise ValueError(f"Invalid {name}: {value!r}")

    @property
    def platform(self) -> Platform:
        """Platform used to choose an instance of a manifest list."""
        return host_platform(
            os=self.platform_os,
            architecture=self.platform_architecture,
            variant=self.platform_variant,
        )


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - IMAGE_DELTA_TMPDIR (default: system temp dir)
        - IMAGE_DELTA_INSECURE_BASE (default: false)
        - IMAGE_DELTA_INSECURE_FINAL (default: false)
        - IMAGE_DELTA_INSECURE_PUSH (default: false)
        - IMAGE_DELTA_ALL_PLATFORMS (default: false)
        - IMAGE_DELTA_OS, IMAGE_DELTA_ARCH, IMAGE_DELTA_VARIANT (default: host)
        - IMAGE_DELTA_HTTP_TIMEOUT (default: 30.0)
        - IMAGE_DELTA_FETCH_WORKERS (default: 4)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_bool(key: str) -> bool:
        return str_to_bool(os.getenv(key, "false"))

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    return Settings(
        tmpdir=os.getenv("IMAGE_DELTA_TMPDIR") or None,
        insecure_base=get_bool("IMAGE_DELTA_INSECURE_BASE"),
        insecure_final=get_bool("IMAGE_DELTA_INSECURE_FINAL"),
        insecure_push=get_bool("IMAGE_DELTA_INSECURE_PUSH"),
        http_timeout_s=get_float("IMAGE_DELTA_HTTP_TIMEOUT", 30.0),
        all_platforms=get_bool("IMAGE_DELTA_ALL_PLATFORMS"),
        platform_os=os.getenv("IMAGE_DELTA_OS") or None,
        platform_architecture=os.getenv("IMAGE_DELTA_ARCH") or None,
        platform_variant=os.getenv("IMAGE_DELTA_VARIANT") or None,
        manifest_fetch_workers=get_int("IMAGE_DELTA_FETCH_WORKERS", 4),
    )
