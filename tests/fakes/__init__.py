"""Test doubles for image-delta."""
from .fake_registry import FakeRegistry, FakeRegistryClient
from .fake_source import FakeImageReference, FakeImageSource, RecordingDestination

__all__ = [
    "FakeRegistry",
    "FakeRegistryClient",
    "FakeImageReference",
    "FakeImageSource",
    "RecordingDestination",
]
