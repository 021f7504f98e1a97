"""Root pytest configuration for image-delta tests."""
import pytest

from image_delta import Incremental, Settings
from image_delta.manifest import Platform

from .fakes import FakeRegistry
from .helpers.image_helpers import make_image, make_index

AMD64 = Platform(os="linux", architecture="amd64")
ARM64 = Platform(os="linux", architecture="arm64", variant="v8")

ENV_VARS = [
    "IMAGE_DELTA_TMPDIR",
    "IMAGE_DELTA_INSECURE_BASE",
    "IMAGE_DELTA_INSECURE_FINAL",
    "IMAGE_DELTA_INSECURE_PUSH",
    "IMAGE_DELTA_ALL_PLATFORMS",
    "IMAGE_DELTA_OS",
    "IMAGE_DELTA_ARCH",
    "IMAGE_DELTA_VARIANT",
    "IMAGE_DELTA_HTTP_TIMEOUT",
    "IMAGE_DELTA_FETCH_WORKERS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of the tests."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def registry():
    """Empty in-memory registry."""
    return FakeRegistry()


@pytest.fixture
def settings(tmp_path):
    """Settings pinned to linux/amd64 with a per-test scratch directory."""
    return Settings(tmpdir=str(tmp_path), platform_os="linux", platform_architecture="amd64")


@pytest.fixture
def incremental(settings, registry):
    return Incremental(settings, client_factory=registry.client_factory)


@pytest.fixture
def layers():
    """Five distinct layer payloads."""
    return [f"layer-{i}".encode() * 10 for i in range(5)]


@pytest.fixture
def base_image(layers):
    return make_image(layers[:2])


@pytest.fixture
def final_image(layers):
    return make_image(layers[:3])


@pytest.fixture
def final_index(layers):
    """Two-platform final image sharing its base layers."""
    return make_index([
        (make_image(layers[:3]), AMD64),
        (make_image([layers[0], layers[3]]), ARM64),
    ])
