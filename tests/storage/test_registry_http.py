"""
Tests for the registry HTTP client using httpx.MockTransport.
"""
import base64
import hashlib
import json
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from image_delta.storage.base import Credentials, SystemContext
from image_delta.storage.oci_errors import (
    OciAuthError,
    OciDigestMismatch,
    OciError,
    OciNotFound,
    OciRateLimited,
    OciTooLarge,
    OciUnsupportedMediaType,
)
from image_delta.storage.oci_media_types import OCI_IMAGE_INDEX, OCI_IMAGE_MANIFEST
from image_delta.storage.registry_http import (
    DockerAuth,
    RegistryHTTP,
    create_registry_client,
    registry_api_host,
)

MANIFEST = b'{"schemaVersion":2}'
MANIFEST_DIGEST = f"sha256:{hashlib.sha256(MANIFEST).hexdigest()}"


def _client(handler, *, registry="registry.test", auth=None, insecure=False):
    return RegistryHTTP(registry, auth=auth or DockerAuth(credentials=None), insecure=insecure,
                        transport=httpx.MockTransport(handler))


@pytest.fixture(autouse=True)
def no_docker_config(tmp_path, monkeypatch):
    """Point DOCKER_CONFIG at an empty directory."""
    monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path / "docker"))


class TestBaseUrl:
    """Registry host handling."""

    def test_docker_hub_api_host(self):
        assert registry_api_host("docker.io") == "registry-1.docker.io"
        assert registry_api_host("quay.io") == "quay.io"

    def test_https_by_default_and_http_when_insecure(self):
        assert RegistryHTTP("registry.test").base_url == "https://registry.test"
        assert RegistryHTTP("localhost:5000", insecure=True).base_url == "http://localhost:5000"
        assert RegistryHTTP("docker.io").base_url == "https://registry-1.docker.io"

    def test_factory_uses_system_context(self):
        client = create_registry_client("localhost:5000", SystemContext(
            credentials=Credentials("u", "p"), insecure=True, http_timeout_s=5.0))
        try:
            assert client.base_url == "http://localhost:5000"
            assert client.auth.get_credentials("localhost:5000") == ("u", "p")
        finally:
            client.close()


class TestManifests:
    """GET and PUT of manifests."""

    def test_get_manifest(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["accept"] = request.headers["Accept"]
            return httpx.Response(200, content=MANIFEST,
                                  headers={"Content-Type": f"{OCI_IMAGE_MANIFEST}; charset=utf-8"})

        with _client(handler) as client:
            payload, media_type = client.get_manifest("library/app", "v1")

        assert payload == MANIFEST
        assert media_type == OCI_IMAGE_MANIFEST
        assert seen["url"] == "https://registry.test/v2/library/app/manifests/v1"
        assert seen["accept"].split(", ")[0] == OCI_IMAGE_INDEX

    def test_put_manifest_returns_digest(self):
        def handler(request):
            assert request.method == "PUT"
            assert request.headers["Content-Type"] == OCI_IMAGE_MANIFEST
            assert request.content == MANIFEST
            return httpx.Response(201, headers={"Docker-Content-Digest": MANIFEST_DIGEST})

        with _client(handler) as client:
            assert client.put_manifest("app", "v1", OCI_IMAGE_MANIFEST, MANIFEST) == MANIFEST_DIGEST

    def test_put_manifest_digest_mismatch(self):
        other = "sha256:" + "f" * 64

        def handler(request):
            return httpx.Response(201, headers={"Docker-Content-Digest": other})

        with _client(handler) as client:
            with pytest.raises(OciDigestMismatch) as exc_info:
                client.put_manifest("app", "v1", OCI_IMAGE_MANIFEST, MANIFEST)
        assert exc_info.value.actual == other
        assert exc_info.value.expected == MANIFEST_DIGEST


class TestStatusMapping:
    """HTTP status codes map onto OciError classes."""

    @pytest.mark.parametrize("status,error", [
        (404, OciNotFound),
        (401, OciAuthError),
        (403, OciAuthError),
        (413, OciTooLarge),
        (415, OciUnsupportedMediaType),
        (429, OciRateLimited),
        (500, OciError),
    ])
    def test_status(self, status, error):
        with _client(lambda request: httpx.Response(status)) as client:
            with pytest.raises(error):
                client.get_manifest("app", "v1")

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            with pytest.raises(OciError, match="Network error"):
                client.get_manifest("app", "v1")


class TestBlobs:
    """Blob HEAD, GET and upload."""

    def test_blob_exists(self):
        present = "sha256:" + "a" * 64

        def handler(request):
            assert request.method == "HEAD"
            return httpx.Response(200 if request.url.path.endswith(present) else 404)

        with _client(handler) as client:
            assert client.blob_exists("app", present)
            assert not client.blob_exists("app", "sha256:" + "b" * 64)

    def test_blob_exists_propagates_auth_errors(self):
        with _client(lambda request: httpx.Response(403)) as client:
            with pytest.raises(OciAuthError):
                client.blob_exists("app", "sha256:" + "a" * 64)

    def test_open_blob_streams(self):
        content = b"x" * 5000

        def handler(request):
            return httpx.Response(200, content=content)

        with _client(handler) as client:
            with client.open_blob("app", "sha256:" + "a" * 64) as blob:
                assert blob.read_all() == content

    def test_open_missing_blob(self):
        with _client(lambda request: httpx.Response(404)) as client:
            with pytest.raises(OciNotFound):
                client.open_blob("app", "sha256:" + "a" * 64)

    def test_put_blob_monolithic_upload(self):
        content = b"layer-bytes"
        digest = f"sha256:{hashlib.sha256(content).hexdigest()}"
        requests = []

        def handler(request):
            requests.append((request.method, request.url))
            if request.method == "POST":
                return httpx.Response(202, headers={"Location": "/v2/app/blobs/uploads/abc?state=1"})
            assert request.content == content
            return httpx.Response(201)

        with _client(handler) as client:
            client.put_blob("app", digest, [content[:5], content[5:]], size=len(content))

        assert requests[0][0] == "POST"
        assert requests[0][1].path == "/v2/app/blobs/uploads/"
        method, url = requests[1]
        assert method == "PUT"
        assert url.path == "/v2/app/blobs/uploads/abc"
        assert url.params["digest"] == digest
        assert url.params["state"] == "1"

    def test_put_blob_rejected_digest(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(202, headers={"Location": "https://registry.test/upload/1"})
            return httpx.Response(400, text="DIGEST_INVALID")

        with _client(handler) as client:
            with pytest.raises(OciDigestMismatch):
                client.put_blob("app", "sha256:" + "a" * 64, [b"data"])

    def test_put_blob_without_location(self):
        with _client(lambda request: httpx.Response(202)) as client:
            with pytest.raises(OciError, match="upload location"):
                client.put_blob("app", "sha256:" + "a" * 64, [b"data"])


class TestAuthFlow:
    """Basic and Bearer challenges."""

    def test_bearer_token_flow(self):
        token_requests = []

        def handler(request):
            if request.url.host == "auth.test":
                token_requests.append(request)
                return httpx.Response(200, json={"token": "tok", "expires_in": 300})
            if request.headers.get("Authorization") == "Bearer tok":
                return httpx.Response(200, content=MANIFEST, headers={"Content-Type": OCI_IMAGE_MANIFEST})
            return httpx.Response(401, headers={
                "WWW-Authenticate": 'Bearer realm="https://auth.test/token",service="registry.test",'
                                    'scope="repository:app:pull"',
            })

        auth = DockerAuth(credentials=Credentials("user", "secret"))
        with _client(handler, auth=auth) as client:
            assert client.get_manifest("app", "v1")[0] == MANIFEST
            assert client.get_manifest("app", "v2")[0] == MANIFEST

        assert len(token_requests) == 1
        params = token_requests[0].url.params
        assert params["service"] == "registry.test"
        assert params["scope"] == "repository:app:pull"
        expected = "Basic " + base64.b64encode(b"user:secret").decode()
        assert token_requests[0].headers["Authorization"] == expected

    def test_concurrent_requests_share_one_token(self):
        token_requests = []

        def handler(request):
            if request.url.host == "auth.test":
                token_requests.append(request)
                return httpx.Response(200, json={"token": "tok", "expires_in": 300})
            if request.headers.get("Authorization") == "Bearer tok":
                return httpx.Response(200, content=MANIFEST, headers={"Content-Type": OCI_IMAGE_MANIFEST})
            return httpx.Response(401, headers={
                "WWW-Authenticate": 'Bearer realm="https://auth.test/token",scope="repository:app:pull"',
            })

        with _client(handler) as client:
            with ThreadPoolExecutor(max_workers=4) as pool:
                results = list(pool.map(lambda ref: client.get_manifest("app", ref), ["a", "b", "c", "d"]))

        assert [payload for payload, _ in results] == [MANIFEST] * 4
        assert len(token_requests) == 1

    def test_anonymous_bearer_token(self):
        def handler(request):
            if request.url.host == "auth.test":
                assert "Authorization" not in request.headers
                return httpx.Response(200, json={"access_token": "anon"})
            if request.headers.get("Authorization") == "Bearer anon":
                return httpx.Response(200, content=MANIFEST, headers={"Content-Type": OCI_IMAGE_MANIFEST})
            return httpx.Response(401, headers={"WWW-Authenticate": 'Bearer realm="https://auth.test/token"'})

        with _client(handler) as client:
            assert client.get_manifest("app", "v1")[0] == MANIFEST

    def test_basic_challenge(self):
        expected = "Basic " + base64.b64encode(b"user:secret").decode()

        def handler(request):
            if request.headers.get("Authorization") == expected:
                return httpx.Response(200, content=MANIFEST, headers={"Content-Type": OCI_IMAGE_MANIFEST})
            return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="registry"'})

        auth = DockerAuth(credentials=Credentials("user", "secret"))
        with _client(handler, auth=auth) as client:
            assert client.get_manifest("app", "v1")[0] == MANIFEST

    def test_basic_challenge_without_credentials(self):
        def handler(request):
            return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="registry"'})

        with _client(handler) as client:
            with pytest.raises(OciAuthError):
                client.get_manifest("app", "v1")

    def test_token_endpoint_failure(self):
        def handler(request):
            if request.url.host == "auth.test":
                return httpx.Response(500)
            return httpx.Response(401, headers={"WWW-Authenticate": 'Bearer realm="https://auth.test/token"'})

        with _client(handler) as client:
            with pytest.raises(OciAuthError, match="Token exchange"):
                client.get_manifest("app", "v1")


class TestDockerAuth:
    """Credential lookup."""

    def _write_config(self, tmp_path, auths):
        config_dir = tmp_path / "docker"
        config_dir.mkdir(exist_ok=True)
        (config_dir / "config.json").write_text(json.dumps({"auths": auths}))

    def test_explicit_credentials_win(self, tmp_path):
        self._write_config(tmp_path, {"registry.test": {"username": "file", "password": "x"}})
        auth = DockerAuth(credentials=Credentials("cli", "y"))
        assert auth.get_credentials("registry.test") == ("cli", "y")

    def test_reads_base64_auth_from_docker_config(self, tmp_path):
        encoded = base64.b64encode(b"alice:s3cret").decode()
        self._write_config(tmp_path, {"https://registry.test": {"auth": encoded}})
        assert DockerAuth().get_credentials("registry.test") == ("alice", "s3cret")

    def test_docker_hub_legacy_key(self, tmp_path):
        encoded = base64.b64encode(b"bob:pw").decode()
        self._write_config(tmp_path, {"https://index.docker.io/v1/": {"auth": encoded}})
        assert DockerAuth().get_credentials("docker.io") == ("bob", "pw")

    def test_no_config(self):
        assert DockerAuth().get_credentials("registry.test") is None

    def test_unknown_registry(self, tmp_path):
        self._write_config(tmp_path, {"other.test": {"username": "u", "password": "p"}})
        assert DockerAuth().get_credentials("registry.test") is None
