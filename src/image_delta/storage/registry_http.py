"""
Registry HTTP client for the OCI Distribution API.

Provides the repository-scoped manifest and blob operations the docker
transport needs, with the Docker Registry v2 auth flow (Basic and Bearer
challenges) and retries on timeouts.
"""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import re
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple
from urllib.parse import urljoin

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .base import CHUNK_SIZE, BlobReader, Credentials, SystemContext
from .oci_errors import (
    OciAuthError,
    OciDigestMismatch,
    OciError,
    OciNotFound,
    OciRateLimited,
    OciTooLarge,
    OciUnsupportedMediaType,
)
from .oci_media_types import ACCEPTED_MANIFEST_TYPES

__all__ = ["DockerAuth", "RegistryHTTP", "registry_api_host", "create_registry_client"]

logger = logging.getLogger(__name__)

USER_AGENT = "image-delta/0.1.0"

# Docker Hub is addressed as docker.io but served from another host
_DOCKER_HUB_HOSTS = {"docker.io", "index.docker.io"}
_DOCKER_HUB_API = "registry-1.docker.io"


def registry_api_host(registry: str) -> str:
    """Host serving the API of ``registry``."""
    return _DOCKER_HUB_API if registry in _DOCKER_HUB_HOSTS else registry


class DockerAuth:
    """Resolve registry credentials: explicit ones first, then the Docker config file."""

    def __init__(self, config_path: Optional[Path] = None,
                 credentials: Optional[Credentials] = None):
        if config_path is None:
            docker_config_dir = os.getenv("DOCKER_CONFIG", str(Path.home() / ".docker"))
            config_path = Path(docker_config_dir) / "config.json"
        self.config_path = config_path
        self.credentials = credentials
        self._config_cache: Optional[dict] = None
        self._config_mtime: Optional[float] = None

    def get_credentials(self, registry: str) -> Optional[Tuple[str, str]]:
        """
        Get credentials for registry.

        Returns: (username, password) or None if not found
        """
        if self.credentials is not None:
            return (self.credentials.username, self.credentials.password)

        config = self._load_config()
        if not config:
            return None

        auths = config.get("auths", {})
        candidates = [registry, f"https://{registry}", f"http://{registry}"]
        if registry in _DOCKER_HUB_HOSTS or registry == _DOCKER_HUB_API:
            candidates.append("https://index.docker.io/v1/")
        auth_entry = next((auths[key] for key in candidates if key in auths), None)
        if auth_entry is None:
            return None

        # base64 encoded "user:password"
        if "auth" in auth_entry:
            try:
                decoded = base64.b64decode(auth_entry["auth"]).decode()
            except (ValueError, UnicodeDecodeError) as e:
                logger.debug(f"Ignoring malformed auth entry for {registry}: {e}")
            else:
                if ":" in decoded:
                    username, password = decoded.split(":", 1)
                    return (username, password)

        if "username" in auth_entry and "password" in auth_entry:
            return (auth_entry["username"], auth_entry["password"])

        return None

    def _load_config(self) -> Optional[dict]:
        """Load Docker config with caching and mtime checking."""
        if not self.config_path.exists():
            return None

        try:
            current_mtime = self.config_path.stat().st_mtime

            if (self._config_cache is not None and
                    self._config_mtime is not None and
                    current_mtime == self._config_mtime):
                return self._config_cache

            with open(self.config_path, 'r') as f:
                config = json.load(f)

            self._config_cache = config
            self._config_mtime = current_mtime
            return config

        except (OSError, ValueError) as e:
            logger.debug(f"Failed to read Docker config {self.config_path}: {e}")
            return None


class RegistryHTTP:
    """
    HTTP client for one registry host.

    Implements the Docker Registry v2 auth flow: requests are sent
    anonymously first; a 401 challenge is answered with Basic credentials or
    a Bearer token obtained from the challenge realm (cached per scope).
    """

    def __init__(self, registry: str, auth: Optional[DockerAuth] = None,
                 insecure: bool = False, timeout: float = 30.0,
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize registry HTTP client.

        Args:
            registry: Registry hostname as written in references (e.g. "docker.io",
                "localhost:5000", "quay.io")
            auth: Credential resolver (defaults to the Docker config)
            insecure: Use plain HTTP and skip TLS verification
            timeout: Read/write timeout in seconds
            transport: httpx transport override (tests)
        """
        self.registry = registry
        self.auth = auth or DockerAuth()
        self.insecure = insecure

        host = registry_api_host(registry)
        if host.startswith("http://") or host.startswith("https://"):
            self.base_url = host
        else:
            self.base_url = f"{'http' if insecure else 'https'}://{host}"

        self.client = httpx.Client(
            timeout=httpx.Timeout(connect=5.0, read=timeout, write=timeout, pool=5.0),
            follow_redirects=True,
            verify=not insecure,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

        # Token cache: {service:scope: (token, expiry_timestamp)}
        self._token_cache: Dict[str, Tuple[str, float]] = {}
        self._authorization: Optional[str] = None
        # manifest list children are fetched from several threads
        self._auth_lock = threading.Lock()

    def get_manifest(self, repo: str, ref: str) -> Tuple[bytes, str]:
        """
        GET a manifest by tag or digest.

        Returns:
            (raw manifest bytes, media type from Content-Type)

        Raises:
            OciNotFound: If the manifest does not exist
            OciAuthError: If authentication fails
            OciError: For other registry or network errors
        """
        what = f"manifest {repo}:{ref}"
        response = self._request(
            "GET", f"/v2/{repo}/manifests/{ref}", what,
            headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)},
        )
        media_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip()
        return response.content, media_type

    def open_blob(self, repo: str, digest: str) -> BlobReader:
        """
        GET a blob as a stream.

        Raises:
            OciNotFound: If the blob does not exist
            OciError: For other registry or network errors
        """
        response = self._request("GET", f"/v2/{repo}/blobs/{digest}", f"blob {digest}", stream=True)
        size = int(response.headers.get("Content-Length", -1))
        return BlobReader(response.iter_bytes(CHUNK_SIZE), response.close, size=size)

    def blob_exists(self, repo: str, digest: str) -> bool:
        """
        HEAD a blob.

        Returns:
            True if the blob exists, False if the registry answers 404

        Raises:
            OciAuthError: If authentication fails
            OciError: For other registry or network errors
        """
        try:
            self._request("HEAD", f"/v2/{repo}/blobs/{digest}", f"blob {digest}")
        except OciNotFound:
            return False
        return True

    def put_blob(self, repo: str, digest: str, data: Iterable[bytes],
                 size: int | None = None) -> None:
        """
        Upload a blob in a single request (POST to start, PUT with content).

        The body is streamed once and is not retried.

        Raises:
            OciDigestMismatch: If the registry rejects the digest
            OciError: For other registry or network errors
        """
        what = f"blob upload {digest}"
        response = self._request("POST", f"/v2/{repo}/blobs/uploads/", what)
        location = response.headers.get("Location")
        if not location:
            raise OciError(f"Registry did not return an upload location for {repo}")
        upload_url = urljoin(self.base_url, location)
        separator = "&" if "?" in upload_url else "?"
        headers = {"Content-Type": "application/octet-stream"}
        if size is not None and size >= 0:
            headers["Content-Length"] = str(size)
        try:
            response = self._send("PUT", f"{upload_url}{separator}digest={digest}",
                                  headers=headers, content=data)
        except httpx.RequestError as e:
            raise OciError(f"Network error during {what}: {e}") from e
        if response.status_code == 400:
            raise OciDigestMismatch(f"Registry rejected {what}: {response.text}", expected=digest)
        self._raise_for_status(response, what)

    def put_manifest(self, repo: str, ref: str, media_type: str, payload: bytes) -> str:
        """
        PUT a manifest under a tag or digest and return its canonical digest.

        Raises:
            OciDigestMismatch: If the registry digest differs from the local one
            OciError: For other registry or network errors
        """
        local_digest = f"sha256:{hashlib.sha256(payload).hexdigest()}"
        response = self._request(
            "PUT", f"/v2/{repo}/manifests/{ref}", f"manifest {repo}:{ref}",
            headers={"Content-Type": media_type}, content=payload,
        )
        server_digest = response.headers.get("Docker-Content-Digest")
        if server_digest and server_digest.startswith("sha256:") and server_digest != local_digest:
            raise OciDigestMismatch(
                f"Registry digest {server_digest} differs from local digest {local_digest}",
                expected=local_digest, actual=server_digest,
            )
        return server_digest or local_digest

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectTimeout, httpx.ReadTimeout, httpx.TimeoutException)),
        reraise=True,
    )
    def _request_with_retry(self, method: str, url: str, headers: Optional[dict] = None,
                            stream: bool = False, **kwargs) -> httpx.Response:
        return self._send(method, url, headers=headers, stream=stream, **kwargs)

    def _request(self, method: str, path: str, what: str, headers: Optional[dict] = None,
                 stream: bool = False, **kwargs) -> httpx.Response:
        """
        Send a request, retrying timeouts, and map failures onto OciError.

        Raises:
            OciError (or a subclass) for any non-2xx answer or network error
        """
        url = urljoin(self.base_url, path)
        try:
            response = self._request_with_retry(method, url, headers=headers, stream=stream, **kwargs)
        except httpx.RequestError as e:
            raise OciError(f"Network error during {what}: {e}") from e
        if response.is_error and stream:
            response.read()
            response.close()
        self._raise_for_status(response, what)
        return response

    def _send(self, method: str, url: str, headers: Optional[dict] = None,
              stream: bool = False, **kwargs) -> httpx.Response:
        """
        Send one request with transparent auth handling.

        Handles 401 responses by:
        1. Parsing WWW-Authenticate for Basic or Bearer realm/service/scope
        2. Looking up credentials
        3. For Bearer, exchanging credentials (or nothing) for a token
        4. Retrying the original request with the Authorization header
        """
        request_headers = dict(headers or {})
        if self._authorization:
            request_headers["Authorization"] = self._authorization

        request = self.client.build_request(method, url, headers=request_headers, **kwargs)
        response = self.client.send(request, stream=stream)

        if response.status_code == 401:
            challenge = response.headers.get("WWW-Authenticate", "")
            with self._auth_lock:
                authorization = self._authorize(challenge)
            if authorization and authorization != request_headers.get("Authorization"):
                response.close()
                self._authorization = authorization
                request_headers["Authorization"] = authorization
                request = self.client.build_request(method, url, headers=request_headers, **kwargs)
                response = self.client.send(request, stream=stream)

        return response

    def _authorize(self, challenge: str) -> Optional[str]:
        """Authorization header answering ``challenge`` or None."""
        if challenge.lower().startswith("basic"):
            creds = self.auth.get_credentials(self.registry)
            if not creds:
                return None
            token = base64.b64encode(f"{creds[0]}:{creds[1]}".encode()).decode()
            return f"Basic {token}"
        if challenge.lower().startswith("bearer"):
            token = self._handle_bearer_auth(challenge)
            return f"Bearer {token}" if token else None
        return None

    def _handle_bearer_auth(self, www_authenticate: str) -> Optional[str]:
        """
        Handle Bearer token authentication flow.

        Parses WWW-Authenticate header, gets credentials, exchanges for token.
        Anonymous tokens are requested when no credentials are configured.
        """
        # Format: Bearer realm="...",service="...",scope="..."
        bearer_params = {}
        for match in re.finditer(r'(\w+)="([^"]*)"', www_authenticate):
            bearer_params[match.group(1)] = match.group(2)

        realm = bearer_params.get("realm")
        service = bearer_params.get("service")
        scope = bearer_params.get("scope")

        if not realm:
            return None

        cache_key = f"{service or ''}:{scope or ''}"
        if cache_key in self._token_cache:
            token, expiry = self._token_cache[cache_key]
            if time.time() < expiry - 30:  # 30s buffer before expiry
                return token

        params = {}
        if service:
            params["service"] = service
        if scope:
            params["scope"] = scope
        creds = self.auth.get_credentials(self.registry)

        try:
            auth_response = self.client.get(realm, auth=creds, params=params)
            auth_response.raise_for_status()
            token_data = auth_response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise OciAuthError(f"Token exchange with {realm} failed: {e}") from e

        token = token_data.get("token") or token_data.get("access_token")
        if not token:
            return None

        expires_in = token_data.get("expires_in", 60)
        self._token_cache[cache_key] = (token, time.time() + expires_in)
        return token

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str) -> None:
        if response.is_success:
            return
        status = response.status_code
        if status == 404:
            raise OciNotFound(f"Not found: {what}")
        if status in (401, 403):
            raise OciAuthError(f"Authentication failed for {what} (HTTP {status})")
        if status == 413:
            raise OciTooLarge(f"Payload too large: {what}")
        if status == 415:
            raise OciUnsupportedMediaType(f"Unsupported media type for {what}")
        if status == 429:
            raise OciRateLimited(f"Rate limited during {what}")
        raise OciError(f"Registry error {status} during {what}")

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def create_registry_client(registry: str, sysctx: SystemContext) -> RegistryHTTP:
    """Default ``ClientFactory``: an HTTP client configured from ``sysctx``."""
    return RegistryHTTP(
        registry=registry,
        auth=DockerAuth(credentials=sysctx.credentials),
        insecure=sysctx.insecure,
        timeout=sysctx.http_timeout_s,
    )
