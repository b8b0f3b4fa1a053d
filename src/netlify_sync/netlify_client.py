"""Minimal Netlify API client.

Implements the file-digest deploy flow: create a deploy from the path → SHA-1
map, upload only the files Netlify reports as ``required``, then wait until
the deploy is live. Also lists sites and builds for the sites overview.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import quote

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from .exceptions import ConfigError
from .models import DirectoryDigest

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.netlify.com/api/v1"


class NetlifyError(Exception):
    """Base exception for Netlify API failures."""


class NetlifyConnectionError(NetlifyError):
    """Raised on network/timeout issues talking to the API."""

    def __init__(self, url: str, original_error: Exception | None = None):
        self.url = url
        self.original_error = original_error
        super().__init__(f"Could not reach {url}: {original_error}")


class NetlifyAPIError(NetlifyError):
    """Raised when the API answers with a non-2xx status or a failed deploy."""

    def __init__(self, url: str, status_code: int | None, detail: str | None = None):
        self.url = url
        self.status_code = status_code
        self.detail = detail
        message = f"Netlify API error {status_code} for {url}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


@dataclass(frozen=True)
class DeployEvent:
    """Lifecycle event reported while a deploy runs."""

    type: str
    phase: str  # "start", "progress" or "stop"
    msg: str


StatusCallback = Callable[[DeployEvent], None]


@dataclass(frozen=True)
class DeployResult:
    """Completed deploy as reported by Netlify."""

    deploy_id: str
    admin_url: str
    uploaded: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


def read_token(token_path: Path) -> str:
    """Read the personal access token stored at ``token_path``.

    Raises:
        ConfigError: If the file is missing, unreadable or empty
    """
    try:
        token = token_path.read_text(encoding="utf-8").strip()
    except OSError as err:
        raise ConfigError(f"Failed to read Netlify token from {token_path}: {err}") from err
    if not token:
        raise ConfigError(f"Netlify token file is empty: {token_path}")
    return token


def is_online(url: str = "https://api.netlify.com", timeout: float = 3.0) -> bool:
    """Return True when ``url`` answers at all, whatever the status code."""
    try:
        requests.head(url, timeout=timeout, allow_redirects=True)
    except RequestException as err:
        logger.info(f"Connectivity probe failed: {err}")
        return False
    return True


def _noop(_event: DeployEvent) -> None:
    return None


class NetlifyClient:
    """Client for the parts of the Netlify REST API this tool uses."""

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize client.

        Args:
            token: Netlify personal access token
            base_url: API base URL
            timeout: Per-request timeout in seconds
            poll_interval: Seconds between deploy state checks
            sleep: Sleep function (injectable for tests)
            session: Optional preconfigured requests session
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {token}", "User-Agent": "netlify-sync"}
        )

    def deploy(
        self,
        site_id: str,
        src_dir: Path,
        digest: DirectoryDigest,
        status_cb: StatusCallback | None = None,
        message: str | None = None,
        deploy_timeout: float = 300.0,
    ) -> DeployResult:
        """Deploy ``src_dir`` to ``site_id`` using a precomputed file digest.

        Only paths present in ``digest`` are uploaded, so files excluded from
        the digest are excluded from the deploy as well.

        Raises:
            NetlifyConnectionError: Network/timeout issues
            NetlifyAPIError: API rejected a request or the deploy failed
        """
        status_cb = status_cb or _noop

        status_cb(DeployEvent("hashing", "start", "Hashing files..."))
        status_cb(DeployEvent("hashing", "stop", f"Finished hashing {len(digest)} files"))

        status_cb(DeployEvent("create-deploy", "start", "CDN diffing files..."))
        payload: dict[str, Any] = {"files": digest, "draft": False}
        if message:
            payload["title"] = message
        deploy = self._request(
            "POST", f"/sites/{quote(site_id, safe='')}/deploys", json=payload
        ).json()
        deploy_id = str(deploy["id"])
        required = set(deploy.get("required") or [])
        status_cb(
            DeployEvent("create-deploy", "stop", f"CDN requesting {len(required)} files")
        )

        uploads = [path for path, sha in sorted(digest.items()) if sha in required]
        # Identical files share a sha; Netlify needs each content only once
        seen: set[str] = set()
        uploaded: list[str] = []
        status_cb(DeployEvent("upload", "start", f"Uploading {len(uploads)} files"))
        for path in uploads:
            sha = digest[path]
            if sha in seen:
                continue
            seen.add(sha)
            self._upload_file(deploy_id, src_dir, path)
            uploaded.append(path)
            status_cb(DeployEvent("upload", "progress", f"Uploaded {path}"))
        status_cb(DeployEvent("upload", "stop", f"Finished uploading {len(uploaded)} assets"))

        status_cb(DeployEvent("wait-for-deploy", "start", "Waiting for deploy to go live..."))
        final = self._wait_for_ready(deploy_id, deploy_timeout)
        status_cb(DeployEvent("wait-for-deploy", "stop", "Deploy is live!"))

        return DeployResult(
            deploy_id=deploy_id,
            admin_url=str(final.get("admin_url") or deploy.get("admin_url") or ""),
            uploaded=tuple(uploaded),
            raw=final,
        )

    def list_sites(self) -> list[dict[str, Any]]:
        return list(self._request("GET", "/sites").json())

    def list_builds(self, site_id: str) -> list[dict[str, Any]]:
        return list(self._request("GET", f"/sites/{quote(site_id, safe='')}/builds").json())

    def get_deploy(self, deploy_id: str) -> dict[str, Any]:
        return dict(self._request("GET", f"/deploys/{deploy_id}").json())

    def _upload_file(self, deploy_id: str, src_dir: Path, path: str) -> None:
        file_path = src_dir / path.lstrip("/")
        try:
            data = file_path.read_bytes()
        except OSError as err:
            raise NetlifyAPIError(path, None, f"could not read {file_path}: {err}") from err
        self._request(
            "PUT",
            f"/deploys/{deploy_id}/files{quote(path)}",
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )

    def _wait_for_ready(self, deploy_id: str, deploy_timeout: float) -> dict[str, Any]:
        deadline = time.monotonic() + deploy_timeout
        while True:
            deploy = self.get_deploy(deploy_id)
            state = deploy.get("state")
            if state == "ready":
                return deploy
            if state == "error":
                raise NetlifyAPIError(
                    f"{self.base_url}/deploys/{deploy_id}",
                    None,
                    deploy.get("error_message") or "deploy failed",
                )
            if time.monotonic() >= deadline:
                raise NetlifyAPIError(
                    f"{self.base_url}/deploys/{deploy_id}",
                    None,
                    f"deploy still {state!r} after {deploy_timeout:.0f}s",
                )
            self._sleep(self.poll_interval)

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Execute HTTP request with error handling.

        Raises:
            NetlifyConnectionError: Connection/timeout issues
            NetlifyAPIError: Non-2xx status code
        """
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except (Timeout, RequestsConnectionError) as e:
            raise NetlifyConnectionError(url, original_error=e) from e

        if not response.ok:
            detail = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    detail = body.get("message")
            except ValueError:
                detail = response.text[:200] or None
            raise NetlifyAPIError(url, response.status_code, detail)

        return response
