"""Tests for the Netlify API client."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import pytest
import requests

from netlify_sync import netlify_client
from netlify_sync.exceptions import ConfigError
from netlify_sync.netlify_client import (
    DeployEvent,
    NetlifyAPIError,
    NetlifyClient,
    NetlifyConnectionError,
    is_online,
    read_token,
)

BASE = "https://api.test/api/v1"


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, text: str | None = None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body)

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no JSON")
        return self._body


class FakeSession:
    """Records requests and answers from a queue of responses."""

    def __init__(self, responses: list[FakeResponse | Exception]) -> None:
        self.headers: dict[str, str] = {}
        self.responses = list(responses)
        self.requests: list[tuple[str, str, dict]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def site_dir(tmp_path: Path) -> Path:
    root = tmp_path / "site"
    (root / "css").mkdir(parents=True)
    (root / "index.html").write_bytes(b"<h1>hi</h1>")
    (root / "copy.html").write_bytes(b"<h1>hi</h1>")
    (root / "css" / "main.css").write_bytes(b"body{}")
    return root


def _sha(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def _client(session: FakeSession) -> NetlifyClient:
    return NetlifyClient("secret", base_url=BASE + "/", sleep=lambda _s: None, session=session)


class TestDeploy:
    """Tests for the file-digest deploy flow."""

    def test_uploads_only_required_files(self, site_dir: Path) -> None:
        digest = {
            "/index.html": _sha(b"<h1>hi</h1>"),
            "/copy.html": _sha(b"<h1>hi</h1>"),
            "/css/main.css": _sha(b"body{}"),
        }
        session = FakeSession(
            [
                FakeResponse(body={"id": "d1", "required": [_sha(b"<h1>hi</h1>")]}),
                FakeResponse(body={}),
                FakeResponse(body={"id": "d1", "state": "uploaded"}),
                FakeResponse(
                    body={"id": "d1", "state": "ready", "admin_url": "https://app/sites/cdn"}
                ),
            ]
        )
        events: list[DeployEvent] = []

        result = _client(session).deploy(
            "cdn.netlify.app", site_dir, digest, status_cb=events.append, message="sync"
        )

        assert session.headers["Authorization"] == "Bearer secret"
        method, url, kwargs = session.requests[0]
        assert (method, url) == ("POST", f"{BASE}/sites/cdn.netlify.app/deploys")
        assert kwargs["json"] == {"files": digest, "draft": False, "title": "sync"}

        # identical content is uploaded once, under the first sorted path
        method, url, kwargs = session.requests[1]
        assert (method, url) == ("PUT", f"{BASE}/deploys/d1/files/copy.html")
        assert kwargs["data"] == b"<h1>hi</h1>"
        assert kwargs["headers"]["Content-Type"] == "application/octet-stream"
        assert len(session.requests) == 4

        assert result.deploy_id == "d1"
        assert result.admin_url == "https://app/sites/cdn"
        assert result.uploaded == ("/copy.html",)
        assert [e.msg for e in events if e.phase == "stop"] == [
            "Finished hashing 3 files",
            "CDN requesting 1 files",
            "Finished uploading 1 assets",
            "Deploy is live!",
        ]

    def test_api_rejection(self, site_dir: Path) -> None:
        session = FakeSession([FakeResponse(422, body={"message": "Site not found"})])

        with pytest.raises(NetlifyAPIError, match="Site not found") as exc_info:
            _client(session).deploy("missing", site_dir, {})

        assert exc_info.value.status_code == 422

    def test_non_json_error_body(self, site_dir: Path) -> None:
        session = FakeSession([FakeResponse(502, body=None, text="Bad Gateway")])

        with pytest.raises(NetlifyAPIError, match="Bad Gateway"):
            _client(session).deploy("cdn", site_dir, {})

    def test_connection_error(self, site_dir: Path) -> None:
        session = FakeSession([requests.exceptions.ConnectionError("reset by peer")])

        with pytest.raises(NetlifyConnectionError, match="reset by peer"):
            _client(session).deploy("cdn", site_dir, {})

    def test_failed_deploy_state(self, site_dir: Path) -> None:
        session = FakeSession(
            [
                FakeResponse(body={"id": "d1", "required": []}),
                FakeResponse(body={"id": "d1", "state": "error", "error_message": "quota"}),
            ]
        )

        with pytest.raises(NetlifyAPIError, match="quota"):
            _client(session).deploy("cdn", site_dir, {"/index.html": "abc"})

    def test_missing_local_file(self, site_dir: Path) -> None:
        session = FakeSession([FakeResponse(body={"id": "d1", "required": ["abc"]})])

        with pytest.raises(NetlifyAPIError, match="could not read"):
            _client(session).deploy("cdn", site_dir, {"/gone.html": "abc"})


class TestListing:
    """Tests for sites and builds listing."""

    def test_list_sites_and_builds(self) -> None:
        session = FakeSession(
            [
                FakeResponse(body=[{"site_id": "s1", "url": "https://a.example.com"}]),
                FakeResponse(body=[{"done": True, "error": None}]),
            ]
        )
        client = _client(session)

        assert client.list_sites()[0]["site_id"] == "s1"
        assert client.list_builds("s1") == [{"done": True, "error": None}]
        assert session.requests[1][1] == f"{BASE}/sites/s1/builds"


class TestReadToken:
    """Tests for read_token."""

    def test_strips_whitespace(self, tmp_path: Path) -> None:
        path = tmp_path / "token"
        path.write_text("  abc123\n", encoding="utf-8")

        assert read_token(path) == "abc123"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Failed to read"):
            read_token(tmp_path / "token")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "token"
        path.write_text("\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="empty"):
            read_token(path)


class TestIsOnline:
    """Tests for the connectivity probe."""

    def test_any_response_is_online(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list[str] = []

        def head(url: str, **_kwargs: Any) -> FakeResponse:
            calls.append(url)
            return FakeResponse(503, body={})

        monkeypatch.setattr(netlify_client.requests, "head", head)

        assert is_online("https://probe.test", timeout=1.0)
        assert calls == ["https://probe.test"]

    def test_network_error_is_offline(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def head(url: str, **_kwargs: Any) -> FakeResponse:
            raise requests.exceptions.ConnectTimeout("timed out")

        monkeypatch.setattr(netlify_client.requests, "head", head)

        assert not is_online("https://probe.test", timeout=1.0)
