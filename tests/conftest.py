"""Shared fixtures: an in-memory GitHub contents API and capture helpers."""

import asyncio
import base64
import hashlib
import io
import json
from datetime import datetime, timezone

import httpx
import pytest
from PIL import Image

from streetsurvey.config import Settings
from streetsurvey.storage.models import Capture, GpsFix, MotionReading
from streetsurvey.storage.store import CaptureStore
from streetsurvey.sync.github import GitHubContentsClient, PublishCredentials

TOKEN = "ghp_testtoken1234"
REPO = "survey-org/survey-data"


def make_jpeg(color: tuple[int, int, int] = (120, 80, 40), size: tuple[int, int] = (32, 24)) -> bytes:
    """Create a small valid JPEG."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="JPEG", quality=70)
    return buffer.getvalue()


def make_capture(
    session_id: str,
    sequence_num: int,
    image_bytes: bytes | None = None,
    lat: float | None = 52.37,
    lng: float | None = 4.89,
) -> Capture:
    """Create a capture walking north-east by sequence number."""
    gps = None
    if lat is not None and lng is not None:
        gps = GpsFix(
            lat=lat + sequence_num * 0.001,
            lng=lng + sequence_num * 0.001,
            accuracy=5.0,
        )
    return Capture(
        session_id=session_id,
        sequence_num=sequence_num,
        timestamp=datetime(2024, 5, 1, 12, 0, sequence_num % 60, tzinfo=timezone.utc).isoformat(),
        image_bytes=make_jpeg() if image_bytes is None else image_bytes,
        gps=gps,
        accel=MotionReading(x=0.01, y=-0.02, z=9.81),
        timezone_offset=120,
    )


def _sha(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


class FakeGitHub:
    """Enough of the GitHub REST API to publish against, kept in memory.

    Writing an existing file without its sha answers 422, a stale sha
    answers 409, like the real contents API. Failures can be scripted per
    method and path with fail(); status 0 simulates a dropped connection.
    """

    def __init__(
        self,
        token: str = TOKEN,
        repo: str = REPO,
        push: bool = True,
        remaining: int = 5000,
    ) -> None:
        self.token = token
        self.repo = repo
        self.push = push
        self.remaining = remaining
        self.files: dict[str, tuple[bytes, str]] = {}
        self.writes: list[str] = []
        self.requests: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], list[int]] = {}
        self.gate: asyncio.Event | None = None
        self.gate_entered: asyncio.Event | None = None

    def fail(self, method: str, path: str, *statuses: int) -> None:
        self.failures.setdefault((method, path), []).extend(statuses)

    def hold_writes(self) -> None:
        """Block every PUT until release() is called."""
        self.gate = asyncio.Event()
        self.gate_entered = asyncio.Event()

    def release(self) -> None:
        if self.gate is not None:
            self.gate.set()

    def put_file(self, path: str, content: bytes) -> str:
        sha = _sha(content)
        self.files[path] = (content, sha)
        return sha

    def read_json(self, path: str):
        return json.loads(self.files[path][0])

    def writes_to(self, path: str) -> int:
        return self.writes.count(path)

    @property
    def contents_prefix(self) -> str:
        return f"/repos/{self.repo}/contents/"

    def _error(self, status: int, message: str = "boom") -> httpx.Response:
        headers = {}
        if status == 429:
            headers["retry-after"] = "1"
        elif status == 403:
            headers["x-ratelimit-remaining"] = "0"
            headers["x-ratelimit-reset"] = "1700000000"
        return httpx.Response(status, json={"message": message}, headers=headers)

    def _file_json(self, path: str) -> dict:
        content, sha = self.files[path]
        return {
            "path": path,
            "sha": sha,
            "download_url": f"https://raw.example.test/{self.repo}/{path}",
            "encoding": "base64",
            "content": base64.b64encode(content).decode("ascii"),
        }

    async def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.requests.append((method, path))

        if request.headers.get("authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"message": "Bad credentials"})

        if path == "/user":
            return httpx.Response(200, json={"login": "surveyor"})
        if path == "/rate_limit":
            return httpx.Response(
                200,
                json={
                    "resources": {
                        "core": {"limit": 5000, "remaining": self.remaining, "reset": 1700000000}
                    }
                },
            )
        if path == f"/repos/{self.repo}":
            return httpx.Response(
                200, json={"full_name": self.repo, "permissions": {"push": self.push}}
            )
        if not path.startswith(self.contents_prefix):
            return httpx.Response(404, json={"message": "Not Found"})

        file_path = path[len(self.contents_prefix):]
        scripted = self.failures.get((method, file_path))
        if scripted:
            status = scripted.pop(0)
            if status == 0:
                raise httpx.ConnectError("connection dropped", request=request)
            return self._error(status)

        if method == "GET":
            if file_path not in self.files:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=self._file_json(file_path))

        if method == "PUT":
            if self.gate is not None:
                self.gate_entered.set()
                await self.gate.wait()

            body = json.loads(request.content)
            if file_path in self.files:
                if "sha" not in body:
                    return self._error(422, 'Invalid request.\n\n"sha" wasn\'t supplied.')
                if body["sha"] != self.files[file_path][1]:
                    return self._error(409, f"{file_path} does not match {body['sha']}")

            content = base64.b64decode(body["content"])
            self.put_file(file_path, content)
            self.writes.append(file_path)
            return httpx.Response(
                201,
                json={
                    "content": {
                        "path": file_path,
                        "sha": self.files[file_path][1],
                        "download_url": f"https://raw.example.test/{self.repo}/{file_path}",
                    }
                },
            )

        return httpx.Response(405, json={"message": "Method not allowed"})


def make_client(fake: FakeGitHub, credentials: PublishCredentials | None = None) -> GitHubContentsClient:
    credentials = credentials or PublishCredentials(token=TOKEN, repo=REPO, contributor="Ada")
    return GitHubContentsClient(
        credentials,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake.handler)),
    )


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def credentials() -> PublishCredentials:
    return PublishCredentials(token=TOKEN, repo=REPO, contributor="Ada")


@pytest.fixture
def client_factory(fake_github):
    return lambda creds: make_client(fake_github, creds)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with all delays zeroed for fast tests."""
    return Settings(
        data_dir=tmp_path / "data",
        capture_defaults_file=tmp_path / "capture.yaml",
        item_delay=0,
        backoff_base=0,
        backoff_cap=0,
        rate_limit_cooldown=0,
        cancel_timeout=2.0,
        min_rate_limit_remaining=100,
        _env_file=None,
    )


@pytest.fixture
def store(tmp_path):
    store = CaptureStore(tmp_path / "store.db")
    yield store
    store.close()
