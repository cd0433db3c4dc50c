"""Async client for the GitHub Contents API with structured error variants."""

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from streetsurvey import __version__
from streetsurvey.errors import (
    ConflictError,
    PermanentItemError,
    RateLimitedError,
    RemoteError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


@dataclass
class PublishCredentials:
    """Where and as whom a session is published."""

    token: str
    repo: str  # owner/name
    branch: str = "main"
    contributor: str = ""

    def __repr__(self) -> str:
        return (
            f"PublishCredentials(repo={self.repo!r}, branch={self.branch!r}, "
            f"contributor={self.contributor!r}, token={'***' if self.token else ''!r})"
        )


@dataclass
class RemoteFile:
    """A file in the remote repository, identified by its content sha."""

    path: str
    sha: str
    url: str | None = None  # raw download URL
    content: bytes | None = None


@dataclass
class RateLimitStatus:
    """Core API quota of the authenticated token."""

    limit: int
    remaining: int
    reset_at: datetime | None = None


def _parse_reset(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.text


def classify_response(response: httpx.Response) -> RemoteError | None:
    """Map an HTTP response to the matching remote error, or None on success.

    Args:
        response: Response from the GitHub API

    Returns:
        RateLimitedError, ConflictError, TransientNetworkError or
        PermanentItemError for failures; None for 2xx/3xx responses
    """
    status = response.status_code
    if status < 400:
        return None

    message = _error_message(response)
    headers = response.headers

    if status == 429 or (
        status == 403
        and (headers.get("x-ratelimit-remaining") == "0" or "retry-after" in headers)
    ):
        return RateLimitedError(
            f"Rate limited: {message}",
            status_code=status,
            reset_at=_parse_reset(headers.get("x-ratelimit-reset")),
        )

    # 422 is what the API answers when an existing file is written without its sha
    if status == 409 or (status == 422 and "sha" in message.lower()):
        return ConflictError(f"Conflict: {message}", status_code=status)

    if status >= 500:
        return TransientNetworkError(f"Server error: {status} - {message}", status_code=status)

    return PermanentItemError(f"Client error: {status} - {message}", status_code=status)


class GitHubContentsClient:
    """Async client for the parts of the GitHub REST API used for publishing.

    Uses httpx.AsyncClient for connection pooling. Transport failures and
    non-success responses are raised as RemoteError subclasses, so callers
    decide on retries from the exception type alone.
    """

    def __init__(
        self,
        credentials: PublishCredentials,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            credentials: Token, repository and branch to publish to
            api_url: Base URL of the GitHub API
            timeout: Request timeout in seconds
            http_client: Optional preconfigured client (e.g. with a mock transport)
        """
        self.credentials = credentials
        self.api_url = api_url.rstrip("/")

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": f"streetsurvey/{__version__}",
        }
        if credentials.token:
            headers["Authorization"] = f"Bearer {credentials.token}"
        self._headers = headers

        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def repo_url(self) -> str:
        return f"{self.api_url}/repos/{self.credentials.repo}"

    def _contents_url(self, path: str) -> str:
        return f"{self.repo_url}/contents/{quote(path)}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, translating transport failures into TransientNetworkError."""
        try:
            return await self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Connection error: {e}") from e
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"HTTP error: {e}") from e

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        response = await self._request(method, url, **kwargs)
        error = classify_response(response)
        if error is not None:
            raise error
        return response.json()

    async def get_authenticated_user(self) -> dict[str, Any]:
        """Return the user the token belongs to."""
        return await self._request_json("GET", f"{self.api_url}/user")

    async def get_repository(self) -> dict[str, Any]:
        """Return the target repository, including the token's permissions."""
        return await self._request_json("GET", self.repo_url)

    async def get_rate_limit(self) -> RateLimitStatus:
        """Return the remaining core API quota."""
        data = await self._request_json("GET", f"{self.api_url}/rate_limit")
        core = data.get("resources", {}).get("core", {})
        return RateLimitStatus(
            limit=int(core.get("limit", 0)),
            remaining=int(core.get("remaining", 0)),
            reset_at=_parse_reset(core.get("reset")),
        )

    async def get_content(self, path: str) -> RemoteFile | None:
        """Probe a path on the target branch.

        Args:
            path: Repository-relative file path

        Returns:
            RemoteFile with the current sha (and content when the API
            inlines it), or None if nothing exists at the path
        """
        response = await self._request(
            "GET", self._contents_url(path), params={"ref": self.credentials.branch}
        )
        if response.status_code == 404:
            return None

        error = classify_response(response)
        if error is not None:
            raise error

        data = response.json()
        if not isinstance(data, dict):
            raise PermanentItemError(f"Path is a directory, not a file: {path}")

        content = None
        if data.get("encoding") == "base64" and data.get("content"):
            content = base64.b64decode(data["content"])

        return RemoteFile(
            path=data.get("path", path),
            sha=data["sha"],
            url=data.get("download_url"),
            content=content,
        )

    async def put_content(
        self,
        path: str,
        content: bytes,
        message: str,
        sha: str | None = None,
    ) -> RemoteFile:
        """Create a file, or overwrite it when sha matches the current version.

        Args:
            path: Repository-relative file path
            content: Raw file bytes
            message: Commit message
            sha: Identity of the version being replaced, None to create

        Returns:
            RemoteFile describing the written version

        Raises:
            ConflictError: The file exists and sha is missing or stale
        """
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.credentials.branch,
        }
        if sha:
            body["sha"] = sha

        data = await self._request_json("PUT", self._contents_url(path), json=body)
        written = data.get("content") or {}
        return RemoteFile(
            path=written.get("path", path),
            sha=written.get("sha", ""),
            url=written.get("download_url"),
        )

    async def fetch_url(self, url: str) -> bytes:
        """Download raw bytes, e.g. from a download_url of a large file."""
        response = await self._request("GET", url)
        error = classify_response(response)
        if error is not None:
            raise error
        return response.content

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        await self._client.aclose()

    async def __aenter__(self) -> "GitHubContentsClient":
        """Enter async context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Exit async context manager."""
        await self.close()
