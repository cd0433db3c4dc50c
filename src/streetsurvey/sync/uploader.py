"""Idempotent per-item upload with retry, backoff and rate-limit handling."""

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from PIL import Image

from streetsurvey.errors import (
    ConflictError,
    PermanentItemError,
    PublishCancelledError,
    RateLimitedError,
    RemoteError,
    TransientNetworkError,
)
from streetsurvey.logging import log_upload_failed, log_upload_success
from streetsurvey.storage.models import Capture
from streetsurvey.sync.documents import image_path
from streetsurvey.sync.github import GitHubContentsClient
from streetsurvey.sync.network import ConnectivityMonitor

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class UploadResult:
    """Outcome of a successful upload."""

    path: str
    url: str | None
    sha: str | None
    skipped: bool = False  # already present remotely, nothing written
    attempts: int = 0


def check_image_payload(data: bytes) -> None:
    """Reject payloads that can never be uploaded.

    Raises:
        PermanentItemError: If the payload is empty or not a decodable image
    """
    if not data:
        raise PermanentItemError("Capture has no image payload")
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
    except Exception as e:
        raise PermanentItemError(f"Corrupt image payload: {e}") from e


class UploadWorker:
    """Uploads one item at a time to the remote content store.

    Every upload probes the remote path first, so re-running an item that
    already landed is a no-op. Writes are conditional on the identity seen
    by the probe; a conflict re-probes and retries the write once.

    Around that, a bounded retry policy applies:
    - RateLimitedError: fixed cooldown, backoff does not grow
    - TransientNetworkError / ConflictError: exponential backoff
    - PermanentItemError: raised immediately
    """

    def __init__(
        self,
        client: GitHubContentsClient,
        connectivity: ConnectivityMonitor | None = None,
        max_attempts: int = 5,
        rate_limit_cooldown: float = 60.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 60.0,
        sleep: SleepFunc = asyncio.sleep,
        should_abort: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            client: Contents client bound to the target repository
            connectivity: Waited on before each attempt when given
            max_attempts: Attempts per item before the last error propagates
            rate_limit_cooldown: Seconds to wait after a rate-limit response
            backoff_base: First backoff delay in seconds
            backoff_cap: Largest backoff delay in seconds
            sleep: Coroutine used for all waits
            should_abort: Checked between attempts; True stops the item
        """
        self.client = client
        self.connectivity = connectivity
        self.max_attempts = max_attempts
        self.rate_limit_cooldown = rate_limit_cooldown
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep
        self._should_abort = should_abort

    def backoff_delay(self, failures: int) -> float:
        """Delay after the n-th transient failure of an item."""
        return min(self.backoff_base * 2 ** (failures - 1), self.backoff_cap)

    async def upload_item(self, capture: Capture) -> UploadResult:
        """Upload a capture image unless it already exists remotely.

        Args:
            capture: Capture with image bytes

        Returns:
            UploadResult with the remote URL; skipped=True if it was present

        Raises:
            PermanentItemError: Payload missing or corrupt, or request rejected
            RemoteError: The last error once all attempts are used
            PublishCancelledError: should_abort() turned True between attempts
        """
        path = image_path(capture.session_id, capture.sequence_num)
        try:
            check_image_payload(capture.image_bytes)
        except PermanentItemError as e:
            log_upload_failed(logger, path, str(e), 0)
            raise

        message = f"Upload image {capture.sequence_num}"
        return await self._with_retry(
            path, lambda: self._write_once(path, capture.image_bytes, message, skip_existing=True)
        )

    async def upload_document(self, path: str, content: bytes, message: str) -> UploadResult:
        """Create or overwrite a document at path.

        Overwrites are conditional on the sha returned by the probe, so
        regenerated documents replace the old version without clobbering
        a concurrent change unnoticed.
        """
        return await self._with_retry(
            path, lambda: self._write_once(path, content, message, skip_existing=False)
        )

    async def _write_once(
        self,
        path: str,
        content: bytes,
        message: str,
        skip_existing: bool,
    ) -> UploadResult:
        existing = await self.client.get_content(path)
        if existing is not None and skip_existing:
            return UploadResult(path=path, url=existing.url, sha=existing.sha, skipped=True)

        sha = existing.sha if existing else None
        try:
            written = await self.client.put_content(path, content, message, sha=sha)
        except ConflictError:
            logger.info("Write conflict, refreshing remote identity: path=%s", path)
            current = await self.client.get_content(path)
            written = await self.client.put_content(
                path, content, message, sha=current.sha if current else None
            )

        return UploadResult(path=path, url=written.url, sha=written.sha)

    async def _with_retry(
        self,
        path: str,
        operation: Callable[[], Awaitable[UploadResult]],
    ) -> UploadResult:
        last_error: RemoteError | None = None
        transient_failures = 0

        for attempt in range(1, self.max_attempts + 1):
            self._check_abort(path)
            if self.connectivity is not None:
                await self.connectivity.wait_online()
                self._check_abort(path)

            try:
                result = await operation()
            except PermanentItemError as e:
                log_upload_failed(logger, path, str(e), attempt)
                raise
            except RateLimitedError as e:
                last_error = e
                delay = self.rate_limit_cooldown
            except (TransientNetworkError, ConflictError) as e:
                last_error = e
                transient_failures += 1
                delay = self.backoff_delay(transient_failures)
            else:
                result.attempts = attempt
                log_upload_success(logger, path, attempt, skipped=result.skipped)
                return result

            log_upload_failed(logger, path, str(last_error), attempt)
            if attempt < self.max_attempts:
                logger.debug("Retrying upload: path=%s, delay=%.1fs", path, delay)
                await self._sleep(delay)

        assert last_error is not None
        raise last_error

    def _check_abort(self, path: str) -> None:
        if self._should_abort is not None and self._should_abort():
            raise PublishCancelledError(f"Upload of {path} cancelled")
