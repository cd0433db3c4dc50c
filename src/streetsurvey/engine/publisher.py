"""Publish coordinator: the job state machine around the upload worker."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from streetsurvey.config import Settings
from streetsurvey.errors import (
    AlreadyPublishingError,
    IncompletePublishError,
    NoWorkError,
    PublishCancelledError,
    RemoteError,
    SessionNotFoundError,
    StorageError,
)
from streetsurvey.logging import log_publish_finished, log_state_change
from streetsurvey.storage.models import Capture, PublishState, Session, SessionStatus
from streetsurvey.storage.store import CaptureStore
from streetsurvey.sync.coverage import CoverageIndexMerger
from streetsurvey.sync.documents import (
    build_metadata,
    build_session_csv,
    csv_path,
    encode_json,
    metadata_path,
)
from streetsurvey.sync.github import GitHubContentsClient, PublishCredentials
from streetsurvey.sync.network import ConnectivityMonitor
from streetsurvey.sync.uploader import UploadWorker
from streetsurvey.sync.validation import validate_access

logger = logging.getLogger(__name__)

ClientFactory = Callable[[PublishCredentials], GitHubContentsClient]


class PublishPhase(Enum):
    """Phase of the publish state machine."""

    IDLE = "idle"
    VALIDATING = "validating"
    QUEUED = "queued"
    UPLOADING = "uploading"
    PAUSED = "paused"
    FINISHING = "finishing"
    CANCELLING = "cancelling"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_duration(seconds: float | None) -> str:
    """Format a duration as "42s", "7m" or "1h 5m"."""
    if seconds is None:
        return "unknown"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h {seconds % 3600 // 60}m"


@dataclass
class PublishProgress:
    """Snapshot of a running publish job."""

    session_id: str
    completed: int
    failed: int
    total: int
    remaining: int
    percent: int
    estimated_seconds_remaining: int | None
    status: str
    is_paused: bool
    phase: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PublishResult:
    """Final counters of a publish job."""

    session_id: str
    completed: int
    failed: int
    total: int
    status: SessionStatus

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class PublishJob:
    """State of the single publish job owned by a coordinator.

    active is the job-exists flag: cancelling or finishing clears it, and
    the drain loop stops as soon as it observes that.
    """

    session: Session
    credentials: PublishCredentials
    client: GitHubContentsClient
    queue: deque[Capture]
    total: int
    publish_started: str = field(default_factory=_now)
    completed: int = 0
    failed: int = 0
    active: bool = True
    paused: bool = False
    status_text: str = ""
    started_at: float = field(default_factory=time.monotonic)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    worker: UploadWorker | None = None

    @property
    def session_id(self) -> str:
        return self.session.id

    def to_state(self, in_progress: bool = True, completed_at: str | None = None) -> PublishState:
        return PublishState(
            session_id=self.session.id,
            publish_started=self.publish_started,
            total_to_upload=self.total,
            completed=self.completed,
            failed=self.failed,
            in_progress=in_progress,
            completed_at=completed_at,
        )

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early if the job is cancelled."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self.cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return


class PublishCoordinator:
    """Publishes one session at a time to the remote content store.

    Phases: idle -> validating -> queued -> uploading <-> paused ->
    finishing -> idle, with uploading/paused -> cancelling -> idle.

    Items are uploaded strictly one after another by a drain task. Pause
    takes effect between items; cancel waits for the item in flight to
    settle. Progress is persisted after every item, so a restarted
    process can pick up where the job stopped without re-uploading.

    Consumers can listen (on_progress, on_complete, on_error) or poll
    get_progress().

    Example:
        coordinator = PublishCoordinator(settings, store)
        coordinator.on_progress(lambda p: print(p.percent))
        await coordinator.start_publish(session_id, credentials)
        await coordinator.wait_until_finished()
    """

    def __init__(
        self,
        config: Settings,
        store: CaptureStore,
        client_factory: ClientFactory | None = None,
        connectivity: ConnectivityMonitor | None = None,
        merger: CoverageIndexMerger | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            config: Settings with retry, delay and quota configuration
            store: Capture store holding the sessions to publish
            client_factory: Builds a contents client for a job's credentials
            connectivity: Network signal uploads wait on
            merger: Coverage index merger used when finishing
        """
        self.config = config
        self.store = store
        self.connectivity = connectivity or ConnectivityMonitor()
        self._client_factory = client_factory or self._default_client
        self._merger = merger or CoverageIndexMerger()
        self._log = logger

        self._phase = PublishPhase.IDLE
        self._job: PublishJob | None = None
        self._draining = False
        self._drain_task: asyncio.Task | None = None

        self._progress_callbacks: list[Callable[[PublishProgress], None]] = []
        self._complete_callbacks: list[Callable[[PublishResult], None]] = []
        self._error_callbacks: list[Callable[[Exception, Capture | None], None]] = []

    def _default_client(self, credentials: PublishCredentials) -> GitHubContentsClient:
        return GitHubContentsClient(
            credentials,
            api_url=self.config.github_api_url,
            timeout=self.config.request_timeout,
        )

    # --- State ---

    @property
    def phase(self) -> PublishPhase:
        return self._phase

    @property
    def is_publishing(self) -> bool:
        """Check whether a publish job exists."""
        return self._job is not None and self._job.active

    @property
    def is_draining(self) -> bool:
        """Check whether the drain task is running."""
        return self._draining

    @property
    def is_paused(self) -> bool:
        return self._job is not None and self._job.paused

    def _busy(self) -> bool:
        return self.is_publishing or self.is_draining or self._phase is not PublishPhase.IDLE

    def _set_phase(self, phase: PublishPhase) -> None:
        if self._phase is not phase:
            self._log.debug("Publish phase changed: %s -> %s", self._phase.value, phase.value)
            self._phase = phase

    # --- Listeners ---

    def on_progress(self, callback: Callable[[PublishProgress], None]) -> None:
        """Register callback for progress updates.

        Args:
            callback: Function called with a PublishProgress snapshot
        """
        self._progress_callbacks.append(callback)

    def on_complete(self, callback: Callable[[PublishResult], None]) -> None:
        """Register callback for job completion.

        Args:
            callback: Function called with the final PublishResult
        """
        self._complete_callbacks.append(callback)

    def on_error(self, callback: Callable[[Exception, Capture | None], None]) -> None:
        """Register callback for errors.

        Args:
            callback: Function called with the error and the capture it
                concerns (None for errors outside a single item)
        """
        self._error_callbacks.append(callback)

    def _emit_progress(self, job: PublishJob, status: str) -> None:
        job.status_text = status
        progress = self._progress(job)
        for callback in self._progress_callbacks:
            try:
                callback(progress)
            except Exception:
                self._log.exception("Progress listener failed")

    def _emit_complete(self, result: PublishResult) -> None:
        for callback in self._complete_callbacks:
            try:
                callback(result)
            except Exception:
                self._log.exception("Completion listener failed")

    def _emit_error(self, error: Exception, capture: Capture | None) -> None:
        for callback in self._error_callbacks:
            try:
                callback(error, capture)
            except Exception:
                self._log.exception("Error listener failed")

    # --- Progress ---

    def get_progress(self) -> PublishProgress | None:
        """Return a snapshot of the current job, or None when idle."""
        if self._job is None:
            return None
        return self._progress(self._job)

    def _progress(self, job: PublishJob) -> PublishProgress:
        processed = job.completed + job.failed
        remaining = len(job.queue)
        elapsed = time.monotonic() - job.started_at

        estimate = None
        if processed and elapsed > 0:
            estimate = round(remaining * elapsed / processed)

        return PublishProgress(
            session_id=job.session_id,
            completed=job.completed,
            failed=job.failed,
            total=job.total,
            remaining=remaining,
            percent=round(processed / job.total * 100) if job.total else 100,
            estimated_seconds_remaining=estimate,
            status=job.status_text,
            is_paused=job.paused,
            phase=self._phase.value,
        )

    # --- Operations ---

    async def start_publish(self, session_id: str, credentials: PublishCredentials) -> int:
        """Validate access, queue the unpublished captures and start uploading.

        Returns once the drain task is running; completion is reported
        through on_complete / wait_until_finished().

        Args:
            session_id: Session to publish
            credentials: Target repository and token

        Returns:
            Number of captures queued

        Raises:
            AlreadyPublishingError: A job is already active
            ValidationError: Access checks failed; nothing was written
            SessionNotFoundError: No such session
            NoWorkError: No unpublished captures with a payload
        """
        if self._busy():
            raise AlreadyPublishingError("A publish job is already in progress")

        self._set_phase(PublishPhase.VALIDATING)
        client = self._client_factory(credentials)
        try:
            await validate_access(client, self.config.min_rate_limit_remaining)

            session = self.store.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")

            captures = [c for c in self.store.get_unpublished_captures(session_id) if c.has_payload]
            if not captures:
                raise NoWorkError(f"Nothing to publish for session {session_id}")

            job = PublishJob(
                session=session,
                credentials=credentials,
                client=client,
                queue=deque(captures),
                total=len(captures),
            )
            job.worker = self._make_worker(job)

            # Durable before the first write
            self.store.save_publish_state(job.to_state())
            self._transition(session, SessionStatus.PUBLISHING, "publish_started")
        except BaseException:
            self._set_phase(PublishPhase.IDLE)
            await client.close()
            raise

        self._job = job
        self._set_phase(PublishPhase.QUEUED)
        self._log.info(
            "Publish started: session_id=%s, total=%d, repo=%s",
            session_id, job.total, credentials.repo,
        )
        self._emit_progress(job, f"Queued {job.total} images")
        self._start_drain(job)
        return job.total

    def pause_publish(self) -> None:
        """Stop after the item in flight; the queue is kept."""
        job = self._job
        if job is None or not job.active or job.paused:
            return
        job.paused = True
        if not self.is_draining:
            self._set_phase(PublishPhase.PAUSED)
        self._log.info("Publish pause requested: session_id=%s", job.session_id)
        self._emit_progress(job, "Paused")

    def resume_publish(self) -> None:
        """Continue a paused job.

        Credentials are not validated again.
        """
        job = self._job
        if job is None or not job.active or not job.paused:
            return
        job.paused = False
        self._log.info("Publish resumed: session_id=%s", job.session_id)
        if not self.is_draining:
            self._start_drain(job)

    async def cancel_publish(self) -> None:
        """Abandon the job and mark the session stopped.

        Waits (bounded by cancel_timeout) for the item in flight to settle;
        nothing is persisted for that item afterwards. A job that is
        already finishing is allowed to complete instead.
        """
        job = self._job
        if job is None or not job.active:
            return

        if self._phase is PublishPhase.FINISHING:
            self._log.info("Cancel ignored, job is finishing: session_id=%s", job.session_id)
            await self._wait_for_drain()
            return

        self._set_phase(PublishPhase.CANCELLING)
        job.active = False
        job.paused = False
        job.queue.clear()
        job.cancelled.set()

        if not await self._wait_for_drain():
            self._log.warning(
                "Upload still in flight after %.1fs, stopping anyway: session_id=%s",
                self.config.cancel_timeout, job.session_id,
            )

        try:
            session = self.store.get_session(job.session_id)
            if session is not None:
                self._transition(session, SessionStatus.STOPPED, "publish_cancelled")
            self.store.save_publish_state(job.to_state(in_progress=False))
        finally:
            await self._end_job(job)

        self._log.info(
            "Publish cancelled: session_id=%s, completed=%d, failed=%d",
            job.session_id, job.completed, job.failed,
        )

    async def finish_publish(self, session_id: str, credentials: PublishCredentials) -> PublishResult:
        """Run only the finishing phase for a session.

        Used when a previous job uploaded its items but died (or failed)
        while writing the session documents or the coverage index. Every
        finishing step is idempotent.

        Raises:
            AlreadyPublishingError: A job is already active
            ValidationError: Access checks failed
            SessionNotFoundError: No such session
            IncompletePublishError: Items of the session are still unpublished
            RemoteError, StorageError: Finishing failed
        """
        if self._busy():
            raise AlreadyPublishingError("A publish job is already in progress")

        self._set_phase(PublishPhase.VALIDATING)
        client = self._client_factory(credentials)
        try:
            session = self.store.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")

            state = self.store.get_publish_state(session_id)
            if state is not None:
                processed = state.completed + state.failed
                if processed < state.total_to_upload:
                    raise IncompletePublishError(
                        f"Session {session_id} has {state.total_to_upload - processed} "
                        f"items left to upload; run 'publish run' first"
                    )
                job = PublishJob(
                    session=session,
                    credentials=credentials,
                    client=client,
                    queue=deque(),
                    total=state.total_to_upload,
                    publish_started=state.publish_started,
                    completed=state.completed,
                    failed=state.failed,
                )
            else:
                unpublished = self.store.get_unpublished_captures(session_id)
                pending = sum(1 for c in unpublished if c.has_payload)
                if pending:
                    raise IncompletePublishError(
                        f"Session {session_id} has {pending} items left to upload; "
                        f"run 'publish run' first"
                    )
                published = session.capture_count - len(unpublished)
                job = PublishJob(
                    session=session,
                    credentials=credentials,
                    client=client,
                    queue=deque(),
                    total=session.capture_count,
                    completed=published,
                )

            await validate_access(client, self.config.min_rate_limit_remaining)
        except BaseException:
            self._set_phase(PublishPhase.IDLE)
            await client.close()
            raise

        self._job = job
        self._log.info("Re-running publish finishing: session_id=%s", session_id)
        return await self._finish(job, raise_errors=True)

    async def join_drain(self) -> None:
        """Wait for the current drain task (it stops on pause, cancel or finish)."""
        task = self._drain_task
        if task is not None:
            await task

    async def wait_until_finished(self) -> None:
        """Wait until the current job has finished, failed finishing or been cancelled."""
        job = self._job
        if job is not None:
            await job.finished.wait()

    # --- Internals ---

    def _make_worker(self, job: PublishJob, abortable: bool = True) -> UploadWorker:
        return UploadWorker(
            job.client,
            connectivity=self.connectivity,
            max_attempts=self.config.max_upload_attempts,
            rate_limit_cooldown=self.config.rate_limit_cooldown,
            backoff_base=self.config.backoff_base,
            backoff_cap=self.config.backoff_cap,
            sleep=job.sleep,
            should_abort=(lambda: not job.active) if abortable else None,
        )

    def _transition(self, session: Session, status: SessionStatus, trigger: str) -> None:
        old_status = session.status
        session.status = status
        self.store.update_session(session)
        log_state_change(self._log, session.id, old_status.value, status.value, trigger)

    def _start_drain(self, job: PublishJob) -> None:
        # Set before the task runs so a quick resume can't start a second drain
        self._draining = True
        self._drain_task = asyncio.create_task(self._drain(job))

    async def _wait_for_drain(self) -> bool:
        task = self._drain_task
        if task is None or task.done() or task is asyncio.current_task():
            return True
        done, _ = await asyncio.wait({task}, timeout=self.config.cancel_timeout)
        return bool(done)

    async def _drain(self, job: PublishJob) -> None:
        """Upload queued items one by one until the queue empties or the job stops."""
        self._set_phase(PublishPhase.UPLOADING)
        try:
            while job.queue and job.active and not job.paused:
                capture = job.queue[0]
                self._emit_progress(job, f"Uploading image {capture.sequence_num}...")

                try:
                    result = await job.worker.upload_item(capture)
                except PublishCancelledError:
                    break
                except RemoteError as e:
                    if not job.active:
                        break
                    job.failed += 1
                    job.queue.popleft()
                    self.store.save_publish_state(job.to_state())
                    self._log.error(
                        "Image upload failed: session_id=%s, sequence=%d, error=%s",
                        job.session_id, capture.sequence_num, e,
                    )
                    self._emit_error(e, capture)
                    self._emit_progress(job, f"Failed image {capture.sequence_num}")
                    continue

                if not job.active:
                    # Cancelled while the upload was in flight
                    break

                self.store.mark_capture_published(capture.id, result.url)
                job.completed += 1
                job.queue.popleft()
                self.store.save_publish_state(job.to_state())
                self._emit_progress(job, f"Uploaded image {capture.sequence_num}")

                if job.queue:
                    await job.sleep(self.config.item_delay)

            if job.active and not job.queue:
                await self._finish(job)
            elif job.active and job.paused:
                self._set_phase(PublishPhase.PAUSED)
                self._log.info(
                    "Publish paused: session_id=%s, remaining=%d", job.session_id, len(job.queue)
                )
        except StorageError as e:
            self._log.error("Publish aborted by storage error: session_id=%s, error=%s", job.session_id, e)
            await self._end_job(job)
            self._emit_error(e, None)
        except Exception as e:
            self._log.exception("Publish aborted by unexpected error: session_id=%s", job.session_id)
            await self._end_job(job)
            self._emit_error(e, None)
        finally:
            self._draining = False

    async def _finish(self, job: PublishJob, raise_errors: bool = False) -> PublishResult | None:
        """Write the session documents, merge the coverage index and close the job.

        On failure the session stays in the publishing state so that the
        finishing phase can be run again later.
        """
        self._set_phase(PublishPhase.FINISHING)
        self._emit_progress(job, "Uploading metadata...")
        try:
            result = await self._run_finishing(job)
        except (RemoteError, StorageError) as e:
            self._log.error("Publish finishing failed: session_id=%s, error=%s", job.session_id, e)
            await self._end_job(job)
            self._emit_error(e, None)
            if raise_errors:
                raise
            return None
        except Exception as e:
            self._log.exception("Publish finishing crashed: session_id=%s", job.session_id)
            await self._end_job(job)
            self._emit_error(e, None)
            if raise_errors:
                raise
            return None

        await self._end_job(job)
        self._emit_complete(result)
        return result

    async def _run_finishing(self, job: PublishJob) -> PublishResult:
        session_id = job.session_id
        session = self.store.get_session(session_id)
        if session is None:
            raise StorageError(f"Session not found: {session_id}")
        captures = self.store.get_session_captures(session_id)
        contributor = job.credentials.contributor

        worker = self._make_worker(job, abortable=False)
        await worker.upload_document(
            csv_path(session_id),
            build_session_csv(captures).encode("utf-8"),
            f"Upload session data for {session.name}",
        )
        metadata = build_metadata(session, captures, failed=job.failed, contributor=contributor)
        await worker.upload_document(
            metadata_path(session_id),
            encode_json(metadata),
            f"Upload session metadata for {session.name}",
        )

        await self._merger.merge(job.client, session, captures, contributor)

        status = SessionStatus.PUBLISHED if job.failed == 0 else SessionStatus.PARTIALLY_PUBLISHED
        self._transition(session, status, "publish_finished")
        self.store.save_publish_state(job.to_state(in_progress=False, completed_at=_now()))
        log_publish_finished(self._log, session_id, job.completed, job.failed, job.total)

        return PublishResult(
            session_id=session_id,
            completed=job.completed,
            failed=job.failed,
            total=job.total,
            status=status,
        )

    async def _end_job(self, job: PublishJob) -> None:
        job.active = False
        job.queue.clear()
        job.finished.set()
        try:
            await job.client.close()
        finally:
            if self._job is job:
                self._job = None
            self._set_phase(PublishPhase.IDLE)
