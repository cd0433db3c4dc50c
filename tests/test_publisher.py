"""Tests for the publish coordinator state machine against the fake contents API.

Covers:
- Happy path and partial failure outcomes
- Validation failures that must not write anything
- Pause, resume and cancel semantics
- Re-running the finishing phase and publishing after a crash
"""

import asyncio
import json

import pytest

from conftest import FakeGitHub, make_capture, make_client
from streetsurvey.engine.publisher import PublishCoordinator, PublishPhase, format_duration
from streetsurvey.errors import (
    AlreadyPublishingError,
    IncompletePublishError,
    NoWorkError,
    PermanentItemError,
    SessionNotFoundError,
    ValidationError,
)
from streetsurvey.storage.models import PublishState, SessionStatus
from streetsurvey.storage.recovery import RecoveryScanner
from streetsurvey.storage.store import CaptureStore
from streetsurvey.sync.documents import COVERAGE_INDEX_PATH, csv_path, image_path, metadata_path
from streetsurvey.sync.network import ConnectivityMonitor


class Harness:
    """A coordinator wired to a fresh store and a fake repository."""

    def __init__(self, settings, fake: FakeGitHub, connectivity=None):
        self.fake = fake
        self.store = CaptureStore(settings.db_path)
        self.coordinator = PublishCoordinator(
            settings,
            self.store,
            client_factory=lambda creds: make_client(fake, creds),
            connectivity=connectivity,
        )
        self.progress = []
        self.results = []
        self.errors = []
        self.coordinator.on_progress(self.progress.append)
        self.coordinator.on_complete(self.results.append)
        self.coordinator.on_error(lambda e, c: self.errors.append((e, c)))

    def recorded_session(self, count: int = 3, status=SessionStatus.STOPPED):
        session = self.store.create_session("Riverside")
        for seq in range(1, count + 1):
            self.store.save_capture(make_capture(session.id, seq))
        session = self.store.get_session(session.id)
        session.status = status
        return self.store.update_session(session)

    def status(self, session_id):
        return self.store.get_session(session_id).status

    def close(self):
        self.store.close()


@pytest.fixture
def harness(settings, fake_github):
    harness = Harness(settings, fake_github)
    yield harness
    harness.close()


class TestPublishOutcomes:
    """Complete publish runs."""

    def test_happy_path(self, harness, credentials):
        """All images, both documents and the coverage index are written."""
        session = harness.recorded_session(3)

        async def run():
            total = await harness.coordinator.start_publish(session.id, credentials)
            await harness.coordinator.wait_until_finished()
            return total

        assert asyncio.run(run()) == 3

        (result,) = harness.results
        assert result.status is SessionStatus.PUBLISHED
        assert (result.completed, result.failed, result.total) == (3, 0, 3)

        fake = harness.fake
        for seq in (1, 2, 3):
            assert fake.writes_to(image_path(session.id, seq)) == 1
        assert csv_path(session.id) in fake.files
        assert metadata_path(session.id) in fake.files
        assert len(fake.read_json(COVERAGE_INDEX_PATH)["features"]) == 1

        assert harness.status(session.id) is SessionStatus.PUBLISHED
        assert harness.store.get_unpublished_captures(session.id) == []
        state = harness.store.get_publish_state(session.id)
        assert state.in_progress is False
        assert state.completed == 3
        assert state.completed_at is not None

        assert harness.coordinator.phase is PublishPhase.IDLE
        assert harness.coordinator.is_publishing is False
        assert harness.coordinator.get_progress() is None
        assert harness.progress[-1].percent == 100

    def test_published_urls_in_csv(self, harness, credentials):
        """The uploaded CSV links every image to its remote URL."""
        session = harness.recorded_session(2)

        async def run():
            await harness.coordinator.start_publish(session.id, credentials)
            await harness.coordinator.wait_until_finished()

        asyncio.run(run())

        data = harness.fake.files[csv_path(session.id)][0].decode()
        assert image_path(session.id, 1) in data
        assert image_path(session.id, 2) in data
        metadata = harness.fake.read_json(metadata_path(session.id))
        assert metadata["publishedCaptures"] == 2
        assert metadata["contributor"] == "Ada"

    def test_partial_failure(self, harness, credentials):
        """A rejected item is counted as failed and the rest are published."""
        session = harness.recorded_session(3)
        harness.fake.fail("PUT", image_path(session.id, 2), 400)

        async def run():
            await harness.coordinator.start_publish(session.id, credentials)
            await harness.coordinator.wait_until_finished()

        asyncio.run(run())

        (result,) = harness.results
        assert result.status is SessionStatus.PARTIALLY_PUBLISHED
        assert (result.completed, result.failed) == (2, 1)
        assert harness.status(session.id) is SessionStatus.PARTIALLY_PUBLISHED

        (error, capture) = harness.errors[0]
        assert isinstance(error, PermanentItemError)
        assert capture.sequence_num == 2
        assert [c.sequence_num for c in harness.store.get_unpublished_captures(session.id)] == [2]
        assert harness.fake.read_json(metadata_path(session.id))["failedCaptures"] == 1

    def test_corrupt_payload_fails_item(self, harness, credentials):
        """Undecodable payloads fail without a request."""
        session = harness.recorded_session(2)
        harness.store.save_capture(make_capture(session.id, 3, image_bytes=b"not an image"))

        async def run():
            await harness.coordinator.start_publish(session.id, credentials)
            await harness.coordinator.wait_until_finished()

        asyncio.run(run())

        (result,) = harness.results
        assert (result.completed, result.failed, result.total) == (2, 1, 3)
        assert image_path(session.id, 3) not in harness.fake.files

    def test_transient_failure_is_retried(self, harness, credentials):
        session = harness.recorded_session(2)
        harness.fake.fail("PUT", image_path(session.id, 1), 503, 0)

        async def run():
            await harness.coordinator.start_publish(session.id, credentials)
            await harness.coordinator.wait_until_finished()

        asyncio.run(run())

        (result,) = harness.results
        assert result.status is SessionStatus.PUBLISHED
        assert harness.errors == []

    def test_waits_for_connectivity(self, settings, fake_github, credentials):
        """Uploads hold while offline and continue once back online."""

        async def run():
            monitor = ConnectivityMonitor(online=False)
            harness = Harness(settings, fake_github, connectivity=monitor)
            try:
                session = harness.recorded_session(2)
                await harness.coordinator.start_publish(session.id, credentials)
                await asyncio.sleep(0.05)
                assert fake_github.writes == []
                assert harness.coordinator.is_publishing

                monitor.set_online()
                await harness.coordinator.wait_until_finished()
                return harness.results
            finally:
                harness.close()

        (result,) = asyncio.run(run())
        assert result.completed == 2


class TestStartPublishRejections:
    """Failures before any item is queued."""

    def test_low_rate_limit_writes_nothing(self, settings, credentials):
        """Failed validation leaves remote and local state untouched."""
        fake = FakeGitHub(remaining=10)
        harness = Harness(settings, fake)
        try:
            session = harness.recorded_session(2)

            with pytest.raises(ValidationError) as exc_info:
                asyncio.run(harness.coordinator.start_publish(session.id, credentials))

            assert "rate limit" in exc_info.value.reasons[0]
            assert fake.writes == []
            assert all(method == "GET" for method, _ in fake.requests)
            assert harness.status(session.id) is SessionStatus.STOPPED
            assert harness.store.get_publish_state(session.id) is None
            assert harness.coordinator.phase is PublishPhase.IDLE
        finally:
            harness.close()

    def test_unknown_session(self, harness, credentials):
        with pytest.raises(SessionNotFoundError):
            asyncio.run(harness.coordinator.start_publish("session_0_none", credentials))
        assert harness.coordinator.phase is PublishPhase.IDLE

    def test_no_work(self, harness, credentials):
        """A session with nothing unpublished is rejected."""
        session = harness.recorded_session(0)

        with pytest.raises(NoWorkError):
            asyncio.run(harness.coordinator.start_publish(session.id, credentials))

        assert harness.status(session.id) is SessionStatus.STOPPED
        assert harness.coordinator.phase is PublishPhase.IDLE

    def test_already_publishing(self, harness, credentials):
        """Only one job may be active at a time."""
        first = harness.recorded_session(2)
        second = harness.recorded_session(2)
        harness.fake.hold_writes()

        async def run():
            await harness.coordinator.start_publish(first.id, credentials)
            await harness.fake.gate_entered.wait()
            try:
                with pytest.raises(AlreadyPublishingError):
                    await harness.coordinator.start_publish(second.id, credentials)
            finally:
                harness.fake.release()
            await harness.coordinator.wait_until_finished()

        asyncio.run(run())

        assert harness.status(first.id) is SessionStatus.PUBLISHED
        assert harness.status(second.id) is SessionStatus.STOPPED


class TestPauseResumeCancel:
    """Job control while items are uploading."""

    def test_pause_and_resume(self, harness, credentials):
        """Pause stops after the item in flight; resume finishes the queue."""
        session = harness.recorded_session(3)
        coordinator = harness.coordinator

        def pause_after_first(progress):
            if progress.status == "Uploaded image 1":
                coordinator.pause_publish()

        coordinator.on_progress(pause_after_first)

        async def run():
            await coordinator.start_publish(session.id, credentials)
            await coordinator.join_drain()

            progress = coordinator.get_progress()
            assert coordinator.phase is PublishPhase.PAUSED
            assert coordinator.is_paused
            assert progress.is_paused
            assert (progress.completed, progress.remaining) == (1, 2)
            assert harness.store.get_publish_state(session.id).completed == 1
            assert harness.status(session.id) is SessionStatus.PUBLISHING

            coordinator.resume_publish()
            await coordinator.wait_until_finished()

        asyncio.run(run())

        (result,) = harness.results
        assert (result.completed, result.total) == (3, 3)
        for seq in (1, 2, 3):
            assert harness.fake.writes_to(image_path(session.id, seq)) == 1

    def test_pause_and_resume_when_idle_are_noops(self, harness):
        harness.coordinator.pause_publish()
        harness.coordinator.resume_publish()
        asyncio.run(harness.coordinator.cancel_publish())

        assert harness.coordinator.phase is PublishPhase.IDLE

    def test_cancel_in_flight(self, harness, credentials):
        """Cancelling marks the session stopped and doesn't persist the item in flight."""
        session = harness.recorded_session(3)
        harness.fake.hold_writes()
        coordinator = harness.coordinator

        async def run():
            await coordinator.start_publish(session.id, credentials)
            await harness.fake.gate_entered.wait()

            cancel = asyncio.create_task(coordinator.cancel_publish())
            await asyncio.sleep(0.01)
            assert coordinator.phase is PublishPhase.CANCELLING
            harness.fake.release()
            await cancel
            await coordinator.wait_until_finished()

        asyncio.run(run())

        assert harness.status(session.id) is SessionStatus.STOPPED
        assert len(harness.store.get_unpublished_captures(session.id)) == 3
        state = harness.store.get_publish_state(session.id)
        assert state.in_progress is False
        assert state.completed == 0
        assert harness.results == []
        assert harness.coordinator.phase is PublishPhase.IDLE
        assert not harness.coordinator.is_publishing
        # Only the item in flight reached the remote store
        assert harness.fake.writes == [image_path(session.id, 1)]

    def test_publish_after_cancel_skips_landed_item(self, harness, credentials):
        """An item that landed before a cancel is not written again."""
        session = harness.recorded_session(2)
        harness.fake.hold_writes()
        coordinator = harness.coordinator

        async def run():
            await coordinator.start_publish(session.id, credentials)
            await harness.fake.gate_entered.wait()
            cancel = asyncio.create_task(coordinator.cancel_publish())
            await asyncio.sleep(0.01)
            harness.fake.release()
            await cancel

            await coordinator.start_publish(session.id, credentials)
            await coordinator.wait_until_finished()

        asyncio.run(run())

        (result,) = harness.results
        assert result.status is SessionStatus.PUBLISHED
        assert harness.fake.writes_to(image_path(session.id, 1)) == 1
        assert harness.fake.writes_to(image_path(session.id, 2)) == 1


class TestFinishingAndRecovery:
    """Re-running after failures and crashes never duplicates remote state."""

    def test_finish_publish_after_finishing_failure(self, harness, credentials):
        """A failed finishing phase leaves the session publishing until re-run."""
        session = harness.recorded_session(3)
        harness.fake.fail("PUT", metadata_path(session.id), 400)
        coordinator = harness.coordinator

        async def run():
            await coordinator.start_publish(session.id, credentials)
            await coordinator.wait_until_finished()

        asyncio.run(run())

        assert harness.results == []
        (error, capture) = harness.errors[-1]
        assert isinstance(error, PermanentItemError)
        assert capture is None
        assert harness.status(session.id) is SessionStatus.PUBLISHING
        assert COVERAGE_INDEX_PATH not in harness.fake.files
        assert coordinator.phase is PublishPhase.IDLE

        result = asyncio.run(coordinator.finish_publish(session.id, credentials))

        assert result.status is SessionStatus.PUBLISHED
        assert (result.completed, result.total) == (3, 3)
        assert harness.status(session.id) is SessionStatus.PUBLISHED
        assert harness.fake.writes_to(COVERAGE_INDEX_PATH) == 1
        assert harness.fake.read_json(metadata_path(session.id))["publishedCaptures"] == 3

        # Running it once more replaces documents and keeps one index entry
        asyncio.run(coordinator.finish_publish(session.id, credentials))
        assert len(harness.fake.read_json(COVERAGE_INDEX_PATH)["features"]) == 1
        for seq in (1, 2, 3):
            assert harness.fake.writes_to(image_path(session.id, seq)) == 1

    def test_finish_publish_raises_remote_errors(self, harness, credentials):
        session = harness.recorded_session(1)
        harness.store.mark_capture_published(
            harness.store.get_session_captures(session.id)[0].id, "https://example.test/1.jpg"
        )
        harness.fake.fail("PUT", csv_path(session.id), 400)

        with pytest.raises(PermanentItemError):
            asyncio.run(harness.coordinator.finish_publish(session.id, credentials))
        assert harness.coordinator.phase is PublishPhase.IDLE

    def test_finish_publish_refuses_unfinished_job(self, harness, credentials):
        """Finishing a job that stopped after 1 of 3 items changes nothing."""
        session = harness.recorded_session(3, status=SessionStatus.PUBLISHING)
        captures = harness.store.get_session_captures(session.id)
        harness.store.mark_capture_published(captures[0].id, "https://example.test/1.jpg")
        harness.store.save_publish_state(
            PublishState(
                session_id=session.id,
                publish_started="2024-05-01T12:00:00+00:00",
                total_to_upload=3,
                completed=1,
            )
        )

        with pytest.raises(IncompletePublishError):
            asyncio.run(harness.coordinator.finish_publish(session.id, credentials))

        assert harness.status(session.id) is SessionStatus.PUBLISHING
        assert len(harness.store.get_unpublished_captures(session.id)) == 2
        assert harness.fake.writes == []
        assert harness.coordinator.phase is PublishPhase.IDLE
        assert not harness.coordinator.is_publishing

    def test_finish_publish_without_state_refuses_pending_captures(self, harness, credentials):
        session = harness.recorded_session(2, status=SessionStatus.PUBLISHING)

        with pytest.raises(IncompletePublishError):
            asyncio.run(harness.coordinator.finish_publish(session.id, credentials))

        assert harness.fake.writes == []
        assert harness.fake.requests == []

    def test_malformed_remote_index_does_not_block_finishing(self, harness, credentials):
        """A foreign index entry without geometry is kept and left out of the stats."""
        harness.fake.put_file(
            COVERAGE_INDEX_PATH,
            json.dumps(
                {
                    "type": "FeatureCollection",
                    "features": [{"type": "Feature", "properties": {"sessionId": "other"}}],
                }
            ).encode(),
        )
        session = harness.recorded_session(3)
        coordinator = harness.coordinator

        async def run():
            await coordinator.start_publish(session.id, credentials)
            await asyncio.wait_for(coordinator.wait_until_finished(), timeout=2)

        asyncio.run(run())

        (result,) = harness.results
        assert result.status is SessionStatus.PUBLISHED
        assert not coordinator.is_publishing
        index = harness.fake.read_json(COVERAGE_INDEX_PATH)
        assert len(index["features"]) == 2
        assert index["stats"]["totalSessions"] == 1

    def test_unexpected_finishing_error_ends_job(self, settings, fake_github, credentials):
        """A crash while finishing is reported and leaves the coordinator idle."""

        class BrokenMerger:
            async def merge(self, client, session, captures, contributor=""):
                raise KeyError("geometry")

        store = CaptureStore(settings.db_path)
        try:
            session = store.create_session()
            store.save_capture(make_capture(session.id, 1))
            errors = []
            coordinator = PublishCoordinator(
                settings,
                store,
                client_factory=lambda creds: make_client(fake_github, creds),
                merger=BrokenMerger(),
            )
            coordinator.on_error(lambda e, c: errors.append(e))

            async def run():
                await coordinator.start_publish(session.id, credentials)
                await asyncio.wait_for(coordinator.wait_until_finished(), timeout=2)
                await coordinator.join_drain()

            asyncio.run(run())

            assert isinstance(errors[-1], KeyError)
            assert coordinator.phase is PublishPhase.IDLE
            assert not coordinator.is_publishing
            assert not coordinator.is_draining
            assert store.get_session(session.id).status is SessionStatus.PUBLISHING
        finally:
            store.close()

    def test_rerun_after_crash(self, harness, credentials):
        """Items that landed before a crash are skipped on the next run."""
        session = harness.recorded_session(3, status=SessionStatus.PUBLISHING)
        captures = harness.store.get_session_captures(session.id)
        # Item 1 was fully published, item 2 landed remotely but wasn't marked
        harness.store.mark_capture_published(captures[0].id, "https://example.test/1.jpg")
        harness.fake.put_file(image_path(session.id, 1), captures[0].image_bytes)
        harness.fake.put_file(image_path(session.id, 2), captures[1].image_bytes)

        (recovered,) = RecoveryScanner(harness.store).scan()
        assert recovered.status is SessionStatus.PAUSED

        async def run():
            total = await harness.coordinator.start_publish(session.id, credentials)
            await harness.coordinator.wait_until_finished()
            return total

        assert asyncio.run(run()) == 2

        (result,) = harness.results
        assert result.status is SessionStatus.PUBLISHED
        assert harness.fake.writes_to(image_path(session.id, 2)) == 0
        assert harness.fake.writes_to(image_path(session.id, 3)) == 1
        assert harness.store.get_unpublished_captures(session.id) == []


class TestFormatDuration:
    def test_format_duration(self):
        assert format_duration(None) == "unknown"
        assert format_duration(42) == "42s"
        assert format_duration(7 * 60 + 5) == "7m"
        assert format_duration(3600 + 5 * 60) == "1h 5m"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
