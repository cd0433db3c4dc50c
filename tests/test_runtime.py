"""Tests for process-level wiring and the startup recovery gate."""

import asyncio

import pytest

from conftest import make_capture
from streetsurvey.engine.runtime import SurveyRuntime
from streetsurvey.storage.models import SessionStatus
from streetsurvey.storage.store import CaptureStore


class TestSurveyRuntime:
    """Recovery runs before anything else."""

    def test_requires_start(self, settings, credentials):
        runtime = SurveyRuntime(settings)
        try:
            with pytest.raises(RuntimeError):
                runtime.create_session()
            with pytest.raises(RuntimeError):
                asyncio.run(runtime.publish("session_0_none", credentials))
        finally:
            runtime.close()

    def test_start_recovers_once(self, settings):
        store = CaptureStore(settings.db_path)
        session = store.create_session()
        store.save_capture(make_capture(session.id, 1))
        store.save_capture(make_capture(session.id, 4))
        store.close()

        runtime = SurveyRuntime(settings)
        try:
            (recovered,) = runtime.start()
            assert recovered.id == session.id
            assert recovered.recovery_info.potential_missed_frames == 2
            assert runtime.started

            # Second start doesn't rescan
            assert [s.id for s in runtime.start()] == [session.id]
            assert runtime.store.get_session(session.id).status is SessionStatus.PAUSED
        finally:
            runtime.close()

    def test_create_session_uses_capture_defaults(self, settings):
        settings.capture_defaults_path.write_text("capture_interval: 3000\n")

        runtime = SurveyRuntime(settings)
        try:
            runtime.start()
            session = runtime.create_session("Bridge")
            assert session.settings["capture_interval"] == 3000
            assert session.status is SessionStatus.RECORDING
        finally:
            runtime.close()

    def test_credentials_from_store(self, settings):
        runtime = SurveyRuntime(settings)
        try:
            runtime.store.save_setting("github_repo", "stored/repo")
            runtime.store.save_setting("github_token", "stored-token")

            credentials = runtime.credentials(contributor="Ada")

            assert credentials.repo == "stored/repo"
            assert credentials.token == "stored-token"
            assert credentials.contributor == "Ada"
        finally:
            runtime.close()

    def test_publish_through_runtime(self, settings, client_factory, credentials, fake_github):
        store = CaptureStore(settings.db_path)
        session = store.create_session()
        store.save_capture(make_capture(session.id, 1))
        store.close()

        runtime = SurveyRuntime(settings, client_factory=client_factory)
        try:
            runtime.start()

            async def run():
                total = await runtime.publish(session.id, credentials)
                await runtime.coordinator.wait_until_finished()
                return total

            assert asyncio.run(run()) == 1
            assert runtime.store.get_session(session.id).status is SessionStatus.PUBLISHED
        finally:
            runtime.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
