"""Process-level wiring of the capture store, recovery scan and publisher."""

import logging
from typing import Any

from streetsurvey.config import Settings
from streetsurvey.engine.publisher import ClientFactory, PublishCoordinator, PublishResult
from streetsurvey.storage.models import Session
from streetsurvey.storage.recovery import RecoveryScanner
from streetsurvey.storage.store import CaptureStore
from streetsurvey.sync.github import PublishCredentials
from streetsurvey.sync.network import ConnectivityMonitor

logger = logging.getLogger(__name__)


class SurveyRuntime:
    """Owns the store and publish coordinator of one process.

    start() runs the recovery scan; creating or publishing sessions before
    that raises RuntimeError, so sessions left active by a crash are always
    demoted first.

    Example:
        runtime = SurveyRuntime(settings)
        recovered = runtime.start()
        await runtime.publish(session_id, runtime.credentials())
    """

    def __init__(
        self,
        config: Settings,
        client_factory: ClientFactory | None = None,
        connectivity: ConnectivityMonitor | None = None,
    ) -> None:
        self.config = config
        self.store = CaptureStore(config.db_path)
        self.scanner = RecoveryScanner(self.store)
        self.coordinator = PublishCoordinator(
            config,
            self.store,
            client_factory=client_factory,
            connectivity=connectivity,
        )
        self._recovered: list[Session] | None = None

    @property
    def started(self) -> bool:
        return self._recovered is not None

    @property
    def recovered(self) -> list[Session]:
        """Sessions demoted by the startup scan."""
        return list(self._recovered or [])

    def start(self) -> list[Session]:
        """Run the recovery scan once and return the recovered sessions."""
        if self._recovered is None:
            self._recovered = self.scanner.scan()
            logger.info(
                "Runtime started: db=%s, recovered=%d", self.config.db_path, len(self._recovered)
            )
        return self.recovered

    def _require_started(self) -> None:
        if self._recovered is None:
            raise RuntimeError("Recovery scan has not run; call start() first")

    def create_session(self, name: str | None = None) -> Session:
        """Create a recording session with the configured capture defaults."""
        self._require_started()
        return self.store.create_session(name, self.config.load_capture_defaults())

    def credentials(self, **overrides: Any) -> PublishCredentials:
        """Resolve publish credentials from overrides, stored settings and env."""
        return self.config.publish_credentials(self.store.get_all_settings(), **overrides)

    async def publish(self, session_id: str, credentials: PublishCredentials) -> int:
        """Start publishing a session; see PublishCoordinator.start_publish."""
        self._require_started()
        return await self.coordinator.start_publish(session_id, credentials)

    async def finish(self, session_id: str, credentials: PublishCredentials) -> PublishResult:
        """Re-run the finishing phase; see PublishCoordinator.finish_publish."""
        self._require_started()
        return await self.coordinator.finish_publish(session_id, credentials)

    def close(self) -> None:
        """Close the capture store."""
        self.store.close()
