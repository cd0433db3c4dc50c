"""Startup scan for sessions left active by a crash or forced shutdown."""

from streetsurvey.logging import log_session_recovered, log_state_change, recovery_logger
from streetsurvey.storage.models import (
    ACTIVE_STATUSES,
    Capture,
    RecoveryInfo,
    SequenceGap,
    Session,
    SessionStatus,
)
from streetsurvey.storage.store import CaptureStore

logger = recovery_logger()


def find_sequence_gaps(captures: list[Capture]) -> list[SequenceGap]:
    """Find holes in the sequence numbers of captures.

    Args:
        captures: Captures ordered by sequence number

    Returns:
        One SequenceGap per pair of neighbours that aren't consecutive
    """
    gaps = []
    for previous, current in zip(captures, captures[1:]):
        expected = previous.sequence_num + 1
        if current.sequence_num != expected:
            gaps.append(
                SequenceGap(
                    after=previous.sequence_num,
                    before=current.sequence_num,
                    missing=current.sequence_num - expected,
                )
            )
    return gaps


class RecoveryScanner:
    """Demotes sessions that were recording or publishing when the process died.

    Must run once at startup, before any session is created or published.
    Deciding whether to resume or discard a recovered session is left to
    the caller.

    Example:
        recovered = RecoveryScanner(store).scan()
        for session in recovered:
            print(session.id, session.recovery_info.potential_missed_frames)
    """

    def __init__(self, store: CaptureStore) -> None:
        self.store = store

    def scan(self) -> list[Session]:
        """Scan the store and persist recovery info for interrupted sessions.

        Returns:
            The recovered sessions, now in the paused state

        Raises:
            StorageError: Propagated unchanged from the store
        """
        recovered = []
        for session in self.store.get_sessions_by_status(ACTIVE_STATUSES):
            previous_status = session.status
            captures = self.store.get_session_captures(session.id)
            gaps = find_sequence_gaps(captures)

            session.recovery_info = RecoveryInfo(
                potential_missed_frames=sum(gap.missing for gap in gaps),
                last_capture_time=session.last_capture_time,
                gaps=gaps,
            )
            session.status = SessionStatus.PAUSED
            self.store.update_session(session)

            log_session_recovered(
                logger,
                session.id,
                previous_status.value,
                session.recovery_info.potential_missed_frames,
                len(gaps),
            )
            log_state_change(
                logger,
                session.id,
                previous_status.value,
                SessionStatus.PAUSED.value,
                trigger="recovery",
            )
            recovered.append(session)

        if recovered:
            logger.info("Recovery scan complete: recovered=%d", len(recovered))
        return recovered
