"""Online/offline signal that uploads wait on instead of polling."""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Tracks whether the network is reachable.

    Whatever observes the network (an OS hook, a failed probe, a test)
    calls set_online() or set_offline(); uploads await wait_online()
    before each attempt and resume automatically once it is set.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = asyncio.Event()
        if online:
            self._online.set()
        self._callbacks: list[Callable[[bool], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online.is_set()

    def on_change(self, callback: Callable[[bool], None]) -> None:
        """Register callback for connectivity changes.

        Args:
            callback: Function called with True when online, False when offline
        """
        self._callbacks.append(callback)

    def set_online(self) -> None:
        """Mark the network as reachable and wake waiting uploads."""
        if not self._online.is_set():
            self._online.set()
            logger.info("Network connectivity restored")
            self._notify(True)

    def set_offline(self) -> None:
        """Mark the network as unreachable."""
        if self._online.is_set():
            self._online.clear()
            logger.warning("Network connectivity lost")
            self._notify(False)

    async def wait_online(self) -> None:
        """Wait until the network is reachable."""
        if not self._online.is_set():
            logger.info("Waiting for network connectivity")
        await self._online.wait()

    def _notify(self, online: bool) -> None:
        for callback in self._callbacks:
            try:
                callback(online)
            except Exception:
                logger.exception("Connectivity callback failed")
