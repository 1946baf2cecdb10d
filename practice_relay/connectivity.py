"""
Connectivity tracking.

Holds the current online/offline state and notifies listeners when the network
comes back, which is the trigger for replaying the offline queue.
"""

from __future__ import annotations

from typing import Awaitable, Callable

import httpx
from loguru import logger

RestoreListener = Callable[[], Awaitable[object]]


class ConnectivityMonitor:
    """Online/offline state with restore listeners."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: list[RestoreListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_restore_listener(self, listener: RestoreListener) -> None:
        self._listeners.append(listener)

    def remove_restore_listener(self, listener: RestoreListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def mark_offline(self) -> None:
        if self._online:
            logger.warning("Network connection lost")
        self._online = False

    async def mark_online(self) -> None:
        """Record that the network is back and run restore listeners in order."""
        was_offline = not self._online
        self._online = True
        if not was_offline:
            return

        logger.info("Network restored - running {} restore listener(s)", len(self._listeners))
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception as exc:  # Listener failures must not block the others
                logger.error("Restore listener failed: {}", exc)

    async def probe(self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None) -> bool:
        """
        Check reachability of ``url`` and update the state accordingly.

        Any HTTP response counts as online; only transport failures count as offline.
        """
        owns_client = client is None
        client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        try:
            await client.head(url, timeout=timeout)
            reachable = True
        except httpx.TransportError as exc:
            logger.debug("Connectivity probe to {} failed: {}", url, exc)
            reachable = False
        finally:
            if owns_client:
                await client.aclose()

        if reachable:
            await self.mark_online()
        else:
            self.mark_offline()
        return reachable
