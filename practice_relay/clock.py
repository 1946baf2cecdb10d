"""Time source shared by TTL checks, backoff delays and background sweeps."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone


class Clock:
    """Wall clock backed by the running event loop."""

    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
