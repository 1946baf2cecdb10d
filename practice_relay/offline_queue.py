"""
Offline Operation Queue.

Operations that could not reach the provider (offline, or still failing after
local retries) are stored here and replayed later, oldest first. The whole list
is persisted to local storage after every change, so queued work survives a
restart. Items are dropped after ``max_retry_count`` failed passes or once they
are older than ``item_expiry_hours``.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from loguru import logger
from pydantic import ValidationError

from practice_relay.clock import Clock
from practice_relay.connectivity import ConnectivityMonitor
from practice_relay.errors import SessionError
from practice_relay.local_storage import JsonFileStorage
from practice_relay.models import QueueItem, QueueOperation, to_document
from practice_relay.notifications import NotificationSink
from practice_relay.retry import RetryPolicy

STORAGE_KEY = "offline_queue"

T = TypeVar("T")
Handler = Callable[[dict[str, Any]], Awaitable[object]]


@dataclass
class FallbackDescriptor:
    """What to enqueue if an online attempt has to be deferred."""

    operation: QueueOperation
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class QueueProcessResult:
    """Outcome of one processing pass."""

    processed: int = 0
    dropped: int = 0
    retained: int = 0
    remaining: int = 0
    skipped: bool = False


@dataclass
class QueueStatus:
    size: int
    oldest_item: datetime | None = None


class OfflineOperationQueue:
    """Durable FIFO of deferred operations."""

    def __init__(
        self,
        storage: JsonFileStorage,
        connectivity: ConnectivityMonitor,
        notifier: NotificationSink,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        max_queue_size: int = 100,
        max_retry_count: int = 5,
        item_expiry_hours: float = 24,
        cleanup_interval: float = 3600,
        process_interval: float = 300,
    ):
        """
        Initialize the queue and reload persisted items.

        Args:
            storage: Local key-value storage holding the list under ``offline_queue``
            connectivity: Processing only runs while online
            notifier: Receives queued/processed/retry notifications
            clock: Time source for item ages and background intervals
            retry_policy: Policy each replayed item runs under
            max_queue_size: Oldest item is evicted beyond this size
            max_retry_count: Failed passes before an item is dropped
            item_expiry_hours: Age after which an item is dropped unattempted
            cleanup_interval: Seconds between expiry sweeps
            process_interval: Seconds between periodic processing passes
        """
        self.storage = storage
        self.connectivity = connectivity
        self.notifier = notifier
        self.clock = clock or Clock()
        self.retry_policy = retry_policy or RetryPolicy(clock=self.clock)
        self.max_queue_size = max_queue_size
        self.max_retry_count = max_retry_count
        self.item_expiry = timedelta(hours=item_expiry_hours)
        self.cleanup_interval = cleanup_interval
        self.process_interval = process_interval

        self._handlers: dict[QueueOperation, Handler] = {}
        self._processing = False
        self._tasks: list[asyncio.Task] = []
        self._items: list[QueueItem] = self._load()
        self.cleanup_expired()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self) -> list[QueueItem]:
        raw = self.storage.get(STORAGE_KEY)
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning("Ignoring malformed offline queue in local storage")
            return []

        items = []
        for entry in raw:
            try:
                items.append(QueueItem.model_validate(entry))
            except ValidationError as exc:
                logger.warning("Discarding malformed queue item: {}", exc.error_count())
        logger.info("Loaded {} queued operation(s) from local storage", len(items))
        return items

    def _persist(self) -> None:
        self.storage.set(STORAGE_KEY, [to_document(item) for item in self._items])

    def _remove(self, item_id: str) -> None:
        self._items = [item for item in self._items if item.id != item_id]
        self._persist()

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def items(self) -> list[QueueItem]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def register_handler(self, operation: QueueOperation | str, handler: Handler) -> None:
        """Set the coroutine function that replays ``operation`` from its payload."""
        self._handlers[QueueOperation(operation)] = handler

    def enqueue(
        self,
        operation: QueueOperation | str,
        payload: Mapping[str, Any],
        last_error: str | None = None,
    ) -> str:
        """
        Append an operation.

        Returns:
            Queue item id
        """
        item = QueueItem(
            id=uuid.uuid4().hex,
            operation=QueueOperation(operation),
            payload=dict(payload),
            timestamp=self.clock.now(),
            last_error=last_error,
        )

        if len(self._items) >= self.max_queue_size:
            evicted = self._items.pop(0)
            logger.warning("Queue full, evicted oldest item {} ({})", evicted.id, evicted.operation.value)

        self._items.append(item)
        self._persist()

        logger.info("Enqueued {} as {} (queue size {})", item.operation.value, item.id, len(self._items))
        self.notifier.info("Operation queued for when you're back online")
        return item.id

    def is_expired(self, item: QueueItem, now: datetime | None = None) -> bool:
        now = now or self.clock.now()
        return now - item.timestamp > self.item_expiry

    async def process_queue(self) -> QueueProcessResult:
        """
        Replay queued items in insertion order.

        Items enqueued while a pass runs wait for the next pass. A pass started
        while another is running does nothing.
        """
        if self._processing:
            logger.debug("Queue processing already in progress, skipping")
            return QueueProcessResult(remaining=len(self._items), skipped=True)
        if not self.connectivity.is_online or not self._items:
            return QueueProcessResult(remaining=len(self._items))

        self._processing = True
        result = QueueProcessResult()
        try:
            snapshot = list(self._items)
            logger.info("Processing {} queued operation(s)", len(snapshot))

            for item in snapshot:
                if self.is_expired(item):
                    logger.warning("Dropping expired queue item {} ({})", item.id, item.operation.value)
                    self._remove(item.id)
                    result.dropped += 1
                    continue

                if not self.connectivity.is_online:
                    logger.info("Went offline during queue processing, stopping pass")
                    break

                try:
                    await self.retry_policy.execute(
                        lambda item=item: self._dispatch(item),
                        f"queued {item.operation.value}",
                    )
                except Exception as exc:
                    if self._record_failure(item, exc):
                        result.retained += 1
                    else:
                        result.dropped += 1
                    continue

                self._remove(item.id)
                result.processed += 1
                logger.info("Processed queued {} ({})", item.operation.value, item.id)
        finally:
            self._processing = False

        result.remaining = len(self._items)
        if result.processed:
            self.notifier.success(f"Processed {result.processed} queued operations")
        if result.retained:
            self.notifier.warning(f"{result.retained} operations will be retried later")
        return result

    def cleanup_expired(self) -> int:
        """Drop items older than the expiry window. Returns how many were dropped."""
        now = self.clock.now()
        expired = [item for item in self._items if self.is_expired(item, now)]
        if not expired:
            return 0

        expired_ids = {item.id for item in expired}
        self._items = [item for item in self._items if item.id not in expired_ids]
        self._persist()
        logger.info("Cleaned up {} expired queue item(s)", len(expired))
        return len(expired)

    def purge(self) -> int:
        """Remove every item."""
        count = len(self._items)
        self._items = []
        self._persist()
        logger.warning("Purged {} queued operation(s)", count)
        return count

    def status(self) -> QueueStatus:
        if not self._items:
            return QueueStatus(size=0)
        return QueueStatus(
            size=len(self._items),
            oldest_item=min(item.timestamp for item in self._items),
        )

    async def execute_with_offline_fallback(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: FallbackDescriptor,
        name: str = "Operation",
    ) -> T | None:
        """
        Run ``operation`` online with retries, deferring it to the queue when needed.

        Returns:
            The operation's result, or None when it was queued instead

        Raises:
            SessionError: Failures that are not worth retrying later (config, limit, ...)
        """
        if not self.connectivity.is_online:
            logger.info("Offline - queueing {}", name)
            self.enqueue(fallback.operation, fallback.payload)
            self.notifier.warning(f"{name} queued - will process when online")
            return None

        try:
            return await self.retry_policy.execute(operation, name)
        except SessionError as error:
            if not error.deferrable:
                raise
            logger.warning("{} failed with retryable error, queueing: {}", name, error.message)
            self.enqueue(fallback.operation, fallback.payload, last_error=error.message)
            self.notifier.warning(f"{name} failed - queued for retry")
            return None

    # =========================================================================
    # Background tasks
    # =========================================================================

    def start(self) -> None:
        """Start the periodic sweep and processing tasks and replay on reconnect."""
        if self._tasks:
            logger.warning("Offline queue background tasks already running")
            return

        self.connectivity.add_restore_listener(self.process_queue)
        self._tasks = [
            asyncio.create_task(self._run_periodic(self.cleanup_interval, self._sweep, "sweep")),
            asyncio.create_task(self._run_periodic(self.process_interval, self.process_queue, "processing")),
        ]
        logger.info(
            "Offline queue started (sweep every {}s, processing every {}s)",
            self.cleanup_interval,
            self.process_interval,
        )

    async def stop(self) -> None:
        self.connectivity.remove_restore_listener(self.process_queue)
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Offline queue stopped")

    async def _sweep(self) -> None:
        self.cleanup_expired()

    async def _run_periodic(
        self,
        interval: float,
        action: Callable[[], Awaitable[object]],
        name: str,
    ) -> None:
        while True:
            await self.clock.sleep(interval)
            try:
                await action()
            except Exception as exc:  # Keep the loop alive for the next tick
                logger.error("Background queue {} failed: {}", name, exc)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _dispatch(self, item: QueueItem) -> object:
        handler = self._handlers.get(item.operation)
        if handler is None:
            raise SessionError.config(f"No handler registered for {item.operation.value}")
        return await handler(dict(item.payload))

    def _record_failure(self, item: QueueItem, exc: Exception) -> bool:
        """Count a failed attempt. Returns True if the item stays queued."""
        item.retry_count += 1
        item.last_error = str(exc)

        if item.retry_count >= self.max_retry_count or self.is_expired(item):
            logger.error(
                "Dropping queue item {} ({}) after {} failed attempt(s): {}",
                item.id,
                item.operation.value,
                item.retry_count,
                exc,
            )
            self._remove(item.id)
            return False

        logger.warning(
            "Queue item {} failed (attempt {}/{}), will retry: {}",
            item.id,
            item.retry_count,
            self.max_retry_count,
            exc,
        )
        self._persist()
        return True
