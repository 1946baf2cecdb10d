"""
Composition root.

Builds one ``Runtime`` holding every component, wired from ``Settings``. There
are no module-level singletons: callers (CLI, web handlers, tests) build a
runtime, use it, and close it.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from loguru import logger

from practice_relay.clock import Clock
from practice_relay.completions import CompletionRecorder
from practice_relay.config import Settings, get_settings
from practice_relay.connectivity import ConnectivityMonitor
from practice_relay.local_storage import JsonFileStorage
from practice_relay.notifications import LoggingNotificationSink, NotificationSink
from practice_relay.offline_queue import OfflineOperationQueue
from practice_relay.provider import ConversationProviderClient, CourseContextSource, ProviderConfigSource
from practice_relay.quota import QuotaEnforcer
from practice_relay.retry import RetryPolicy
from practice_relay.service import PracticeSessionService
from practice_relay.sessions import SessionStateMachine
from practice_relay.store import DocumentStore, SqlDocumentStore


@dataclass
class Runtime:
    """Every wired component of the session layer."""

    settings: Settings
    store: DocumentStore
    clock: Clock
    connectivity: ConnectivityMonitor
    notifier: NotificationSink
    retry_policy: RetryPolicy
    provider: ConversationProviderClient
    quota: QuotaEnforcer
    completions: CompletionRecorder
    sessions: SessionStateMachine
    queue: OfflineOperationQueue
    service: PracticeSessionService

    async def aclose(self) -> None:
        """Stop background tasks and release network/database resources."""
        await self.queue.stop()
        await self.provider.close()
        await self.store.close()
        logger.debug("Runtime closed")


def build_runtime(
    settings: Settings | None = None,
    *,
    store: DocumentStore | None = None,
    storage: JsonFileStorage | None = None,
    clock: Clock | None = None,
    notifier: NotificationSink | None = None,
    connectivity: ConnectivityMonitor | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Runtime:
    """
    Wire the session layer.

    Args:
        settings: Defaults to ``get_settings()``
        store: Document store; defaults to ``SqlDocumentStore`` on ``database_url``
        storage: Local storage for the offline queue; defaults to ``queue_storage_dir``
        clock: Time source shared by every component
        notifier: Notification sink; defaults to logging
        connectivity: Online/offline state; starts online
        http_client: httpx client used for provider calls
    """
    settings = settings or get_settings()
    clock = clock or Clock()
    store = store or SqlDocumentStore.from_url(settings.database_url, echo=settings.log_level == "DEBUG")
    storage = storage or JsonFileStorage(settings.queue_storage_dir)
    notifier = notifier or LoggingNotificationSink()
    connectivity = connectivity or ConnectivityMonitor()

    retry_policy = RetryPolicy(clock=clock, **settings.get_retry_config())

    provider = ConversationProviderClient(
        config_source=ProviderConfigSource(store),
        course_source=CourseContextSource(store),
        connectivity=connectivity,
        api_url=settings.provider_api_url,
        callback_origin=settings.callback_origin,
        create_timeout=settings.provider_create_timeout_seconds,
        end_timeout=settings.provider_end_timeout_seconds,
        health_timeout=settings.provider_health_timeout_seconds,
        clock=clock,
        http_client=http_client,
    )
    quota = QuotaEnforcer(store, clock=clock, daily_limits=settings.get_daily_limits())
    completions = CompletionRecorder(store, clock=clock)
    sessions = SessionStateMachine(
        store,
        completions,
        clock=clock,
        default_ttl=settings.session_default_ttl_seconds,
    )
    queue = OfflineOperationQueue(
        storage,
        connectivity,
        notifier,
        clock=clock,
        retry_policy=retry_policy,
        **settings.get_queue_config(),
    )
    service = PracticeSessionService(
        quota=quota,
        sessions=sessions,
        provider=provider,
        queue=queue,
        completions=completions,
        notifier=notifier,
        connectivity=connectivity,
    )

    return Runtime(
        settings=settings,
        store=store,
        clock=clock,
        connectivity=connectivity,
        notifier=notifier,
        retry_policy=retry_policy,
        provider=provider,
        quota=quota,
        completions=completions,
        sessions=sessions,
        queue=queue,
        service=service,
    )
