"""
Practice session service.

Entry point used by callers: checks the quota, opens a session, asks the provider
for a conversation and records the outcome. Provider work goes through the offline
queue, so transient failures come back as a deferred launch instead of an error.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

from practice_relay.completions import CompletionRecorder
from practice_relay.connectivity import ConnectivityMonitor
from practice_relay.errors import ErrorKind, SessionError
from practice_relay.models import (
    ConversationResult,
    CourseCompletion,
    PracticeSession,
    QueueOperation,
    SessionStatus,
    User,
    to_document,
)
from practice_relay.notifications import NotificationSink
from practice_relay.offline_queue import FallbackDescriptor, OfflineOperationQueue, QueueStatus
from practice_relay.provider import ConversationProviderClient
from practice_relay.quota import QuotaEnforcer
from practice_relay.sessions import SessionStateMachine


@dataclass
class SessionLaunch:
    """Result of ``request_session``; ``deferred`` means the conversation was queued."""

    session_id: str
    conversation: ConversationResult | None = None
    deferred: bool = False


@dataclass
class HealthReport:
    settings: bool
    api: bool
    network: bool
    queue: QueueStatus

    @property
    def healthy(self) -> bool:
        return self.settings and self.api and self.network

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        oldest = self.queue.oldest_item
        data["queue"]["oldest_item"] = oldest.isoformat() if oldest else None
        return data


class PracticeSessionService:
    """Coordinates quota, sessions, provider and queue for one caller-facing flow."""

    def __init__(
        self,
        quota: QuotaEnforcer,
        sessions: SessionStateMachine,
        provider: ConversationProviderClient,
        queue: OfflineOperationQueue,
        completions: CompletionRecorder,
        notifier: NotificationSink,
        connectivity: ConnectivityMonitor,
    ):
        self.quota = quota
        self.sessions = sessions
        self.provider = provider
        self.queue = queue
        self.completions = completions
        self.notifier = notifier
        self.connectivity = connectivity

        queue.register_handler(QueueOperation.START_SESSION, self._replay_start_session)
        queue.register_handler(QueueOperation.CREATE_CONVERSATION, self._replay_create_conversation)
        queue.register_handler(QueueOperation.END_CONVERSATION, self._replay_end_conversation)
        queue.register_handler(QueueOperation.UPDATE_COMPLETION, self._replay_update_completion)

    async def request_session(
        self,
        user: User | None,
        course_id: str,
        ttl: int | None = None,
    ) -> SessionLaunch:
        """
        Start a practice session for ``user`` on ``course_id``.

        Raises:
            SessionError: LIMIT when the quota is exhausted, CONFIG for invalid
                input or provider configuration
        """
        try:
            if user is not None:
                ttl = self.sessions.validate_start(user.uid, course_id, ttl)
            await self.quota.can_start_conversation(user)
        except SessionError as error:
            self.notifier.error(error.user_message)
            raise

        session_id = await self.sessions.start(user.uid, course_id, ttl)
        conversation = await self.create_conversation_for_session(session_id, course_id, user.uid)
        return SessionLaunch(
            session_id=session_id,
            conversation=conversation,
            deferred=conversation is None,
        )

    async def create_conversation_for_session(
        self,
        session_id: str,
        course_id: str,
        user_id: str,
    ) -> ConversationResult | None:
        """Create the provider conversation, or queue it. Returns None when queued."""
        try:
            result = await self.queue.execute_with_offline_fallback(
                lambda: self.provider.create_conversation(course_id, user_id, session_id),
                FallbackDescriptor(
                    QueueOperation.CREATE_CONVERSATION,
                    {"course_id": course_id, "user_id": user_id, "session_id": session_id},
                ),
                name="Conversation creation",
            )
        except SessionError as error:
            logger.error("Conversation creation for session {} failed: {}", session_id, error.message)
            await self.sessions.mark_failed(session_id, error)
            self.notifier.error(error.user_message)
            raise

        if result is None:
            reason = "offline" if not self.connectivity.is_online else "provider unavailable"
            await self.sessions.record_deferral(session_id, f"Conversation creation deferred ({reason})")
            return None

        await self.sessions.attach_conversation(session_id, result)
        self.notifier.success("AI practice session ready")
        return result

    async def end_conversation(self, conversation_id: str) -> bool:
        """End a provider conversation. Returns False if the request was queued."""

        async def _end() -> bool:
            await self.provider.end_conversation(conversation_id)
            return True

        ended = await self.queue.execute_with_offline_fallback(
            _end,
            FallbackDescriptor(QueueOperation.END_CONVERSATION, {"conversation_id": conversation_id}),
            name="Ending conversation",
        )
        return bool(ended)

    async def complete_session(
        self,
        session_id: str,
        accuracy_score: float | None = None,
        duration: int | None = None,
        conversation_id: str | None = None,
    ) -> PracticeSession:
        try:
            session = await self.sessions.complete(
                session_id,
                accuracy_score=accuracy_score,
                duration=duration,
                conversation_id=conversation_id,
            )
        except SessionError as error:
            if error.kind is ErrorKind.TIMEOUT:
                self.notifier.warning(error.user_message)
            else:
                self.notifier.error(error.user_message)
            raise

        self.notifier.success("Practice session completed")
        return session

    async def abandon_session(self, session_id: str) -> PracticeSession:
        """The user left: end the provider conversation (or queue it) and close the session."""
        session = await self.sessions.get(session_id)
        if session.provider_conversation_id:
            await self.end_conversation(session.provider_conversation_id)
        return await self.sessions.abandon(session_id)

    async def record_completion(
        self,
        user_id: str,
        course_id: str,
        completion: CourseCompletion,
    ) -> bool:
        """Write a course completion, queueing it on transient failure."""
        recorded = await self.queue.execute_with_offline_fallback(
            lambda: self._record(user_id, course_id, completion),
            FallbackDescriptor(
                QueueOperation.UPDATE_COMPLETION,
                {"user_id": user_id, "course_id": course_id, "completion": to_document(completion)},
            ),
            name="Completion update",
        )
        return bool(recorded)

    async def health(self) -> HealthReport:
        try:
            await self.provider.config_source.load()
            settings_ok = True
        except SessionError as error:
            logger.warning("Provider settings check failed: {}", error.message)
            settings_ok = False

        return HealthReport(
            settings=settings_ok,
            api=await self.provider.health_check(),
            network=self.connectivity.is_online,
            queue=self.queue.status(),
        )

    # =========================================================================
    # Queue replay handlers
    # =========================================================================

    async def _record(self, user_id: str, course_id: str, completion: CourseCompletion) -> bool:
        await self.completions.record(user_id, course_id, completion)
        return True

    async def _replay_start_session(self, payload: dict[str, Any]) -> str:
        return await self.sessions.start(payload["user_id"], payload["course_id"], payload.get("ttl"))

    async def _replay_create_conversation(self, payload: dict[str, Any]) -> ConversationResult | None:
        session_id = payload["session_id"]
        session = await self.sessions.get(session_id)
        if not session.is_terminal and session.is_past_expiry(self.sessions.clock.now()):
            session = await self.sessions.update(session_id, {"status": SessionStatus.EXPIRED})
        if session.is_terminal:
            logger.info("Session {} is {}, skipping queued conversation", session_id, session.status.value)
            return None
        result = await self.provider.create_conversation(payload["course_id"], payload["user_id"], session_id)
        await self.sessions.attach_conversation(session_id, result)
        return result

    async def _replay_end_conversation(self, payload: dict[str, Any]) -> None:
        await self.provider.end_conversation(payload["conversation_id"])

    async def _replay_update_completion(self, payload: dict[str, Any]) -> None:
        completion = CourseCompletion.model_validate(payload.get("completion") or {})
        await self.completions.record(payload["user_id"], payload["course_id"], completion)
