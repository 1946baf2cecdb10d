"""
Practice session lifecycle.

    confirmed -> started -> completed | failed | abandoned | expired

Terminal states never change. A session past its ``expires_at`` is moved to
``expired`` by the next update that touches it. Every operation re-reads the
document right before writing; there is no cached session state.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from practice_relay.clock import Clock
from practice_relay.completions import CompletionRecorder
from practice_relay.errors import SessionError
from practice_relay.models import (
    MAX_TTL_SECONDS,
    MIN_TTL_SECONDS,
    ConversationResult,
    CourseCompletion,
    PracticeSession,
    SessionMetadata,
    SessionStatus,
    parse_document,
    to_document,
)
from practice_relay.store import DocumentStore

SESSIONS_COLLECTION = "practice_sessions"

IMMUTABLE_FIELDS = frozenset(
    {"id", "user_id", "course_id", "confirmed_at", "expires_at", "ttl", "created_at"}
)


def check_transition(current: SessionStatus, requested: SessionStatus) -> None:
    """Reject transitions out of a terminal state or back to an earlier state."""
    if requested is current:
        return
    if current.is_terminal or requested.rank < current.rank:
        raise SessionError.config(
            f"Invalid session transition {current.value} -> {requested.value}"
        )


def clamp_score(score: float) -> float:
    if score < 0 or score > 100:
        logger.warning("Invalid accuracy score {}, clamping", score)
    return max(0.0, min(100.0, float(score)))


class SessionStateMachine:
    """Owns practice session documents."""

    def __init__(
        self,
        store: DocumentStore,
        completions: CompletionRecorder,
        clock: Clock | None = None,
        default_ttl: int = 180,
    ):
        self.store = store
        self.completions = completions
        self.clock = clock or Clock()
        self.default_ttl = default_ttl

    def validate_start(self, user_id: str, course_id: str, ttl: int | None = None) -> int:
        """Check the arguments of ``start`` without writing anything. Returns the resolved ttl."""
        if not (user_id and user_id.strip()) or not (course_id and course_id.strip()):
            raise SessionError.config("User ID and Course ID are required")

        ttl = self.default_ttl if ttl is None else ttl
        if isinstance(ttl, bool) or not isinstance(ttl, int) or not MIN_TTL_SECONDS <= ttl <= MAX_TTL_SECONDS:
            raise SessionError.config(
                f"TTL must be between {MIN_TTL_SECONDS} and {MAX_TTL_SECONDS} seconds"
            )
        return ttl

    async def start(self, user_id: str, course_id: str, ttl: int | None = None) -> str:
        """
        Create a ``confirmed`` session.

        Args:
            user_id: Owner of the session
            course_id: Course being practised
            ttl: Seconds until the session expires (1-3600)

        Returns:
            The new session id
        """
        ttl = self.validate_start(user_id, course_id, ttl)

        now = self.clock.now()
        session = PracticeSession(
            id=uuid.uuid4().hex,
            user_id=user_id,
            course_id=course_id,
            status=SessionStatus.CONFIRMED,
            confirmed_at=now,
            started_at=now,
            expires_at=now + timedelta(seconds=ttl),
            ttl=ttl,
            metadata=SessionMetadata(retry_count=0, confirmation_delay=0),
            created_at=now,
            updated_at=now,
        )
        await self.store.set(SESSIONS_COLLECTION, session.id, to_document(session))

        logger.info(
            "Session {} created for user {} course {} (ttl={}s, expires {})",
            session.id,
            user_id,
            course_id,
            ttl,
            session.expires_at.isoformat(),
        )
        return session.id

    async def get(self, session_id: str) -> PracticeSession:
        _require_id(session_id)
        data = await self.store.get(SESSIONS_COLLECTION, session_id)
        if data is None:
            raise SessionError.config("Session not found")
        return parse_document(PracticeSession, data, SESSIONS_COLLECTION)

    async def update(
        self,
        session_id: str,
        patch: dict[str, Any],
        now: datetime | None = None,
    ) -> PracticeSession:
        """
        Apply a partial update.

        A non-terminal session past its expiry is forced to ``expired`` whatever the
        patch asks for. Moving to ``started`` records the confirmation delay.
        ``now`` pins the time the update is judged at; it defaults to the clock.
        """
        session = await self.get(session_id)
        now = now or self.clock.now()
        patch = dict(patch)

        forbidden = IMMUTABLE_FIELDS.intersection(patch)
        if forbidden:
            raise SessionError.config(f"Immutable session fields: {', '.join(sorted(forbidden))}")
        unknown = set(patch) - set(PracticeSession.model_fields)
        if unknown:
            raise SessionError.config(f"Unknown session fields: {', '.join(sorted(unknown))}")

        requested = SessionStatus(patch["status"]) if patch.get("status") is not None else None
        if session.is_past_expiry(now) and not session.is_terminal and requested is not SessionStatus.EXPIRED:
            logger.warning("Attempting to update expired session {}", session_id)
            requested = SessionStatus.EXPIRED
            patch["status"] = requested

        if requested is not None:
            check_transition(session.status, requested)

        metadata = session.metadata.model_dump()
        metadata.update(patch.pop("metadata", None) or {})
        if requested is SessionStatus.STARTED and session.status is SessionStatus.CONFIRMED:
            delay = round((now - session.confirmed_at).total_seconds())
            metadata["confirmation_delay"] = delay
            patch["started_at"] = now
            logger.info("Session {} confirmation delay: {}s", session_id, delay)
        patch["metadata"] = metadata
        patch["updated_at"] = now

        updated = parse_document(
            PracticeSession,
            {**session.model_dump(), **patch},
            SESSIONS_COLLECTION,
        )
        document = to_document(updated)
        await self.store.update(
            SESSIONS_COLLECTION,
            session_id,
            {key: document[key] for key in patch},
        )
        logger.debug("Updated session {}: {}", session_id, sorted(patch))
        return updated

    async def complete(
        self,
        session_id: str,
        accuracy_score: float | None = None,
        duration: int | None = None,
        conversation_id: str | None = None,
    ) -> PracticeSession:
        """
        Mark a session completed and propagate the result to the user's record.

        Raises:
            SessionError: TIMEOUT if the session has expired, CONFIG if it is
                already finished; write failures are re-raised after the session
                is marked failed
        """
        session = await self.get(session_id)
        now = self.clock.now()

        if session.status is SessionStatus.EXPIRED or (
            session.is_past_expiry(now) and not session.is_terminal
        ):
            logger.warning("Attempting to complete expired session {}", session_id)
            if session.status is not SessionStatus.EXPIRED:
                await self.update(session_id, {"status": SessionStatus.EXPIRED})
            raise SessionError.timeout(
                "Session has expired and cannot be completed",
                details={"session_id": session_id, "session_expired": True},
            )
        if session.is_terminal:
            raise SessionError.config(f"Session already {session.status.value}")

        score = clamp_score(accuracy_score) if accuracy_score is not None else None
        if duration is None:
            duration = max(0, round((now - session.started_at).total_seconds()))
        conversation_id = conversation_id or session.conversation_id

        # User record first: on failure the session must still be non-terminal.
        # The session write is judged at the same `now` as the expiry check above.
        try:
            await self.completions.record(
                session.user_id,
                session.course_id,
                CourseCompletion(
                    completed=True,
                    accuracy_score=score,
                    conversation_id=conversation_id,
                    completed_at=now,
                ),
            )
            completed = await self.update(
                session_id,
                {
                    "status": SessionStatus.COMPLETED,
                    "completed_at": now,
                    "accuracy_score": score,
                    "duration": duration,
                    "conversation_id": conversation_id,
                },
                now=now,
            )
        except Exception as exc:
            logger.error("Error completing session {}: {}", session_id, exc)
            await self._mark_failed_quietly(session_id, exc)
            raise

        if completed.status is not SessionStatus.COMPLETED:
            raise SessionError.timeout(
                "Session has expired and cannot be completed",
                details={"session_id": session_id, "session_expired": True},
            )
        logger.info("Completed session {} within TTL", session_id)
        return completed

    async def attach_conversation(
        self,
        session_id: str,
        conversation: ConversationResult,
        callback_url: str | None = None,
    ) -> PracticeSession:
        """Record the provider's ids and join URL once it has accepted the conversation."""
        patch: dict[str, Any] = {
            "provider_conversation_id": conversation.conversation_id,
            "conversation_id": conversation.conversation_id,
            "conversation_url": conversation.conversation_url,
        }
        callback_url = callback_url or conversation.callback_url
        if callback_url:
            patch["metadata"] = {"callback_url": callback_url}
        return await self.update(session_id, patch)

    async def record_deferral(self, session_id: str, error: BaseException | str) -> PracticeSession:
        """Note that work for this session was queued for a later retry."""
        session = await self.get(session_id)
        return await self.update(
            session_id,
            {
                "metadata": {
                    "retry_count": session.metadata.retry_count + 1,
                    "last_error": str(error),
                }
            },
        )

    async def mark_failed(self, session_id: str, error: BaseException | str) -> PracticeSession:
        """Move to ``failed`` (or just record the error if already terminal)."""
        session = await self.get(session_id)
        patch: dict[str, Any] = {"metadata": {"last_error": str(error)}}
        if not session.is_terminal:
            patch["status"] = SessionStatus.FAILED
        return await self.update(session_id, patch)

    async def abandon(self, session_id: str) -> PracticeSession:
        return await self.update(session_id, {"status": SessionStatus.ABANDONED})

    async def _mark_failed_quietly(self, session_id: str, error: BaseException) -> None:
        try:
            await self.mark_failed(session_id, error)
        except Exception as update_error:  # Must not mask the original failure
            logger.error("Error marking session {} failed: {}", session_id, update_error)


def _require_id(session_id: str) -> None:
    if not session_id or not session_id.strip():
        raise SessionError.config("Session ID is required")
