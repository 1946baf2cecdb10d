"""Aggregate completion record: one entry per course on the user document."""

from __future__ import annotations

from loguru import logger

from practice_relay.clock import Clock
from practice_relay.errors import SessionError
from practice_relay.models import CourseCompletion, to_document
from practice_relay.store import DocumentStore

USERS_COLLECTION = "users"


class CompletionRecorder:
    """Writes course completions onto ``users/{uid}.course_completions``."""

    def __init__(self, store: DocumentStore, clock: Clock | None = None):
        self.store = store
        self.clock = clock or Clock()

    async def record(self, user_id: str, course_id: str, completion: CourseCompletion) -> None:
        """Store ``completion`` for the course, replacing any earlier entry."""
        if not user_id or not course_id:
            raise SessionError.config("User ID and Course ID are required")

        if completion.completed_at is None:
            completion = completion.model_copy(update={"completed_at": self.clock.now()})

        user_doc = await self.store.get(USERS_COLLECTION, user_id)
        if user_doc is None:
            raise SessionError.config("User not found")

        completions = dict(user_doc.get("course_completions") or {})
        completions[course_id] = to_document(completion)

        await self.store.update(
            USERS_COLLECTION,
            user_id,
            {
                "course_completions": completions,
                "updated_at": self.clock.now().isoformat(),
            },
        )
        logger.info("Updated completion for user {}, course {}", user_id, course_id)

    async def get(self, user_id: str, course_id: str) -> CourseCompletion | None:
        user_doc = await self.store.get(USERS_COLLECTION, user_id)
        if not user_doc:
            return None
        entry = (user_doc.get("course_completions") or {}).get(course_id)
        return CourseCompletion.model_validate(entry) if entry else None
