"""
Daily conversation quota.

One usage document per (user, UTC day) counts the conversations started that day.
The check-and-increment is a compare-and-set loop on the document version, so two
concurrent requests from the same user can never both take the last slot.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

from loguru import logger

from practice_relay.clock import Clock
from practice_relay.errors import SessionError
from practice_relay.models import (
    UsageRecord,
    UsageStatus,
    User,
    UserRole,
    parse_document,
    to_document,
)
from practice_relay.store import DocumentStore

USAGE_COLLECTION = "usage"

DEFAULT_DAILY_LIMITS = {"free": 1, "premium": 3}


class QuotaEnforcer:
    """Gate for starting new conversations."""

    MAX_CONTENTION_RETRIES = 10

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock | None = None,
        daily_limits: dict[str, int] | None = None,
    ):
        self.store = store
        self.clock = clock or Clock()
        self.daily_limits = dict(daily_limits or DEFAULT_DAILY_LIMITS)

    def today(self) -> str:
        return self.clock.now().date().isoformat()

    def _limit_for(self, user: User) -> int:
        limit = self.daily_limits.get(user.role.value)
        if limit is None:
            raise SessionError.config(f"Unknown user tier: {user.role.value}")
        return limit

    async def can_start_conversation(self, user: User | None) -> bool:
        """
        Consume one conversation slot for today.

        Returns:
            True once the slot is taken

        Raises:
            SessionError: LIMIT for anonymous users or an exhausted quota,
                CONFIG for an unknown tier
        """
        _reject_anonymous(user)
        limit = self._limit_for(user)
        today = self.today()
        doc_id = UsageRecord.document_id(user.uid, today)

        for _ in range(self.MAX_CONTENTION_RETRIES):
            data, version = await self.store.get_versioned(USAGE_COLLECTION, doc_id)

            if data is None:
                record = UsageRecord(
                    user_id=user.uid,
                    date=today,
                    conversation_count=0,
                    last_updated=self.clock.now(),
                )
                created = await self.store.compare_and_set(
                    USAGE_COLLECTION, doc_id, to_document(record), expected_version=0
                )
                if created:
                    logger.info("Created usage record for user {} on {}", user.uid, today)
                continue

            record = parse_document(UsageRecord, data, USAGE_COLLECTION)
            logger.debug(
                "Usage check for user {}: tier={} limit={} count={}",
                user.uid,
                user.role.value,
                limit,
                record.conversation_count,
            )

            if record.conversation_count >= limit:
                raise SessionError.limit(
                    _limit_message(user.role, limit),
                    details={"tier": user.role.value, "limit": limit, "date": today},
                )

            record.conversation_count += 1
            record.last_updated = self.clock.now()
            if await self.store.compare_and_set(
                USAGE_COLLECTION, doc_id, to_document(record), expected_version=version
            ):
                logger.info(
                    "User {} can start conversation. Remaining today: {}",
                    user.uid,
                    limit - record.conversation_count,
                )
                return True

            logger.debug("Usage record {} changed concurrently, re-reading", doc_id)

        raise SessionError.api("Usage record is under heavy contention", 409)

    async def get_usage_status(self, user: User | None) -> UsageStatus:
        """Today's usage for a user without consuming a slot."""
        if user is None or user.role is UserRole.ANONYMOUS:
            return UsageStatus(can_start=False, used=0, limit=0, remaining=0, tier="anonymous")

        limit = self._limit_for(user)
        today = self.today()
        data = await self.store.get(USAGE_COLLECTION, UsageRecord.document_id(user.uid, today))
        used = parse_document(UsageRecord, data, USAGE_COLLECTION).conversation_count if data else 0
        remaining = max(0, limit - used)

        return UsageStatus(
            can_start=remaining > 0,
            used=used,
            limit=limit,
            remaining=remaining,
            tier=user.role.value,
            reset_time=self.next_reset(),
        )

    def next_reset(self) -> datetime:
        """Midnight (UTC) after the current day."""
        tomorrow = self.clock.now().date() + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)

    async def reset_usage(self, user_id: str, date: str | None = None) -> None:
        """Zero a user's counter for a day (default today)."""
        target_date = date or self.today()
        record = UsageRecord(
            user_id=user_id,
            date=target_date,
            conversation_count=0,
            last_updated=self.clock.now(),
        )
        await self.store.set(USAGE_COLLECTION, UsageRecord.document_id(user_id, target_date), to_document(record))
        logger.info("Reset usage for user {} on {}", user_id, target_date)


def _reject_anonymous(user: User | None) -> None:
    if user is None:
        raise SessionError.limit(
            "Anonymous users cannot access AI practice sessions. Please sign in to continue."
        )
    if user.role is UserRole.ANONYMOUS:
        raise SessionError.limit(
            "Anonymous users cannot access AI practice sessions. Please create an account."
        )


def _limit_message(role: UserRole, limit: int) -> str:
    if role is UserRole.FREE:
        return f"Daily limit of {limit} AI practice session reached. Upgrade to Premium for more sessions!"
    return f"Daily limit of {limit} AI practice sessions reached. More sessions available tomorrow!"
