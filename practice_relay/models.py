"""
Document schemas for the session layer.

Every document read from or written to a store passes through one of these models,
so a malformed document fails loudly at the boundary instead of deep inside a
state transition.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from practice_relay.errors import SessionError

MIN_TTL_SECONDS = 1
MAX_TTL_SECONDS = 3600

# ========================================
# Users
# ========================================


class UserRole(str, Enum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    PREMIUM = "premium"


class User(BaseModel):
    """The authenticated caller, as handed over by the identity collaborator."""

    uid: str
    role: UserRole
    email: str | None = None


# ========================================
# Sessions
# ========================================


class SessionStatus(str, Enum):
    CONFIRMED = "confirmed"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"

    @property
    def rank(self) -> int:
        """Position in the lifecycle; transitions never lower it."""
        if self is SessionStatus.CONFIRMED:
            return 0
        if self is SessionStatus.STARTED:
            return 1
        return 2

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.ABANDONED,
        SessionStatus.EXPIRED,
    }
)


class SessionMetadata(BaseModel):
    retry_count: int = Field(default=0, ge=0)
    last_error: str | None = None
    confirmation_delay: int | None = None  # seconds from confirmed to started
    callback_url: str | None = None


class PracticeSession(BaseModel):
    """One time-boxed practice conversation attempt."""

    id: str
    user_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    status: SessionStatus = SessionStatus.CONFIRMED
    confirmed_at: datetime
    started_at: datetime
    completed_at: datetime | None = None
    expires_at: datetime
    ttl: int = Field(ge=MIN_TTL_SECONDS, le=MAX_TTL_SECONDS)
    conversation_id: str | None = None
    conversation_url: str | None = None
    provider_conversation_id: str | None = None
    accuracy_score: float | None = Field(default=None, ge=0, le=100)
    duration: int | None = Field(default=None, ge=0)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_past_expiry(self, now: datetime) -> bool:
        return now > self.expires_at


# ========================================
# Usage / Quota
# ========================================


class UsageRecord(BaseModel):
    """Conversation count of one user on one calendar day."""

    user_id: str
    date: str  # YYYY-MM-DD (UTC)
    conversation_count: int = Field(default=0, ge=0)
    last_updated: datetime

    @staticmethod
    def document_id(user_id: str, date: str) -> str:
        return f"{user_id}_{date}"


class UsageStatus(BaseModel):
    can_start: bool
    used: int
    limit: int
    remaining: int
    tier: str
    reset_time: datetime | None = None


# ========================================
# Completions
# ========================================


class CourseCompletion(BaseModel):
    completed: bool = True
    accuracy_score: float | None = None
    conversation_id: str | None = None
    completed_at: datetime | None = None


# ========================================
# Offline Queue
# ========================================


class QueueOperation(str, Enum):
    START_SESSION = "startSession"
    CREATE_CONVERSATION = "createConversation"
    END_CONVERSATION = "endConversation"
    UPDATE_COMPLETION = "updateCompletion"


class QueueItem(BaseModel):
    """One deferred operation awaiting replay."""

    id: str
    operation: QueueOperation
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    retry_count: int = Field(default=0, ge=0)
    last_error: str | None = None


# ========================================
# Provider
# ========================================


class ProviderSettings(BaseModel):
    """Credentials read from the configuration store."""

    model_config = ConfigDict(extra="ignore")

    replica_id: str
    persona_id: str
    api_key: str
    enabled: bool = True

    @field_validator("replica_id", "persona_id", "api_key", mode="before")
    @classmethod
    def _strip_non_empty(cls, value: Any, info) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Invalid {info.field_name} format")
        return value.strip()


class ConversationResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    conversation_url: str
    status: str = "unknown"
    callback_url: str | None = None


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_document(model: type[ModelT], data: dict[str, Any], collection: str) -> ModelT:
    """Validate a stored document, raising ConfigError when it is malformed."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise SessionError.config(
            f"Malformed {collection} document ({fields})",
            details=exc.errors(include_url=False),
        ) from exc


def to_document(model: BaseModel) -> dict[str, Any]:
    """JSON-safe representation written to stores."""
    return model.model_dump(mode="json")
