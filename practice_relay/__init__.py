"""
practice-relay: session layer for AI practice conversations.

Modules:
- quota: daily conversation limits per subscription tier
- sessions: practice session lifecycle with TTL expiry
- provider: HTTP client for the conversation provider
- retry: exponential backoff for transient failures
- offline_queue: durable replay of deferred operations
- service: the caller-facing flow tying them together
- bootstrap: builds a wired ``Runtime`` from settings
"""
from .bootstrap import Runtime, build_runtime
from .errors import ErrorKind, SessionError
from .models import CourseCompletion, PracticeSession, SessionStatus, User, UserRole
from .service import HealthReport, PracticeSessionService, SessionLaunch

__all__ = [
    "CourseCompletion",
    "ErrorKind",
    "HealthReport",
    "PracticeSession",
    "PracticeSessionService",
    "Runtime",
    "SessionError",
    "SessionLaunch",
    "SessionStatus",
    "User",
    "UserRole",
    "build_runtime",
]

__version__ = "1.0.0"
