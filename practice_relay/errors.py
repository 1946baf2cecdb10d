"""
Error taxonomy for the session layer.

Every failure this layer raises is a ``SessionError`` tagged with an ``ErrorKind``.
Retry eligibility is a pure function of (kind, status), so callers branch on
``error.kind`` instead of on exception subclasses.

    kind              retryable
    network           yes
    timeout           yes
    api               yes iff status >= 500 or status == 429
    config            no
    limit             no
    retry_exhausted   no
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError


class ErrorKind(str, Enum):
    """Tag of a ``SessionError``."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    API = "api"
    CONFIG = "config"
    LIMIT = "limit"
    RETRY_EXHAUSTED = "retry_exhausted"


_CODES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "NETWORK_ERROR",
    ErrorKind.TIMEOUT: "TIMEOUT_ERROR",
    ErrorKind.API: "API_ERROR",
    ErrorKind.CONFIG: "CONFIG_ERROR",
    ErrorKind.LIMIT: "LIMIT_ERROR",
    ErrorKind.RETRY_EXHAUSTED: "RETRY_EXHAUSTED",
}


def is_retryable(kind: ErrorKind, status: int | None = None) -> bool:
    """Decide retry eligibility for an error kind (and HTTP status for API errors)."""
    if kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT):
        return True
    if kind is ErrorKind.API:
        return status is not None and (status >= 500 or status == 429)
    if kind in (ErrorKind.CONFIG, ErrorKind.LIMIT, ErrorKind.RETRY_EXHAUSTED):
        return False
    raise ValueError(f"Unhandled error kind: {kind!r}")


class SessionError(Exception):
    """A classified failure of the session layer."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status: int | None = None,
        details: Any = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.details = details
        self.cause = cause

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def network(cls, message: str, details: Any = None) -> SessionError:
        return cls(ErrorKind.NETWORK, message, details=details)

    @classmethod
    def timeout(cls, message: str, details: Any = None) -> SessionError:
        return cls(ErrorKind.TIMEOUT, message, details=details)

    @classmethod
    def api(cls, message: str, status: int, details: Any = None) -> SessionError:
        return cls(ErrorKind.API, message, status=status, details=details)

    @classmethod
    def config(cls, message: str, details: Any = None) -> SessionError:
        return cls(ErrorKind.CONFIG, message, details=details)

    @classmethod
    def limit(cls, message: str, details: Any = None) -> SessionError:
        return cls(ErrorKind.LIMIT, message, details=details)

    @classmethod
    def retry_exhausted(cls, message: str, cause: BaseException) -> SessionError:
        return cls(ErrorKind.RETRY_EXHAUSTED, message, cause=cause)

    # ------------------------------------------------------------------
    # Derived properties
    # ------------------------------------------------------------------

    @property
    def code(self) -> str:
        return _CODES[self.kind]

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind, self.status)

    @property
    def deferrable(self) -> bool:
        """True when the work may be handed to the offline queue instead of failing."""
        if self.retryable:
            return True
        if self.kind is ErrorKind.RETRY_EXHAUSTED and isinstance(self.cause, SessionError):
            return self.cause.retryable
        return False

    @property
    def user_message(self) -> str:
        """Actionable text for the notification sink."""
        if self.kind is ErrorKind.CONFIG:
            return f"{self.message} Please contact administrator."
        if self.kind is ErrorKind.LIMIT:
            return self.message
        if self.kind is ErrorKind.TIMEOUT and isinstance(self.details, dict) and self.details.get("session_expired"):
            return "Your practice session expired before it was completed."
        if self.deferrable:
            return "Connection problem - your request was queued for retry."
        return f"Something went wrong: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.status is not None:
            data["status"] = self.status
        if isinstance(self.cause, SessionError):
            data["cause"] = self.cause.to_dict()
        elif self.cause is not None:
            data["cause"] = repr(self.cause)
        return data

    def __repr__(self) -> str:
        status = f", status={self.status}" if self.status is not None else ""
        return f"SessionError({self.kind.value}{status}: {self.message!r})"


def error_for_status(status: int, message: str, details: Any = None) -> SessionError:
    """Map a non-2xx provider response onto the taxonomy."""
    if status == 401:
        return SessionError.config("Invalid provider API key", details)
    if status == 403:
        return SessionError.config("Provider API access forbidden - check permissions", details)
    if status == 404:
        return SessionError.config("Provider API endpoint not found", details)
    if status == 429:
        return SessionError.api("Provider API rate limit exceeded", status, details)
    if status >= 500:
        return SessionError.api("Provider service temporarily unavailable", status, details)
    return SessionError.api(f"{message}: {status}", status, details)


def classify(exc: BaseException) -> SessionError | None:
    """
    Classify a raised exception.

    Returns None for exceptions outside the taxonomy; those propagate unchanged.
    """
    if isinstance(exc, SessionError):
        return exc

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        error = SessionError.timeout(f"Request timed out: {exc}")
    elif isinstance(exc, httpx.HTTPStatusError):
        error = error_for_status(exc.response.status_code, "Provider API error")
    elif isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        error = SessionError.network(f"Network error: {exc}")
    elif isinstance(exc, ValidationError):
        error = SessionError.config(f"Invalid data: {exc.error_count()} validation error(s)")
    else:
        return None

    error.cause = exc
    return error
