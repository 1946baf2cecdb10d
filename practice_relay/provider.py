"""
Conversation provider client.

Handles HTTP communication with the real-time video conversation provider:
creating a conversation for a practice session and ending it afterwards.
Every failure leaves this module as a classified ``SessionError``.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger
from pydantic import ValidationError

from practice_relay.clock import Clock
from practice_relay.connectivity import ConnectivityMonitor
from practice_relay.errors import SessionError, error_for_status
from practice_relay.models import ConversationResult, ProviderSettings
from practice_relay.store import DocumentStore

SETTINGS_COLLECTION = "settings"
PROVIDER_SETTINGS_ID = "provider"
COURSES_COLLECTION = "courses"

MAX_CONTEXT_CHARS = 1000
CONTEXT_FIELDS = ("conversational_context", "provider_conversational_context", "description")


# =============================================================================
# Configuration and course context
# =============================================================================


class ProviderConfigSource:
    """Reads provider credentials from the configuration store."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def load(self) -> ProviderSettings:
        data = await self.store.get(SETTINGS_COLLECTION, PROVIDER_SETTINGS_ID)
        if data is None:
            logger.warning("Provider settings not found in configuration store")
            raise SessionError.config("Provider settings not configured.")

        if data.get("enabled") is False:
            raise SessionError.config("AI conversations are temporarily disabled by the administrator.")

        missing = [name for name in ("replica_id", "persona_id", "api_key") if not data.get(name)]
        if missing:
            logger.error("Incomplete provider settings, missing: {}", ", ".join(missing))
            raise SessionError.config(
                "Provider settings are incomplete. Missing replica_id, persona_id, or api_key."
            )

        try:
            return ProviderSettings.model_validate(data)
        except ValidationError as exc:
            message = exc.errors()[0].get("msg", "Invalid provider settings")
            raise SessionError.config(message.removeprefix("Value error, ")) from exc


def build_conversational_context(course: dict[str, Any]) -> str:
    """
    Pick the conversational context for a course.

    Authored context fields are tried in order; without one a context is templated
    from the course title. The result is capped at 1000 characters.
    """
    context = ""
    for name in CONTEXT_FIELDS:
        value = course.get(name)
        if isinstance(value, str) and value.strip():
            context = value
            break

    if not context:
        title = course.get("title") or "the course topic"
        context = (
            f"Practice conversation about {title}. "
            "Help the student understand key concepts through interactive dialogue."
        )

    if len(context) > MAX_CONTEXT_CHARS:
        logger.warning("Conversational context too long ({} chars), truncating", len(context))
        context = context[: MAX_CONTEXT_CHARS - 3] + "..."

    return context.strip()


class CourseContextSource:
    """Reads course documents and derives their conversational context."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_context(self, course_id: str) -> str:
        course = await self.store.get(COURSES_COLLECTION, course_id)
        if course is None:
            logger.warning("Course not found: {}", course_id)
            raise SessionError.config("Course conversational context not found.")
        return build_conversational_context(course)


def build_callback_url(
    origin: str,
    user_id: str,
    session_id: str,
    now: datetime,
    suffix: str | None = None,
) -> str:
    """
    Build the webhook URL the provider calls back for one session.

    Format: {origin}/api/callback/{userId}/{sessionId}/{timestamp}/{randomSuffix}
    """
    if not user_id or not session_id:
        raise SessionError.config("Failed to generate callback URL: userId and sessionId are required")

    timestamp = int(now.timestamp() * 1000)
    suffix = suffix or uuid.uuid4().hex
    url = (
        f"{origin.rstrip('/')}/api/callback/"
        f"{quote(user_id, safe='')}/{quote(session_id, safe='')}/{timestamp}/{suffix}"
    )

    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise SessionError.config(f"Failed to generate callback URL: {exc}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise SessionError.config("Failed to generate callback URL: origin must be an absolute http(s) URL")

    return url


# =============================================================================
# Client
# =============================================================================


class ConversationProviderClient:
    """HTTP client for the conversation provider."""

    def __init__(
        self,
        config_source: ProviderConfigSource,
        course_source: CourseContextSource,
        connectivity: ConnectivityMonitor,
        api_url: str,
        callback_origin: str,
        create_timeout: float = 30.0,
        end_timeout: float = 15.0,
        health_timeout: float = 5.0,
        clock: Clock | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize provider client.

        Args:
            config_source: Source of replica/persona ids and API key
            course_source: Source of per-course conversational context
            connectivity: Online/offline state; offline calls fail fast
            api_url: Base URL for the provider API
            callback_origin: Origin used in webhook callback URLs
            create_timeout: Deadline in seconds for conversation creation
            end_timeout: Deadline in seconds for ending a conversation
        """
        self.config_source = config_source
        self.course_source = course_source
        self.connectivity = connectivity
        self.api_url = api_url.rstrip("/")
        self.callback_origin = callback_origin
        self.create_timeout = create_timeout
        self.end_timeout = end_timeout
        self.health_timeout = health_timeout
        self.clock = clock or Clock()
        self.client = http_client or httpx.AsyncClient(follow_redirects=True)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def create_conversation(
        self,
        course_id: str,
        user_id: str,
        session_id: str,
    ) -> ConversationResult:
        """
        Create a provider conversation for a practice session.

        Returns:
            Conversation id, join URL and provider status

        Raises:
            SessionError: CONFIG before any network call when settings, context or
                callback URL are unusable; NETWORK/TIMEOUT/API for call failures
        """
        logger.info("Creating provider conversation for course {}", course_id)
        self._require_online()

        settings = await self.config_source.load()
        context = await self.course_source.get_context(course_id)
        callback_url = build_callback_url(self.callback_origin, user_id, session_id, self.clock.now())

        payload = {
            "replica_id": settings.replica_id,
            "persona_id": settings.persona_id,
            "conversational_context": context,
            "callback_url": callback_url,
        }
        logger.debug("Provider request payload: {}", payload)

        response = await self._post(
            f"{self.api_url}/conversations",
            settings,
            timeout=self.create_timeout,
            json=payload,
        )
        if response.is_error:
            details = _error_body(response)
            logger.error("Provider API error: {} {}", response.status_code, details)
            raise error_for_status(response.status_code, "Provider API error", details)

        try:
            result = ConversationResult.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise SessionError.api("Malformed provider response", response.status_code) from exc

        logger.info("Provider conversation created: {}", result.conversation_id)
        return result.model_copy(update={"callback_url": callback_url})

    async def end_conversation(self, conversation_id: str) -> None:
        """
        End a provider conversation.

        Idempotent: a conversation that is already gone (404) or already ended (409)
        counts as ended.
        """
        if not conversation_id or not conversation_id.strip():
            raise SessionError.config("Invalid conversation ID")

        logger.info("Ending provider conversation {}", conversation_id)
        self._require_online()
        settings = await self.config_source.load()

        response = await self._post(
            f"{self.api_url}/conversations/{quote(conversation_id, safe='')}/end",
            settings,
            timeout=self.end_timeout,
        )
        if response.status_code == 404:
            logger.info("Conversation {} not found (may already be ended)", conversation_id)
            return
        if response.status_code == 409:
            logger.info("Conversation {} already ended", conversation_id)
            return
        if response.is_error:
            details = _error_body(response)
            logger.error("Error ending conversation: {} {}", response.status_code, details)
            if response.status_code >= 500:
                raise SessionError.api(
                    "Provider service error when ending conversation",
                    response.status_code,
                    details,
                )
            raise error_for_status(response.status_code, "Failed to end conversation", details)

        logger.info("Provider conversation {} ended", conversation_id)

    async def health_check(self) -> bool:
        """
        Check if the provider API is available.

        Returns:
            True if API is healthy, False otherwise
        """
        if not self.connectivity.is_online:
            return False
        try:
            settings = await self.config_source.load()
            response = await self.client.get(
                f"{self.api_url}/health",
                headers={"x-api-key": settings.api_key},
                timeout=self.health_timeout,
            )
            return response.status_code == 200
        except (httpx.HTTPError, SessionError):
            return False

    def _require_online(self) -> None:
        if not self.connectivity.is_online:
            raise SessionError.network("No internet connection available")

    async def _post(
        self,
        url: str,
        settings: ProviderSettings,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json", "x-api-key": settings.api_key}
        try:
            # wait_for cancels the in-flight request when the deadline passes
            return await asyncio.wait_for(
                self.client.post(url, headers=headers, timeout=timeout, **kwargs),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise SessionError.timeout(f"Request timed out after {timeout:g} seconds") from exc
        except httpx.TransportError as exc:
            if not self.connectivity.is_online:
                raise SessionError.network("Network connection lost during request") from exc
            raise SessionError.network(f"Network error: {exc}", details=repr(exc)) from exc


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
