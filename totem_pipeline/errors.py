"""
Provider error handling.

Maps failures of the external providers (transcriber, search, LLM, TTS)
to stable categories and user-facing Spanish messages, without crashing
the call.
"""
import asyncio
from typing import Optional

import aiohttp

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component, EventEmitter

logger = get_logger(LogComponent.ERROR_HANDLER)
emitter = EventEmitter(Component.PIPELINE)


class ProviderError(Exception):
    """Failure reported by, or while talking to, an external provider."""

    provider = "unknown"

    def __init__(self, message: str, *, status: Optional[int] = None, provider: Optional[str] = None):
        super().__init__(message)
        self.status = status
        if provider:
            self.provider = provider


class TranscriptionError(ProviderError):
    provider = "deepgram"


class SearchError(ProviderError):
    provider = "azure_search"


class GenerationError(ProviderError):
    provider = "azure_openai"


class GenerationTimeout(GenerationError):
    """The reply was not ready within the generation timeout."""


class SynthesisError(ProviderError):
    provider = "elevenlabs"


class ProviderErrorCategory:
    """Stable error categories."""

    AUTH_FAILED = "provider.auth_failed"
    MISCONFIGURED = "provider.misconfigured"
    NETWORK_ERROR = "provider.network_error"
    TIMEOUT = "provider.timeout"
    RATE_LIMITED = "provider.rate_limited"
    CAPACITY_LIMITED = "provider.capacity_limited"
    UNKNOWN_ERROR = "provider.unknown_error"


_STATUS_CATEGORIES = {
    401: ProviderErrorCategory.AUTH_FAILED,
    403: ProviderErrorCategory.AUTH_FAILED,
    404: ProviderErrorCategory.MISCONFIGURED,
    408: ProviderErrorCategory.TIMEOUT,
    429: ProviderErrorCategory.RATE_LIMITED,
    503: ProviderErrorCategory.CAPACITY_LIMITED,
}


class ProviderErrorHandler:
    """Classifies provider errors and reports them."""

    @staticmethod
    def classify_error(error: BaseException, provider_name: Optional[str] = None) -> str:
        """Classify an error into a stable category string."""
        if isinstance(error, (GenerationTimeout, asyncio.TimeoutError)):
            return ProviderErrorCategory.TIMEOUT

        status = getattr(error, "status", None)
        if isinstance(status, int) and status in _STATUS_CATEGORIES:
            return _STATUS_CATEGORIES[status]

        if isinstance(error, aiohttp.ClientConnectionError):
            return ProviderErrorCategory.NETWORK_ERROR

        error_str = str(error).lower()

        if "auth" in error_str or "unauthorized" in error_str or "401" in error_str:
            return ProviderErrorCategory.AUTH_FAILED
        if "api key" in error_str or "config" in error_str or "misconfigured" in error_str:
            return ProviderErrorCategory.MISCONFIGURED
        if "timeout" in error_str or "timed out" in error_str:
            return ProviderErrorCategory.TIMEOUT
        if "network" in error_str or "connection" in error_str:
            return ProviderErrorCategory.NETWORK_ERROR
        if "rate limit" in error_str or "429" in error_str or "throttle" in error_str:
            return ProviderErrorCategory.RATE_LIMITED
        if "capacity" in error_str or "503" in error_str:
            return ProviderErrorCategory.CAPACITY_LIMITED

        return ProviderErrorCategory.UNKNOWN_ERROR

    @staticmethod
    def handle_error(
        session_id: str,
        error: BaseException,
        provider_name: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        """
        Classify, log and emit provider.event. Always returns a category.
        """
        provider_name = provider_name or getattr(error, "provider", None)
        category = ProviderErrorHandler.classify_error(error, provider_name)

        detail = str(error)
        lowered = detail.lower()
        if "secret" in lowered or "password" in lowered or "key=" in lowered or "token " in lowered:
            detail = "[redacted: potential secret]"

        logger.with_session(session_id).warning(
            "Provider error",
            provider=provider_name,
            category=category,
            error_type=type(error).__name__,
        )
        emitter.provider_event(
            session_id=session_id,
            category=category,
            provider_name=provider_name,
            detail=detail,
            correlation_id=correlation_id,
        )
        return category

    @staticmethod
    def get_user_message(category: str) -> str:
        """User-facing Spanish message for a category."""
        messages = {
            ProviderErrorCategory.TIMEOUT: "Lo siento, la respuesta está tardando demasiado. Por favor, intenta de nuevo.",
            ProviderErrorCategory.RATE_LIMITED: "Hay mucha demanda en este momento. Intenta de nuevo en unos segundos.",
            ProviderErrorCategory.CAPACITY_LIMITED: "Hay mucha demanda en este momento. Intenta de nuevo en unos segundos.",
            ProviderErrorCategory.NETWORK_ERROR: "Lo siento, hay un problema de conexión. Por favor, intenta de nuevo.",
        }
        return messages.get(
            category,
            "Lo siento, no pude procesar tu consulta en este momento. Por favor, intenta de nuevo.",
        )
