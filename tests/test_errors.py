"""
Provider error handling tests.
"""
import asyncio

import aiohttp
import pytest

from observability.event_store import event_store
from totem_pipeline.errors import (
    GenerationError,
    GenerationTimeout,
    ProviderErrorCategory,
    ProviderErrorHandler,
    SearchError,
    SynthesisError,
    TranscriptionError,
)


class TestProviderErrorClassification:
    """Test error classification."""

    def test_status_codes(self):
        assert ProviderErrorHandler.classify_error(SearchError("x", status=401)) == ProviderErrorCategory.AUTH_FAILED
        assert ProviderErrorHandler.classify_error(SearchError("x", status=403)) == ProviderErrorCategory.AUTH_FAILED
        assert ProviderErrorHandler.classify_error(GenerationError("x", status=404)) == ProviderErrorCategory.MISCONFIGURED
        assert ProviderErrorHandler.classify_error(GenerationError("x", status=429)) == ProviderErrorCategory.RATE_LIMITED
        assert ProviderErrorHandler.classify_error(SynthesisError("x", status=503)) == ProviderErrorCategory.CAPACITY_LIMITED

    def test_timeouts(self):
        assert ProviderErrorHandler.classify_error(GenerationTimeout("slow")) == ProviderErrorCategory.TIMEOUT
        assert ProviderErrorHandler.classify_error(asyncio.TimeoutError()) == ProviderErrorCategory.TIMEOUT
        assert ProviderErrorHandler.classify_error(Exception("Request timed out")) == ProviderErrorCategory.TIMEOUT

    def test_network_error(self):
        error = aiohttp.ClientConnectionError("boom")
        assert ProviderErrorHandler.classify_error(error) == ProviderErrorCategory.NETWORK_ERROR

        error = Exception("Connection refused")
        assert ProviderErrorHandler.classify_error(error) == ProviderErrorCategory.NETWORK_ERROR

    def test_message_heuristics(self):
        assert ProviderErrorHandler.classify_error(Exception("Unauthorized")) == ProviderErrorCategory.AUTH_FAILED
        assert ProviderErrorHandler.classify_error(
            Exception("Azure Search is not configured (api key / endpoint missing)")
        ) == ProviderErrorCategory.MISCONFIGURED
        assert ProviderErrorHandler.classify_error(Exception("Rate limit exceeded")) == ProviderErrorCategory.RATE_LIMITED
        assert ProviderErrorHandler.classify_error(Exception("Capacity exceeded")) == ProviderErrorCategory.CAPACITY_LIMITED

    def test_unknown_error(self):
        error = Exception("Something weird happened")
        assert ProviderErrorHandler.classify_error(error) == ProviderErrorCategory.UNKNOWN_ERROR

    def test_provider_names(self):
        assert TranscriptionError("x").provider == "deepgram"
        assert SearchError("x").provider == "azure_search"
        assert GenerationTimeout("x").provider == "azure_openai"
        assert SynthesisError("x").provider == "elevenlabs"
        assert SearchError("x", provider="other").provider == "other"


class TestProviderErrorHandling:
    """Test error handling and event emission."""

    def test_error_handling_emits_provider_event(self, capsys):
        event_store.clear()
        category = ProviderErrorHandler.handle_error(
            session_id="sess_err",
            error=SearchError("Azure Search API error: 429", status=429),
            correlation_id="turn_1",
        )

        output = capsys.readouterr().out
        assert category == ProviderErrorCategory.RATE_LIMITED
        assert "provider.event" in output
        assert "sess_err" in output

        events = event_store.query(session_id="sess_err", event_type="provider.event")
        assert events[0]["provider"] == "azure_search"
        assert events[0]["category"] == category
        assert events[0]["correlation_id"] == "turn_1"

    def test_error_handling_no_crash(self):
        weird_errors = [
            Exception(""),
            Exception(None),
            Exception(12345),
            ValueError("Different error type"),
            KeyError("key"),
        ]

        for error in weird_errors:
            category = ProviderErrorHandler.handle_error(session_id="sess_weird", error=error)
            assert category.startswith("provider.")

    def test_error_handling_redaction(self, capsys):
        ProviderErrorHandler.handle_error(
            session_id="sess_secret",
            error=Exception("Error: API secret abc123xyz leaked"),
        )

        output = capsys.readouterr().out
        assert "abc123xyz" not in output
        assert "redacted" in output.lower()


class TestUserMessages:
    """Test user-facing messages."""

    def test_user_messages_spanish(self):
        categories = [
            ProviderErrorCategory.TIMEOUT,
            ProviderErrorCategory.RATE_LIMITED,
            ProviderErrorCategory.NETWORK_ERROR,
            ProviderErrorCategory.UNKNOWN_ERROR,
        ]
        for category in categories:
            message = ProviderErrorHandler.get_user_message(category)
            assert message
            assert any(word in message.lower() for word in ["lo siento", "intenta", "de nuevo"])

    @pytest.mark.parametrize("category", [ProviderErrorCategory.AUTH_FAILED, ProviderErrorCategory.MISCONFIGURED])
    def test_user_messages_non_technical(self, category):
        message = ProviderErrorHandler.get_user_message(category)

        assert "401" not in message
        assert "auth" not in message.lower()
        assert "error" not in message.lower()
        assert "exception" not in message.lower()
