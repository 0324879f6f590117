"""
Speech synthesis client (ElevenLabs text-to-speech REST API).

Text is normalized for pronunciation, whitespace-collapsed and, when too
long, cut at a sentence boundary before it is sent.
"""
import asyncio
import base64
import re
import time
from typing import Optional

import aiohttp

from logging_setup import get_logger, Component
from .config import ElevenLabsSettings
from .errors import SynthesisError
from .http_pool import PooledHTTPClient
from .pronunciation import PronunciationTable, normalize_pronunciation

logger = get_logger(Component.TTS)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_WHITESPACE = re.compile(r"\s+")


def truncate_at_sentence(text: str, max_chars: int) -> str:
    """Keep whole sentences up to max_chars; hard-cut with an ellipsis if none fits."""
    if len(text) <= max_chars:
        return text

    kept = ""
    for sentence in _SENTENCE_SPLIT.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        candidate = f"{kept} {sentence}." if kept else f"{sentence}."
        if len(candidate) > max_chars:
            break
        kept = candidate

    return kept or text[:max_chars - 3] + "..."


def prepare_text(text: str, max_chars: int = 5000, table: Optional[PronunciationTable] = None) -> str:
    """Pronunciation fixes, then whitespace collapse, then length limit."""
    if not text or not text.strip():
        raise ValueError("Text cannot be empty")
    processed = normalize_pronunciation(text, table)
    processed = _WHITESPACE.sub(" ", processed).strip()
    return truncate_at_sentence(processed, max_chars)


def audio_data_url(audio: bytes, mime_type: str = "audio/mpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(audio).decode('ascii')}"


class ElevenLabsSynthesizer(PooledHTTPClient):
    """synthesize(text) -> MP3 bytes."""

    def __init__(
        self,
        settings: ElevenLabsSettings,
        *,
        table: Optional[PronunciationTable] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(http_session)
        self._settings = settings
        self._table = table
        self._timeout_s = settings.timeout_s
        self._logger = logger

    def prepare(self, text: str) -> str:
        return prepare_text(text, self._settings.max_chars, self._table)

    async def synthesize(self, text: str) -> bytes:
        """
        Raises ValueError for empty text and SynthesisError for provider failures.
        """
        processed = self.prepare(text)

        if not self._settings.api_key:
            raise SynthesisError("ElevenLabs API key not configured")

        url = f"{self._settings.base_url}/text-to-speech/{self._settings.voice_id}"
        payload = {
            "text": processed,
            "model_id": self._settings.model_id,
            "voice_settings": self._settings.voice_settings(),
        }
        headers = {
            "xi-api-key": self._settings.api_key,
            "Accept": "audio/mpeg",
        }

        logger.info("TTS call started", text_length=len(processed), truncated=len(processed) < len(text.strip()))
        start_ts = time.time()
        session = self._get_or_create_session()

        try:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error("TTS request failed", status_code=response.status, error_text=error_text[:300])
                    raise SynthesisError(f"ElevenLabs API error: {response.status}", status=response.status)
                audio = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("TTS request exception", error=str(e), error_type=type(e).__name__)
            raise SynthesisError(f"ElevenLabs request failed: {e}") from e

        if not audio:
            raise SynthesisError("ElevenLabs returned no audio")

        logger.info(
            "TTS call completed",
            text_length=len(processed),
            audio_bytes=len(audio),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return audio
