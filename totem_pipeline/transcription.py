"""
Streaming transcription link (Deepgram live API over aiohttp websockets).

One TranscriptionHandle per connection. The link itself is stateless and
shared by every call; handles are never reused after a close or error.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp

from logging_setup import get_logger, Component
from .config import DeepgramSettings
from .errors import TranscriptionError

logger = get_logger(Component.TRANSCRIBER)

TranscriptCallback = Callable[[str, bool, float], None]
ErrorCallback = Callable[[Exception], None]

KEEP_ALIVE_MESSAGE = json.dumps({"type": "KeepAlive"})
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})

# Errors a send on a dying socket can raise
_SEND_ERRORS = (aiohttp.ClientError, ConnectionError, RuntimeError)


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool
    confidence: float


def parse_transcript_event(message: Dict[str, Any]) -> Optional[TranscriptEvent]:
    """
    Extract the first alternative of a "Results" message.

    Returns None for other message types. A results message without
    alternatives yields an empty, non-final transcript.
    """
    if message.get("type") != "Results":
        return None

    channel = message.get("channel") or {}
    if isinstance(channel, list):
        channel = channel[0] if channel else {}
    alternatives = channel.get("alternatives") or []
    if not alternatives:
        return TranscriptEvent(text="", is_final=False, confidence=0.0)

    first = alternatives[0] or {}
    return TranscriptEvent(
        text=first.get("transcript") or "",
        is_final=bool(message.get("is_final", False)),
        confidence=float(first.get("confidence") or 0.0),
    )


class TranscriptionHandle:
    """A live transcriber connection."""

    def __init__(self, http_session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse, session_id: str):
        self.http_session = http_session
        self.ws = ws
        self.session_id = session_id
        self.reader: Optional[asyncio.Task] = None
        self.connected = True
        self.closed = False
        self.opened_at = time.time()

    @property
    def is_open(self) -> bool:
        return self.connected and not self.closed and not self.ws.closed


class TranscriptionLink:
    """Opens, feeds and closes transcriber connections."""

    def __init__(
        self,
        settings: DeepgramSettings,
        *,
        session_factory: Callable[..., aiohttp.ClientSession] = aiohttp.ClientSession,
    ):
        self._settings = settings
        self._session_factory = session_factory

    async def open(
        self,
        on_transcript: TranscriptCallback,
        on_error: ErrorCallback,
        *,
        session_id: str = "-",
    ) -> Optional[TranscriptionHandle]:
        """
        Connect to the transcriber.

        On failure on_error is invoked and None is returned; callers treat
        that as "not connected".
        """
        log = logger.with_session(session_id)

        if not self._settings.api_key:
            log.error("Transcriber API key not configured")
            on_error(TranscriptionError("Deepgram API key not configured"))
            return None

        start_ts = time.time()
        http_session = self._session_factory(
            timeout=aiohttp.ClientTimeout(total=None, connect=self._settings.connect_timeout_s),
        )
        try:
            ws = await http_session.ws_connect(
                self._settings.url,
                params=self._settings.query_params(),
                headers={"Authorization": f"Token {self._settings.api_key}"},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await http_session.close()
            log.error(
                "Transcriber connection failed",
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            on_error(TranscriptionError(f"Transcriber connection failed: {e}", status=getattr(e, "status", None)))
            return None

        handle = TranscriptionHandle(http_session, ws, session_id)
        handle.reader = asyncio.create_task(self._read_loop(handle, on_transcript, on_error))
        log.info(
            "Transcriber connected",
            model=self._settings.model,
            language=self._settings.language,
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return handle

    async def _read_loop(
        self,
        handle: TranscriptionHandle,
        on_transcript: TranscriptCallback,
        on_error: ErrorCallback,
    ) -> None:
        log = logger.with_session(handle.session_id)
        error: Optional[Exception] = None

        try:
            async for msg in handle.ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        log.warning("Unparseable transcriber message", size=len(msg.data))
                        continue
                    if not isinstance(data, dict):
                        continue

                    event = parse_transcript_event(data)
                    if event is not None:
                        try:
                            on_transcript(event.text, event.is_final, event.confidence)
                        except Exception as e:
                            # The stream stays up for the next utterance
                            log.error(
                                "Transcript handler failed",
                                error=str(e),
                                error_type=type(e).__name__,
                            )
                    elif data.get("type") == "Error":
                        error = TranscriptionError(
                            f"Transcriber error: {data.get('description') or data.get('message') or 'unknown'}"
                        )
                        break
                    else:
                        log.debug("Transcriber message", message_type=data.get("type"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = TranscriptionError(f"Transcriber socket error: {handle.ws.exception()}")
                    break
        except aiohttp.ClientError as e:
            error = TranscriptionError(f"Transcriber connection lost: {e}")

        handle.connected = False
        if handle.closed:
            return

        if error is None:
            error = TranscriptionError(f"Transcriber connection closed unexpectedly (code {handle.ws.close_code})")
        log.warning("Transcriber disconnected", error=str(error))
        on_error(error)

    async def send_frame(self, handle: Optional[TranscriptionHandle], frame: bytes) -> None:
        """Forward one audio frame. No-op on a missing or closed handle; never raises."""
        if handle is None or not handle.is_open:
            return
        try:
            await handle.ws.send_bytes(frame)
        except _SEND_ERRORS as e:
            handle.connected = False
            logger.with_session(handle.session_id).warning(
                "Failed to send audio frame",
                error=str(e),
                error_type=type(e).__name__,
            )

    async def send_keep_alive(self, handle: Optional[TranscriptionHandle]) -> None:
        if handle is None or not handle.is_open:
            return
        try:
            await handle.ws.send_str(KEEP_ALIVE_MESSAGE)
            logger.with_session(handle.session_id).debug("Transcriber keep-alive sent")
        except _SEND_ERRORS as e:
            logger.with_session(handle.session_id).warning("Keep-alive failed", error=str(e))

    async def close(self, handle: Optional[TranscriptionHandle]) -> None:
        """Close the connection. Idempotent; safe on None."""
        if handle is None or handle.closed:
            return
        handle.closed = True
        handle.connected = False
        log = logger.with_session(handle.session_id)

        try:
            if not handle.ws.closed:
                await handle.ws.send_str(CLOSE_STREAM_MESSAGE)
                await handle.ws.close()
        except _SEND_ERRORS as e:
            log.warning("Error closing transcriber socket", error=str(e), error_type=type(e).__name__)
        finally:
            reader = handle.reader
            if reader is not None and not reader.done() and reader is not asyncio.current_task():
                reader.cancel()
            await handle.http_session.close()

        log.info("Transcriber closed", open_seconds=round(time.time() - handle.opened_at, 1))
