"""
WebSocket transport adapter.

Translates client messages into orchestrator calls and orchestrator events
into client messages. Every outbound message goes through one queue drained
by a single writer task, so the client sees events in emission order.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity
from totem_pipeline.events import (
    AIResponse,
    AudioLevel,
    CallEvent,
    CallStarted,
    CallStopped,
    PipelineError,
    ProcessingFinished,
    ProcessingStarted,
    SpeechAudio,
    TranscriptReceived,
)
from totem_pipeline.orchestrator import CallOrchestrator
from .session import Session, SessionManager

OrchestratorFactory = Callable[[str, Callable[[CallEvent], None]], CallOrchestrator]

emitter = EventEmitter(ObsComponent.SERVER)

_CLOSED = object()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _status(status: str) -> Dict[str, Any]:
    return {"type": "status", "status": status}


def serialize_event(event: CallEvent) -> List[Dict[str, Any]]:
    """Client messages for one orchestrator event, in send order."""
    if isinstance(event, CallStarted):
        return [
            {
                "type": "call_started",
                "message": "Llamada continua iniciada",
                "connectedToTranscriber": event.connected_to_transcriber,
            },
            _status("call_active"),
        ]
    if isinstance(event, CallStopped):
        return [{"type": "call_stopped", "message": "Llamada continua detenida"}, _status("ready")]
    if isinstance(event, TranscriptReceived):
        return [
            {
                "type": "transcription",
                "text": event.text,
                "isFinal": event.is_final,
                "confidence": event.confidence,
            }
        ]
    if isinstance(event, ProcessingStarted):
        return [_status("processing")]
    if isinstance(event, ProcessingFinished):
        return [_status("call_active")]
    if isinstance(event, AIResponse):
        return [{"type": "ai_response", "text": event.text, "userMessage": event.user_message}]
    if isinstance(event, SpeechAudio):
        return [
            {"type": "audio", "data": base64.b64encode(event.audio).decode("ascii")},
            _status("speaking"),
        ]
    if isinstance(event, AudioLevel):
        return [{"type": "audio_level", "level": event.level}]
    if isinstance(event, PipelineError):
        return [{"type": "error", "code": event.category, "message": event.message}, _status("error")]
    raise TypeError(f"Unknown call event: {type(event).__name__}")


class ClientConnection:
    """One client WebSocket bound to one session and one call orchestrator."""

    def __init__(
        self,
        websocket: WebSocket,
        session: Session,
        sessions: SessionManager,
        orchestrator_factory: OrchestratorFactory,
    ):
        self._ws = websocket
        self.session = session
        self._sessions = sessions
        self._outbox: asyncio.Queue = asyncio.Queue()
        self.logger = get_logger(LogComponent.TRANSPORT, session_id=session.session_id)

        self.orchestrator = orchestrator_factory(session.session_id, self.on_event)
        session.orchestrator = self.orchestrator

        self._handlers = {
            "start_call": self._start_call,
            "stop_call": self._stop_call,
            "audio_chunk": self._audio_chunk,
            "reset_conversation": self._reset_conversation,
            "get_status": self._get_status,
            "ping": self._ping,
        }

    # --- Outbound ---

    def send(self, message: Dict[str, Any]) -> None:
        message.setdefault("timestamp", _now_ms())
        self._outbox.put_nowait(message)

    def send_error(self, message: str, code: str = "ERROR") -> None:
        self.send({"type": "error", "code": code, "message": message})

    def on_event(self, event: CallEvent) -> None:
        """Orchestrator event sink."""
        if isinstance(event, AIResponse):
            self.session.add_exchange(event.user_message, event.text)
        for message in serialize_event(event):
            self.send(message)

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            if message is _CLOSED:
                return
            try:
                await self._ws.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                # Client is gone; the reader side handles teardown
                self.logger.debug("Send failed", error_type=type(e).__name__)
                return

    # --- Inbound ---

    async def run(self) -> None:
        """Serve the connection until the client disconnects."""
        writer = asyncio.get_running_loop().create_task(self._write_loop())
        self.send({"type": "connected", "sessionId": self.session.session_id, "message": "Conectado al servidor de voz"})
        emitter.emit("session.connected", session_id=self.session.session_id)
        self.logger.info("Client connected")

        try:
            while True:
                message = await self._ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    await self.orchestrator.on_audio_frame(message["bytes"])
                elif message.get("text") is not None:
                    await self.handle_text(message["text"])
        except WebSocketDisconnect:
            pass
        except Exception as e:
            self.logger.exception("Transport error", error_type=type(e).__name__)
            emitter.emit(
                "session.transport_error",
                session_id=self.session.session_id,
                severity=Severity.ERROR,
                error_type=type(e).__name__,
            )
        finally:
            await self.shutdown()
            self._outbox.put_nowait(_CLOSED)
            try:
                await asyncio.wait_for(writer, timeout=1.0)
            except asyncio.TimeoutError:
                writer.cancel()

    async def handle_text(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            self.logger.warning("Malformed client message", size=len(raw))
            self.send_error("Invalid JSON message")
            return
        if not isinstance(message, dict):
            self.send_error("Invalid message format")
            return
        await self.handle_message(message)

    async def handle_message(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        handler = self._handlers.get(message_type)
        if handler is None:
            self.logger.warning("Unknown message type", message_type=str(message_type))
            self.send_error("Unknown message type")
            return

        try:
            await handler(message)
        except Exception as e:
            self.logger.exception("Error handling message", message_type=message_type, error_type=type(e).__name__)
            self.send_error("Error processing message")

    async def _start_call(self, message: Dict[str, Any]) -> None:
        await self.orchestrator.start_call()

    async def _stop_call(self, message: Dict[str, Any]) -> None:
        await self.orchestrator.stop_call()

    async def _audio_chunk(self, message: Dict[str, Any]) -> None:
        data = message.get("data")
        if not isinstance(data, str) or not data:
            self.send_error("Invalid audio data")
            return
        try:
            frame = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            self.send_error("Invalid audio data")
            return
        await self.orchestrator.on_audio_frame(frame)

    async def _reset_conversation(self, message: Dict[str, Any]) -> None:
        self.session.clear_history()
        await self.orchestrator.reset()
        self.send({"type": "conversation_reset", "message": "Conversación reiniciada"})

    async def _get_status(self, message: Dict[str, Any]) -> None:
        self.send({"type": "status", "status": self.status_snapshot()})

    async def _ping(self, message: Dict[str, Any]) -> None:
        self.send({"type": "pong"})

    def status_snapshot(self) -> Dict[str, Any]:
        status = self.orchestrator.get_status()
        status["conversationHistoryLength"] = len(self.session.history)
        return status

    # --- Teardown ---

    async def shutdown(self) -> None:
        """Stop the call and release everything the session owns."""
        try:
            await self.orchestrator.stop_call()
            await self.orchestrator.close()
        finally:
            self._sessions.close_session(self.session.session_id)
            emitter.emit("session.closed", session_id=self.session.session_id)
            self.logger.info("Client disconnected")
