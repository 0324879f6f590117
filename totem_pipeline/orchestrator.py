"""
Continuous-call orchestration.

One CallOrchestrator per client connection. It feeds microphone frames to
the transcriber, turns final transcripts into turns
(reply generation → speech synthesis), and serializes turns so that only
one runs at a time. Finals that arrive while a turn is running are queued
and served oldest first, one per successfully spoken turn.

All state changes happen on the event loop that owns the call; the
CallState value is the only guard against overlapping turns.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity, pii_fields
from .config import CallSettings
from .errors import GenerationTimeout, ProviderErrorHandler, TranscriptionError
from .events import (
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
from .responder import ResponseGenerator
from .silence import SilenceConfig, SilenceDetector
from .synthesizer import ElevenLabsSynthesizer
from .transcription import TranscriptionHandle, TranscriptionLink

TRANSCRIBER_ERROR_MESSAGE = "Error de conexión con el servicio de transcripción. Reintentando..."

# CallSettings keys that are forwarded to the silence detector
_SILENCE_KEYS = {
    "silence_threshold": "threshold",
    "silence_min_duration_ms": "min_silence_duration_ms",
    "silence_history_size": "history_size",
    "silence_smoothing": "smoothing_factor",
}


class CallState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


@dataclass(frozen=True)
class PendingUtterance:
    text: str
    confidence: float
    enqueued_at: float


def silence_config_from(settings: CallSettings) -> SilenceConfig:
    return SilenceConfig(
        threshold=settings.silence_threshold,
        min_silence_duration_ms=settings.silence_min_duration_ms,
        history_size=settings.silence_history_size,
        smoothing_factor=settings.silence_smoothing,
        sample_rate=settings.sample_rate,
        channels=settings.channels,
    )


class CallOrchestrator:
    """
    State machine for one continuous call.

    IDLE → LISTENING on start_call(); LISTENING → PROCESSING when a final
    transcript starts a turn; PROCESSING → SPEAKING while the reply is
    synthesized; back to LISTENING when the turn ends. stop_call() returns
    to IDLE from anywhere.
    """

    def __init__(
        self,
        session_id: str,
        *,
        link: TranscriptionLink,
        responder: ResponseGenerator,
        synthesizer: ElevenLabsSynthesizer,
        sink: Callable[[CallEvent], None],
        settings: Optional[CallSettings] = None,
        silence_detector: Optional[SilenceDetector] = None,
        now: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.session_id = session_id
        self.emitter = EventEmitter(ObsComponent.PIPELINE)
        self.logger = get_logger(LogComponent.ORCHESTRATOR, session_id=session_id)

        self._link = link
        self._responder = responder
        self._synthesizer = synthesizer
        self._sink = sink
        self._settings = settings or CallSettings()
        self._now = now
        self._sleep = sleep

        self._silence = silence_detector or SilenceDetector(silence_config_from(self._settings))
        self._silence.on_silence(self._on_silence)
        self._silence.on_resume(self._on_resume)

        self._state = CallState.IDLE
        self.user_speaking = False
        self._handle: Optional[TranscriptionHandle] = None
        self._connected = False
        self._pending: deque[PendingUtterance] = deque()
        self._partial = ""
        self._last_level = 0.0

        # Bumped on every start/stop; work started under an older id is stale
        self._call_id = 0
        self._turn_seq = 0
        self._current_turn_id: Optional[str] = None

        self._keep_alive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # --- Derived state ---

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state != CallState.IDLE

    @property
    def processing(self) -> bool:
        return self._state in (CallState.PROCESSING, CallState.SPEAKING)

    @property
    def synthesis_playing(self) -> bool:
        return self._state == CallState.SPEAKING

    @property
    def connected_to_transcriber(self) -> bool:
        return self._connected and self._handle is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def accumulated_partial(self) -> str:
        return self._partial

    @property
    def settings(self) -> CallSettings:
        return self._settings

    def _is_current(self, call_id: int) -> bool:
        return call_id == self._call_id and self.active

    def _emit(self, event: CallEvent) -> None:
        self._sink(event)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Call lifecycle ---

    async def start_call(self) -> None:
        """Begin a continuous call. Fails soft if the transcriber cannot be reached."""
        if self.active:
            self.logger.info("start_call while active; restarting call")
            await self._teardown()

        self._call_id += 1
        call_id = self._call_id
        self._state = CallState.LISTENING
        self.user_speaking = False
        self._pending.clear()
        self._partial = ""
        self._silence.reset()

        self.emitter.emit("call.started", session_id=self.session_id)
        self.logger.info("Call started")

        await self._connect_transcriber(call_id)
        if not self._is_current(call_id):
            return

        self._start_keep_alive(call_id)
        self._emit(CallStarted(connected_to_transcriber=self.connected_to_transcriber))

    async def stop_call(self) -> None:
        """End the call. Idempotent."""
        was_active = self.active
        self._call_id += 1
        self._state = CallState.IDLE
        self.user_speaking = False
        await self._teardown()

        if was_active:
            self.emitter.emit("call.stopped", session_id=self.session_id)
            self.logger.info("Call stopped")
            self._emit(CallStopped())

    async def reset(self) -> None:
        """Stop the call and forget everything it accumulated."""
        await self.stop_call()
        self._last_level = 0.0
        self._turn_seq = 0
        self._current_turn_id = None

    async def close(self) -> None:
        """Release everything; used when the owning session goes away."""
        await self.stop_call()
        tasks = [t for t in self._tasks if not t.done() and t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _teardown(self) -> None:
        self._cancel_keep_alive()
        self._cancel_reconnect()
        handle, self._handle = self._handle, None
        self._connected = False
        self._pending.clear()
        self._partial = ""
        self._silence.reset()
        await self._link.close(handle)

    # --- Transcriber connection ---

    async def _connect_transcriber(self, call_id: int) -> None:
        def on_transcript(text: str, is_final: bool, confidence: float) -> None:
            if call_id == self._call_id:
                self.on_transcript(text, is_final, confidence)

        def on_error(error: Exception) -> None:
            self._on_transcriber_error(call_id, error)

        handle = await self._link.open(on_transcript, on_error, session_id=self.session_id)

        if not self._is_current(call_id):
            # Stopped while connecting
            await self._link.close(handle)
            return

        self._handle = handle
        self._connected = handle is not None
        if handle is None:
            self.logger.warning("Transcriber unavailable; audio will be dropped")
        else:
            self.emitter.emit("transcriber.connected", session_id=self.session_id)

    def _on_transcriber_error(self, call_id: int, error: Exception) -> None:
        if call_id != self._call_id:
            return

        self._connected = False
        handle, self._handle = self._handle, None
        if handle is not None:
            self._spawn(self._link.close(handle))

        self.emitter.emit(
            "transcriber.error",
            session_id=self.session_id,
            severity=Severity.WARN,
            error=str(error),
            error_type=type(error).__name__,
        )
        category = ProviderErrorHandler.handle_error(self.session_id, error, provider_name=TranscriptionError.provider)

        if not self.active:
            return
        self._emit(PipelineError(TRANSCRIBER_ERROR_MESSAGE, category))
        self._schedule_reconnect(call_id)

    def _schedule_reconnect(self, call_id: int) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        async def _retry():
            await self._sleep(self._settings.reconnect_delay_s)
            if not self._is_current(call_id):
                return
            # A failure during this attempt may schedule the next one
            self._reconnect_task = None
            self.emitter.emit(
                "transcriber.reconnect",
                session_id=self.session_id,
                delay_s=self._settings.reconnect_delay_s,
            )
            await self._connect_transcriber(call_id)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reconnect_task = loop.create_task(_retry())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            if self._reconnect_task is not asyncio.current_task():
                self._reconnect_task.cancel()
            self._reconnect_task = None

    def _start_keep_alive(self, call_id: int) -> None:
        self._cancel_keep_alive()

        async def _keep_alive():
            while True:
                await self._sleep(self._settings.keep_alive_interval_s)
                if not self._is_current(call_id):
                    return
                if self.connected_to_transcriber:
                    await self._link.send_keep_alive(self._handle)

        self._keep_alive_task = asyncio.get_running_loop().create_task(_keep_alive())

    def _cancel_keep_alive(self) -> None:
        if self._keep_alive_task is not None:
            self._keep_alive_task.cancel()
            self._keep_alive_task = None

    # --- Inbound audio and transcripts ---

    async def on_audio_frame(self, frame: bytes) -> None:
        """Meter the frame and forward it unless synthesized speech is playing."""
        if not self.active:
            return

        reading = self._silence.process_frame(frame)
        self._last_level = reading.level
        self._emit(AudioLevel(level=reading.level))

        # Half-duplex: never transcribe our own speech
        if self.connected_to_transcriber and not self.synthesis_playing:
            await self._link.send_frame(self._handle, frame)

    def on_transcript(self, text: str, is_final: bool, confidence: float = 0.0) -> None:
        """Handle a partial or final transcript from the transcriber."""
        if not self.active:
            return

        text = (text or "").strip()

        if not is_final:
            if text:
                self._partial = f"{self._partial} {text}" if self._partial else text
                self.logger.debug_pii("Partial transcript", text=text)
                self._emit(TranscriptReceived(text=text, is_final=False, confidence=confidence))
            return

        self._partial = ""
        if not text:
            return

        self.logger.info_pii("Final transcript", text=text)
        self._emit(TranscriptReceived(text=text, is_final=True, confidence=confidence))
        self.emitter.emit(
            "stt.final",
            session_id=self.session_id,
            pii=pii_fields(["text"]),
            text=text,
            confidence=confidence,
        )

        if self.processing or self._pending:
            self._enqueue(text, confidence)
            self._drain_one()
            return

        turn_id = self._claim_turn(text)
        self._spawn(self._run_turn(self._call_id, turn_id, text, confidence))

    def _enqueue(self, text: str, confidence: float) -> None:
        max_pending = self._settings.max_pending
        if max_pending and len(self._pending) >= max_pending:
            dropped = self._pending.popleft()
            self.logger.warning("Pending queue full; dropping oldest utterance", queued_at=dropped.enqueued_at)

        self._pending.append(PendingUtterance(text=text, confidence=confidence, enqueued_at=self._now()))
        self.emitter.emit(
            "turn.queued",
            session_id=self.session_id,
            correlation_id=self._current_turn_id,
            queue_length=len(self._pending),
        )
        self.logger.info("Utterance queued", queue_length=len(self._pending), state=self._state.value)

    def _drain_one(self) -> None:
        if not self.active or self.processing or not self._pending:
            return
        item = self._pending.popleft()
        self.logger.info("Serving queued utterance", waited_ms=int((self._now() - item.enqueued_at) * 1000))
        turn_id = self._claim_turn(item.text)
        self._spawn(self._run_turn(self._call_id, turn_id, item.text, item.confidence))

    # --- Turn cycle ---

    def _claim_turn(self, text: str) -> str:
        """Enter PROCESSING before any await so no other final can start a turn."""
        self._state = CallState.PROCESSING
        self._turn_seq += 1
        turn_id = f"turn_{self._turn_seq}_{int(self._now() * 1000)}"
        self._current_turn_id = turn_id
        self.emitter.emit(
            "turn.started",
            session_id=self.session_id,
            correlation_id=turn_id,
            transcript_length=len(text),
        )
        self._emit(ProcessingStarted(text=text))
        return turn_id

    async def process_utterance(self, text: str, confidence: float = 0.0) -> None:
        """Run one full turn now. Ignored unless the call is active and idle."""
        if not self.active or self.processing:
            self.logger.debug("process_utterance ignored", state=self._state.value)
            return
        turn_id = self._claim_turn(text)
        await self._run_turn(self._call_id, turn_id, text, confidence)

    async def _run_turn(self, call_id: int, turn_id: str, text: str, confidence: float) -> None:
        spoken = False
        try:
            reply = await self._generate_reply(call_id, turn_id, text)
            if reply is None or not self._is_current(call_id):
                return
            self.logger.debug_pii("Reply ready", text=reply)
            self._emit(AIResponse(text=reply, user_message=text))
            spoken = await self._speak(call_id, turn_id, reply)
        finally:
            if self._is_current(call_id):
                self._state = CallState.LISTENING
                self.emitter.emit(
                    "turn.finished",
                    session_id=self.session_id,
                    correlation_id=turn_id,
                    spoken=spoken,
                    queue_length=len(self._pending),
                )
                self._emit(ProcessingFinished())

        if spoken:
            self._drain_one()

    async def _generate_reply(self, call_id: int, turn_id: str, text: str) -> Optional[str]:
        start_ts = self._now()
        self.emitter.emit(
            "llm.request",
            session_id=self.session_id,
            correlation_id=turn_id,
            pii=pii_fields(["text"]),
            text=text,
        )

        request = asyncio.ensure_future(self._responder.generate(text))
        try:
            reply = await asyncio.wait_for(
                asyncio.shield(request),
                timeout=self._settings.generation_timeout_s,
            )
        except asyncio.TimeoutError:
            # The provider request keeps running; its result is dropped
            request.add_done_callback(self._discard_late_reply)
            self._report_error(
                call_id,
                turn_id,
                GenerationTimeout(f"Reply not ready after {self._settings.generation_timeout_s}s"),
            )
            return None
        except asyncio.CancelledError:
            request.add_done_callback(self._discard_late_reply)
            raise
        except Exception as e:
            self._report_error(call_id, turn_id, e)
            return None

        latency_ms = int((self._now() - start_ts) * 1000)
        self.emitter.emit(
            "llm.response",
            session_id=self.session_id,
            correlation_id=turn_id,
            pii=pii_fields(["text"]),
            text=reply.text,
            greeting=reply.greeting,
            search_results=len(reply.search_results),
            latency_ms=latency_ms,
        )
        return reply.text

    def _discard_late_reply(self, request: asyncio.Future) -> None:
        if request.cancelled():
            return
        error = request.exception()
        if error is not None:
            self.logger.info("Late reply failed after timeout", error_type=type(error).__name__)
        else:
            self.logger.info("Late reply discarded after timeout")

    async def generate_speech(self, text: str) -> bool:
        """
        Synthesize text and emit the audio. Returns True when audio was sent.

        Outside a turn, a successful call also starts the oldest pending utterance.
        """
        call_id = self._call_id
        turn_id = self._current_turn_id or self.session_id
        spoken = await self._speak(call_id, turn_id, text)
        if spoken and self._is_current(call_id):
            self._drain_one()
        return spoken

    async def _speak(self, call_id: int, turn_id: str, text: str) -> bool:
        resume_state = CallState.PROCESSING if self.processing else self._state

        if not text or not text.strip():
            if self._is_current(call_id) and self._state == CallState.SPEAKING:
                self._state = resume_state
            return False

        # Mute the microphone path before the first await
        if self._is_current(call_id):
            self._state = CallState.SPEAKING

        start_ts = self._now()
        self.emitter.emit("tts.started", session_id=self.session_id, correlation_id=turn_id, text_length=len(text))
        try:
            audio = await self._synthesizer.synthesize(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_current(call_id):
                self._state = resume_state
            self._report_error(call_id, turn_id, e)
            return False

        if not self._is_current(call_id):
            return False

        self.emitter.emit(
            "tts.completed",
            session_id=self.session_id,
            correlation_id=turn_id,
            audio_bytes=len(audio),
            latency_ms=int((self._now() - start_ts) * 1000),
        )
        self._emit(SpeechAudio(audio=audio, text=text))
        self._state = resume_state
        return True

    def _report_error(self, call_id: int, turn_id: str, error: BaseException) -> None:
        category = ProviderErrorHandler.handle_error(self.session_id, error, correlation_id=turn_id)
        self.logger.error(
            "Turn failed",
            turn_id=turn_id,
            category=category,
            error=str(error),
            error_type=type(error).__name__,
        )
        if self._is_current(call_id):
            self._emit(PipelineError(ProviderErrorHandler.get_user_message(category), category))

    # --- Silence detector callbacks ---

    def _on_silence(self, duration_ms: int) -> None:
        self.user_speaking = False
        self.logger.debug("User silent", silence_duration_ms=duration_ms)

    def _on_resume(self) -> None:
        self.user_speaking = True

    # --- Introspection and tuning ---

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "isCallActive": self.active,
            "isProcessing": self.processing,
            "isUserSpeaking": self.user_speaking,
            "isTTSPlaying": self.synthesis_playing,
            "isConnected": self.connected_to_transcriber,
            "transcriptionQueueLength": len(self._pending),
            "currentTranscription": self._partial,
            "audioLevel": self._last_level,
        }

    def update_config(self, **changes) -> CallSettings:
        """Change call tuning at runtime; silence_* keys also retune the detector."""
        self._settings = self._settings.update(**changes)
        silence_changes = {_SILENCE_KEYS[k]: v for k, v in changes.items() if k in _SILENCE_KEYS}
        if silence_changes:
            self._silence.update_config(**silence_changes)
        self.logger.info("Call settings updated", changed=sorted(changes))
        return self._settings
