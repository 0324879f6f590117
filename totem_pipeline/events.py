"""
Outbound call events.

The orchestrator reports everything that happens on a call as one of
these values, pushed in order into a single sink. The transport adapter
turns each into wire messages.
"""
from dataclasses import dataclass
from typing import Callable, Union


@dataclass(frozen=True)
class CallStarted:
    connected_to_transcriber: bool


@dataclass(frozen=True)
class CallStopped:
    pass


@dataclass(frozen=True)
class TranscriptReceived:
    text: str
    is_final: bool
    confidence: float


@dataclass(frozen=True)
class ProcessingStarted:
    text: str


@dataclass(frozen=True)
class ProcessingFinished:
    pass


@dataclass(frozen=True)
class AIResponse:
    text: str
    user_message: str


@dataclass(frozen=True)
class SpeechAudio:
    audio: bytes
    text: str


@dataclass(frozen=True)
class AudioLevel:
    level: float


@dataclass(frozen=True)
class PipelineError:
    message: str
    category: str


CallEvent = Union[
    CallStarted,
    CallStopped,
    TranscriptReceived,
    ProcessingStarted,
    ProcessingFinished,
    AIResponse,
    SpeechAudio,
    AudioLevel,
    PipelineError,
]

EventSink = Callable[[CallEvent], None]
