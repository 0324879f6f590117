"""
Audio level and silence detection for PCM16 mono frames.

Telemetry only: the level feeds the client's meter and the
user-speaking flag, it never decides when an utterance is complete.
"""
import math
import struct
import time
from collections import deque
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Callable, Dict, Optional

from logging_setup import get_logger, Component

logger = get_logger(Component.SILENCE_DETECTOR)

MAX_AMPLITUDE = 32767
# RMS is computed over roughly this many samples per frame
LEVEL_SAMPLE_POINTS = 100


@dataclass(frozen=True)
class SilenceConfig:
    threshold: float = 0.001
    min_silence_duration_ms: int = 300
    history_size: int = 5
    smoothing_factor: float = 0.4
    sample_rate: int = 16000
    channels: int = 1


@dataclass(frozen=True)
class LevelReading:
    level: float
    is_silent: bool
    silence_duration_ms: int


def frame_rms(frame: bytes) -> float:
    """RMS of a down-sampled subset of little-endian int16 samples, in [0, 1]."""
    num_samples = len(frame) // 2
    if num_samples == 0:
        return 0.0

    samples = struct.unpack(f'<{num_samples}h', frame[:num_samples * 2])
    step = max(1, num_samples // LEVEL_SAMPLE_POINTS)
    picked = samples[::step]
    mean_square = sum(s * s for s in picked) / len(picked)
    return min(1.0, math.sqrt(mean_square) / MAX_AMPLITUDE)


class SilenceDetector:
    """
    Smoothed level tracker with edge-triggered silence/resume callbacks.

    The silence callback fires once per silence period, as soon as the
    level has stayed under the threshold for min_silence_duration_ms.
    The resume callback fires on the first frame back above the threshold.
    """

    def __init__(
        self,
        config: Optional[SilenceConfig] = None,
        *,
        now: Callable[[], float] = time.monotonic,
    ):
        self._config = config or SilenceConfig()
        self._now = now
        self._on_silence: Optional[Callable[[int], Any]] = None
        self._on_resume: Optional[Callable[[], Any]] = None
        self._history: deque[float] = deque(maxlen=self._config.history_size)
        self._smoothed = 0.0
        self._silent = False
        self._silence_confirmed = False
        self._silence_started_ms: Optional[float] = None

    def on_silence(self, callback: Callable[[int], Any]) -> None:
        """Register the callback receiving the silence duration in ms."""
        self._on_silence = callback

    def on_resume(self, callback: Callable[[], Any]) -> None:
        self._on_resume = callback

    @property
    def is_silent(self) -> bool:
        return self._silent

    @property
    def current_silence_duration_ms(self) -> int:
        if not self._silent or self._silence_started_ms is None:
            return 0
        return int(self._now() * 1000 - self._silence_started_ms)

    def process_frame(self, frame: bytes) -> LevelReading:
        rms = frame_rms(frame)
        self._history.append(rms)
        average = sum(self._history) / len(self._history)
        alpha = self._config.smoothing_factor
        self._smoothed = self._smoothed * (1 - alpha) + average * alpha

        now_ms = self._now() * 1000
        duration_ms = 0

        if self._smoothed < self._config.threshold:
            if not self._silent:
                self._silent = True
                self._silence_confirmed = False
                self._silence_started_ms = now_ms
            duration_ms = int(now_ms - self._silence_started_ms)
            if not self._silence_confirmed and duration_ms >= self._config.min_silence_duration_ms:
                self._silence_confirmed = True
                logger.debug("Silence confirmed", silence_duration_ms=duration_ms)
                if self._on_silence is not None:
                    self._on_silence(duration_ms)
        elif self._silent:
            self._silent = False
            self._silence_confirmed = False
            self._silence_started_ms = None
            if self._on_resume is not None:
                self._on_resume()

        return LevelReading(
            level=min(1.0, self._smoothed),
            is_silent=self._silent,
            silence_duration_ms=duration_ms,
        )

    def reset(self) -> None:
        """Clear history and silence state. Callbacks stay registered."""
        self._history.clear()
        self._smoothed = 0.0
        self._silent = False
        self._silence_confirmed = False
        self._silence_started_ms = None

    def update_config(self, **changes) -> SilenceConfig:
        """Replace tuning values at runtime. Unknown keys raise ValueError."""
        known = {f.name for f in fields(SilenceConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown silence settings: {sorted(unknown)}")

        self._config = replace(self._config, **changes)
        if "history_size" in changes:
            self._history = deque(self._history, maxlen=self._config.history_size)
        logger.info("Silence detector reconfigured", **changes)
        return self._config

    def get_config(self) -> Dict[str, Any]:
        return asdict(self._config)

    def get_state(self) -> Dict[str, Any]:
        return {
            "is_silent": self._silent,
            "silence_confirmed": self._silence_confirmed,
            "silence_duration_ms": self.current_silence_duration_ms,
            "level": self._smoothed,
            "history_length": len(self._history),
        }
