"""
Tests for the audio level / silence detector.
"""
import struct

import pytest

from totem_pipeline.silence import SilenceConfig, SilenceDetector, frame_rms

FRAME_MS = 100
QUIET_FRAME = struct.pack("<1600h", *([3, -3] * 800))
LOUD_FRAME = struct.pack("<1600h", *([12000, -12000] * 800))


class FakeClock:
    def __init__(self):
        self.ms = 1_000_000

    def __call__(self):
        return self.ms / 1000

    def advance_ms(self, ms):
        self.ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def detector(clock):
    d = SilenceDetector(SilenceConfig(threshold=0.001, min_silence_duration_ms=300), now=clock)
    d.fired = []
    d.resumed = []
    d.on_silence(d.fired.append)
    d.on_resume(lambda: d.resumed.append(True))
    return d


def _feed(detector, clock, frame, count):
    for _ in range(count):
        detector.process_frame(frame)
        clock.advance_ms(FRAME_MS)


def test_frame_rms_normalized():
    assert frame_rms(b"") == 0.0
    assert frame_rms(b"\x00\x00" * 10) == 0.0
    assert frame_rms(struct.pack("<2h", 32767, 32767)) == pytest.approx(1.0)
    assert 0.36 < frame_rms(LOUD_FRAME) < 0.37


def test_silence_fires_once_after_min_duration(detector, clock):
    # Frames at t = 0 .. 400 ms of silence
    _feed(detector, clock, QUIET_FRAME, 5)

    assert len(detector.fired) == 1
    assert detector.fired[0] >= 300

    # Still silent: no second fire for the same period
    _feed(detector, clock, QUIET_FRAME, 10)
    assert len(detector.fired) == 1


def test_short_silence_does_not_fire(detector, clock):
    _feed(detector, clock, QUIET_FRAME, 3)
    assert detector.fired == []
    assert detector.is_silent


def test_resume_fires_immediately(detector, clock):
    _feed(detector, clock, QUIET_FRAME, 2)
    detector.process_frame(LOUD_FRAME)

    assert detector.resumed == [True]
    assert not detector.is_silent
    assert detector.current_silence_duration_ms == 0


def test_new_silence_period_fires_again(detector, clock):
    _feed(detector, clock, QUIET_FRAME, 5)
    _feed(detector, clock, LOUD_FRAME, 1)
    # Smoothed level needs a few frames to decay below threshold
    _feed(detector, clock, QUIET_FRAME, 40)

    assert len(detector.fired) == 2


def test_reading_reports_level_and_duration(detector, clock):
    first = detector.process_frame(QUIET_FRAME)
    clock.advance_ms(150)
    second = detector.process_frame(QUIET_FRAME)

    assert first.is_silent and first.silence_duration_ms == 0
    assert 149 <= second.silence_duration_ms <= 150
    assert 0.0 <= second.level < 0.001


def test_reset_clears_state(detector, clock):
    _feed(detector, clock, QUIET_FRAME, 4)
    detector.reset()

    state = detector.get_state()
    assert state["is_silent"] is False
    assert state["history_length"] == 0
    assert state["level"] == 0.0


def test_update_config(detector):
    config = detector.update_config(threshold=0.005, history_size=8)

    assert config.threshold == 0.005
    assert detector.get_config()["history_size"] == 8
    with pytest.raises(ValueError):
        detector.update_config(unknown=1)
