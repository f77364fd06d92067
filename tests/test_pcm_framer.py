import numpy as np
import pytest
import soundfile as sf

from app.services.audio import PcmFramer, SessionRecorder
from app.services.errors import InvalidFrame


def test_accepts_even_frames_and_counts_bytes():
    framer = PcmFramer(16000)
    payload = b"\x10\x00" * 800

    assert framer.accept(payload, streaming=True) is payload
    framer.accept(payload, streaming=True)

    assert framer.accepted_bytes == 3200
    assert framer.accepted_frames == 2
    assert framer.duration_seconds == pytest.approx(0.1)


@pytest.mark.parametrize("payload", [b"\x00", b"\x00\x00\x00"])
def test_odd_frames_raise_and_leave_counters(payload):
    framer = PcmFramer()
    framer.accept(b"\x00\x00", streaming=True)

    with pytest.raises(InvalidFrame):
        framer.accept(payload, streaming=True)

    assert framer.accepted_bytes == 2
    assert framer.accepted_frames == 1
    assert framer.rejected_frames == 1


def test_empty_frame_is_ignored_without_counting():
    framer = PcmFramer()
    framer.accept(b"\x00\x00", streaming=True)

    assert framer.accept(b"", streaming=True) is None

    assert framer.accepted_bytes == 2
    assert framer.accepted_frames == 1
    assert framer.rejected_frames == 0


def test_frames_outside_streaming_are_rejected():
    framer = PcmFramer()
    with pytest.raises(InvalidFrame):
        framer.accept(b"\x00\x00", streaming=False)
    assert framer.accepted_bytes == 0


def test_recorder_writes_accepted_audio_as_wav(tmp_path):
    path = str(tmp_path / "rec" / "session.wav")
    framer = PcmFramer(16000, recorder=SessionRecorder(path, 16000))
    samples = np.array([0, 1000, -1000, 32767], dtype="<i2")

    framer.accept(samples.tobytes(), streaming=True)
    with pytest.raises(InvalidFrame):
        framer.accept(b"\x01", streaming=True)

    assert framer.close() == path
    data, rate = sf.read(path, dtype="int16")
    assert rate == 16000
    assert data.tolist() == samples.tolist()
