from __future__ import annotations

import logging
import os
from typing import Optional

import numpy as np
import soundfile as sf

from app.services.errors import InvalidFrame

BYTES_PER_SAMPLE = 2  # 16-bit little-endian mono


class PcmFramer:
    """Validates inbound binary frames before they reach the backend.

    Pass-through only: frames are never buffered or reordered. Every accepted
    frame bumps the byte counter used for duration diagnostics.
    """

    def __init__(self, sample_rate: int = 16000, recorder: Optional["SessionRecorder"] = None) -> None:
        self.sample_rate = sample_rate
        self.accepted_bytes = 0
        self.accepted_frames = 0
        self.rejected_frames = 0
        self._recorder = recorder
        self._logger = logging.getLogger("relay.audio.framer")

    def accept(self, payload: bytes, *, streaming: bool) -> Optional[bytes]:
        """Return ``payload`` if it may be forwarded, else raise InvalidFrame.

        Empty payloads (client keepalives) return None and are not counted.
        """
        if not streaming:
            self.rejected_frames += 1
            raise InvalidFrame("Audio received while the session is not streaming")
        if not payload:
            return None
        if len(payload) % BYTES_PER_SAMPLE:
            self.rejected_frames += 1
            raise InvalidFrame(
                f"Audio frame of {len(payload)} bytes is not a whole number of 16-bit samples"
            )
        self.accepted_bytes += len(payload)
        self.accepted_frames += 1
        if self._recorder is not None:
            self._recorder.write(payload)
        return payload

    @property
    def duration_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.accepted_bytes / (self.sample_rate * BYTES_PER_SAMPLE)

    def close(self) -> Optional[str]:
        if self._recorder is None:
            return None
        return self._recorder.close()


class SessionRecorder:
    """Writes a session's accepted audio to a 16-bit mono WAV file."""

    def __init__(self, path: str, sample_rate: int) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        self.path = path
        self._logger = logging.getLogger("relay.audio.recorder")
        self._file: Optional[sf.SoundFile] = sf.SoundFile(
            path,
            mode="w",
            samplerate=sample_rate,
            channels=1,
            subtype="PCM_16",
        )

    def write(self, payload: bytes) -> None:
        if self._file is None:
            return
        try:
            self._file.write(np.frombuffer(payload, dtype="<i2"))
        except (RuntimeError, OSError) as exc:
            # stop recording but keep the live session going
            self._logger.warning("Recording write failed, disabling recorder: %s", exc)
            self.close()

    def close(self) -> Optional[str]:
        if self._file is None:
            return self.path
        try:
            self._file.close()
        except (RuntimeError, OSError) as exc:
            self._logger.warning("Recording close failed: %s", exc)
        self._file = None
        return self.path
