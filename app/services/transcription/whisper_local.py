from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

# Workaround for tqdm threading issue in huggingface_hub downloads
# This must be set before importing faster_whisper
os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")

import numpy as np
from faster_whisper import WhisperModel

from app.services.transcription.base import (
    BackendConfig,
    BackendUnavailable,
    TranscriptionBackend,
)
from app.services.transcription.stream import BackendStream

_WHISPER_SAMPLE_RATE = 16000


@dataclass(frozen=True)
class WhisperConfig:
    model_size: str = "base"
    device: str = "cpu"
    compute_type: str = "int8"
    chunk_seconds: float = 10.0
    partial_interval_seconds: float = 2.0
    audio_queue_frames: int = 64


def pcm16_to_float32(audio_bytes: bytes, sample_rate: int) -> np.ndarray:
    """Decode 16-bit LE mono PCM into the float32 16 kHz array whisper expects."""
    audio = np.frombuffer(audio_bytes, dtype="<i2").astype(np.float32) / 32768.0
    if sample_rate != _WHISPER_SAMPLE_RATE and audio.size:
        target_len = int(round(audio.size * _WHISPER_SAMPLE_RATE / sample_rate))
        positions = np.linspace(0, audio.size - 1, num=max(target_len, 1))
        audio = np.interp(positions, np.arange(audio.size), audio).astype(np.float32)
    return audio


class FasterWhisperBackend(TranscriptionBackend):
    """Local recognizer built on faster-whisper.

    Whisper is not a native streaming model, so the stream keeps a rolling
    utterance window: every ``partial_interval_seconds`` of new audio the
    window is re-transcribed and emitted as a partial, and once the window
    reaches ``chunk_seconds`` it is emitted as a final and cleared.
    """

    name = "faster-whisper"

    def __init__(self, config: WhisperConfig) -> None:
        self._config = config
        self._logger = logging.getLogger("relay.transcription.whisper")
        self._model: Optional[WhisperModel] = None

    def _get_model(self) -> WhisperModel:
        if self._model is None:
            self._logger.info(
                "Loading whisper model: size=%s device=%s compute_type=%s",
                self._config.model_size,
                self._config.device,
                self._config.compute_type,
            )
            self._model = WhisperModel(
                self._config.model_size,
                device=self._config.device,
                compute_type=self._config.compute_type,
            )
        return self._model

    async def open(self, config: BackendConfig) -> BackendStream:
        try:
            model = await asyncio.to_thread(self._get_model)
        except Exception as exc:
            self._logger.exception("Whisper model load failed: %s", exc)
            raise BackendUnavailable(f"Whisper model unavailable: {exc}") from exc
        stream = WhisperStream(model, self._config, config)
        stream.start()
        return stream


class WhisperStream(BackendStream):
    def __init__(self, model: WhisperModel, whisper: WhisperConfig, config: BackendConfig) -> None:
        super().__init__(
            config,
            audio_queue_frames=whisper.audio_queue_frames,
            logger_name="relay.transcription.whisper.stream",
        )
        self._model = model
        self._whisper = whisper
        # "en-US" -> "en"; whisper only takes the bare language code
        self._language = (config.language_code or "").split("-")[0].lower() or None

    def _transcribe(self, audio_bytes: bytes) -> str:
        audio = pcm16_to_float32(audio_bytes, self.config.sample_rate)
        segments_iter, _ = self._model.transcribe(
            audio,
            language=self._language,
            initial_prompt=self.config.vocabulary,
            vad_filter=True,
        )
        return " ".join(segment.text.strip() for segment in segments_iter).strip()

    async def _recognize(self, audio_bytes: bytes, is_partial: bool) -> None:
        try:
            text = await asyncio.to_thread(self._transcribe, audio_bytes)
        except Exception as exc:
            # one bad window should not take the stream down
            self._reject(f"Whisper failed on {len(audio_bytes)} bytes: {exc}")
            return
        self._emit(is_partial, text)

    async def _run(self) -> None:
        bytes_per_second = self.config.sample_rate * 2
        window_bytes = int(bytes_per_second * self._whisper.chunk_seconds)
        partial_bytes = max(int(bytes_per_second * self._whisper.partial_interval_seconds), 2)
        buffer = bytearray()
        since_partial = 0

        self._logger.debug(
            "Whisper stream started: window=%d bytes partial_every=%d bytes",
            window_bytes,
            partial_bytes,
        )

        while True:
            frame = await self._next_frame()
            if frame is None:
                break
            buffer.extend(frame)
            since_partial += len(frame)

            if len(buffer) >= window_bytes:
                await self._recognize(bytes(buffer), is_partial=False)
                buffer.clear()
                since_partial = 0
            elif since_partial >= partial_bytes:
                await self._recognize(bytes(buffer), is_partial=True)
                since_partial = 0

        # end of audio: whatever is left is the last utterance
        if buffer:
            await self._recognize(bytes(buffer), is_partial=False)
        self._logger.debug("Whisper stream drained")

    async def _release(self) -> None:
        # the model is shared across sessions; nothing per-stream to free
        return None

