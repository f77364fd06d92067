"""
Duplex stream plumbing shared by every transcription backend.

Outbound audio goes through a bounded queue: ``write()`` waits when the
backend falls behind, so backpressure reaches the socket read loop instead of
frames being dropped. Inbound recognition results are queued as
TranscriptEvents with a monotonic sequence and read back lazily through
``next_event()`` (or ``async for``).
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from typing import Optional, Union

from app.services.transcription.base import (
    BackendConfig,
    BackendRejected,
    StreamTerminated,
    TranscriptEvent,
    TranscriptionProviderError,
)

_END = object()

_InboundItem = Union[TranscriptEvent, TranscriptionProviderError, object]


class BackendStream:
    """Base duplex handle.

    Subclasses implement ``_run()``, which consumes audio via
    ``_next_frame()`` and reports results via ``_emit()``/``_reject()``.
    When ``_run()`` returns, any partial result that never got a final is
    flushed as a final event and end-of-stream is signalled.
    """

    def __init__(
        self,
        config: BackendConfig,
        *,
        audio_queue_frames: int = 64,
        logger_name: str = "relay.transcription.stream",
    ) -> None:
        self.config = config
        self._logger = logging.getLogger(logger_name)
        self._audio: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=max(1, audio_queue_frames))
        self._inbound: asyncio.Queue[_InboundItem] = asyncio.Queue()
        self._sequence = 0
        self._pending_partial: Optional[tuple[str, Optional[str]]] = None
        self._audio_ended = False
        self._finished = False
        self._exhausted = False
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        # set once the backend can no longer take audio; wakes blocked writers
        self._stopped = asyncio.Event()

    # ── lifecycle ─────────────────────────────────────────────────────

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._supervise(), name=f"{type(self).__name__}-run")

    async def _supervise(self) -> None:
        try:
            await self._run()
        except asyncio.CancelledError:
            raise
        except TranscriptionProviderError as exc:
            self._fail(exc)
        except Exception as exc:
            self._logger.exception("Backend stream crashed: %s", exc)
            self._fail(StreamTerminated(str(exc) or type(exc).__name__))
        else:
            self._finish()

    @abstractmethod
    async def _run(self) -> None:
        raise NotImplementedError

    async def _release(self) -> None:
        """Free backend resources (sockets, models). Called once from aclose()."""
        return None

    async def aclose(self, grace: float = 3.0) -> None:
        """Abort in-flight work and release the backend within ``grace`` seconds."""
        if self._closed:
            return
        self._closed = True
        self._stopped.set()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=grace)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except Exception as exc:
                self._logger.debug("Backend task ended with %s during close", exc)
        try:
            await asyncio.wait_for(self._release(), timeout=grace)
        except asyncio.TimeoutError:
            self._logger.warning("Backend release exceeded %.1fs grace period", grace)
        if not self._finished:
            self._finished = True
            self._inbound.put_nowait(_END)
        self._logger.debug("Backend stream closed")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._finished

    # ── outbound audio ────────────────────────────────────────────────

    async def write(self, frame: bytes) -> None:
        """Queue one audio frame, waiting while the backend is behind.

        Raises StreamTerminated if the stream fails or closes while waiting.
        """
        if self._audio_ended or self._closed:
            raise StreamTerminated("Audio already ended for this stream")
        if self._finished:
            raise StreamTerminated("Backend stream is no longer accepting audio")
        await self._put_audio(frame)

    async def end_audio(self) -> None:
        """Push the end-of-audio marker; the backend flushes and then ends the stream."""
        if self._audio_ended or self._closed:
            return
        self._audio_ended = True
        try:
            await self._put_audio(None)
        except StreamTerminated:
            self._logger.debug("End-of-audio not queued, backend already stopped")

    async def _put_audio(self, item: Optional[bytes]) -> None:
        try:
            self._audio.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass
        put = asyncio.ensure_future(self._audio.put(item))
        stopped = asyncio.ensure_future(self._stopped.wait())
        try:
            await asyncio.wait({put, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            landed = put.done() and not put.cancelled()
            if not landed:
                put.cancel()
        if not landed:
            raise StreamTerminated("Backend stream stopped while audio was waiting")

    async def _next_frame(self) -> Optional[bytes]:
        """Next queued frame, or None once end-of-audio has been reached."""
        return await self._audio.get()

    # ── inbound events ────────────────────────────────────────────────

    def _emit(self, is_partial: bool, text: str, speaker: Optional[str] = None) -> None:
        text = text.strip()
        if not text or self._finished:
            return
        self._sequence += 1
        event = TranscriptEvent(
            is_partial=is_partial,
            text=text,
            speaker_tag=speaker or None,
            sequence=self._sequence,
        )
        self._pending_partial = (text, speaker) if is_partial else None
        self._inbound.put_nowait(event)

    def _reject(self, message: str) -> None:
        self._logger.warning("Backend rejected utterance: %s", message)
        self._inbound.put_nowait(BackendRejected(message))

    def _fail(self, exc: TranscriptionProviderError) -> None:
        if self._finished:
            return
        self._logger.warning("Backend stream failed: %s: %s", type(exc).__name__, exc)
        self._finished = True
        self._stopped.set()
        self._inbound.put_nowait(exc)
        self._inbound.put_nowait(_END)

    def _finish(self) -> None:
        if self._finished:
            return
        if self._pending_partial is not None:
            text, speaker = self._pending_partial
            self._logger.debug("Flushing pending partial as final: %d chars", len(text))
            self._emit(False, text, speaker)
        self._finished = True
        self._stopped.set()
        self._inbound.put_nowait(_END)

    async def next_event(self) -> Optional[TranscriptEvent]:
        """Return the next event, or None at end-of-stream.

        Raises BackendRejected for a refused utterance (call again to keep
        reading) and BackendUnavailable/StreamTerminated when the stream died.
        """
        if self._exhausted:
            return None
        item = await self._inbound.get()
        if item is _END:
            self._exhausted = True
            return None
        if isinstance(item, TranscriptionProviderError):
            raise item
        return item

    def __aiter__(self) -> "BackendStream":
        return self

    async def __anext__(self) -> TranscriptEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event
