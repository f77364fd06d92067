"""
One live session per websocket connection.

Inside a session three flows run concurrently:
- the socket receive loop (router) calling ``start``/``feed_audio``/``stop``;
  ``feed_audio`` waits on backend backpressure
- the event consumer: backend events -> reconciler -> outbound queue
- the sender: outbound queue -> transport

State moves strictly forward:
INITIALIZING -> STREAMING -> STOPPING -> FINALIZING -> CLOSED, with FAILED
reachable from any non-terminal state.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from app.services.audio import PcmFramer, SessionRecorder
from app.services.collaborators import IdentityService
from app.services.debug_logging import dbg
from app.services.errors import ProtocolViolation
from app.services.finalizer import (
    FinalizationJob,
    FinalizationPipeline,
    FinalizationResult,
    StepFailure,
)
from app.services.relay_config import RelayConfig
from app.services.transcript_reconciler import DEFAULT_SPEAKER, TranscriptReconciler
from app.services.transcription import (
    BackendConfig,
    BackendRejected,
    BackendStream,
    StreamTerminated,
    TranscriptionBackend,
    TranscriptionProviderError,
)
from app.services.usage import UsageMeter

_logger = logging.getLogger("relay.session")

_STOP_SENDER = object()


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    STOPPING = "stopping"
    FINALIZING = "finalizing"
    CLOSED = "closed"
    FAILED = "failed"


_FORWARD = {
    SessionState.INITIALIZING: {SessionState.STREAMING, SessionState.FAILED},
    SessionState.STREAMING: {SessionState.STOPPING, SessionState.FAILED},
    SessionState.STOPPING: {SessionState.FINALIZING, SessionState.FAILED},
    SessionState.FINALIZING: {SessionState.CLOSED, SessionState.FAILED},
    SessionState.CLOSED: set(),
    SessionState.FAILED: set(),
}

TERMINAL_STATES = (SessionState.CLOSED, SessionState.FAILED)


class Transport(Protocol):
    async def send_json(self, message: dict) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


@dataclass(frozen=True)
class InitRequest:
    token: Optional[str]
    class_title: str
    date_iso: str


class LiveSession:
    def __init__(
        self,
        connection_id: str,
        transport: Transport,
        *,
        backend: TranscriptionBackend,
        identity: IdentityService,
        pipeline: FinalizationPipeline,
        config: RelayConfig,
        recordings_dir: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connection_id = connection_id
        self.session_id = uuid.uuid4().hex
        self._transport = transport
        self._backend = backend
        self._identity = identity
        self._pipeline = pipeline
        self._config = config
        self._recordings_dir = recordings_dir
        self._clock = clock

        self._state = SessionState.INITIALIZING
        self.user_id: Optional[str] = None
        self.class_title = ""
        self.date_iso = ""
        self.meter: Optional[UsageMeter] = None
        self.result: Optional[FinalizationResult] = None

        self._framer = PcmFramer(config.transcription.sample_rate)
        self._reconciler = TranscriptReconciler(config.utterance_policy)
        self._stream: Optional[BackendStream] = None
        self._consumer: Optional[asyncio.Task] = None
        self._sender: Optional[asyncio.Task] = None
        self._teardown: Optional[asyncio.Task] = None
        self._outbound: asyncio.Queue = asyncio.Queue(maxsize=max(1, config.session.outbound_queue_size))
        self._transport_alive = True
        self._finishing = False
        self._init_seen = False
        self._late_audio_warned = False

    # ── state ─────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def reconciler(self) -> TranscriptReconciler:
        return self._reconciler

    @property
    def framer(self) -> PcmFramer:
        return self._framer

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _FORWARD[self._state]:
            raise RuntimeError(f"Illegal session transition {self._state.value} -> {new_state.value}")
        _logger.info("Session %s: %s -> %s", self.session_id, self._state.value, new_state.value)
        self._state = new_state

    def snapshot(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "sessionId": self.session_id,
            "userId": self.user_id,
            "classTitle": self.class_title,
            "state": self._state.value,
            "audioBytes": self._framer.accepted_bytes,
            "segments": len(self._reconciler.segments()),
            "durationMinutes": round(self.meter.duration_minutes, 3) if self.meter else 0.0,
        }

    # ── outbound ──────────────────────────────────────────────────────

    async def _notify(self, message: dict) -> None:
        if not self._transport_alive:
            return
        await self._outbound.put(message)

    async def send_client(self, message_type: str, message: str) -> None:
        """Queue a warning or error for the client behind any pending messages."""
        await self._notify({"type": message_type, "message": message})

    async def _send_loop(self) -> None:
        while True:
            message = await self._outbound.get()
            if message is _STOP_SENDER:
                return
            if not self._transport_alive:
                continue
            try:
                await self._transport.send_json(message)
            except Exception as exc:
                _logger.info("Session %s: transport send failed, dropping outbound: %s", self.session_id, exc)
                self._transport_alive = False

    async def _close_transport(self, code: int = 1000) -> None:
        """Drain queued messages to the client, then close the socket."""
        if self._sender is not None and not self._sender.done():
            await self._outbound.put(_STOP_SENDER)
            try:
                await asyncio.wait_for(self._sender, timeout=self._config.session.release_grace_seconds)
            except asyncio.TimeoutError:
                _logger.warning("Session %s: outbound drain timed out", self.session_id)
                self._sender.cancel()
        if self._transport_alive:
            self._transport_alive = False
            try:
                await self._transport.close(code)
            except Exception as exc:
                _logger.debug("Session %s: close on dead transport: %s", self.session_id, exc)

    # ── init ──────────────────────────────────────────────────────────

    async def start(self, request: InitRequest) -> bool:
        """Handle ``init``. Returns True once the session is streaming."""
        if self._init_seen:
            raise ProtocolViolation("Session already initialized on this connection")
        self._init_seen = True
        self.class_title = request.class_title
        self.date_iso = request.date_iso
        self._sender = asyncio.create_task(self._send_loop(), name=f"session-{self.session_id}-sender")

        try:
            self.user_id = await asyncio.to_thread(self._identity.resolve_identity, request.token)
        except Exception as exc:
            if self._aborted_during_init():
                return False
            _logger.warning("Session %s: identity resolution failed: %s", self.session_id, exc)
            await self._fail_before_streaming(f"Auth failed: {exc}")
            return False

        try:
            has_plan = await asyncio.to_thread(self._identity.has_active_plan, self.user_id)
        except Exception as exc:
            _logger.warning("Session %s: plan check failed for %s: %s", self.session_id, self.user_id, exc)
            has_plan = False
        if self._aborted_during_init():
            return False
        if not has_plan:
            if self._config.enforce_entitlement:
                await self._fail_before_streaming("No active plan. Please subscribe to continue.")
                return False
            _logger.info("Session %s: no active plan for %s, continuing", self.session_id, self.user_id)

        self.meter = UsageMeter(self.user_id, self.session_id, clock=self._clock)
        dbg(_logger, self.session_id, "init", "session init", userId=self.user_id, hasPlan=has_plan)

        await self._notify(
            {"type": "transcript", "partial": True, "text": "Initializing transcription...", "speaker": "System"}
        )
        backend_config = BackendConfig(
            sample_rate=self._config.transcription.sample_rate,
            language_code=self._config.transcription.language_code,
            vocabulary=self._config.transcription.vocabulary,
            language_model=self._config.transcription.language_model,
            speaker_labels=self._config.transcription.speaker_labels,
        )
        try:
            stream = await self._backend.open(backend_config)
        except TranscriptionProviderError as exc:
            if self._aborted_during_init():
                return False
            _logger.warning("Session %s: backend open failed: %s", self.session_id, exc)
            await self._fail_before_streaming(f"Transcribe error: {exc}")
            return False
        if self._aborted_during_init():
            await stream.aclose(grace=self._config.session.release_grace_seconds)
            return False
        self._stream = stream

        if self._config.save_audio and self._recordings_dir:
            path = os.path.join(self._recordings_dir, f"{self.session_id}.wav")
            self._framer = PcmFramer(
                self._config.transcription.sample_rate,
                recorder=SessionRecorder(path, self._config.transcription.sample_rate),
            )

        self._transition(SessionState.STREAMING)
        self.meter.start()
        self._consumer = asyncio.create_task(self._consume_events(), name=f"session-{self.session_id}-events")
        await self._notify(
            {
                "type": "transcript",
                "partial": True,
                "text": "Transcription connected. Start speaking...",
                "speaker": "System",
            }
        )
        return True

    def _aborted_during_init(self) -> bool:
        if self._finishing or self.is_terminal:
            _logger.info("Session %s: aborted while initializing", self.session_id)
            return True
        return False

    async def _fail_before_streaming(self, message: str) -> None:
        self._transition(SessionState.FAILED)
        await self._notify({"type": "error", "message": message})
        await self._close_transport(1011)

    # ── audio ─────────────────────────────────────────────────────────

    async def feed_audio(self, payload: bytes) -> None:
        """Validate and forward one binary frame.

        Raises InvalidFrame for a malformed frame or one that arrives outside
        STREAMING; the caller decides whether to tell the client.
        """
        if not self._init_seen:
            raise ProtocolViolation("Audio received before init")
        frame = self._framer.accept(payload, streaming=self._state is SessionState.STREAMING)
        if frame is None:
            return
        if self.meter is not None:
            self.meter.audio_bytes = self._framer.accepted_bytes
        try:
            await self._stream.write(frame)
        except StreamTerminated as exc:
            # the consumer reports the backend failure
            _logger.debug("Session %s: frame dropped, stream ended: %s", self.session_id, exc)

    def should_warn_late_audio(self) -> bool:
        """True once per session for audio arriving after streaming ended."""
        if self._state is SessionState.STREAMING or self._late_audio_warned:
            return False
        self._late_audio_warned = True
        return True

    # ── backend events ────────────────────────────────────────────────

    async def _consume_events(self) -> None:
        stream = self._stream
        while True:
            try:
                event = await stream.next_event()
            except BackendRejected as exc:
                await self._notify({"type": "warning", "message": f"Transcription rejected: {exc}"})
                continue
            except TranscriptionProviderError as exc:
                _logger.warning("Session %s: backend failed: %s: %s", self.session_id, type(exc).__name__, exc)
                await self._notify({"type": "error", "message": f"Transcribe error: {exc}"})
                if self._state is SessionState.STREAMING and not self._finishing:
                    self._teardown = asyncio.create_task(
                        self._terminate_after_backend_failure(),
                        name=f"session-{self.session_id}-teardown",
                    )
                return
            if event is None:
                return
            for applied in self._reconciler.push(event):
                await self._notify(
                    {
                        "type": "transcript",
                        "partial": applied.is_partial,
                        "text": applied.text,
                        "speaker": applied.speaker_tag or DEFAULT_SPEAKER,
                    }
                )

    async def _terminate_after_backend_failure(self) -> None:
        if self._finishing or self.is_terminal:
            return
        self._finishing = True
        self._transition(SessionState.FAILED)
        self.meter.stop()
        await self._release_backend()
        await self._finalize()
        await self._close_transport()

    # ── stop ──────────────────────────────────────────────────────────

    async def stop(self) -> Optional[FinalizationResult]:
        """Handle ``stop``: flush the backend, finalize, send ``final``, close."""
        if not self._init_seen:
            raise ProtocolViolation("Stop received before init")
        if self._state is not SessionState.STREAMING or self._finishing:
            _logger.info("Session %s: stop ignored in state %s", self.session_id, self._state.value)
            return self.result
        self._finishing = True
        self._transition(SessionState.STOPPING)
        self.meter.stop()

        flush_timeout = self._config.session.stop_flush_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + flush_timeout
        try:
            await asyncio.wait_for(self._stream.end_audio(), timeout=flush_timeout)
        except asyncio.TimeoutError:
            pass
        done, _ = await asyncio.wait({self._consumer}, timeout=max(deadline - loop.time(), 0.0))
        if not done:
            _logger.warning(
                "Session %s: backend did not finish within %.1fs of stop", self.session_id, flush_timeout
            )

        self._transition(SessionState.FINALIZING)
        await self._release_backend()
        await self._finalize()
        self._transition(SessionState.CLOSED)
        await self._close_transport()
        return self.result

    # ── shared teardown ───────────────────────────────────────────────

    async def _release_backend(self) -> None:
        consumer = self._consumer
        if consumer is not None and not consumer.done() and consumer is not asyncio.current_task():
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        if self._stream is not None:
            await self._stream.aclose(grace=self._config.session.release_grace_seconds)
        self._framer.close()

    async def _finalize(self) -> FinalizationResult:
        for applied in self._reconciler.drain():
            _logger.debug("Session %s: applied held event seq=%s at assembly", self.session_id, applied.sequence)

        job = FinalizationJob(
            session_id=self.session_id,
            user_id=self.user_id,
            class_title=self.class_title,
            date_iso=self.date_iso,
            full_transcript=self._reconciler.full_transcript(),
            meter=self.meter,
            recording_path=self._framer.close(),
        )
        result = FinalizationResult(full_transcript=job.full_transcript, duration_minutes=self.meter.duration_minutes)
        self.result = result

        timeout = self._config.session.finalize_timeout_seconds
        try:
            await asyncio.wait_for(self._pipeline.run(job, result, self._notify), timeout=timeout)
        except asyncio.TimeoutError:
            result.failures.append(StepFailure("finalize", f"timed out after {timeout:.0f}s"))
            _logger.warning("Session %s: finalization timed out after %.1fs", self.session_id, timeout)
            dbg(
                _logger, self.session_id, "finalize", "timeout", level=logging.WARNING, completed=result.completed_steps
            )
        await self._notify(result.final_message())
        return result

    async def abort(self, reason: str) -> Optional[FinalizationResult]:
        """The transport is gone. Release the backend; finalize headless if any final text exists."""
        teardown = self._teardown
        if teardown is not None and teardown is not asyncio.current_task():
            try:
                await teardown
            except Exception:
                _logger.exception("Session %s: backend failure teardown crashed", self.session_id)
        self._transport_alive = False
        if self.is_terminal or self._finishing:
            return self.result
        self._finishing = True
        _logger.info("Session %s: aborting (%s) in state %s", self.session_id, reason, self._state.value)
        self._transition(SessionState.FAILED)
        if self.meter is not None:
            self.meter.stop()
        await self._release_backend()
        if self._sender is not None:
            await self._close_transport()

        if self.meter is None:
            return None
        self._reconciler.drain()
        if not self._reconciler.has_final_text():
            _logger.info("Session %s: no final text, skipping finalization", self.session_id)
            return None
        return await self._finalize()


class SessionFactory:
    """Builds sessions with the app's shared backend, collaborators and config."""

    def __init__(
        self,
        *,
        backend: TranscriptionBackend,
        identity: IdentityService,
        pipeline: FinalizationPipeline,
        config: RelayConfig,
        recordings_dir: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.identity = identity
        self.pipeline = pipeline
        self.config = config
        self.recordings_dir = recordings_dir
        self.clock = clock

    def create(self, connection_id: str, transport: Transport) -> LiveSession:
        return LiveSession(
            connection_id,
            transport,
            backend=self.backend,
            identity=self.identity,
            pipeline=self.pipeline,
            config=self.config,
            recordings_dir=self.recordings_dir,
            clock=self.clock,
        )
