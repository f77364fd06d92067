"""In-memory stand-ins for the backend, the collaborators and the socket."""

from __future__ import annotations

import asyncio
import time
from typing import Optional

from app.services.collaborators import ANONYMOUS_IDENTITY
from app.services.finalizer import FinalizationPipeline
from app.services.live_session import LiveSession
from app.services.llm.base import LLMProviderError
from app.services.relay_config import parse_relay_config
from app.services.summarization import NoteSections, SummaryResult
from app.services.transcription import (
    BackendConfig,
    BackendStream,
    BackendUnavailable,
    StreamTerminated,
    TranscriptionBackend,
)
from app.services.usage import TokenUsage


class ScriptedStream(BackendStream):
    """Replays canned recognizer output.

    ``script`` maps a 0-based frame index to the items emitted after that
    frame arrives; ``on_end`` is emitted after end-of-audio. Items are
    ``("partial" | "final", text, speaker)``, ``("reject", message)`` or
    ``("fail", message)``.
    """

    def __init__(
        self,
        config: BackendConfig,
        script: Optional[dict] = None,
        on_end: tuple = (),
        *,
        audio_queue_frames: int = 64,
        hang_on_end: bool = False,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        super().__init__(config, audio_queue_frames=audio_queue_frames)
        self.script = script or {}
        self.on_end = on_end
        self.hang_on_end = hang_on_end
        self.gate = gate
        self.received: list[bytes] = []
        self.released = False

    def _play(self, items) -> None:
        for item in items:
            kind = item[0]
            if kind == "reject":
                self._reject(item[1])
            elif kind == "fail":
                raise StreamTerminated(item[1])
            else:
                speaker = item[2] if len(item) > 2 else None
                self._emit(kind == "partial", item[1], speaker)

    async def _run(self) -> None:
        while True:
            if self.gate is not None:
                await self.gate.wait()
            frame = await self._next_frame()
            if frame is None:
                break
            self.received.append(frame)
            self._play(self.script.get(len(self.received) - 1, ()))
        self._play(self.on_end)
        if self.hang_on_end:
            await asyncio.Event().wait()

    async def _release(self) -> None:
        self.released = True


class FakeBackend(TranscriptionBackend):
    name = "fake"

    def __init__(self, script: Optional[dict] = None, on_end: tuple = (), *, fail_open: bool = False, **stream_kwargs):
        self.script = script or {}
        self.on_end = on_end
        self.fail_open = fail_open
        self.stream_kwargs = stream_kwargs
        self.configs: list[BackendConfig] = []
        self.streams: list[ScriptedStream] = []

    async def open(self, config: BackendConfig) -> BackendStream:
        self.configs.append(config)
        if self.fail_open:
            raise BackendUnavailable("recognizer offline")
        stream = ScriptedStream(config, self.script, self.on_end, **self.stream_kwargs)
        stream.start()
        self.streams.append(stream)
        return stream


class FakeIdentity:
    def __init__(self, tokens: Optional[dict] = None, active: tuple = ()) -> None:
        self.tokens = tokens or {}
        self.active = set(active)

    def resolve_identity(self, token):
        return self.tokens.get(token, ANONYMOUS_IDENTITY)

    def has_active_plan(self, identity):
        return identity in self.active


class FakePersistence:
    def __init__(self, fail_save: bool = False) -> None:
        self.fail_save = fail_save
        self.sessions: list[dict] = []
        self.usage: list[tuple] = []
        self.debits: list[tuple] = []

    def save_session(self, record):
        if self.fail_save:
            raise OSError("disk full")
        self.sessions.append(record)

    def log_usage(self, identity, session_id, service, operation, cost, details):
        self.usage.append((identity, session_id, service, operation, cost, details))

    def debit_usage(self, identity, duration_minutes, session_id):
        self.debits.append((identity, duration_minutes, session_id))


class FakeExporter:
    def __init__(self, linked: tuple = (), fail: bool = False) -> None:
        self.linked = set(linked)
        self.fail = fail
        self.exports: list[tuple] = []

    def is_linked(self, identity):
        return identity in self.linked

    def export(self, title, metadata, transcript, notes):
        if self.fail:
            raise RuntimeError("drive quota exceeded")
        self.exports.append((title, metadata, transcript, notes))
        return f"https://docs.example/{metadata['sessionId']}"


class FakeSummarizer:
    def __init__(self, error: Optional[Exception] = None, delay: float = 0.0) -> None:
        self.error = error
        self.delay = delay
        self.calls: list[tuple] = []

    def summarize(self, transcript, label, identity=None, session_id=None):
        self.calls.append((transcript, label, identity, session_id))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SummaryResult(
            refined_transcript=transcript.upper(),
            notes=NoteSections(
                introduction=[f"Lecture: {label}"],
                key_concepts=["osmosis"],
                summary=["short summary"],
            ),
            token_usage=TokenUsage(model="gpt-4o-mini", input_tokens=1000, output_tokens=500),
        )


class FailingSummarizer(FakeSummarizer):
    def __init__(self, message: str = "provider down") -> None:
        super().__init__(error=LLMProviderError(message))


class FakeTransport:
    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.gone = False

    async def send_json(self, message):
        if self.gone:
            raise ConnectionError("client went away")
        self.messages.append(message)

    async def close(self, code=1000):
        self.closed = True
        self.close_code = code

    def types(self) -> list[str]:
        return [message["type"] for message in self.messages]

    def of_type(self, message_type: str) -> list[dict]:
        return [message for message in self.messages if message["type"] == message_type]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**sections):
    """RelayConfig with short timeouts; keyword arguments are config.json sections."""
    config = {
        "session": {
            "stop_flush_timeout_seconds": 2.0,
            "finalize_timeout_seconds": 5.0,
            "release_grace_seconds": 0.5,
        }
    }
    for name, values in sections.items():
        config.setdefault(name, {}).update(values)
    return parse_relay_config(config)


def make_session(
    tmp_path,
    *,
    backend: Optional[FakeBackend] = None,
    identity: Optional[FakeIdentity] = None,
    summarizer=None,
    exporter: Optional[FakeExporter] = None,
    persistence: Optional[FakePersistence] = None,
    config=None,
    clock: Optional[FakeClock] = None,
):
    """A LiveSession wired to fakes; returns (session, transport, parts)."""
    transport = FakeTransport()
    parts = {
        "backend": backend or FakeBackend(),
        "identity": identity or FakeIdentity({"tok": "user-1"}, active=("user-1",)),
        "summarizer": summarizer or FakeSummarizer(),
        "exporter": exporter or FakeExporter(),
        "persistence": persistence or FakePersistence(),
        "config": config or make_config(),
        "clock": clock or FakeClock(),
    }
    pipeline = FinalizationPipeline(
        data_dir=str(tmp_path),
        summarizer=parts["summarizer"],
        exporter=parts["exporter"],
        persistence=parts["persistence"],
        billing=parts["config"].billing,
        wall_clock=lambda: 1_700_000_000.0,
    )
    session = LiveSession(
        "conn-1",
        transport,
        backend=parts["backend"],
        identity=parts["identity"],
        pipeline=pipeline,
        config=parts["config"],
        recordings_dir=str(tmp_path / "recordings"),
        clock=parts["clock"],
    )
    return session, transport, parts


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
