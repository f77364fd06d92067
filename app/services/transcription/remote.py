"""
Remote streaming recognizer over a websocket.

Wire shape (any compliant service can sit behind it):
- client -> service: binary frames of 16-bit LE mono PCM, then a text frame
  ``{"type": "end_of_audio"}``
- service -> client: text frames
  ``{"results": [{"is_partial": bool, "text": str, "speaker": str|null}]}``
  or ``{"type": "error", "code": "rejected"|..., "message": str}``;
  the service closes the socket once it has flushed after end_of_audio.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from app.services.transcription.base import (
    BackendConfig,
    BackendUnavailable,
    StreamTerminated,
    TranscriptionBackend,
)
from app.services.transcription.stream import BackendStream


@dataclass(frozen=True)
class RemoteConfig:
    url: str
    api_key: Optional[str] = None
    connect_timeout: float = 10.0
    audio_queue_frames: int = 64


class RemoteStreamingBackend(TranscriptionBackend):
    name = "remote"

    def __init__(self, config: RemoteConfig) -> None:
        self._config = config
        self._logger = logging.getLogger("relay.transcription.remote")

    def _query_params(self, config: BackendConfig) -> dict:
        params = {
            "sample_rate": str(config.sample_rate),
            "language_code": config.language_code,
            "encoding": "pcm_s16le",
            "speaker_labels": "true" if config.speaker_labels else "false",
        }
        # optional parameters only when provided
        if config.vocabulary:
            params["vocabulary"] = config.vocabulary
        if config.language_model:
            params["language_model"] = config.language_model
        return params

    async def open(self, config: BackendConfig) -> BackendStream:
        if not self._config.url:
            raise BackendUnavailable("Remote transcription URL is not configured")

        headers = {}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"

        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(
                self._config.url,
                params=self._query_params(config),
                headers=headers,
                timeout=aiohttp.ClientWSTimeout(ws_close=self._config.connect_timeout),
                heartbeat=20.0,
            )
        except aiohttp.WSServerHandshakeError as exc:
            await session.close()
            raise BackendUnavailable(f"Recognizer refused the stream: HTTP {exc.status}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            await session.close()
            raise BackendUnavailable(f"Failed to reach recognizer: {exc}") from exc

        self._logger.info("Remote recognizer connected: url=%s", self._config.url)
        stream = RemoteStream(session, ws, config, self._config.audio_queue_frames)
        stream.start()
        return stream


class RemoteStream(BackendStream):
    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        config: BackendConfig,
        audio_queue_frames: int,
    ) -> None:
        super().__init__(
            config,
            audio_queue_frames=audio_queue_frames,
            logger_name="relay.transcription.remote.stream",
        )
        self._session = session
        self._ws = ws

    async def _send_audio(self) -> None:
        while True:
            frame = await self._next_frame()
            if frame is None:
                await self._ws.send_str(json.dumps({"type": "end_of_audio"}))
                return
            await self._ws.send_bytes(frame)

    def _handle_payload(self, payload: dict) -> None:
        if payload.get("type") == "error":
            code = str(payload.get("code", "")).lower()
            message = str(payload.get("message", "")) or code or "unknown error"
            if code == "rejected":
                self._reject(message)
                return
            raise StreamTerminated(f"Recognizer error: {message}")

        for result in payload.get("results", []) or []:
            if not isinstance(result, dict):
                continue
            text = result.get("text") or ""
            if not text:
                continue
            self._emit(bool(result.get("is_partial", False)), text, result.get("speaker"))

    async def _receive_results(self) -> None:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    payload = json.loads(msg.data)
                except json.JSONDecodeError:
                    self._logger.warning("Non-JSON recognizer message: %s", str(msg.data)[:200])
                    continue
                if isinstance(payload, dict):
                    self._handle_payload(payload)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise StreamTerminated(f"Recognizer socket error: {self._ws.exception()}")

        # socket closed: normal only after we sent end_of_audio
        if not self._audio_ended:
            raise StreamTerminated(f"Recognizer closed the stream (code={self._ws.close_code})")

    async def _run(self) -> None:
        sender = asyncio.create_task(self._send_audio(), name="remote-audio-sender")
        try:
            await self._receive_results()
        finally:
            if not sender.done():
                sender.cancel()
                try:
                    await sender
                except (asyncio.CancelledError, aiohttp.ClientError, ConnectionError):
                    pass
        if sender.done() and not sender.cancelled() and sender.exception() is not None:
            raise StreamTerminated(f"Audio upload failed: {sender.exception()}")

    async def _release(self) -> None:
        if not self._ws.closed:
            await self._ws.close()
        await self._session.close()
