import json
import logging
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import AliasChoices, BaseModel, Field, ValidationError
from starlette.websockets import WebSocketState

from app.services.errors import InvalidFrame, ProtocolViolation
from app.services.live_session import InitRequest, LiveSession, SessionFactory, SessionState
from app.services.registry import ConnectionRegistry


class WebSocketTransport:
    """Adapts a Starlette websocket to the session's send/close interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send_json(self, message: dict) -> None:
        await self._websocket.send_text(json.dumps(message, ensure_ascii=False))

    async def close(self, code: int = 1000) -> None:
        if (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        ):
            await self._websocket.close(code)


def create_live_router(factory: SessionFactory, registry: ConnectionRegistry) -> APIRouter:
    router = APIRouter()
    logger = logging.getLogger("relay.api.live")

    class InitMessage(BaseModel):
        token: Optional[str] = Field(default=None, validation_alias=AliasChoices("token", "identityToken"))
        class_title: str = Field(
            default="Untitled Class", validation_alias=AliasChoices("classTitle", "sessionLabel")
        )
        date_iso: str = Field(
            default_factory=lambda: date.today().isoformat(),
            validation_alias=AliasChoices("dateISO", "date"),
        )

    @router.get("/api/live/sessions")
    def live_sessions() -> dict:
        return {"active": registry.active_count(), "sessions": registry.snapshot()}

    @router.websocket("/ws/audio")
    async def audio_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        transport = WebSocketTransport(websocket)
        session: Optional[LiveSession] = None
        logger.info("WebSocket connected: %s", connection_id)

        async def reject(message: str) -> None:
            # protocol violations before a session exists end the connection
            await transport.send_json({"type": "error", "message": message})
            await transport.close(1008)

        async def handle_text(text: str) -> bool:
            nonlocal session
            try:
                data = json.loads(text)
                if not isinstance(data, dict):
                    raise ValueError("control message must be an object")
            except ValueError as exc:
                logger.warning("Invalid control message on %s: %s", connection_id, exc)
                if session is not None:
                    await session.send_client("error", "Invalid message format")
                else:
                    await transport.send_json({"type": "error", "message": "Invalid message format"})
                return True

            kind = data.get("type")
            if kind == "init":
                try:
                    init = InitMessage.model_validate(data)
                except ValidationError as exc:
                    logger.warning("Invalid init on %s: %s", connection_id, exc)
                    await transport.send_json({"type": "error", "message": "Invalid message format"})
                    return True
                candidate = factory.create(connection_id, transport)
                registry.register(connection_id, candidate)
                session = candidate
                logger.info(
                    "Init on %s: session=%s classTitle=%r", connection_id, session.session_id, init.class_title
                )
                started = await session.start(InitRequest(init.token, init.class_title, init.date_iso))
                return started

            if kind == "stop":
                if session is None:
                    raise ProtocolViolation("Stop received before init")
                result = await session.stop()
                if result is not None:
                    logger.info(
                        "Session %s finished: transcriptPath=%r exportUrl=%r failures=%d",
                        session.session_id,
                        result.transcript_path,
                        result.export_url,
                        len(result.failures),
                    )
                return not session.is_terminal

            logger.info("Ignoring control message type=%r on %s", kind, connection_id)
            return True

        async def handle_audio(payload: bytes) -> None:
            if session is None:
                raise ProtocolViolation("Audio received before init")
            try:
                await session.feed_audio(payload)
            except InvalidFrame as exc:
                logger.debug("Dropped frame on %s: %s", connection_id, exc)
                if session.state is SessionState.STREAMING:
                    await session.send_client("warning", str(exc))
                elif session.should_warn_late_audio():
                    await session.send_client("warning", "Audio received after streaming ended; dropped.")

        try:
            while True:
                try:
                    message = await websocket.receive()
                except RuntimeError as exc:
                    # receive() after the server side already closed
                    logger.debug("WebSocket receive ended on %s: %s", connection_id, exc)
                    break
                if message["type"] == "websocket.disconnect":
                    break
                try:
                    if message.get("bytes") is not None:
                        await handle_audio(message["bytes"])
                    elif message.get("text") is not None:
                        if not await handle_text(message["text"]):
                            break
                except ProtocolViolation as exc:
                    logger.warning("Protocol violation on %s: %s", connection_id, exc)
                    if session is None or session.is_terminal:
                        await reject(str(exc))
                        break
                    await session.send_client("error", str(exc))
        except WebSocketDisconnect:
            logger.info("WebSocket disconnected: %s", connection_id)
        finally:
            if session is not None:
                await session.abort("transport closed")
                logger.info("Session %s ended in state %s", session.session_id, session.state.value)
                registry.release(connection_id, session)
            logger.info("WebSocket closed: %s", connection_id)

    return router
