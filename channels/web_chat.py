from __future__ import annotations

import logging
from typing import Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from agents.orchestrator import OrchestratorAgent
from models.schemas import ChannelType, InboundMessage, MediaAttachment

logger = logging.getLogger(__name__)


class WebChatConnectionManager:
    """Open sockets per session; an inspector may have the chat open in several tabs."""

    def __init__(self) -> None:
        self._sockets: Dict[str, Set[WebSocket]] = {}

    async def connect(self, session_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._sockets.setdefault(session_id, set()).add(websocket)

    def disconnect(self, session_id: str, websocket: WebSocket) -> None:
        sockets = self._sockets.get(session_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._sockets[session_id]

    def connected(self, session_id: str) -> int:
        return len(self._sockets.get(session_id, ()))

    async def broadcast(self, session_id: str, frame: dict) -> None:
        for ws in list(self._sockets.get(session_id, ())):
            await ws.send_json(frame)


def _inbound_from_frame(session_id: str, frame: dict) -> Optional[InboundMessage]:
    content = str(frame.get("content") or "").strip()
    media = None
    if frame.get("media"):
        try:
            media = MediaAttachment.model_validate(frame["media"])
        except ValidationError:
            return None
    if not content and media is None:
        return None
    return InboundMessage(
        session_id=session_id,
        channel=ChannelType.WEB,
        content=content,
        media=media,
        metadata=dict(frame.get("metadata") or {}),
    )


async def websocket_chat_handler(
    websocket: WebSocket,
    orchestrator: OrchestratorAgent,
    manager: WebChatConnectionManager,
    session_id: str,
) -> None:
    """Serve one browser socket.

    Client frames: ``{"content": ..., "media": {...}}`` for a chat turn,
    ``{"type": "reset"}`` to start over and ``{"type": "ping"}``. Replies,
    acknowledgements and typing indicators go to every socket of the session.
    """
    await manager.connect(session_id, websocket)

    async def ack(text: str) -> None:
        await manager.broadcast(session_id, {"type": "ack", "text": text})

    try:
        await websocket.send_json({"type": "connected", "session_id": session_id})
        while True:
            frame = await websocket.receive_json()
            kind = str(frame.get("type") or "message").lower()
            if kind == "ping":
                await websocket.send_json({"type": "pong"})
                continue
            if kind == "reset":
                await orchestrator.reset_session(session_id)
                await manager.broadcast(session_id, {"type": "reset", "session_id": session_id})
                continue

            inbound = _inbound_from_frame(session_id, frame)
            if inbound is None:
                await websocket.send_json({"type": "error", "message": "content or media is required"})
                continue
            await manager.broadcast(session_id, {"type": "typing", "by": "assistant"})
            response = await orchestrator.route_message(inbound, ack_send=ack)
            await manager.broadcast(session_id, {"type": "message", "message": response.model_dump(mode="json")})
    except WebSocketDisconnect:
        logger.info("web_chat_disconnected", extra={"session_id": session_id})
    finally:
        manager.disconnect(session_id, websocket)
