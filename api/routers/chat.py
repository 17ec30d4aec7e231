from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, WebSocket
from pydantic import BaseModel, Field

from channels.web_chat import WebChatConnectionManager, websocket_chat_handler
from models.schemas import ChannelType, InboundMessage, MediaAttachment


router = APIRouter(prefix="/chat", tags=["chat"])


class ChatMessageRequest(BaseModel):
    session_id: str
    content: str = ""
    channel: ChannelType = ChannelType.WEB
    media: Optional[MediaAttachment] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _orchestrator(request: Request):
    return request.app.state.orchestrator


@router.post("/message")
async def post_chat_message(payload: ChatMessageRequest, request: Request):
    if not payload.content.strip() and payload.media is None:
        raise HTTPException(status_code=422, detail="content_or_media_required")
    orchestrator = _orchestrator(request)
    response = await orchestrator.route_message(
        InboundMessage(
            session_id=payload.session_id,
            channel=payload.channel,
            content=payload.content,
            media=payload.media,
            metadata=payload.metadata,
        )
    )
    return response.model_dump(mode="json")


@router.get("/session/{session_id}")
async def get_chat_session(session_id: str, request: Request):
    orchestrator = _orchestrator(request)
    if not await orchestrator.session_memory.exists(session_id):
        raise HTTPException(status_code=404, detail="session_not_found")
    state = await orchestrator.session_memory.get(session_id)
    return state.model_dump(mode="json")


@router.delete("/session/{session_id}")
async def reset_chat_session(session_id: str, request: Request):
    await _orchestrator(request).reset_session(session_id)
    return {"ok": True, "session_id": session_id}


@router.websocket("/ws/{session_id}")
async def chat_ws(websocket: WebSocket, session_id: str):
    app = websocket.app
    manager: WebChatConnectionManager = app.state.web_chat_manager
    orchestrator = app.state.orchestrator
    await websocket_chat_handler(websocket, orchestrator=orchestrator, manager=manager, session_id=session_id)
