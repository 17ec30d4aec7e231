from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from agents.orchestrator import OrchestratorAgent
from memory.processed_messages import ProcessedMessageRegistry
from models.schemas import ChannelType, InboundMessage, MediaAttachment
from tools.notification_tools import NotificationError, NotificationTools

logger = logging.getLogger(__name__)

INBOUND_EVENT = "message:in:new"
MEDIA_TYPES = {"image", "video", "document", "audio", "sticker"}
ERROR_REPLY = "Sorry, I encountered an error processing your request. Please try again."


def normalize_whatsapp_phone(raw: str | None) -> str:
    phone = re.sub(r"[\s+\-]", "", str(raw or ""))
    phone = phone.replace("@c.us", "")
    return phone.lstrip("0")


def _first_text(*values: Any) -> str:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _dig(data: Dict[str, Any], *path: str) -> Any:
    node: Any = data
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def extract_media(data: Dict[str, Any]) -> Optional[MediaAttachment]:
    """Pull the media reference out of a Wassenger message payload, if any."""
    media = data.get("media") if isinstance(data.get("media"), dict) else {}
    kind = str(data.get("type") or "").lower()
    has_media = (
        kind in MEDIA_TYPES
        or bool(data.get("hasMedia"))
        or bool(media)
        or any(_dig(data, "message", k) for k in ("imageMessage", "videoMessage", "documentMessage"))
    )
    if not has_media:
        return None
    url = _first_text(
        data.get("url"),
        data.get("fileUrl"),
        media.get("url"),
        _dig(data, "message", "imageMessage", "url"),
        _dig(data, "message", "videoMessage", "url"),
    )
    download_path = _first_text(
        _dig(media, "file", "download"),
        _dig(media, "links", "download"),
        _dig(data, "links", "download"),
    )
    mime = _first_text(media.get("mime"), media.get("mimetype"), data.get("mimetype"), data.get("mimeType"))
    if not mime:
        if kind == "video" or _dig(data, "message", "videoMessage"):
            mime = "video/mp4"
        else:
            mime = "image/jpeg"
    caption = _first_text(
        data.get("caption"),
        media.get("caption"),
        _dig(data, "message", "caption"),
        _dig(data, "message", "imageMessage", "caption"),
        _dig(data, "message", "imageMessage", "text"),
        media.get("text"),
    )
    return MediaAttachment(
        url=url or None,
        download_path=download_path or None,
        mime_type=mime,
        caption=caption,
        media_id=str(media.get("id") or "") or None,
    )


def parse_webhook(payload: Dict[str, Any]) -> Optional[InboundMessage]:
    """Turn a Wassenger webhook body into an InboundMessage, or None to ignore it."""
    if not isinstance(payload, dict) or payload.get("event") != INBOUND_EVENT:
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    if data.get("fromMe") or data.get("self") == 1 or data.get("flow") == "outbound":
        return None
    phone = normalize_whatsapp_phone(data.get("fromNumber") or data.get("from"))
    if not phone:
        return None
    media = extract_media(data)
    text = _first_text(data.get("body"), _dig(data, "message", "text", "body"))
    if media is not None and text == media.caption:
        text = ""
    if media is None and not text:
        return None
    chat = data.get("chat") if isinstance(data.get("chat"), dict) else {}
    contact = chat.get("contact") if isinstance(chat.get("contact"), dict) else {}
    return InboundMessage(
        session_id=phone,
        channel=ChannelType.WHATSAPP,
        content=text,
        media=media,
        message_id=str(data.get("id") or "") or None,
        sender_name=_first_text(contact.get("name"), data.get("notifyName")) or None,
        metadata={"phone": phone, "message_type": data.get("type")},
    )


class WhatsAppHandler:
    def __init__(
        self,
        orchestrator: OrchestratorAgent,
        notifications: NotificationTools | None = None,
        processed: ProcessedMessageRegistry | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.notifications = notifications or NotificationTools()
        self.processed = processed or ProcessedMessageRegistry()

    async def _send(self, phone: str, text: str) -> None:
        await self.notifications.send_whatsapp(phone, text)

    async def handle_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        message = parse_webhook(payload)
        if message is None:
            return {"success": True, "ignored": True}
        if message.message_id and not self.processed.mark_if_new(message.message_id):
            logger.info("whatsapp_duplicate_message", extra={"message_id": message.message_id})
            return {"success": True, "duplicate": True}
        phone = message.session_id

        async def ack(text: str) -> None:
            await self._send(phone, text)

        try:
            response = await self.orchestrator.route_message(message, ack_send=ack)
            reply = response.response_text
            agent = response.agent
        except Exception:
            logger.exception("whatsapp_processing_failed", extra={"session_id": phone})
            reply, agent = ERROR_REPLY, "error"
        try:
            await self._send(phone, reply)
        except NotificationError as exc:
            logger.warning("whatsapp_reply_not_delivered", extra={"session_id": phone, "error": str(exc)})
            return {"success": True, "delivered": False, "agent": agent}
        return {"success": True, "delivered": True, "agent": agent}
