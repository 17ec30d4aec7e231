from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List

import httpx

from settings import SETTINGS

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    pass


class NotificationTools:
    """Outbound WhatsApp delivery through the Wassenger messages API.

    Without an API key messages are kept in ``sent`` only, which is what the
    tests and local development rely on.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = SETTINGS.wassenger_api_key if api_key is None else api_key
        self.api_base = (api_base or SETTINGS.wassenger_api_base).rstrip("/")
        self._transport = transport
        self.sent: List[dict] = []

    def configured(self) -> bool:
        return bool(self.api_key)

    async def send_whatsapp(self, phone: str, message: str) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "channel": "whatsapp",
            "to": phone,
            "message": message,
            "ts": datetime.utcnow().isoformat(),
        }
        if not self.configured():
            payload["status"] = "OUTBOX"
            self.sent.append(payload)
            return payload
        try:
            async with httpx.AsyncClient(timeout=SETTINGS.llm_timeout_seconds, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.api_base}/v1/messages",
                    headers={"Token": self.api_key, "Content-Type": "application/json"},
                    json={"phone": phone, "message": message},
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("whatsapp_send_failed", extra={"to": phone, "error": repr(exc)})
            raise NotificationError(f"whatsapp_send_failed:{exc}") from exc
        payload["status"] = "SENT"
        self.sent.append(payload)
        return payload

    def outbox_for(self, phone: str) -> List[str]:
        return [str(p["message"]) for p in self.sent if p.get("to") == phone]
