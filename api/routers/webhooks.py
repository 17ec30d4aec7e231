from __future__ import annotations

import hmac

from fastapi import APIRouter, HTTPException, Request

from settings import SETTINGS


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _check_secret(request: Request) -> None:
    expected = getattr(request.app.state, "webhook_secret", SETTINGS.whatsapp_webhook_secret)
    provided = request.query_params.get("secret") or ""
    if not expected or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="unauthorized")


@router.get("/whatsapp")
async def verify_whatsapp_webhook(request: Request):
    _check_secret(request)
    return {"ok": True}


@router.post("/whatsapp")
async def whatsapp_webhook(request: Request):
    _check_secret(request)
    try:
        payload = await request.json()
    except ValueError:
        return {"success": True, "ignored": True}
    return await request.app.state.whatsapp_handler.handle_webhook(payload)
