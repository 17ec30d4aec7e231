from __future__ import annotations

import logging
import os

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from agents.orchestrator import OrchestratorAgent
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rate_limiting import RateLimitMiddleware
from api.routers import analytics, chat, jobs, webhooks
from channels.web_chat import WebChatConnectionManager
from channels.whatsapp_handler import WhatsAppHandler
from memory.processed_messages import ProcessedMessageRegistry
from settings import SETTINGS
from tools.notification_tools import NotificationTools


def create_app(
    orchestrator: OrchestratorAgent | None = None,
    notifications: NotificationTools | None = None,
    webhook_secret: str | None = None,
) -> FastAPI:
    logging.basicConfig(level=logging.DEBUG if SETTINGS.debug else logging.INFO)
    app = FastAPI(title="Inspection Assistant", version="0.1.0")
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RateLimitMiddleware)
    app.state.orchestrator = orchestrator or OrchestratorAgent()
    app.state.notifications = notifications or NotificationTools()
    app.state.webhook_secret = SETTINGS.whatsapp_webhook_secret if webhook_secret is None else webhook_secret
    app.state.processed_messages = ProcessedMessageRegistry()
    app.state.whatsapp_handler = WhatsAppHandler(
        app.state.orchestrator,
        notifications=app.state.notifications,
        processed=app.state.processed_messages,
    )
    app.state.web_chat_manager = WebChatConnectionManager()

    api_prefix = "/api/v1"
    app.include_router(chat.router, prefix=api_prefix)
    app.include_router(webhooks.router, prefix=api_prefix)
    app.include_router(jobs.router, prefix=api_prefix)
    app.include_router(analytics.router, prefix=api_prefix)

    if os.path.isdir(SETTINGS.media_root):
        app.mount("/media", StaticFiles(directory=SETTINGS.media_root), name="media")

    @app.get("/health")
    async def health():
        orch: OrchestratorAgent = app.state.orchestrator
        return {
            "ok": True,
            "service": "inspection-assistant",
            "llm_model": orch.llm.model,
            "llm_runtime_available": orch.llm.available(),
            "whatsapp_delivery_configured": app.state.notifications.configured(),
            "fast_task_flow": orch.fast_path.fast_task_flow,
        }

    return app


app = create_app()
