from __future__ import annotations

import asyncio
import logging

from celery import Celery

from memory.processed_messages import ProcessedMessageRegistry
from memory.session_memory import SessionMemoryStore
from memory.thread_cache import AssistantThreadCache
from settings import SETTINGS
from tools.analytics_tools import AnalyticsTools

logger = logging.getLogger(__name__)


celery_app = Celery("inspection_assistant")
if SETTINGS.redis_url:
    celery_app.conf.broker_url = SETTINGS.redis_url
    celery_app.conf.result_backend = SETTINGS.redis_url
celery_app.conf.beat_schedule = {
    "purge-expired-sessions-every-10m": {
        "task": "tasks.session_maintenance.purge_expired_sessions",
        "schedule": 600.0,
    }
}


class SessionMaintenance:
    """Drops expired chat sessions along with their assistant threads."""

    def __init__(
        self,
        session_memory: SessionMemoryStore | None = None,
        thread_cache: AssistantThreadCache | None = None,
        processed: ProcessedMessageRegistry | None = None,
        analytics_tools: AnalyticsTools | None = None,
    ) -> None:
        self.session_memory = session_memory or SessionMemoryStore()
        self.thread_cache = thread_cache or AssistantThreadCache()
        self.processed = processed or ProcessedMessageRegistry()
        self.analytics_tools = analytics_tools or AnalyticsTools()

    async def run_once(self) -> dict:
        expired = self.session_memory.purge_expired()
        for session_id in expired:
            self.thread_cache.forget_thread(session_id)
        dropped_ids = self.processed.purge_expired()
        summary = {"expired_sessions": len(expired), "processed_ids_dropped": dropped_ids}
        logger.info("session_maintenance_run", extra=summary)
        await self.analytics_tools.log_event("session_maintenance_run", summary)
        return summary


@celery_app.task(name="tasks.session_maintenance.purge_expired_sessions")
def purge_expired_sessions() -> dict:
    return asyncio.run(SessionMaintenance().run_once())
