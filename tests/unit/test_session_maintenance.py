from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from memory.processed_messages import ProcessedMessageRegistry
from memory.session_memory import SessionMemoryStore
from memory.thread_cache import AssistantThreadCache
from tasks.session_maintenance import SessionMaintenance, celery_app
from tools.analytics_tools import AnalyticsTools


def test_run_once_purges_sessions_and_their_threads(tmp_path):
    async def _run():
        memory = SessionMemoryStore(ttl_seconds=60, path="", key_prefix="")
        threads = AssistantThreadCache(path="")
        analytics = AnalyticsTools(path=str(tmp_path / "analytics.jsonl"))

        async def new_thread():
            return "thread-old"

        await memory.merge("old", {"inspector_id": "insp-1"})
        await memory.merge("fresh", {"inspector_id": "insp-2"})
        await threads.get_or_create_thread("old", new_thread)
        memory._touch["old"] = datetime.utcnow() - timedelta(minutes=5)

        processed = ProcessedMessageRegistry(ttl_seconds=1)
        processed._seen["stale"] = 0.0
        processed.mark_if_new("recent")

        summary = await SessionMaintenance(memory, threads, processed, analytics).run_once()
        assert summary == {"expired_sessions": 1, "processed_ids_dropped": 1}
        assert threads.get_thread("old") is None
        assert await memory.exists("fresh")
        assert len(processed) == 1

        metrics = await analytics.routing_metrics()
        assert metrics["events_by_type"] == {"session_maintenance_run": 1}

    asyncio.run(_run())


def test_beat_schedule_registers_purge_task():
    entry = celery_app.conf.beat_schedule["purge-expired-sessions-every-10m"]
    assert entry["task"] == "tasks.session_maintenance.purge_expired_sessions"
    assert entry["schedule"] == 600.0
