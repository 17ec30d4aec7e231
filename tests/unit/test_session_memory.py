from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from memory.session_memory import SessionMemoryStore
from models.schemas import (
    JOB_CONTEXT_FIELDS,
    JobStatus,
    LastMenu,
    SubLocationOption,
    TaskFlowStage,
    cleared,
)


def test_merge_is_shallow_and_none_clears_fields(tmp_path):
    async def _run():
        store = SessionMemoryStore(path=str(tmp_path / "sessions.json"))
        await store.merge("s1", {"work_order_id": "wo-1", "customer_name": "Alice", "job_status": JobStatus.CONFIRMING})
        state = await store.merge("s1", {"customer_name": None, "last_menu": LastMenu.CONFIRM})
        assert state.work_order_id == "wo-1"
        assert state.customer_name is None
        assert state.job_status is JobStatus.CONFIRMING
        assert state.last_menu is LastMenu.CONFIRM
        assert state.created_at is not None

    asyncio.run(_run())


def test_unknown_fields_are_ignored():
    async def _run():
        store = SessionMemoryStore(path="")
        state = await store.merge("s1", {"not_a_field": 1, "inspector_name": "Ken"})
        assert state.inspector_name == "Ken"
        assert not hasattr(state, "not_a_field")

    asyncio.run(_run())


def test_get_returns_copy_and_default_for_missing_session():
    async def _run():
        store = SessionMemoryStore(path="")
        fresh = await store.get("nobody")
        assert fresh.job_status is JobStatus.NONE
        assert not await store.exists("nobody")

        await store.merge("s1", {"work_order_id": "wo-1"})
        copy = await store.get("s1")
        copy.work_order_id = "changed"
        assert (await store.get("s1")).work_order_id == "wo-1"

    asyncio.run(_run())


def test_cleared_groups_reset_job_context():
    async def _run():
        store = SessionMemoryStore(path="")
        await store.merge(
            "s1",
            {
                "work_order_id": "wo-1",
                "postal_code": "521123",
                "location_sub_locations": {"item-1": [SubLocationOption(id="loc-1", name="Wardrobe")]},
                "inspector_id": "insp-1",
            },
        )
        state = await store.merge("s1", cleared(JOB_CONTEXT_FIELDS))
        assert state.work_order_id is None
        assert state.postal_code is None
        assert state.location_sub_locations == {}
        assert state.inspector_id == "insp-1"

    asyncio.run(_run())


def test_state_survives_reload_from_disk(tmp_path):
    async def _run():
        path = str(tmp_path / "sessions.json")
        store = SessionMemoryStore(path=path)
        await store.merge("s1", {"task_flow_stage": TaskFlowStage.MEDIA, "current_task_id": "t-1"})
        reloaded = SessionMemoryStore(path=path)
        state = await reloaded.get("s1")
        assert state.task_flow_stage is TaskFlowStage.MEDIA
        assert state.in_task_flow()

    asyncio.run(_run())


def test_expired_sessions_are_dropped_and_reported():
    async def _run():
        store = SessionMemoryStore(ttl_seconds=60, path="", key_prefix="test:")
        await store.merge("old", {"inspector_id": "insp-1"})
        await store.merge("new", {"inspector_id": "insp-2"})
        store._touch["test:old"] = datetime.utcnow() - timedelta(seconds=120)
        assert store.purge_expired() == ["old"]
        assert not await store.exists("old")
        assert await store.exists("new")

    asyncio.run(_run())


def test_delete_resets_session():
    async def _run():
        store = SessionMemoryStore(path="")
        await store.merge("s1", {"work_order_id": "wo-1"})
        await store.delete("s1")
        assert (await store.get("s1")).work_order_id is None

    asyncio.run(_run())
