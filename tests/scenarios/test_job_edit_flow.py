from __future__ import annotations

import asyncio

from agents.llm_runtime import LLMRuntime
from agents.orchestrator import OrchestratorAgent
from compliance.audit_logger import AuditLogger
from memory.session_memory import SessionMemoryStore
from memory.thread_cache import AssistantThreadCache
from models.schemas import InboundMessage, JobStatus
from tools.analytics_tools import AnalyticsTools
from tools.inspection_data import InspectionDataClient
from tools.inspection_tools import InspectionTools

PHONE = "6591234567"


def _agent(tmp_path) -> OrchestratorAgent:
    memory = SessionMemoryStore(path="")
    return OrchestratorAgent(
        session_memory=memory,
        inspection_tools=InspectionTools(data=InspectionDataClient(), session_memory=memory),
        llm=LLMRuntime(api_key=""),
        thread_cache=AssistantThreadCache(path=""),
        analytics_tools=AnalyticsTools(path=str(tmp_path / "analytics.jsonl")),
        audit_logger=AuditLogger(path=str(tmp_path / "audit.jsonl")),
        instant_ack_enabled=False,
        confirm_text=False,
    )


async def _say(agent: OrchestratorAgent, content: str) -> str:
    response = await agent.route_message(InboundMessage(session_id=PHONE, content=content))
    return response.response_text


def test_reschedule_and_readdress_before_starting(tmp_path):
    async def _run():
        agent = _agent(tmp_path)
        await _say(agent, "jobs")
        await _say(agent, "2")

        await _say(agent, "2")
        await _say(agent, "4")
        reply = await _say(agent, "4:15 pm")
        assert "⏰ Time: 04:15 PM" in reply

        await _say(agent, "2")
        assert (await _say(agent, "3")).startswith("Please enter the new property address")
        reply = await _say(agent, "12 Clementi Road, 129742")
        assert "🏠 Property: 12 Clementi Road" in reply
        state = await agent.session_memory.get(PHONE)
        assert state.postal_code == "129742"
        assert state.work_order_id == "wo-1002"

        reply = await _say(agent, "1")
        assert reply.startswith("Job started. Here are the locations available for inspection:\n\n[1] Bathroom")
        assert (await agent.session_memory.get(PHONE)).job_status is JobStatus.STARTED

        job = await agent.inspection_tools.data.get_work_order_by_id("wo-1002")
        assert job["status"] == "STARTED"
        assert job["postal_code"] == "129742"

    asyncio.run(_run())


def test_jobs_phrase_typed_as_customer_name_is_saved(tmp_path):
    async def _run():
        agent = _agent(tmp_path)
        for text in ("jobs", "1", "2", "2"):
            await _say(agent, text)
        reply = await _say(agent, "Jobs Tan")
        assert "👤 Customer: Jobs Tan" in reply

    asyncio.run(_run())


def test_status_edit_rejects_unknown_status(tmp_path):
    async def _run():
        agent = _agent(tmp_path)
        for text in ("jobs", "1", "2", "5"):
            await _say(agent, text)
        reply = await _say(agent, "PAUSED")
        assert reply == "I couldn't update the status. Please try again or pick another option."
        assert (await agent.session_memory.get(PHONE)).job_status is JobStatus.CONFIRMING

    asyncio.run(_run())
