from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List

from agents.base import BaseAgent
from agents.instructions import ASSISTANT_INSTRUCTIONS
from agents.llm_runtime import PENDING_STATUSES, AssistantRunError, AssistantRunTimeout, LLMRuntime
from compliance.audit_logger import AuditLogger
from memory.session_memory import SessionMemoryStore
from memory.thread_cache import AssistantThreadCache
from models.schemas import AgentResponse, InboundMessage, SessionState, ToolCallRecord
from settings import SETTINGS
from tools.registry import ToolRegistry
from tools.results import ToolResult

logger = logging.getLogger(__name__)

RUN_FAILED_TEXT = "Sorry, I encountered an issue processing your request. Please try again."
RUN_ERROR_TEXT = "Sorry, I encountered an error processing your request. Please try again."
RUN_TIMEOUT_TEXT = "Sorry, that took longer than expected. Please try again in a moment."
EMPTY_REPLY_TEXT = "I processed your information but couldn't generate a response. Please try again."
OFFLINE_HELP_TEXT = (
    "I can help you with your inspections today.\n\n"
    "Try:\n"
    "- \"What are my jobs today?\" to list your jobs\n"
    "- a number like [1] to pick an option from the last menu\n"
    "- \"go back\" to return to the previous list\n\n"
    "Next: ask for your jobs to get started."
)

# Tools that identify the inspector get the sender's phone when the model omits it.
PHONE_ARGUMENTS = {"getTodayJobs": "inspectorPhone", "collectInspectorInfo": "phone"}


def context_preamble(state: SessionState, phone: str | None) -> str:
    fields = {
        "inspectorPhone": phone,
        "inspectorId": state.inspector_id,
        "inspectorName": state.inspector_name,
        "workOrderId": state.work_order_id,
        "jobStatus": state.job_status.value,
        "currentLocation": state.current_location,
        "contractChecklistItemId": state.current_location_id,
        "subLocationId": state.current_sub_location_id,
        "currentTaskId": state.current_task_id,
        "taskFlowStage": state.task_flow_stage.value if state.task_flow_stage else None,
    }
    parts = [f"{k}={v}" for k, v in fields.items() if v]
    return f"[context] {'; '.join(parts)}" if parts else ""


class LLMFallbackOrchestrator(BaseAgent):
    def __init__(
        self,
        registry: ToolRegistry,
        session_memory: SessionMemoryStore | None = None,
        llm: LLMRuntime | None = None,
        thread_cache: AssistantThreadCache | None = None,
        audit_logger: AuditLogger | None = None,
        poll_interval_ms: int | None = None,
        max_poll_attempts: int | None = None,
        max_tool_rounds: int | None = None,
    ) -> None:
        super().__init__(name="llm_fallback", audit_logger=audit_logger or registry.audit_logger)
        self.registry = registry
        self.session_memory = session_memory or registry.tools.session_memory
        self.llm = llm or LLMRuntime()
        self.thread_cache = thread_cache or AssistantThreadCache()
        self.poll_interval_ms = SETTINGS.llm_poll_interval_ms if poll_interval_ms is None else poll_interval_ms
        self.max_poll_attempts = max_poll_attempts or SETTINGS.llm_max_poll_attempts
        self.max_tool_rounds = max_tool_rounds or SETTINGS.llm_max_tool_rounds

    async def process(self, message: InboundMessage) -> AgentResponse:
        started = time.perf_counter()
        phone = message.metadata.get("phone") or message.session_id
        tool_calls: List[ToolCallRecord] = []
        outcome = "ok"
        if not self.llm.available():
            text, outcome = OFFLINE_HELP_TEXT, "offline"
        else:
            try:
                text = await self.run_turn(message.session_id, message.content, phone, tool_calls)
            except AssistantRunTimeout:
                logger.warning("assistant_run_timeout", extra={"session_id": message.session_id})
                text, outcome = RUN_TIMEOUT_TEXT, "timeout"
            except AssistantRunError as exc:
                logger.warning("assistant_run_failed", extra={"session_id": message.session_id, "error": str(exc)})
                text, outcome = RUN_ERROR_TEXT, "error"
            except Exception:
                logger.exception("assistant_turn_crashed", extra={"session_id": message.session_id})
                text, outcome = RUN_ERROR_TEXT, "error"
        return self.respond(
            message,
            text,
            action="llm_fallback",
            reasoning="No deterministic handler matched the message.",
            started=started,
            tool_calls=tool_calls,
            outcome=outcome,
        )

    async def _assistant_id(self) -> str:
        return await self.thread_cache.get_or_create_assistant(
            lambda: self.llm.create_assistant(SETTINGS.assistant_name, ASSISTANT_INSTRUCTIONS, self.registry.openai_tools())
        )

    async def _thread_id(self, session_id: str) -> str:
        thread_id = await self.thread_cache.get_or_create_thread(session_id, self.llm.create_thread)
        state = await self.session_memory.get(session_id)
        if state.thread_id != thread_id:
            await self.session_memory.merge(session_id, {"thread_id": thread_id})
        return thread_id

    async def run_turn(self, session_id: str, text: str, phone: str | None, records: List[ToolCallRecord] | None = None) -> str:
        """Run one assistant turn, resolving tool calls until the run settles."""
        records = records if records is not None else []
        thread_id = await self._thread_id(session_id)
        state = await self.session_memory.get(session_id)
        preamble = context_preamble(state, phone)
        await self.llm.add_message(thread_id, f"{preamble}\n\n{text}" if preamble else text)
        assistant_id = await self._assistant_id()
        run = await self.llm.create_run(thread_id, assistant_id)
        run = await self._wait_for_run(thread_id, str(run["id"]))
        rounds = 0
        while run.get("status") == "requires_action" and rounds < self.max_tool_rounds:
            outputs = await self._resolve_tool_calls(session_id, phone, run, records)
            run = await self.llm.submit_tool_outputs(thread_id, str(run["id"]), outputs)
            run = await self._wait_for_run(thread_id, str(run["id"]))
            rounds += 1
        status = run.get("status")
        logger.info("assistant_run_finished", extra={"session_id": session_id, "status": status, "rounds": rounds})
        if status != "completed":
            return RUN_FAILED_TEXT
        return await self.llm.latest_assistant_text(thread_id) or EMPTY_REPLY_TEXT

    async def _wait_for_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        run = await self.llm.get_run(thread_id, run_id)
        attempts = 0
        while run.get("status") in PENDING_STATUSES:
            if attempts >= self.max_poll_attempts:
                raise AssistantRunTimeout(f"assistant_run_timeout:{run_id}")
            await asyncio.sleep(self.poll_interval_ms / 1000)
            run = await self.llm.get_run(thread_id, run_id)
            attempts += 1
        return run

    async def _resolve_tool_calls(
        self,
        session_id: str,
        phone: str | None,
        run: Dict[str, Any],
        records: List[ToolCallRecord],
    ) -> List[Dict[str, str]]:
        required = (run.get("required_action") or {}).get("submit_tool_outputs") or {}
        outputs: List[Dict[str, str]] = []
        # Calls run in order against the same session.
        for call in required.get("tool_calls") or []:
            function = call.get("function") or {}
            name = str(function.get("name") or "")
            try:
                args = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError:
                args = None
            if not isinstance(args, dict):
                output = ToolResult.fail("Invalid tool arguments").to_json()
            else:
                phone_arg = PHONE_ARGUMENTS.get(name)
                if phone_arg and phone and not args.get(phone_arg):
                    args[phone_arg] = phone
                output = await self.registry.execute(name, args, session_id, records)
            outputs.append({"tool_call_id": str(call.get("id")), "output": output})
        return outputs
