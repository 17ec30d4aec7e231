from __future__ import annotations

import logging
import time
from typing import List

from agents.base import BaseAgent
from agents.fast_path import FastPathInterpreter
from agents.llm_orchestrator import LLMFallbackOrchestrator
from agents.llm_runtime import LLMRuntime
from channels.instant_ack import InstantAckController, SendFn
from compliance.audit_logger import AuditLogger
from memory.session_memory import SessionMemoryStore
from memory.thread_cache import AssistantThreadCache
from models.schemas import (
    AgentResponse,
    InboundMessage,
    MediaAttachment,
    PendingMediaUpload,
    SessionState,
    TaskFlowStage,
    ToolCallRecord,
)
from settings import SETTINGS
from tools import menus
from tools.analytics_tools import AnalyticsTools
from tools.inspection_data import InspectionDataError
from tools.inspection_tools import InspectionTools
from tools.media_tools import MediaDownloadError, MediaTools, StoredMedia
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

RESET_PHRASES = {
    "reset",
    "restart",
    "start over",
    "clear conversation",
    "reset conversation",
    "forget that",
}
RESET_TEXT = "I've cleared our conversation. You can start again any time.\n\nNext: ask for your jobs to get started."
UPLOAD_FAILED_TEXT = "Failed to upload media. Please try again."
NO_JOB_MEDIA_TEXT = (
    "Please select a job first before uploading media. "
    "Try saying \"What are my jobs today?\" to get started."
)
PHOTO_REMARK_TEXT = (
    "Please add a quick remark describing this photo so I can log it properly. "
    "I'll save it once I have your note."
)


class OrchestratorAgent(BaseAgent):
    """Routes one inbound message: reset, media, fast path, then the LLM."""

    def __init__(
        self,
        session_memory: SessionMemoryStore | None = None,
        inspection_tools: InspectionTools | None = None,
        registry: ToolRegistry | None = None,
        llm: LLMRuntime | None = None,
        thread_cache: AssistantThreadCache | None = None,
        media_tools: MediaTools | None = None,
        analytics_tools: AnalyticsTools | None = None,
        audit_logger: AuditLogger | None = None,
        fast_task_flow: bool | None = None,
        confirm_text: bool | None = None,
        require_photo_remark: bool | None = None,
        instant_ack_enabled: bool | None = None,
        instant_delay_ms: int | None = None,
        instant_lead_ms: int | None = None,
    ) -> None:
        super().__init__(name="orchestrator_agent", audit_logger=audit_logger)
        self.session_memory = session_memory or SessionMemoryStore()
        self.inspection_tools = inspection_tools or InspectionTools(session_memory=self.session_memory)
        self.registry = registry or ToolRegistry(self.inspection_tools, audit_logger=self.audit_logger)
        self.llm = llm or LLMRuntime()
        self.thread_cache = thread_cache or AssistantThreadCache()
        self.media_tools = media_tools or MediaTools()
        self.analytics_tools = analytics_tools or AnalyticsTools()
        self.fast_path = FastPathInterpreter(
            self.registry,
            session_memory=self.session_memory,
            fast_task_flow=fast_task_flow,
            confirm_text=confirm_text,
        )
        self.llm_fallback = LLMFallbackOrchestrator(
            self.registry,
            session_memory=self.session_memory,
            llm=self.llm,
            thread_cache=self.thread_cache,
            audit_logger=self.audit_logger,
        )
        self.require_photo_remark = SETTINGS.require_photo_remark if require_photo_remark is None else require_photo_remark
        self.instant_ack_enabled = SETTINGS.instant_ack_enabled if instant_ack_enabled is None else instant_ack_enabled
        self.instant_delay_ms = instant_delay_ms
        self.instant_lead_ms = instant_lead_ms

    async def process(self, message: InboundMessage) -> AgentResponse:
        return await self.route_message(message)

    async def route_message(self, message: InboundMessage, ack_send: SendFn | None = None) -> AgentResponse:
        """Answer one inbound message.

        ``ack_send`` delivers an interim acknowledgement to the same chat; it is
        only used when the reply has to come from the LLM.
        """
        started = time.perf_counter()
        text = (message.content or "").strip()
        if not message.media and self._is_reset_request(text):
            await self.reset_session(message.session_id)
            return self._reply(message, RESET_TEXT, "session_reset", "reset", [], started)

        if message.media is not None:
            return await self._handle_media(message, message.media, started)

        state = await self.session_memory.get(message.session_id)
        if self.require_photo_remark and state.pending_media_uploads and text:
            reply = await self._finalize_pending_media(message.session_id, state, text)
            if reply:
                return self._reply(message, reply, "media", "pending_media_saved", [], started)

        records: List[ToolCallRecord] = []
        phone = str(message.metadata.get("phone") or message.session_id)
        reply = await self.fast_path.try_handle(message.session_id, text, phone=phone, records=records)
        if reply is not None:
            await self.analytics_tools.log_event(
                "fast_path_hit",
                {"session_id": message.session_id, "tools": [r.tool_name for r in records]},
            )
            return self._reply(message, reply, "fast_path", "fast_path", records, started)

        ack = None
        if ack_send is not None and self.instant_ack_enabled:
            ack = InstantAckController(ack_send, delay_ms=self.instant_delay_ms, lead_ms=self.instant_lead_ms)
            ack.schedule()
        ack_sent = False
        try:
            response = await self.llm_fallback.process(message)
        finally:
            if ack is not None:
                ack_sent = await ack.before_final()
        response.instant_ack_sent = ack_sent
        await self.analytics_tools.log_event(
            "llm_fallback",
            {
                "session_id": message.session_id,
                "outcome": response.metadata.get("outcome"),
                "instant_ack_sent": response.instant_ack_sent,
                "tools": [r.tool_name for r in response.tool_calls],
            },
        )
        return response

    async def reset_session(self, session_id: str) -> None:
        await self.session_memory.delete(session_id)
        self.thread_cache.forget_thread(session_id)
        logger.info("session_reset", extra={"session_id": session_id})

    def _is_reset_request(self, text: str) -> bool:
        return (text or "").strip().lower() in RESET_PHRASES

    def _reply(
        self,
        message: InboundMessage,
        text: str,
        agent: str,
        action: str,
        records: List[ToolCallRecord],
        started: float,
    ) -> AgentResponse:
        return self.respond(
            message,
            text,
            action=action,
            reasoning=f"Handled by {agent}.",
            started=started,
            tool_calls=records,
            agent=agent,
        )

    # -- media -------------------------------------------------------------

    async def _handle_media(self, message: InboundMessage, media: MediaAttachment, started: float) -> AgentResponse:
        session_id = message.session_id
        state = await self.session_memory.get(session_id)
        if not state.work_order_id:
            return self._reply(message, NO_JOB_MEDIA_TEXT, "media", "media_without_job", [], started)
        if not state.in_task_flow() and not state.current_location_id:
            records: List[ToolCallRecord] = []
            result = await self.registry.call("getJobLocations", {"jobId": state.work_order_id}, session_id, records, source="fast_path")
            if not result.success:
                return self._reply(message, NO_JOB_MEDIA_TEXT, "media", "media_without_job", records, started)
            options = "\n".join(result.get("locationsFormatted") or [])
            text = f"📍 Which location should I attach this photo to?\n\n{options}\n\nNext: reply with the location number, then send the photo again."
            return self._reply(message, text, "media", "media_without_location", records, started)
        try:
            stored = await self.media_tools.save_inbound(media, state)
        except MediaDownloadError as exc:
            logger.warning("media_upload_failed", extra={"session_id": session_id, "error": str(exc)})
            return self._reply(message, UPLOAD_FAILED_TEXT, "media", "media_upload_failed", [], started)

        caption = (media.caption or message.content or "").strip()
        if self.require_photo_remark and stored.media_type == "photo" and not caption:
            await self._park_media(session_id, state, stored)
            return self._reply(message, PHOTO_REMARK_TEXT, "media", "media_pending_remark", [], started)
        reply = await self._persist_media(session_id, state, stored.url, stored.media_type, caption or None)
        return self._reply(message, reply, "media", "media_saved", [], started)

    async def _park_media(self, session_id: str, state: SessionState, stored: StoredMedia) -> None:
        pending = PendingMediaUpload(
            url=stored.url,
            key=stored.key,
            media_type=stored.media_type,
            work_order_id=state.work_order_id,
            location=state.current_location,
            location_id=state.current_location_id,
            sub_location=state.current_sub_location_name,
            sub_location_id=state.current_sub_location_id,
            task_id=state.current_task_id,
            task_item_id=state.current_task_item_id,
            task_entry_id=state.current_task_entry_id,
            task_name=state.current_task_name,
            condition=state.current_task_condition,
        )
        uploads = [p for p in state.pending_media_uploads if p.url != stored.url]
        await self.session_memory.merge(session_id, {"pending_media_uploads": [*uploads, pending]})

    async def _finalize_pending_media(self, session_id: str, state: SessionState, remark: str) -> str | None:
        target = state.pending_media_uploads[-1]
        remaining = state.pending_media_uploads[:-1]
        await self.session_memory.merge(session_id, {"pending_media_uploads": remaining or None})
        if target.task_id and target.task_id != state.current_task_id:
            logger.warning("pending_media_task_changed", extra={"session_id": session_id, "task_id": target.task_id})
            state = state.model_copy(update={"current_task_id": None, "task_flow_stage": None, "current_location_id": target.location_id})
        return await self._persist_media(session_id, state, target.url, target.media_type, remark)

    async def _persist_media(self, session_id: str, state: SessionState, url: str, media_type: str, caption: str | None) -> str:
        label = "Video" if media_type == "video" else "Photo"
        if state.in_task_flow():
            result = await self.inspection_tools.attach_task_media(session_id, url, media_type, caption)
            if result.success:
                stage = TaskFlowStage(result.get("taskFlowStage")) if result.get("taskFlowStage") else None
                task_name = result.get("taskName") or "this task"
                latest = await self.session_memory.get(session_id)
                follow_up = menus.stage_prompt(stage, latest.current_task_condition)
                saved = f"✅ {label} saved successfully for {task_name}."
                return f"{saved}\n\n{follow_up}" if follow_up else saved
            logger.warning("task_media_attach_failed", extra={"session_id": session_id, "error": result.error})
        item_id = state.current_location_id
        if not item_id:
            return UPLOAD_FAILED_TEXT
        try:
            await self.inspection_tools.data.add_item_media(item_id, url, media_type)
        except InspectionDataError as exc:
            logger.warning("location_media_save_failed", extra={"session_id": session_id, "error": str(exc)})
            return UPLOAD_FAILED_TEXT
        location = state.current_sub_location_name or state.current_location or "your current job"
        return f"✅ {label} uploaded successfully for {location}!\n\nNext: reply with a task number to continue."
