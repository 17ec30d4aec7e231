from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from memory.session_memory import SessionMemoryStore
from models.schemas import (
    LOCATION_CONTEXT_FIELDS,
    TASK_CONTEXT_FIELDS,
    JobEditMode,
    JobEditType,
    JobStatus,
    LastMenu,
    SessionState,
    TaskCondition,
    TaskFlowStage,
    ToolCallRecord,
    cleared,
)
from settings import SETTINGS
from tools import menus
from tools.registry import ToolRegistry
from tools.results import ToolResult

logger = logging.getLogger(__name__)

SELECTION_RE = re.compile(r"^\s*(?:\[\s*(\d{1,2})\s*\]|option\s+(\d{1,2})|(\d{1,2}))\s*([).,;-])?\s*$", re.IGNORECASE)
GO_BACK_TEXTS = {"go back", "back", "b"}
YES_TEXTS = {"yes", "y"}
NO_TEXTS = {"no", "n"}
SKIP_MEDIA_TEXTS = {"skip", "no"}

JOB_KEYWORDS = [
    "jobs", "job", "schedule", "today", "my jobs", "my schedule", "what are my jobs",
    "work order", "work orders", "workorder", "workorders", "wo", "inspections", "inspection",
    "assignments", "appointments", "tasks today", "today list", "show jobs", "show schedule", "list jobs",
]
JOB_KEYWORD_RE = re.compile(r"\b(?:" + "|".join(re.escape(k) for k in sorted(JOB_KEYWORDS, key=len, reverse=True)) + r")\b")
JOB_PATTERNS = [
    re.compile(r"today'?s?\s+(jobs?|schedule|inspections?|work\s*orders?)"),
    re.compile(r"(what('?s)?|show)\s+(my\s+)?(jobs?|schedule|inspections?)"),
]

EDIT_TYPES = {2: JobEditType.CUSTOMER, 3: JobEditType.ADDRESS, 4: JobEditType.TIME, 5: JobEditType.STATUS}
FREE_TEXT_STAGES = {TaskFlowStage.CAUSE, TaskFlowStage.RESOLUTION, TaskFlowStage.MEDIA, TaskFlowStage.REMARKS}


def parse_selection(text: str) -> Optional[int]:
    match = SELECTION_RE.match(text or "")
    if not match:
        return None
    return int(match.group(1) or match.group(2) or match.group(3))


def is_jobs_intent(text: str, strict: bool = False) -> bool:
    """Classify a message as a request for today's jobs.

    In strict mode (the inspector is typing free text such as a cause or a new
    customer name) only a message that is entirely a jobs phrase counts.
    """
    t = (text or "").strip().lower()
    if not t:
        return False
    if strict:
        return t in JOB_KEYWORDS or any(p.fullmatch(t) for p in JOB_PATTERNS)
    if JOB_KEYWORD_RE.search(t):
        return True
    return any(p.search(t) for p in JOB_PATTERNS)


def awaiting_free_text(state: SessionState) -> bool:
    if state.job_edit_mode is JobEditMode.AWAIT_VALUE:
        return True
    return state.in_task_flow() and state.task_flow_stage in FREE_TEXT_STAGES


class FastPathInterpreter:
    """Answers menu selections and task-flow replies without the LLM.

    ``try_handle`` returns the rendered reply, or ``None`` when the message
    should go to the LLM fallback instead.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        session_memory: SessionMemoryStore | None = None,
        fast_task_flow: bool | None = None,
        confirm_text: bool | None = None,
    ) -> None:
        self.registry = registry
        self.session_memory = session_memory or registry.tools.session_memory
        self.fast_task_flow = SETTINGS.fast_task_flow if fast_task_flow is None else fast_task_flow
        self.confirm_text = SETTINGS.confirm_text if confirm_text is None else confirm_text

    async def try_handle(
        self,
        session_id: str,
        text: str,
        phone: str | None = None,
        records: List[ToolCallRecord] | None = None,
    ) -> Optional[str]:
        try:
            return await self._route(session_id, text, phone or session_id, records if records is not None else [])
        except Exception:
            logger.exception("fast_path_failed", extra={"session_id": session_id})
            return None

    async def _call(self, name: str, args: Dict[str, Any], session_id: str, records: List[ToolCallRecord]) -> ToolResult:
        return await self.registry.call(name, args, session_id, records, source="fast_path")

    async def _route(self, session_id: str, text: str, phone: str, records: List[ToolCallRecord]) -> Optional[str]:
        msg = (text or "").strip()
        if not msg:
            return None
        lower = msg.lower()
        number = parse_selection(msg)
        go_back = lower in GO_BACK_TEXTS
        state = await self.session_memory.get(session_id)
        ctx = _Turn(self, session_id, phone, records, state.work_order_id)

        if is_jobs_intent(lower, strict=awaiting_free_text(state)):
            return await ctx.list_jobs(reset=True)

        confirming = state.job_status is JobStatus.CONFIRMING and bool(state.work_order_id)
        if confirming and state.in_job_edit_flow():
            return await ctx.job_edit(state, msg, number)
        if confirming:
            if number == 1:
                return await ctx.start_job(state)
            if number == 2:
                return await ctx.open_edit_menu()
            if number is not None:
                return menus.CONFIRM_INVALID
            if self.confirm_text and lower in YES_TEXTS:
                return await ctx.start_job(state)
            if self.confirm_text and lower in NO_TEXTS:
                return await ctx.list_jobs(reset=True, intro="Okay, let’s choose another job. Here are your jobs for today:", greeting="Okay.")
            if lower in YES_TEXTS or lower in NO_TEXTS:
                return None
            return menus.CONFIRM_GUARD

        if state.last_menu is LastMenu.JOBS or not state.work_order_id:
            if number is not None:
                return await ctx.select_job(number)
            if go_back:
                return await ctx.list_jobs(reset=False)
            return None

        if state.job_status is not JobStatus.STARTED:
            return None

        if not state.in_task_flow():
            if number is not None or go_back:
                if state.last_menu is LastMenu.LOCATIONS or not state.current_location:
                    return await ctx.select_location(state, number)
                if state.last_menu is LastMenu.SUBLOCATIONS:
                    return await ctx.select_sub_location(state, number)
                if state.last_menu is LastMenu.TASKS and self.fast_task_flow:
                    return await ctx.select_task(state, number)
            elif state.last_menu is LastMenu.LOCATIONS or not state.current_location:
                return await ctx.show_locations()
            elif state.last_menu is LastMenu.SUBLOCATIONS and state.current_location_id:
                return await ctx.show_sub_locations(state, f"You're at {state.current_location}. Here are the sub-locations:")
            elif state.last_menu is LastMenu.TASKS and self.fast_task_flow:
                return await ctx.show_tasks(state)
            return None

        if not self.fast_task_flow:
            return None
        return await ctx.continue_task_flow(state, msg, lower, number, go_back)


class _Turn:
    """Per-message helper bundling the tool calls and renderers of one reply."""

    def __init__(
        self,
        interpreter: FastPathInterpreter,
        session_id: str,
        phone: str,
        records: List[ToolCallRecord],
        work_order_id: str | None,
    ) -> None:
        self.interpreter = interpreter
        self.session_id = session_id
        self.phone = phone
        self.records = records
        self.work_order_id = work_order_id

    async def call(self, name: str, **args: Any) -> ToolResult:
        return await self.interpreter._call(name, args, self.session_id, self.records)

    async def merge(self, partial: Dict[str, Any]) -> SessionState:
        return await self.interpreter.session_memory.merge(self.session_id, partial)

    # -- jobs ----------------------------------------------------------------

    async def list_jobs(self, reset: bool, intro: str | None = None, greeting: str | None = None) -> Optional[str]:
        result = await self.call("getTodayJobs", inspectorPhone=self.phone, reset=reset)
        if not result.success:
            return None
        name = result.get("inspectorName") or ""
        hello = f"Hi {name}!" if name else "Hi!"
        jobs = result.get("jobs") or []
        if not jobs:
            return menus.no_jobs_text(greeting or hello)
        return menus.render_jobs(jobs, intro or f"{hello} Here are your jobs for today:")

    async def select_job(self, number: int) -> Optional[str]:
        result = await self.call("getTodayJobs", inspectorPhone=self.phone)
        if not result.success:
            return None
        jobs = result.get("jobs") or []
        if not jobs:
            return menus.no_jobs_text("Hi!")
        if not 1 <= number <= len(jobs):
            choices = ", ".join(str(j["selectionNumber"]) for j in jobs)
            return f"The selection [{number}] is not available. Please choose {choices}."
        return await self.confirm_job(
            jobs[number - 1]["id"],
            "Please confirm the destination details before starting the inspection:",
            "reply [1] to confirm or [2] to pick another job.",
        )

    async def confirm_job(self, job_id: str, header: str, next_instruction: str) -> Optional[str]:
        result = await self.call("confirmJobSelection", jobId=job_id)
        if not result.success:
            return None
        return menus.render_job_confirmation(result.get("jobDetails") or {}, header, next_instruction)

    async def start_job(self, state: SessionState) -> Optional[str]:
        result = await self.call("startJob", jobId=state.work_order_id)
        if not result.success:
            return None
        return menus.render_locations(
            result.get("locationsFormatted") or [],
            header="Job started. Here are the locations available for inspection:",
            next_instruction="Reply with the number of the location you want to inspect next.",
        )

    async def open_edit_menu(self) -> str:
        await self.merge({"last_menu": LastMenu.CONFIRM, "job_edit_mode": JobEditMode.MENU, "job_edit_type": None})
        return menus.render_job_edit_menu("What would you like to change about the job? Here are some options:")

    async def job_edit(self, state: SessionState, msg: str, number: Optional[int]) -> Optional[str]:
        if state.job_edit_mode is JobEditMode.MENU:
            if number == 1:
                await self.merge({"job_edit_mode": None, "job_edit_type": None})
                return await self.list_jobs(
                    reset=True,
                    intro="Okay, let’s choose another job. Here are your jobs for today:",
                    greeting="Okay.",
                )
            if number in EDIT_TYPES:
                edit_type = EDIT_TYPES[number]
                await self.merge({"job_edit_mode": JobEditMode.AWAIT_VALUE, "job_edit_type": edit_type})
                return f"{menus.JOB_EDIT_PROMPTS[edit_type.value]}\n\nNext: send the new {edit_type.value} value."
            return menus.render_job_edit_menu("Please choose one of the following options:")

        edit_type = state.job_edit_type
        if edit_type is None:
            await self.merge({"job_edit_mode": JobEditMode.MENU})
            return menus.render_job_edit_menu("Please choose one of the following options:")
        result = await self.call("updateJobDetails", jobId=state.work_order_id, updateType=edit_type.value, newValue=msg)
        await self.merge({"job_edit_mode": None, "job_edit_type": None})
        if not result.success:
            return f"I couldn't update the {edit_type.value}. Please try again or pick another option."
        reply = await self.confirm_job(
            state.work_order_id or "",
            "Here are the updated job details. Please confirm before starting the inspection:",
            "reply [1] to confirm or [2] to make more changes.",
        )
        return reply or "Update saved. Please ask for jobs again to continue."

    # -- locations -------------------------------------------------------------

    async def show_locations(self, prefix: str | None = None) -> Optional[str]:
        await self.merge(cleared(LOCATION_CONTEXT_FIELDS, TASK_CONTEXT_FIELDS))
        result = await self.call("getJobLocations", jobId=self.work_order_id)
        if not result.success:
            return None
        formatted = result.get("locationsFormatted") or []
        if not formatted:
            return None
        if prefix:
            return menus.render_menu(prefix, formatted, "reply with the number of the location you want to inspect.")
        return menus.render_locations(formatted)

    async def select_location(self, state: SessionState, number: Optional[int]) -> Optional[str]:
        if number is None:
            return await self.show_locations()
        result = await self.call("getJobLocations", jobId=state.work_order_id)
        if not result.success:
            return None
        locations = result.get("locations") or []
        if not locations:
            return None
        if not 1 <= number <= len(locations):
            return await self.show_locations(prefix="That location number isn't valid.")
        chosen = locations[number - 1]
        if chosen.get("subLocations"):
            subs = await self.call(
                "getSubLocations",
                workOrderId=state.work_order_id,
                contractChecklistItemId=chosen["contractChecklistItemId"],
                locationName=chosen["name"],
            )
            formatted = subs.get("subLocationsFormatted") or []
            if subs.success and formatted:
                return menus.render_sub_locations(f"You've selected {chosen['name']}. Here are the available sub-locations:", formatted)
        return await self.tasks_for(state.work_order_id or "", chosen["name"], chosen["contractChecklistItemId"])

    async def show_sub_locations(self, state: SessionState, header: str) -> Optional[str]:
        result = await self.call(
            "getSubLocations",
            workOrderId=state.work_order_id,
            contractChecklistItemId=state.current_location_id,
            locationName=state.current_location,
        )
        formatted = result.get("subLocationsFormatted") or []
        if not result.success or not formatted:
            return None
        return menus.render_sub_locations(header, formatted)

    async def select_sub_location(self, state: SessionState, number: Optional[int]) -> Optional[str]:
        item_id = state.current_location_id or ""
        options: List[Any] = list(state.location_sub_locations.get(item_id) or [])
        if not options:
            subs = await self.call(
                "getSubLocations",
                workOrderId=state.work_order_id,
                contractChecklistItemId=item_id,
                locationName=state.current_location,
            )
            options = subs.get("subLocations") or []
        if not options:
            return await self.show_locations()
        back_number = len(options) + 1
        if number is None or number == back_number:
            return await self.show_locations()
        if number < 1 or number > back_number:
            formatted = menus.format_sub_locations(options)
            return menus.render_sub_locations("That sub-location number isn't valid.", formatted)
        chosen = options[number - 1]
        sub_id = chosen["id"] if isinstance(chosen, dict) else chosen.id
        return await self.tasks_for(state.work_order_id or "", state.current_location or "", item_id, sub_id)

    # -- tasks -----------------------------------------------------------------

    async def tasks_for(self, work_order_id: str, location: str, item_id: str | None, sub_location_id: str | None = None) -> Optional[str]:
        args: Dict[str, Any] = {"workOrderId": work_order_id, "location": location}
        if item_id:
            args["contractChecklistItemId"] = item_id
        if sub_location_id:
            args["subLocationId"] = sub_location_id
        result = await self.call("getTasksForLocation", **args)
        if not result.success:
            formatted = result.get("subLocationsFormatted") or []
            if result.get("requiresSubLocation") and formatted:
                return menus.render_sub_locations(f"You've selected {location}. Here are the available sub-locations:", formatted)
            return None
        return menus.render_tasks(result.get("location") or location, result.get("tasks") or [])

    async def show_tasks(self, state: SessionState, prefix: str | None = None) -> Optional[str]:
        body = await self.tasks_for(
            state.work_order_id or "",
            state.current_location or "",
            state.current_location_id,
            state.current_sub_location_id,
        )
        if body and prefix:
            return f"{prefix}\n\n{body}"
        return body

    async def go_back_from_tasks(self, state: SessionState) -> Optional[str]:
        subs = state.location_sub_locations.get(state.current_location_id or "") or []
        if state.current_sub_location_id and len(subs) > 1:
            reply = await self.show_sub_locations(state, f"You're back at {state.current_location}. Here are the sub-locations:")
            if reply:
                return reply
        return await self.show_locations()

    async def select_task(self, state: SessionState, number: Optional[int]) -> Optional[str]:
        if number is None:
            return await self.go_back_from_tasks(state)
        result = await self.call(
            "getTasksForLocation",
            workOrderId=state.work_order_id,
            location=state.current_location,
            contractChecklistItemId=state.current_location_id,
            subLocationId=state.current_sub_location_id,
        )
        tasks = result.get("tasks") or []
        if not result.success or not tasks:
            return None
        location = result.get("location") or state.current_location or ""
        back_number = len(tasks) + 1
        if number == back_number:
            return await self.go_back_from_tasks(state)
        if not 1 <= number < back_number:
            return f"That task number isn't valid.\n\n{menus.render_tasks(location, tasks)}"
        chosen = tasks[number - 1]
        start = await self.call("completeTask", phase="start", workOrderId=state.work_order_id, taskId=chosen["id"])
        if not start.success:
            return start.error
        return start.get("message") or menus.render_condition_prompt(chosen["description"])

    async def continue_task_flow(self, state: SessionState, msg: str, lower: str, number: Optional[int], go_back: bool) -> Optional[str]:
        stage = state.task_flow_stage
        condition = state.current_task_condition
        base = {"workOrderId": state.work_order_id, "taskId": state.current_task_id}

        if go_back:
            await self.merge({"task_flow_stage": None})
            return await self.show_tasks(state, prefix="Okay, I've paused this task.")

        if stage is TaskFlowStage.CONFIRM:
            if number not in (1, 2):
                return menus.FINALIZE_PROMPT
            result = await self.call("completeTask", phase="finalize", completed=number == 1, **base)
            if not result.success:
                latest = await self.interpreter.session_memory.get(self.session_id)
                prompt = menus.stage_prompt(latest.task_flow_stage, latest.current_task_condition)
                return f"{result.error}\n\n{prompt}" if prompt else result.error
            return await self.show_tasks(state, prefix=result.get("message"))

        if stage is TaskFlowStage.CONDITION:
            if number is None or not 1 <= number <= 5:
                return menus.render_condition_prompt()
            result = await self.call("completeTask", phase="set_condition", conditionNumber=number, **base)
            return result.get("message") if result.success else result.error

        if stage is TaskFlowStage.CAUSE:
            if number is not None:
                return menus.CAUSE_PROMPT
            result = await self.call("completeTask", phase="set_cause", cause=msg, **base)
            return (result.get("message") or menus.RESOLUTION_PROMPT) if result.success else result.error

        if stage is TaskFlowStage.RESOLUTION:
            if number is not None:
                return menus.RESOLUTION_REPROMPT
            result = await self.call("completeTask", phase="set_resolution", resolution=msg, **base)
            return result.get("message") if result.success else result.error

        if stage is TaskFlowStage.MEDIA:
            if lower in SKIP_MEDIA_TEXTS:
                result = await self.call("completeTask", phase="skip_media", **base)
                return result.get("message") if result.success else result.error
            return menus.media_prompt(allow_skip=condition is TaskCondition.NOT_APPLICABLE)

        if stage is TaskFlowStage.REMARKS:
            if number is not None:
                return menus.remarks_prompt()
            result = await self.call("completeTask", phase="set_remarks", remarks=msg, **base)
            return result.get("message") if result.success else result.error

        return None
