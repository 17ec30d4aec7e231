from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from memory.session_memory import SessionMemoryStore
from models.schemas import (
    JOB_CONTEXT_FIELDS,
    LOCATION_CONTEXT_FIELDS,
    STAGE_SEQUENCE,
    TASK_CONTEXT_FIELDS,
    CompletePhase,
    JobEditType,
    JobStatus,
    LastMenu,
    SessionState,
    SubLocationOption,
    TaskCondition,
    TaskFlowStage,
    WorkOrderStatus,
    advance_stage,
    cleared,
    rewind_stage,
    stage_after_condition,
)
from settings import SETTINGS
from tools import menus
from tools.inspection_data import ITEM_COMPLETED, InspectionDataClient, ItemEntry, phone_variants
from tools.results import ToolResult

logger = logging.getLogger(__name__)

POSTAL_CODE_RE = re.compile(r"\b(\d{6})\b")
SELECTION_RE = re.compile(r"^\s*\[?\s*(\d{1,2})\s*\]?\s*$")
SKIP_WORDS = {"skip", "no", "none", "nil", "-"}
BULK_COMPLETE = "complete_all_tasks"

START_FIRST = "Please start the job first (confirm the destination and reply [1])."
TASK_CONTEXT_MISSING = "Task context missing. Please restart the task completion flow."


def format_job_time(raw: str | None) -> str:
    if not raw:
        return "TBD"
    try:
        return datetime.fromisoformat(raw).strftime("%I:%M %p")
    except ValueError:
        return str(raw)


def normalize_phone(raw: str, country_code: str | None = None) -> str:
    country_code = country_code or SETTINGS.default_country_code
    cleaned = re.sub(r"[\s\-()]", "", str(raw or ""))
    if not cleaned:
        return ""
    if cleaned.startswith("+"):
        return cleaned
    cc_digits = country_code.lstrip("+")
    if cleaned.startswith(cc_digits) and len(cleaned) >= len(cc_digits) + 8:
        return f"+{cleaned}"
    return f"{country_code}{cleaned.lstrip('0')}"


class InspectionTools:
    def __init__(
        self,
        data: InspectionDataClient | None = None,
        session_memory: SessionMemoryStore | None = None,
        country_code: str | None = None,
    ) -> None:
        self.data = data or InspectionDataClient()
        self.session_memory = session_memory or SessionMemoryStore()
        self.country_code = country_code or SETTINGS.default_country_code

    # -- shared helpers ---------------------------------------------------

    async def _resolve_inspector(self, state: SessionState, session_id: str, args: Dict[str, Any] | None = None) -> Optional[dict]:
        args = args or {}
        inspector_id = args.get("inspectorId") or state.inspector_id
        if inspector_id:
            found = await self.data.get_inspector(str(inspector_id))
            if found:
                return found
        for phone in (args.get("inspectorPhone"), state.inspector_phone, session_id):
            if phone:
                found = await self.data.get_inspector_by_phone(str(phone))
                if found:
                    return found
        if state.inspector_name:
            return await self.data.get_inspector_by_name(state.inspector_name)
        return None

    async def _inspector_id(self, state: SessionState, session_id: str) -> Optional[str]:
        if state.inspector_id:
            return state.inspector_id
        found = await self._resolve_inspector(state, session_id)
        return found["id"] if found else None

    async def _job_started(self, state: SessionState, work_order_id: str | None) -> bool:
        if state.job_status is not JobStatus.STARTED:
            return False
        return not work_order_id or not state.work_order_id or state.work_order_id == work_order_id

    async def _locations(self, work_order_id: str) -> List[dict]:
        return await self.data.get_locations_with_completion_status(work_order_id)

    def _sub_location_cache(self, state: SessionState, item_id: str, subs: List[dict]) -> Dict[str, List[SubLocationOption]]:
        cache = {k: list(v) for k, v in state.location_sub_locations.items()}
        cache[item_id] = [SubLocationOption(id=s["id"], name=s["name"], status=s.get("status") or "pending") for s in subs]
        return cache

    async def _today_jobs(self, inspector_id: str) -> List[dict]:
        rows = await self.data.get_today_jobs_for_inspector(inspector_id)
        return [
            {
                "id": row["id"],
                "jobNumber": row.get("job_number"),
                "selectionNumber": f"[{i}]",
                "property": row.get("property_address"),
                "customer": row.get("customer_name"),
                "time": format_job_time(row.get("scheduled_date")),
                "status": row.get("status"),
                "priority": row.get("priority"),
            }
            for i, row in enumerate(rows, start=1)
        ]

    async def _ensure_entry(self, state: SessionState, session_id: str, task_id: str, item_id: str) -> ItemEntry:
        inspector_id = await self._inspector_id(state, session_id)
        if state.current_task_entry_id:
            entry = await self.data.get_entry(state.current_task_entry_id)
            if entry and entry.task_id == task_id:
                return entry
        entry = await self.data.find_entry(task_id, inspector_id)
        if entry:
            return entry
        orphan = await self.data.find_orphan_entry(item_id, inspector_id)
        if orphan:
            return await self.data.update_entry(orphan.id, task_id=task_id)
        return await self.data.create_entry(item_id, inspector_id, task_id=task_id)

    # -- jobs -------------------------------------------------------------

    async def get_today_jobs(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        if args.get("reset"):
            state = await self.session_memory.merge(
                session_id,
                {
                    **cleared(JOB_CONTEXT_FIELDS, LOCATION_CONTEXT_FIELDS, TASK_CONTEXT_FIELDS),
                    "job_status": JobStatus.NONE,
                    "last_menu": LastMenu.JOBS,
                    "last_menu_at": datetime.utcnow(),
                },
            )
        inspector = await self._resolve_inspector(state, session_id, args)
        if not inspector:
            return ToolResult.fail(
                "I couldn't identify you as a registered inspector. Please share your full name and phone number.",
                identifyRequired=True,
                nextAction="collectInspectorInfo",
            )
        await self.session_memory.merge(
            session_id,
            {
                "inspector_id": inspector["id"],
                "inspector_name": inspector["name"],
                "inspector_phone": inspector["mobilePhone"],
            },
        )
        jobs = await self._today_jobs(inspector["id"])
        return ToolResult.ok(jobs=jobs, count=len(jobs), inspectorName=inspector["name"])

    async def confirm_job_selection(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        job_id = str(args.get("jobId") or "")
        job = await self.data.get_work_order_by_id(job_id)
        if not job:
            return ToolResult.fail("Job not found")
        address = str(job.get("property_address") or "")
        match = POSTAL_CODE_RE.search(address) or POSTAL_CODE_RE.search(str(job.get("postal_code") or ""))
        postal_code = match.group(1) if match else "unknown"
        await self.session_memory.merge(
            session_id,
            {
                **cleared(LOCATION_CONTEXT_FIELDS, TASK_CONTEXT_FIELDS),
                "work_order_id": job["id"],
                "customer_name": job.get("customer_name"),
                "property_address": address,
                "postal_code": postal_code,
                "job_status": JobStatus.CONFIRMING,
                "last_menu": LastMenu.CONFIRM,
                "last_menu_at": datetime.utcnow(),
                "job_edit_mode": None,
                "job_edit_type": None,
            },
        )
        details = {
            "id": job["id"],
            "jobNumber": job.get("job_number"),
            "property": address,
            "customer": job.get("customer_name"),
            "time": format_job_time(job.get("scheduled_start")),
            "status": job.get("status"),
            "postalCode": postal_code,
        }
        return ToolResult.ok(jobDetails=details, options=menus.numbered(["Yes", "No"]))

    async def start_job(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        if state.job_status is not JobStatus.CONFIRMING:
            return ToolResult.fail("Please confirm the destination first. Reply [1] Yes or [2] No to the confirmation prompt.")
        raw = str(args.get("jobId") or state.work_order_id or "").strip()
        job = await self.data.get_work_order_by_id(raw)
        if not job:
            selection = SELECTION_RE.match(raw)
            inspector_id = await self._inspector_id(state, session_id)
            if selection and inspector_id:
                jobs = await self._today_jobs(inspector_id)
                index = int(selection.group(1))
                if 1 <= index <= len(jobs):
                    job = await self.data.get_work_order_by_id(jobs[index - 1]["id"])
        if not job:
            return ToolResult.fail("Invalid or unknown job id. Please pick a job again.")
        await self.data.update_work_order_status(job["id"], "in_progress")
        await self.session_memory.merge(
            session_id,
            {
                **cleared(LOCATION_CONTEXT_FIELDS, TASK_CONTEXT_FIELDS),
                "work_order_id": job["id"],
                "job_status": JobStatus.STARTED,
                "last_menu": LastMenu.LOCATIONS,
                "last_menu_at": datetime.utcnow(),
                "job_edit_mode": None,
                "job_edit_type": None,
            },
        )
        locations = await self._locations(job["id"])
        progress = await self.data.get_work_order_progress(job["id"])
        return ToolResult.ok(
            jobId=job["id"],
            locations=locations,
            locationsFormatted=menus.format_locations(locations),
            progress=progress,
        )

    async def update_job_details(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        job_id = str(args.get("jobId") or "")
        new_value = str(args.get("newValue") or "").strip()
        try:
            update_type = JobEditType(str(args.get("updateType") or ""))
        except ValueError:
            return ToolResult.fail("updateType must be one of customer, address, time, status.")
        if not new_value:
            return ToolResult.fail(f"Please provide a {update_type.value} value.")
        ok = await self.data.update_work_order_details(job_id, update_type.value, new_value)
        if not ok:
            return ToolResult.fail(f"I couldn't update the {update_type.value}. Please try again or pick another option.")
        state = await self.session_memory.get(session_id)
        if state.work_order_id == job_id:
            updates: Dict[str, Any] = {}
            if update_type is JobEditType.CUSTOMER:
                updates["customer_name"] = new_value
            elif update_type is JobEditType.ADDRESS:
                street, _, postal = new_value.partition(",")
                updates["property_address"] = street.strip()
                if postal.strip():
                    updates["postal_code"] = postal.strip()
            elif update_type is JobEditType.STATUS:
                started = new_value.upper() == WorkOrderStatus.STARTED.value
                updates["job_status"] = JobStatus.STARTED if started else JobStatus.NONE
            if updates:
                await self.session_memory.merge(session_id, updates)
        return ToolResult.ok(jobId=job_id, updateType=update_type.value, newValue=new_value)

    async def get_job_progress(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        job_id = str(args.get("workOrderId") or state.work_order_id or "")
        if not await self.data.get_work_order_by_id(job_id):
            return ToolResult.fail("Job not found")
        return ToolResult.ok(progress=await self.data.get_work_order_progress(job_id))

    # -- navigation -------------------------------------------------------

    async def get_job_locations(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        job_id = str(args.get("jobId") or state.work_order_id or "")
        if not job_id or not await self._job_started(state, job_id):
            return ToolResult.fail(START_FIRST)
        locations = await self._locations(job_id)
        cache = {k: list(v) for k, v in state.location_sub_locations.items()}
        for loc in locations:
            if loc.get("subLocations"):
                cache[loc["contractChecklistItemId"]] = [SubLocationOption(**s) for s in loc["subLocations"]]
        # Listing is read-only for the task flow; the fast path clears context when it navigates back.
        await self.session_memory.merge(
            session_id,
            {
                "location_sub_locations": cache,
                "last_menu": LastMenu.LOCATIONS,
                "last_menu_at": datetime.utcnow(),
            },
        )
        return ToolResult.ok(
            locations=locations,
            locationsFormatted=menus.format_locations(locations),
            progress=await self.data.get_work_order_progress(job_id),
        )

    async def get_sub_locations(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        job_id = str(args.get("workOrderId") or state.work_order_id or "")
        if not job_id or not await self._job_started(state, job_id):
            return ToolResult.fail(START_FIRST)
        item_id = str(args.get("contractChecklistItemId") or "")
        item = await self.data.get_checklist_item(item_id)
        if not item or item["workOrderId"] != job_id:
            return ToolResult.fail("Location not found for this job.")
        subs = await self.data.get_checklist_locations_for_item(item_id)
        await self.session_memory.merge(
            session_id,
            {
                **cleared(TASK_CONTEXT_FIELDS),
                "current_location": str(args.get("locationName") or item["name"]),
                "current_location_id": item_id,
                "current_sub_location_id": None,
                "current_sub_location_name": None,
                "location_sub_locations": self._sub_location_cache(state, item_id, subs),
                "last_menu": LastMenu.SUBLOCATIONS,
                "last_menu_at": datetime.utcnow(),
            },
        )
        if not subs:
            return ToolResult.ok(subLocations=[], subLocationsFormatted=[], nextPrompt="No sub-locations found. Proceed to task selection.")
        return ToolResult.ok(
            subLocations=subs,
            subLocationsFormatted=menus.format_sub_locations(subs),
            nextPrompt="Reply with the sub-location number you want to inspect.",
        )

    async def get_tasks_for_location(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        job_id = str(args.get("workOrderId") or state.work_order_id or "")
        if not job_id or not await self._job_started(state, job_id):
            return ToolResult.fail(START_FIRST)
        location_name = str(args.get("location") or state.current_location or "")
        item_id = str(args.get("contractChecklistItemId") or "")
        if not item_id:
            item_id = await self.data.get_contract_checklist_item_id_by_location(job_id, location_name) or ""
        item = await self.data.get_checklist_item(item_id)
        if not item or item["workOrderId"] != job_id:
            return ToolResult.fail(f"I couldn't find the location '{location_name}' in this job.")
        location_name = item["name"]
        subs = await self.data.get_checklist_locations_for_item(item_id)
        sub_id = args.get("subLocationId")
        if not sub_id and state.current_location_id == item_id:
            sub_id = state.current_sub_location_id
        if not sub_id and len(subs) == 1:
            sub_id = subs[0]["id"]
        sub = next((s for s in subs if s["id"] == sub_id), None)
        if sub_id and not sub:
            return ToolResult.fail("That sub-location doesn't belong to this location.")
        if subs and not sub:
            await self.session_memory.merge(
                session_id,
                {
                    "current_location": location_name,
                    "current_location_id": item_id,
                    "location_sub_locations": self._sub_location_cache(state, item_id, subs),
                    "last_menu": LastMenu.SUBLOCATIONS,
                    "last_menu_at": datetime.utcnow(),
                },
            )
            return ToolResult.fail(
                "Please choose a sub-location first.",
                requiresSubLocation=True,
                subLocations=subs,
                subLocationsFormatted=menus.format_sub_locations(subs),
            )
        rows = await self.data.get_tasks_by_location(job_id, location_name, item_id, sub["id"] if sub else None)
        tasks = [
            {
                "id": row["id"],
                "number": i,
                "description": row["action"],
                "displayStatus": "done" if row["status"] == "completed" else "pending",
                "locationId": row.get("locationId"),
            }
            for i, row in enumerate(rows, start=1)
        ]
        await self.session_memory.merge(
            session_id,
            {
                **cleared(TASK_CONTEXT_FIELDS),
                "current_location": location_name,
                "current_location_id": item_id,
                "current_sub_location_id": sub["id"] if sub else None,
                "current_sub_location_name": sub["name"] if sub else None,
                "location_sub_locations": self._sub_location_cache(state, item_id, subs) if subs else state.location_sub_locations,
                "last_menu": LastMenu.TASKS,
                "last_menu_at": datetime.utcnow(),
            },
        )
        lines = menus.with_go_back([menus.option(t["number"], t["description"], t["displayStatus"] == "done") for t in tasks])
        return ToolResult.ok(
            location=location_name,
            contractChecklistItemId=item_id,
            subLocationId=sub["id"] if sub else None,
            subLocationName=sub["name"] if sub else None,
            tasks=tasks,
            tasksFormatted=lines,
            nextPrompt=f"Reply with the task number to continue, or [{len(lines)}] to go back.",
        )

    async def mark_location_complete(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        job_id = str(args.get("workOrderId") or state.work_order_id or "")
        item_id = str(args.get("contractChecklistItemId") or state.current_location_id or "")
        item = await self.data.get_checklist_item(item_id)
        if not item or item["workOrderId"] != job_id:
            return ToolResult.fail("Checklist item not found.")
        remaining = await self.data.count_incomplete_tasks(item_id)
        if remaining:
            noun = "task is" if remaining == 1 else "tasks are"
            return ToolResult.fail(
                f"{remaining} {noun} still pending in {item['name']}. Please complete them before marking the location complete.",
                pendingTasks=remaining,
            )
        await self.data.mark_item_complete(item_id, await self._inspector_id(state, session_id))
        await self.session_memory.merge(
            session_id,
            {
                **cleared(TASK_CONTEXT_FIELDS),
                "last_menu": LastMenu.LOCATIONS,
                "last_menu_at": datetime.utcnow(),
            },
        )
        locations = await self._locations(job_id)
        return ToolResult.ok(message="✅ Location marked complete.", locationsFormatted=menus.format_locations(locations))

    async def mark_sub_location_complete(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        job_id = str(args.get("workOrderId") or state.work_order_id or "")
        item_id = str(args.get("contractChecklistItemId") or state.current_location_id or "")
        sub_id = str(args.get("subLocationId") or state.current_sub_location_id or "")
        if not job_id or not item_id or not sub_id:
            return ToolResult.fail("Missing sub-location context.")
        item = await self.data.get_checklist_item(item_id)
        sub = await self.data.get_sub_location(sub_id)
        if not item or item["workOrderId"] != job_id or not sub or sub["itemId"] != item_id:
            return ToolResult.fail("Sub-location not found for this location.")
        remaining = await self.data.count_incomplete_tasks(item_id, sub_id)
        if remaining:
            noun = "task is" if remaining == 1 else "tasks are"
            return ToolResult.fail(
                f"{remaining} {noun} still pending in {sub['name']}. Please complete them before marking it complete.",
                pendingTasks=remaining,
            )
        item_status = await self.data.mark_sub_location_complete(sub_id)
        subs = await self.data.get_checklist_locations_for_item(item_id)
        await self.session_memory.merge(
            session_id,
            {
                **cleared(TASK_CONTEXT_FIELDS),
                "current_sub_location_id": None,
                "current_sub_location_name": None,
                "location_sub_locations": self._sub_location_cache(state, item_id, subs),
                "last_menu": LastMenu.SUBLOCATIONS,
                "last_menu_at": datetime.utcnow(),
            },
        )
        logger.info("sub_location_completed", extra={"session_id": session_id, "sub_location_id": sub_id, "item_status": item_status})
        return ToolResult.ok(
            message=f"✅ {sub['name']} marked complete.",
            locationCompleted=item_status == ITEM_COMPLETED,
            subLocations=subs,
            subLocationsFormatted=menus.format_sub_locations(subs),
            nextPrompt="Reply with your sub-location choice, or pick another area.",
        )

    async def set_location_condition(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        job_id = str(args.get("workOrderId") or state.work_order_id or "")
        condition = TaskCondition.from_number(args.get("conditionNumber"))
        location_name = str(args.get("location") or state.current_location or "")
        if not job_id or not location_name or not condition:
            return ToolResult.fail("Missing workOrderId/location or invalid condition number (1-5).")
        item_id = await self.data.get_contract_checklist_item_id_by_location(job_id, location_name)
        if not item_id:
            return ToolResult.fail("Location not found for this job.")
        await self.data.set_item_condition(item_id, condition)
        return ToolResult.ok(itemId=item_id, condition=condition.value)

    async def add_location_remarks(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        remarks = str(args.get("remarks") or "").strip()
        if not remarks:
            return ToolResult.fail("Remarks text is required.")
        state = await self.session_memory.get(session_id)
        if not state.current_location_id:
            return ToolResult.fail("No current location in session.")
        await self.data.set_item_remarks(state.current_location_id, remarks)
        return ToolResult.ok(itemId=state.current_location_id)

    # -- task completion flow ----------------------------------------------

    async def complete_task(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        raw_phase = str(args.get("phase") or "start")
        if raw_phase == BULK_COMPLETE or args.get("taskId") == BULK_COMPLETE:
            return ToolResult.fail("Bulk complete is disabled. Please complete tasks individually or use Go back.")
        try:
            phase = CompletePhase(raw_phase)
        except ValueError:
            return ToolResult.fail(f"Unknown phase: {raw_phase}")
        state = await self.session_memory.get(session_id)
        work_order_id = str(args.get("workOrderId") or state.work_order_id or "")
        if not work_order_id:
            return ToolResult.fail("Missing work order context")
        handler = {
            CompletePhase.START: self._phase_start,
            CompletePhase.SET_CONDITION: self._phase_set_condition,
            CompletePhase.SET_CAUSE: self._phase_set_cause,
            CompletePhase.SET_RESOLUTION: self._phase_set_resolution,
            CompletePhase.SKIP_MEDIA: self._phase_skip_media,
            CompletePhase.SET_REMARKS: self._phase_set_remarks,
            CompletePhase.FINALIZE: self._phase_finalize,
        }[phase]
        try:
            return await handler(args, state, session_id, work_order_id)
        except ValueError as exc:
            # Illegal stage transition: hold position on the current stage.
            logger.info("task_flow_transition_rejected", extra={"session_id": session_id, "phase": phase.value, "error": str(exc)})
            prompt = menus.stage_prompt(state.task_flow_stage, state.current_task_condition)
            return ToolResult.fail(
                f"That step isn't expected right now.\n\n{prompt}" if prompt else TASK_CONTEXT_MISSING,
                taskFlowStage=state.task_flow_stage.value if state.task_flow_stage else None,
            )

    async def _phase_start(self, args: Dict[str, Any], state: SessionState, session_id: str, work_order_id: str) -> ToolResult:
        task_id = str(args.get("taskId") or "")
        if not task_id:
            return ToolResult.fail("Missing task identifier")
        task = await self.data.get_task(task_id)
        item = await self.data.get_checklist_item(task["itemId"]) if task else None
        if not task or not item or item["workOrderId"] != work_order_id:
            return ToolResult.fail("Task not found")
        inspector_id = await self._inspector_id(state, session_id)
        entry = await self.data.find_entry(task_id, inspector_id)
        if not entry:
            orphan = await self.data.find_orphan_entry(task["itemId"], inspector_id)
            if orphan:
                entry = await self.data.update_entry(orphan.id, task_id=task_id)
        location_name = state.current_sub_location_name or state.current_location or item["name"]
        await self.session_memory.merge(
            session_id,
            {
                **cleared(TASK_CONTEXT_FIELDS),
                "current_task_id": task_id,
                "current_task_name": task["name"],
                "current_task_item_id": task["itemId"],
                "current_task_entry_id": entry.id if entry else None,
                "current_task_location_id": task.get("locationId") or task["itemId"],
                "current_task_location_name": location_name,
                "task_flow_stage": TaskFlowStage.CONDITION,
            },
        )
        return ToolResult.ok(
            taskFlowStage=TaskFlowStage.CONDITION.value,
            taskId=task_id,
            taskName=task["name"],
            message=menus.render_condition_prompt(task["name"]),
        )

    async def _phase_set_condition(self, args: Dict[str, Any], state: SessionState, session_id: str, work_order_id: str) -> ToolResult:
        condition = TaskCondition.from_number(args.get("conditionNumber"))
        if not condition:
            return ToolResult.fail("Invalid condition number. Please use 1-5.")
        task_id = str(args.get("taskId") or state.current_task_id or "")
        if not task_id or task_id != state.current_task_id or state.task_flow_stage is None:
            return ToolResult.fail(TASK_CONTEXT_MISSING)
        task = await self.data.get_task(task_id)
        if not task:
            return ToolResult.fail(TASK_CONTEXT_MISSING)
        next_stage = advance_stage(TaskFlowStage.CONDITION, stage_after_condition(condition))
        entry = await self._ensure_entry(state, session_id, task_id, task["itemId"])
        changes: Dict[str, Any] = {"condition": condition}
        if not condition.requires_cause_resolution:
            changes.update(cause=None, resolution=None)
        entry = await self.data.update_entry(entry.id, **changes)
        await self.data.update_task_condition(task_id, condition)
        await self.session_memory.merge(
            session_id,
            {
                "current_task_entry_id": entry.id,
                "current_task_condition": condition,
                "task_flow_stage": next_stage,
                "pending_task_cause": None,
                "pending_task_resolution": None,
            },
        )
        if next_stage is TaskFlowStage.CAUSE:
            message = menus.CAUSE_PROMPT
        else:
            message = menus.media_prompt(
                allow_skip=not condition.requires_media,
                lead="Condition saved. Please send photos/videos of this task now (you can add a caption).",
            )
        return ToolResult.ok(taskFlowStage=next_stage.value, condition=condition.value, message=message)

    async def _phase_set_cause(self, args: Dict[str, Any], state: SessionState, session_id: str, work_order_id: str) -> ToolResult:
        cause = str(args.get("cause") or "").strip()
        if not cause:
            return ToolResult.fail("Please provide a brief cause description.")
        if not state.current_task_id or not state.current_task_entry_id:
            return ToolResult.fail(TASK_CONTEXT_MISSING)
        next_stage = advance_stage(state.task_flow_stage, TaskFlowStage.RESOLUTION)
        await self.data.update_entry(state.current_task_entry_id, cause=cause)
        await self.session_memory.merge(session_id, {"pending_task_cause": cause, "task_flow_stage": next_stage})
        return ToolResult.ok(taskFlowStage=next_stage.value, message=menus.RESOLUTION_PROMPT)

    async def _phase_set_resolution(self, args: Dict[str, Any], state: SessionState, session_id: str, work_order_id: str) -> ToolResult:
        resolution = str(args.get("resolution") or "").strip()
        if not resolution:
            return ToolResult.fail("Please provide a brief resolution description.")
        if not state.current_task_id or not state.current_task_entry_id:
            return ToolResult.fail(TASK_CONTEXT_MISSING)
        next_stage = advance_stage(state.task_flow_stage, TaskFlowStage.MEDIA)
        await self.data.update_entry(state.current_task_entry_id, resolution=resolution)
        await self.session_memory.merge(session_id, {"pending_task_resolution": resolution, "task_flow_stage": next_stage})
        message = menus.media_prompt(
            allow_skip=False,
            lead="Resolution saved. Please send photos/videos of this task now (you can add a caption).",
        )
        return ToolResult.ok(taskFlowStage=next_stage.value, message=message)

    async def _phase_skip_media(self, args: Dict[str, Any], state: SessionState, session_id: str, work_order_id: str) -> ToolResult:
        if not state.current_task_id:
            return ToolResult.fail(TASK_CONTEXT_MISSING)
        condition = state.current_task_condition
        if condition is None or condition.requires_media:
            return ToolResult.fail("Media is required for this condition. Please send at least one photo (you can add remarks as a caption).")
        next_stage = advance_stage(state.task_flow_stage, TaskFlowStage.REMARKS)
        await self.session_memory.merge(session_id, {"task_flow_stage": next_stage})
        return ToolResult.ok(
            taskFlowStage=next_stage.value,
            mediaSkipped=True,
            message=menus.remarks_prompt("Okay, skipping media for this Not Applicable condition."),
        )

    async def _phase_set_remarks(self, args: Dict[str, Any], state: SessionState, session_id: str, work_order_id: str) -> ToolResult:
        if not state.current_task_id or not state.current_task_entry_id:
            return ToolResult.fail(TASK_CONTEXT_MISSING)
        raw = str(args.get("remarks") or "").strip()
        skipped = raw.lower() in SKIP_WORDS or not raw
        if skipped and args.get("required"):
            return ToolResult.fail("Please provide a short remark for this task.")
        next_stage = advance_stage(state.task_flow_stage, TaskFlowStage.CONFIRM)
        remarks = None if skipped else raw
        await self.data.update_entry(state.current_task_entry_id, remarks=remarks)
        await self.session_memory.merge(session_id, {"pending_task_remarks": remarks, "task_flow_stage": next_stage})
        lead = "Okay, no remarks for this task." if skipped else "Got it, I saved your remark."
        return ToolResult.ok(
            taskFlowStage=next_stage.value,
            remarks=remarks,
            message=f"{lead}\n\nNext: {menus.FINALIZE_NEXT}",
        )

    async def _phase_finalize(self, args: Dict[str, Any], state: SessionState, session_id: str, work_order_id: str) -> ToolResult:
        task_id = str(args.get("taskId") or state.current_task_id or "")
        task = await self.data.get_task(task_id) if task_id else None
        if not task:
            return ToolResult.fail("Task context missing for finalize.")
        completed = bool(args.get("completed"))
        if completed:
            blocked = await self._finalize_blocker(state, session_id, task)
            if blocked:
                message, stage = blocked
                current = state.task_flow_stage
                if current is not None and state.current_task_id == task_id and STAGE_SEQUENCE.index(stage) <= STAGE_SEQUENCE.index(current):
                    await self.session_memory.merge(session_id, {"task_flow_stage": rewind_stage(state.task_flow_stage, stage)})
                return ToolResult.fail(message, taskFlowStage=stage.value)
        item_status = await self.data.update_task_status(task_id, "completed" if completed else "pending")
        item = await self.data.get_checklist_item(task["itemId"])
        await self.session_memory.merge(
            session_id,
            {**cleared(TASK_CONTEXT_FIELDS), "last_menu": LastMenu.TASKS, "last_menu_at": datetime.utcnow()},
        )
        location_completed = item_status == ITEM_COMPLETED
        if completed:
            message = "✅ Task marked complete."
            if location_completed and item:
                message += f" {item['name']} is now complete."
        else:
            message = "Okay, I've left this task open so you can come back to it."
        locations = await self._locations(work_order_id)
        return ToolResult.ok(
            taskCompleted=completed,
            locationCompleted=location_completed,
            message=message,
            locationsFormatted=menus.format_locations(locations),
        )

    async def _finalize_blocker(self, state: SessionState, session_id: str, task: dict) -> Optional[tuple]:
        entry = None
        if state.current_task_entry_id and state.current_task_id == task["id"]:
            entry = await self.data.get_entry(state.current_task_entry_id)
        if entry is None:
            entry = await self.data.find_entry(task["id"], await self._inspector_id(state, session_id))
        condition = (entry.condition if entry else None) or (TaskCondition(task["condition"]) if task.get("condition") else None)
        if condition is None:
            return "Please set the condition for this task first.", TaskFlowStage.CONDITION
        if condition.requires_cause_resolution and not ((entry and entry.cause or "").strip() and (entry and entry.resolution or "").strip()):
            return "Please provide both the cause and the resolution before completing this task.", TaskFlowStage.CAUSE
        if condition.requires_media and not (entry and entry.photos()):
            return "Media is required for this condition. Please send at least one photo before completing this task.", TaskFlowStage.MEDIA
        return None

    async def attach_task_media(self, session_id: str, url: str, media_type: str, caption: str | None = None) -> ToolResult:
        """Store an uploaded photo/video on the active task's entry."""
        state = await self.session_memory.get(session_id)
        if not state.in_task_flow() or not state.current_task_item_id:
            return ToolResult.fail("No active task to attach media to.")
        entry = await self._ensure_entry(state, session_id, state.current_task_id or "", state.current_task_item_id)
        if entry.condition is None and state.current_task_condition is not None:
            entry = await self.data.update_entry(entry.id, condition=state.current_task_condition)
        await self.data.add_entry_media(entry.id, url, media_type, caption)
        updates: Dict[str, Any] = {"current_task_entry_id": entry.id}
        stage = state.task_flow_stage
        if stage is TaskFlowStage.MEDIA:
            stage = advance_stage(stage, TaskFlowStage.REMARKS)
            updates["task_flow_stage"] = stage
        await self.session_memory.merge(session_id, updates)
        return ToolResult.ok(
            entryId=entry.id,
            taskName=state.current_task_name,
            taskFlowStage=stage.value if stage else None,
            mediaType=media_type,
        )

    # -- identity and media --------------------------------------------------

    async def collect_inspector_info(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        name = str(args.get("name") or "").strip()
        raw_phone = str(args.get("phone") or "").strip()
        if not name or not raw_phone:
            return ToolResult.fail("Please provide both your full name and your phone number (with country code).")
        phone = normalize_phone(raw_phone, self.country_code)
        wanted = set(phone_variants(phone))
        matches = [
            inspector
            for inspector in await self.data.list_inspectors()
            if inspector["name"].strip().lower() == name.lower() and wanted & set(phone_variants(inspector["mobilePhone"]))
        ]
        if len(matches) != 1:
            logger.info("inspector_identification_failed", extra={"session_id": session_id, "matches": len(matches)})
            return ToolResult.fail(
                "We couldn't find an inspector matching both the provided name and phone number. "
                "Please check both and try again, or contact admin for registration.",
                normalizedPhone=phone,
            )
        inspector = matches[0]
        await self.session_memory.merge(
            session_id,
            {"inspector_id": inspector["id"], "inspector_name": inspector["name"], "inspector_phone": inspector["mobilePhone"]},
        )
        return ToolResult.ok(
            inspector=inspector,
            normalizedPhone=phone,
            message=f"Welcome {inspector['name']}! I've identified you in our system.\n\nTry: \"What are my jobs today?\"",
        )

    async def get_task_media(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        target = str(args.get("taskId") or state.current_task_id or state.current_location_id or "")
        if not target:
            return ToolResult.fail("Could not find media for the current location. Please make sure you are in a specific room/location first.")
        media = await self.data.get_task_media(target)
        if not media:
            return ToolResult.fail("Task not found or no media available.")
        return ToolResult.ok(**media)

    async def get_location_media(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        state = await self.session_memory.get(session_id)
        job_id = str(args.get("workOrderId") or state.work_order_id or "")
        locations = await self._locations(job_id) if job_id else []
        target = None
        number = args.get("locationNumber")
        try:
            index = int(number) if number is not None else 0
        except (TypeError, ValueError):
            index = 0
        if 1 <= index <= len(locations):
            target = locations[index - 1]
        name = str(args.get("locationName") or "").strip().lower()
        if target is None and name:
            target = next((loc for loc in locations if str(loc["name"]).lower() == name), None)
        if target is None:
            available = ", ".join(menus.option(i, loc["name"]) for i, loc in enumerate(locations, start=1))
            return ToolResult.fail(f"Location not found. Available locations: {available}")
        media = await self.data.get_location_media(target["contractChecklistItemId"])
        if not media or not (media["photoCount"] or media["videoCount"]):
            return ToolResult.fail(f"No media found for {target['name']}.")
        return ToolResult.ok(**media)

    async def delete_task_media(self, args: Dict[str, Any], session_id: str) -> ToolResult:
        task_id = str(args.get("taskId") or "")
        url = str(args.get("mediaUrl") or "")
        media_type = str(args.get("mediaType") or "photo")
        if not task_id or not url or media_type not in {"photo", "video"}:
            return ToolResult.fail("Please provide the task, the media URL and whether it is a photo or video.")
        if not await self.data.delete_task_media(task_id, url, media_type):
            return ToolResult.fail("Media not found for this task.")
        return ToolResult.ok(deleted=True, taskId=task_id, mediaUrl=url)
