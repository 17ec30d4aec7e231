from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List

from jsonschema import Draft7Validator, ValidationError

from compliance.audit_logger import AuditLogger
from models.schemas import CompletePhase, JobEditType, ToolCallRecord
from tools.inspection_tools import InspectionTools
from tools.results import ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], str], Awaitable[ToolResult]]


def _string(description: str, **extra: Any) -> Dict[str, Any]:
    return {"type": "string", "description": description, **extra}


def _schema(properties: Dict[str, Any] | None = None, required: List[str] | None = None) -> Dict[str, Any]:
    return {"type": "object", "properties": properties or {}, "required": required or []}


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "getTodayJobs",
        "description": "List today's inspection jobs for the identified inspector. Pass reset=true to clear any previous job context.",
        "parameters": _schema(
            {
                "inspectorId": _string("Inspector id, if already known."),
                "inspectorPhone": _string("Inspector phone number, including country code."),
                "reset": {"type": "boolean", "description": "Clear previous job, location and task context first."},
            }
        ),
    },
    {
        "name": "confirmJobSelection",
        "description": "Show destination details for a selected job and ask the inspector to confirm before starting.",
        "parameters": _schema({"jobId": _string("Work order id from getTodayJobs.")}, ["jobId"]),
    },
    {
        "name": "startJob",
        "description": "Start a confirmed job and return its locations. Only valid after confirmJobSelection.",
        "parameters": _schema({"jobId": _string("Work order id, or the [n] selection number from the job list.")}, ["jobId"]),
    },
    {
        "name": "getJobLocations",
        "description": "List the locations of the started job with completion status.",
        "parameters": _schema({"jobId": _string("Work order id.")}, ["jobId"]),
    },
    {
        "name": "getSubLocations",
        "description": "List sub-locations inside a location.",
        "parameters": _schema(
            {
                "workOrderId": _string("Work order id."),
                "contractChecklistItemId": _string("Location id (contractChecklistItemId)."),
                "locationName": _string("Location name."),
            },
            ["workOrderId", "contractChecklistItemId"],
        ),
    },
    {
        "name": "getTasksForLocation",
        "description": "List the tasks for a location (and sub-location when it has several).",
        "parameters": _schema(
            {
                "workOrderId": _string("Work order id."),
                "location": _string("Location name."),
                "contractChecklistItemId": _string("Location id, preferred over the name."),
                "subLocationId": _string("Sub-location id."),
            },
            ["workOrderId", "location"],
        ),
    },
    {
        "name": "completeTask",
        "description": (
            "Drive the per-task completion flow one phase at a time: start, set_condition, set_cause, "
            "set_resolution, skip_media, set_remarks, finalize."
        ),
        "parameters": _schema(
            {
                "phase": _string("Flow phase.", enum=[p.value for p in CompletePhase]),
                "workOrderId": _string("Work order id."),
                "taskId": _string("Task id."),
                "conditionNumber": {"type": "integer", "description": "1 Good, 2 Fair, 3 Un-Satisfactory, 4 Un-Observable, 5 Not Applicable."},
                "cause": _string("Cause of the issue."),
                "resolution": _string("Resolution for the issue."),
                "remarks": _string("Remarks text, or 'skip'."),
                "required": {"type": "boolean", "description": "Reject empty remarks."},
                "completed": {"type": "boolean", "description": "finalize: true marks the task complete, false leaves it open."},
            },
            ["phase", "workOrderId"],
        ),
    },
    {
        "name": "markLocationComplete",
        "description": "Mark a location complete once all of its tasks are complete.",
        "parameters": _schema(
            {"workOrderId": _string("Work order id."), "contractChecklistItemId": _string("Location id.")},
            ["workOrderId", "contractChecklistItemId"],
        ),
    },
    {
        "name": "markSubLocationComplete",
        "description": "Mark a sub-location complete once all of its tasks are complete.",
        "parameters": _schema(
            {
                "workOrderId": _string("Work order id."),
                "contractChecklistItemId": _string("Location id."),
                "subLocationId": _string("Sub-location id."),
            },
            ["workOrderId", "contractChecklistItemId", "subLocationId"],
        ),
    },
    {
        "name": "updateJobDetails",
        "description": "Update customer name, property address, scheduled time or status of a job.",
        "parameters": _schema(
            {
                "jobId": _string("Work order id."),
                "updateType": _string("Field to update.", enum=[t.value for t in JobEditType]),
                "newValue": _string("New value."),
            },
            ["jobId", "updateType", "newValue"],
        ),
    },
    {
        "name": "collectInspectorInfo",
        "description": "Identify an inspector by full name and phone number.",
        "parameters": _schema({"name": _string("Full name."), "phone": _string("Phone number.")}, ["name", "phone"]),
    },
    {
        "name": "getTaskMedia",
        "description": "Show photos and videos recorded for a task (falls back to the current location).",
        "parameters": _schema({"taskId": _string("Task id or location id.")}),
    },
    {
        "name": "getLocationMedia",
        "description": "Show photos and videos for a location by list number or name.",
        "parameters": _schema(
            {
                "locationNumber": {"type": "integer", "description": "Location number from the list."},
                "locationName": _string("Location name."),
                "workOrderId": _string("Work order id."),
            }
        ),
    },
    {
        "name": "deleteTaskMedia",
        "description": "Remove a photo or video from a task.",
        "parameters": _schema(
            {
                "taskId": _string("Task id."),
                "mediaUrl": _string("URL of the media to remove."),
                "mediaType": _string("photo or video.", enum=["photo", "video"]),
            },
            ["taskId", "mediaUrl", "mediaType"],
        ),
    },
    {
        "name": "setLocationCondition",
        "description": "Set the overall condition of a location (1-5).",
        "parameters": _schema(
            {
                "workOrderId": _string("Work order id."),
                "location": _string("Location name."),
                "conditionNumber": {"type": "integer", "description": "1-5 as in completeTask."},
            },
            ["workOrderId", "location", "conditionNumber"],
        ),
    },
    {
        "name": "addLocationRemarks",
        "description": "Save remarks for the current location.",
        "parameters": _schema({"remarks": _string("Remarks text.")}, ["remarks"]),
    },
    {
        "name": "getJobProgress",
        "description": "Task completion counts for a job.",
        "parameters": _schema({"workOrderId": _string("Work order id.")}, ["workOrderId"]),
    },
]

def _coerce(schema: Dict[str, Any], value: Any) -> Any:
    kind = schema.get("type")
    if kind == "integer" and isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    if kind == "boolean" and isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    if kind == "string" and isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _describe(error: ValidationError) -> str:
    name = error.path[0] if error.path else "arguments"
    if error.validator == "type":
        return f"Invalid argument '{name}': expected {error.validator_value}."
    if error.validator == "enum":
        return f"Invalid argument '{name}': must be one of {', '.join(map(str, error.validator_value))}."
    return f"Invalid argument '{name}': {error.message}."


def validate_args(parameters: Dict[str, Any], args: Dict[str, Any]) -> tuple[Dict[str, Any], str | None]:
    """Check ``args`` against a tool's JSON schema.

    Numeric strings are coerced for integer fields and ``"true"``/``"false"``
    for boolean fields before validation. Unknown and null arguments are dropped;
    an empty string does not satisfy a required argument.
    """
    props: Dict[str, Any] = parameters.get("properties", {})
    clean = {name: _coerce(props[name], value) for name, value in args.items() if name in props and value is not None}
    required = parameters.get("required", [])
    instance = {k: v for k, v in clean.items() if not (k in required and v == "")}

    problems: List[str] = []
    missing: List[str] = []
    for error in sorted(Draft7Validator(parameters).iter_errors(instance), key=lambda e: list(e.path)):
        if error.validator == "required":
            missing.extend(n for n in error.validator_value if n not in instance and n not in missing)
        # completeTask parses its own phase so it can answer bulk requests.
        elif not (error.validator == "enum" and list(error.path) == ["phase"]):
            problems.append(_describe(error))
    if problems:
        return clean, problems[0]
    if missing:
        return clean, f"Missing required argument(s): {', '.join(missing)}."
    return clean, None


class ToolRegistry:
    def __init__(self, tools: InspectionTools | None = None, audit_logger: AuditLogger | None = None) -> None:
        self.tools = tools or InspectionTools()
        self.audit_logger = audit_logger or AuditLogger()
        self._definitions = {d["name"]: d for d in TOOL_DEFINITIONS}
        self._handlers: Dict[str, ToolHandler] = {
            "getTodayJobs": self.tools.get_today_jobs,
            "confirmJobSelection": self.tools.confirm_job_selection,
            "startJob": self.tools.start_job,
            "getJobLocations": self.tools.get_job_locations,
            "getSubLocations": self.tools.get_sub_locations,
            "getTasksForLocation": self.tools.get_tasks_for_location,
            "completeTask": self.tools.complete_task,
            "markLocationComplete": self.tools.mark_location_complete,
            "markSubLocationComplete": self.tools.mark_sub_location_complete,
            "updateJobDetails": self.tools.update_job_details,
            "collectInspectorInfo": self.tools.collect_inspector_info,
            "getTaskMedia": self.tools.get_task_media,
            "getLocationMedia": self.tools.get_location_media,
            "deleteTaskMedia": self.tools.delete_task_media,
            "setLocationCondition": self.tools.set_location_condition,
            "addLocationRemarks": self.tools.add_location_remarks,
            "getJobProgress": self.tools.get_job_progress,
        }

    def definitions(self) -> List[Dict[str, Any]]:
        return [dict(d) for d in TOOL_DEFINITIONS]

    def openai_tools(self) -> List[Dict[str, Any]]:
        return [{"type": "function", "function": d} for d in self.definitions()]

    def names(self) -> List[str]:
        return list(self._handlers)

    async def call(
        self,
        name: str,
        args: Dict[str, Any] | None,
        session_id: str,
        records: List[ToolCallRecord] | None = None,
        source: str = "llm",
    ) -> ToolResult:
        """Run a tool by name. Never raises; failures come back as ToolResult."""
        started = time.perf_counter()
        handler = self._handlers.get(name)
        args = dict(args or {})
        if handler is None:
            result = ToolResult.fail(f"Unknown tool: {name}")
        else:
            clean, error = validate_args(self._definitions[name]["parameters"], args)
            if error:
                result = ToolResult.fail(error)
            else:
                try:
                    result = await handler(clean, session_id)
                except Exception:
                    logger.exception("tool_call_failed", extra={"tool": name, "session_id": session_id})
                    result = ToolResult.fail(f"{name} failed")
        record = ToolCallRecord(
            tool_name=name,
            args=args,
            result_summary=(result.error or "ok")[:200],
            success=result.success,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        if records is not None:
            records.append(record)
        self.audit_logger.log_tool_call(session_id, record, source=source)
        logger.info(
            "tool_call",
            extra={"tool": name, "session_id": session_id, "success": result.success, "duration_ms": record.duration_ms},
        )
        return result

    async def execute(self, name: str, args: Dict[str, Any] | None, session_id: str, records: List[ToolCallRecord] | None = None) -> str:
        return (await self.call(name, args, session_id, records)).to_json()
