from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence

from models.schemas import CONDITION_LABELS, CONDITION_ORDER, TaskCondition, TaskFlowStage

DONE_SUFFIX = " (Done)"

LOCATIONS_HEADER = "Here are the locations available for inspection:"
LOCATIONS_NEXT = "reply with the location number to continue."
FINALIZE_NEXT = "reply [1] if this task is complete, [2] if you still have more to do for it."
FINALIZE_PROMPT = "Please confirm: reply [1] if this task is complete, or [2] if you still have more to do for it."
CONFIRM_GUARD = "I need your confirmation to continue.\n\nReply [1] to confirm, or [2] to choose another job or make changes."
CONFIRM_INVALID = "That option isn't valid here.\n\nReply [1] to confirm this job, or [2] to pick another one."
CAUSE_PROMPT = "Please describe the cause for this issue."
RESOLUTION_PROMPT = "Thanks. Please provide the resolution."
RESOLUTION_REPROMPT = "Please provide the resolution for this issue."

JOB_EDIT_OPTIONS = [
    "Different job selection",
    "Customer name update",
    "Property address change",
    "Time rescheduling",
    "Work order status change (SCHEDULED/STARTED/CANCELLED/COMPLETED)",
]

JOB_EDIT_PROMPTS: Dict[str, str] = {
    "customer": "Please enter the new customer name.",
    "address": "Please enter the new property address (you can include postal code after a comma).",
    "time": "Please enter the new time (e.g., 14:30 or 2:30 pm).",
    "status": "Please enter the new work order status: SCHEDULED, STARTED, CANCELLED, or COMPLETED.",
}


def option(number: int, label: str, done: bool = False) -> str:
    return f"[{number}] {label}{DONE_SUFFIX if done else ''}"


def numbered(labels: Iterable[str]) -> List[str]:
    return [option(i, label) for i, label in enumerate(labels, start=1)]


def with_go_back(lines: Sequence[str]) -> List[str]:
    return [*lines, option(len(lines) + 1, "Go back")]


def render_menu(header: str, lines: Sequence[str], next_instruction: str) -> str:
    return "\n".join([header, "", *lines, "", f"Next: {next_instruction}"])


def format_locations(locations: Iterable[Dict[str, Any]]) -> List[str]:
    return [option(i, str(loc.get("name")), bool(loc.get("isCompleted"))) for i, loc in enumerate(locations, start=1)]


def format_sub_locations(subs: Iterable[Any]) -> List[str]:
    lines: List[str] = []
    for i, sub in enumerate(subs, start=1):
        name = sub.get("name") if isinstance(sub, dict) else getattr(sub, "name", "")
        status = sub.get("status") if isinstance(sub, dict) else getattr(sub, "status", "")
        lines.append(option(i, str(name), status == "completed"))
    return lines


def render_locations(formatted: Sequence[str], header: str = LOCATIONS_HEADER, next_instruction: str = LOCATIONS_NEXT) -> str:
    return render_menu(header, formatted, next_instruction)


def render_sub_locations(header: str, formatted: Sequence[str]) -> str:
    lines = with_go_back(formatted)
    return render_menu(header, lines, f"reply with your sub-location choice, or [{len(lines)}] to go back.")


def render_tasks(location_name: str, tasks: Sequence[Dict[str, Any]]) -> str:
    lines = [option(int(t.get("number") or i), str(t.get("description")), t.get("displayStatus") == "done") for i, t in enumerate(tasks, start=1)]
    lines = with_go_back(lines)
    return render_menu(
        f"In {location_name}, here are the tasks available for inspection:",
        lines,
        f"Reply with the task number to continue, or [{len(lines)}] to go back.",
    )


def condition_menu() -> List[str]:
    return [option(i, CONDITION_LABELS[c]) for i, c in enumerate(CONDITION_ORDER, start=1)]


def render_condition_prompt(task_name: str | None = None) -> str:
    body = "\n".join(["Set the condition for this task:", *condition_menu(), "", "Next: reply 1-5 to set the condition."])
    if task_name is not None:
        return f"Starting: {task_name}\n\n{body}"
    return body


def media_prompt(allow_skip: bool, lead: str = "Please send photos/videos of this task now (you can add a caption).") -> str:
    if allow_skip:
        return f"{lead} Or reply 'skip' to continue.\n\nNext: send media or reply 'skip'."
    return f"{lead}\n\nNext: send at least one photo or video."


def remarks_prompt(lead: str = "") -> str:
    text = "Add any remarks for this task, or reply 'skip' if there are none.\n\nNext: send your remarks or reply 'skip'."
    return f"{lead}\n\n{text}" if lead else text


def render_jobs(jobs: Sequence[Dict[str, Any]], intro: str) -> str:
    lines = [intro]
    for job in jobs:
        lines.extend(
            [
                "",
                str(job.get("selectionNumber")),
                f"🏠 Property: {job.get('property')}",
                f"⏰ Time: {job.get('time')}",
                f"  👤 Customer: {job.get('customer')}",
                f"  ⭐ Priority: {job.get('priority')}",
                f"  Status: {job.get('status')}",
                "---",
            ]
        )
    lines.append(f"Type {', '.join(str(j.get('selectionNumber')) for j in jobs)} to select a job.")
    return "\n".join(lines)


def no_jobs_text(greeting: str) -> str:
    return f"{greeting} You have no inspection jobs scheduled for today.\n\nNext: reply [1] to refresh your jobs."


def render_job_confirmation(details: Dict[str, Any], header: str, next_instruction: str) -> str:
    lines = [
        header,
        "",
        f"🏠 Property: {details.get('property')}",
        f"⏰ Time: {details.get('time')}",
        f"👤 Customer: {details.get('customer')}",
        f"Status: {details.get('status')}",
        "",
        option(1, "Yes"),
        option(2, "No"),
        "",
        f"Next: {next_instruction}",
    ]
    return "\n".join(lines)


def render_job_edit_menu(header: str) -> str:
    return render_menu(header, numbered(JOB_EDIT_OPTIONS), f"reply [1-{len(JOB_EDIT_OPTIONS)}] with your choice.")


def stage_prompt(stage: TaskFlowStage | None, condition: TaskCondition | None = None) -> str:
    if stage is TaskFlowStage.CONDITION:
        return render_condition_prompt()
    if stage is TaskFlowStage.CAUSE:
        return CAUSE_PROMPT
    if stage is TaskFlowStage.RESOLUTION:
        return RESOLUTION_REPROMPT
    if stage is TaskFlowStage.MEDIA:
        return media_prompt(allow_skip=condition is TaskCondition.NOT_APPLICABLE)
    if stage is TaskFlowStage.REMARKS:
        return remarks_prompt()
    if stage is TaskFlowStage.CONFIRM:
        return FINALIZE_PROMPT
    return ""
