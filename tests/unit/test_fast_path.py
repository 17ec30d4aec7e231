from __future__ import annotations

import asyncio

from agents.fast_path import FastPathInterpreter, is_jobs_intent, parse_selection
from compliance.audit_logger import AuditLogger
from memory.session_memory import SessionMemoryStore
from models.schemas import JobEditMode, JobStatus, LastMenu, TaskCondition, TaskFlowStage
from tools import menus
from tools.inspection_data import InspectionDataClient
from tools.inspection_tools import InspectionTools
from tools.registry import ToolRegistry

PHONE = "6591234567"


def _build(tmp_path, **flags):
    memory = SessionMemoryStore(path="")
    audit = AuditLogger(path=str(tmp_path / "audit.jsonl"))
    tools = InspectionTools(data=InspectionDataClient(), session_memory=memory)
    registry = ToolRegistry(tools, audit_logger=audit)
    flags.setdefault("fast_task_flow", True)
    flags.setdefault("confirm_text", False)
    return FastPathInterpreter(registry, session_memory=memory, **flags), memory, audit


async def _say(fp, *messages):
    reply = None
    for text in messages:
        reply = await fp.try_handle(PHONE, text)
    return reply


def test_parse_selection_accepts_common_shapes():
    assert parse_selection("2") == 2
    assert parse_selection("[3]") == 3
    assert parse_selection("option 4") == 4
    assert parse_selection("1.") == 1
    assert parse_selection(" 12 ") == 12
    assert parse_selection("1 2") is None
    assert parse_selection("room 1") is None
    assert parse_selection("") is None


def test_jobs_intent_uses_word_boundaries_and_strict_mode():
    assert is_jobs_intent("what are my jobs")
    assert is_jobs_intent("Show schedule please")
    assert is_jobs_intent("today's inspections")
    assert not is_jobs_intent("two")
    assert not is_jobs_intent("jobsite was flooded")
    assert is_jobs_intent("jobs", strict=True)
    assert is_jobs_intent("what are my jobs", strict=True)
    assert not is_jobs_intent("leak found in the job area today", strict=True)


def test_jobs_request_lists_numbered_jobs(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        reply = await fp.try_handle(PHONE, "What are my jobs today?")
        assert reply.startswith("Hi Ken Tan! Here are your jobs for today:")
        assert "👤 Customer: Alice Lim" in reply
        assert reply.endswith("Type [1], [2] to select a job.")
        state = await memory.get(PHONE)
        assert state.inspector_id == "insp-1"
        assert state.last_menu is LastMenu.JOBS

    asyncio.run(_run())


def test_unknown_inspector_falls_through_to_llm(tmp_path):
    async def _run():
        fp, _, _ = _build(tmp_path)
        assert await fp.try_handle("6500000000", "jobs") is None
        assert await fp.try_handle(PHONE, "hello there") is None

    asyncio.run(_run())


def test_out_of_range_job_selection(tmp_path):
    async def _run():
        fp, _, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "5")
        assert reply == "The selection [5] is not available. Please choose [1], [2]."
        reply = await _say(fp, "0")
        assert reply == "The selection [0] is not available. Please choose [1], [2]."

    asyncio.run(_run())


def test_job_selection_asks_for_confirmation(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1")
        assert reply.startswith("Please confirm the destination details before starting the inspection:")
        assert "🏠 Property: Blk 123 Tampines Street 11, 521123" in reply
        assert "[1] Yes\n[2] No" in reply
        assert reply.endswith("Next: reply [1] to confirm or [2] to pick another job.")
        state = await memory.get(PHONE)
        assert state.job_status is JobStatus.CONFIRMING
        assert state.work_order_id == "wo-1001"
        assert state.postal_code == "521123"

    asyncio.run(_run())


def test_confirmation_guard_blocks_other_input(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        await _say(fp, "jobs", "1")
        assert await fp.try_handle(PHONE, "the kitchen please") == menus.CONFIRM_GUARD
        assert await fp.try_handle(PHONE, "7") == menus.CONFIRM_INVALID
        assert await fp.try_handle(PHONE, "yes") is None
        state = await memory.get(PHONE)
        assert state.job_status is JobStatus.CONFIRMING

    asyncio.run(_run())


def test_yes_and_no_confirm_when_text_confirmation_enabled(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path, confirm_text=True)
        reply = await _say(fp, "jobs", "1", "yes")
        assert reply.startswith("Job started.")
        fp, memory, _ = _build(tmp_path, confirm_text=True)
        reply = await _say(fp, "jobs", "1", "no")
        assert reply.startswith("Okay, let’s choose another job. Here are your jobs for today:")
        assert (await memory.get(PHONE)).job_status is JobStatus.NONE

    asyncio.run(_run())


def test_confirm_starts_job_once(tmp_path):
    async def _run():
        fp, memory, audit = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "1")
        assert reply == (
            "Job started. Here are the locations available for inspection:\n\n"
            "[1] Living Room\n[2] Kitchen\n[3] Bedroom 1\n\n"
            "Next: Reply with the number of the location you want to inspect next."
        )
        state = await memory.get(PHONE)
        assert state.job_status is JobStatus.STARTED
        assert state.last_menu is LastMenu.LOCATIONS

        # A repeated [1] now selects the first location instead of restarting the job.
        reply = await fp.try_handle(PHONE, "1")
        assert reply.startswith("In Living Room, here are the tasks available for inspection:")
        starts = [r for r in audit.tool_calls_for(PHONE) if r["tool_name"] == "startJob"]
        assert len(starts) == 1
        assert all(r["source"] == "fast_path" for r in audit.tool_calls_for(PHONE))

    asyncio.run(_run())


def test_edit_menu_option_one_picks_another_job(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "2")
        assert reply.startswith("What would you like to change about the job? Here are some options:")
        assert "[1] Different job selection" in reply
        assert reply.endswith("Next: reply [1-5] with your choice.")
        assert (await memory.get(PHONE)).job_edit_mode is JobEditMode.MENU

        reply = await fp.try_handle(PHONE, "1")
        assert reply.startswith("Okay, let’s choose another job. Here are your jobs for today:")
        state = await memory.get(PHONE)
        assert state.job_status is JobStatus.NONE
        assert state.job_edit_mode is None
        assert state.work_order_id is None
        assert state.last_menu is LastMenu.JOBS

    asyncio.run(_run())


def test_edit_customer_name_then_reconfirm(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "2", "2")
        assert reply == "Please enter the new customer name.\n\nNext: send the new customer value."
        assert (await memory.get(PHONE)).job_edit_mode is JobEditMode.AWAIT_VALUE

        reply = await fp.try_handle(PHONE, "Alice Tan")
        assert reply.startswith("Here are the updated job details. Please confirm before starting the inspection:")
        assert "👤 Customer: Alice Tan" in reply
        assert reply.endswith("Next: reply [1] to confirm or [2] to make more changes.")
        state = await memory.get(PHONE)
        assert state.job_edit_mode is None
        assert state.job_status is JobStatus.CONFIRMING
        assert state.customer_name == "Alice Tan"

    asyncio.run(_run())


def test_invalid_time_edit_is_reported(tmp_path):
    async def _run():
        fp, _, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "2", "4", "sometime soon")
        assert reply == "I couldn't update the time. Please try again or pick another option."

    asyncio.run(_run())


def test_invalid_edit_menu_option_reprompts(tmp_path):
    async def _run():
        fp, _, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "2", "9")
        assert reply.startswith("Please choose one of the following options:")

    asyncio.run(_run())


def test_invalid_location_number(tmp_path):
    async def _run():
        fp, _, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "1", "9")
        assert reply.startswith("That location number isn't valid.\n\n[1] Living Room")
        assert reply.endswith("Next: reply with the number of the location you want to inspect.")

    asyncio.run(_run())


def test_sub_location_navigation_and_go_back(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "1", "3")
        assert reply == (
            "You've selected Bedroom 1. Here are the available sub-locations:\n\n"
            "[1] Wardrobe\n[2] Window\n[3] Go back\n\n"
            "Next: reply with your sub-location choice, or [3] to go back."
        )
        reply = await fp.try_handle(PHONE, "1")
        assert reply == (
            "In Bedroom 1, here are the tasks available for inspection:\n\n"
            "[1] Check doors\n[2] Check hinges\n[3] Go back\n\n"
            "Next: Reply with the task number to continue, or [3] to go back."
        )
        assert (await memory.get(PHONE)).current_sub_location_name == "Wardrobe"

        reply = await fp.try_handle(PHONE, "3")
        assert reply.startswith("You're back at Bedroom 1. Here are the sub-locations:\n\n[1] Wardrobe")

        reply = await fp.try_handle(PHONE, "3")
        assert reply.startswith(menus.LOCATIONS_HEADER)
        state = await memory.get(PHONE)
        assert state.last_menu is LastMenu.LOCATIONS
        assert state.current_location is None
        assert state.current_sub_location_id is None

    asyncio.run(_run())


def test_invalid_sub_location_and_task_numbers(tmp_path):
    async def _run():
        fp, _, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "1", "3", "7")
        assert reply.startswith("That sub-location number isn't valid.\n\n[1] Wardrobe")
        reply = await _say(fp, "2", "5")
        assert reply.startswith("That task number isn't valid.\n\nIn Bedroom 1, here are the tasks")

    asyncio.run(_run())


def test_free_text_redisplays_current_menu(tmp_path):
    async def _run():
        fp, _, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "1", "where do I go?")
        assert reply.startswith(menus.LOCATIONS_HEADER)
        reply = await _say(fp, "3", "hmm")
        assert reply.startswith("You're at Bedroom 1. Here are the sub-locations:")
        reply = await _say(fp, "2", "what now")
        assert reply.startswith("In Bedroom 1, here are the tasks available for inspection:")

    asyncio.run(_run())


def test_task_selection_left_to_llm_without_fast_task_flow(tmp_path):
    async def _run():
        fp, _, _ = _build(tmp_path, fast_task_flow=False)
        reply = await _say(fp, "jobs", "1", "1", "2")
        assert reply.startswith("In Kitchen")
        assert await fp.try_handle(PHONE, "1") is None

    asyncio.run(_run())


def test_not_applicable_task_flow(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "1", "2", "1")
        assert reply.startswith("Starting: Check cabinets\n\nSet the condition for this task:\n[1] Good")

        assert await fp.try_handle(PHONE, "great") == menus.render_condition_prompt()
        assert await fp.try_handle(PHONE, "9") == menus.render_condition_prompt()

        reply = await fp.try_handle(PHONE, "5")
        assert "Or reply 'skip' to continue." in reply

        reply = await fp.try_handle(PHONE, "skip")
        assert reply.startswith("Okay, skipping media for this Not Applicable condition.")

        assert await fp.try_handle(PHONE, "2") == menus.remarks_prompt()
        reply = await fp.try_handle(PHONE, "Cabinet removed by owner")
        assert reply.startswith("Got it, I saved your remark.")

        assert await fp.try_handle(PHONE, "maybe") == menus.FINALIZE_PROMPT
        reply = await fp.try_handle(PHONE, "1")
        assert reply.startswith("✅ Task marked complete.\n\nIn Kitchen, here are the tasks available for inspection:")
        assert "[1] Check cabinets (Done)" in reply
        state = await memory.get(PHONE)
        assert state.task_flow_stage is None
        assert state.current_task_id is None
        assert state.last_menu is LastMenu.TASKS

    asyncio.run(_run())


def test_media_required_for_good_condition(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        await _say(fp, "jobs", "1", "1", "2", "1", "1")
        reply = await fp.try_handle(PHONE, "skip")
        assert reply == "Media is required for this condition. Please send at least one photo (you can add remarks as a caption)."
        reply = await fp.try_handle(PHONE, "looks fine")
        assert reply == menus.media_prompt(allow_skip=False)
        assert (await memory.get(PHONE)).task_flow_stage is TaskFlowStage.MEDIA

    asyncio.run(_run())


def test_fair_condition_requires_cause_and_resolution(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        reply = await _say(fp, "jobs", "1", "1", "2", "1", "2")
        assert reply == menus.CAUSE_PROMPT
        assert await fp.try_handle(PHONE, "3") == menus.CAUSE_PROMPT
        # A jobs keyword inside a cause is free text, not a jobs request.
        reply = await fp.try_handle(PHONE, "Water damage found during today inspection")
        assert reply == menus.RESOLUTION_PROMPT
        assert await fp.try_handle(PHONE, "1") == menus.RESOLUTION_REPROMPT
        reply = await fp.try_handle(PHONE, "Replace the cabinet base")
        assert reply.startswith("Resolution saved.")
        state = await memory.get(PHONE)
        assert state.task_flow_stage is TaskFlowStage.MEDIA
        assert state.pending_task_cause == "Water damage found during today inspection"

    asyncio.run(_run())


def test_go_back_pauses_task(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        await _say(fp, "jobs", "1", "1", "2", "2")
        reply = await fp.try_handle(PHONE, "go back")
        assert reply.startswith("Okay, I've paused this task.\n\nIn Kitchen, here are the tasks")
        state = await memory.get(PHONE)
        assert state.task_flow_stage is None
        assert not state.in_task_flow()

    asyncio.run(_run())


def test_jobs_request_resets_context(tmp_path):
    async def _run():
        fp, memory, _ = _build(tmp_path)
        await _say(fp, "jobs", "1", "1", "2", "1")
        reply = await fp.try_handle(PHONE, "show my jobs")
        assert reply.startswith("Hi Ken Tan!")
        state = await memory.get(PHONE)
        assert state.work_order_id is None
        assert state.current_task_id is None
        assert state.job_status is JobStatus.NONE

    asyncio.run(_run())


def test_tool_errors_fall_back_to_llm(tmp_path):
    class ExplodingRegistry:
        async def call(self, *args, **kwargs):
            raise RuntimeError("boom")

    async def _run():
        memory = SessionMemoryStore(path="")
        fp = FastPathInterpreter(ExplodingRegistry(), session_memory=memory)
        assert await fp.try_handle(PHONE, "jobs") is None

    asyncio.run(_run())


def _comparable(state):
    return state.model_dump(exclude={"current_task_entry_id", "last_menu_at", "created_at", "last_updated_at"})


def _entries(data):
    return sorted(
        (e.item_id, e.task_id, e.condition, e.cause, e.resolution, e.remarks, len(e.media))
        for e in data.entries.values()
    )


def test_fast_path_matches_direct_tool_calls(tmp_path):
    async def _run():
        fp, memory, audit = _build(tmp_path)
        await _say(fp, "jobs", "1", "1", "2", "1", "5", "skip", "Cabinet removed by owner", "1")

        direct_memory = SessionMemoryStore(path="")
        direct_tools = InspectionTools(data=InspectionDataClient(), session_memory=direct_memory)
        registry = ToolRegistry(direct_tools, audit_logger=AuditLogger(path=str(tmp_path / "direct.jsonl")))
        kitchen = {"workOrderId": "wo-1001", "location": "Kitchen", "contractChecklistItemId": "wo-1001-item-2"}
        task = {"workOrderId": "wo-1001", "taskId": "wo-1001-item-2-task-1"}
        steps = [
            ("getTodayJobs", {"inspectorPhone": PHONE, "reset": True}),
            ("getTodayJobs", {"inspectorPhone": PHONE}),
            ("confirmJobSelection", {"jobId": "wo-1001"}),
            ("startJob", {"jobId": "wo-1001"}),
            ("getJobLocations", {"jobId": "wo-1001"}),
            ("getJobLocations", {"jobId": "wo-1001"}),
            ("getTasksForLocation", kitchen),
            ("getTasksForLocation", kitchen),
            ("completeTask", {"phase": "start", **task}),
            ("completeTask", {"phase": "set_condition", "conditionNumber": 5, **task}),
            ("completeTask", {"phase": "skip_media", **task}),
            ("completeTask", {"phase": "set_remarks", "remarks": "Cabinet removed by owner", **task}),
            ("completeTask", {"phase": "finalize", "completed": True, **task}),
            ("getTasksForLocation", kitchen),
        ]
        for name, args in steps:
            result = await registry.call(name, args, PHONE)
            assert result.success, name

        assert [r["tool_name"] for r in audit.tool_calls_for(PHONE)] == [name for name, _ in steps]
        assert _comparable(await memory.get(PHONE)) == _comparable(await direct_memory.get(PHONE))
        assert _entries(fp.registry.tools.data) == _entries(direct_tools.data)
        assert _entries(direct_tools.data) == [
            ("wo-1001-item-2", "wo-1001-item-2-task-1", TaskCondition.NOT_APPLICABLE, None, None, "Cabinet removed by owner", 0)
        ]
        assert (await direct_tools.data.get_task("wo-1001-item-2-task-1"))["status"] == "COMPLETED"

    asyncio.run(_run())
