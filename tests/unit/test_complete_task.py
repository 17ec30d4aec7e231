from __future__ import annotations

import asyncio

from memory.session_memory import SessionMemoryStore
from models.schemas import TaskCondition, TaskFlowStage
from tools import menus
from tools.inspection_data import InspectionDataClient
from tools.inspection_tools import InspectionTools

SESSION = "6591234567"
JOB = "wo-1001"
CABINETS = "wo-1001-item-2-task-1"
SINK = "wo-1001-item-2-task-2"


async def _ready(task_id: str = CABINETS, tools: InspectionTools | None = None) -> InspectionTools:
    tools = tools or InspectionTools(data=InspectionDataClient(), session_memory=SessionMemoryStore(path=""))
    await tools.get_today_jobs({"inspectorPhone": SESSION}, SESSION)
    await tools.confirm_job_selection({"jobId": JOB}, SESSION)
    await tools.start_job({"jobId": JOB}, SESSION)
    await tools.get_tasks_for_location({"workOrderId": JOB, "location": "Kitchen"}, SESSION)
    started = await tools.complete_task({"phase": "start", "workOrderId": JOB, "taskId": task_id}, SESSION)
    assert started.success
    return tools


async def _phase(tools: InspectionTools, phase: str, **args):
    return await tools.complete_task({"phase": phase, "workOrderId": JOB, **args}, SESSION)


def test_start_enters_condition_stage():
    async def _run():
        tools = await _ready()
        state = await tools.session_memory.get(SESSION)
        assert state.task_flow_stage is TaskFlowStage.CONDITION
        assert state.current_task_name == "Check cabinets"
        assert state.current_task_location_name == "Kitchen"

    asyncio.run(_run())


def test_start_job_requires_confirmation_first():
    async def _run():
        tools = InspectionTools(data=InspectionDataClient(), session_memory=SessionMemoryStore(path=""))
        result = await tools.start_job({"jobId": JOB}, SESSION)
        assert not result.success
        assert result.error.startswith("Please confirm the destination first.")
        result = await tools.get_job_locations({"jobId": JOB}, SESSION)
        assert not result.success

    asyncio.run(_run())


def test_invalid_condition_number_is_rejected():
    async def _run():
        tools = await _ready()
        result = await _phase(tools, "set_condition", conditionNumber=9)
        assert result.error == "Invalid condition number. Please use 1-5."
        assert (await tools.session_memory.get(SESSION)).task_flow_stage is TaskFlowStage.CONDITION

    asyncio.run(_run())


def test_out_of_order_phase_holds_current_stage():
    async def _run():
        tools = await _ready()
        await _phase(tools, "set_condition", conditionNumber=1)
        result = await _phase(tools, "set_cause", cause="loose hinge")
        assert not result.success
        assert result.error.startswith("That step isn't expected right now.")
        assert result.error.endswith(menus.media_prompt(allow_skip=False))
        assert (await tools.session_memory.get(SESSION)).task_flow_stage is TaskFlowStage.MEDIA

    asyncio.run(_run())


def test_finalize_without_media_rewinds_to_media():
    async def _run():
        tools = await _ready()
        await _phase(tools, "set_condition", conditionNumber=2)
        await _phase(tools, "set_cause", cause="Hinge worn")
        await _phase(tools, "set_resolution", resolution="Replace hinge")
        result = await _phase(tools, "finalize", completed=True)
        assert not result.success
        assert result.error == "Media is required for this condition. Please send at least one photo before completing this task."
        assert result.get("taskFlowStage") == "media"
        task = await tools.data.get_task(CABINETS)
        assert task["status"] == "PENDING"

    asyncio.run(_run())


def test_good_condition_walks_through_to_completion():
    async def _run():
        tools = await _ready()
        result = await _phase(tools, "set_condition", conditionNumber=1)
        assert result.get("taskFlowStage") == "media"
        attached = await tools.attach_task_media(SESSION, "https://cdn.test/p1.jpeg", "photo", "front view")
        assert attached.success
        assert attached.get("taskFlowStage") == "remarks"

        result = await _phase(tools, "set_remarks", remarks="skip")
        assert result.get("remarks") is None
        assert result.get("message") == f"Okay, no remarks for this task.\n\nNext: {menus.FINALIZE_NEXT}"

        result = await _phase(tools, "finalize", completed=True)
        assert result.success
        assert result.get("taskCompleted")
        assert not result.get("locationCompleted")
        assert result.get("message") == "✅ Task marked complete."
        state = await tools.session_memory.get(SESSION)
        assert state.current_task_id is None
        assert state.task_flow_stage is None

        entry = await tools.data.find_entry(CABINETS, "insp-1")
        assert entry.condition is TaskCondition.GOOD
        assert entry.media[0].caption == "front view"

    asyncio.run(_run())


def test_last_task_completes_location():
    async def _run():
        tools = await _ready()
        await _phase(tools, "set_condition", conditionNumber=5)
        await _phase(tools, "skip_media")
        await _phase(tools, "set_remarks", remarks="no")
        await _phase(tools, "finalize", completed=True)

        await tools.get_tasks_for_location({"workOrderId": JOB, "location": "Kitchen"}, SESSION)
        await _ready(SINK, tools=tools)
        await _phase(tools, "set_condition", conditionNumber=5)
        await _phase(tools, "skip_media")
        await _phase(tools, "set_remarks", remarks="Removed")
        result = await _phase(tools, "finalize", completed=True)
        assert result.get("locationCompleted")
        assert result.get("message") == "✅ Task marked complete. Kitchen is now complete."
        assert "[2] Kitchen (Done)" in result.get("locationsFormatted")

    asyncio.run(_run())


def test_finalize_not_completed_leaves_task_open():
    async def _run():
        tools = await _ready()
        await _phase(tools, "set_condition", conditionNumber=5)
        result = await _phase(tools, "finalize", completed=False)
        assert result.success
        assert result.get("message") == "Okay, I've left this task open so you can come back to it."
        assert (await tools.data.get_task(CABINETS))["status"] == "PENDING"

    asyncio.run(_run())


def test_required_remarks_reject_skip():
    async def _run():
        tools = await _ready()
        await _phase(tools, "set_condition", conditionNumber=5)
        await _phase(tools, "skip_media")
        result = await _phase(tools, "set_remarks", remarks="", required=True)
        assert result.error == "Please provide a short remark for this task."
        assert (await tools.session_memory.get(SESSION)).task_flow_stage is TaskFlowStage.REMARKS

    asyncio.run(_run())


def test_bulk_completion_is_refused():
    async def _run():
        tools = await _ready()
        result = await _phase(tools, "complete_all_tasks")
        assert result.error == "Bulk complete is disabled. Please complete tasks individually or use Go back."
        result = await _phase(tools, "finalize", taskId="complete_all_tasks", completed=True)
        assert not result.success
        assert (await tools.data.get_task(CABINETS))["status"] == "PENDING"

    asyncio.run(_run())


def test_mark_location_complete_requires_all_tasks():
    async def _run():
        tools = await _ready()
        result = await tools.mark_location_complete({"workOrderId": JOB, "contractChecklistItemId": "wo-1001-item-2"}, SESSION)
        assert result.error == "2 tasks are still pending in Kitchen. Please complete them before marking the location complete."

    asyncio.run(_run())


def test_listing_locations_keeps_task_in_progress():
    async def _run():
        tools = await _ready()
        await _phase(tools, "set_condition", conditionNumber=1)
        result = await tools.get_job_locations({"jobId": JOB}, SESSION)
        assert result.success
        state = await tools.session_memory.get(SESSION)
        assert state.task_flow_stage is TaskFlowStage.MEDIA
        assert state.current_task_id == CABINETS
        assert state.current_location == "Kitchen"

    asyncio.run(_run())


def test_mark_sub_location_complete_requires_its_tasks_and_cascades():
    async def _run():
        tools = InspectionTools(data=InspectionDataClient(), session_memory=SessionMemoryStore(path=""))
        await tools.get_today_jobs({"inspectorPhone": SESSION}, SESSION)
        await tools.confirm_job_selection({"jobId": JOB}, SESSION)
        await tools.start_job({"jobId": JOB}, SESSION)
        bedroom = "wo-1001-item-3"
        wardrobe = {"workOrderId": JOB, "contractChecklistItemId": bedroom, "subLocationId": f"{bedroom}-loc-1"}
        window = {"workOrderId": JOB, "contractChecklistItemId": bedroom, "subLocationId": f"{bedroom}-loc-2"}

        result = await tools.mark_sub_location_complete(wardrobe, SESSION)
        assert result.error == "2 tasks are still pending in Wardrobe. Please complete them before marking it complete."
        result = await tools.mark_sub_location_complete({**wardrobe, "contractChecklistItemId": "wo-1001-item-2"}, SESSION)
        assert result.error == "Sub-location not found for this location."

        await tools.data.update_task_status(f"{bedroom}-task-1", "completed")
        await tools.data.update_task_status(f"{bedroom}-task-2", "completed")
        result = await tools.mark_sub_location_complete(wardrobe, SESSION)
        assert result.success
        assert result.get("message") == "✅ Wardrobe marked complete."
        assert result.get("subLocationsFormatted") == [f"[1] Wardrobe{menus.DONE_SUFFIX}", "[2] Window"]
        assert result.get("locationCompleted") is False
        assert (await tools.data.get_checklist_item(bedroom))["status"] != "COMPLETED"

        await tools.data.update_task_status(f"{bedroom}-task-3", "completed")
        result = await tools.mark_sub_location_complete(window, SESSION)
        assert result.get("locationCompleted") is True
        assert (await tools.data.get_checklist_item(bedroom))["status"] == "COMPLETED"
        state = await tools.session_memory.get(SESSION)
        assert state.last_menu.value == "sublocations"

    asyncio.run(_run())
