from __future__ import annotations

import asyncio

from memory.session_memory import SessionMemoryStore
from tools.inspection_data import InspectionDataClient
from tools.inspection_tools import InspectionTools, format_job_time, normalize_phone


def _tools() -> InspectionTools:
    return InspectionTools(data=InspectionDataClient(), session_memory=SessionMemoryStore(path=""), country_code="+65")


def test_normalize_phone():
    assert normalize_phone("91234567", "+65") == "+6591234567"
    assert normalize_phone("6591234567", "+65") == "+6591234567"
    assert normalize_phone("+65 9123 4567", "+65") == "+6591234567"
    assert normalize_phone("(0)91234567", "+65") == "+6591234567"
    assert normalize_phone("", "+65") == ""


def test_format_job_time():
    assert format_job_time("2024-05-01T14:30:00") == "02:30 PM"
    assert format_job_time(None) == "TBD"
    assert format_job_time("later") == "later"


def test_unknown_sender_must_identify():
    async def _run():
        tools = _tools()
        result = await tools.get_today_jobs({}, "6500000000")
        assert not result.success
        assert result.get("identifyRequired")
        assert result.get("nextAction") == "collectInspectorInfo"

    asyncio.run(_run())


def test_identify_by_name_and_phone():
    async def _run():
        tools = _tools()
        result = await tools.collect_inspector_info({"name": "ken tan", "phone": "9123 4567"}, "web-1")
        assert result.success
        assert result.get("normalizedPhone") == "+6591234567"
        assert result.get("message").startswith("Welcome Ken Tan!")

        state = await tools.session_memory.get("web-1")
        assert state.inspector_id == "insp-1"
        jobs = await tools.get_today_jobs({}, "web-1")
        assert jobs.get("count") == 2

    asyncio.run(_run())


def test_identify_requires_both_name_and_phone_to_match():
    async def _run():
        tools = _tools()
        result = await tools.collect_inspector_info({"name": "Mei Ling", "phone": "91234567"}, "web-2")
        assert not result.success
        assert result.error.startswith("We couldn't find an inspector matching both")
        result = await tools.collect_inspector_info({"name": "Ken Tan"}, "web-2")
        assert result.error == "Please provide both your full name and your phone number (with country code)."
        assert (await tools.session_memory.get("web-2")).inspector_id is None

    asyncio.run(_run())
