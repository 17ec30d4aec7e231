from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.middleware.auth import require_role


router = APIRouter(prefix="/analytics", tags=["analytics"])
_supervisors = require_role("SUPERVISOR", "ADMIN")


@router.get("/routing")
async def routing_metrics(request: Request, session_id: Optional[str] = None, _role: str = Depends(_supervisors)):
    orchestrator = request.app.state.orchestrator
    metrics = await orchestrator.analytics_tools.routing_metrics(session_id=session_id)
    return {
        **metrics,
        "session_id": session_id,
        "llm": {"model": orchestrator.llm.model, "available": orchestrator.llm.available()},
    }


@router.get("/sessions/{session_id}/tool-calls")
async def session_tool_calls(session_id: str, request: Request, _role: str = Depends(_supervisors)):
    rows = request.app.state.orchestrator.audit_logger.tool_calls_for(session_id)
    return {"session_id": session_id, "count": len(rows), "tool_calls": rows}
