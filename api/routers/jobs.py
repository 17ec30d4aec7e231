from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel


router = APIRouter(prefix="/jobs", tags=["jobs"])


class DeleteMediaRequest(BaseModel):
    url: str
    media_type: Literal["photo", "video"] = "photo"


def _data(request: Request):
    return request.app.state.orchestrator.inspection_tools.data


@router.get("/{job_id}/progress")
async def job_progress(job_id: str, request: Request):
    data = _data(request)
    if not await data.get_work_order_by_id(job_id):
        raise HTTPException(status_code=404, detail="job_not_found")
    return {"job_id": job_id, **(await data.get_work_order_progress(job_id))}


@router.get("/{job_id}/locations")
async def job_locations(job_id: str, request: Request):
    data = _data(request)
    if not await data.get_work_order_by_id(job_id):
        raise HTTPException(status_code=404, detail="job_not_found")
    return {"job_id": job_id, "locations": await data.get_locations_with_completion_status(job_id)}


@router.get("/tasks/{task_id}/media")
async def task_media(task_id: str, request: Request):
    media = await _data(request).get_task_media(task_id)
    if media is None:
        raise HTTPException(status_code=404, detail="task_not_found")
    return media


@router.delete("/tasks/{task_id}/media")
async def delete_task_media(task_id: str, payload: DeleteMediaRequest, request: Request):
    removed = await _data(request).delete_task_media(task_id, payload.url, payload.media_type)
    if not removed:
        raise HTTPException(status_code=404, detail="media_not_found")
    return {"ok": True, "task_id": task_id}
