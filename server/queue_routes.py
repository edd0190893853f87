"""
Queue API endpoints.

REST control of the job queue plus a WebSocket (/v1/ws) that streams queue
events. The queue, processor and hub are taken from app.state (see server/app.py).
"""

import base64
import binascii
import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from invokers.job_queue import JobQueue
from invokers.jobs import HintData, Job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["queue"])


class HintRequest(BaseModel):
    type: str
    image: str  # base64
    weight: float = 1.0


class JobCreateRequest(BaseModel):
    prompt: str
    negative_prompt: str = ""
    name: Optional[str] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)
    canvas_image: Optional[str] = None  # base64
    mask_image: Optional[str] = None    # base64
    hints: List[HintRequest] = Field(default_factory=list)


class MoveRequest(BaseModel):
    index: int


def _queue(request: Request) -> JobQueue:
    return request.app.state.queue


def _decode_b64(value: Optional[str], field_name: str) -> Optional[bytes]:
    if value is None:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail=f"{field_name} is not valid base64")


def _get_or_404(queue: JobQueue, job_id: str) -> Job:
    job = queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return job


def _queue_state(queue: JobQueue) -> Dict[str, Any]:
    return {
        "paused": queue.is_paused,
        "lastError": queue.last_error,
        "currentJobId": queue.current_job_id,
        "pendingCount": queue.pending_count,
        "activeCount": queue.active_count,
    }


@router.get("/queue")
async def get_queue(request: Request):
    queue = _queue(request)
    state = _queue_state(queue)
    state["jobs"] = [j.to_dict(include_images=False) for j in queue.jobs]
    return state


@router.post("/queue/jobs", status_code=201)
async def create_job(request: Request, body: JobCreateRequest):
    queue = _queue(request)
    job = Job(
        prompt=body.prompt,
        negative_prompt=body.negative_prompt,
        name=body.name or "",
        configuration=body.configuration,
        canvas_image=_decode_b64(body.canvas_image, "canvas_image"),
        mask_image=_decode_b64(body.mask_image, "mask_image"),
        hints=[
            HintData(type=h.type, image_data=_decode_b64(h.image, "hints.image"), weight=h.weight)
            for h in body.hints
        ],
    )
    stored = queue.enqueue(job)
    return stored.to_dict(include_images=False)


@router.get("/queue/jobs/{job_id}")
async def get_job(request: Request, job_id: str):
    return _get_or_404(_queue(request), job_id).to_dict(include_images=False)


@router.delete("/queue/jobs/{job_id}")
async def remove_job(request: Request, job_id: str):
    queue = _queue(request)
    _get_or_404(queue, job_id)
    if not queue.remove(job_id):
        raise HTTPException(status_code=409, detail="Job is currently processing; cancel it first")
    return {"removed": job_id}


@router.post("/queue/jobs/{job_id}/cancel")
async def cancel_job(request: Request, job_id: str):
    queue = _queue(request)
    job = _get_or_404(queue, job_id)
    if not queue.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Cannot cancel a {job.status.value} job")
    return queue.get(job_id).to_dict(include_images=False)


@router.post("/queue/jobs/{job_id}/retry")
async def retry_job(request: Request, job_id: str):
    queue = _queue(request)
    job = _get_or_404(queue, job_id)
    if not queue.retry(job_id):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot retry job (status={job.status.value}, retries={job.retry_count})",
        )
    return queue.get(job_id).to_dict(include_images=False)


@router.post("/queue/jobs/{job_id}/move")
async def move_job(request: Request, job_id: str, body: MoveRequest):
    queue = _queue(request)
    _get_or_404(queue, job_id)
    queue.move(job_id, body.index)
    return {"order": [j.id for j in queue.jobs]}


@router.get("/queue/jobs/{job_id}/results/{index}")
async def get_result_image(request: Request, job_id: str, index: int):
    job = _get_or_404(_queue(request), job_id)
    if index < 0 or index >= len(job.result_images):
        raise HTTPException(status_code=404, detail=f"Result {index} not found")
    return Response(content=job.result_images[index], media_type="image/png")


@router.get("/queue/preview")
async def get_current_preview(request: Request):
    preview = _queue(request).current_preview
    if preview is None:
        raise HTTPException(status_code=404, detail="No preview available")
    return Response(content=preview, media_type="image/png")


@router.post("/queue/pause")
async def pause_queue(request: Request):
    queue = _queue(request)
    queue.pause()
    return _queue_state(queue)


@router.post("/queue/resume")
async def resume_queue(request: Request):
    queue = _queue(request)
    queue.resume()
    return _queue_state(queue)


@router.post("/queue/clear")
async def clear_queue(request: Request, scope: str = "finished"):
    queue = _queue(request)
    actions = {
        "completed": queue.clear_completed,
        "failed": queue.clear_failed,
        "finished": queue.clear_finished,
        "all": queue.clear_all,
    }
    action = actions.get(scope)
    if action is None:
        raise HTTPException(status_code=400, detail=f"Unknown scope '{scope}'. Use one of {list(actions)}")
    return {"removed": action(), **_queue_state(queue)}


@router.websocket("/ws")
async def queue_events_ws(ws: WebSocket):
    hub = ws.app.state.hub
    client_id = uuid.uuid4().hex[:12]
    await ws.accept()
    await hub.connect(ws, client_id)
    try:
        await hub.send(client_id, {"type": "queue:state", **_queue_state(ws.app.state.queue)})
        while True:
            msg = await ws.receive_json()
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await hub.send(client_id, {"type": "pong"})
    except WebSocketDisconnect:
        logger.debug(f"[Queue API] WS client {client_id} went away")
    finally:
        await hub.disconnect(client_id)
