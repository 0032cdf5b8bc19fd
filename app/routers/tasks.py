# =============================================================================
# app/routers/tasks.py - Task Status Endpoints
# =============================================================================
# Polling endpoints for background jobs (transcriptions, scheduled
# notification runs). Clients without a WebSocket can follow a
# transcription's PROGRESS state here.
# =============================================================================

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel

from app.auth.dependencies import get_current_user, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(get_current_user)])

TaskIdPath = Annotated[str, Path(description="Celery task ID")]

FINISHED_STATES = {"SUCCESS", "FAILURE", "REVOKED"}

# Fixed progress/message for states that carry no task metadata
_STATIC_STATES = {
    "PENDING": (0, "Waiting in queue..."),
    "STARTED": (0, "Starting..."),
    "REVOKED": (None, "Cancelled"),
}


# =============================================================================
# Response Models
# =============================================================================

class TaskStatusResponse(BaseModel):
    """Response model for task status."""
    task_id: str
    status: str
    progress: int | None = None
    message: str | None = None
    partial_text: str | None = None
    result: Any = None
    error: str | None = None


class TaskSubmitResponse(BaseModel):
    task_id: str
    status: str
    message: str


# =============================================================================
# Helpers
# =============================================================================

def _async_result(task_id: str):
    """
    Look up a task in the Redis result backend.

    Raises:
        HTTPException 503: If the backend can't be reached
    """
    try:
        from workers.celery_app import celery_app

        result = celery_app.AsyncResult(task_id)
        logger.debug(f"Task {task_id} is {result.status}")
        return result
    except Exception as e:
        logger.error(f"Result backend error for task {task_id}: {e}")
        raise HTTPException(status_code=503, detail=f"Task backend unavailable: {e}")


def _failure_text(result) -> str:
    return str(result.result) if result.result else "Unknown error"


def describe_task(task_id: str, result) -> TaskStatusResponse:
    """Map a Celery AsyncResult onto the polling response."""
    response = TaskStatusResponse(task_id=task_id, status=result.status)

    if result.status == "PROGRESS":
        # Transcription jobs report percent, message and the transcript so far
        info = result.info if isinstance(result.info, dict) else {}
        response.progress = info.get("percent", 0)
        response.message = info.get("message", "Processing...")
        response.partial_text = info.get("text")
    elif result.status == "SUCCESS":
        response.result = result.result
        response.progress = 100
        response.message = "Complete"
    elif result.status == "FAILURE":
        response.error = _failure_text(result)
        response.message = "Failed"
    elif result.status in _STATIC_STATES:
        response.progress, response.message = _STATIC_STATES[result.status]

    return response


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/{task_id}", response_model=TaskStatusResponse)
async def get_task_status(task_id: TaskIdPath):
    """
    Get the status of a background task.

    - PENDING / STARTED: queued or just picked up
    - PROGRESS: running; transcriptions include partial_text
    - SUCCESS / FAILURE / REVOKED: finished
    """
    return describe_task(task_id, _async_result(task_id))


@router.get("/{task_id}/result")
async def get_task_result(task_id: TaskIdPath):
    """The result of a finished task; other states report not complete."""
    result = _async_result(task_id)

    if result.status == "SUCCESS":
        return {"task_id": task_id, "status": "SUCCESS", "result": result.result}
    if result.status == "FAILURE":
        return {"task_id": task_id, "status": "FAILURE", "error": _failure_text(result)}

    return {"task_id": task_id, "status": result.status, "message": "Task not yet complete"}


@router.delete("/{task_id}")
async def cancel_task(task_id: TaskIdPath):
    """
    Cancel a queued or running task.

    Running transcriptions are terminated and their usage is not recorded.
    """
    result = _async_result(task_id)

    if result.status in FINISHED_STATES:
        return {
            "task_id": task_id,
            "message": f"Task already {result.status.lower()}, cannot cancel",
            "cancelled": False,
        }

    result.revoke(terminate=True)
    logger.info(f"Revoked task {task_id} (was {result.status})")

    return {"task_id": task_id, "message": "Task cancelled", "cancelled": True}


@router.post(
    "/healthcheck",
    response_model=TaskSubmitResponse,
    dependencies=[Depends(require_roles("superadmin"))],
)
async def submit_healthcheck():
    """Queue the worker healthcheck; poll GET /tasks/{task_id} for the worker's reply."""
    try:
        from workers.celery_app import healthcheck

        result = healthcheck.delay()
    except Exception as e:
        logger.error(f"Error submitting healthcheck task: {e}")
        raise HTTPException(status_code=503, detail=f"Failed to queue healthcheck. Is Redis running? {e}")

    return TaskSubmitResponse(
        task_id=result.id,
        status="PENDING",
        message="Healthcheck queued. Use GET /api/v1/tasks/{task_id} to check status.",
    )
