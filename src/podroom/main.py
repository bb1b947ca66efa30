"""
Podroom FastAPI Main Application
API endpoints for task submission, queue status, episodes and QA.
"""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import settings
from .errors import PodroomError
from .models import Answer, ConsistencyReport, Episode, QueueStatus, Task
from .service import PodroomService

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Podroom",
    description="Podcast processing and cross-episode question answering",
    version=__version__,
)

_service: Optional[PodroomService] = None


def get_service() -> PodroomService:
    """Build the service on first use."""
    global _service
    if _service is None:
        _service = PodroomService.from_settings()
    return _service


@app.on_event("startup")
async def startup():
    service = get_service()
    await service.queue.start()
    service.index.ensure_index_setup()


@app.on_event("shutdown")
async def shutdown():
    if _service is not None:
        await _service.queue.stop()
        await _service.events.drain()


@app.exception_handler(PodroomError)
async def podroom_error_handler(request: Request, exc: PodroomError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc), "type": exc.__class__.__name__},
    )


# --- Health Check ---

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


# --- Tasks ---

class SubmitRequest(BaseModel):
    url: str = Field(description="Episode audio or page URL")
    title: Optional[str] = None
    user_id: Optional[str] = None


class SubmitResponse(BaseModel):
    task_id: str
    status: str


@app.post("/tasks", response_model=SubmitResponse)
async def submit_task(body: SubmitRequest, service: PodroomService = Depends(get_service)):
    """Queue an episode for processing. Resubmitting an in-flight URL returns its task."""
    task_id = service.submit(body.url, title=body.title, user_id=body.user_id)
    task = service.queue.get_task_status(task_id)
    return SubmitResponse(task_id=task_id, status=task.status.value)


@app.get("/tasks/{task_id}", response_model=Task)
async def get_task(task_id: str, service: PodroomService = Depends(get_service)):
    task = service.queue.get_task_status(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.get("/tasks", response_model=Task)
async def get_task_by_url(
    url: str = Query(..., description="Source URL"),
    service: PodroomService = Depends(get_service),
):
    task = service.queue.get_task_by_url(url)
    if task is None:
        raise HTTPException(status_code=404, detail="No task for this URL")
    return task


@app.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, service: PodroomService = Depends(get_service)):
    """Best-effort cancel; running tasks stop at the next stage boundary."""
    if service.queue.get_task_status(task_id) is None:
        raise HTTPException(status_code=404, detail="Task not found")
    accepted = service.queue.cancel(task_id)
    return {"task_id": task_id, "cancel_accepted": accepted}


@app.get("/queue/status", response_model=QueueStatus)
async def queue_status(service: PodroomService = Depends(get_service)):
    return service.queue.get_queue_status()


# --- Episodes ---

@app.get("/episodes/{episode_id}", response_model=Episode)
async def get_episode(episode_id: str, service: PodroomService = Depends(get_service)):
    episode = service.get_episode(episode_id)
    if episode is None:
        raise HTTPException(status_code=404, detail="Episode not found")
    return episode


@app.get("/episodes/{episode_id}/consistency", response_model=ConsistencyReport)
async def episode_consistency(episode_id: str, service: PodroomService = Depends(get_service)):
    return service.check_episode_consistency(episode_id)


@app.post("/episodes/{episode_id}/run")
async def run_episode(
    episode_id: str,
    strategy: Optional[str] = Query(None, description="Force a cleaning strategy"),
    service: PodroomService = Depends(get_service),
):
    """Re-run the pipeline in the background, reusing cached artifacts."""
    service.trigger_pipeline(episode_id, strategy=strategy)
    return {"episode_id": episode_id, "status": "started"}


class MergeRequest(BaseModel):
    target_id: Optional[str] = None


@app.post("/episodes/{episode_id}/merge", response_model=Episode)
async def merge_episode(
    episode_id: str,
    body: MergeRequest,
    service: PodroomService = Depends(get_service),
):
    """Fold a duplicate episode into target_id."""
    return service.merge_episodes(episode_id, body.target_id)


# --- QA ---

class QuestionRequest(BaseModel):
    q: str = Field(description="Question about the indexed episodes")
    limit: Optional[int] = Field(None, description="Chunks to retrieve (1-8)")
    episode_id: Optional[str] = None


@app.post("/qa", response_model=Answer)
async def ask(body: QuestionRequest, service: PodroomService = Depends(get_service)):
    return await service.answer(body.q, limit=body.limit, episode_id=body.episode_id)


def run():
    """Run the API server."""
    import uvicorn

    uvicorn.run(
        "podroom.main:app",
        host=settings.api_host,
        port=settings.api_port,
    )
