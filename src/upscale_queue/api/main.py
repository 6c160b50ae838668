from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from upscale_queue.config import resolve_config
from upscale_queue.logging_config import get_logger
from upscale_queue.models import UpscaleQueueConfig
from upscale_queue.queue.events import EventBroker
from upscale_queue.queue.job_queue import JobQueue
from upscale_queue.queue.models import MAX_PATH_LENGTH, Job, ProcessingKind
from upscale_queue.queue.processor import JobProcessor
from upscale_queue.queue.sqlite_backend import SQLiteJobRepository
from upscale_queue.watcher import FolderWatcher

logger = get_logger(__name__)

SSE_HEARTBEAT_S = 15.0


# --- Pydantic Models for Requests ---
class JobCreate(BaseModel):
    source_video_path: str = Field(..., max_length=MAX_PATH_LENGTH)
    output_path: str = Field(..., max_length=MAX_PATH_LENGTH)
    processing_kind: ProcessingKind
    settings: Dict[str, Any] = Field(default_factory=dict)
    total_frames: Optional[int] = Field(default=None, ge=0)


def build_job_queue(config: Optional[UpscaleQueueConfig] = None) -> JobQueue:
    config = config or resolve_config()
    repository = SQLiteJobRepository(config.queue.db_path)
    return JobQueue(repository, JobProcessor(config), config)


def _sse(event: str, payload: str) -> str:
    return f"event: {event}\ndata: {payload}\n\n"


async def event_stream(
    broker: EventBroker,
    request: Request,
    job_id: Optional[str] = None,
    heartbeat_s: float = SSE_HEARTBEAT_S,
) -> AsyncGenerator[str, None]:
    """
    SSE generator that yields job and queue notifications as they are published.
    """
    with broker.subscribe() as subscription:
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await subscription.get(timeout=heartbeat_s)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue

            if job_id is not None and getattr(event, "job_id", None) != job_id:
                continue
            yield _sse(event.event, event.model_dump_json())


def create_app(
    job_queue: Optional[JobQueue] = None, watcher: Optional[FolderWatcher] = None
) -> FastAPI:
    """Build the HTTP API around ``job_queue`` (a configured one is created if omitted).

    When ``watch.enabled`` is set and no ``watcher`` is given, a FolderWatcher
    feeding the queue runs for the lifetime of the app.
    """
    job_queue = job_queue or build_job_queue()
    if watcher is None and job_queue.config.watch.enabled:
        watcher = FolderWatcher(job_queue, job_queue.config.watch)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        recovered = await job_queue.start()
        if recovered:
            logger.warning("Marked %d interrupted job(s) as failed", recovered)
        if watcher is not None:
            await watcher.start()
        yield
        if watcher is not None:
            await watcher.stop()
        await job_queue.stop()
        job_queue.repository.close()

    app = FastAPI(title="upscale-queue", lifespan=lifespan)
    app.state.job_queue = job_queue
    app.state.watcher = watcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _get_job_or_404(job_id: str) -> Job:
        job = job_queue.get_by_id(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    def _reject(job_id: str, action: str) -> HTTPException:
        job = job_queue.get_by_id(job_id)
        if job is None:
            return HTTPException(status_code=404, detail="Job not found")
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot {action} job in state '{job.status.value}'",
        )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "queue_paused": job_queue.is_paused}

    # --- QUEUE ---
    @app.get("/queue")
    async def queue_state():
        return {
            "paused": job_queue.is_paused,
            "running": job_queue.gate.in_use,
            "max_concurrent_jobs": job_queue.gate.capacity,
            "watching": watcher.running if watcher is not None else False,
            "statistics": job_queue.get_statistics().model_dump(),
        }

    @app.post("/queue/start")
    async def start_queue():
        job_queue.start_queue()
        return {"paused": job_queue.is_paused}

    @app.post("/queue/stop")
    async def stop_queue():
        job_queue.stop_queue()
        return {"paused": job_queue.is_paused}

    # --- JOBS ---
    @app.post("/jobs", status_code=201)
    async def create_job(data: JobCreate):
        job = Job(
            source_video_path=data.source_video_path,
            output_path=data.output_path,
            processing_kind=data.processing_kind,
            settings=data.settings,
            total_frames=data.total_frames,
            max_retries=job_queue.config.queue.default_max_retries,
        )
        job_id = await job_queue.add_job(job)
        return job_queue.get_by_id(job_id).model_dump(mode="json")

    @app.get("/jobs")
    async def list_jobs(
        status_group: Optional[str] = Query(default=None, alias="status"),
    ):
        if status_group is None:
            jobs = job_queue.get_all()
        else:
            try:
                jobs = job_queue.get_by_status_group(status_group)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
        return [job.model_dump(mode="json") for job in jobs]

    @app.get("/jobs/stats")
    async def job_statistics():
        return job_queue.get_statistics().model_dump()

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str):
        return _get_job_or_404(job_id).model_dump(mode="json")

    @app.get("/jobs/{job_id}/transitions")
    async def get_job_transitions(job_id: str):
        _get_job_or_404(job_id)
        return [t.model_dump(mode="json") for t in job_queue.repository.get_transitions(job_id)]

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str):
        if not await job_queue.cancel(job_id):
            raise _reject(job_id, "cancel")
        return job_queue.get_by_id(job_id).model_dump(mode="json")

    @app.post("/jobs/{job_id}/pause")
    async def pause_job(job_id: str):
        if not await job_queue.pause(job_id):
            raise _reject(job_id, "pause")
        return job_queue.get_by_id(job_id).model_dump(mode="json")

    @app.post("/jobs/{job_id}/resume")
    async def resume_job(job_id: str):
        if not await job_queue.resume(job_id):
            raise _reject(job_id, "resume")
        return job_queue.get_by_id(job_id).model_dump(mode="json")

    @app.post("/jobs/{job_id}/retry")
    async def retry_job(job_id: str):
        if not await job_queue.retry(job_id):
            raise _reject(job_id, "retry")
        return job_queue.get_by_id(job_id).model_dump(mode="json")

    @app.delete("/jobs/{job_id}")
    async def delete_job(job_id: str):
        """Delete a job, cancelling it first if it is running."""
        if not await job_queue.delete(job_id):
            raise HTTPException(status_code=404, detail="Job not found")
        return {"status": "deleted", "id": job_id}

    # --- EVENTS ---
    @app.get("/events")
    async def events(request: Request, job_id: Optional[str] = None):
        return StreamingResponse(
            event_stream(job_queue.events, request, job_id=job_id),
            media_type="text/event-stream",
        )

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
