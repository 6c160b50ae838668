"""Job queue: state machine, dispatch loop, crash recovery and controls.

All state changes happen on the event loop thread in synchronous sections
(no await between reading a job and writing it back), so the state machine
needs no extra locking. Every accepted transition is written to the
repository before its notification is published.
"""

import asyncio
import logging
import os
import socket
import time
import traceback
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Set

from ..errors import PipelineCancelled, PipelineError, PipelinePaused
from ..models import UpscaleQueueConfig
from ..progress import ProgressTracker
from .backends import JobRepository
from .dispatch import ConcurrencyGate, WorkItemChannel
from .events import EventBroker, QueueStateEvent
from .models import (
    STATUS_GROUPS,
    Job,
    JobEvent,
    JobStatus,
    ProcessingKind,
    QueueStatistics,
    utcnow,
)
from .processor import JobProcessor

logger = logging.getLogger(__name__)

RESTART_INTERRUPTED_MESSAGE = "Job interrupted by restart"
PROGRESS_PERSIST_INTERVAL_S = 1.0


@dataclass
class ActiveRun:
    """Bookkeeping for one in-flight job."""
    job: Job
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    pause_requested: bool = False
    task: Optional[asyncio.Task] = None
    last_persist: float = 0.0


class JobQueue:
    """Durable job queue with bounded concurrency.

    Example:
        >>> async with JobQueue(SQLiteJobRepository("jobs.db"), JobProcessor(config), config) as queue:
        ...     job_id = await queue.submit("in.mp4", "out.mp4", ProcessingKind.NON_AI, {"scale": 2})
        ...     queue.start_queue()
    """

    def __init__(
        self,
        repository: JobRepository,
        processor: Optional[JobProcessor] = None,
        config: Optional[UpscaleQueueConfig] = None,
        broker: Optional[EventBroker] = None,
    ):
        self.config = config or UpscaleQueueConfig()
        self.repository = repository
        self.processor = processor or JobProcessor(self.config)
        self.events = broker or EventBroker()

        settings = self.config.queue
        self.channel = WorkItemChannel()
        self.gate = ConcurrencyGate(settings.max_concurrent_jobs)
        self.pause_poll_interval_s = settings.pause_poll_interval_s

        self._paused = settings.start_paused
        self._active: Dict[str, ActiveRun] = {}
        self._enqueued: Set[str] = set()
        self._loop_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # lifecycle

    async def start(self) -> int:
        """Recover state from the repository and start the dispatch loop.

        Returns:
            Number of jobs marked failed because they were running at crash time
        """
        if self._loop_task is not None:
            return 0
        recovered = self._recover()
        self._loop_task = asyncio.ensure_future(self._dispatch_loop())
        logger.info("Job queue started (paused=%s)", self._paused)
        return recovered

    async def stop(self) -> None:
        """Stop dispatching, then cancel every running job and wait for it.

        The dispatch loop goes first so a slot freed by a cancelled run is
        never handed to the next pending job; those stay pending for the
        next start.
        """
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        runs = list(self._active.values())
        for run in runs:
            run.cancel_event.set()
        await self._wait_for_runs(runs)
        logger.info("Job queue stopped")

    async def __aenter__(self) -> "JobQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _recover(self) -> int:
        """Fail jobs left running by a previous process; re-enqueue pending ones."""
        now = utcnow()
        interrupted = self.repository.get_by_status(JobStatus.RUNNING)
        for job in interrupted:
            previous_owner = f"pid {job.owning_process_id} on {job.owning_host_name}"
            job.status = JobStatus.FAILED
            job.last_error = RESTART_INTERRUPTED_MESSAGE
            job.error_detail = f"Previous owner: {previous_owner}"
            job.completed_at = now
            job.last_updated_at = now
            job.owning_process_id = None
            job.owning_host_name = None
            job.estimated_time_remaining_s = None
            self.repository.update(job)
            logger.warning("Recovered interrupted job %s (%s)", job.job_id, previous_owner)

        for job in self.repository.get_by_status(JobStatus.PENDING):
            self._enqueue(job.job_id)

        return len(interrupted)

    # ------------------------------------------------------------------
    # queue control

    @property
    def is_paused(self) -> bool:
        return self._paused

    def start_queue(self) -> None:
        if self._paused:
            self._paused = False
            logger.info("Queue started")
            self.events.publish(QueueStateEvent(paused=False))

    def stop_queue(self) -> None:
        """Stop dispatching new jobs; running jobs continue."""
        if not self._paused:
            self._paused = True
            logger.info("Queue paused")
            self.events.publish(QueueStateEvent(paused=True))

    def _check_auto_pause(self) -> None:
        if self._paused or self._active:
            return
        remaining = sum(
            self.repository.count_by_status(status)
            for status in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)
        )
        if remaining == 0:
            logger.info("No jobs left, auto-pausing queue")
            self.stop_queue()

    async def wait_until_idle(self, poll_interval_s: float = 0.2) -> None:
        """Block until the queue has paused itself (or was paused) with nothing running."""
        while not (self._paused and not self._active):
            await asyncio.sleep(poll_interval_s)

    # ------------------------------------------------------------------
    # operations

    async def add_job(self, job: Job) -> str:
        """Persist a new job as pending and enqueue it."""
        now = utcnow()
        job.status = JobStatus.PENDING
        job.queued_at = now
        job.last_updated_at = now
        self.repository.add(job)
        logger.info("Added job %s (%s)", job.job_id, job.processing_kind.value)
        self._publish_status(job)
        self._enqueue(job.job_id)
        return job.job_id

    async def submit(
        self,
        source_video_path: str,
        output_path: str,
        processing_kind: ProcessingKind,
        settings: Optional[Dict[str, Any]] = None,
        total_frames: Optional[int] = None,
    ) -> str:
        job = Job(
            source_video_path=str(source_video_path),
            output_path=str(output_path),
            processing_kind=processing_kind,
            settings=settings or {},
            total_frames=total_frames,
            max_retries=self.config.queue.default_max_retries,
        )
        return await self.add_job(job)

    async def cancel(self, job_id: str) -> bool:
        """Pending, Running or Paused -> Cancelled. Running stages are signalled to stop."""
        job = self._load(job_id)
        if job is None or job.status not in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED):
            return False

        now = utcnow()
        job.status = JobStatus.CANCELLED
        job.completed_at = now
        job.last_updated_at = now
        job.estimated_time_remaining_s = None
        self.repository.update(job)
        self._publish_status(job)

        run = self._active.get(job_id)
        if run is not None:
            run.cancel_event.set()
        logger.info("Cancelled job %s", job_id)
        return True

    async def pause(self, job_id: str) -> bool:
        """Running -> Paused. The pipeline stops its stages at the next checkpoint."""
        run = self._active.get(job_id)
        if run is None or run.job.status != JobStatus.RUNNING:
            return False

        job = run.job
        job.status = JobStatus.PAUSED
        job.last_updated_at = utcnow()
        job.estimated_time_remaining_s = None
        self.repository.update(job)
        run.pause_requested = True
        self._publish_status(job)
        logger.info("Paused job %s", job_id)
        return True

    async def resume(self, job_id: str) -> bool:
        """Paused -> Pending and re-enqueued. The pipeline restarts from the beginning."""
        job = self._load(job_id)
        if job is None or job.status != JobStatus.PAUSED:
            return False

        run = self._active.get(job_id)
        if run is not None:
            await self._wait_for_runs([run])
            job = self.repository.get_by_id(job_id)
            if job is None or job.status != JobStatus.PAUSED:
                return False

        now = utcnow()
        job.status = JobStatus.PENDING
        job.queued_at = now
        job.last_updated_at = now
        self.repository.update(job)
        self._publish_status(job)
        self._enqueue(job_id)
        logger.info("Resumed job %s", job_id)
        return True

    async def retry(self, job_id: str) -> bool:
        """Failed or Cancelled -> Pending with progress and errors reset."""
        job = self._load(job_id)
        if job is None or job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            return False
        if self.config.queue.enforce_max_retries and job.retry_count >= job.max_retries:
            logger.info("Job %s reached max retries (%d)", job_id, job.max_retries)
            return False

        run = self._active.get(job_id)
        if run is not None:
            await self._wait_for_runs([run])
            job = self.repository.get_by_id(job_id)
            if job is None or job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
                return False

        now = utcnow()
        job.status = JobStatus.PENDING
        job.progress_percentage = 0.0
        job.current_frame = 0
        job.estimated_time_remaining_s = None
        job.last_error = None
        job.error_detail = None
        job.output_file_size_bytes = None
        job.retry_count += 1
        job.completed_at = None
        job.queued_at = now
        job.last_updated_at = now
        self.repository.update(job)
        self._publish_status(job)
        self._enqueue(job_id)
        logger.info("Retrying job %s (attempt %d)", job_id, job.retry_count)
        return True

    async def delete(self, job_id: str) -> bool:
        """Remove a job. A running job is cancelled and awaited first."""
        run = self._active.get(job_id)
        if run is not None:
            run.cancel_event.set()
            await self._wait_for_runs([run])
        deleted = self.repository.delete(job_id)
        if deleted:
            logger.info("Deleted job %s", job_id)
        return deleted

    async def clear_completed(self) -> int:
        return self.repository.delete_by_status(JobStatus.COMPLETED)

    async def clear_all(self) -> int:
        """Cancel everything in flight, then delete every job."""
        runs = list(self._active.values())
        for run in runs:
            run.cancel_event.set()
        await self._wait_for_runs(runs)
        count = self.repository.delete_by_status(*JobStatus)
        self._check_auto_pause()
        return count

    # ------------------------------------------------------------------
    # queries

    def get_by_id(self, job_id: str) -> Optional[Job]:
        run = self._active.get(job_id)
        if run is not None:
            return run.job.model_copy(deep=True)
        return self.repository.get_by_id(job_id)

    def get_all(self) -> List[Job]:
        return [self._overlay(job) for job in self.repository.get_all()]

    def get_by_status_group(self, group: str) -> List[Job]:
        try:
            statuses = STATUS_GROUPS[group]
        except KeyError:
            raise ValueError(f"Unknown status group '{group}' (expected one of {sorted(STATUS_GROUPS)})")
        return [self._overlay(job) for job in self.repository.get_by_status(*statuses)]

    def get_statistics(self) -> QueueStatistics:
        count = self.repository.count_by_status
        return QueueStatistics(
            pending=count(JobStatus.PENDING),
            running=count(JobStatus.RUNNING),
            paused=count(JobStatus.PAUSED),
            completed=count(JobStatus.COMPLETED),
            failed=count(JobStatus.FAILED) + count(JobStatus.CANCELLED),
        )

    def _overlay(self, job: Job) -> Job:
        run = self._active.get(job.job_id)
        return run.job.model_copy(deep=True) if run is not None else job

    def _load(self, job_id: str) -> Optional[Job]:
        """The live object for running jobs, otherwise a fresh repository read."""
        run = self._active.get(job_id)
        if run is not None:
            return run.job
        return self.repository.get_by_id(job_id)

    # ------------------------------------------------------------------
    # dispatch

    def _enqueue(self, job_id: str) -> None:
        if job_id in self._enqueued:
            return
        self._enqueued.add(job_id)
        self.channel.put(partial(self._process_work_item, job_id))

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self.channel.get()
            try:
                await item()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Work item failed")
            finally:
                self.channel.task_done()

    async def _process_work_item(self, job_id: str) -> None:
        try:
            job = self.repository.get_by_id(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return

            while self._paused:
                await asyncio.sleep(self.pause_poll_interval_s)

            await self.gate.acquire()
            try:
                job = self.repository.get_by_id(job_id)
                if job is None or job.status != JobStatus.PENDING:
                    self.gate.release()
                    return
                self._start_run(job)
            except BaseException:
                if job_id not in self._active:
                    self.gate.release()
                raise
        finally:
            self._enqueued.discard(job_id)

    def _start_run(self, job: Job) -> None:
        now = utcnow()
        job.status = JobStatus.RUNNING
        job.started_at = now
        job.last_updated_at = now
        job.estimated_time_remaining_s = None
        job.owning_process_id = os.getpid()
        job.owning_host_name = socket.gethostname()
        self.repository.update(job)

        run = ActiveRun(job=job, last_persist=time.monotonic())
        self._active[job.job_id] = run
        self._publish_status(job)
        logger.info("Running job %s", job.job_id)
        run.task = asyncio.ensure_future(self._run_job(run))

    async def _run_job(self, run: ActiveRun) -> None:
        """Execute one job; every exception ends here, never in the dispatch loop."""
        job = run.job
        changed = False
        error_message: Optional[str] = None
        error: Optional[PipelineError] = None
        try:
            outcome = await self.processor.process(
                job,
                on_progress=partial(self._on_progress, run),
                cancel_event=run.cancel_event,
                pause_requested=lambda: run.pause_requested,
            )
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.COMPLETED
                job.progress_percentage = 100.0
                job.estimated_time_remaining_s = 0.0
                job.completed_at = utcnow()
                job.output_file_size_bytes = outcome.output_file_size_bytes
                changed = True
                logger.info("Job %s completed in %.1fs", job.job_id, outcome.duration_s)
        except PipelinePaused:
            logger.info("Job %s stopped for pause", job.job_id)
        except PipelineCancelled:
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.CANCELLED
                job.completed_at = utcnow()
                changed = True
            logger.info("Job %s cancelled", job.job_id)
        except PipelineError as e:
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.FAILED
                job.last_error = e.message
                job.error_detail = e.detail
                job.completed_at = utcnow()
                error_message = e.message
                error = e
                changed = True
            if e.is_configuration_error:
                logger.error("Job %s cannot run until its settings or tools change: %s", job.job_id, e.message)
            else:
                logger.error("Job %s failed: %s", job.job_id, e.message)
        except asyncio.CancelledError:
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.CANCELLED
                job.completed_at = utcnow()
                changed = True
            raise
        except Exception as e:
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.FAILED
                job.last_error = str(e) or type(e).__name__
                job.error_detail = traceback.format_exc()
                job.completed_at = utcnow()
                error_message = job.last_error
                changed = True
            logger.exception("Job %s failed with unexpected error", job.job_id)
        finally:
            try:
                if job.status != JobStatus.COMPLETED:
                    job.estimated_time_remaining_s = None
                job.owning_process_id = None
                job.owning_host_name = None
                job.last_updated_at = utcnow()
                self.repository.update(job)
            except Exception:
                logger.exception("Could not persist final state of job %s", job.job_id)
            finally:
                if self._active.get(job.job_id) is run:
                    del self._active[job.job_id]
                self.gate.release()

                if changed:
                    self._publish_status(job, error_message, error)
                try:
                    self._check_auto_pause()
                except Exception:
                    logger.exception("Auto-pause check failed after job %s", job.job_id)

    def _on_progress(self, run: ActiveRun, tracker: ProgressTracker) -> None:
        job = run.job
        if job.status != JobStatus.RUNNING:
            return

        job.progress_percentage = min(100.0, max(job.progress_percentage, round(tracker.overall, 2)))
        job.current_frame = tracker.current_frame
        if tracker.total_frames is not None:
            job.total_frames = tracker.total_frames
        eta = tracker.eta_s
        job.estimated_time_remaining_s = round(eta, 1) if eta is not None else None
        job.last_updated_at = utcnow()

        now = time.monotonic()
        if now - run.last_persist >= PROGRESS_PERSIST_INTERVAL_S:
            self.repository.update(job)
            run.last_persist = now
        self.events.publish(JobEvent.from_job("progress", job))

    async def _wait_for_runs(self, runs: List[ActiveRun]) -> None:
        tasks = [run.task for run in runs if run.task is not None]
        if tasks:
            await asyncio.wait(tasks)

    def _publish_status(
        self, job: Job, error_message: Optional[str] = None, error: Optional[PipelineError] = None
    ) -> None:
        self.events.publish(
            JobEvent.from_job(
                "status",
                job,
                error_message=error_message or job.last_error,
                error_kind=error.kind.value if error is not None else None,
                configuration_error=error is not None and error.is_configuration_error,
            )
        )
