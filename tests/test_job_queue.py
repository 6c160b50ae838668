"""Tests for the job queue state machine, dispatch and recovery."""

import sqlite3

import pytest

from conftest import SLOW, wait_for
from upscale_queue.queue.events import QueueStateEvent
from upscale_queue.queue.job_queue import RESTART_INTERRUPTED_MESSAGE, JobQueue
from upscale_queue.queue.models import Job, JobEvent, JobStatus, ProcessingKind


async def submit(job_queue, source, tmp_path, name="out.mp4", **settings):
    return await job_queue.submit(
        str(source), str(tmp_path / "out" / name), ProcessingKind.NON_AI, settings
    )


def status_of(job_queue, job_id):
    return job_queue.get_by_id(job_id).status


class Recorder:
    """Broker listener capturing every event and the gate usage at that moment."""

    def __init__(self, job_queue):
        self.job_queue = job_queue
        self.events = []
        self.peak_in_use = 0
        job_queue.events.add_listener(self)

    def __call__(self, event):
        self.events.append(event)
        self.peak_in_use = max(self.peak_in_use, self.job_queue.gate.in_use)

    def statuses(self, job_id):
        return [
            e.status for e in self.events
            if isinstance(e, JobEvent) and e.event == "status" and e.job_id == job_id
        ]


class TestProcessing:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_job_runs_to_completion(self, job_queue, source_video, tmp_path):
        recorder = Recorder(job_queue)
        job_id = await submit(job_queue, source_video, tmp_path)
        assert status_of(job_queue, job_id) == JobStatus.PENDING

        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.COMPLETED)

        job = job_queue.repository.get_by_id(job_id)
        assert job.progress_percentage == 100.0
        assert job.output_file_size_bytes == len(b"video")
        assert job.owning_process_id is None
        assert job.started_at is not None and job.completed_at is not None
        assert recorder.statuses(job_id) == [
            JobStatus.PENDING, JobStatus.RUNNING, JobStatus.COMPLETED
        ]

        progress = [e.progress_percentage for e in recorder.events if getattr(e, "event", None) == "progress"]
        assert progress == sorted(progress)
        assert progress[-1] == 100.0

        transitions = job_queue.repository.get_transitions(job_id)
        assert [t.to_state for t in transitions] == ["pending", "running", "completed"]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_one_job_at_a_time(self, job_queue, source_video, tmp_path):
        recorder = Recorder(job_queue)
        first = await submit(job_queue, source_video, tmp_path, "a.mp4", frames=10, delay=0.02)
        second = await submit(job_queue, source_video, tmp_path, "b.mp4", frames=10, delay=0.02)

        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, second) == JobStatus.COMPLETED)

        assert status_of(job_queue, first) == JobStatus.COMPLETED
        assert recorder.peak_in_use == 1
        order = [
            (e.job_id, e.status) for e in recorder.events
            if isinstance(e, JobEvent) and e.event == "status" and e.status != JobStatus.PENDING
        ]
        assert order == [
            (first, JobStatus.RUNNING),
            (first, JobStatus.COMPLETED),
            (second, JobStatus.RUNNING),
            (second, JobStatus.COMPLETED),
        ]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_missing_source_fails_job(self, job_queue, tmp_path):
        recorder = Recorder(job_queue)
        job_id = await submit(job_queue, tmp_path / "nope.mp4", tmp_path)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.FAILED)

        job = job_queue.get_by_id(job_id)
        assert job.last_error.startswith("Source video not found")
        failed = [e for e in recorder.events if getattr(e, "status", None) == JobStatus.FAILED]
        assert failed[-1].error_message == job.last_error

    @pytest.mark.asyncio(loop_scope="function")
    async def test_stage_failure_records_detail(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path, exit_code=3)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.FAILED)

        job = job_queue.get_by_id(job_id)
        assert job.last_error == "Pipeline failed: worker exited with code 3"
        assert "[worker] worker failed" in job.error_detail
        assert job.estimated_time_remaining_s is None

    @pytest.mark.asyncio(loop_scope="function")
    async def test_invalid_settings_fail_at_run_time(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path, turbo=True)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.FAILED)
        assert "Invalid non_ai settings" in job_queue.get_by_id(job_id).last_error

    @pytest.mark.asyncio(loop_scope="function")
    async def test_auto_pause_when_drained(self, job_queue, source_video, tmp_path):
        recorder = Recorder(job_queue)
        job_id = await submit(job_queue, source_video, tmp_path)
        job_queue.start_queue()
        assert not job_queue.is_paused

        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.COMPLETED)
        await wait_for(lambda: job_queue.is_paused)
        queue_events = [e.paused for e in recorder.events if isinstance(e, QueueStateEvent)]
        assert queue_events == [False, True]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_paused_queue_does_not_dispatch(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path)
        await wait_for(lambda: job_queue.channel.empty(), timeout=2)
        assert status_of(job_queue, job_id) == JobStatus.PENDING
        assert job_queue.gate.in_use == 0


class TestControls:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_cancel_running_releases_slot(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path, **SLOW)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.RUNNING)

        assert await job_queue.cancel(job_id) is True
        assert status_of(job_queue, job_id) == JobStatus.CANCELLED
        await wait_for(lambda: job_queue.gate.in_use == 0)

        next_id = await submit(job_queue, source_video, tmp_path, "next.mp4")
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, next_id) == JobStatus.COMPLETED)
        assert job_queue.repository.get_by_id(job_id).status == JobStatus.CANCELLED

    @pytest.mark.asyncio(loop_scope="function")
    async def test_cancel_pending(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path)
        assert await job_queue.cancel(job_id) is True

        job = job_queue.repository.get_by_id(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None

    @pytest.mark.asyncio(loop_scope="function")
    async def test_pause_and_resume(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path, **SLOW)
        job_queue.start_queue()
        await wait_for(lambda: job_queue.get_by_id(job_id).progress_percentage > 2.0)

        assert await job_queue.pause(job_id) is True
        assert status_of(job_queue, job_id) == JobStatus.PAUSED
        await wait_for(lambda: job_queue.gate.in_use == 0)

        paused = job_queue.repository.get_by_id(job_id)
        assert paused.status == JobStatus.PAUSED
        assert paused.owning_process_id is None
        assert not job_queue.is_paused  # a paused job keeps the queue alive

        assert await job_queue.resume(job_id) is True
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.RUNNING)
        assert job_queue.get_by_id(job_id).progress_percentage >= paused.progress_percentage

        assert await job_queue.cancel(job_id) is True
        await wait_for(lambda: job_queue.gate.in_use == 0)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_retry_resets_progress(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path, exit_code=1)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.FAILED)
        await wait_for(lambda: job_queue.is_paused)

        job = job_queue.repository.get_by_id(job_id)
        job.retry_count = 1
        job_queue.repository.update(job)

        assert await job_queue.retry(job_id) is True
        job = job_queue.get_by_id(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 2
        assert job.progress_percentage == 0.0
        assert job.current_frame == 0
        assert job.last_error is None
        assert job.error_detail is None
        assert job.completed_at is None

    @pytest.mark.asyncio(loop_scope="function")
    async def test_retry_then_succeed(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, tmp_path / "late.mp4", tmp_path)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.FAILED)

        (tmp_path / "late.mp4").write_bytes(b"\x00")
        assert await job_queue.retry(job_id) is True
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.COMPLETED)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_rejected_transitions_leave_job_unchanged(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.COMPLETED)
        before = job_queue.repository.get_by_id(job_id)

        assert await job_queue.cancel(job_id) is False
        assert await job_queue.pause(job_id) is False
        assert await job_queue.resume(job_id) is False
        assert await job_queue.retry(job_id) is False
        assert job_queue.repository.get_by_id(job_id) == before

    @pytest.mark.asyncio(loop_scope="function")
    async def test_pause_and_retry_need_right_state(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path)
        assert await job_queue.pause(job_id) is False  # pending, not running
        assert await job_queue.retry(job_id) is False
        assert await job_queue.resume(job_id) is False
        assert status_of(job_queue, job_id) == JobStatus.PENDING

    @pytest.mark.asyncio(loop_scope="function")
    async def test_unknown_job(self, job_queue):
        for operation in (job_queue.cancel, job_queue.pause, job_queue.resume, job_queue.retry, job_queue.delete):
            assert await operation("missing") is False

    @pytest.mark.asyncio(loop_scope="function")
    async def test_enforced_max_retries(self, repository, processor, config, source_video, tmp_path):
        config = config.merge_cli_overrides({})
        config.queue.enforce_max_retries = True
        job_queue = JobQueue(repository, processor, config)
        job = Job(
            source_video_path=str(source_video),
            output_path=str(tmp_path / "out.mp4"),
            processing_kind=ProcessingKind.NON_AI,
            status=JobStatus.FAILED,
            retry_count=3,
            max_retries=3,
        )
        repository.add(job)
        assert await job_queue.retry(job.job_id) is False
        assert repository.get_by_id(job.job_id).retry_count == 3

    @pytest.mark.asyncio(loop_scope="function")
    async def test_delete_running_job(self, job_queue, source_video, tmp_path):
        job_id = await submit(job_queue, source_video, tmp_path, **SLOW)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.RUNNING)

        assert await job_queue.delete(job_id) is True
        assert job_queue.get_by_id(job_id) is None
        assert job_queue.gate.in_use == 0

    @pytest.mark.asyncio(loop_scope="function")
    async def test_clear_completed_and_all(self, job_queue, source_video, tmp_path):
        done = await submit(job_queue, source_video, tmp_path, "done.mp4")
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, done) == JobStatus.COMPLETED)
        pending = await submit(job_queue, source_video, tmp_path, "pending.mp4")

        assert await job_queue.clear_completed() == 1
        assert [job.job_id for job in job_queue.get_all()] == [pending]

        assert await job_queue.clear_all() == 1
        assert job_queue.get_all() == []


class TestQueries:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_statistics_and_groups(self, repository, processor, config):
        job_queue = JobQueue(repository, processor, config)
        statuses = [
            JobStatus.PENDING, JobStatus.PAUSED, JobStatus.COMPLETED,
            JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED,
        ]
        for status in statuses:
            repository.add(
                Job(source_video_path="in.mp4", output_path="out.mp4",
                    processing_kind="non_ai", status=status)
            )

        stats = job_queue.get_statistics()
        assert (stats.pending, stats.running, stats.paused) == (1, 0, 1)
        assert stats.completed == 2
        assert stats.failed == 2  # failed + cancelled
        assert stats.total == 6

        assert len(job_queue.get_by_status_group("active")) == 2
        assert len(job_queue.get_by_status_group("completed")) == 2
        assert {job.status for job in job_queue.get_by_status_group("failed")} == {
            JobStatus.FAILED, JobStatus.CANCELLED
        }
        with pytest.raises(ValueError):
            job_queue.get_by_status_group("archived")


class TestRecovery:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_running_jobs_fail_on_restart(self, repository, processor, config, source_video, tmp_path):
        stale = Job(
            source_video_path=str(source_video),
            output_path=str(tmp_path / "stale.mp4"),
            processing_kind=ProcessingKind.NON_AI,
            status=JobStatus.RUNNING,
            progress_percentage=40.0,
            owning_process_id=4242,
            owning_host_name="render-01",
        )
        waiting = Job(
            source_video_path=str(source_video),
            output_path=str(tmp_path / "waiting.mp4"),
            processing_kind=ProcessingKind.NON_AI,
        )
        repository.add(stale)
        repository.add(waiting)

        job_queue = JobQueue(repository, processor, config)
        assert await job_queue.start() == 1
        try:
            recovered = repository.get_by_id(stale.job_id)
            assert recovered.status == JobStatus.FAILED
            assert recovered.last_error == RESTART_INTERRUPTED_MESSAGE
            assert "pid 4242 on render-01" in recovered.error_detail
            assert recovered.owning_process_id is None
            assert recovered.progress_percentage == 40.0

            job_queue.start_queue()
            await wait_for(lambda: status_of(job_queue, waiting.job_id) == JobStatus.COMPLETED)
        finally:
            await job_queue.stop()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_stop_cancels_running_jobs(self, repository, processor, config, source_video, tmp_path):
        job_queue = JobQueue(repository, processor, config)
        await job_queue.start()
        job_id = await submit(job_queue, source_video, tmp_path, **SLOW)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, job_id) == JobStatus.RUNNING)

        await job_queue.stop()
        assert repository.get_by_id(job_id).status == JobStatus.CANCELLED

    @pytest.mark.asyncio(loop_scope="function")
    async def test_stop_leaves_queued_jobs_pending(self, repository, processor, config, source_video, tmp_path):
        """A slot freed during shutdown is not handed to the next job."""
        job_queue = JobQueue(repository, processor, config)
        await job_queue.start()
        first = await submit(job_queue, source_video, tmp_path, "a.mp4", **SLOW)
        second = await submit(job_queue, source_video, tmp_path, "b.mp4", **SLOW)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, first) == JobStatus.RUNNING)

        await job_queue.stop()

        assert repository.get_by_id(first).status == JobStatus.CANCELLED
        waiting = repository.get_by_id(second)
        assert waiting.status == JobStatus.PENDING
        assert waiting.started_at is None
        assert job_queue._active == {}
        assert job_queue.gate.in_use == 0

    @pytest.mark.asyncio(loop_scope="function")
    async def test_pending_job_runs_after_restart(self, repository, processor, config, source_video, tmp_path):
        job_queue = JobQueue(repository, processor, config)
        await job_queue.start()
        first = await submit(job_queue, source_video, tmp_path, "a.mp4", **SLOW)
        second = await submit(job_queue, source_video, tmp_path, "b.mp4")
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, first) == JobStatus.RUNNING)
        await job_queue.stop()

        restarted = JobQueue(repository, processor, config)
        assert await restarted.start() == 0
        try:
            restarted.start_queue()
            await wait_for(lambda: status_of(restarted, second) == JobStatus.COMPLETED)
        finally:
            await restarted.stop()


class TestFailureHandling:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_failed_final_write_releases_slot(self, job_queue, source_video, tmp_path):
        """The next job still runs when persisting a finished job fails."""
        repository = job_queue.repository
        real_update = repository.update
        failures = []

        def locked_once(job):
            if job.status == JobStatus.COMPLETED and not failures:
                failures.append(job.job_id)
                raise sqlite3.OperationalError("database is locked")
            return real_update(job)

        repository.update = locked_once
        first = await submit(job_queue, source_video, tmp_path, "a.mp4", frames=3)
        second = await submit(job_queue, source_video, tmp_path, "b.mp4", frames=3)
        job_queue.start_queue()

        await wait_for(lambda: status_of(job_queue, second) == JobStatus.COMPLETED)
        assert failures == [first]
        assert first not in job_queue._active
        await wait_for(lambda: job_queue.gate.in_use == 0)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_status_event_classifies_failure(self, job_queue, source_video, tmp_path):
        recorder = Recorder(job_queue)
        missing = await submit(job_queue, tmp_path / "nope.mp4", tmp_path, "a.mp4")
        broken = await submit(job_queue, source_video, tmp_path, "b.mp4", exit_code=2)
        job_queue.start_queue()
        await wait_for(lambda: status_of(job_queue, broken) == JobStatus.FAILED)

        def failure_of(job_id):
            return [
                e for e in recorder.events
                if isinstance(e, JobEvent) and e.job_id == job_id and e.status == JobStatus.FAILED
            ][-1]

        assert failure_of(missing).error_kind == "input_missing"
        assert failure_of(missing).configuration_error is True
        assert failure_of(broken).error_kind == "stage_exit"
        assert failure_of(broken).configuration_error is False
