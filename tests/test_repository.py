"""Tests for the SQLite job repository."""

import time

from upscale_queue.queue.models import Job, JobStatus
from upscale_queue.queue.sqlite_backend import (
    MAX_DETAIL_LENGTH,
    MAX_ERROR_LENGTH,
    MAX_SNIPPET_LENGTH,
    SQLiteJobRepository,
)


def make_job(**overrides) -> Job:
    data = {
        "source_video_path": "/videos/in.mp4",
        "output_path": "/videos/out.mp4",
        "processing_kind": "real_cugan",
        "settings": {"noise": 0, "scale": 2},
    }
    data.update(overrides)
    return Job(**data)


class TestSQLiteJobRepository:
    """Persistence, ordering and audit trail."""

    def test_add_and_get_round_trips_fields(self, repository):
        job = make_job(total_frames=1200, owning_process_id=42, owning_host_name="gpu-box")
        repository.add(job)

        loaded = repository.get_by_id(job.job_id)
        assert loaded == job
        assert loaded.settings == {"noise": 0, "scale": 2}

    def test_get_missing_returns_none(self, repository):
        assert repository.get_by_id("missing") is None

    def test_update_missing_row_is_noop(self, repository):
        job = make_job()
        assert repository.update(job) is False
        assert repository.get_by_id(job.job_id) is None
        assert repository.get_all() == []

    def test_update_overwrites(self, repository):
        job = make_job()
        repository.add(job)
        job.status = JobStatus.RUNNING
        job.progress_percentage = 37.5
        job.current_frame = 450
        assert repository.update(job) is True

        loaded = repository.get_by_id(job.job_id)
        assert loaded.status == JobStatus.RUNNING
        assert loaded.progress_percentage == 37.5
        assert loaded.current_frame == 450

    def test_long_text_truncated(self, repository):
        job = make_job(
            last_error="e" * (MAX_ERROR_LENGTH + 100),
            error_detail="d" * (MAX_DETAIL_LENGTH + 100),
            owning_host_name="h" * 400,
        )
        repository.add(job)
        loaded = repository.get_by_id(job.job_id)
        assert len(loaded.last_error) == MAX_ERROR_LENGTH
        assert len(loaded.error_detail) == MAX_DETAIL_LENGTH
        assert len(loaded.owning_host_name) == 256

    def test_transitions_logged_on_status_change(self, repository):
        job = make_job()
        repository.add(job)

        job.status = JobStatus.RUNNING
        repository.update(job)
        job.progress_percentage = 10.0
        repository.update(job)  # same status, no transition
        job.status = JobStatus.FAILED
        job.last_error = "x" * 500
        repository.update(job)

        transitions = repository.get_transitions(job.job_id)
        assert [(t.from_state, t.to_state) for t in transitions] == [
            (None, "pending"),
            ("pending", "running"),
            ("running", "failed"),
        ]
        assert len(transitions[-1].error_snippet) == MAX_SNIPPET_LENGTH

    def test_get_all_newest_first(self, repository):
        first = make_job()
        repository.add(first)
        time.sleep(0.01)
        second = make_job()
        repository.add(second)

        assert [job.job_id for job in repository.get_all()] == [second.job_id, first.job_id]

    def test_get_by_status_oldest_first(self, repository):
        jobs = []
        for status in (JobStatus.PENDING, JobStatus.FAILED, JobStatus.PENDING):
            job = make_job(status=status)
            repository.add(job)
            jobs.append(job)
            time.sleep(0.01)

        pending = repository.get_by_status(JobStatus.PENDING)
        assert [job.job_id for job in pending] == [jobs[0].job_id, jobs[2].job_id]
        assert len(repository.get_by_status(JobStatus.PENDING, JobStatus.FAILED)) == 3
        assert repository.get_by_status() == []

    def test_get_by_ids_keeps_order_and_skips_missing(self, repository):
        a, b = make_job(), make_job()
        repository.add(a)
        repository.add(b)
        found = repository.get_by_ids([b.job_id, "missing", a.job_id])
        assert [job.job_id for job in found] == [b.job_id, a.job_id]

    def test_count_by_status(self, repository):
        repository.add(make_job(status=JobStatus.COMPLETED))
        repository.add(make_job(status=JobStatus.COMPLETED))
        repository.add(make_job())
        assert repository.count_by_status(JobStatus.COMPLETED) == 2
        assert repository.count_by_status(JobStatus.PENDING) == 1
        assert repository.count_by_status(JobStatus.RUNNING) == 0

    def test_delete(self, repository):
        job = make_job()
        repository.add(job)
        assert repository.delete(job.job_id) is True
        assert repository.get_by_id(job.job_id) is None
        assert repository.get_transitions(job.job_id) == []
        assert repository.delete(job.job_id) is False

    def test_delete_by_status(self, repository):
        repository.add(make_job(status=JobStatus.COMPLETED))
        repository.add(make_job(status=JobStatus.CANCELLED))
        keep = make_job()
        repository.add(keep)

        assert repository.delete_by_status(JobStatus.COMPLETED, JobStatus.CANCELLED) == 2
        assert [job.job_id for job in repository.get_all()] == [keep.job_id]
        assert repository.delete_by_status() == 0

    def test_survives_reopen(self, tmp_path):
        db_path = tmp_path / "nested" / "jobs.db"
        repo = SQLiteJobRepository(str(db_path))
        job = make_job()
        repo.add(job)
        repo.close()

        reopened = SQLiteJobRepository(str(db_path))
        try:
            assert reopened.get_by_id(job.job_id) == job
        finally:
            reopened.close()
