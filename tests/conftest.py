import asyncio
import sys
import time
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import BaseModel, Field

from upscale_queue.kinds import PluginRegistry, ProcessingKindPlugin
from upscale_queue.models import UpscaleQueueConfig
from upscale_queue.pipeline_runner import PipelineDefinition, Stage
from upscale_queue.progress import parse_frame_progress
from upscale_queue.queue.job_queue import JobQueue
from upscale_queue.queue.models import ProcessingKind
from upscale_queue.queue.processor import JobProcessor
from upscale_queue.queue.sqlite_backend import SQLiteJobRepository

# Emits "Frame: i/N" on stderr, then writes the output file and exits with the given code.
FAKE_WORKER = """\
import sys, time
frames, delay, code, output = int(sys.argv[1]), float(sys.argv[2]), int(sys.argv[3]), sys.argv[4]
for i in range(1, frames + 1):
    time.sleep(delay)
    sys.stderr.write(f"Frame: {i}/{frames}\\n")
    sys.stderr.flush()
if code == 0:
    with open(output, "wb") as f:
        f.write(b"video")
else:
    sys.stderr.write("worker failed\\n")
sys.exit(code)
"""


class FakeSettings(BaseModel):
    frames: int = Field(default=5, ge=1)
    delay: float = Field(default=0.01, ge=0.0)
    exit_code: int = 0

    class Config:
        extra = "forbid"


class FakePlugin(ProcessingKindPlugin):
    """Single-stage plugin running the current interpreter as the worker."""

    kind = ProcessingKind.NON_AI
    settings_model = FakeSettings

    def build(self, job, settings, tools, config, temp_dir=None):
        return PipelineDefinition(
            stages=[
                Stage(
                    name="worker",
                    command=sys.executable,
                    args=[
                        "-c",
                        FAKE_WORKER,
                        str(settings.frames),
                        str(settings.delay),
                        str(settings.exit_code),
                        job.output_path,
                    ],
                    parse_line=parse_frame_progress,
                    grace_period_s=1.0,
                )
            ]
        )


SLOW = {"frames": 400, "delay": 0.05}


async def wait_for(predicate, timeout: float = 15.0, interval: float = 0.02):
    """Poll ``predicate`` until truthy or fail the test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met within timeout")


@pytest.fixture
def config(tmp_path):
    return UpscaleQueueConfig.from_dict(
        {
            "queue": {
                "db_path": str(tmp_path / "jobs.db"),
                "start_paused": True,
                "pause_poll_interval_s": 0.02,
            },
            "pipeline": {
                "poll_interval_s": 0.05,
                "upstream_grace_period_s": 1.0,
                "downstream_grace_period_s": 1.0,
                "temp_dir": str(tmp_path / "tmp"),
            },
        }
    )


@pytest.fixture
def repository(config):
    repo = SQLiteJobRepository(config.queue.db_path)
    yield repo
    repo.close()


@pytest.fixture
def source_video(tmp_path) -> Path:
    path = tmp_path / "input.mp4"
    path.write_bytes(b"\x00" * 128)
    return path


@pytest.fixture
def processor(config):
    return JobProcessor(config, registry=PluginRegistry([FakePlugin()]))


@pytest.fixture
async def job_queue(repository, processor, config):
    queue = JobQueue(repository, processor, config)
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
async def client(job_queue):
    from upscale_queue.api.main import create_app

    app = create_app(job_queue)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
