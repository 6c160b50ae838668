"""Per-job glue between the queue and the process pipeline."""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..errors import InputMissingError, PipelineError, StageConfigurationError, ToolNotFoundError
from ..kinds import PluginRegistry
from ..models import UpscaleQueueConfig
from ..pipeline_runner import PipelineResult, ProcessPipeline
from ..progress import ProcessingStage, ProgressTracker
from ..tools import ToolLocator
from .models import Job

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressTracker], None]


@dataclass
class ProcessOutcome:
    """Successful run summary."""
    result: PipelineResult
    output_file_size_bytes: Optional[int]
    duration_s: float


class JobProcessor:
    """Validate a job, build its pipeline and drive it to completion.

    Steps:
    1. Source file must exist (checked here, never at submission)
    2. Plugin lookup and settings validation
    3. Executable resolution through ToolLocator
    4. Pipeline build and output directory creation
    5. Pipeline run with progress mapped through ProgressTracker
    """

    def __init__(
        self,
        config: Optional[UpscaleQueueConfig] = None,
        registry: Optional[PluginRegistry] = None,
        locator: Optional[ToolLocator] = None,
    ):
        self.config = config or UpscaleQueueConfig()
        self.registry = registry or PluginRegistry.default()
        self.locator = locator or ToolLocator(self.config.tools)

    async def process(
        self,
        job: Job,
        on_progress: Optional[ProgressListener] = None,
        cancel_event: Optional[asyncio.Event] = None,
        pause_requested: Optional[Callable[[], bool]] = None,
    ) -> ProcessOutcome:
        """Run ``job`` once.

        Raises:
            PipelineError: Any classified failure, cancellation or pause
        """
        started = time.monotonic()
        tracker = ProgressTracker(
            weights=self.config.progress,
            start_percentage=job.progress_percentage,
        )
        tracker.total_frames = job.total_frames

        def notify() -> None:
            if on_progress is not None:
                on_progress(tracker)

        source = Path(job.source_video_path)
        if not source.is_file():
            raise InputMissingError(f"Source video not found: {source}")

        plugin = self.registry.get(job.processing_kind)
        settings = plugin.parse_settings(job.settings)

        missing = self.locator.missing(list(plugin.required_tools))
        if missing:
            raise ToolNotFoundError(
                f"Required tool(s) not found: {', '.join(missing)}",
                detail="Set tools.<name>_path in config/local.yaml or add the tool to PATH.",
            )
        tools = {name: self.locator.locate(name) for name in plugin.required_tools}

        temp_dir = Path(self.config.pipeline.temp_dir) if self.config.pipeline.temp_dir else None
        try:
            definition = plugin.build(job, settings, tools, self.config, temp_dir)
        except PipelineError:
            raise
        except (ValueError, KeyError, OSError) as e:
            raise StageConfigurationError(
                f"Could not build {plugin.kind.value} pipeline: {e}",
                detail=repr(e),
            )

        Path(job.output_path).parent.mkdir(parents=True, exist_ok=True)

        if tracker.update(ProcessingStage.ANALYZING, 100.0):
            notify()
        if tracker.enter(definition.progress_stage):
            notify()
        logger.debug("Job %s: %s", job.job_id, tracker.describe())

        def on_stage_progress(progress) -> None:
            if tracker.report(progress, definition.progress_stage):
                notify()

        pipeline = ProcessPipeline(
            definition,
            progress_callback=on_stage_progress,
            cancel_event=cancel_event,
            pause_requested=pause_requested,
            copy_chunk_size=self.config.pipeline.copy_chunk_size,
            poll_interval_s=self.config.pipeline.poll_interval_s,
            tail_lines=self.config.pipeline.diagnostic_tail_lines,
        )
        logger.info("Job %s: starting %s pipeline", job.job_id, plugin.kind.value)
        result = await pipeline.run()
        result.raise_for_status()

        tracker.complete()
        notify()
        logger.debug("Job %s: %s", job.job_id, tracker.describe())

        output = Path(job.output_path)
        size = output.stat().st_size if output.exists() else None
        return ProcessOutcome(
            result=result,
            output_file_size_bytes=size,
            duration_s=time.monotonic() - started,
        )
