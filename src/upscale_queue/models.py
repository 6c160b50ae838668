"""Pydantic models for configuration and validation."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class QueueSettings(BaseModel):
    """Dispatcher and persistence parameters."""

    max_concurrent_jobs: int = Field(
        default=1, ge=1, description="Jobs allowed to run at once (GPU-bound, usually 1)"
    )
    db_path: str = Field(default="upscale_queue.db", description="SQLite database file")
    start_paused: bool = Field(
        default=True, description="Queue starts paused and needs an explicit start"
    )
    pause_poll_interval_s: float = Field(
        default=0.5, gt=0.0, description="Polling delay while the queue is paused"
    )
    default_max_retries: int = Field(
        default=3, ge=0, description="max_retries stamped on newly submitted jobs"
    )
    enforce_max_retries: bool = Field(
        default=False,
        description="Reject retry once retry_count reaches max_retries (informational otherwise)",
    )


class PipelineSettings(BaseModel):
    """Subprocess orchestration parameters."""

    preflight_timeout_s: float = Field(
        default=1200.0,
        gt=0.0,
        description="Timeout for the info-only validation run (model compilation can take minutes)",
    )
    upstream_grace_period_s: float = Field(
        default=3.0, gt=0.0, description="Grace period for the producer stage on cancellation"
    )
    downstream_grace_period_s: float = Field(
        default=2.0, gt=0.0, description="Grace period for the consumer stage on cancellation"
    )
    poll_interval_s: float = Field(
        default=0.5, gt=0.0, description="Supervisor poll interval for pause checks"
    )
    copy_chunk_size: int = Field(
        default=64 * 1024, gt=0, description="Bytes per read when piping stage A into stage B"
    )
    diagnostic_tail_lines: int = Field(
        default=50, gt=0, description="Stderr lines kept per stage for error detail"
    )
    temp_dir: Optional[str] = Field(
        default=None, description="Directory for generated scripts (None = system temp)"
    )


class ToolPaths(BaseModel):
    """Explicit executable locations; empty values fall back to PATH lookup."""

    ffmpeg_path: Optional[str] = Field(default=None, description="FFmpeg executable")
    vspipe_path: Optional[str] = Field(default=None, description="VapourSynth vspipe executable")
    python_path: Optional[str] = Field(default=None, description="Python with VapourSynth plugins")


class ProgressWeights(BaseModel):
    """Share of overall progress given to each processing stage (sums to 100)."""

    analyzing: float = Field(default=2.0, ge=0.0)
    extracting_audio: float = Field(default=3.0, ge=0.0)
    extracting_frames: float = Field(default=15.0, ge=0.0)
    transforming: float = Field(default=60.0, ge=0.0)
    reassembling: float = Field(default=20.0, ge=0.0)

    @model_validator(mode="after")
    def weights_sum_to_100(self) -> "ProgressWeights":
        """Validate that the stage slices cover exactly 0-100."""
        total = (
            self.analyzing
            + self.extracting_audio
            + self.extracting_frames
            + self.transforming
            + self.reassembling
        )
        if abs(total - 100.0) > 1e-6:
            raise ValueError(f"progress weights must sum to 100 (got {total})")
        return self


class EncoderSettings(BaseModel):
    """Downstream FFmpeg encoder used by the two-stage pipelines."""

    codec: str = Field(default="libx264", description="Video codec name")
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="slow", description="Encoding speed preset")
    crf: int = Field(default=18, ge=0, le=51, description="Constant Rate Factor")
    pixel_format: str = Field(default="yuv420p", description="Output pixel format")


class WatchSettings(BaseModel):
    """Watch-folder intake: video files dropped into ``input_dir`` become jobs."""

    enabled: bool = Field(default=False, description="Run the folder watcher alongside the API")
    input_dir: str = Field(default="watch/input", description="Folder scanned for new videos")
    output_dir: str = Field(default="watch/output", description="Folder receiving upscaled videos")
    recursive: bool = Field(default=False, description="Also scan subdirectories")
    extensions: List[str] = Field(
        default_factory=lambda: [
            ".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm", ".m4v", ".mpeg", ".mpg"
        ],
        description="Video file extensions picked up by the watcher",
    )
    poll_interval_s: float = Field(default=2.0, gt=0.0, description="Delay between folder scans")
    settle_time_s: float = Field(
        default=2.0, ge=0.0, description="A file must be unmodified this long before it is queued"
    )
    processing_kind: Literal["rife", "real_cugan", "real_esrgan", "non_ai"] = Field(
        default="real_esrgan", description="Processing kind for watched files"
    )
    settings: Dict[str, Any] = Field(
        default_factory=dict, description="Plugin settings for watched files (plugin defaults if empty)"
    )
    output_suffix: str = Field(default="_upscaled", description="Appended to the source file stem")
    output_extension: str = Field(default=".mp4", description="Container of derived output paths")
    start_queue: bool = Field(
        default=True, description="Start the queue when the watcher submits a job"
    )


class UpscaleQueueConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueSettings = Field(default_factory=QueueSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    tools: ToolPaths = Field(default_factory=ToolPaths)
    progress: ProgressWeights = Field(default_factory=ProgressWeights)
    encoder: EncoderSettings = Field(default_factory=EncoderSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)

    @classmethod
    def from_dict(cls, data: dict) -> "UpscaleQueueConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "UpscaleQueueConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if cli_args.get("workers") is not None:
            config_dict["queue"]["max_concurrent_jobs"] = cli_args["workers"]
        if cli_args.get("ffmpeg") is not None:
            config_dict["tools"]["ffmpeg_path"] = cli_args["ffmpeg"]
        if cli_args.get("vspipe") is not None:
            config_dict["tools"]["vspipe_path"] = cli_args["vspipe"]
        if cli_args.get("watch") is not None:
            config_dict["watch"]["enabled"] = True
            config_dict["watch"]["input_dir"] = cli_args["watch"]
        if cli_args.get("watch_output") is not None:
            config_dict["watch"]["output_dir"] = cli_args["watch_output"]

        return UpscaleQueueConfig.from_dict(config_dict)
