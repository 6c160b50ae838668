"""Processing-kind plugins: turn a job's settings payload into a pipeline.

Each plugin validates its settings with a pydantic model, generates any
helper files it needs (VapourSynth scripts) and returns a
``PipelineDefinition``. Validation failures surface as
``StageConfigurationError`` so the queue can tell them apart from runtime
failures.
"""

import logging
import tempfile
import uuid
from abc import ABC, abstractmethod
from functools import partial
from pathlib import Path
from typing import Any, Dict, Iterable, Literal, Optional, Tuple, Type

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import StageConfigurationError
from .models import UpscaleQueueConfig
from .pipeline_runner import PipelineDefinition, PreflightCheck, Stage
from .progress import ProcessingStage, parse_ffmpeg_frame, parse_frame_progress
from .queue.models import Job, ProcessingKind

logger = logging.getLogger(__name__)

VAPOURSYNTH_SOURCE_LOADER = """\
import vapoursynth as vs
import sys

core = vs.core

source = {source!r}

try:
    clip = core.bs.VideoSource(source=source)
except Exception:
    try:
        clip = core.ffms2.Source(source)
    except Exception:
        try:
            clip = core.lsmas.LWLibavSource(source)
        except Exception:
            raise Exception(
                'No VapourSynth source plugin found. Install one of: '
                'BestSource, ffms2, L-SMASH Source.'
            )
"""


# ----------------------------------------------------------------------
# settings models

class RifeSettings(BaseModel):
    """RIFE frame interpolation settings."""

    multiplier: int = Field(default=2, ge=2, le=8, description="Output frames per input frame")
    target_fps: Optional[float] = Field(default=None, gt=0, description="Optional output frame rate")
    quality_preset: Literal["fast", "medium", "high"] = Field(default="medium")
    fp16: bool = Field(default=True, description="Half precision inference")
    gpu_id: int = Field(default=0, ge=0)
    num_streams: int = Field(default=2, ge=1, description="Parallel GPU streams")
    scene_detection: bool = Field(default=True)

    class Config:
        extra = "forbid"


class RealCuganSettings(BaseModel):
    """Real-CUGAN super-resolution settings."""

    noise: int = Field(default=-1, ge=-1, le=3, description="-1 = no denoise, 0 = conservative")
    scale: int = Field(default=2, ge=2, le=4)
    fp16: bool = Field(default=True)
    backend: Literal["trt", "cuda", "cpu"] = Field(default="trt")
    gpu_id: int = Field(default=0, ge=0)
    num_streams: int = Field(default=1, ge=1)

    class Config:
        extra = "forbid"

    @model_validator(mode="after")
    def denoise_needs_scale_2(self) -> "RealCuganSettings":
        if self.noise in (1, 2) and self.scale != 2:
            raise ValueError(f"noise level {self.noise} is only available with scale 2")
        return self


class RealEsrganSettings(BaseModel):
    """Real-ESRGAN super-resolution settings."""

    model: Literal[
        "RealESRGAN_x4plus",
        "RealESRGAN_x4plus_anime_6B",
        "RealESRGAN_x2plus",
        "RealESRGAN_AnimeVideo_v3",
    ] = Field(default="RealESRGAN_x4plus")
    scale: Literal[2, 4] = Field(default=4)
    tile_size: int = Field(default=0, ge=0, description="0 disables tiling")
    tile_pad: int = Field(default=10, ge=0)
    fp16: bool = Field(default=True)
    gpu_id: int = Field(default=0, ge=0)

    class Config:
        extra = "forbid"


class NonAiSettings(BaseModel):
    """FFmpeg filter-based scaling settings."""

    algorithm: Literal["xbr", "lanczos", "hqx"] = Field(default="lanczos")
    scale: int = Field(default=2, ge=2, le=4)

    class Config:
        extra = "forbid"


RIFE_PRESET_MODELS = {
    "fast": 46,     # rife v4.6
    "medium": 415,  # rife v4.15
    "high": 422,    # rife v4.22
}

CUGAN_BACKENDS = {
    "trt": "Backend.TRT(fp16={fp16}, device_id={gpu_id}, num_streams={num_streams})",
    "cuda": "Backend.ORT_CUDA(device_id={gpu_id}, cudnn_benchmark=True, num_streams={num_streams})",
    "cpu": "Backend.OV_CPU()",
}


# ----------------------------------------------------------------------
# plugin base

class ProcessingKindPlugin(ABC):
    """Builds the pipeline definition for one ProcessingKind."""

    kind: ProcessingKind
    settings_model: Type[BaseModel]
    required_tools: Tuple[str, ...] = ()

    def parse_settings(self, payload: Optional[Dict[str, Any]]) -> BaseModel:
        try:
            return self.settings_model.model_validate(payload or {})
        except ValidationError as e:
            raise StageConfigurationError(
                f"Invalid {self.kind.value} settings",
                detail=str(e),
            )

    @abstractmethod
    def build(
        self,
        job: Job,
        settings: BaseModel,
        tools: Dict[str, str],
        config: UpscaleQueueConfig,
        temp_dir: Optional[Path] = None,
    ) -> PipelineDefinition:
        """Return the stages for ``job``; tools maps names to resolved paths."""

    # shared helpers

    def encoder_stage(self, job: Job, tools: Dict[str, str], config: UpscaleQueueConfig) -> Stage:
        """FFmpeg reading a y4m stream from stdin and encoding the output file."""
        encoder = config.encoder
        return Stage(
            name="ffmpeg",
            command=tools["ffmpeg"],
            args=[
                "-hide_banner",
                "-i", "-",
                "-c:v", encoder.codec,
                "-preset", encoder.preset,
                "-crf", str(encoder.crf),
                "-pix_fmt", encoder.pixel_format,
                "-y", job.output_path,
            ],
            grace_period_s=config.pipeline.downstream_grace_period_s,
        )

    def vapoursynth_pipeline(
        self,
        job: Job,
        script: str,
        tools: Dict[str, str],
        config: UpscaleQueueConfig,
        temp_dir: Optional[Path],
    ) -> PipelineDefinition:
        """vspipe (pre-flight + y4m producer) piped into the FFmpeg encoder."""
        script_path = write_temp_script(script, f"{self.kind.value}_", temp_dir)
        vspipe = tools["vspipe"]
        pipeline = config.pipeline
        return PipelineDefinition(
            preflight=PreflightCheck(
                command=vspipe,
                args=["--info", str(script_path)],
                timeout_s=pipeline.preflight_timeout_s,
                grace_period_s=pipeline.upstream_grace_period_s,
            ),
            stages=[
                Stage(
                    name="vspipe",
                    command=vspipe,
                    args=["-p", str(script_path), "-", "-c", "y4m"],
                    parse_line=parse_frame_progress,
                    grace_period_s=pipeline.upstream_grace_period_s,
                ),
                self.encoder_stage(job, tools, config),
            ],
            temp_files=[script_path],
            progress_stage=ProcessingStage.TRANSFORMING,
        )


def write_temp_script(content: str, prefix: str, temp_dir: Optional[Path] = None) -> Path:
    directory = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{prefix}{uuid.uuid4().hex[:8]}.vpy"
    path.write_text(content, encoding="utf-8")
    logger.debug("Wrote VapourSynth script %s", path)
    return path


def _py_bool(value: bool) -> str:
    return "True" if value else "False"


# ----------------------------------------------------------------------
# plugins

class RifePlugin(ProcessingKindPlugin):
    kind = ProcessingKind.RIFE
    settings_model = RifeSettings
    required_tools = ("vspipe", "ffmpeg")

    def build(self, job, settings, tools, config, temp_dir=None):
        return self.vapoursynth_pipeline(job, self.render_script(job, settings), tools, config, temp_dir)

    @staticmethod
    def render_script(job: Job, settings: RifeSettings) -> str:
        model_id = RIFE_PRESET_MODELS[settings.quality_preset]
        lines = [
            VAPOURSYNTH_SOURCE_LOADER.format(source=job.source_video_path),
            "from vsmlrt import RIFE, Backend",
            "",
            "clip = core.resize.Bicubic(clip, format=vs.RGBS, matrix_in_s='709')",
            f"backend = Backend.TRT(fp16={_py_bool(settings.fp16)}, "
            f"device_id={settings.gpu_id}, num_streams={settings.num_streams})",
            f"clip = RIFE(clip, multi={settings.multiplier}, model={model_id}, backend=backend, "
            f"scene_detect={_py_bool(settings.scene_detection)})",
        ]
        if settings.target_fps:
            fps_num, fps_den = float(settings.target_fps).as_integer_ratio()
            lines.append(f"clip = core.std.AssumeFPS(clip, fpsnum={fps_num}, fpsden={fps_den})")
        lines += [
            "clip = core.resize.Bicubic(clip, format=vs.YUV420P8, matrix_s='709')",
            "clip.set_output()",
            "",
        ]
        return "\n".join(lines)


class RealCuganPlugin(ProcessingKindPlugin):
    kind = ProcessingKind.REAL_CUGAN
    settings_model = RealCuganSettings
    required_tools = ("vspipe", "ffmpeg")

    def build(self, job, settings, tools, config, temp_dir=None):
        return self.vapoursynth_pipeline(job, self.render_script(job, settings), tools, config, temp_dir)

    @staticmethod
    def render_script(job: Job, settings: RealCuganSettings) -> str:
        backend = CUGAN_BACKENDS[settings.backend].format(
            fp16=_py_bool(settings.fp16),
            gpu_id=settings.gpu_id,
            num_streams=settings.num_streams,
        )
        return "\n".join([
            VAPOURSYNTH_SOURCE_LOADER.format(source=job.source_video_path),
            "from vsmlrt import CUGAN, Backend",
            "",
            "clip = core.resize.Bicubic(clip, format=vs.RGBS, matrix_in_s='709')",
            f"backend = {backend}",
            f"clip = CUGAN(clip, noise={settings.noise}, scale={settings.scale}, backend=backend)",
            "clip = core.resize.Bicubic(clip, format=vs.YUV420P16, matrix_s='709')",
            "clip.set_output()",
            "",
        ])


class RealEsrganPlugin(ProcessingKindPlugin):
    kind = ProcessingKind.REAL_ESRGAN
    settings_model = RealEsrganSettings
    required_tools = ("vspipe", "ffmpeg")

    def build(self, job, settings, tools, config, temp_dir=None):
        return self.vapoursynth_pipeline(job, self.render_script(job, settings), tools, config, temp_dir)

    @staticmethod
    def render_script(job: Job, settings: RealEsrganSettings) -> str:
        tile = f"[{settings.tile_size}, {settings.tile_size}]" if settings.tile_size else "None"
        float_format = "vs.RGBH" if settings.fp16 else "vs.RGBS"
        return "\n".join([
            VAPOURSYNTH_SOURCE_LOADER.format(source=job.source_video_path),
            "from vsrealesrgan import realesrgan, RealESRGANModel",
            "",
            "width, height = clip.width, clip.height",
            f"clip = core.resize.Bicubic(clip, format={float_format}, matrix_in_s='709')",
            "clip = realesrgan(",
            "    clip,",
            f"    device_index={settings.gpu_id},",
            f"    model=RealESRGANModel.{settings.model},",
            f"    tile={tile},",
            f"    tile_pad={settings.tile_pad},",
            ")",
            # x4 models still honour a 2x request by downscaling the result
            f"if clip.width != width * {settings.scale}:",
            f"    clip = core.resize.Lanczos(clip, width=width * {settings.scale}, "
            f"height=height * {settings.scale})",
            "clip = core.resize.Bicubic(clip, format=vs.YUV420P16, matrix_s='709')",
            "clip.set_output()",
            "",
        ])


class NonAiPlugin(ProcessingKindPlugin):
    kind = ProcessingKind.NON_AI
    settings_model = NonAiSettings
    required_tools = ("ffmpeg",)

    @staticmethod
    def video_filter(settings: NonAiSettings) -> str:
        if settings.algorithm == "xbr":
            return f"xbr={settings.scale}"
        if settings.algorithm == "hqx":
            return f"hqx={settings.scale}"
        return f"scale=iw*{settings.scale}:ih*{settings.scale}:flags=lanczos"

    def build(self, job, settings, tools, config, temp_dir=None):
        encoder = config.encoder
        return PipelineDefinition(
            stages=[
                Stage(
                    name="ffmpeg",
                    command=tools["ffmpeg"],
                    args=[
                        "-hide_banner",
                        "-y",
                        "-i", job.source_video_path,
                        "-vf", self.video_filter(settings),
                        "-c:v", encoder.codec,
                        "-preset", encoder.preset,
                        "-crf", str(encoder.crf),
                        "-pix_fmt", encoder.pixel_format,
                        "-c:a", "copy",
                        "-progress", "pipe:2",
                        "-nostats",
                        job.output_path,
                    ],
                    parse_line=partial(parse_ffmpeg_frame, total_frames=job.total_frames),
                    grace_period_s=config.pipeline.downstream_grace_period_s,
                )
            ],
            progress_stage=ProcessingStage.TRANSFORMING,
        )


class PluginRegistry:
    """Maps ProcessingKind to its plugin."""

    def __init__(self, plugins: Optional[Iterable[ProcessingKindPlugin]] = None):
        self._plugins: Dict[ProcessingKind, ProcessingKindPlugin] = {}
        for plugin in plugins or ():
            self.register(plugin)

    @classmethod
    def default(cls) -> "PluginRegistry":
        return cls([RifePlugin(), RealCuganPlugin(), RealEsrganPlugin(), NonAiPlugin()])

    def register(self, plugin: ProcessingKindPlugin) -> None:
        self._plugins[ProcessingKind(plugin.kind)] = plugin

    def get(self, kind) -> ProcessingKindPlugin:
        try:
            return self._plugins[ProcessingKind(kind)]
        except (KeyError, ValueError):
            raise StageConfigurationError(
                f"No plugin registered for processing kind '{getattr(kind, 'value', kind)}'"
            )

    def kinds(self):
        return list(self._plugins)
