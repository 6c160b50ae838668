"""Weighted stage progress and diagnostic-line parsers.

A job's lifecycle is split into weighted stages (see ``ProgressWeights``).
Each stage reports its own 0-100 sub-progress, which is mapped linearly into
that stage's slice of the overall 0-100 range.
"""

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Pattern, Union

from .models import ProgressWeights

FRAME_PROGRESS_PATTERN = re.compile(r"Frame:\s*(\d+)/(\d+)")
FFMPEG_FRAME_PATTERN = re.compile(r"frame=\s*(\d+)")


class ProcessingStage(str, Enum):
    """Ordered lifecycle stages of one job run."""
    ANALYZING = "analyzing"
    EXTRACTING_AUDIO = "extracting_audio"
    EXTRACTING_FRAMES = "extracting_frames"
    TRANSFORMING = "transforming"
    REASSEMBLING = "reassembling"
    COMPLETE = "complete"


STAGE_ORDER = [
    ProcessingStage.ANALYZING,
    ProcessingStage.EXTRACTING_AUDIO,
    ProcessingStage.EXTRACTING_FRAMES,
    ProcessingStage.TRANSFORMING,
    ProcessingStage.REASSEMBLING,
    ProcessingStage.COMPLETE,
]

STAGE_DESCRIPTIONS = {
    ProcessingStage.ANALYZING: "Analyzing input video",
    ProcessingStage.EXTRACTING_AUDIO: "Extracting audio track",
    ProcessingStage.EXTRACTING_FRAMES: "Extracting frames from video",
    ProcessingStage.TRANSFORMING: "Transforming frames",
    ProcessingStage.REASSEMBLING: "Reassembling video",
    ProcessingStage.COMPLETE: "Processing complete",
}


@dataclass
class StageProgress:
    """One progress report emitted by a stage's diagnostic stream."""
    percentage: float                     # 0-100 within the stage
    current_frame: Optional[int] = None
    total_frames: Optional[int] = None


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def stage_weight(stage: ProcessingStage, weights: ProgressWeights) -> float:
    if stage is ProcessingStage.COMPLETE:
        return 0.0
    return getattr(weights, stage.value)


def stage_offset(stage: ProcessingStage, weights: ProgressWeights) -> float:
    """Overall percentage at which ``stage`` begins."""
    offset = 0.0
    for candidate in STAGE_ORDER:
        if candidate is stage:
            break
        offset += stage_weight(candidate, weights)
    return offset


def overall_progress(
    stage: ProcessingStage,
    stage_percentage: float,
    weights: Optional[ProgressWeights] = None,
) -> float:
    """Map a stage's own 0-100 into its slice of the overall 0-100 range.

    Examples:
        >>> overall_progress(ProcessingStage.TRANSFORMING, 50.0)
        50.0
        >>> overall_progress(ProcessingStage.COMPLETE, 0.0)
        100.0
    """
    weights = weights or ProgressWeights()
    if stage is ProcessingStage.COMPLETE:
        return 100.0
    fraction = _clamp(stage_percentage) / 100.0
    return _clamp(stage_offset(stage, weights) + fraction * stage_weight(stage, weights))


def parse_frame_progress(
    line: str,
    pattern: Union[str, Pattern[str]] = FRAME_PROGRESS_PATTERN,
) -> Optional[StageProgress]:
    """Parse a ``Frame: current/total`` diagnostic line.

    Returns None when the line does not match or the total is zero.
    """
    if isinstance(pattern, str):
        pattern = re.compile(pattern)
    match = pattern.search(line)
    if not match:
        return None
    current, total = int(match.group(1)), int(match.group(2))
    if total <= 0:
        return None
    return StageProgress(
        percentage=_clamp(current / total * 100.0),
        current_frame=current,
        total_frames=total,
    )


def parse_ffmpeg_frame(line: str, total_frames: Optional[int]) -> Optional[StageProgress]:
    """Parse an FFmpeg ``frame=  123`` status line against a known frame count."""
    if not total_frames or total_frames <= 0:
        return None
    match = FFMPEG_FRAME_PATTERN.search(line)
    if not match:
        return None
    current = int(match.group(1))
    return StageProgress(
        percentage=_clamp(current / total_frames * 100.0),
        current_frame=current,
        total_frames=total_frames,
    )


class ProgressTracker:
    """Monotonic overall progress, frame counters and ETA for one job run."""

    def __init__(
        self,
        weights: Optional[ProgressWeights] = None,
        start_percentage: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.weights = weights or ProgressWeights()
        self._clock = clock
        self._started_at = clock()
        self._start_percentage = _clamp(start_percentage)
        self.stage = ProcessingStage.ANALYZING
        self.stage_percentage = 0.0
        self.overall = self._start_percentage
        self.current_frame = 0
        self.total_frames: Optional[int] = None

    def enter(self, stage: ProcessingStage) -> bool:
        """Move to ``stage`` at 0% sub-progress. Returns True if overall advanced."""
        return self.update(stage, 0.0)

    def update(
        self,
        stage: ProcessingStage,
        stage_percentage: float,
        current_frame: Optional[int] = None,
        total_frames: Optional[int] = None,
    ) -> bool:
        """Record a stage report. Returns True if overall progress advanced."""
        if STAGE_ORDER.index(stage) < STAGE_ORDER.index(self.stage):
            return False

        self.stage = stage
        self.stage_percentage = _clamp(stage_percentage)
        if current_frame is not None:
            self.current_frame = max(self.current_frame, current_frame)
        if total_frames is not None:
            self.total_frames = total_frames

        value = overall_progress(stage, self.stage_percentage, self.weights)
        if value > self.overall:
            self.overall = value
            return True
        return False

    def report(self, progress: StageProgress, stage: Optional[ProcessingStage] = None) -> bool:
        return self.update(
            stage or self.stage,
            progress.percentage,
            progress.current_frame,
            progress.total_frames,
        )

    def complete(self) -> None:
        self.update(ProcessingStage.COMPLETE, 100.0)

    @property
    def elapsed_s(self) -> float:
        return self._clock() - self._started_at

    @property
    def eta_s(self) -> Optional[float]:
        """Seconds remaining, extrapolated from progress made in this run."""
        gained = self.overall - self._start_percentage
        if gained <= 0.0:
            return None
        if self.overall >= 100.0:
            return 0.0
        rate = gained / max(self.elapsed_s, 1e-6)
        return (100.0 - self.overall) / rate

    def describe(self) -> str:
        return (
            f"{STAGE_DESCRIPTIONS[self.stage]}: {self.stage_percentage:.1f}% "
            f"(Overall: {self.overall:.1f}%)"
        )
