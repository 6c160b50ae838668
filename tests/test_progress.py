"""Tests for weighted progress mapping and line parsers."""

import pytest

from upscale_queue.models import ProgressWeights
from upscale_queue.progress import (
    ProcessingStage,
    ProgressTracker,
    StageProgress,
    overall_progress,
    parse_ffmpeg_frame,
    parse_frame_progress,
    stage_offset,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestParsers:
    def test_frame_progress(self):
        progress = parse_frame_progress("Frame: 250/1000")
        assert progress.percentage == 25.0
        assert progress.current_frame == 250
        assert progress.total_frames == 1000

    def test_frame_progress_embedded_in_line(self):
        progress = parse_frame_progress("Script evaluation done. Frame: 3/4 (12.5 fps)")
        assert progress.percentage == 75.0

    @pytest.mark.parametrize("line", ["", "Output 1000 frames in 40s", "Frame: 10/0"])
    def test_frame_progress_no_match(self, line):
        assert parse_frame_progress(line) is None

    def test_custom_pattern(self):
        progress = parse_frame_progress("[12 of 48]", r"\[(\d+) of (\d+)\]")
        assert progress.percentage == 25.0

    def test_ffmpeg_frame(self):
        progress = parse_ffmpeg_frame("frame=  120", total_frames=480)
        assert progress.percentage == 25.0
        assert progress.current_frame == 120

    def test_ffmpeg_frame_clamped(self):
        assert parse_ffmpeg_frame("frame=600", total_frames=480).percentage == 100.0

    def test_ffmpeg_frame_unknown_total(self):
        assert parse_ffmpeg_frame("frame=120", total_frames=None) is None


class TestOverallProgress:
    def test_stage_offsets(self):
        weights = ProgressWeights()
        assert stage_offset(ProcessingStage.ANALYZING, weights) == 0.0
        assert stage_offset(ProcessingStage.TRANSFORMING, weights) == 20.0
        assert stage_offset(ProcessingStage.REASSEMBLING, weights) == 80.0

    def test_transforming_midpoint(self):
        assert overall_progress(ProcessingStage.TRANSFORMING, 50.0) == 50.0

    def test_stage_boundaries(self):
        assert overall_progress(ProcessingStage.ANALYZING, 100.0) == 2.0
        assert overall_progress(ProcessingStage.REASSEMBLING, 100.0) == 100.0
        assert overall_progress(ProcessingStage.COMPLETE, 0.0) == 100.0

    def test_sub_progress_is_clamped(self):
        assert overall_progress(ProcessingStage.TRANSFORMING, 150.0) == 80.0
        assert overall_progress(ProcessingStage.TRANSFORMING, -10.0) == 20.0

    def test_custom_weights(self):
        weights = ProgressWeights(
            analyzing=0, extracting_audio=0, extracting_frames=0, transforming=100, reassembling=0
        )
        assert overall_progress(ProcessingStage.TRANSFORMING, 40.0, weights) == 40.0


class TestProgressTracker:
    def test_never_decreases(self):
        tracker = ProgressTracker()
        assert tracker.update(ProcessingStage.TRANSFORMING, 50.0)
        assert not tracker.update(ProcessingStage.TRANSFORMING, 30.0)
        assert tracker.overall == 50.0

    def test_earlier_stage_ignored(self):
        tracker = ProgressTracker()
        tracker.update(ProcessingStage.REASSEMBLING, 10.0)
        assert not tracker.update(ProcessingStage.ANALYZING, 100.0)
        assert tracker.stage == ProcessingStage.REASSEMBLING

    def test_report_tracks_frames(self):
        tracker = ProgressTracker()
        tracker.enter(ProcessingStage.TRANSFORMING)
        tracker.report(StageProgress(percentage=25.0, current_frame=250, total_frames=1000))
        assert tracker.current_frame == 250
        assert tracker.total_frames == 1000
        assert tracker.overall == 35.0

    def test_start_percentage_is_a_floor(self):
        tracker = ProgressTracker(start_percentage=40.0)
        assert not tracker.update(ProcessingStage.TRANSFORMING, 10.0)
        assert tracker.overall == 40.0
        assert tracker.update(ProcessingStage.TRANSFORMING, 50.0)

    def test_complete(self):
        tracker = ProgressTracker()
        tracker.complete()
        assert tracker.overall == 100.0
        assert tracker.eta_s == 0.0

    def test_eta(self):
        clock = FakeClock()
        tracker = ProgressTracker(clock=clock)
        assert tracker.eta_s is None

        clock.now += 10.0
        tracker.update(ProcessingStage.TRANSFORMING, 50.0)
        # 50% in 10s -> 50% left at 5%/s
        assert tracker.eta_s == pytest.approx(10.0)

    def test_describe(self):
        tracker = ProgressTracker()
        tracker.update(ProcessingStage.TRANSFORMING, 50.0)
        assert tracker.describe() == "Transforming frames: 50.0% (Overall: 50.0%)"
