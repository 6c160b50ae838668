"""Exception taxonomy for job processing.

Every failure a pipeline can surface carries a short operator-facing
``message``, an optional lower-level ``detail`` (stderr tail, raw validation
output) and a ``kind`` used to tell configuration problems apart from
runtime ones.
"""

from enum import Enum
from typing import Dict, Optional


class PipelineErrorKind(Enum):
    """Pipeline failure classification."""
    INPUT_MISSING = "input_missing"            # Source file does not exist
    TOOL_NOT_FOUND = "tool_not_found"          # Required executable not resolvable
    INVALID_CONFIGURATION = "invalid_config"   # Plugin could not build stage arguments
    PREFLIGHT_TIMEOUT = "preflight_timeout"    # Validation run exceeded its timeout
    PREFLIGHT_FAILED = "preflight_failed"      # Validation run exited non-zero
    STAGE_EXIT = "stage_exit"                  # A runtime stage exited non-zero
    STREAM_COPY = "stream_copy"                # Copying stage A -> stage B failed
    CANCELLED = "cancelled"                    # Explicit cancellation
    PAUSED = "paused"                          # Cooperative pause observed


CONFIGURATION_KINDS = frozenset({
    PipelineErrorKind.INPUT_MISSING,
    PipelineErrorKind.TOOL_NOT_FOUND,
    PipelineErrorKind.INVALID_CONFIGURATION,
})


class UpscaleQueueError(Exception):
    """Base exception for upscale-queue errors."""
    pass


class PipelineError(UpscaleQueueError):
    """Failure raised while preparing or running a job pipeline."""

    kind: PipelineErrorKind = PipelineErrorKind.STAGE_EXIT

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def is_configuration_error(self) -> bool:
        """True when retrying without changing settings or environment is pointless."""
        return self.kind in CONFIGURATION_KINDS

    def __str__(self) -> str:
        return self.message


class InputMissingError(PipelineError):
    kind = PipelineErrorKind.INPUT_MISSING


class ToolNotFoundError(PipelineError):
    kind = PipelineErrorKind.TOOL_NOT_FOUND


class StageConfigurationError(PipelineError):
    kind = PipelineErrorKind.INVALID_CONFIGURATION


class PreflightTimeoutError(PipelineError):
    kind = PipelineErrorKind.PREFLIGHT_TIMEOUT


class PreflightFailedError(PipelineError):
    kind = PipelineErrorKind.PREFLIGHT_FAILED


class StageExitError(PipelineError):
    """One or more stages exited with a non-zero code."""

    kind = PipelineErrorKind.STAGE_EXIT

    def __init__(
        self,
        message: str,
        exit_codes: Dict[str, Optional[int]],
        detail: Optional[str] = None,
    ):
        super().__init__(message, detail)
        self.exit_codes = exit_codes


class StreamCopyError(PipelineError):
    kind = PipelineErrorKind.STREAM_COPY


class PipelineCancelled(PipelineError):
    """Not a failure: the run was stopped on request."""
    kind = PipelineErrorKind.CANCELLED


class PipelinePaused(PipelineError):
    kind = PipelineErrorKind.PAUSED
