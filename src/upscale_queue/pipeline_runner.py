"""Chained subprocess orchestration with progress, cancellation and pause.

A pipeline is one or two external processes. In the two-stage case the
producer's (stage A) standard output is copied into the consumer's (stage B)
standard input, e.g. ``vspipe -c y4m`` feeding an FFmpeg encoder.

Key Features:
- Optional pre-flight validation run with its own long timeout
- Async byte copy between stages, broken pipes tolerated once stopping
- Line-by-line stderr observation with monotonic progress reporting
- Per-stage grace periods: terminate first, then kill the process tree
- Cooperative pause checked at progress ticks and on a poll interval
- Temporary file cleanup on every exit path
"""

import asyncio
import logging
import re
import shlex
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple, Union

import psutil

from .errors import (
    PipelineCancelled,
    PipelineErrorKind,
    PipelinePaused,
    PreflightFailedError,
    PreflightTimeoutError,
    StageConfigurationError,
    StageExitError,
    StreamCopyError,
    ToolNotFoundError,
)
from .progress import ProcessingStage, StageProgress

logger = logging.getLogger(__name__)

LINE_SPLIT = re.compile(rb"\r\n|\r|\n")
READ_SIZE = 4096
IO_DRAIN_TIMEOUT_S = 5.0

LineParser = Callable[[str], Optional[StageProgress]]
ProgressCallback = Callable[[StageProgress], None]


@dataclass
class Stage:
    """One external process in a pipeline."""
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    parse_line: Optional[LineParser] = None   # stderr line -> progress report
    grace_period_s: float = 3.0               # terminate -> kill delay

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]


@dataclass
class PreflightCheck:
    """Info-only validation run executed before any real work starts."""
    command: str
    args: List[str] = field(default_factory=list)
    timeout_s: float = 1200.0
    grace_period_s: float = 3.0
    name: str = "preflight"

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]


@dataclass
class PipelineDefinition:
    """Everything a plugin hands to the pipeline for one job."""
    stages: List[Stage]
    preflight: Optional[PreflightCheck] = None
    temp_files: List[Union[str, Path]] = field(default_factory=list)
    progress_stage: ProcessingStage = ProcessingStage.TRANSFORMING

    def __post_init__(self):
        if not 1 <= len(self.stages) <= 2:
            raise StageConfigurationError(
                f"A pipeline needs one or two stages (got {len(self.stages)})"
            )
        names = [stage.name for stage in self.stages]
        if len(set(names)) != len(names):
            raise StageConfigurationError(f"Stage names must be unique: {names}")


@dataclass
class PipelineResult:
    """Outcome of the runtime stages (pre-flight errors are raised instead)."""
    success: bool
    exit_codes: Dict[str, Optional[int]]
    duration_s: float
    stderr_tail: Dict[str, List[str]] = field(default_factory=dict)
    copy_error: Optional[str] = None

    def diagnostic_text(self) -> str:
        return format_stderr_tails(self.stderr_tail)

    def raise_for_status(self) -> None:
        """Raise StageExitError or StreamCopyError when the run failed."""
        if self.success:
            return
        failed = {name: code for name, code in self.exit_codes.items() if code != 0}
        if failed:
            summary = ", ".join(f"{name} exited with code {code}" for name, code in failed.items())
            raise StageExitError(
                f"Pipeline failed: {summary}",
                exit_codes=dict(self.exit_codes),
                detail=self.diagnostic_text(),
            )
        raise StreamCopyError(
            f"Stream copy between stages failed: {self.copy_error}",
            detail=self.diagnostic_text(),
        )


def format_stderr_tails(tails: Dict[str, List[str]]) -> str:
    parts = []
    for name, lines in tails.items():
        if lines:
            parts.append("\n".join(f"[{name}] {line}" for line in lines))
    return "\n".join(parts)


def kill_process_tree(pid: int) -> None:
    """Force kill a process and all of its descendants."""
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return

    for proc in children + [parent]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass

    psutil.wait_procs(children + [parent], timeout=1.0)


async def iter_stream_lines(stream: asyncio.StreamReader):
    """Yield decoded lines split on CR, LF or CRLF (progress lines often end in CR)."""
    buffer = b""
    while True:
        chunk = await stream.read(READ_SIZE)
        if not chunk:
            break
        buffer += chunk
        *lines, buffer = LINE_SPLIT.split(buffer)
        for raw in lines:
            if raw:
                yield raw.decode("utf-8", errors="replace")
    if buffer:
        yield buffer.decode("utf-8", errors="replace")


class ProcessPipeline:
    """Drive one PipelineDefinition to completion, cancellation or pause.

    Example:
        >>> pipeline = ProcessPipeline(
        ...     definition,
        ...     progress_callback=lambda p: print(f"{p.percentage:.1f}%"),
        ...     cancel_event=cancel_event,
        ... )
        >>> result = await pipeline.run()
        >>> result.raise_for_status()
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        pause_requested: Optional[Callable[[], bool]] = None,
        copy_chunk_size: int = 64 * 1024,
        poll_interval_s: float = 0.5,
        tail_lines: int = 50,
    ):
        """Initialize the pipeline driver.

        Args:
            definition: Stages, optional pre-flight and temp files
            progress_callback: Receives non-decreasing progress reports
            cancel_event: Set to stop every stage and raise PipelineCancelled
            pause_requested: Polled; returning True stops the stages and
                raises PipelinePaused
            copy_chunk_size: Bytes per read when copying stage A into stage B
            poll_interval_s: Supervisor wake-up interval for pause checks
            tail_lines: Stderr lines kept per stage for error detail
        """
        self.definition = definition
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event
        self.pause_requested = pause_requested
        self.copy_chunk_size = copy_chunk_size
        self.poll_interval_s = poll_interval_s
        self.tail_lines = tail_lines

        self._wakeup = asyncio.Event()
        self._stopping = False
        self._copy_error: Optional[BaseException] = None
        self._last_percentage = -1.0
        self._tails: Dict[str, Deque[str]] = {}

    async def run(self) -> PipelineResult:
        """Run pre-flight (if any) and the stages, then clean up temp files.

        Raises:
            PreflightTimeoutError, PreflightFailedError: pre-flight problems
            ToolNotFoundError: an executable could not be started
            PipelineCancelled, PipelinePaused: stopped on request
        """
        started = time.monotonic()
        try:
            self._raise_if_stop_requested()
            if self.definition.preflight is not None:
                await self._run_preflight(self.definition.preflight)
                self._raise_if_stop_requested()
            return await self._run_stages(started)
        finally:
            self._cleanup_temp_files()

    # ------------------------------------------------------------------
    # stop handling

    def _stop_reason(self) -> Optional[PipelineErrorKind]:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return PipelineErrorKind.CANCELLED
        if self.pause_requested is not None and self.pause_requested():
            return PipelineErrorKind.PAUSED
        return None

    def _raise_if_stop_requested(self) -> None:
        reason = self._stop_reason()
        if reason is not None:
            raise self._stop_error(reason)

    @staticmethod
    def _stop_error(reason: PipelineErrorKind):
        if reason is PipelineErrorKind.PAUSED:
            return PipelinePaused("Paused by request")
        return PipelineCancelled("Cancelled by request")

    async def _wait_for_stop(self) -> PipelineErrorKind:
        """Return once cancellation or pause is requested."""
        while True:
            reason = self._stop_reason()
            if reason is not None:
                return reason
            self._wakeup.clear()
            waiters = [asyncio.ensure_future(self._wakeup.wait())]
            if self.cancel_event is not None:
                waiters.append(asyncio.ensure_future(self.cancel_event.wait()))
            try:
                await asyncio.wait(
                    waiters,
                    timeout=self.poll_interval_s,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                for waiter in waiters:
                    waiter.cancel()

    # ------------------------------------------------------------------
    # process helpers

    async def _spawn(self, name: str, argv: List[str], stdin) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ToolNotFoundError(
                f"Could not start {name}: executable not found: {argv[0]}",
                detail=str(e),
            )

    async def _shutdown(self, proc: asyncio.subprocess.Process, grace_period_s: float, name: str) -> None:
        """Polite terminate, then kill the whole tree once the grace period elapses."""
        if proc.returncode is not None:
            return
        logger.debug("Stopping %s (pid %s)", name, proc.pid)
        try:
            proc.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_period_s)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "%s did not exit within %.1fs, killing process tree", name, grace_period_s
            )

        await asyncio.to_thread(kill_process_tree, proc.pid)
        await proc.wait()

    # ------------------------------------------------------------------
    # pre-flight

    async def _run_preflight(self, check: PreflightCheck) -> None:
        logger.info("Pre-flight: %s", shlex.join(check.argv))
        proc = await self._spawn(check.name, check.argv, stdin=asyncio.subprocess.DEVNULL)

        communicate = asyncio.ensure_future(proc.communicate())
        stop_task = asyncio.ensure_future(self._wait_for_stop())
        try:
            done, _ = await asyncio.wait(
                {communicate, stop_task},
                timeout=check.timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            communicate.cancel()
            stop_task.cancel()
            await self._shutdown(proc, check.grace_period_s, check.name)
            raise

        if communicate in done:
            stop_task.cancel()
            stdout, stderr = communicate.result()
            stderr_text = stderr.decode("utf-8", errors="replace")
            for line in stderr_text.splitlines():
                logger.debug("[%s] %s", check.name, line)
            if proc.returncode != 0:
                raise PreflightFailedError(
                    f"Pre-flight validation failed with exit code {proc.returncode}",
                    detail=stderr_text.strip() or stdout.decode("utf-8", errors="replace").strip(),
                )
            logger.debug("Pre-flight passed")
            return

        self._stopping = True
        await self._shutdown(proc, check.grace_period_s, check.name)
        communicate.cancel()
        try:
            await communicate
        except asyncio.CancelledError:
            pass

        if stop_task in done:
            raise self._stop_error(stop_task.result())

        stop_task.cancel()
        raise PreflightTimeoutError(
            f"Pre-flight validation timed out after {check.timeout_s:.0f}s",
            detail="The validation run did not finish; one-time model initialization may have failed.",
        )

    # ------------------------------------------------------------------
    # stages

    async def _run_stages(self, started: float) -> PipelineResult:
        stages = self.definition.stages
        logger.info("Running: %s", " | ".join(shlex.join(stage.argv) for stage in stages))

        launched: List[Tuple[Stage, asyncio.subprocess.Process]] = []
        try:
            for index, stage in enumerate(stages):
                stdin = asyncio.subprocess.DEVNULL if index == 0 else asyncio.subprocess.PIPE
                proc = await self._spawn(stage.name, stage.argv, stdin=stdin)
                launched.append((stage, proc))
        except BaseException:
            await self._shutdown_all(launched)
            raise

        io_tasks: List[asyncio.Future] = []
        copy_task: Optional[asyncio.Future] = None
        for stage, proc in launched:
            self._tails[stage.name] = deque(maxlen=self.tail_lines)
            io_tasks.append(asyncio.ensure_future(self._observe(stage, proc.stderr)))

        if len(launched) == 2:
            (_, upstream), (_, downstream) = launched
            copy_task = asyncio.ensure_future(self._copy(upstream.stdout, downstream.stdin))
            io_tasks.append(copy_task)
            io_tasks.append(asyncio.ensure_future(self._drain(downstream.stdout)))
        else:
            io_tasks.append(asyncio.ensure_future(self._drain(launched[0][1].stdout)))

        try:
            stop_reason, failed = await self._supervise(launched, copy_task)
        except BaseException:
            self._stopping = True
            await self._shutdown_all(launched)
            await self._finish_io(io_tasks)
            raise

        if stop_reason is not None or failed:
            self._stopping = True
            await self._shutdown_all(launched)
        await self._finish_io(io_tasks)

        if stop_reason is not None:
            raise self._stop_error(stop_reason)

        exit_codes = {stage.name: proc.returncode for stage, proc in launched}
        success = all(code == 0 for code in exit_codes.values()) and self._copy_error is None
        result = PipelineResult(
            success=success,
            exit_codes=exit_codes,
            duration_s=time.monotonic() - started,
            stderr_tail={name: list(lines) for name, lines in self._tails.items()},
            copy_error=str(self._copy_error) if self._copy_error is not None else None,
        )
        if success:
            logger.info("Pipeline finished in %.1fs", result.duration_s)
        else:
            logger.error("Pipeline failed, exit codes: %s", exit_codes)
        return result

    async def _supervise(self, launched, copy_task) -> Tuple[Optional[PipelineErrorKind], bool]:
        """Wait for every stage to exit, a failure, or a stop request."""
        waits = {asyncio.ensure_future(proc.wait()): (stage, proc) for stage, proc in launched}
        watch = set(waits)
        if copy_task is not None:
            watch.add(copy_task)
        stop_task = asyncio.ensure_future(self._wait_for_stop())
        watch.add(stop_task)

        try:
            while waits:
                done, _ = await asyncio.wait(watch, return_when=asyncio.FIRST_COMPLETED)
                if stop_task in done:
                    return stop_task.result(), False

                failed = False
                for task in done:
                    watch.discard(task)
                    if task is copy_task:
                        failed = failed or self._copy_error is not None
                        continue
                    stage, proc = waits.pop(task)
                    logger.debug("%s exited with code %s", stage.name, proc.returncode)
                    if proc.returncode != 0:
                        failed = True
                if failed:
                    return None, True
            return None, False
        finally:
            stop_task.cancel()
            for task in waits:
                task.cancel()

    async def _shutdown_all(self, launched) -> None:
        await asyncio.gather(
            *(self._shutdown(proc, stage.grace_period_s, stage.name) for stage, proc in launched)
        )

    async def _finish_io(self, io_tasks: List[asyncio.Future]) -> None:
        if not io_tasks:
            return
        _, pending = await asyncio.wait(io_tasks, timeout=IO_DRAIN_TIMEOUT_S)
        for task in pending:
            task.cancel()
        await asyncio.gather(*io_tasks, return_exceptions=True)

    async def _copy(self, source: asyncio.StreamReader, sink: asyncio.StreamWriter) -> None:
        """Copy stage A stdout into stage B stdin, then close stage B stdin."""
        try:
            while True:
                chunk = await source.read(self.copy_chunk_size)
                if not chunk:
                    break
                sink.write(chunk)
                await sink.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            if self._stopping:
                logger.debug("Pipe closed while stopping: %s", e)
            else:
                logger.error("Stream copy failed: %s", e)
                self._copy_error = e
        except Exception as e:
            if not self._stopping:
                logger.error("Stream copy failed: %s", e)
                self._copy_error = e
        finally:
            try:
                sink.close()
                await sink.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def _drain(self, stream: asyncio.StreamReader) -> None:
        while await stream.read(self.copy_chunk_size):
            pass

    async def _observe(self, stage: Stage, stream: asyncio.StreamReader) -> None:
        """Log a stage's stderr, keep its tail and forward progress reports."""
        tail = self._tails[stage.name]
        async for line in iter_stream_lines(stream):
            logger.debug("[%s] %s", stage.name, line)
            tail.append(line)
            if stage.parse_line is None:
                continue

            progress = stage.parse_line(line)
            if progress is None:
                continue
            if progress.percentage >= self._last_percentage:
                self._last_percentage = progress.percentage
                self._emit(progress)
            # pause checkpoint
            if self.pause_requested is not None and self.pause_requested():
                self._wakeup.set()

    def _emit(self, progress: StageProgress) -> None:
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(progress)
        except Exception as e:
            logger.warning("Progress callback error: %s", e)

    def _cleanup_temp_files(self) -> None:
        for path in self.definition.temp_files:
            path = Path(path)
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove temp file %s: %s", path, e)
