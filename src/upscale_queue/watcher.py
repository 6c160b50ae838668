"""Watch-folder intake.

Video files dropped into the configured input folder are submitted as jobs
with an output path derived from the file name. The folder is polled:

- Files already present when the watcher starts are queued on the first scan
- A new file is queued once its size and mtime are unchanged between two
  scans and it has not been modified for ``settle_time_s``
- Each path is considered once per watcher; files whose output already exists
  or that already have an active job are skipped
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .models import WatchSettings
from .queue.job_queue import JobQueue
from .queue.models import ProcessingKind

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm", ".m4v", ".mpeg", ".mpg"}


def scan_input(
    input_path: str,
    recursive: bool = False,
    extensions: List[str] = None,
) -> List[Path]:
    """
    Scan input path for video files.

    Args:
        input_path: File or directory path.
        recursive: Whether to search directories recursively.
        extensions: Allowed extensions (e.g. ['mp4', '.mov']). If None, uses defaults.

    Returns:
        List of Path objects, sorted alphabetically.
    """
    path = Path(input_path)
    if not path.exists():
        raise FileNotFoundError(f"Input path not found: {input_path}")

    allowed_exts = set(extensions) if extensions else VIDEO_EXTENSIONS
    allowed_exts = {(e if e.startswith(".") else f".{e}").lower() for e in allowed_exts}

    files = []

    if path.is_file():
        if path.suffix.lower() in allowed_exts:
            files.append(path)
    elif path.is_dir():
        if recursive:
            for root, _, filenames in os.walk(path):
                for name in filenames:
                    p = Path(root) / name
                    if p.suffix.lower() in allowed_exts:
                        files.append(p)
        else:
            for item in path.iterdir():
                if item.is_file() and item.suffix.lower() in allowed_exts:
                    files.append(item)

    files.sort(key=lambda p: str(p))
    return files


def output_path_for(source: Path, output_dir: Path, suffix: str = "_upscaled", extension: str = ".mp4") -> Path:
    """``/in/clip.mkv`` -> ``<output_dir>/clip_upscaled.mp4``"""
    if not extension.startswith("."):
        extension = f".{extension}"
    return output_dir / f"{source.stem}{suffix}{extension}"


class FolderWatcher:
    """Polls an input folder and submits new video files to a JobQueue.

    Example:
        >>> watcher = FolderWatcher(job_queue, config.watch)
        >>> await watcher.start()
        ...
        >>> await watcher.stop()
    """

    def __init__(self, job_queue: JobQueue, settings: Optional[WatchSettings] = None):
        self.job_queue = job_queue
        self.settings = settings or WatchSettings()
        self.input_dir = Path(self.settings.input_dir).resolve()
        self.output_dir = Path(self.settings.output_dir).resolve()
        self._handled: Set[str] = set()
        self._observed: Dict[str, Tuple[int, int]] = {}
        self._scans = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        if not self.input_dir.exists():
            logger.warning("Watch folder does not exist: %s. Creating...", self.input_dir)
        self.input_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Watching %s for new videos (output: %s)", self.input_dir, self.output_dir)
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Folder watcher stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Watch folder scan failed")
            await asyncio.sleep(self.settings.poll_interval_s)

    async def scan_once(self) -> List[str]:
        """Examine the input folder once.

        Returns:
            Ids of the jobs submitted by this scan
        """
        initial = self._scans == 0
        self._scans += 1

        files = scan_input(
            str(self.input_dir),
            recursive=self.settings.recursive,
            extensions=self.settings.extensions,
        )
        present = {str(path) for path in files}
        for key in list(self._observed):
            if key not in present:
                del self._observed[key]

        submitted = []
        for path in files:
            key = str(path)
            if key in self._handled or not self._is_ready(key, path, initial):
                continue
            self._handled.add(key)
            self._observed.pop(key, None)
            job_id = await self._queue_file(path)
            if job_id is not None:
                submitted.append(job_id)

        if submitted and self.settings.start_queue:
            self.job_queue.start_queue()
        return submitted

    def _is_ready(self, key: str, path: Path, initial: bool) -> bool:
        """Not modified recently and unchanged since the previous scan."""
        try:
            stat = path.stat()
        except FileNotFoundError:
            return False

        signature = (stat.st_size, stat.st_mtime_ns)
        previous = self._observed.get(key)
        self._observed[key] = signature

        if time.time() - stat.st_mtime < self.settings.settle_time_s:
            return False
        return initial or previous == signature

    async def _queue_file(self, path: Path) -> Optional[str]:
        output = output_path_for(
            path, self.output_dir, self.settings.output_suffix, self.settings.output_extension
        )
        if output.exists():
            logger.info("Output already exists for %s, skipping", path.name)
            return None

        source = str(path)
        if any(job.source_video_path == source for job in self.job_queue.get_by_status_group("active")):
            logger.info("Job already exists for %s, skipping", path.name)
            return None

        kind = ProcessingKind(self.settings.processing_kind)
        job_id = await self.job_queue.submit(source, str(output), kind, dict(self.settings.settings))
        logger.info("Queued %s as job %s (%s)", path.name, job_id, kind.value)
        return job_id
