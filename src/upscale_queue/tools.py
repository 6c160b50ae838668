"""External executable lookup and availability checks."""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .models import ToolPaths

logger = logging.getLogger(__name__)

KNOWN_TOOLS = ("ffmpeg", "vspipe", "python")

VERSION_ARGS = {
    "ffmpeg": ["-version"],
    "vspipe": ["--version"],
    "python": ["--version"],
}


@dataclass
class ToolInfo:
    """Result of probing one executable."""
    name: str
    path: Optional[str]
    version: Optional[str] = None
    is_valid: bool = False


class ToolLocator:
    """Resolve executables: configured path, then PATH, then bundled FFmpeg."""

    def __init__(self, paths: Optional[ToolPaths] = None):
        self.paths = paths or ToolPaths()
        self._cache: Dict[str, Optional[str]] = {}

    def locate(self, name: str) -> Optional[str]:
        """Return an absolute path for ``name`` or None when it cannot be found."""
        if name not in self._cache:
            self._cache[name] = self._resolve(name)
        return self._cache[name]

    def _resolve(self, name: str) -> Optional[str]:
        configured = getattr(self.paths, f"{name}_path", None)
        if configured:
            if Path(configured).is_file():
                return str(Path(configured))
            found = shutil.which(configured)
            if found:
                return found
            logger.warning("Configured %s path not found: %s", name, configured)

        candidates = ["python3", "python"] if name == "python" else [name]
        for candidate in candidates:
            found = shutil.which(candidate)
            if found:
                return found

        if name == "ffmpeg":
            return self._bundled_ffmpeg()
        return None

    @staticmethod
    def _bundled_ffmpeg() -> Optional[str]:
        """FFmpeg binary shipped with imageio-ffmpeg."""
        try:
            import imageio_ffmpeg
            return imageio_ffmpeg.get_ffmpeg_exe()
        except (ImportError, RuntimeError) as e:
            logger.debug("Bundled FFmpeg unavailable: %s", e)
            return None

    def missing(self, names: List[str]) -> List[str]:
        return [name for name in names if self.locate(name) is None]


def check_tool(locator: ToolLocator, name: str, timeout_s: float = 5.0) -> ToolInfo:
    """Run ``<tool> --version``; any failure reports the tool as unavailable."""
    path = locator.locate(name)
    if path is None:
        return ToolInfo(name=name, path=None)

    try:
        completed = subprocess.run(
            [path, *VERSION_ARGS.get(name, ["--version"])],
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Probe of %s failed: %s", name, e)
        return ToolInfo(name=name, path=path)

    output = (completed.stdout or completed.stderr or "").strip()
    version = output.splitlines()[0] if output else None
    return ToolInfo(name=name, path=path, version=version, is_valid=completed.returncode == 0)


def check_all(locator: ToolLocator) -> List[ToolInfo]:
    return [check_tool(locator, name) for name in KNOWN_TOOLS]
