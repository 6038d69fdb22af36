"""FFmpeg runner: locates the binary and parses ffmpeg progress output."""

import logging
import re
import shutil
from typing import List, Optional

import imageio_ffmpeg

from .runner import ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)

_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")


def find_ffmpeg(explicit: Optional[str] = None) -> Optional[str]:
    """Locate an ffmpeg binary.

    Lookup order: explicit path, the imageio-ffmpeg bundled binary, then
    ``ffmpeg`` on PATH.

    Returns:
        Path to the binary, or None if none is available
    """
    if explicit:
        return explicit

    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError as e:
        logger.debug("No bundled ffmpeg: %s", e)

    return shutil.which("ffmpeg")


class FfmpegRunner(ProcessRunner):
    """ProcessRunner that understands ffmpeg's ``-progress`` key=value output.

    FFmpeg progress format:
        frame=123
        fps=25.00
        out_time=00:00:05.123456
        speed=2.5x
        progress=continue
    """

    name = "ffmpeg"

    def run_ffmpeg(self, cmd: List[str], total_frames: int = 0) -> ProcessResult:
        return self.run(cmd, total_frames=total_frames)

    def _parse_line(self, line: str) -> bool:
        updated = False

        match = _FRAME_RE.search(line)
        if match:
            self._progress.frame = int(match.group(1))
            if self._progress.total_frames > 0:
                self._progress.fraction = min(
                    1.0, self._progress.frame / self._progress.total_frames
                )
            updated = True

        match = _FPS_RE.search(line)
        if match:
            self._progress.fps = float(match.group(1))

        match = _SPEED_RE.search(line)
        if match:
            self._progress.speed = float(match.group(1))

        return updated
