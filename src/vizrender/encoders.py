"""Hardware H.264 encoder detection.

The probe asks ffmpeg which encoders it was built with. A listed encoder is
not a guarantee the hardware is present, but it is the same signal the
render path relies on; any probe failure degrades to software encoding.
"""

import logging
import subprocess
import threading
from enum import Enum
from typing import Optional

from .ffmpeg_runner import find_ffmpeg

logger = logging.getLogger(__name__)


class EncoderId(str, Enum):
    """Encoder paths the stitcher knows how to drive."""

    NVENC = "h264_nvenc"
    VIDEOTOOLBOX = "h264_videotoolbox"
    AMF = "h264_amf"
    QSV = "h264_qsv"
    SOFTWARE = "libx264"


# Probe order: first match wins
HARDWARE_PRIORITY = (
    EncoderId.NVENC,
    EncoderId.VIDEOTOOLBOX,
    EncoderId.AMF,
    EncoderId.QSV,
)


def pick_encoder(encoders_text: str) -> EncoderId:
    """Choose the best encoder listed in ``ffmpeg -encoders`` output."""
    for encoder in HARDWARE_PRIORITY:
        if f" {encoder.value} " in encoders_text:
            return encoder
    return EncoderId.SOFTWARE


class EncoderProber:
    """One-shot, memoized encoder capability probe.

    Args:
        ffmpeg_path: Explicit ffmpeg binary (None = bundled, then PATH)
        force_software: Skip probing and always report libx264
        timeout_s: Timeout for the probe command
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        force_software: bool = False,
        timeout_s: int = 5,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.force_software = force_software
        self.timeout_s = timeout_s
        self._detected: Optional[EncoderId] = None
        self._lock = threading.Lock()

    @property
    def detected(self) -> Optional[EncoderId]:
        """Memoized result, or None if detect() has not run yet."""
        return self._detected

    def detect(self) -> EncoderId:
        """Return the encoder to use, probing on first call only."""
        with self._lock:
            if self._detected is None:
                self._detected = self._probe()
                logger.info("Video encoder: %s", self._detected.value)
            return self._detected

    def _probe(self) -> EncoderId:
        if self.force_software:
            logger.info("Software encoding forced by configuration")
            return EncoderId.SOFTWARE

        ffmpeg = find_ffmpeg(self.ffmpeg_path)
        if not ffmpeg:
            logger.warning("ffmpeg not found; falling back to software encoding")
            return EncoderId.SOFTWARE

        try:
            proc = subprocess.run(
                [ffmpeg, "-hide_banner", "-encoders"],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout_s,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Encoder probe failed (%s); falling back to software encoding", e)
            return EncoderId.SOFTWARE

        if proc.returncode != 0:
            logger.warning(
                "Encoder probe exited with %s; falling back to software encoding",
                proc.returncode,
            )
            return EncoderId.SOFTWARE

        return pick_encoder(proc.stdout or "")
