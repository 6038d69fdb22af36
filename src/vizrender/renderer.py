"""Stitch rendered frames and the audio track into the final MP4."""

import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from .encoders import EncoderId
from .exceptions import JobCancelled, StitchError
from .ffmpeg_runner import FfmpegRunner, find_ffmpeg
from .models import StitchConfig
from .queue.checkpoint import FrameCheckpoint
from .runner import ProcessProgress

logger = logging.getLogger(__name__)

# Video codec arguments per encoder path
CODEC_ARGS = {
    EncoderId.NVENC: ["-c:v", "h264_nvenc", "-preset", "p4", "-b:v", "5M"],
    EncoderId.VIDEOTOOLBOX: ["-c:v", "h264_videotoolbox", "-b:v", "8M", "-allow_sw", "1"],
    EncoderId.AMF: ["-c:v", "h264_amf", "-b:v", "5M"],
    EncoderId.QSV: ["-c:v", "h264_qsv", "-b:v", "5M"],
    EncoderId.SOFTWARE: ["-c:v", "libx264", "-preset", "fast", "-crf", "23"],
}


def build_codec_args(encoder: Union[EncoderId, str]) -> List[str]:
    """Codec arguments for an encoder id; unknown ids get the software path."""
    try:
        encoder = EncoderId(encoder)
    except ValueError:
        logger.warning("Unknown encoder %r, using %s", encoder, EncoderId.SOFTWARE.value)
        encoder = EncoderId.SOFTWARE
    return list(CODEC_ARGS[encoder])


def build_stitch_command(
    ffmpeg: str,
    input_pattern: str,
    audio_file: str,
    start_number: int,
    fps: int,
    encoder: Union[EncoderId, str],
    output_path: str,
    pixel_format: str = "yuv420p",
) -> List[str]:
    """Assemble the ffmpeg command muxing an image sequence with one audio file."""
    return (
        [
            ffmpeg,
            "-y",
            "-progress", "pipe:1",
            "-nostats",
            "-framerate", str(fps),
            "-start_number", str(start_number),
            "-i", input_pattern,
            "-i", audio_file,
        ]
        + build_codec_args(encoder)
        + ["-pix_fmt", pixel_format, "-shortest", output_path]
    )


class Stitcher:
    """Runs ffmpeg over a frame checkpoint and an audio file.

    All-or-nothing: the frame range is verified before ffmpeg starts, and a
    partial output file is removed on failure. Frames are never touched.
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        config: Optional[StitchConfig] = None,
        artifacts_dir: Optional[str] = None,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.config = config or StitchConfig()
        self.artifacts_dir = artifacts_dir
        self._active: Optional[FfmpegRunner] = None

    def stitch(
        self,
        checkpoint: FrameCheckpoint,
        audio_file: Path,
        frame_range: Tuple[int, int],
        fps: int,
        encoder: Union[EncoderId, str],
        output_path: Path,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> Path:
        """Mux frames [start, end] and the audio track into output_path.

        Raises:
            StitchError: Missing frames, no ffmpeg, or ffmpeg failure
            JobCancelled: cancel() was called while ffmpeg was running
        """
        start, end = frame_range
        missing = checkpoint.missing(start, end)
        if missing:
            preview = ", ".join(str(i) for i in missing[:10])
            more = f" (+{len(missing) - 10} more)" if len(missing) > 10 else ""
            raise StitchError(f"Missing {len(missing)} frame(s): {preview}{more}")

        ffmpeg = find_ffmpeg(self.ffmpeg_path)
        if not ffmpeg:
            raise StitchError("ffmpeg not found; install it or set encoder.ffmpeg_path")

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        cmd = build_stitch_command(
            ffmpeg,
            checkpoint.input_pattern,
            str(audio_file),
            start,
            fps,
            encoder,
            str(output_path),
            pixel_format=self.config.pixel_format,
        )
        logger.info("Stitching %d frames with %s -> %s", end - start + 1, encoder, output_path)
        logger.debug("Stitch command: %s", " ".join(cmd))

        callback = None
        if on_progress:
            def callback(p: ProcessProgress):
                on_progress(p.fraction)

        runner = FfmpegRunner(
            timeout_s=self.config.timeout_s,
            save_artifacts_on_failure=self.config.save_artifacts_on_failure,
            artifacts_dir=self.artifacts_dir,
            progress_callback=callback,
        )
        self._active = runner
        try:
            result = runner.run_ffmpeg(cmd, total_frames=end - start + 1)
        finally:
            self._active = None

        if result.success:
            return output_path

        if output_path.exists():
            output_path.unlink()

        if result.cancelled:
            raise JobCancelled("Stitching cancelled")
        if result.timed_out:
            message = f"ffmpeg timed out after {result.duration_s:.0f}s"
        else:
            tail = "\n".join(result.output.splitlines()[-20:])
            message = f"ffmpeg failed (exit code {result.returncode}): {tail}"
        raise StitchError(message, cmd=cmd, returncode=result.returncode, output=result.output)

    def cancel(self) -> None:
        runner = self._active
        if runner is not None:
            runner.cancel()


def check_ffmpeg(ffmpeg_path: Optional[str] = None) -> Optional[str]:
    """Return the ffmpeg binary that stitching would use, or None."""
    ffmpeg = find_ffmpeg(ffmpeg_path)
    if ffmpeg:
        logger.debug("Using ffmpeg at %s", ffmpeg)
    else:
        logger.warning("ffmpeg not found")
    return ffmpeg
