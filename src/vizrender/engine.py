"""Frame and audio rendering through the external compositor.

The compositor (a Remotion bundle driven by its CLI) is a black box here:
given a composition id, input props and a frame range it writes images; given
an audio codec it writes the mixed audio track. Nothing in this module knows
how pixels are produced.
"""

import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .exceptions import EngineError, JobCancelled
from .models import CompositionSpec, EngineConfig, RenderPayload
from .queue.checkpoint import normalize_frame_names
from .runner import ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)

ProgressFn = Callable[[float], None]

# Lines of engine output quoted in error messages
ERROR_TAIL_LINES = 20


def build_composition_spec(
    payload: RenderPayload,
    engine_config: EngineConfig,
    audio_urls: Dict[str, str],
    background_urls: Dict[str, str],
) -> CompositionSpec:
    """Resolve a stored payload into compositor input props.

    Tracks and backgrounds whose bytes were uploaded get the loopback URL of
    the staged copy; others keep the URL they came with.
    """
    tracks = []
    for track in payload.tracks:
        data = track.model_dump(by_alias=True)
        data["url"] = audio_urls.get(track.id, track.url)
        tracks.append(data)

    backgrounds = []
    for background in payload.backgrounds:
        data = background.model_dump(by_alias=True)
        data["url"] = background_urls.get(background.id, background.url)
        backgrounds.append(data)

    duration = payload.total_frames(engine_config.default_duration_frames)

    return CompositionSpec(
        composition_id=engine_config.composition_id,
        fps=engine_config.fps,
        width=engine_config.width,
        height=engine_config.height,
        duration_in_frames=duration,
        input_props={
            "audioTracks": tracks,
            "backgrounds": backgrounds,
            "config": payload.config.model_dump(by_alias=True),
            "durationInFrames": duration,
        },
    )


class RenderEngine(ABC):
    """Interface to the external compositor.

    Implementations must:
    - Write one image per frame named by frame index (frame-<N>.<ext>)
    - Leave files outside the requested range untouched
    - Raise EngineError on failure, never retry internally
    """

    @abstractmethod
    def render_frames(
        self,
        spec: CompositionSpec,
        frame_range: Tuple[int, int],
        output_dir: Path,
        on_progress: Optional[ProgressFn] = None,
    ) -> None:
        """Render the closed interval [start, end] into output_dir.

        Args:
            spec: Composition to render
            frame_range: Inclusive (start, end) frame indices
            output_dir: Durable frame directory
            on_progress: Receives 0..1 scoped to this range
        """

    @abstractmethod
    def render_audio(self, spec: CompositionSpec, output_dir: Path) -> Path:
        """Render the full mixed timeline to one audio file.

        Returns:
            Path of the audio file
        """

    def cancel(self) -> None:
        """Ask an in-flight render to stop (best effort)."""


class RemotionRunner(ProcessRunner):
    """ProcessRunner that parses the compositor CLI's ``Rendered N/M`` lines."""

    name = "compositor"

    _RENDERED_RE = re.compile(r"Render(?:ed|ing)\D*?(\d+)\s*/\s*(\d+)")

    def _parse_line(self, line: str) -> bool:
        match = self._RENDERED_RE.search(line)
        if not match:
            return False
        done, total = int(match.group(1)), int(match.group(2))
        if total <= 0:
            return False
        self._progress.frame = done
        self._progress.total_frames = total
        self._progress.fraction = min(1.0, done / total)
        return True


class RemotionEngine(RenderEngine):
    """Drives the Remotion CLI (``npx remotion render``).

    Frames are rendered with ``--sequence`` straight into the durable frame
    directory. The CLI's own file naming (zero-padded, possibly with another
    prefix) is normalized to ``frame-<N>.<ext>`` after each call.
    """

    def __init__(self, config: EngineConfig, artifacts_dir: Optional[str] = None):
        self.config = config
        self.artifacts_dir = artifacts_dir
        self._active: Optional[RemotionRunner] = None

    def render_frames(self, spec, frame_range, output_dir, on_progress=None) -> None:
        start, end = frame_range
        if start > end:
            return

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        with self._props_file(spec) as props_path:
            cmd = self._base_command(spec, str(output_dir), props_path) + [
                "--sequence",
                f"--image-format={self.config.image_format}",
                f"--frames={start}-{end}",
                f"--gl={self.config.gl}",
            ]
            logger.info("Rendering frames %d-%d of %s", start, end, spec.composition_id)
            result = self._run(cmd, end - start + 1, on_progress)

        # Rename before raising so a partial range still counts on resume
        normalize_frame_names(output_dir, self.config.image_format)
        self._raise_for_result(result, "Frame rendering")

    def render_audio(self, spec, output_dir) -> Path:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        audio_path = output_dir / f"audio.{self.config.audio_codec}"

        with self._props_file(spec) as props_path:
            cmd = self._base_command(spec, str(audio_path), props_path) + [
                f"--codec={self.config.audio_codec}",
                f"--frames=0-{spec.last_frame}",
            ]
            logger.info("Rendering audio track to %s", audio_path)
            result = self._run(cmd, spec.duration_in_frames, None)

        self._raise_for_result(result, "Audio rendering")
        if not audio_path.exists():
            raise EngineError(
                f"Audio rendering produced no file at {audio_path}", cmd=cmd, returncode=0
            )
        return audio_path

    def cancel(self) -> None:
        runner = self._active
        if runner is not None:
            runner.cancel()

    def _base_command(self, spec: CompositionSpec, output: str, props_path: str) -> List[str]:
        concurrency = self.config.concurrency or os.cpu_count() or 1
        return list(self.config.command) + [
            "render",
            self.config.entry_point,
            spec.composition_id,
            output,
            f"--props={props_path}",
            f"--concurrency={concurrency}",
        ]

    def _run(self, cmd: List[str], total_frames: int, on_progress: Optional[ProgressFn]) -> ProcessResult:
        callback = (lambda p: on_progress(p.fraction)) if on_progress else None
        runner = RemotionRunner(
            timeout_s=self.config.timeout_s,
            artifacts_dir=self.artifacts_dir,
            progress_callback=callback,
        )
        self._active = runner
        try:
            return runner.run(cmd, total_frames=total_frames)
        finally:
            self._active = None

    @staticmethod
    def _raise_for_result(result: ProcessResult, step: str) -> None:
        if result.cancelled:
            raise JobCancelled(f"{step} cancelled")
        if result.timed_out:
            raise EngineError(f"{step} timed out after {result.duration_s:.0f}s", output=result.output)
        if not result.success:
            tail = "\n".join(result.output.splitlines()[-ERROR_TAIL_LINES:])
            raise EngineError(
                f"{step} failed (exit code {result.returncode}): {tail}",
                returncode=result.returncode,
                output=result.output,
            )

    def _props_file(self, spec: CompositionSpec):
        return _TempJson(spec.input_props)


class _TempJson:
    """Context manager: dump a dict to a temp JSON file, yield its path."""

    def __init__(self, data: dict):
        self.data = data
        self.path: Optional[str] = None

    def __enter__(self) -> str:
        fd, self.path = tempfile.mkstemp(prefix="vizrender-props-", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(self.data, f)
        return self.path

    def __exit__(self, *args):
        if self.path and os.path.exists(self.path):
            os.unlink(self.path)
