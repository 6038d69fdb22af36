"""Durable per-job frame directory used to resume interrupted renders.

Frames are stored as ``frame-<index>.<ext>`` with an unpadded index, which is
what ffmpeg's ``frame-%d.<ext>`` input pattern expects.

Resume policy: rendering continues at (highest index on disk + 1). Lower
indices are not checked for gaps; ``missing()`` exists so the stitcher can
refuse to mux an incomplete sequence.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


def normalize_frame_names(directory: Path, image_format: str = "jpeg") -> int:
    """Rename engine output such as frame-0012.jpeg or element-012.jpeg to frame-12.jpeg.

    Returns:
        Number of files renamed
    """
    directory = Path(directory)
    if not directory.is_dir():
        return 0
    numbered = re.compile(rf"^[A-Za-z_]*-?(\d+)\.{re.escape(image_format)}$")
    renamed = 0
    for entry in directory.iterdir():
        match = numbered.match(entry.name)
        if not match or not entry.is_file():
            continue
        canonical = directory / f"frame-{int(match.group(1))}.{image_format}"
        if entry.name != canonical.name:
            entry.replace(canonical)
            renamed += 1
    return renamed


class FrameCheckpoint:
    """Frame set for one job under ``<frames_root>/<job_id>/``."""

    def __init__(self, frames_root: Path, job_id: str, image_format: str = "jpeg"):
        self.directory = Path(frames_root) / job_id
        self.image_format = image_format
        self._pattern = re.compile(rf"^frame-(\d+)\.{re.escape(image_format)}$")

    @property
    def input_pattern(self) -> str:
        """printf-style pattern for ffmpeg's image2 demuxer."""
        return str(self.directory / f"frame-%d.{self.image_format}")

    def frame_path(self, index: int) -> Path:
        return self.directory / f"frame-{index}.{self.image_format}"

    def ensure(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def exists(self) -> bool:
        return self.directory.is_dir()

    def existing_indices(self) -> List[int]:
        """Sorted frame indices present on disk."""
        if not self.directory.is_dir():
            return []
        indices = []
        for entry in self.directory.iterdir():
            match = self._pattern.match(entry.name)
            if match and entry.is_file():
                indices.append(int(match.group(1)))
        return sorted(indices)

    def resume_point(self) -> int:
        """First frame index that still needs rendering."""
        indices = self.existing_indices()
        return indices[-1] + 1 if indices else 0

    def normalize(self) -> int:
        """Bring leftover engine output (possibly zero-padded) to canonical names."""
        return normalize_frame_names(self.directory, self.image_format)

    def missing(self, start: int, end: int) -> List[int]:
        """Indices in the closed interval [start, end] with no frame file."""
        present = set(self.existing_indices())
        return [i for i in range(start, end + 1) if i not in present]

    def remove(self) -> None:
        if self.directory.exists():
            shutil.rmtree(self.directory)
            logger.debug("Removed frame checkpoint %s", self.directory)
