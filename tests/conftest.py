import base64
import tempfile
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from vizrender.api.main import create_app
from vizrender.encoders import EncoderProber
from vizrender.engine import RenderEngine
from vizrender.exceptions import EngineError, JobCancelled, StitchError
from vizrender.models import EngineConfig, OutputConfig, QueueConfig, VizRenderConfig
from vizrender.queue.sqlite_backend import SQLiteJobStore
from vizrender.render_queue import RenderQueue


class FakeEngine(RenderEngine):
    """Writes empty frame files instead of running the compositor.

    Args:
        fail_at: Raise EngineError when this frame index is reached
        on_frame: Hook called with each frame index after it is written
    """

    def __init__(self, fail_at=None, on_frame=None):
        self.fail_at = fail_at
        self.on_frame = on_frame
        self.frame_calls = []
        self.audio_calls = 0
        self.cancelled = False

    def render_frames(self, spec, frame_range, output_dir, on_progress=None):
        start, end = frame_range
        self.frame_calls.append((start, end))
        output_dir = Path(output_dir)
        for index in range(start, end + 1):
            if self.cancelled:
                raise JobCancelled("Frame rendering cancelled")
            if self.fail_at is not None and index == self.fail_at:
                raise EngineError(f"compositor crashed at frame {index}", returncode=1)
            (output_dir / f"frame-{index}.jpeg").write_bytes(b"\xff\xd8")
            if self.on_frame:
                self.on_frame(index)
            if on_progress:
                on_progress((index - start + 1) / (end - start + 1))
        if self.cancelled:
            raise JobCancelled("Frame rendering cancelled")

    def render_audio(self, spec, output_dir):
        self.audio_calls += 1
        path = Path(output_dir) / "audio.mp3"
        path.write_bytes(b"ID3")
        return path

    def cancel(self):
        self.cancelled = True


class FakeStitcher:
    """Checks the frame range like the real stitcher, then writes a stub MP4."""

    def __init__(self, fail=False, before_write=None):
        self.fail = fail
        self.before_write = before_write
        self.calls = []

    def stitch(self, checkpoint, audio_file, frame_range, fps, encoder, output_path, on_progress=None):
        self.calls.append((frame_range, fps, encoder))
        missing = checkpoint.missing(*frame_range)
        if missing:
            raise StitchError(f"Missing {len(missing)} frame(s)")
        if self.fail:
            raise StitchError("ffmpeg failed (exit code 1): boom", returncode=1)
        if self.before_write:
            self.before_write()
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"mp4")
        return output_path

    def cancel(self):
        pass


def make_payload(frames=(6, 4), with_audio=True):
    """Payload with one track per entry in ``frames``."""
    tracks = [
        {"id": f"track-{i}", "name": f"Song {i}", "durationInFrames": n}
        for i, n in enumerate(frames)
    ]
    payload = {
        "config": {"color": "#ff0066", "type": "bars", "showTitle": True},
        "tracks": tracks,
        "backgrounds": [],
    }
    if with_audio:
        payload["audioFiles"] = {
            t["id"]: base64.b64encode(b"fake mp3 bytes").decode("ascii") for t in tracks
        }
    return payload


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir):
    return VizRenderConfig(
        queue=QueueConfig(root_dir=str(temp_dir / "queue"), poll_interval_s=0.05),
        output=OutputConfig(public_dir=str(temp_dir / "public")),
        engine=EngineConfig(default_duration_frames=10),
    )


@pytest.fixture
def store(config):
    store = SQLiteJobStore(str(config.queue.db_path))
    yield store
    store.close()


@pytest.fixture
def render_queue(config, store):
    return RenderQueue(config, store=store, prober=EncoderProber(force_software=True))


@pytest.fixture
def payload():
    return make_payload()


@pytest.fixture
async def client(render_queue):
    app = create_app(queue=render_queue, start_worker=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
