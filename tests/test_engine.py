"""Tests for the compositor driver."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from vizrender.engine import RemotionEngine, RemotionRunner, build_composition_spec
from vizrender.exceptions import EngineError, JobCancelled
from vizrender.models import EngineConfig, RenderPayload
from vizrender.runner import ProcessProgress, ProcessResult


def ok_result(**kwargs):
    fields = dict(success=True, returncode=0, output="", duration_s=1.0)
    fields.update(kwargs)
    return ProcessResult(**fields)


@pytest.fixture
def spec():
    payload = RenderPayload.model_validate({
        "config": {"color": "#00ff00", "type": "wave"},
        "tracks": [
            {"id": "a", "name": "A", "durationInFrames": 90, "url": "blob:a"},
            {"id": "b", "name": "B", "durationInFrames": 60, "url": "https://cdn/b.mp3"},
        ],
        "backgrounds": [{"id": "bg", "type": "image", "name": "Sky"}],
    })
    return build_composition_spec(
        payload,
        EngineConfig(),
        audio_urls={"a": "http://127.0.0.1:5000/audio-a.data"},
        background_urls={"bg": "http://127.0.0.1:5000/bg-bg.data"},
    )


class TestBuildCompositionSpec:
    def test_duration_is_sum_of_tracks(self, spec):
        assert spec.duration_in_frames == 150
        assert spec.last_frame == 149
        assert spec.input_props["durationInFrames"] == 150

    def test_staged_urls_replace_originals(self, spec):
        tracks = spec.input_props["audioTracks"]
        assert tracks[0]["url"] == "http://127.0.0.1:5000/audio-a.data"
        assert tracks[1]["url"] == "https://cdn/b.mp3"
        assert spec.input_props["backgrounds"][0]["url"] == "http://127.0.0.1:5000/bg-bg.data"

    def test_props_use_camel_case(self, spec):
        track = spec.input_props["audioTracks"][0]
        assert "durationInFrames" in track
        assert spec.input_props["config"]["showTitle"] is True

    def test_default_duration(self):
        spec = build_composition_spec(RenderPayload(), EngineConfig(default_duration_frames=42), {}, {})
        assert spec.duration_in_frames == 42

    def test_composition_settings(self, spec):
        assert spec.composition_id == "Visualizer"
        assert (spec.fps, spec.width, spec.height) == (30, 1920, 1080)


class TestRemotionRunner:
    def test_parses_rendered_lines(self):
        runner = RemotionRunner()
        runner._progress = ProcessProgress()

        runner._monitor_output(iter(["Bundling 100%\n", "Rendered 25/100\n"]), [])

        assert runner._progress.frame == 25
        assert runner._progress.total_frames == 100
        assert runner._progress.fraction == pytest.approx(0.25)

    def test_parses_rendering_lines(self):
        runner = RemotionRunner()
        runner._progress = ProcessProgress()

        runner._monitor_output(iter(["Rendering frames 3/4\n"]), [])

        assert runner._progress.fraction == pytest.approx(0.75)

    def test_ignores_unrelated_output(self):
        runner = RemotionRunner()
        assert runner._parse_line("Encoded 1/2 chunks") is False


class TestRemotionEngine:
    def test_render_frames_command(self, spec, temp_dir):
        captured = {}

        def fake_run(self, cmd, total_frames=0, cwd=None):
            captured["cmd"] = cmd
            captured["total"] = total_frames
            props_arg = [a for a in cmd if a.startswith("--props=")][0]
            captured["props"] = json.loads(Path(props_arg.split("=", 1)[1]).read_text())
            return ok_result()

        engine = RemotionEngine(EngineConfig(concurrency=4))
        with patch.object(RemotionRunner, "run", fake_run):
            engine.render_frames(spec, (10, 149), temp_dir / "frames")

        cmd = captured["cmd"]
        assert cmd[:6] == ["npx", "remotion", "render", "remotion/index.ts", "Visualizer", str(temp_dir / "frames")]
        assert "--sequence" in cmd
        assert "--image-format=jpeg" in cmd
        assert "--frames=10-149" in cmd
        assert "--concurrency=4" in cmd
        assert "--gl=angle" in cmd
        assert captured["total"] == 140
        assert captured["props"]["durationInFrames"] == 150

    def test_props_file_removed(self, spec, temp_dir):
        paths = []

        def fake_run(self, cmd, total_frames=0, cwd=None):
            paths.append([a for a in cmd if a.startswith("--props=")][0].split("=", 1)[1])
            return ok_result()

        with patch.object(RemotionRunner, "run", fake_run):
            RemotionEngine(EngineConfig()).render_frames(spec, (0, 1), temp_dir)

        assert not Path(paths[0]).exists()

    def test_output_names_normalized(self, spec, temp_dir):
        def fake_run(self, cmd, total_frames=0, cwd=None):
            (temp_dir / "element-0000.jpeg").write_bytes(b"x")
            (temp_dir / "element-0001.jpeg").write_bytes(b"x")
            return ok_result()

        with patch.object(RemotionRunner, "run", fake_run):
            RemotionEngine(EngineConfig()).render_frames(spec, (0, 1), temp_dir)

        assert sorted(p.name for p in temp_dir.iterdir()) == ["frame-0.jpeg", "frame-1.jpeg"]

    def test_failure_raises_engine_error_with_output(self, spec, temp_dir):
        result = ok_result(success=False, returncode=1, output="Error: composition not found")
        with patch.object(RemotionRunner, "run", return_value=result):
            with pytest.raises(EngineError, match="composition not found") as exc_info:
                RemotionEngine(EngineConfig()).render_frames(spec, (0, 1), temp_dir)

        assert exc_info.value.returncode == 1

    def test_cancelled_raises_job_cancelled(self, spec, temp_dir):
        result = ok_result(success=False, returncode=-1, cancelled=True)
        with patch.object(RemotionRunner, "run", return_value=result):
            with pytest.raises(JobCancelled):
                RemotionEngine(EngineConfig()).render_frames(spec, (0, 1), temp_dir)

    def test_empty_range_is_noop(self, spec, temp_dir):
        with patch.object(RemotionRunner, "run") as run:
            RemotionEngine(EngineConfig()).render_frames(spec, (5, 4), temp_dir)
        run.assert_not_called()

    def test_render_audio(self, spec, temp_dir):
        captured = {}

        def fake_run(self, cmd, total_frames=0, cwd=None):
            captured["cmd"] = cmd
            (temp_dir / "audio.mp3").write_bytes(b"ID3")
            return ok_result()

        with patch.object(RemotionRunner, "run", fake_run):
            path = RemotionEngine(EngineConfig()).render_audio(spec, temp_dir)

        assert path == temp_dir / "audio.mp3"
        assert "--codec=mp3" in captured["cmd"]
        assert "--frames=0-149" in captured["cmd"]
        assert str(temp_dir / "audio.mp3") in captured["cmd"]

    def test_render_audio_without_file_fails(self, spec, temp_dir):
        with patch.object(RemotionRunner, "run", return_value=ok_result()):
            with pytest.raises(EngineError, match="no file"):
                RemotionEngine(EngineConfig()).render_audio(spec, temp_dir)

    def test_progress_forwarded(self, spec, temp_dir):
        seen = []

        def fake_run(self, cmd, total_frames=0, cwd=None):
            self._progress.fraction = 0.5
            self.progress_callback(self._progress)
            return ok_result()

        with patch.object(RemotionRunner, "run", fake_run):
            RemotionEngine(EngineConfig()).render_frames(spec, (0, 9), temp_dir, seen.append)

        assert seen == [0.5]
