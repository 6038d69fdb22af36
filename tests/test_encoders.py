"""Tests for hardware encoder detection."""

import subprocess
from unittest.mock import patch

from vizrender.encoders import EncoderId, EncoderProber, pick_encoder

ENCODERS_HEADER = """Encoders:
 V..... = Video
 ------
 V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC / MPEG-4 part 10 (codec h264)
"""


def encoders_output(*names):
    lines = [f" V....D {name:<20} hardware encoder (codec h264)" for name in names]
    return ENCODERS_HEADER + "\n".join(lines) + "\n"


def completed(stdout, returncode=0):
    return subprocess.CompletedProcess(args=["ffmpeg"], returncode=returncode, stdout=stdout)


class TestPickEncoder:
    def test_software_only(self):
        assert pick_encoder(encoders_output()) == EncoderId.SOFTWARE

    def test_nvenc_preferred(self):
        text = encoders_output("h264_qsv", "h264_amf", "h264_nvenc")
        assert pick_encoder(text) == EncoderId.NVENC

    def test_priority_order(self):
        assert pick_encoder(encoders_output("h264_qsv", "h264_videotoolbox")) == EncoderId.VIDEOTOOLBOX
        assert pick_encoder(encoders_output("h264_qsv", "h264_amf")) == EncoderId.AMF
        assert pick_encoder(encoders_output("h264_qsv")) == EncoderId.QSV

    def test_hevc_variant_does_not_match(self):
        assert pick_encoder(encoders_output("hevc_nvenc")) == EncoderId.SOFTWARE


class TestEncoderProber:
    def test_detects_hardware(self):
        prober = EncoderProber(ffmpeg_path="/usr/bin/ffmpeg")
        with patch("vizrender.encoders.subprocess.run", return_value=completed(encoders_output("h264_nvenc"))) as run:
            assert prober.detect() == EncoderId.NVENC

        cmd = run.call_args[0][0]
        assert cmd == ["/usr/bin/ffmpeg", "-hide_banner", "-encoders"]

    def test_result_is_memoized(self):
        prober = EncoderProber(ffmpeg_path="/usr/bin/ffmpeg")
        with patch("vizrender.encoders.subprocess.run", return_value=completed(encoders_output("h264_qsv"))) as run:
            assert prober.detected is None
            prober.detect()
            prober.detect()
            assert prober.detected == EncoderId.QSV

        assert run.call_count == 1

    def test_detection_failure_falls_back(self):
        prober = EncoderProber(ffmpeg_path="/usr/bin/ffmpeg")
        with patch("vizrender.encoders.subprocess.run", side_effect=OSError("exec format error")):
            assert prober.detect() == EncoderId.SOFTWARE

    def test_detection_timeout_falls_back(self):
        prober = EncoderProber(ffmpeg_path="/usr/bin/ffmpeg")
        with patch(
            "vizrender.encoders.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="ffmpeg", timeout=5),
        ):
            assert prober.detect() == EncoderId.SOFTWARE

    def test_nonzero_exit_falls_back(self):
        prober = EncoderProber(ffmpeg_path="/usr/bin/ffmpeg")
        with patch(
            "vizrender.encoders.subprocess.run",
            return_value=completed(encoders_output("h264_nvenc"), returncode=1),
        ):
            assert prober.detect() == EncoderId.SOFTWARE

    def test_missing_ffmpeg_falls_back(self):
        prober = EncoderProber()
        with patch("vizrender.encoders.find_ffmpeg", return_value=None), patch(
            "vizrender.encoders.subprocess.run"
        ) as run:
            assert prober.detect() == EncoderId.SOFTWARE
        run.assert_not_called()

    def test_force_software_skips_detection(self):
        prober = EncoderProber(force_software=True)
        with patch("vizrender.encoders.subprocess.run") as run:
            assert prober.detect() == EncoderId.SOFTWARE
        run.assert_not_called()
