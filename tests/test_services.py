"""Unit tests for the encoding presets, ffprobe parsing, storage and thumbnails."""

import json
import subprocess
import threading
from unittest.mock import MagicMock, patch

import pytest

from vidpipe.exceptions import (
    EngineNotFoundError,
    InvalidOptionError,
    JobTimeoutError,
    PermanentJobError,
    TransientJobError,
    ValidationError,
)
from vidpipe.ffmpeg_runner import FfmpegErrorType, FfmpegResult
from vidpipe.models import EngineConfig
from vidpipe.services import (
    FfmpegEngine,
    FfmpegThumbnailGenerator,
    FfprobeMetadataExtractor,
    LocalStorage,
    encoding_settings,
    thumbnail_percentages,
)
from vidpipe.services.engine import raise_for_result
from vidpipe.services.metadata import parse_frame_rate, parse_probe_output

PROBE_OUTPUT = {
    "streams": [
        {"codec_type": "audio", "codec_name": "aac"},
        {
            "codec_type": "video",
            "codec_name": "h264",
            "width": 1920,
            "height": 1080,
            "r_frame_rate": "30000/1001",
        },
    ],
    "format": {
        "duration": "63.5",
        "bit_rate": "5000000",
        "format_name": "mov,mp4,m4a,3gp,3g2,mj2",
        "size": "39687500",
    },
}


class TestEncodingSettings:
    def test_known_preset(self):
        settings = encoding_settings("720p", "mp4")

        assert (settings.width, settings.height) == (1280, 720)
        assert settings.codec == "libx264"
        assert settings.bitrate == "2500k"
        assert settings.crf == 22

    def test_webm_uses_vp9(self):
        assert encoding_settings("480p", "webm").codec == "libvpx-vp9"

    @pytest.mark.parametrize("quality,fmt", [("999p", "mp4"), ("720p", "avi")])
    def test_unknown_values(self, quality, fmt):
        with pytest.raises(InvalidOptionError):
            encoding_settings(quality, fmt)

    def test_raise_for_result(self):
        with pytest.raises(PermanentJobError):
            raise_for_result(FfmpegErrorType.PERMANENT, "bad input")
        with pytest.raises(JobTimeoutError):
            raise_for_result(FfmpegErrorType.TIMEOUT, "stalled")
        with pytest.raises(TransientJobError):
            raise_for_result(None, "exit 1")


class TestProbeParsing:
    def test_frame_rate(self):
        assert parse_frame_rate("30000/1001") == pytest.approx(29.97, rel=0.001)
        assert parse_frame_rate("25") == 25.0
        assert parse_frame_rate("25/0") == 0.0
        assert parse_frame_rate("") == 0.0
        assert parse_frame_rate("abc") == 0.0

    def test_parse_probe_output(self):
        metadata = parse_probe_output(PROBE_OUTPUT)

        assert metadata.duration == 63.5
        assert (metadata.width, metadata.height) == (1920, 1080)
        assert metadata.codec == "h264"
        assert metadata.bitrate == 5_000_000
        assert metadata.size == 39_687_500

    def test_missing_video_stream(self):
        with pytest.raises(PermanentJobError, match="No video stream"):
            parse_probe_output({"streams": [{"codec_type": "audio"}], "format": {}})

    def test_missing_numbers_default_to_zero(self):
        metadata = parse_probe_output({"streams": [{"codec_type": "video"}]})

        assert metadata.duration == 0.0
        assert metadata.width == 0
        assert metadata.codec == "unknown"


class TestFfprobeMetadataExtractor:
    """ffprobe invocation with subprocess.run mocked."""

    def completed(self, returncode=0, stdout="", stderr=""):
        return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)

    def test_extract(self):
        extractor = FfprobeMetadataExtractor("ffprobe", timeout_s=5)

        with patch(
            "vidpipe.services.metadata.subprocess.run",
            return_value=self.completed(stdout=json.dumps(PROBE_OUTPUT)),
        ) as run:
            metadata = extractor.extract_metadata("in.mp4")

        assert metadata.duration == 63.5
        cmd = run.call_args[0][0]
        assert cmd[0] == "ffprobe"
        assert cmd[-1] == "in.mp4"
        assert run.call_args[1]["timeout"] == 5

    def test_missing_binary_is_fatal(self):
        extractor = FfprobeMetadataExtractor("/nonexistent/ffprobe")

        with patch("vidpipe.services.metadata.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(EngineNotFoundError):
                extractor.extract_metadata("in.mp4")

    def test_timeout(self):
        with patch(
            "vidpipe.services.metadata.subprocess.run",
            side_effect=subprocess.TimeoutExpired("ffprobe", 5),
        ):
            with pytest.raises(JobTimeoutError):
                FfprobeMetadataExtractor().extract_metadata("in.mp4")

    def test_unreadable_input_is_permanent(self):
        with patch(
            "vidpipe.services.metadata.subprocess.run",
            return_value=self.completed(1, stderr="in.mp4: Invalid data found when processing input"),
        ):
            with pytest.raises(PermanentJobError):
                FfprobeMetadataExtractor().extract_metadata("in.mp4")

    def test_other_failures_are_transient(self):
        with patch(
            "vidpipe.services.metadata.subprocess.run",
            return_value=self.completed(1, stderr="Resource temporarily unavailable"),
        ):
            with pytest.raises(TransientJobError):
                FfprobeMetadataExtractor().extract_metadata("in.mp4")

    def test_garbage_output(self):
        with patch(
            "vidpipe.services.metadata.subprocess.run",
            return_value=self.completed(stdout="not json"),
        ):
            with pytest.raises(PermanentJobError):
                FfprobeMetadataExtractor().extract_metadata("in.mp4")


class TestLocalStorage:
    def test_save_read_delete(self, tmp_path):
        storage = LocalStorage(str(tmp_path))

        storage.save_file(b"data", "thumbnails/v1/thumbnail_1.jpg")

        assert storage.file_exists("thumbnails/v1/thumbnail_1.jpg")
        assert storage.get_file("thumbnails/v1/thumbnail_1.jpg") == b"data"
        assert storage.get_file_size("thumbnails/v1/thumbnail_1.jpg") == 4
        storage.delete_file("thumbnails/v1/thumbnail_1.jpg")
        assert not storage.file_exists("thumbnails/v1/thumbnail_1.jpg")

    @pytest.mark.parametrize("path", ["../outside.mp4", "processed/../../outside.mp4"])
    def test_paths_cannot_escape_root(self, tmp_path, path):
        storage = LocalStorage(str(tmp_path / "root"))

        with pytest.raises(ValidationError):
            storage.get_full_path(path)

    def test_ensure_available_creates_root(self, tmp_path):
        storage = LocalStorage(str(tmp_path / "a" / "b"))

        storage.ensure_available()

        assert (tmp_path / "a" / "b").is_dir()


class TestThumbnails:
    def test_percentages_skip_first_and_last_frame(self):
        assert thumbnail_percentages(3) == [25.0, 50.0, 75.0]
        assert thumbnail_percentages(5) == [16.67, 33.33, 50.0, 66.67, 83.33]

    def test_generate_thumbnails_keeps_successful_frames(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        generator = FfmpegThumbnailGenerator(storage, EngineConfig(ffmpeg_path="ffmpeg"))
        results = [
            FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.1),
            FfmpegResult(
                success=False,
                returncode=1,
                stderr="seek failed",
                duration_s=0.1,
                error_type=FfmpegErrorType.TRANSIENT,
            ),
        ]

        with patch("vidpipe.services.thumbnails.FfmpegRunner.run", side_effect=results) as run:
            paths = generator.generate_thumbnails("in.mp4", "v1", [25.0, 75.0], duration=40.0)

        assert paths == ["thumbnails/v1/thumbnail_1.jpg"]
        first_args = run.call_args_list[0][0][0]
        assert first_args[first_args.index("-ss") + 1] == "10.000"

    def test_all_thumbnails_failing_raises(self, tmp_path):
        generator = FfmpegThumbnailGenerator(
            LocalStorage(str(tmp_path)), EngineConfig(ffmpeg_path="ffmpeg")
        )
        failed = FfmpegResult(
            success=False,
            returncode=1,
            stderr="moov atom not found",
            duration_s=0.1,
            error_type=FfmpegErrorType.PERMANENT,
        )

        with patch("vidpipe.services.thumbnails.FfmpegRunner.run", return_value=failed):
            with pytest.raises(PermanentJobError):
                generator.generate_thumbnails("in.mp4", "v1", [50.0], duration=10.0)

    def test_preview_path(self, tmp_path):
        generator = FfmpegThumbnailGenerator(
            LocalStorage(str(tmp_path)), EngineConfig(ffmpeg_path="ffmpeg")
        )
        ok = FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.1)

        with patch("vidpipe.services.thumbnails.FfmpegRunner.run", return_value=ok):
            assert generator.generate_preview("in.mp4", "v1", 30) == "previews/v1/preview.mp4"

    def test_thumbnails_stop_once_cancelled(self, tmp_path):
        generator = FfmpegThumbnailGenerator(
            LocalStorage(str(tmp_path)), EngineConfig(ffmpeg_path="ffmpeg")
        )
        cancel = threading.Event()
        cancel.set()

        with patch("vidpipe.services.thumbnails.FfmpegRunner.run") as run:
            paths = generator.generate_thumbnails(
                "in.mp4", "v1", [25.0, 75.0], duration=40.0, cancel_event=cancel
            )

        assert paths == []
        run.assert_not_called()


class TestFfmpegEngine:
    def test_runner_gets_job_deadline_and_cancel_event(self, tmp_path):
        engine = FfmpegEngine(
            EngineConfig(ffmpeg_path="ffmpeg", timeout_s=3600), job_timeout_s=1800
        )
        cancel = threading.Event()
        stopped = FfmpegResult(
            success=False,
            returncode=-1,
            stderr="",
            duration_s=0.1,
            error_type=FfmpegErrorType.TIMEOUT,
            timeout_kind="cancelled",
        )
        runners = []

        def fake_run(runner, args, expected_duration=None):
            runners.append(runner)
            return stopped

        with patch(
            "vidpipe.services.engine.FfmpegRunner.run", autospec=True, side_effect=fake_run
        ):
            with pytest.raises(JobTimeoutError, match="job deadline"):
                engine.transcode(
                    "in.mp4",
                    str(tmp_path / "out" / "720p.mp4"),
                    encoding_settings("720p", "mp4"),
                    cancel_event=cancel,
                )

        (runner,) = runners
        assert runner.global_timeout_s == 1800
        assert runner.cancel_event is cancel
