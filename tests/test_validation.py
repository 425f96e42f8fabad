"""Unit tests for request validation helpers."""

import pytest

from vidpipe.exceptions import InvalidOptionError, ValidationError
from vidpipe.models import ProcessingConfig, StorageConfig
from vidpipe.queue import JobPriority, VideoFormat, VideoQuality
from vidpipe.queue.models import ProcessingOptions
from vidpipe.validation import (
    format_bytes,
    guess_mime_type,
    sanitize_filename,
    validate_processing_options,
    validate_upload,
)


class TestProcessingOptions:
    """Options are checked before anything is created."""

    def test_defaults_from_config(self):
        opts = validate_processing_options(None, ProcessingConfig())

        assert opts.qualities == [VideoQuality.HIGH, VideoQuality.MEDIUM, VideoQuality.LOW]
        assert opts.formats == [VideoFormat.MP4, VideoFormat.WEBM]
        assert opts.priority == JobPriority.NORMAL
        assert opts.generate_thumbnails is True
        assert opts.generate_preview is True
        assert opts.metadata_mode == "inline"
        assert len(opts.renditions()) == 6

    def test_explicit_values(self):
        opts = validate_processing_options(
            {
                "qualities": ["1080p"],
                "formats": "webm",
                "priority": "high",
                "generate_thumbnails": False,
                "metadata_mode": "job",
            },
            ProcessingConfig(),
        )

        assert opts.renditions() == [(VideoQuality.FULL_HD, VideoFormat.WEBM)]
        assert opts.priority == JobPriority.HIGH
        assert opts.generate_thumbnails is False
        assert opts.metadata_mode == "job"

    def test_accepts_model(self):
        opts = validate_processing_options(
            ProcessingOptions(qualities=[VideoQuality.LOW], priority=JobPriority.LOW),
            ProcessingConfig(),
        )

        assert opts.qualities == [VideoQuality.LOW]
        assert opts.priority == JobPriority.LOW

    def test_duplicate_renditions_collapse(self):
        opts = validate_processing_options(
            {"qualities": ["720p", "720p"], "formats": ["mp4"]}, ProcessingConfig()
        )

        assert opts.renditions() == [(VideoQuality.HIGH, VideoFormat.MP4)]

    @pytest.mark.parametrize(
        "options",
        [
            {"qualities": ["999p"]},
            {"formats": ["avi"]},
            {"qualities": []},
            {"priority": "urgent"},
            {"priority": "thumbnail"},
            {"metadata_mode": "lazy"},
            {"watermark": True},
        ],
    )
    def test_invalid_options(self, options):
        with pytest.raises(InvalidOptionError):
            validate_processing_options(options, ProcessingConfig())


class TestUploadValidation:
    def test_accepts_video(self):
        validate_upload("lecture.mp4", 1_000_000, "video/mp4", StorageConfig())

    @pytest.mark.parametrize(
        "name,size,mime,message",
        [
            ("notes.pdf", 100, "application/pdf", "must be a video"),
            ("clip.mp4", 100, "video/x-flv", "not allowed"),
            ("clip.txt", 100, "video/mp4", "not supported"),
            ("clip.mp4", 0, "video/mp4", "empty"),
        ],
    )
    def test_rejections(self, name, size, mime, message):
        with pytest.raises(ValidationError, match=message):
            validate_upload(name, size, mime, StorageConfig())

    def test_size_limit(self):
        with pytest.raises(ValidationError, match="1 KB"):
            validate_upload("clip.mp4", 2048, "video/mp4", StorageConfig(max_file_size=1024))


class TestHelpers:
    def test_format_bytes(self):
        assert format_bytes(0) == "0 Bytes"
        assert format_bytes(512) == "512 Bytes"
        assert format_bytes(1024) == "1 KB"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(5 * 1024**3) == "5 GB"

    def test_sanitize_filename(self):
        assert sanitize_filename("My  Lecture: Part 1?.MP4") == "my_lecture_part_1_.mp4"
        assert sanitize_filename("a/b\\c.mp4") == "a_b_c.mp4"

    def test_guess_mime_type(self):
        assert guess_mime_type("lecture.mp4") == "video/mp4"
        assert guess_mime_type("file.unknownext") == "application/octet-stream"
