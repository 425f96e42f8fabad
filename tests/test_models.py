"""Tests for Pydantic models and validation."""

import pytest
from pydantic import ValidationError

from vidpipe.models import LaneCapacityConfig, PipelineConfig, ProcessingConfig, QueueConfig
from vidpipe.queue import (
    Job,
    JobPriority,
    JobStatus,
    JobType,
    VariantStatus,
    Video,
    VideoStatus,
)
from vidpipe.queue.models import LANE_WEIGHTS, JobOutcome


def test_terminal_statuses():
    """Test which statuses end a lifecycle."""
    assert {s for s in JobStatus if s.is_terminal} == {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }
    assert {s for s in VideoStatus if s.is_terminal} == {VideoStatus.COMPLETED, VideoStatus.FAILED}
    assert not VariantStatus.PENDING.is_terminal


def test_every_lane_has_a_weight():
    assert set(LANE_WEIGHTS) == set(JobPriority)
    assert LANE_WEIGHTS[JobPriority.HIGH] > LANE_WEIGHTS[JobPriority.NORMAL] > LANE_WEIGHTS[JobPriority.LOW]


def test_job_defaults():
    job = Job(video_id="v1", type=JobType.TRANSCODE, payload={"quality": "720p", "format": "mp4"})
    assert job.status == JobStatus.QUEUED
    assert job.priority == JobPriority.NORMAL
    assert job.attempt_count == 0
    assert job.rendition_key == "720p/mp4"


def test_rendition_key_only_for_transcodes():
    job = Job(video_id="v1", type=JobType.THUMBNAIL_GENERATION)
    assert job.rendition_key is None


def test_job_rejects_zero_attempts():
    with pytest.raises(ValidationError):
        Job(video_id="v1", type=JobType.TRANSCODE, max_attempts=0)


def test_video_progress_bounds():
    with pytest.raises(ValidationError):
        Video(
            original_file_path="/x.mp4",
            original_file_name="x.mp4",
            original_file_size=1,
            original_mime_type="video/mp4",
            processing_progress=101,
        )


def test_outcome_requires_token():
    with pytest.raises(ValidationError):
        JobOutcome(status=JobStatus.COMPLETED)


def test_lane_capacity_must_be_positive():
    with pytest.raises(ValidationError):
        LaneCapacityConfig(normal=0)


def test_queue_config_defaults():
    config = QueueConfig()
    assert config.max_attempts == 3
    assert config.retry_delay_s == 30.0
    assert config.max_concurrent_jobs.thumbnail == 8


def test_pipeline_config_from_dict():
    """Test creating PipelineConfig from a nested dict."""
    config = PipelineConfig.from_dict(
        {
            "queue": {"max_concurrent_jobs": {"high": 1}},
            "processing": {"thumbnail_count": 3},
        }
    )
    assert config.queue.max_concurrent_jobs.high == 1
    assert config.queue.max_concurrent_jobs.normal == 5
    assert config.processing.thumbnail_count == 3


def test_empty_default_renditions_rejected():
    with pytest.raises(ValidationError):
        PipelineConfig(processing=ProcessingConfig(default_formats=[]))


def test_invalid_metadata_mode():
    with pytest.raises(ValidationError):
        ProcessingConfig(metadata_mode="lazy")
