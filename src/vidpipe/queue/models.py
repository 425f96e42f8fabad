"""Pydantic models for videos, variants, jobs and lanes.

This module defines the type-safe records used throughout the pipeline.
Status fields are string enums so rows round-trip through SQLite unchanged,
and every transition site matches on them exhaustively.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def new_id() -> str:
    """Generate a record identifier (UUID4 string)."""
    return str(uuid.uuid4())


class VideoStatus(str, Enum):
    """Video lifecycle.

    State transitions:
        uploaded   → processing (process_video)
        processing → completed  (all jobs of the run completed)
        processing → failed     (a job failed, metadata failed, or cancelled)
        completed  → processing (re-processing)
        failed     → processing (re-processing or retry_failed)
    """

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VideoStatus.COMPLETED, VideoStatus.FAILED)


class VideoType(str, Enum):
    COURSE_CONTENT = "course_content"
    PROMOTIONAL = "promotional"
    LIVE_STREAM = "live_stream"
    USER_GENERATED = "user_generated"


class VariantStatus(str, Enum):
    """Rendition lifecycle; PENDING and PROCESSING are non-terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VariantStatus.COMPLETED, VariantStatus.FAILED)


class JobType(str, Enum):
    TRANSCODE = "transcode"
    THUMBNAIL_GENERATION = "thumbnail_generation"
    PREVIEW_GENERATION = "preview_generation"
    METADATA_EXTRACTION = "metadata_extraction"


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        queued     → processing (worker claims, attempt_count += 1)
        queued     → cancelled  (cancel_queued)
        processing → completed  (worker reports success)
        processing → retrying   (retryable failure, attempts remain)
        processing → failed     (permanent/fatal failure or attempts exhausted)
        processing → queued     (reaped after a crash, attempts remain)
        retrying   → queued     (scheduler, backoff elapsed)
        retrying   → cancelled  (cancel_queued)
        failed     → queued     (manual retry)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.RETRYING)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobPriority(str, Enum):
    """Priority class of a job; each value names one lane."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    THUMBNAIL = "thumbnail"


# Lane weights order lanes for stats and monitoring only; lanes never preempt.
LANE_WEIGHTS = {
    JobPriority.HIGH: 10,
    JobPriority.NORMAL: 5,
    JobPriority.THUMBNAIL: 3,
    JobPriority.LOW: 1,
}


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    PERMANENT = "permanent"
    FATAL = "fatal"
    CANCELLED = "cancelled"


class VideoQuality(str, Enum):
    ULTRA_LOW = "240p"
    LOW = "360p"
    MEDIUM = "480p"
    HIGH = "720p"
    FULL_HD = "1080p"
    QUAD_HD = "1440p"
    ULTRA_HD = "2160p"


class VideoFormat(str, Enum):
    MP4 = "mp4"
    WEBM = "webm"


class Video(BaseModel):
    """Uploaded source file and its derived state."""

    id: str = Field(default_factory=new_id)
    title: str = Field(default="")
    status: VideoStatus = Field(default=VideoStatus.UPLOADED)
    type: VideoType = Field(default=VideoType.COURSE_CONTENT)
    original_file_path: str = Field(..., description="Absolute path of the uploaded source")
    original_file_name: str = Field(..., description="Client-side file name")
    original_file_size: int = Field(..., ge=0)
    original_mime_type: str = Field(...)
    duration: Optional[float] = Field(default=None, description="Seconds")
    width: Optional[int] = None
    height: Optional[int] = None
    frame_rate: Optional[float] = None
    codec: Optional[str] = None
    bitrate: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    thumbnail_path: Optional[str] = None
    preview_path: Optional[str] = None
    processing_progress: int = Field(default=0, ge=0, le=100)
    processing_error: Optional[str] = None
    processing_errors: List[str] = Field(default_factory=list)
    current_run_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Variant(BaseModel):
    """One encoded rendition of a video."""

    id: str = Field(default_factory=new_id)
    video_id: str
    run_id: Optional[str] = None
    quality: VideoQuality
    format: VideoFormat
    status: VariantStatus = Field(default=VariantStatus.PENDING)
    file_path: str
    file_size: Optional[int] = None
    bitrate: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    codec: Optional[str] = None
    processing_progress: int = Field(default=0, ge=0, le=100)
    processing_error: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)


class Job(BaseModel):
    """Durable unit of work targeting one video and one output type."""

    id: str = Field(default_factory=new_id)
    video_id: str
    run_id: Optional[str] = None
    type: JobType
    status: JobStatus = Field(default=JobStatus.QUEUED)
    priority: JobPriority = Field(default=JobPriority.NORMAL)
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    progress: int = Field(default=0, ge=0, le=100)
    payload: Dict[str, Any] = Field(default_factory=dict)
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    worker_id: Optional[str] = None
    claim_token: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    actual_duration_s: Optional[float] = None

    @property
    def rendition_key(self) -> Optional[str]:
        """(quality, format) identity of a transcode job, None for other types."""
        if self.type != JobType.TRANSCODE:
            return None
        return f"{self.payload.get('quality')}/{self.payload.get('format')}"


class LaneState(BaseModel):
    """Runtime state of one concurrency lane."""

    name: JobPriority
    weight: int = 1
    max_concurrent_jobs: int = Field(..., ge=1)
    current_active_jobs: int = Field(default=0, ge=0)
    paused: bool = False


class JobOutcome(BaseModel):
    """Result of one execution attempt, reported by a worker."""

    claim_token: str
    status: JobStatus = Field(..., description="COMPLETED or FAILED")
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    retryable: bool = True
    duration_s: float = Field(default=0.0, ge=0.0)


class QueueStats(BaseModel):
    """Per-lane counters returned by get_queue_stats."""

    queue_name: str
    total_jobs: int = 0
    queued_jobs: int = 0
    processing_jobs: int = 0
    retrying_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    current_active_jobs: int = 0
    max_concurrent_jobs: int = 0
    paused: bool = False
    average_processing_time_s: float = 0.0
    throughput_24h: int = 0


class ProcessingOptions(BaseModel):
    """Validated processing request. Unset fields fall back to configuration."""

    qualities: Optional[List[VideoQuality]] = None
    formats: Optional[List[VideoFormat]] = None
    priority: JobPriority = JobPriority.NORMAL
    generate_thumbnails: Optional[bool] = None
    generate_preview: Optional[bool] = None
    metadata_mode: Optional[str] = None


class ProcessingResult(BaseModel):
    success: bool
    video_id: str
    variants: List[Variant] = Field(default_factory=list)
    thumbnails: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class ProcessingStatus(BaseModel):
    """Read-only snapshot of a video's current processing run."""

    video_id: str
    status: VideoStatus
    progress: int
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    variants: List[Dict[str, Any]] = Field(default_factory=list)
    jobs: List[Dict[str, Any]] = Field(default_factory=list)
