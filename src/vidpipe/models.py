"""Pydantic models for pipeline configuration."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class StorageConfig(BaseModel):
    """Storage root and upload acceptance rules."""

    path: str = Field(default="./storage", description="Root directory for all produced files")
    max_file_size: int = Field(
        default=5 * 1024 * 1024 * 1024, gt=0, description="Maximum accepted source size in bytes"
    )
    allowed_mime_types: List[str] = Field(
        default_factory=lambda: [
            "video/mp4",
            "video/webm",
            "video/avi",
            "video/mov",
            "video/mkv",
            "video/quicktime",
            "video/x-msvideo",
            "video/x-matroska",
        ],
        description="MIME types accepted at registration",
    )


class EngineConfig(BaseModel):
    """FFmpeg engine settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg binary (None = bundled imageio-ffmpeg binary)"
    )
    ffprobe_path: str = Field(default="ffprobe", description="ffprobe binary used for metadata")
    timeout_s: int = Field(
        default=3600, gt=0, description="Global timeout for a single ffmpeg invocation"
    )
    no_progress_timeout_s: int = Field(
        default=120, gt=0, description="Timeout if ffmpeg reports no progress for N seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save ffmpeg logs and commands on failure for debugging"
    )
    ffmpeg_loglevel: str = Field(default="info", description="ffmpeg -loglevel value")
    temp_dir: Optional[str] = Field(
        default=None, description="Directory for failure artifacts (None = system temp)"
    )


class ProcessingConfig(BaseModel):
    """Defaults applied when a processing request leaves options unset."""

    default_qualities: List[str] = Field(
        default_factory=lambda: ["720p", "480p", "360p"], description="Renditions to produce"
    )
    default_formats: List[str] = Field(
        default_factory=lambda: ["mp4", "webm"], description="Containers to produce"
    )
    enable_thumbnails: bool = Field(default=True, description="Generate thumbnails by default")
    enable_previews: bool = Field(default=True, description="Generate a preview clip by default")
    thumbnail_count: int = Field(default=5, ge=1, le=50, description="Thumbnails per video")
    preview_duration_s: int = Field(default=30, gt=0, description="Preview clip length")
    metadata_mode: Literal["inline", "job"] = Field(
        default="inline",
        description="Extract metadata before fan-out (inline) or as a queued job",
    )


class LaneCapacityConfig(BaseModel):
    """Per-lane concurrency budgets."""

    high: int = Field(default=2, ge=1)
    normal: int = Field(default=5, ge=1)
    low: int = Field(default=10, ge=1)
    thumbnail: int = Field(default=8, ge=1)


class QueueConfig(BaseModel):
    """Queue, retry and scheduler settings."""

    max_attempts: int = Field(default=3, ge=1, description="Execution attempts per job")
    retry_delay_s: float = Field(
        default=30.0, ge=0.0, description="Base backoff before the first retry"
    )
    max_retry_delay_s: float = Field(default=1800.0, ge=0.0, description="Backoff ceiling")
    job_timeout_s: int = Field(default=1800, gt=0, description="Wall-clock deadline per job")
    tick_interval_s: float = Field(default=5.0, gt=0.0, description="Scheduler tick interval")
    cleanup_interval_s: int = Field(default=3600, gt=0, description="Cleanup cadence")
    job_retention_days: int = Field(
        default=7, ge=0, description="Terminal jobs older than this are deleted"
    )
    heartbeat_interval_s: float = Field(default=30.0, gt=0.0)
    stale_heartbeat_s: int = Field(
        default=600, gt=0, description="PROCESSING jobs silent this long are reaped"
    )
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Dispatcher idle wait")
    max_concurrent_jobs: LaneCapacityConfig = Field(default_factory=LaneCapacityConfig)


class MonitoringConfig(BaseModel):
    """Metric snapshot settings."""

    enable_metrics: bool = Field(default=True)
    metrics_interval_s: int = Field(default=60, gt=0)
    health_check_interval_s: int = Field(default=30, gt=0)
    retention_days: int = Field(default=30, ge=0)


class SecurityConfig(BaseModel):
    """Options consumed by the HTTP layer; carried here so one file configures everything."""

    enable_auth: bool = Field(default=False)
    api_key_header: str = Field(default="x-api-key")
    rate_limit_window_s: int = Field(default=900, gt=0)
    rate_limit_max: int = Field(default=100, gt=0)


class DatabaseConfig(BaseModel):
    """Durable job/video store."""

    path: str = Field(default="vidpipe.db", description="SQLite database file")


class LoggingConfig(BaseModel):
    """Loguru sink settings."""

    level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    file: Optional[str] = Field(default=None, description="Optional rotating log file")


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("processing")
    @classmethod
    def defaults_not_empty(cls, v: ProcessingConfig) -> ProcessingConfig:
        """Validate that default rendition lists are usable."""
        if not v.default_qualities or not v.default_formats:
            raise ValueError("default_qualities and default_formats must not be empty")
        return v

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)
