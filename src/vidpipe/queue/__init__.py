"""Durable job queue: records, stores and the laned queue manager.

The worker pools live in ``vidpipe.queue.worker``; they depend on the
encoding services, which in turn import the records defined here.
"""

from .backends import JobStore, MediaStore
from .manager import QueueManager
from .models import (
    ErrorKind,
    Job,
    JobOutcome,
    JobPriority,
    JobStatus,
    JobType,
    LaneState,
    QueueStats,
    Variant,
    VariantStatus,
    Video,
    VideoFormat,
    VideoQuality,
    VideoStatus,
)
from .sqlite_backend import SQLiteJobStore, SQLiteMediaStore

__all__ = [
    "ErrorKind",
    "Job",
    "JobOutcome",
    "JobPriority",
    "JobStatus",
    "JobStore",
    "JobType",
    "LaneState",
    "MediaStore",
    "QueueManager",
    "QueueStats",
    "SQLiteJobStore",
    "SQLiteMediaStore",
    "Variant",
    "VariantStatus",
    "Video",
    "VideoFormat",
    "VideoQuality",
    "VideoStatus",
]
