"""Abstract base classes for the durable video and job stores.

This module defines the storage interfaces used by the queue manager and the
orchestrator. The local-first implementation is SQLite (see sqlite_backend),
but nothing above this layer depends on it, so a server database can be
swapped in without touching the pipeline.

Every status-changing method is compare-and-set: it names the status (and,
for jobs, the claim token) it expects to find, and reports whether the row
actually changed. Callers never overwrite a status blindly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

if TYPE_CHECKING:
    from .models import (
        ErrorKind,
        Job,
        JobPriority,
        JobStatus,
        Variant,
        VariantStatus,
        Video,
        VideoStatus,
    )


class MediaStore(ABC):
    """Persistent store for videos and their renditions."""

    @abstractmethod
    def insert_video(self, video: "Video") -> None:
        pass

    @abstractmethod
    def get_video(self, video_id: str) -> Optional["Video"]:
        pass

    @abstractmethod
    def update_video(
        self,
        video_id: str,
        fields: Dict[str, Any],
        expected_status: Optional["VideoStatus"] = None,
    ) -> bool:
        """Update video columns, optionally guarded by the current status.

        Args:
            video_id: Video identifier
            fields: Column -> value (enums, dicts and lists are serialized)
            expected_status: Only update if the row is in this status

        Returns:
            True if a row changed

        Implementation notes:
        - MUST be a single UPDATE ... WHERE status = ? statement
        - MUST refresh updated_at
        """
        pass

    @abstractmethod
    def list_videos(
        self,
        status: Optional["VideoStatus"] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List["Video"]:
        pass

    @abstractmethod
    def count_videos_by_status(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def delete_video(self, video_id: str) -> bool:
        """Remove the video row only; dependents are deleted explicitly."""
        pass

    @abstractmethod
    def insert_variant(self, variant: "Variant") -> None:
        pass

    @abstractmethod
    def get_variant(self, variant_id: str) -> Optional["Variant"]:
        pass

    @abstractmethod
    def update_variant(
        self,
        variant_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Iterable["VariantStatus"]] = None,
    ) -> bool:
        """Update variant columns if the row is in one of expected_statuses."""
        pass

    @abstractmethod
    def list_variants(self, video_id: str, run_id: Optional[str] = None) -> List["Variant"]:
        pass

    @abstractmethod
    def delete_variants(self, video_id: str) -> int:
        pass


class JobStore(ABC):
    """Durable job table with atomic claim and compare-and-set transitions.

    Implementations must provide:
    - Thread-safe atomic claim (UPDATE ... RETURNING or equivalent)
    - Oldest-first ordering within a lane
    - A claim token per execution attempt so late reports can be rejected
    - An audit trail of state transitions
    """

    @abstractmethod
    def insert_job(self, job: "Job") -> None:
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        pass

    @abstractmethod
    def claim_next(
        self, lane: "JobPriority", worker_id: str, claim_token: str
    ) -> Optional["Job"]:
        """Atomically claim the oldest QUEUED job of a lane.

        Args:
            lane: Lane (job priority) to pull from
            worker_id: Identifier of the claiming worker
            claim_token: Fresh token identifying this execution attempt

        Returns:
            The claimed job (now PROCESSING, attempt_count incremented) or
            None if the lane has nothing queued

        Implementation notes:
        - MUST be a single atomic statement; two callers never get the same job
        - Should retry with exponential backoff on lock contention
        """
        pass

    @abstractmethod
    def complete_job(
        self,
        job_id: str,
        claim_token: str,
        result: Dict[str, Any],
        duration_s: float,
    ) -> Optional["Job"]:
        """PROCESSING -> COMPLETED if the claim token still matches."""
        pass

    @abstractmethod
    def fail_job(
        self,
        job_id: str,
        claim_token: str,
        error: str,
        error_kind: "ErrorKind",
        duration_s: float,
        retry_at: Optional[datetime] = None,
    ) -> Optional["Job"]:
        """PROCESSING -> RETRYING (retry_at given) or FAILED, guarded by token.

        Returns:
            The updated job, or None if the report was stale
        """
        pass

    @abstractmethod
    def heartbeat(self, job_ids: Iterable[str]) -> int:
        pass

    @abstractmethod
    def requeue_due(self, now: datetime) -> List["Job"]:
        """RETRYING jobs whose scheduled_at has passed -> QUEUED."""
        pass

    @abstractmethod
    def find_stuck(self, started_before: datetime, heartbeat_before: datetime) -> List["Job"]:
        pass

    @abstractmethod
    def reap_job(
        self, job: "Job", requeue: bool, error: str, now: datetime
    ) -> Optional["Job"]:
        """Release a stuck PROCESSING job back to QUEUED or to FAILED.

        Guarded by the job's claim token so a job that reported meanwhile is
        left alone.
        """
        pass

    @abstractmethod
    def cancel_jobs(self, video_id: str, job_id: Optional[str] = None) -> List["Job"]:
        """QUEUED/RETRYING -> CANCELLED for a video (or one of its jobs)."""
        pass

    @abstractmethod
    def reset_failed(self, job_id: str) -> Optional["Job"]:
        """FAILED -> QUEUED with attempts and error cleared (manual retry)."""
        pass

    @abstractmethod
    def list_jobs(
        self,
        video_id: Optional[str] = None,
        run_id: Optional[str] = None,
        status: Optional["JobStatus"] = None,
        lane: Optional["JobPriority"] = None,
        limit: Optional[int] = None,
    ) -> List["Job"]:
        pass

    @abstractmethod
    def find_active_transcode(
        self, video_id: str, quality: str, format: str
    ) -> Optional["Job"]:
        pass

    @abstractmethod
    def lane_counts(self, lane: "JobPriority") -> Dict[str, int]:
        pass

    @abstractmethod
    def lane_timing(self, lane: "JobPriority", since: datetime) -> Dict[str, float]:
        """Average processing time and completions since a timestamp."""
        pass

    @abstractmethod
    def count_jobs_by_status(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def job_type_summary(self) -> List[Dict[str, Any]]:
        """Per job type: total, completed, failed, average duration."""
        pass

    @abstractmethod
    def daily_job_counts(self, since: datetime) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_transitions(self, job_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete_terminal_before(self, cutoff: datetime) -> int:
        pass

    @abstractmethod
    def delete_jobs(self, video_id: str) -> int:
        pass

    @abstractmethod
    def get_lane_flags(self) -> Dict[str, bool]:
        pass

    @abstractmethod
    def set_lane_paused(self, lane: "JobPriority", paused: bool) -> None:
        pass

    @abstractmethod
    def record_metrics(self, data: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def list_metrics(self, limit: int = 100) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def prune_metrics(self, cutoff: datetime) -> int:
        pass
