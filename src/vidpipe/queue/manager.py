"""Priority-laned queue manager.

The manager sits between the durable job store and the worker pools. It owns
the per-lane concurrency counters (in memory, guarded by a lock) and decides
retry versus terminal failure when a worker reports an outcome.

Capacity is enforced at dequeue time, never at enqueue time: ``add_job`` only
persists, ``dequeue_next`` reserves a lane slot before claiming a row and
gives it back if nothing was claimed.
"""

import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Union

from loguru import logger

from ..exceptions import (
    DuplicateJobError,
    InvalidTransitionError,
    JobNotFoundError,
    LaneNotFoundError,
)
from ..models import QueueConfig
from .backends import JobStore
from .models import (
    LANE_WEIGHTS,
    ErrorKind,
    Job,
    JobOutcome,
    JobPriority,
    JobStatus,
    JobType,
    LaneState,
    QueueStats,
)

LaneName = Union[JobPriority, str]


class QueueManager:
    """Admit, hand out and settle jobs across independent lanes."""

    def __init__(self, store: JobStore, config: QueueConfig):
        self.store = store
        self.config = config
        self._lock = threading.Lock()
        self._enqueue_lock = threading.Lock()
        capacities = config.max_concurrent_jobs
        self._lanes: Dict[JobPriority, LaneState] = {
            lane: LaneState(
                name=lane,
                weight=LANE_WEIGHTS[lane],
                max_concurrent_jobs=getattr(capacities, lane.value),
            )
            for lane in JobPriority
        }
        # job_id -> lane for every slot this process currently holds
        self._active: Dict[str, JobPriority] = {}
        self.sync_lane_state()

    def _lane(self, lane: LaneName) -> LaneState:
        try:
            return self._lanes[JobPriority(lane)]
        except ValueError:
            raise LaneNotFoundError(f"Unknown lane: {lane}") from None

    def lanes(self) -> List[LaneState]:
        """Snapshot of every lane, highest weight first."""
        with self._lock:
            states = [state.model_copy() for state in self._lanes.values()]
        return sorted(states, key=lambda s: s.weight, reverse=True)

    def lane_state(self, lane: LaneName) -> LaneState:
        state = self._lane(lane)
        with self._lock:
            return state.model_copy()

    def backoff(self, attempt: int) -> float:
        """Seconds to wait before retrying after the given attempt number."""
        delay = self.config.retry_delay_s * (4 ** max(attempt - 1, 0))
        return min(delay, self.config.max_retry_delay_s)

    def add_job(self, job: Job) -> Job:
        """Persist a new job as QUEUED. Never blocks on lane capacity.

        Raises:
            LaneNotFoundError: job.priority names no lane
            DuplicateJobError: an active transcode already targets the rendition
        """
        self._lane(job.priority)
        job = job.model_copy(
            update={"status": JobStatus.QUEUED, "scheduled_at": datetime.now()}
        )

        with self._enqueue_lock:
            if job.type == JobType.TRANSCODE:
                existing = self.store.find_active_transcode(
                    job.video_id, job.payload.get("quality"), job.payload.get("format")
                )
                if existing is not None:
                    raise DuplicateJobError(
                        f"Job {existing.id} already targets {job.rendition_key} "
                        f"for video {job.video_id}"
                    )
            self.store.insert_job(job)

        logger.info(
            f"Queued {job.type.value} job {job.id} on lane {job.priority.value} "
            f"(video {job.video_id})"
        )
        return job

    def dequeue_next(self, lane: LaneName, worker_id: str) -> Optional[Job]:
        """Claim the oldest due job of a lane if it has headroom.

        Returns:
            The claimed job (PROCESSING, attempt_count incremented) or None
            when the lane is paused, full or empty. Never waits.
        """
        state = self._lane(lane)
        with self._lock:
            if state.paused or state.current_active_jobs >= state.max_concurrent_jobs:
                return None
            state.current_active_jobs += 1

        try:
            job = self.store.claim_next(state.name, worker_id, uuid.uuid4().hex)
        except Exception:
            self._give_back(state)
            raise

        if job is None:
            self._give_back(state)
            return None

        with self._lock:
            self._active[job.id] = state.name
        logger.debug(
            f"Worker {worker_id} claimed job {job.id} "
            f"(attempt {job.attempt_count}/{job.max_attempts})"
        )
        return job

    def _give_back(self, state: LaneState) -> None:
        with self._lock:
            state.current_active_jobs = max(state.current_active_jobs - 1, 0)

    def release(self, job_id: str) -> bool:
        """Free the lane slot held for a job. Safe to call more than once."""
        with self._lock:
            lane = self._active.pop(job_id, None)
            if lane is None:
                return False
            state = self._lanes[lane]
            state.current_active_jobs = max(state.current_active_jobs - 1, 0)
            return True

    def report_outcome(self, job_id: str, outcome: JobOutcome) -> Optional[Job]:
        """Settle one execution attempt.

        The lane slot is always released. The job row only changes if it is
        still PROCESSING under the outcome's claim token; otherwise the
        report is stale (reaped or cancelled meanwhile) and None is returned.
        """
        self.release(job_id)

        match outcome.status:
            case JobStatus.COMPLETED:
                job = self.store.complete_job(
                    job_id, outcome.claim_token, outcome.result, outcome.duration_s
                )
            case JobStatus.FAILED:
                current = self.store.get_job(job_id)
                if current is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")
                retry_at = None
                if outcome.retryable and current.attempt_count < current.max_attempts:
                    retry_at = datetime.now() + timedelta(
                        seconds=self.backoff(current.attempt_count)
                    )
                job = self.store.fail_job(
                    job_id,
                    outcome.claim_token,
                    outcome.error or "Unknown error",
                    outcome.error_kind or ErrorKind.TRANSIENT,
                    outcome.duration_s,
                    retry_at,
                )
            case (
                JobStatus.QUEUED
                | JobStatus.PROCESSING
                | JobStatus.RETRYING
                | JobStatus.CANCELLED
            ):
                raise InvalidTransitionError(
                    f"An outcome must be completed or failed, got {outcome.status.value}"
                )

        if job is None:
            logger.warning(f"Ignored stale outcome for job {job_id}")
            return None

        match job.status:
            case JobStatus.COMPLETED:
                logger.info(f"Job {job.id} completed in {outcome.duration_s:.1f}s")
            case JobStatus.RETRYING:
                logger.warning(
                    f"Job {job.id} failed (attempt {job.attempt_count}/{job.max_attempts}), "
                    f"retrying at {job.scheduled_at:%H:%M:%S}: {job.error}"
                )
            case JobStatus.FAILED:
                logger.error(f"Job {job.id} failed permanently: {job.error}")
            case JobStatus.QUEUED | JobStatus.PROCESSING | JobStatus.CANCELLED:
                pass
        return job

    def heartbeat(self, job_ids: Iterable[str]) -> int:
        return self.store.heartbeat(job_ids)

    def get_job(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def get_queue_stats(self) -> List[QueueStats]:
        """Per-lane counters, highest weight lane first."""
        since = datetime.now() - timedelta(hours=24)
        stats = []
        for state in self.lanes():
            counts = self.store.lane_counts(state.name)
            timing = self.store.lane_timing(state.name, since)
            stats.append(
                QueueStats(
                    queue_name=state.name.value,
                    total_jobs=sum(counts.values()),
                    queued_jobs=counts.get(JobStatus.QUEUED.value, 0),
                    processing_jobs=counts.get(JobStatus.PROCESSING.value, 0),
                    retrying_jobs=counts.get(JobStatus.RETRYING.value, 0),
                    completed_jobs=counts.get(JobStatus.COMPLETED.value, 0),
                    failed_jobs=counts.get(JobStatus.FAILED.value, 0),
                    cancelled_jobs=counts.get(JobStatus.CANCELLED.value, 0),
                    current_active_jobs=state.current_active_jobs,
                    max_concurrent_jobs=state.max_concurrent_jobs,
                    paused=state.paused,
                    average_processing_time_s=round(timing["average_processing_time_s"], 2),
                    throughput_24h=int(timing["throughput"]),
                )
            )
        return stats

    def pause(self, lane: LaneName) -> None:
        """Stop new dequeues on a lane; in-flight jobs are unaffected."""
        state = self._lane(lane)
        with self._lock:
            state.paused = True
        self.store.set_lane_paused(state.name, True)
        logger.info(f"Lane {state.name.value} paused")

    def resume(self, lane: LaneName) -> None:
        state = self._lane(lane)
        with self._lock:
            state.paused = False
        self.store.set_lane_paused(state.name, False)
        logger.info(f"Lane {state.name.value} resumed")

    def sync_lane_state(self) -> None:
        """Reload persisted pause flags (another process may have changed them)."""
        flags = self.store.get_lane_flags()
        with self._lock:
            for lane, state in self._lanes.items():
                state.paused = flags.get(lane.value, False)

    def cancel_queued(self, video_id: str) -> List[Job]:
        """Cancel every QUEUED or RETRYING job of a video.

        PROCESSING jobs are left to finish; their late outcome is still
        recorded.
        """
        cancelled = self.store.cancel_jobs(video_id)
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} queued job(s) for video {video_id}")
        return cancelled

    def cancel_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        cancelled = self.store.cancel_jobs(job.video_id, job_id=job.id)
        if not cancelled:
            raise InvalidTransitionError(
                f"Job {job_id} is {job.status.value}; only queued jobs can be cancelled"
            )
        logger.info(f"Cancelled job {job_id}")
        return cancelled[0]

    def retry_job(self, job_id: str) -> Job:
        """Manually re-queue a FAILED job with its attempts reset."""
        job = self.get_job(job_id)
        retried = self.store.reset_failed(job_id)
        if retried is None:
            raise InvalidTransitionError(
                f"Job {job_id} is {job.status.value}; only failed jobs can be retried"
            )
        logger.info(f"Job {job_id} re-queued for retry")
        return retried

    def requeue_due_retries(self, now: Optional[datetime] = None) -> List[Job]:
        requeued = self.store.requeue_due(now or datetime.now())
        if requeued:
            logger.info(f"Re-queued {len(requeued)} job(s) after backoff")
        return requeued

    def reap_stuck(
        self,
        now: Optional[datetime] = None,
        job_timeout_s: Optional[float] = None,
        stale_heartbeat_s: Optional[float] = None,
    ) -> List[Job]:
        """Release PROCESSING jobs whose worker is gone or overran the timeout.

        A reaped job goes back to QUEUED if attempts remain, else FAILED with
        error kind timeout. The original worker's claim token is cleared, so
        if it reports later the report is ignored.
        """
        now = now or datetime.now()
        job_timeout_s = job_timeout_s if job_timeout_s is not None else self.config.job_timeout_s
        stale_heartbeat_s = (
            stale_heartbeat_s if stale_heartbeat_s is not None else self.config.stale_heartbeat_s
        )
        started_before = now - timedelta(seconds=job_timeout_s)
        heartbeat_before = now - timedelta(seconds=stale_heartbeat_s)

        reaped = []
        for job in self.store.find_stuck(started_before, heartbeat_before):
            if job.started_at and job.started_at < started_before:
                error = f"Job exceeded timeout of {job_timeout_s:g}s"
            else:
                error = f"Worker heartbeat lost for more than {stale_heartbeat_s:g}s"
            requeue = job.attempt_count < job.max_attempts
            updated = self.store.reap_job(job, requeue, error, now)
            if updated is None:
                continue
            reaped.append(updated)
            logger.warning(
                f"Reaped job {job.id} -> {updated.status.value} "
                f"(attempt {job.attempt_count}/{job.max_attempts}): {error}"
            )
        return reaped

    def cleanup_terminal(self, older_than_days: Optional[int] = None) -> int:
        days = self.config.job_retention_days if older_than_days is None else older_than_days
        deleted = self.store.delete_terminal_before(datetime.now() - timedelta(days=days))
        if deleted:
            logger.info(f"Deleted {deleted} terminal job(s) older than {days} day(s)")
        return deleted
