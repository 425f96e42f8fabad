"""Periodic housekeeping for the queue.

The scheduler is an explicit ticking loop on its own thread. ``tick`` is
public so tests (and ``vidpipe run --drain``) can drive it without a thread.
"""

import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from loguru import logger

from .models import PipelineConfig
from .orchestrator import VideoProcessingService
from .queue.backends import MediaStore
from .queue.manager import QueueManager
from .queue.worker import apply_variant_outcome


class Scheduler:
    """Re-queues due retries, reaps stuck jobs and keeps video status current."""

    def __init__(
        self,
        queue: QueueManager,
        media: MediaStore,
        service: VideoProcessingService,
        config: PipelineConfig,
    ):
        self.queue = queue
        self.media = media
        self.service = service
        self.config = config
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_cleanup = 0.0
        self._last_metrics = 0.0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def recover(self) -> int:
        """Settle PROCESSING rows left behind by a process that died.

        Returns:
            Number of jobs reaped
        """
        reaped = self.reap_stuck_jobs()
        if reaped:
            logger.warning(f"Recovered {reaped} stuck job(s) from a previous run")
        self.service.sweep_processing_videos()
        return reaped

    def reap_stuck_jobs(self, now: Optional[datetime] = None) -> int:
        reaped = self.queue.reap_stuck(now)
        for job in reaped:
            apply_variant_outcome(self.media, job)
            self.service.handle_job_finished(job)
        return len(reaped)

    def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run one scheduling pass and report what it did."""
        now = now or datetime.now()
        summary = {
            "requeued": len(self.queue.requeue_due_retries(now)),
            "reaped": self.reap_stuck_jobs(now),
        }
        self.queue.sync_lane_state()
        summary["settled_videos"] = self.service.sweep_processing_videos()

        monotonic = time.monotonic()
        if monotonic - self._last_cleanup >= self.config.queue.cleanup_interval_s:
            summary["cleaned"] = self.queue.cleanup_terminal()
            self._last_cleanup = monotonic

        monitoring = self.config.monitoring
        if monitoring.enable_metrics and monotonic - self._last_metrics >= monitoring.metrics_interval_s:
            self.snapshot_metrics(now)
            self._last_metrics = monotonic
        return summary

    def snapshot_metrics(self, now: Optional[datetime] = None) -> None:
        """Record per-lane stats and drop snapshots past the retention window."""
        now = now or datetime.now()
        stats = self.queue.get_queue_stats()
        self.queue.store.record_metrics(
            {
                "lanes": [s.model_dump() for s in stats],
                "jobs": self.queue.store.count_jobs_by_status(),
                "videos": self.media.count_videos_by_status(),
            }
        )
        cutoff = now - timedelta(days=self.config.monitoring.retention_days)
        self.queue.store.prune_metrics(cutoff)
        for s in stats:
            logger.debug(
                f"Lane {s.queue_name}: {s.current_active_jobs}/{s.max_concurrent_jobs} active, "
                f"{s.queued_jobs} queued, {s.retrying_jobs} retrying"
            )

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self.recover()
        self._thread = threading.Thread(target=self._loop, name="vidpipe-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (tick every {self.config.queue.tick_interval_s:g}s)")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=10)
            self._thread = None
        logger.info("Scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.config.queue.tick_interval_s):
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
