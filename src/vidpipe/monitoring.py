"""Read-only metrics over the job and video tables."""

from datetime import datetime, timedelta
from typing import Any, Dict, List

from loguru import logger

from .queue.backends import MediaStore
from .queue.manager import QueueManager
from .queue.models import JobPriority, JobStatus, JobType, VideoStatus

# (category, substrings) checked in order; first match wins
ERROR_CATEGORIES = [
    ("FFmpeg Error", ("ffmpeg",)),
    ("Timeout Error", ("timeout", "timed out")),
    ("File System Error", ("file", "path")),
    ("Resource Error", ("memory", "space")),
    ("Cancellation", ("cancelled",)),
]


def categorize_error(error: str) -> str:
    lowered = error.lower()
    for category, needles in ERROR_CATEGORIES:
        if any(needle in lowered for needle in needles):
            return category
    return "Other Error"


def _rate(part: int, total: int) -> float:
    return round(part * 100.0 / total, 2) if total else 0.0


class Monitor:
    """Aggregates queue and video state for the CLI and health checks."""

    def __init__(self, queue: QueueManager, media: MediaStore):
        self.queue = queue
        self.media = media

    def get_system_metrics(self) -> Dict[str, Any]:
        videos = self.media.count_videos_by_status()
        jobs = self.queue.store.count_jobs_by_status()
        total_jobs = sum(jobs.values())
        processing_jobs = jobs.get(JobStatus.PROCESSING.value, 0)

        lanes = self.queue.get_queue_stats()
        durations = [(s.average_processing_time_s, s.completed_jobs) for s in lanes if s.completed_jobs]
        completed_total = sum(count for _, count in durations)
        average = sum(avg * count for avg, count in durations) / completed_total if completed_total else 0.0

        since = datetime.now() - timedelta(hours=24)
        queue_health = []
        for s in lanes:
            timing = self.queue.store.lane_timing(JobPriority(s.queue_name), since)
            queue_health.append(
                {
                    "queue_name": s.queue_name,
                    "status": "paused" if s.paused else "active",
                    "active_jobs": s.current_active_jobs,
                    "max_jobs": s.max_concurrent_jobs,
                    "queued_jobs": s.queued_jobs,
                    "utilization_percent": _rate(s.current_active_jobs, s.max_concurrent_jobs),
                    "average_wait_s": round(timing["average_wait_s"], 2),
                }
            )

        return {
            "total_videos": sum(videos.values()),
            "processing_videos": videos.get(VideoStatus.PROCESSING.value, 0),
            "completed_videos": videos.get(VideoStatus.COMPLETED.value, 0),
            "failed_videos": videos.get(VideoStatus.FAILED.value, 0),
            "total_jobs": total_jobs,
            "queued_jobs": jobs.get(JobStatus.QUEUED.value, 0),
            "processing_jobs": processing_jobs,
            "retrying_jobs": jobs.get(JobStatus.RETRYING.value, 0),
            "completed_jobs": jobs.get(JobStatus.COMPLETED.value, 0),
            "failed_jobs": jobs.get(JobStatus.FAILED.value, 0),
            "cancelled_jobs": jobs.get(JobStatus.CANCELLED.value, 0),
            "average_processing_time_s": round(average, 2),
            "system_load": self._system_load(processing_jobs, total_jobs),
            "queue_health": queue_health,
        }

    @staticmethod
    def _system_load(processing_jobs: int, total_jobs: int) -> float:
        if total_jobs == 0:
            return 0.0
        return round(min(processing_jobs / max(total_jobs * 0.1, 1) * 100, 100.0), 2)

    def get_job_type_metrics(self) -> List[Dict[str, Any]]:
        """Totals per job type, including types with no jobs yet."""
        rows = {row["type"]: row for row in self.queue.store.job_type_summary()}
        metrics = []
        for job_type in JobType:
            row = rows.get(job_type.value, {})
            total = row.get("total") or 0
            completed = row.get("completed") or 0
            metrics.append(
                {
                    "type": job_type.value,
                    "total": total,
                    "completed": completed,
                    "failed": row.get("failed") or 0,
                    "average_time_s": round(row.get("average_duration_s") or 0.0, 2),
                    "success_rate": _rate(completed, total),
                }
            )
        return metrics

    def get_error_analysis(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Group the most recent failed jobs by error category."""
        failed = self.queue.store.list_jobs(status=JobStatus.FAILED)
        failed = sorted(failed, key=lambda j: j.created_at, reverse=True)[:limit]

        groups: Dict[str, List] = {}
        for job in failed:
            groups.setdefault(categorize_error(job.error or "Unknown error"), []).append(job)

        return [
            {
                "error": category,
                "count": len(jobs),
                "percentage": _rate(len(jobs), len(failed)),
                "recent_jobs": [
                    {
                        "id": j.id,
                        "type": j.type.value,
                        "error": j.error,
                        "created_at": j.created_at.isoformat(),
                    }
                    for j in jobs[:5]
                ],
            }
            for category, jobs in sorted(groups.items(), key=lambda kv: len(kv[1]), reverse=True)
        ]

    def get_processing_trends(self, days: int = 7) -> List[Dict[str, Any]]:
        since = datetime.now() - timedelta(days=days)
        return [
            {
                "date": row["date"],
                "total_jobs": row["total"],
                "completed_jobs": row["completed"] or 0,
                "failed_jobs": row["failed"] or 0,
                "average_duration_s": round(row["average_duration_s"] or 0.0, 2),
                "success_rate": _rate(row["completed"] or 0, row["total"]),
            }
            for row in self.queue.store.daily_job_counts(since)
        ]

    def get_metric_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.queue.store.list_metrics(limit)

    def get_health_check(self) -> Dict[str, Any]:
        """healthy, degraded (high load or >10% failures) or unhealthy (store unreadable)."""
        try:
            metrics = self.get_system_metrics()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {"status": "unhealthy", "details": {"error": str(e)}}

        total = metrics["total_jobs"]
        failure_rate = _rate(metrics["failed_jobs"], total)
        healthy = metrics["system_load"] < 90 and metrics["failed_jobs"] <= total * 0.1
        return {
            "status": "healthy" if healthy else "degraded",
            "details": {
                "system_load": metrics["system_load"],
                "failure_rate": failure_rate,
                "processing_videos": metrics["processing_videos"],
                "queued_jobs": metrics["queued_jobs"],
                "paused_lanes": [
                    q["queue_name"] for q in metrics["queue_health"] if q["status"] == "paused"
                ],
            },
        }
