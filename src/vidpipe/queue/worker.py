"""Per-lane worker pools built on ThreadPoolExecutor.

This module provides the execution side of the queue:
- One LaneWorkerPool per lane, sized to the lane's capacity
- A dispatcher thread that claims jobs while the lane has headroom and
  never waits on a running job
- A wall-clock deadline around every collaborator call
- Heartbeats for in-flight jobs
- Error classification (permanent vs transient vs fatal)
- Disk space monitoring before encodes

Encoding work happens in ffmpeg subprocesses, so threads (not processes) are
enough to keep every configured slot busy.
"""

import os
import shutil
import socket
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from loguru import logger

from ..exceptions import (
    FatalPipelineError,
    JobExecutionError,
    JobTimeoutError,
    PermanentJobError,
    ValidationError,
)
from ..models import PipelineConfig
from ..services.base import (
    EncodingEngine,
    MetadataExtractor,
    StorageBackend,
    ThumbnailGenerator,
)
from ..services.engine import encoding_settings
from .backends import MediaStore
from .manager import QueueManager
from .models import (
    ErrorKind,
    Job,
    JobOutcome,
    JobPriority,
    JobStatus,
    JobType,
    VariantStatus,
    Video,
)

T = TypeVar("T")


def classify_error(exc: BaseException) -> Tuple[ErrorKind, bool]:
    """Map an exception to (error kind, retryable).

    - Fatal deployment errors and a full disk: fatal, never retried
    - Missing/unreadable input, invalid values: permanent, never retried
    - Timeouts, I/O errors and anything unexpected: retried
    """
    match exc:
        case FatalPipelineError():
            return ErrorKind.FATAL, False
        case JobExecutionError():
            return ErrorKind(exc.kind), exc.retryable
        case FileNotFoundError() | PermissionError() | ValidationError() | ValueError():
            return ErrorKind.PERMANENT, False
        case OSError() if "No space left" in str(exc) or getattr(exc, "errno", None) == 28:
            return ErrorKind.FATAL, False
        case _:
            return ErrorKind.TRANSIENT, True


def call_with_deadline(
    fn: Callable[[], T], timeout_s: float, cancel_event: Optional[threading.Event] = None
) -> T:
    """Run fn in a helper thread under a wall-clock deadline.

    When the deadline passes, cancel_event is set and the call is still
    waited for: fn must stop promptly once the event is set (the ffmpeg
    runner kills its process tree). The caller keeps its lane slot until
    the work has actually stopped.

    Raises:
        JobTimeoutError: fn did not return before the deadline
    """
    box: Dict[str, Any] = {}

    def target():
        try:
            box["value"] = fn()
        except BaseException as e:  # re-raised in the caller's thread
            box["error"] = e

    thread = threading.Thread(target=target, name="vidpipe-job-call", daemon=True)
    thread.start()
    thread.join(timeout_s)
    if thread.is_alive():
        if cancel_event is not None:
            cancel_event.set()
        logger.warning(f"Job call exceeded {timeout_s:g}s, waiting for it to stop")
        thread.join()
        raise JobTimeoutError(f"Job exceeded timeout of {timeout_s:g}s")
    if "error" in box:
        raise box["error"]
    return box.get("value")


def apply_variant_outcome(media: MediaStore, job: Job) -> None:
    """Move a transcode job's variant to match the job's new status."""
    variant_id = job.payload.get("variant_id")
    if job.type != JobType.TRANSCODE or not variant_id:
        return

    open_states = [VariantStatus.PENDING, VariantStatus.PROCESSING]
    match job.status:
        case JobStatus.COMPLETED:
            media.update_variant(
                variant_id,
                {
                    "status": VariantStatus.COMPLETED,
                    "file_size": job.result.get("file_size"),
                    "bitrate": job.result.get("bitrate"),
                    "width": job.result.get("width"),
                    "height": job.result.get("height"),
                    "codec": job.result.get("codec"),
                    "processing_progress": 100,
                    "processing_error": None,
                    "processing_completed_at": datetime.now(),
                },
                expected_statuses=open_states,
            )
        case JobStatus.FAILED | JobStatus.CANCELLED:
            media.update_variant(
                variant_id,
                {
                    "status": VariantStatus.FAILED,
                    "processing_error": job.error or job.status.value,
                    "processing_completed_at": datetime.now(),
                },
                expected_statuses=open_states,
            )
        case JobStatus.RETRYING | JobStatus.QUEUED:
            media.update_variant(
                variant_id,
                {
                    "status": VariantStatus.PENDING,
                    "processing_progress": 0,
                    "processing_error": job.error,
                },
                expected_statuses=[VariantStatus.PROCESSING],
            )
        case JobStatus.PROCESSING:
            pass


class JobExecutor:
    """Runs one claimed job against its collaborator and reports the outcome."""

    def __init__(
        self,
        queue: QueueManager,
        media: MediaStore,
        storage: StorageBackend,
        engine: EncodingEngine,
        extractor: MetadataExtractor,
        thumbnailer: ThumbnailGenerator,
        config: PipelineConfig,
        on_finished: Optional[Callable[[Job], None]] = None,
    ):
        self.queue = queue
        self.media = media
        self.storage = storage
        self.engine = engine
        self.extractor = extractor
        self.thumbnailer = thumbnailer
        self.config = config
        self.on_finished = on_finished

    def run(self, job: Job) -> Optional[Job]:
        """Execute a claimed job under the job deadline and settle it.

        Returns:
            The job as recorded after the report, or None if the report was
            stale (the job was reaped or cancelled while running)
        """
        start_time = time.time()
        cancel_event = threading.Event()
        try:
            result = call_with_deadline(
                lambda: self.execute(job, cancel_event),
                self.config.queue.job_timeout_s,
                cancel_event,
            )
            outcome = JobOutcome(
                claim_token=job.claim_token,
                status=JobStatus.COMPLETED,
                result=result or {},
                duration_s=time.time() - start_time,
            )
        except Exception as e:
            kind, retryable = classify_error(e)
            logger.warning(f"Job {job.id} ({job.type.value}) failed [{kind.value}]: {e}")
            outcome = JobOutcome(
                claim_token=job.claim_token,
                status=JobStatus.FAILED,
                error=str(e) or type(e).__name__,
                error_kind=kind,
                retryable=retryable,
                duration_s=time.time() - start_time,
            )

        updated = self.queue.report_outcome(job.id, outcome)
        if updated is None:
            return None

        apply_variant_outcome(self.media, updated)
        if self.on_finished is not None:
            self.on_finished(updated)
        return updated

    def execute(self, job: Job, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Dispatch on job type. Raises on failure.

        cancel_event is set when the job deadline passes; collaborators stop
        their ffmpeg work when it is.
        """
        cancel_event = cancel_event or threading.Event()
        video = self.media.get_video(job.video_id)
        if video is None:
            raise PermanentJobError(f"Video not found for job {job.id}: {job.video_id}")
        self._check_source(video)

        match job.type:
            case JobType.TRANSCODE:
                return self._transcode(job, video, cancel_event)
            case JobType.THUMBNAIL_GENERATION:
                return self._thumbnails(job, video, cancel_event)
            case JobType.PREVIEW_GENERATION:
                return self._preview(job, video, cancel_event)
            case JobType.METADATA_EXTRACTION:
                metadata = self.extractor.extract_metadata(video.original_file_path)
                return {"metadata": metadata.model_dump()}

    def _check_source(self, video: Video) -> None:
        path = Path(video.original_file_path)
        if not path.exists():
            raise FileNotFoundError(f"Video file not found: {path}")
        if not os.access(str(path), os.R_OK):
            raise PermissionError(f"Cannot read video file: {path}")
        if path.stat().st_size == 0:
            raise PermanentJobError(f"Video file is empty: {path}")

    def _duration(self, video: Video) -> Optional[float]:
        if video.duration:
            return video.duration
        # Metadata may still be queued as its own job; probing is read-only
        return self.extractor.extract_metadata(video.original_file_path).duration

    def _transcode(self, job: Job, video: Video, cancel_event: threading.Event) -> Dict[str, Any]:
        settings = encoding_settings(job.payload.get("quality"), job.payload.get("format"))
        variant_id = job.payload.get("variant_id")
        variant = self.media.get_variant(variant_id) if variant_id else None
        if variant is None:
            raise PermanentJobError(f"Variant not found for job {job.id}: {variant_id}")

        self.storage.ensure_available()
        estimated_output_size = video.original_file_size * 1.5  # Conservative estimate
        disk_usage = shutil.disk_usage(self.storage.get_full_path("."))
        if disk_usage.free < estimated_output_size:
            raise OSError(
                f"Insufficient disk space: need {estimated_output_size / 1e9:.2f}GB, "
                f"have {disk_usage.free / 1e9:.2f}GB"
            )

        self.media.update_variant(
            variant.id,
            {
                "status": VariantStatus.PROCESSING,
                "processing_progress": 0,
                "processing_started_at": datetime.now(),
            },
            expected_statuses=[VariantStatus.PENDING, VariantStatus.PROCESSING],
        )

        def on_progress(percent: int) -> None:
            if cancel_event.is_set():
                return
            self.media.update_variant(
                variant.id,
                {"processing_progress": percent},
                expected_statuses=[VariantStatus.PROCESSING],
            )

        output_path = self.storage.get_full_path(variant.file_path)
        result = self.engine.transcode(
            video.original_file_path,
            output_path,
            settings,
            progress_callback=on_progress,
            duration=video.duration,
            cancel_event=cancel_event,
        )
        return {
            "variant_id": variant.id,
            "output_path": variant.file_path,
            "file_size": result.file_size,
            "duration": result.duration,
            "bitrate": result.bitrate,
            "width": result.width,
            "height": result.height,
            "codec": result.codec,
        }

    def _thumbnails(self, job: Job, video: Video, cancel_event: threading.Event) -> Dict[str, Any]:
        timestamps = job.payload.get("timestamps") or []
        thumbnails = self.thumbnailer.generate_thumbnails(
            video.original_file_path,
            video.id,
            timestamps,
            self._duration(video),
            cancel_event=cancel_event,
        )
        if not thumbnails:
            raise PermanentJobError("No thumbnails could be generated")
        return {"thumbnails": thumbnails, "count": len(thumbnails)}

    def _preview(self, job: Job, video: Video, cancel_event: threading.Event) -> Dict[str, Any]:
        duration = job.payload.get("duration") or self.config.processing.preview_duration_s
        preview_path = self.thumbnailer.generate_preview(
            video.original_file_path, video.id, duration, cancel_event=cancel_event
        )
        return {"preview_path": preview_path, "duration": duration}


class LaneWorkerPool:
    """Workers of one lane.

    The dispatcher claims jobs while the lane has headroom and hands each one
    to a ThreadPoolExecutor sized to the lane's capacity, so a claimed job
    always has a thread waiting for it.
    """

    def __init__(
        self,
        lane: JobPriority,
        queue: QueueManager,
        executor: JobExecutor,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: float = 30.0,
    ):
        self.lane = JobPriority(lane)
        self.queue = queue
        self.executor = executor
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.capacity = queue.lane_state(self.lane).max_concurrent_jobs
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{self.lane.value}"

        self._pool: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._wakeup = threading.Event()
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()
        self._last_heartbeat = time.monotonic()
        self.dispatched_total = 0

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and self._dispatcher.is_alive()

    def inflight(self) -> List[str]:
        with self._inflight_lock:
            return list(self._inflight)

    def _ensure_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.capacity,
                thread_name_prefix=f"vidpipe-{self.lane.value}",
            )
        return self._pool

    def start(self) -> None:
        if self.running:
            return
        self._ensure_pool()
        self._stop.clear()
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop,
            name=f"vidpipe-dispatch-{self.lane.value}",
            daemon=True,
        )
        self._dispatcher.start()
        logger.info(f"Lane {self.lane.value} started ({self.capacity} worker(s))")

    def stop(self, wait: bool = True) -> None:
        """Stop claiming jobs; optionally wait for in-flight jobs to finish."""
        self._stop.set()
        self._wakeup.set()
        if self._dispatcher is not None:
            self._dispatcher.join(timeout=10)
            self._dispatcher = None
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
        logger.info(f"Lane {self.lane.value} stopped")

    def dispatch_available(self) -> int:
        """Claim and submit jobs until the lane is full, paused or empty."""
        pool = self._ensure_pool()
        dispatched = 0
        while not self._stop.is_set():
            job = self.queue.dequeue_next(self.lane, self.worker_id)
            if job is None:
                break
            future = pool.submit(self.executor.run, job)
            with self._inflight_lock:
                self._inflight[job.id] = future
            future.add_done_callback(lambda f, job_id=job.id: self._on_done(job_id, f))
            dispatched += 1
            self.dispatched_total += 1
        return dispatched

    def _on_done(self, job_id: str, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.pop(job_id, None)
        error = future.exception()
        if error is not None:
            # The outcome could not be recorded; the reaper will settle the row
            logger.opt(exception=error).error(f"Worker crashed while settling job {job_id}")
            self.queue.release(job_id)
        self._wakeup.set()

    def send_heartbeats(self) -> None:
        job_ids = self.inflight()
        if job_ids:
            self.queue.heartbeat(job_ids)
        self._last_heartbeat = time.monotonic()

    def _heartbeat_due(self) -> bool:
        return time.monotonic() - self._last_heartbeat >= self.heartbeat_interval_s

    def _dispatch_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.dispatch_available()
                if self._heartbeat_due():
                    self.send_heartbeats()
            except Exception:
                logger.exception(f"Dispatcher error on lane {self.lane.value}")
            self._wakeup.wait(self.poll_interval_s)
            self._wakeup.clear()

    def drain(self, timeout_s: Optional[float] = None) -> bool:
        """Run the lane until nothing is queued or in flight.

        Returns:
            True if the lane drained, False if timeout_s elapsed first
        """
        deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        while True:
            dispatched = self.dispatch_available()
            pending = self._pending_futures()
            if not dispatched and not pending:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            if pending:
                wait(pending, timeout=self.poll_interval_s, return_when=FIRST_COMPLETED)
            if self._heartbeat_due():
                self.send_heartbeats()

    def _pending_futures(self) -> List[Future]:
        with self._inflight_lock:
            return list(self._inflight.values())


class WorkerPool:
    """All lane pools of one pipeline process.

    Lanes do not share capacity: each has its own executor and dispatcher.
    """

    def __init__(
        self,
        queue: QueueManager,
        executor: JobExecutor,
        lanes: Optional[Iterable[JobPriority]] = None,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: float = 30.0,
    ):
        self.lanes: Dict[JobPriority, LaneWorkerPool] = {
            JobPriority(lane): LaneWorkerPool(
                JobPriority(lane),
                queue,
                executor,
                poll_interval_s=poll_interval_s,
                heartbeat_interval_s=heartbeat_interval_s,
            )
            for lane in (lanes or list(JobPriority))
        }

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop(wait=True)

    def start(self) -> None:
        for pool in self.lanes.values():
            pool.start()

    def stop(self, wait: bool = True) -> None:
        for pool in self.lanes.values():
            pool.stop(wait=wait)

    def drain(self, timeout_s: Optional[float] = None) -> bool:
        """Drain every lane until a full pass finds nothing left to do.

        A finished job can queue more work on another lane (retries aside),
        so passes repeat until all lanes are idle in the same pass.
        """
        deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        while True:
            before = sum(pool.dispatched_total for pool in self.lanes.values())
            for pool in self.lanes.values():
                remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
                if not pool.drain(timeout_s=remaining):
                    return False
            if sum(pool.dispatched_total for pool in self.lanes.values()) == before:
                return True
