"""Video processing orchestrator.

Turns a processing request into jobs, and folds finished jobs back into the
parent video's status. This is the only component that writes video rows;
every write is compare-and-set on the status it expects.
"""

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from .exceptions import (
    InvalidTransitionError,
    ProcessingFailedError,
    ValidationError,
    VideoConflictError,
    VideoNotFoundError,
)
from .models import PipelineConfig
from .queue.backends import MediaStore
from .queue.manager import QueueManager
from .queue.models import (
    ErrorKind,
    Job,
    JobPriority,
    JobStatus,
    JobType,
    ProcessingOptions,
    ProcessingResult,
    ProcessingStatus,
    Variant,
    VariantStatus,
    Video,
    VideoStatus,
    VideoType,
    new_id,
)
from .queue.worker import apply_variant_outcome
from .services.base import MetadataExtractor, StorageBackend, VideoMetadata
from .services.thumbnails import thumbnail_percentages
from .validation import guess_mime_type, sanitize_filename, validate_processing_options, validate_upload

CANCELLED_MESSAGE = "Processing cancelled"


class VideoProcessingService:
    """Public entry points for registering, processing and inspecting videos."""

    def __init__(
        self,
        queue: QueueManager,
        media: MediaStore,
        storage: StorageBackend,
        extractor: MetadataExtractor,
        config: PipelineConfig,
    ):
        self.queue = queue
        self.media = media
        self.storage = storage
        self.extractor = extractor
        self.config = config
        # Serializes read-modify-write of video rows within this process
        self._video_lock = threading.RLock()

    def get_video(self, video_id: str) -> Video:
        video = self.media.get_video(video_id)
        if video is None:
            raise VideoNotFoundError(f"Video not found: {video_id}")
        return video

    def list_videos(
        self, status: Optional[VideoStatus] = None, limit: int = 100, offset: int = 0
    ) -> List[Video]:
        return self.media.list_videos(status=status, limit=limit, offset=offset)

    def register_video(
        self,
        file_path: str,
        original_name: Optional[str] = None,
        size: Optional[int] = None,
        mime_type: Optional[str] = None,
        title: str = "",
        video_type: Union[VideoType, str] = VideoType.COURSE_CONTENT,
    ) -> Video:
        """Record an uploaded file as an UPLOADED video.

        Raises:
            ValidationError: Missing file, wrong type or too large
        """
        path = Path(file_path).resolve()
        if not path.is_file():
            raise ValidationError(f"File not found: {file_path}")

        original_name = original_name or path.name
        size = path.stat().st_size if size is None else size
        mime_type = mime_type or guess_mime_type(original_name)
        validate_upload(original_name, size, mime_type, self.config.storage)
        try:
            video_type = VideoType(video_type)
        except ValueError:
            raise ValidationError(f"Invalid video type: {video_type}") from None

        video = Video(
            title=title or Path(original_name).stem,
            type=video_type,
            original_file_path=str(path),
            original_file_name=sanitize_filename(original_name),
            original_file_size=size,
            original_mime_type=mime_type,
        )
        self.media.insert_video(video)
        logger.info(f"Registered video {video.id} ({original_name}, {size} bytes)")
        return video

    def process_video(
        self,
        video_id: str,
        options: Union[ProcessingOptions, Dict[str, Any], None] = None,
    ) -> ProcessingResult:
        """Fan a video out into processing jobs and return immediately.

        Raises:
            InvalidOptionError: Bad processing options (nothing is created)
            VideoNotFoundError: Unknown video id
            VideoConflictError: The video is PROCESSING, or an active job
                already targets one of the requested renditions
            ProcessingFailedError: Inline metadata extraction failed; the
                video is FAILED with processing_error set
        """
        opts = validate_processing_options(options, self.config.processing)
        video = self.get_video(video_id)
        if video.status == VideoStatus.PROCESSING:
            raise VideoConflictError(f"Video {video_id} is already being processed")

        renditions = opts.renditions()
        for quality, fmt in renditions:
            existing = self.queue.store.find_active_transcode(video_id, quality.value, fmt.value)
            if existing is not None:
                raise VideoConflictError(
                    f"Job {existing.id} is already producing {quality.value}/{fmt.value} "
                    f"for video {video_id}"
                )

        run_id = new_id()
        started = self.media.update_video(
            video_id,
            {
                "status": VideoStatus.PROCESSING,
                "processing_progress": 0,
                "processing_error": None,
                "processing_errors": [],
                "current_run_id": run_id,
            },
            expected_status=video.status,
        )
        if not started:
            raise VideoConflictError(f"Video {video_id} changed state, try again")
        logger.info(
            f"Processing video {video_id} (run {run_id}): "
            f"{len(renditions)} rendition(s), priority {opts.priority.value}"
        )

        if opts.metadata_mode == "inline":
            self._extract_metadata_inline(video)

        variants = []
        try:
            if opts.metadata_mode == "job":
                self._add_job(video_id, run_id, JobType.METADATA_EXTRACTION, JobPriority.HIGH, {})

            for quality, fmt in renditions:
                variant = Variant(
                    video_id=video_id,
                    run_id=run_id,
                    quality=quality,
                    format=fmt,
                    file_path=f"processed/{video_id}/{quality.value}.{fmt.value}",
                )
                self.media.insert_variant(variant)
                variants.append(variant)
                self._add_job(
                    video_id,
                    run_id,
                    JobType.TRANSCODE,
                    opts.priority,
                    {"quality": quality.value, "format": fmt.value, "variant_id": variant.id},
                )

            if opts.generate_thumbnails:
                count = self.config.processing.thumbnail_count
                self._add_job(
                    video_id,
                    run_id,
                    JobType.THUMBNAIL_GENERATION,
                    JobPriority.THUMBNAIL,
                    {"count": count, "timestamps": thumbnail_percentages(count)},
                )

            if opts.generate_preview:
                self._add_job(
                    video_id,
                    run_id,
                    JobType.PREVIEW_GENERATION,
                    JobPriority.THUMBNAIL,
                    {"duration": self.config.processing.preview_duration_s},
                )
        except Exception as e:
            logger.exception(f"Failed to queue jobs for video {video_id}")
            self.queue.cancel_queued(video_id)
            for variant in variants:
                self.media.update_variant(
                    variant.id,
                    {"status": VariantStatus.FAILED, "processing_error": str(e)},
                    expected_statuses=[VariantStatus.PENDING],
                )
            self._fail_video(video_id, f"Failed to queue processing jobs: {e}")
            raise ProcessingFailedError(f"Failed to queue processing jobs: {e}") from e

        return ProcessingResult(success=True, video_id=video_id, variants=variants)

    def _add_job(
        self,
        video_id: str,
        run_id: str,
        job_type: JobType,
        priority: JobPriority,
        payload: Dict[str, Any],
    ) -> Job:
        return self.queue.add_job(
            Job(
                video_id=video_id,
                run_id=run_id,
                type=job_type,
                priority=priority,
                payload=payload,
                max_attempts=self.config.queue.max_attempts,
            )
        )

    def _extract_metadata_inline(self, video: Video) -> None:
        try:
            metadata = self.extractor.extract_metadata(video.original_file_path)
        except Exception as e:
            message = f"Metadata extraction failed: {e}"
            logger.error(f"Video {video.id}: {message}")
            self._fail_video(video.id, message)
            raise ProcessingFailedError(message) from e
        self._apply_metadata(video.id, metadata)

    def _apply_metadata(self, video_id: str, metadata: VideoMetadata) -> None:
        self.media.update_video(
            video_id,
            {
                "duration": metadata.duration,
                "width": metadata.width,
                "height": metadata.height,
                "frame_rate": metadata.frame_rate,
                "codec": metadata.codec,
                "bitrate": metadata.bitrate,
                "metadata": metadata.model_dump(),
            },
            expected_status=VideoStatus.PROCESSING,
        )

    def _fail_video(self, video_id: str, error: str) -> bool:
        return self.media.update_video(
            video_id,
            {"status": VideoStatus.FAILED, "processing_error": error},
            expected_status=VideoStatus.PROCESSING,
        )

    def handle_job_finished(self, job: Job) -> None:
        """Apply a settled job's effects to its video, then recompute status.

        Jobs from an older run of the video are ignored.
        """
        with self._video_lock:
            video = self.media.get_video(job.video_id)
            if video is None or job.run_id != video.current_run_id:
                return

            match job.status:
                case JobStatus.COMPLETED:
                    self._apply_job_result(video, job)
                case JobStatus.FAILED:
                    error = f"{job.type.value}: {job.error}"
                    self.media.update_video(
                        video.id,
                        {"processing_errors": video.processing_errors + [error]},
                        expected_status=VideoStatus.PROCESSING,
                    )
                    if job.error_kind == ErrorKind.FATAL:
                        self._abort_run(video.id, error)
                case JobStatus.QUEUED | JobStatus.PROCESSING | JobStatus.RETRYING | JobStatus.CANCELLED:
                    pass

            self.recompute_video_status(video.id)

    def _apply_job_result(self, video: Video, job: Job) -> None:
        match job.type:
            case JobType.METADATA_EXTRACTION:
                self._apply_metadata(video.id, VideoMetadata(**job.result.get("metadata", {})))
            case JobType.THUMBNAIL_GENERATION:
                thumbnails = job.result.get("thumbnails") or []
                if thumbnails:
                    self.media.update_video(
                        video.id,
                        {"thumbnail_path": thumbnails[0]},
                        expected_status=VideoStatus.PROCESSING,
                    )
            case JobType.PREVIEW_GENERATION:
                self.media.update_video(
                    video.id,
                    {"preview_path": job.result.get("preview_path")},
                    expected_status=VideoStatus.PROCESSING,
                )
            case JobType.TRANSCODE:
                pass

    def _abort_run(self, video_id: str, error: str) -> None:
        """Fatal error: fail the video now and stop its queued siblings."""
        for cancelled in self.queue.cancel_queued(video_id):
            apply_variant_outcome(self.media, cancelled)
        if self._fail_video(video_id, f"Fatal error: {error}"):
            logger.error(f"Video {video_id} failed on fatal error: {error}")

    def _run_jobs(self, video: Video) -> List[Job]:
        if video.current_run_id is None:
            return []
        return self.queue.store.list_jobs(video_id=video.id, run_id=video.current_run_id)

    def recompute_video_status(self, video_id: str) -> Video:
        """Derive a PROCESSING video's progress and status from its jobs.

        Cancelled jobs are left out. Progress only moves forward. Once every
        job is terminal the video is COMPLETED if none failed, else FAILED
        with an aggregate error; completed variants are kept either way.
        """
        with self._video_lock:
            video = self.get_video(video_id)
            if video.status != VideoStatus.PROCESSING:
                return video

            jobs = [j for j in self._run_jobs(video) if j.status != JobStatus.CANCELLED]
            if not jobs:
                return video

            terminal = [j for j in jobs if j.status.is_terminal]
            failed = [j for j in jobs if j.status == JobStatus.FAILED]
            progress = max(video.processing_progress, (100 * len(terminal)) // len(jobs))

            if len(terminal) < len(jobs):
                if progress != video.processing_progress:
                    self.media.update_video(
                        video_id,
                        {"processing_progress": progress},
                        expected_status=VideoStatus.PROCESSING,
                    )
            elif not failed:
                if self.media.update_video(
                    video_id,
                    {"status": VideoStatus.COMPLETED, "processing_progress": 100},
                    expected_status=VideoStatus.PROCESSING,
                ):
                    logger.success(f"Video {video_id} processed ({len(jobs)} job(s))")
            else:
                error = f"{len(failed)} of {len(jobs)} jobs failed: {failed[0].error}"
                if self.media.update_video(
                    video_id,
                    {
                        "status": VideoStatus.FAILED,
                        "processing_progress": progress,
                        "processing_error": error,
                    },
                    expected_status=VideoStatus.PROCESSING,
                ):
                    logger.error(f"Video {video_id} failed: {error}")

            return self.get_video(video_id)

    def sweep_processing_videos(self) -> int:
        """Recompute every PROCESSING video; returns how many reached a terminal state."""
        settled = 0
        for video in self.media.list_videos(status=VideoStatus.PROCESSING, limit=10_000):
            if self.recompute_video_status(video.id).status.is_terminal:
                settled += 1
        return settled

    def get_processing_status(self, video_id: str) -> ProcessingStatus:
        video = self.get_video(video_id)
        jobs = self._run_jobs(video)
        counted = [j for j in jobs if j.status != JobStatus.CANCELLED]
        variants = (
            self.media.list_variants(video_id, run_id=video.current_run_id)
            if video.current_run_id
            else []
        )
        return ProcessingStatus(
            video_id=video.id,
            status=video.status,
            progress=video.processing_progress,
            total_jobs=len(counted),
            completed_jobs=sum(1 for j in counted if j.status == JobStatus.COMPLETED),
            failed_jobs=sum(1 for j in counted if j.status == JobStatus.FAILED),
            variants=[
                {
                    "id": v.id,
                    "quality": v.quality.value,
                    "format": v.format.value,
                    "status": v.status.value,
                    "progress": v.processing_progress,
                    "file_path": v.file_path,
                    "file_size": v.file_size,
                    "error": v.processing_error,
                }
                for v in variants
            ],
            jobs=[
                {
                    "id": j.id,
                    "type": j.type.value,
                    "status": j.status.value,
                    "priority": j.priority.value,
                    "attempts": f"{j.attempt_count}/{j.max_attempts}",
                    "progress": j.progress,
                    "error": j.error,
                }
                for j in jobs
            ],
        )

    def get_result(self, video_id: str) -> ProcessingResult:
        """Outputs of the video's current run."""
        video = self.get_video(video_id)
        jobs = self._run_jobs(video)
        variants = []
        if video.current_run_id:
            variants = [
                v
                for v in self.media.list_variants(video_id, run_id=video.current_run_id)
                if v.status == VariantStatus.COMPLETED
            ]
        thumbnails: List[str] = []
        for job in jobs:
            if job.type == JobType.THUMBNAIL_GENERATION and job.status == JobStatus.COMPLETED:
                thumbnails.extend(job.result.get("thumbnails", []))

        errors = list(video.processing_errors)
        if video.processing_error and video.processing_error not in errors:
            errors.append(video.processing_error)
        return ProcessingResult(
            success=video.status == VideoStatus.COMPLETED,
            video_id=video.id,
            variants=variants,
            thumbnails=thumbnails,
            errors=errors,
        )

    def cancel_processing(self, video_id: str) -> List[Job]:
        """Cancel a video's queued work and mark it FAILED.

        Jobs already running are allowed to finish; their results no longer
        change the video. Cancelling a COMPLETED or FAILED video does
        nothing; an UPLOADED video is marked FAILED without touching jobs.

        Returns:
            The jobs that were cancelled
        """
        with self._video_lock:
            video = self.get_video(video_id)
            if video.status.is_terminal:
                logger.info(f"Video {video_id} is {video.status.value}; nothing to cancel")
                return []

            cancelled = self.queue.cancel_queued(video_id)
            for job in cancelled:
                apply_variant_outcome(self.media, job)
            self.media.update_video(
                video_id,
                {"status": VideoStatus.FAILED, "processing_error": CANCELLED_MESSAGE},
                expected_status=video.status,
            )
            logger.info(f"Cancelled processing of video {video_id} ({len(cancelled)} job(s))")
            return cancelled

    def retry_failed(self, video_id: str) -> List[Job]:
        """Re-open a FAILED video by re-queuing the failed jobs of its current run.

        Raises:
            InvalidTransitionError: The video is not FAILED or has no failed jobs
        """
        with self._video_lock:
            video = self.get_video(video_id)
            if video.status != VideoStatus.FAILED:
                raise InvalidTransitionError(
                    f"Video {video_id} is {video.status.value}; only failed videos can be retried"
                )
            failed = [j for j in self._run_jobs(video) if j.status == JobStatus.FAILED]
            if not failed:
                raise InvalidTransitionError(f"Video {video_id} has no failed jobs to retry")

            if not self.media.update_video(
                video_id,
                {
                    "status": VideoStatus.PROCESSING,
                    "processing_progress": 0,
                    "processing_error": None,
                    "processing_errors": [],
                },
                expected_status=VideoStatus.FAILED,
            ):
                raise VideoConflictError(f"Video {video_id} changed state, try again")

            retried = []
            for job in failed:
                retried.append(self.queue.retry_job(job.id))
                variant_id = job.payload.get("variant_id")
                if job.type == JobType.TRANSCODE and variant_id:
                    self.media.update_variant(
                        variant_id,
                        {
                            "status": VariantStatus.PENDING,
                            "processing_progress": 0,
                            "processing_error": None,
                            "processing_completed_at": None,
                        },
                        expected_statuses=[VariantStatus.FAILED],
                    )
            logger.info(f"Retrying {len(retried)} failed job(s) of video {video_id}")
            self.recompute_video_status(video_id)
            return retried

    def delete_video(self, video_id: str, delete_files: bool = False) -> None:
        """Remove a video with its jobs and variants (and optionally its files).

        Raises:
            VideoConflictError: Some of its jobs are still PROCESSING
        """
        with self._video_lock:
            video = self.get_video(video_id)
            jobs = self.queue.store.list_jobs(video_id=video_id)
            running = [j for j in jobs if j.status == JobStatus.PROCESSING]
            if running:
                raise VideoConflictError(
                    f"Video {video_id} has {len(running)} job(s) in progress; cancel and wait first"
                )

            if delete_files:
                paths = {v.file_path for v in self.media.list_variants(video_id)}
                for job in jobs:
                    paths.update(job.result.get("thumbnails", []))
                    if job.result.get("preview_path"):
                        paths.add(job.result["preview_path"])
                paths.update(p for p in (video.thumbnail_path, video.preview_path) if p)
                for path in sorted(paths):
                    if self.storage.file_exists(path):
                        self.storage.delete_file(path)

            self.queue.store.delete_jobs(video_id)
            self.media.delete_variants(video_id)
            self.media.delete_video(video_id)
            logger.info(f"Deleted video {video_id} ({len(jobs)} job(s))")
