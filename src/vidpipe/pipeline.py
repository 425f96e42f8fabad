"""Wires the store, queue, orchestrator, workers and scheduler together.

Usage:
    config = resolve_config()
    with Pipeline(config) as pipeline:
        video = pipeline.service.register_video("lecture.mp4")
        pipeline.service.process_video(video.id, {"qualities": ["720p"]})

Any collaborator can be passed in; the defaults are the SQLite store and the
ffmpeg/ffprobe implementations.
"""

from typing import Iterable, Optional

from loguru import logger

from .models import PipelineConfig
from .monitoring import Monitor
from .orchestrator import VideoProcessingService
from .queue.manager import QueueManager
from .queue.models import JobPriority
from .queue.sqlite_backend import SQLiteJobStore, SQLiteMediaStore
from .queue.worker import JobExecutor, WorkerPool
from .scheduler import Scheduler
from .services import (
    EncodingEngine,
    FfmpegEngine,
    FfmpegThumbnailGenerator,
    FfprobeMetadataExtractor,
    LocalStorage,
    MetadataExtractor,
    StorageBackend,
    ThumbnailGenerator,
)


class Pipeline:
    """One pipeline process: shared store, per-lane workers and a scheduler."""

    def __init__(
        self,
        config: PipelineConfig,
        storage: Optional[StorageBackend] = None,
        engine: Optional[EncodingEngine] = None,
        extractor: Optional[MetadataExtractor] = None,
        thumbnailer: Optional[ThumbnailGenerator] = None,
        lanes: Optional[Iterable[JobPriority]] = None,
    ):
        self.config = config
        self.media = SQLiteMediaStore(config.database.path)
        self.jobs = SQLiteJobStore(self.media)
        self.queue = QueueManager(self.jobs, config.queue)

        self.storage = storage or LocalStorage(config.storage.path)
        self.engine = engine or FfmpegEngine(config.engine, config.queue.job_timeout_s)
        self.extractor = extractor or FfprobeMetadataExtractor(
            config.engine.ffprobe_path, timeout_s=config.engine.no_progress_timeout_s
        )
        self.thumbnailer = thumbnailer or FfmpegThumbnailGenerator(
            self.storage, config.engine, config.queue.job_timeout_s
        )

        self.service = VideoProcessingService(
            self.queue, self.media, self.storage, self.extractor, config
        )
        self.executor = JobExecutor(
            self.queue,
            self.media,
            self.storage,
            self.engine,
            self.extractor,
            self.thumbnailer,
            config,
            on_finished=self.service.handle_job_finished,
        )
        self.workers = WorkerPool(
            self.queue,
            self.executor,
            lanes=lanes,
            poll_interval_s=config.queue.poll_interval_s,
            heartbeat_interval_s=config.queue.heartbeat_interval_s,
        )
        self.scheduler = Scheduler(self.queue, self.media, self.service, config)
        self.monitor = Monitor(self.queue, self.media)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def start(self) -> None:
        """Start the scheduler (which recovers stale jobs first) and every lane."""
        self.storage.ensure_available()
        self.scheduler.start()
        self.workers.start()
        logger.info("Pipeline started")

    def stop(self, wait: bool = True) -> None:
        """Stop claiming work; in-flight jobs finish when wait is True."""
        self.workers.stop(wait=wait)
        self.scheduler.stop()
        logger.info("Pipeline stopped")

    def run_until_idle(self, timeout_s: Optional[float] = None) -> bool:
        """Process everything that is due without background threads.

        Returns:
            True if the queue drained, False if timeout_s elapsed first
        """
        self.scheduler.recover()
        drained = self.workers.drain(timeout_s=timeout_s)
        self.scheduler.tick()
        return drained

    def close(self) -> None:
        self.stop(wait=True)
        self.media.close()
