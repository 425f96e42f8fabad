"""Thumbnail stills and preview clips rendered with ffmpeg."""

import threading
from pathlib import Path
from typing import List, Optional

from loguru import logger

from ..ffmpeg_runner import FfmpegErrorType, FfmpegRunner
from ..models import EngineConfig
from .base import StorageBackend, ThumbnailGenerator
from .engine import raise_for_result

THUMBNAIL_SIZE = (320, 180)
PREVIEW_SIZE = (640, 360)


def thumbnail_percentages(count: int) -> List[float]:
    """Evenly spaced positions (percent of duration), never the first or last frame."""
    return [round((i + 1) * 100.0 / (count + 1), 2) for i in range(count)]


class FfmpegThumbnailGenerator(ThumbnailGenerator):
    """Writes thumbnails/{video_id}/thumbnail_{n}.jpg and previews/{video_id}/preview.mp4."""

    def __init__(
        self,
        storage: StorageBackend,
        config: Optional[EngineConfig] = None,
        job_timeout_s: Optional[float] = None,
    ):
        self.storage = storage
        self.config = config or EngineConfig()
        self.job_timeout_s = job_timeout_s

    def _runner(self, cancel_event: Optional[threading.Event]) -> FfmpegRunner:
        return FfmpegRunner.from_config(
            self.config, cancel_event=cancel_event, timeout_s=self.job_timeout_s
        )

    def generate_thumbnails(
        self,
        video_path: str,
        video_id: str,
        timestamps: List[float],
        duration: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[str]:
        logger.info(f"Generating {len(timestamps)} thumbnails for video: {video_id}")
        runner = self._runner(cancel_event)
        width, height = THUMBNAIL_SIZE

        paths = []
        last_failure = None
        for i, percent in enumerate(timestamps, start=1):
            if cancel_event is not None and cancel_event.is_set():
                break
            key = f"thumbnails/{video_id}/thumbnail_{i}.jpg"
            output = Path(self.storage.get_full_path(key))
            output.parent.mkdir(parents=True, exist_ok=True)
            seconds = (duration or 0.0) * percent / 100.0

            result = runner.run(runner.build_frame_args(video_path, str(output), seconds, width, height))
            if result.success:
                paths.append(key)
            else:
                last_failure = result
                logger.error(
                    f"Failed to generate thumbnail at {percent}%: {result.error_summary}"
                )

        if not paths and last_failure is not None:
            raise_for_result(last_failure.error_type, last_failure.error_summary)

        logger.info(f"Generated {len(paths)} thumbnails for video: {video_id}")
        return paths

    def generate_preview(
        self,
        video_path: str,
        video_id: str,
        duration: float = 30,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        logger.info(f"Generating preview for video: {video_id}")
        key = f"previews/{video_id}/preview.mp4"
        output = Path(self.storage.get_full_path(key))
        output.parent.mkdir(parents=True, exist_ok=True)

        runner = self._runner(cancel_event)
        width, height = PREVIEW_SIZE
        result = runner.run(
            runner.build_preview_args(video_path, str(output), duration, width, height),
            expected_duration=duration,
        )
        if not result.success:
            raise_for_result(result.error_type or FfmpegErrorType.TRANSIENT, result.error_summary)

        logger.info(f"Preview generated successfully: {key}")
        return key
