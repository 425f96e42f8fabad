"""FFmpeg encoding engine and rendition presets."""

import threading
from pathlib import Path
from typing import Dict, Optional, Union

from loguru import logger

from ..exceptions import InvalidOptionError, JobTimeoutError, PermanentJobError, TransientJobError
from ..ffmpeg_runner import FfmpegErrorType, FfmpegProgress, FfmpegRunner
from ..models import EngineConfig
from ..queue.models import VideoFormat, VideoQuality
from .base import EncodingEngine, EncodingSettings, ProgressCallback, TranscodeResult

# quality -> (width, height, video bitrate kbps, crf)
QUALITY_SETTINGS: Dict[VideoQuality, tuple] = {
    VideoQuality.ULTRA_LOW: (426, 240, 400, 28),
    VideoQuality.LOW: (640, 360, 800, 26),
    VideoQuality.MEDIUM: (854, 480, 1200, 24),
    VideoQuality.HIGH: (1280, 720, 2500, 22),
    VideoQuality.FULL_HD: (1920, 1080, 4000, 20),
    VideoQuality.QUAD_HD: (2560, 1440, 8000, 18),
    VideoQuality.ULTRA_HD: (3840, 2160, 15000, 16),
}

# format -> (video codec, container)
FORMAT_SETTINGS: Dict[VideoFormat, tuple] = {
    VideoFormat.MP4: ("libx264", "mp4"),
    VideoFormat.WEBM: ("libvpx-vp9", "webm"),
}


def encoding_settings(
    quality: Union[VideoQuality, str], format: Union[VideoFormat, str]
) -> EncodingSettings:
    """Look up the preset for one quality/format pair.

    Raises:
        InvalidOptionError: Unknown quality or format
    """
    try:
        quality = VideoQuality(quality)
        format = VideoFormat(format)
    except ValueError as e:
        raise InvalidOptionError(str(e)) from None

    width, height, bitrate_kbps, crf = QUALITY_SETTINGS[quality]
    codec, container = FORMAT_SETTINGS[format]
    return EncodingSettings(
        width=width,
        height=height,
        bitrate_kbps=bitrate_kbps,
        crf=crf,
        codec=codec,
        container=container,
    )


class FfmpegEngine(EncodingEngine):
    """Encodes renditions with ffmpeg through FfmpegRunner.

    job_timeout_s caps each ffmpeg run so an encode never outlives its job.
    """

    def __init__(
        self, config: Optional[EngineConfig] = None, job_timeout_s: Optional[float] = None
    ):
        self.config = config or EngineConfig()
        self.job_timeout_s = job_timeout_s

    def transcode(
        self,
        input_path: str,
        output_path: str,
        settings: EncodingSettings,
        progress_callback: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> TranscodeResult:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Starting transcode: {input_path} -> {output_path}")

        def on_progress(progress: FfmpegProgress) -> None:
            if progress_callback and progress.percent is not None:
                progress_callback(progress.percent)

        runner = FfmpegRunner.from_config(
            self.config,
            progress_callback=on_progress,
            cancel_event=cancel_event,
            timeout_s=self.job_timeout_s,
        )
        args = runner.build_transcode_args(
            input_path,
            output_path,
            width=settings.width,
            height=settings.height,
            video_codec=settings.codec,
            crf=settings.crf,
            bitrate_kbps=settings.bitrate_kbps,
        )
        result = runner.run(args, expected_duration=duration)
        if not result.success:
            raise_for_result(result.error_type, result.error_summary)

        logger.info(f"Transcode completed: {output_path} ({result.duration_s:.1f}s)")
        return TranscodeResult(
            success=True,
            output_path=output_path,
            file_size=Path(output_path).stat().st_size,
            duration=duration or result.final_progress.current_time_s,
            bitrate=settings.bitrate_kbps * 1000,
            width=settings.width,
            height=settings.height,
            codec=settings.codec,
        )


def raise_for_result(error_type: Optional[FfmpegErrorType], message: str) -> None:
    """Translate a failed ffmpeg run into the job error hierarchy."""
    match error_type:
        case FfmpegErrorType.PERMANENT:
            raise PermanentJobError(message)
        case FfmpegErrorType.TIMEOUT:
            raise JobTimeoutError(message)
        case FfmpegErrorType.TRANSIENT | None:
            raise TransientJobError(message)
