"""Collaborator interfaces the workers drive.

Each interface has one ffmpeg-backed implementation in this package; tests
substitute in-memory fakes through the constructors of the pipeline.
"""

import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from pydantic import BaseModel, Field


class EncodingSettings(BaseModel):
    """Target frame, rate control and codec of one rendition."""

    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    bitrate_kbps: int = Field(..., gt=0)
    crf: int = Field(..., ge=0, le=63)
    codec: str
    container: str

    @property
    def bitrate(self) -> str:
        return f"{self.bitrate_kbps}k"


class TranscodeResult(BaseModel):
    success: bool
    output_path: str
    file_size: int = 0
    duration: float = 0.0
    bitrate: int = 0
    width: int = 0
    height: int = 0
    codec: str = ""


class VideoMetadata(BaseModel):
    """Technical facts about a source file."""

    duration: float = 0.0
    width: int = 0
    height: int = 0
    frame_rate: float = 0.0
    codec: str = "unknown"
    bitrate: int = 0
    format: str = "unknown"
    size: int = 0


ProgressCallback = Callable[[int], None]


class EncodingEngine(ABC):
    @abstractmethod
    def transcode(
        self,
        input_path: str,
        output_path: str,
        settings: EncodingSettings,
        progress_callback: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> TranscodeResult:
        """Encode input_path into output_path.

        Args:
            input_path: Source file on local disk
            output_path: Destination file; parent directories are created
            settings: Rendition settings
            progress_callback: Receives a 0-100 percentage as encoding advances
            duration: Source duration in seconds, used for progress
            cancel_event: Set when the job deadline passes; the encode must stop

        Raises:
            JobExecutionError: Encoding failed (retryable or not)
            EngineNotFoundError: The engine binary is missing
        """


class MetadataExtractor(ABC):
    @abstractmethod
    def extract_metadata(self, file_path: str) -> VideoMetadata:
        """Probe a source file. Raises PermanentJobError if it has no video stream."""


class ThumbnailGenerator(ABC):
    @abstractmethod
    def generate_thumbnails(
        self,
        video_path: str,
        video_id: str,
        timestamps: List[float],
        duration: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[str]:
        """Extract one still per timestamp (percent of duration).

        Stops early once cancel_event is set.

        Returns:
            Storage-relative paths of the thumbnails that were produced
        """

    @abstractmethod
    def generate_preview(
        self,
        video_path: str,
        video_id: str,
        duration: float = 30,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Render a short preview clip; returns its storage-relative path."""


class StorageBackend(ABC):
    """File storage addressed by storage-relative paths."""

    @abstractmethod
    def save_file(self, data: bytes, file_path: str) -> str:
        pass

    @abstractmethod
    def get_file(self, file_path: str) -> bytes:
        pass

    @abstractmethod
    def delete_file(self, file_path: str) -> None:
        pass

    @abstractmethod
    def file_exists(self, file_path: str) -> bool:
        pass

    @abstractmethod
    def get_file_size(self, file_path: str) -> int:
        pass

    @abstractmethod
    def get_full_path(self, file_path: str) -> str:
        pass

    @abstractmethod
    def ensure_available(self) -> None:
        """Raise StorageUnavailableError if the store cannot be written."""
