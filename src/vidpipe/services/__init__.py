"""Encoding, probing, thumbnail and storage collaborators."""

from .base import (
    EncodingEngine,
    EncodingSettings,
    MetadataExtractor,
    StorageBackend,
    ThumbnailGenerator,
    TranscodeResult,
    VideoMetadata,
)
from .engine import FORMAT_SETTINGS, QUALITY_SETTINGS, FfmpegEngine, encoding_settings
from .metadata import FfprobeMetadataExtractor
from .storage import LocalStorage
from .thumbnails import FfmpegThumbnailGenerator, thumbnail_percentages

__all__ = [
    "EncodingEngine",
    "EncodingSettings",
    "FfmpegEngine",
    "FfmpegThumbnailGenerator",
    "FfprobeMetadataExtractor",
    "FORMAT_SETTINGS",
    "LocalStorage",
    "MetadataExtractor",
    "QUALITY_SETTINGS",
    "StorageBackend",
    "ThumbnailGenerator",
    "TranscodeResult",
    "VideoMetadata",
    "encoding_settings",
    "thumbnail_percentages",
]
