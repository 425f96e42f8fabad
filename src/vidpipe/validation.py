"""Request validation shared by the orchestrator and the CLI.

Everything here is side-effect free and raises the 4xx exceptions from
``vidpipe.exceptions``.
"""

import mimetypes
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel

from .exceptions import InvalidOptionError, ValidationError
from .models import ProcessingConfig, StorageConfig
from .queue.models import JobPriority, ProcessingOptions, VideoFormat, VideoQuality

ALLOWED_EXTENSIONS = {".mp4", ".webm", ".avi", ".mov", ".mkv", ".flv", ".wmv", ".m4v"}
# Lanes a caller may request for transcodes; THUMBNAIL is internal
REQUESTABLE_PRIORITIES = (JobPriority.HIGH, JobPriority.NORMAL, JobPriority.LOW)


class ResolvedOptions(BaseModel):
    """Processing options with configuration defaults filled in."""

    qualities: List[VideoQuality]
    formats: List[VideoFormat]
    priority: JobPriority
    generate_thumbnails: bool
    generate_preview: bool
    metadata_mode: str

    def renditions(self) -> List[tuple]:
        """Distinct (quality, format) pairs in request order."""
        seen = []
        for quality in self.qualities:
            for fmt in self.formats:
                if (quality, fmt) not in seen:
                    seen.append((quality, fmt))
        return seen


def format_bytes(size: int) -> str:
    """Human readable byte count (1024 based)."""
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    if size <= 0:
        return "0 Bytes"
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            return f"{round(value, 2):g} {unit}"
        value /= 1024
    return f"{size} Bytes"


def sanitize_filename(filename: str) -> str:
    """Make a client-supplied file name safe to store."""
    name = re.sub(r'[<>:"/\\|?*]', "_", filename)
    name = re.sub(r"\s+", "_", name)
    name = re.sub(r"_{2,}", "_", name)
    return name.strip("_").lower()


def _parse_list(values: Any, enum_cls, label: str) -> Optional[list]:
    if values is None:
        return None
    if isinstance(values, (str, enum_cls)):
        values = [values]
    parsed = []
    for value in values:
        try:
            parsed.append(enum_cls(value))
        except ValueError:
            raise InvalidOptionError(f"Invalid {label}: {value}") from None
    if not parsed:
        raise InvalidOptionError(f"At least one {label} is required")
    return parsed


def validate_processing_options(
    options: Union[ProcessingOptions, Dict[str, Any], None],
    defaults: ProcessingConfig,
) -> ResolvedOptions:
    """Check a processing request and fill unset values from configuration.

    Raises:
        InvalidOptionError: Unknown quality, format, priority or metadata mode
    """
    if isinstance(options, ProcessingOptions):
        raw = options.model_dump(exclude_none=True)
    else:
        raw = dict(options or {})

    unknown = set(raw) - set(ProcessingOptions.model_fields)
    if unknown:
        raise InvalidOptionError(f"Unknown option(s): {', '.join(sorted(unknown))}")

    qualities = _parse_list(raw.get("qualities"), VideoQuality, "quality")
    formats = _parse_list(raw.get("formats"), VideoFormat, "format")

    priority = raw.get("priority", JobPriority.NORMAL)
    try:
        priority = JobPriority(priority)
    except ValueError:
        raise InvalidOptionError(f"Invalid priority: {priority}") from None
    if priority not in REQUESTABLE_PRIORITIES:
        raise InvalidOptionError(
            f"Invalid priority: {priority.value} (use high, normal or low)"
        )

    metadata_mode = raw.get("metadata_mode") or defaults.metadata_mode
    if metadata_mode not in ("inline", "job"):
        raise InvalidOptionError(f"Invalid metadata mode: {metadata_mode}")

    thumbnails = raw.get("generate_thumbnails")
    preview = raw.get("generate_preview")
    return ResolvedOptions(
        qualities=qualities or _parse_list(defaults.default_qualities, VideoQuality, "quality"),
        formats=formats or _parse_list(defaults.default_formats, VideoFormat, "format"),
        priority=priority,
        generate_thumbnails=defaults.enable_thumbnails if thumbnails is None else bool(thumbnails),
        generate_preview=defaults.enable_previews if preview is None else bool(preview),
        metadata_mode=metadata_mode,
    )


def guess_mime_type(path: Union[str, Path]) -> str:
    mime, _ = mimetypes.guess_type(str(path))
    return mime or "application/octet-stream"


def validate_upload(
    file_name: str, size: int, mime_type: str, storage: StorageConfig
) -> None:
    """Reject uploads the pipeline cannot or must not process.

    Raises:
        ValidationError: Not a video, wrong extension or too large
    """
    if not mime_type.startswith("video/"):
        raise ValidationError("File must be a video")
    if mime_type not in storage.allowed_mime_types:
        raise ValidationError(f"MIME type {mime_type} is not allowed")

    extension = Path(file_name).suffix.lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise ValidationError(f"File type {extension or '(none)'} is not supported")

    if size <= 0:
        raise ValidationError("File is empty")
    if size > storage.max_file_size:
        raise ValidationError(
            f"File size exceeds maximum limit of {format_bytes(storage.max_file_size)}"
        )
