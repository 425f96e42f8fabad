"""ffprobe-based metadata extraction."""

import json
import subprocess
from typing import Any, Dict

from loguru import logger

from ..exceptions import EngineNotFoundError, JobTimeoutError, PermanentJobError, TransientJobError
from .base import MetadataExtractor, VideoMetadata


def parse_frame_rate(value: str) -> float:
    """Parse ffprobe's r_frame_rate ("30000/1001", "25/1" or "25")."""
    if not value:
        return 0.0
    parts = value.split("/")
    try:
        if len(parts) == 2:
            numerator, denominator = int(parts[0]), int(parts[1])
            return numerator / denominator if denominator > 0 else 0.0
        return float(value)
    except ValueError:
        return 0.0


def _number(value: Any, convert=float, default=0):
    try:
        return convert(value)
    except (TypeError, ValueError):
        return default


def parse_probe_output(probe: Dict[str, Any]) -> VideoMetadata:
    """Build VideoMetadata from ffprobe -show_format -show_streams JSON.

    Raises:
        PermanentJobError: The file has no video stream
    """
    video_stream = next(
        (s for s in probe.get("streams", []) if s.get("codec_type") == "video"), None
    )
    if video_stream is None:
        raise PermanentJobError("No video stream found in file")

    fmt = probe.get("format", {})
    return VideoMetadata(
        duration=_number(fmt.get("duration"), float, 0.0),
        width=_number(video_stream.get("width"), int, 0),
        height=_number(video_stream.get("height"), int, 0),
        frame_rate=parse_frame_rate(video_stream.get("r_frame_rate", "")),
        codec=video_stream.get("codec_name") or "unknown",
        bitrate=_number(fmt.get("bit_rate"), int, 0),
        format=fmt.get("format_name") or "unknown",
        size=_number(fmt.get("size"), int, 0),
    )


class FfprobeMetadataExtractor(MetadataExtractor):
    def __init__(self, ffprobe_path: str = "ffprobe", timeout_s: int = 120):
        self.ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s

    def extract_metadata(self, file_path: str) -> VideoMetadata:
        logger.info(f"Extracting metadata from: {file_path}")
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            file_path,
        ]
        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout_s, check=False
            )
        except FileNotFoundError as e:
            raise EngineNotFoundError(f"Cannot execute ffprobe at {self.ffprobe_path}") from e
        except subprocess.TimeoutExpired as e:
            raise JobTimeoutError(f"ffprobe timed out after {self.timeout_s}s") from e

        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            logger.error(f"FFprobe exited with code {proc.returncode}: {stderr}")
            message = f"ffprobe failed with code {proc.returncode}"
            if "no such file" in stderr.lower() or "invalid data" in stderr.lower():
                raise PermanentJobError(f"{message}: {stderr}")
            raise TransientJobError(f"{message}: {stderr}" if stderr else message)

        try:
            probe = json.loads(proc.stdout)
        except json.JSONDecodeError as e:
            raise PermanentJobError(f"Failed to parse ffprobe output: {e}") from e

        metadata = parse_probe_output(probe)
        logger.info(
            f"Metadata extracted: {metadata.width}x{metadata.height} "
            f"{metadata.codec} {metadata.duration:.1f}s"
        )
        return metadata
