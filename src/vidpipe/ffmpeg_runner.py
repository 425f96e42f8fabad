"""Subprocess wrapper shared by every ffmpeg call in the pipeline.

Renditions, thumbnail frames and preview clips all go through
:class:`FfmpegRunner`, which gives each invocation:

- a global wall-clock limit and a stall limit (no progress for N seconds)
- progress parsed from ``-progress pipe:2`` key=value lines
- psutil-based cleanup of the whole process tree on timeout
- a permanent/transient/timeout verdict used by the retry policy
- a log and a replayable shell script left in a temp dir when ffmpeg fails
"""

import os
import re
import subprocess
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil
from loguru import logger

from .exceptions import EngineNotFoundError
from .models import EngineConfig

# Lines of stderr kept for error messages and failure artifacts
STDERR_TAIL_LINES = 200


class FfmpegErrorType(Enum):
    """How a failed ffmpeg run should be treated by the retry policy."""

    PERMANENT = "permanent"  # File not found, invalid format, codec error
    TRANSIENT = "transient"  # Disk I/O stall, resource exhaustion
    TIMEOUT = "timeout"  # Process timeout (global or no-progress)


@dataclass
class FfmpegProgress:
    """Latest values reported on the -progress stream."""

    current_time_s: float = 0.0  # Current position in seconds
    total_duration_s: float = 0.0  # Total duration (if known)
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    speed: float = 0.0  # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0
    last_update: float = 0.0  # time.time() of last update

    @property
    def percent(self) -> Optional[int]:
        """Completion percentage, or None when the total duration is unknown."""
        if self.total_duration_s <= 0:
            return None
        return max(0, min(100, int(self.current_time_s * 100 / self.total_duration_s)))


@dataclass
class FfmpegResult:
    """Outcome of one ffmpeg invocation."""

    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    timeout_kind: Optional[str] = None  # "global", "no_progress" or "cancelled"
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    @property
    def error_summary(self) -> str:
        """Last meaningful stderr lines, for error messages."""
        lines = [
            line
            for line in self.stderr.splitlines()
            if line.strip() and "=" not in line.split(" ")[0]
        ]
        tail = " | ".join(lines[-3:])
        if self.timeout_kind == "global":
            return f"ffmpeg timed out: {tail}" if tail else "ffmpeg timed out"
        if self.timeout_kind == "no_progress":
            return f"ffmpeg stalled (no progress): {tail}" if tail else "ffmpeg stalled"
        if self.timeout_kind == "cancelled":
            return "ffmpeg stopped at the job deadline"
        return f"ffmpeg exited with code {self.returncode}: {tail}"


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=1800, no_progress_timeout_s=120)
        >>> result = runner.run(["-y", "-i", "in.mp4", "out.webm"], expected_duration=63.0)
        >>> if not result.success:
        ...     print(result.error_type, result.artifacts_saved)
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        global_timeout_s: int = 3600,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "info",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        poll_interval_s: float = 0.5,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_path: ffmpeg binary (None = bundled imageio-ffmpeg binary)
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Timeout if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Directory for failure artifacts (None = system temp)
            progress_callback: Optional callback for progress updates
            poll_interval_s: How often the timeouts are checked
            cancel_event: When set, the running process tree is killed
        """
        self.ffmpeg_path = ffmpeg_path
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback
        self.poll_interval_s = poll_interval_s
        self.cancel_event = cancel_event

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> "FfmpegRunner":
        """Runner for one call; timeout_s can only tighten the configured limit."""
        global_timeout_s = config.timeout_s
        if timeout_s is not None:
            global_timeout_s = min(global_timeout_s, timeout_s)
        return cls(
            ffmpeg_path=config.ffmpeg_path,
            global_timeout_s=global_timeout_s,
            no_progress_timeout_s=config.no_progress_timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            save_artifacts_on_failure=config.save_artifacts_on_failure,
            ffmpeg_loglevel=config.ffmpeg_loglevel,
            temp_dir=config.temp_dir,
            progress_callback=progress_callback,
            cancel_event=cancel_event,
        )

    def get_ffmpeg_exe(self) -> str:
        """Configured ffmpeg binary, falling back to the imageio-ffmpeg one."""
        if self.ffmpeg_path:
            return self.ffmpeg_path
        return imageio_ffmpeg.get_ffmpeg_exe()

    def build_transcode_args(
        self,
        input_path: str,
        output_path: str,
        width: int,
        height: int,
        video_codec: str,
        crf: int,
        bitrate_kbps: int,
        audio_bitrate: str = "128k",
        preset: str = "medium",
    ) -> List[str]:
        """Arguments for one rendition: scale and pad to the target frame.

        maxrate is 1.5x and bufsize 2x the target bitrate.
        """
        scale = (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
        )
        return [
            "-y",
            "-i", input_path,
            "-c:v", video_codec,
            "-crf", str(crf),
            "-b:v", f"{bitrate_kbps}k",
            "-maxrate", f"{int(bitrate_kbps * 1.5)}k",
            "-bufsize", f"{bitrate_kbps * 2}k",
            "-vf", scale,
            "-c:a", "aac",
            "-b:a", audio_bitrate,
            "-movflags", "+faststart",
            "-preset", preset,
            "-progress", "pipe:2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ]

    def build_frame_args(
        self, input_path: str, output_path: str, timestamp_s: float, width: int, height: int
    ) -> List[str]:
        """Arguments for a single JPEG frame (fast seek before input)."""
        return [
            "-y",
            "-ss", f"{timestamp_s:.3f}",
            "-i", input_path,
            "-vframes", "1",
            "-vf",
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            "-q:v", "2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ]

    def build_preview_args(
        self, input_path: str, output_path: str, duration_s: float, width: int, height: int
    ) -> List[str]:
        """Arguments for a short low-bitrate preview clip from the start of the video."""
        return [
            "-y",
            "-i", input_path,
            "-t", str(duration_s),
            "-vf",
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            "-c:v", "libx264",
            "-crf", "28",
            "-c:a", "aac",
            "-b:a", "64k",
            "-movflags", "+faststart",
            "-progress", "pipe:2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ]

    def run(self, args: List[str], expected_duration: Optional[float] = None) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring.

        Args:
            args: Arguments after the executable
            expected_duration: Expected output duration for progress calculation

        Returns:
            FfmpegResult with execution details

        Raises:
            EngineNotFoundError: The ffmpeg binary cannot be executed
        """
        cmd = [self.get_ffmpeg_exe(), *args]
        progress = FfmpegProgress(total_duration_s=expected_duration or 0.0)
        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        start_time = time.time()
        logger.debug(f"FFmpeg command: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,  # Line buffered for real-time progress
            )
        except (FileNotFoundError, PermissionError) as e:
            raise EngineNotFoundError(f"Cannot execute ffmpeg at {cmd[0]}: {e}") from e

        monitor = threading.Thread(
            target=self._monitor_progress,
            args=(process.stderr, progress, stderr_tail),
            daemon=True,
        )
        monitor.start()

        timeout_kind = None
        try:
            while process.poll() is None:
                now = time.time()
                if self.cancel_event is not None and self.cancel_event.is_set():
                    timeout_kind = "cancelled"
                elif now - start_time > self.global_timeout_s:
                    timeout_kind = "global"
                elif now - (progress.last_update or start_time) > self.no_progress_timeout_s:
                    timeout_kind = "no_progress"
                if timeout_kind:
                    logger.warning(f"Killing ffmpeg pid {process.pid} ({timeout_kind})")
                    self._kill_process_tree(process)
                    break
                time.sleep(self.poll_interval_s)
        except BaseException:
            # Unexpected error - ensure cleanup
            self._kill_process_tree(process)
            raise
        finally:
            monitor.join(timeout=2)

        returncode = process.wait() if timeout_kind is None else -1
        stderr = "\n".join(stderr_tail)

        error_type = None
        if timeout_kind:
            error_type = FfmpegErrorType.TIMEOUT
        elif returncode != 0:
            error_type = self.classify_error(stderr)

        artifacts = []
        if returncode != 0 and self.save_artifacts_on_failure:
            artifacts = self._save_failure_artifacts(cmd, stderr)

        return FfmpegResult(
            success=returncode == 0,
            returncode=returncode,
            stderr=stderr,
            duration_s=time.time() - start_time,
            error_type=error_type,
            timeout_kind=timeout_kind,
            final_progress=progress,
            artifacts_saved=artifacts,
        )

    def _monitor_progress(self, stderr_stream, progress: FfmpegProgress, tail: deque) -> None:
        """Parse ffmpeg stderr and invoke the progress callback.

        FFmpeg progress format:
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        last_callback = 0.0
        for line in stderr_stream:
            line = line.rstrip()
            tail.append(line)

            match = re.search(r"out_time=(\d+):(\d+):([\d.]+)", line)
            if match:
                h, m, s = match.groups()
                progress.current_time_s = int(h) * 3600 + int(m) * 60 + float(s)
                progress.last_update = time.time()

            match = re.search(r"frame=\s*(\d+)", line)
            if match:
                progress.frame = int(match.group(1))
                progress.last_update = time.time()

            match = re.search(r"fps=\s*([\d.]+)", line)
            if match:
                progress.fps = float(match.group(1))

            match = re.search(r"bitrate=\s*([\d.]+)kbits/s", line)
            if match:
                progress.bitrate_kbps = float(match.group(1))

            match = re.search(r"speed=\s*([\d.]+)x", line)
            if match:
                progress.speed = float(match.group(1))

            now = time.time()
            if self.progress_callback and now - last_callback >= 2.0:
                last_callback = now
                try:
                    self.progress_callback(progress)
                except Exception as e:
                    # Don't crash monitor thread on callback errors
                    logger.warning(f"Progress callback error: {e}")

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Kill FFmpeg process and all children.

        Kill sequence:
        1. SIGTERM to the process and its children
        2. Wait grace period (default 5s)
        3. SIGKILL survivors
        """
        try:
            parent = psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            return

        procs = [parent] + parent.children(recursive=True)
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        process.wait()

    @staticmethod
    def classify_error(stderr: str) -> FfmpegErrorType:
        """Classify FFmpeg error for retry logic."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "unknown encoder",
            "moov atom not found",
            "does not contain any stream",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        # Everything else (I/O errors, resource exhaustion, unknown) is retried
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + stderr tail
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script
        """
        artifacts = []
        temp_dir = self._get_temp_dir()
        timestamp = f"{time.time():.0f}_{os.getpid()}_{threading.get_ident()}"

        log_path = temp_dir / f"ffmpeg_error_{timestamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("STDERR:\n")
                f.write(stderr or "(empty)\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning(f"Failed to save error log: {e}")

        script_path = temp_dir / f"ffmpeg_cmd_{timestamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")
                escaped_cmd = []
                for arg in cmd:
                    if " " in arg or any(c in arg for c in ["$", "`", '"', "\\", "(", ")"]):
                        escaped_cmd.append(f"'{arg}'")
                    else:
                        escaped_cmd.append(arg)
                f.write(" \\\n  ".join(escaped_cmd) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning(f"Failed to save command script: {e}")

        if artifacts:
            logger.info(f"FFmpeg failure artifacts saved to {temp_dir}")
        return artifacts

    def _get_temp_dir(self) -> Path:
        temp_dir = Path(self.temp_dir) if self.temp_dir else Path(tempfile.gettempdir())
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir


def check_binary(exe: str) -> bool:
    """True if the binary runs ``-version`` successfully."""
    try:
        subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
            timeout=30,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
        return False
