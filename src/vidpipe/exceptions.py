"""
Exception types for the vidpipe transcoding pipeline.

The hierarchy mirrors how errors are handled:

- ValidationError and subclasses are raised synchronously by public operations
  before any state is touched. Each carries an HTTP-like ``status_code`` so an
  outer HTTP layer can map them without knowing the pipeline internals.
- JobExecutionError and subclasses are raised inside workers. ``retryable``
  decides whether the queue manager schedules another attempt.
- FatalPipelineError signals a broken deployment (missing engine binary,
  unreachable storage). It is never retried.

All exceptions inherit from ``VidpipeError``.
"""


class VidpipeError(Exception):
    """Base class for all vidpipe exceptions."""

    status_code: int = 500


# --- Validation errors (rejected synchronously, no side effects) ---
class ValidationError(VidpipeError):
    """Raised when a request is malformed or refers to invalid values."""

    status_code = 400


class InvalidOptionError(ValidationError):
    """Raised for an unknown quality, format, priority or other processing option."""

    status_code = 400


class VideoNotFoundError(ValidationError):
    """Raised when an operation targets a video id that does not exist."""

    status_code = 404


class JobNotFoundError(ValidationError):
    """Raised when an operation targets a job id that does not exist."""

    status_code = 404


class LaneNotFoundError(ValidationError):
    """Raised when a lane name is not configured."""

    status_code = 404


class VideoConflictError(ValidationError):
    """Raised when a video is in a state that forbids the requested operation.

    The typical case is calling ``process_video`` on a video that is already
    PROCESSING.
    """

    status_code = 409


class DuplicateJobError(VideoConflictError):
    """Raised when an active job already targets the same (video, quality, format)."""

    status_code = 409


class InvalidTransitionError(VideoConflictError):
    """Raised when a manual state change is requested from a state that does not allow it."""

    status_code = 409


# --- Job execution errors (raised inside workers) ---
class JobExecutionError(VidpipeError):
    """Base class for failures of a single job attempt."""

    retryable: bool = True
    kind: str = "transient"


class TransientJobError(JobExecutionError):
    """Raised for failures that may succeed on another attempt (I/O stall, engine hiccup)."""

    retryable = True
    kind = "transient"


class JobTimeoutError(TransientJobError):
    """Raised when a job exceeds its wall-clock deadline."""

    kind = "timeout"


class PermanentJobError(JobExecutionError):
    """Raised when retrying cannot help (corrupt input, unsupported codec, missing parameters)."""

    retryable = False
    kind = "permanent"


# --- Fatal configuration errors ---
class FatalPipelineError(VidpipeError):
    """Base class for deployment problems that make every job fail."""

    status_code = 500
    retryable = False
    kind = "fatal"


class EngineNotFoundError(FatalPipelineError):
    """Raised when the ffmpeg or ffprobe binary cannot be executed."""


class StorageUnavailableError(FatalPipelineError):
    """Raised when the storage root cannot be created or written."""


# --- Orchestrator boundary ---
class ProcessingFailedError(VidpipeError):
    """Raised by the orchestrator when processing could not be started.

    The video is marked FAILED with a descriptive ``processing_error`` before
    this is raised.
    """

    status_code = 500
