import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

from vidpipe.exceptions import JobTimeoutError
from vidpipe.models import (
    DatabaseConfig,
    LaneCapacityConfig,
    PipelineConfig,
    ProcessingConfig,
    QueueConfig,
    StorageConfig,
)
from vidpipe.pipeline import Pipeline
from vidpipe.services import (
    EncodingEngine,
    LocalStorage,
    MetadataExtractor,
    ThumbnailGenerator,
    TranscodeResult,
    VideoMetadata,
)


class FakeEngine(EncodingEngine):
    """Writes a small output file instead of running ffmpeg.

    fail_with: exceptions raised by the first len(fail_with) calls, in order.
    on_call: invoked at the start of every call (used to observe lane state).
    gate: if set, calls block until the event is set.
    delay_s: time each call takes; with honor_cancel the call stops early
        when its cancel event is set, like the ffmpeg runner does.
    """

    def __init__(
        self,
        fail_with=None,
        on_call=None,
        gate: Optional[threading.Event] = None,
        delay_s: float = 0.0,
        honor_cancel: bool = True,
    ):
        self.fail_with = list(fail_with or [])
        self.on_call = on_call
        self.gate = gate
        self.delay_s = delay_s
        self.honor_cancel = honor_cancel
        self.calls: List[str] = []
        self.live = 0
        self.max_live = 0
        self._lock = threading.Lock()

    def transcode(
        self,
        input_path,
        output_path,
        settings,
        progress_callback=None,
        duration=None,
        cancel_event=None,
    ):
        with self._lock:
            self.calls.append(output_path)
            error = self.fail_with.pop(0) if self.fail_with else None
            self.live += 1
            self.max_live = max(self.max_live, self.live)
        try:
            return self._encode(
                output_path, settings, progress_callback, duration, cancel_event, error
            )
        finally:
            with self._lock:
                self.live -= 1

    def _encode(self, output_path, settings, progress_callback, duration, cancel_event, error):
        if self.on_call is not None:
            self.on_call()
        if self.gate is not None:
            self.gate.wait(5)
        if self.delay_s:
            if self.honor_cancel and cancel_event is not None:
                if cancel_event.wait(self.delay_s):
                    raise JobTimeoutError("ffmpeg stopped at the job deadline")
            else:
                time.sleep(self.delay_s)
        if error is not None:
            raise error
        if progress_callback:
            progress_callback(50)
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_bytes(b"encoded" * 100)
        return TranscodeResult(
            success=True,
            output_path=output_path,
            file_size=700,
            duration=duration or 0.0,
            bitrate=settings.bitrate_kbps * 1000,
            width=settings.width,
            height=settings.height,
            codec=settings.codec,
        )


class FakeExtractor(MetadataExtractor):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = 0

    def extract_metadata(self, file_path):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return VideoMetadata(
            duration=60.0,
            width=1920,
            height=1080,
            frame_rate=29.97,
            codec="h264",
            bitrate=5_000_000,
            format="mov,mp4,m4a,3gp,3g2,mj2",
            size=Path(file_path).stat().st_size,
        )


class FakeThumbnailer(ThumbnailGenerator):
    def __init__(self, storage: LocalStorage):
        self.storage = storage

    def generate_thumbnails(
        self, video_path, video_id, timestamps, duration=None, cancel_event=None
    ):
        paths = []
        for i, _ in enumerate(timestamps, start=1):
            key = f"thumbnails/{video_id}/thumbnail_{i}.jpg"
            self.storage.save_file(b"jpeg", key)
            paths.append(key)
        return paths

    def generate_preview(self, video_path, video_id, duration=30, cancel_event=None):
        key = f"previews/{video_id}/preview.mp4"
        self.storage.save_file(b"preview", key)
        return key


@pytest.fixture
def config(tmp_path):
    """Fast, isolated configuration: temp database and storage, no backoff."""
    return PipelineConfig(
        database=DatabaseConfig(path=str(tmp_path / "vidpipe.db")),
        storage=StorageConfig(path=str(tmp_path / "storage")),
        processing=ProcessingConfig(
            default_qualities=["720p"], default_formats=["mp4"], thumbnail_count=5
        ),
        queue=QueueConfig(
            retry_delay_s=0,
            poll_interval_s=0.01,
            job_timeout_s=30,
            max_concurrent_jobs=LaneCapacityConfig(high=2, normal=2, low=2, thumbnail=2),
        ),
    )


@pytest.fixture
def storage(config):
    return LocalStorage(config.storage.path)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def make_pipeline(config, storage, extractor):
    """Build a pipeline with fake collaborators; closed at teardown."""
    created = []

    def _make(engine=None, extractor_=None, cfg=None):
        pipeline = Pipeline(
            cfg or config,
            storage=storage,
            engine=engine or FakeEngine(),
            extractor=extractor_ or extractor,
            thumbnailer=FakeThumbnailer(storage),
        )
        created.append(pipeline)
        return pipeline

    yield _make
    for pipeline in created:
        pipeline.close()


@pytest.fixture
def pipeline(make_pipeline, engine):
    return make_pipeline(engine=engine)


@pytest.fixture
def source_video(tmp_path):
    """A 1,000,000-byte .mp4 upload."""
    path = tmp_path / "uploads" / "lecture.mp4"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\0" * 1_000_000)
    return path


@pytest.fixture
def video(pipeline, source_video):
    return pipeline.service.register_video(str(source_video), title="Lecture 1")
