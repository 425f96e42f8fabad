import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger
from tqdm import tqdm

from . import config as config_lib
from .exceptions import VidpipeError
from .ffmpeg_runner import FfmpegRunner, check_binary
from .logging_setup import configure_logging
from .models import PipelineConfig
from .pipeline import Pipeline
from .queue.models import JobPriority, VideoFormat, VideoQuality, VideoStatus, VideoType
from .validation import format_bytes

RULE = "=" * 60


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vidpipe", description="Prioritized video transcoding pipeline"
    )
    parser.add_argument("--config", "-c", type=str, help="YAML config file (replaces config/)")
    parser.add_argument("--db", type=str, help="SQLite database path")
    parser.add_argument("--storage", type=str, help="Storage root directory")
    parser.add_argument("--log-level", type=str, help="Log level (DEBUG, INFO, ...)")
    parser.add_argument("--job-timeout", type=int, help="Per-job timeout in seconds")
    parser.add_argument("--ffmpeg", type=str, help="ffmpeg binary to use")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # CHECK
    subparsers.add_parser("check", help="Verify ffmpeg/ffprobe and the storage root")

    # ADD
    add_parser = subparsers.add_parser("add", help="Register an uploaded video file")
    add_parser.add_argument("file", type=str, help="Video file")
    add_parser.add_argument("--title", type=str, default="", help="Display title")
    add_parser.add_argument(
        "--type", choices=[t.value for t in VideoType], default=VideoType.COURSE_CONTENT.value
    )
    add_parser.add_argument(
        "--process", action="store_true", help="Queue processing with default options"
    )

    # PROCESS
    process_parser = subparsers.add_parser("process", help="Queue processing for a video")
    process_parser.add_argument("video_id", type=str)
    _add_processing_options(process_parser)
    process_parser.add_argument(
        "--wait", action="store_true", help="Run workers here and wait for the result"
    )
    process_parser.add_argument("--timeout", type=float, help="Give up waiting after N seconds")

    # STATUS / LIST
    status_parser = subparsers.add_parser("status", help="Show processing status of a video")
    status_parser.add_argument("video_id", type=str)
    status_parser.add_argument("--json", action="store_true", help="Print JSON")

    list_parser = subparsers.add_parser("list", help="List videos")
    list_parser.add_argument("--status", choices=[s.value for s in VideoStatus])
    list_parser.add_argument("--limit", type=int, default=50)

    # CANCEL / RETRY / DELETE
    cancel_parser = subparsers.add_parser("cancel", help="Cancel queued work for a video")
    cancel_parser.add_argument("video_id", type=str)

    retry_parser = subparsers.add_parser("retry", help="Retry the failed jobs of a video")
    retry_parser.add_argument("video_id", type=str)

    delete_parser = subparsers.add_parser("delete", help="Delete a video and its jobs")
    delete_parser.add_argument("video_id", type=str)
    delete_parser.add_argument("--files", action="store_true", help="Also delete produced files")

    # RUN
    run_parser = subparsers.add_parser("run", help="Run workers and the scheduler")
    run_parser.add_argument(
        "--drain", action="store_true", help="Exit once nothing is queued or running"
    )
    run_parser.add_argument(
        "--lane", action="append", choices=[p.value for p in JobPriority], help="Lanes to serve"
    )
    run_parser.add_argument("--timeout", type=float, help="Stop after N seconds")

    # QUEUE subcommands
    queue_parser = subparsers.add_parser("queue", help="Manage the job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    queue_subparsers.add_parser("stats", help="Per-lane statistics")
    pause_parser = queue_subparsers.add_parser("pause", help="Stop dequeuing from a lane")
    pause_parser.add_argument("lane", choices=[p.value for p in JobPriority])
    resume_parser = queue_subparsers.add_parser("resume", help="Resume a paused lane")
    resume_parser.add_argument("lane", choices=[p.value for p in JobPriority])
    job_retry_parser = queue_subparsers.add_parser("retry", help="Re-queue a failed job")
    job_retry_parser.add_argument("job_id", type=str)
    cleanup_parser = queue_subparsers.add_parser("cleanup", help="Delete old terminal jobs")
    cleanup_parser.add_argument("--days", type=int, help="Retention in days")

    # HEALTH / METRICS
    subparsers.add_parser("health", help="Health check")
    metrics_parser = subparsers.add_parser("metrics", help="System metrics")
    metrics_parser.add_argument("--trends", type=int, metavar="DAYS", help="Daily trends")
    metrics_parser.add_argument("--errors", action="store_true", help="Error analysis")
    metrics_parser.add_argument("--history", type=int, metavar="N", help="Last N snapshots")

    return parser


def _add_processing_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--quality", action="append", choices=[q.value for q in VideoQuality], dest="qualities"
    )
    parser.add_argument(
        "--format", action="append", choices=[f.value for f in VideoFormat], dest="formats"
    )
    parser.add_argument(
        "--priority", choices=["high", "normal", "low"], default=JobPriority.NORMAL.value
    )
    parser.add_argument("--no-thumbnails", action="store_true", help="Skip thumbnails")
    parser.add_argument("--no-preview", action="store_true", help="Skip the preview clip")
    parser.add_argument("--metadata-mode", choices=["inline", "job"])


def processing_options(args: argparse.Namespace) -> Dict[str, Any]:
    options: Dict[str, Any] = {"priority": args.priority}
    if args.qualities:
        options["qualities"] = args.qualities
    if args.formats:
        options["formats"] = args.formats
    if args.no_thumbnails:
        options["generate_thumbnails"] = False
    if args.no_preview:
        options["generate_preview"] = False
    if args.metadata_mode:
        options["metadata_mode"] = args.metadata_mode
    return options


def load_config(args: argparse.Namespace) -> PipelineConfig:
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config_path = Path(args.config) if args.config else None
    return config_lib.resolve_config(cli_dict, config_path=config_path)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "queue" and args.queue_command is None:
        parser.parse_args(["queue", "--help"])

    conf = load_config(args)
    configure_logging(conf.logging.level, conf.logging.file)

    if args.command == "check":
        return run_check(conf)

    try:
        lanes = [JobPriority(lane) for lane in getattr(args, "lane", None) or []]
        with Pipeline(conf, lanes=lanes or None) as pipeline:
            return dispatch(args, pipeline)
    except VidpipeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


def dispatch(args: argparse.Namespace, pipeline: Pipeline) -> int:
    service = pipeline.service

    if args.command == "add":
        video = service.register_video(args.file, title=args.title, video_type=args.type)
        print(f"Registered video {video.id} ({format_bytes(video.original_file_size)})")
        if args.process:
            result = service.process_video(video.id)
            print(f"Queued {len(result.variants)} rendition(s)")
        return 0

    if args.command == "process":
        result = service.process_video(args.video_id, processing_options(args))
        print(f"Processing video {args.video_id}: {len(result.variants)} rendition(s) queued")
        for variant in result.variants:
            print(f"  + {variant.quality.value}/{variant.format.value} -> {variant.file_path}")
        if args.wait:
            return wait_for_video(pipeline, args.video_id, args.timeout)
        return 0

    if args.command == "status":
        status = service.get_processing_status(args.video_id)
        if args.json:
            print(status.model_dump_json(indent=2))
        else:
            print_status(status)
        return 0

    if args.command == "list":
        status = VideoStatus(args.status) if args.status else None
        for video in service.list_videos(status=status, limit=args.limit):
            print(
                f"{video.id}  {video.status.value:<10}  {video.processing_progress:>3}%  "
                f"{video.title}"
            )
        return 0

    if args.command == "cancel":
        cancelled = service.cancel_processing(args.video_id)
        print(f"Cancelled {len(cancelled)} queued job(s)")
        return 0

    if args.command == "retry":
        retried = service.retry_failed(args.video_id)
        print(f"Re-queued {len(retried)} failed job(s)")
        return 0

    if args.command == "delete":
        service.delete_video(args.video_id, delete_files=args.files)
        print(f"Deleted video {args.video_id}")
        return 0

    if args.command == "run":
        return run_workers(pipeline, args)

    if args.command == "queue":
        return run_queue_command(pipeline, args)

    if args.command == "health":
        health = pipeline.monitor.get_health_check()
        print(json.dumps(health, indent=2))
        return 0 if health["status"] == "healthy" else 1

    if args.command == "metrics":
        monitor = pipeline.monitor
        if args.trends:
            data: Any = monitor.get_processing_trends(args.trends)
        elif args.errors:
            data = monitor.get_error_analysis()
        elif args.history:
            data = monitor.get_metric_history(args.history)
        else:
            data = {
                "system": monitor.get_system_metrics(),
                "job_types": monitor.get_job_type_metrics(),
            }
        print(json.dumps(data, indent=2, default=str))
        return 0

    return 2


def run_check(conf: PipelineConfig) -> int:
    print("Checking dependencies...")
    ok = True
    ffmpeg = FfmpegRunner.from_config(conf.engine).get_ffmpeg_exe()
    if check_binary(ffmpeg):
        print(f"✅ ffmpeg found ({ffmpeg}).")
    else:
        print(f"❌ ffmpeg NOT runnable ({ffmpeg}).")
        ok = False
    if check_binary(conf.engine.ffprobe_path):
        print("✅ ffprobe found.")
    else:
        print(f"❌ ffprobe NOT runnable ({conf.engine.ffprobe_path}).")
        ok = False
    storage = Path(conf.storage.path)
    try:
        storage.mkdir(parents=True, exist_ok=True)
        print(f"✅ storage root {storage.resolve()}")
    except OSError as e:
        print(f"❌ storage root {storage}: {e}")
        ok = False
    return 0 if ok else 1


def print_status(status) -> None:
    print("\n" + RULE)
    print(f"VIDEO {status.video_id}")
    print(RULE)
    print(f"Status:               {status.status.value}")
    print(f"Progress:             {status.progress}%")
    print(f"Jobs:                 {status.completed_jobs}/{status.total_jobs} completed")
    print(f"Failed jobs:          {status.failed_jobs}")
    for variant in status.variants:
        line = f"  {variant['quality']:>6}/{variant['format']:<5} {variant['status']:<10}"
        if variant["error"]:
            line += f" {variant['error']}"
        print(line)
    print(RULE)


def wait_for_video(pipeline: Pipeline, video_id: str, timeout_s: Optional[float]) -> int:
    """Serve the queue in this process until the video settles."""
    deadline = time.monotonic() + timeout_s if timeout_s else None
    pipeline.start()
    video = pipeline.service.get_video(video_id)
    with tqdm(total=100, desc=video.title or video_id[:8], unit="%") as bar:
        while True:
            video = pipeline.service.recompute_video_status(video_id)
            bar.update(video.processing_progress - bar.n)
            if video.status.is_terminal:
                break
            if deadline is not None and time.monotonic() >= deadline:
                print(f"\nStill processing after {timeout_s:g}s", file=sys.stderr)
                return 1
            time.sleep(pipeline.config.queue.poll_interval_s)

    result = pipeline.service.get_result(video_id)
    print("\n" + RULE)
    print("PROCESSING SUMMARY")
    print(RULE)
    print(f"Status:               {video.status.value}")
    print(f"Variants:             {len(result.variants)}")
    print(f"Thumbnails:           {len(result.thumbnails)}")
    for error in result.errors:
        print(f"  ✗ {error}")
    print(RULE)
    return 0 if result.success else 1


def run_workers(pipeline: Pipeline, args: argparse.Namespace) -> int:
    if args.drain:
        drained = pipeline.run_until_idle(timeout_s=args.timeout)
        print_queue_stats(pipeline)
        return 0 if drained else 1

    pipeline.start()
    logger.info("Serving the queue; press Ctrl+C to stop")
    started = time.monotonic()
    try:
        while args.timeout is None or time.monotonic() - started < args.timeout:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Stopping (waiting for in-flight jobs)...")
    pipeline.stop(wait=True)
    return 0


def print_queue_stats(pipeline: Pipeline) -> None:
    print("\n" + RULE)
    print("QUEUE STATUS")
    print(RULE)
    print(f"{'Lane':<10} {'Active':>8} {'Queued':>7} {'Retry':>6} {'Done':>6} {'Failed':>7}  State")
    for s in pipeline.queue.get_queue_stats():
        print(
            f"{s.queue_name:<10} {s.current_active_jobs:>4}/{s.max_concurrent_jobs:<3} "
            f"{s.queued_jobs:>7} {s.retrying_jobs:>6} {s.completed_jobs:>6} {s.failed_jobs:>7}  "
            f"{'paused' if s.paused else 'active'}"
        )
    print(RULE)


def run_queue_command(pipeline: Pipeline, args: argparse.Namespace) -> int:
    queue = pipeline.queue
    if args.queue_command == "stats":
        print_queue_stats(pipeline)
    elif args.queue_command == "pause":
        queue.pause(args.lane)
        print(f"Lane {args.lane} paused")
    elif args.queue_command == "resume":
        queue.resume(args.lane)
        print(f"Lane {args.lane} resumed")
    elif args.queue_command == "retry":
        job = queue.retry_job(args.job_id)
        print(f"Job {job.id} re-queued on lane {job.priority.value}")
    elif args.queue_command == "cleanup":
        deleted = queue.cleanup_terminal(args.days)
        print(f"Deleted {deleted} terminal job(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
