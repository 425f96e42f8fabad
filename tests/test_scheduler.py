"""Tests for the housekeeping scheduler."""

from datetime import datetime, timedelta

from conftest import FakeEngine
from vidpipe.exceptions import TransientJobError
from vidpipe.queue import JobOutcome, JobPriority, JobStatus, VariantStatus, VideoStatus

NO_EXTRAS = {"generate_thumbnails": False, "generate_preview": False}


class TestTick:
    def test_tick_requeues_due_retries(self, make_pipeline, video):
        pipeline = make_pipeline(engine=FakeEngine(fail_with=[TransientJobError("stall")]))
        pipeline.service.process_video(video.id, NO_EXTRAS)
        pipeline.workers.drain(timeout_s=10)
        (job,) = pipeline.jobs.list_jobs(video_id=video.id)
        assert job.status == JobStatus.RETRYING

        summary = pipeline.scheduler.tick()

        assert summary["requeued"] == 1
        assert summary["reaped"] == 0
        assert pipeline.queue.get_job(job.id).status == JobStatus.QUEUED

    def test_tick_picks_up_pause_from_another_process(self, make_pipeline, pipeline):
        other = make_pipeline()
        other.queue.pause("low")
        assert not pipeline.queue.lane_state("low").paused

        pipeline.scheduler.tick()

        assert pipeline.queue.lane_state("low").paused

    def test_tick_settles_videos(self, pipeline, video):
        pipeline.service.process_video(video.id, NO_EXTRAS)
        (job,) = pipeline.jobs.list_jobs(video_id=video.id)
        claimed = pipeline.queue.dequeue_next(JobPriority.NORMAL, "external-worker")
        # Outcome recorded without notifying the orchestrator, as a crashed
        # process would leave it
        pipeline.queue.report_outcome(
            job.id, JobOutcome(claim_token=claimed.claim_token, status=JobStatus.COMPLETED)
        )

        summary = pipeline.scheduler.tick()

        assert summary["settled_videos"] == 1
        assert pipeline.service.get_video(video.id).status == VideoStatus.COMPLETED


class TestReaper:
    def test_reap_requeues_and_resets_variant(self, pipeline, video, config):
        pipeline.service.process_video(video.id, NO_EXTRAS)
        job = pipeline.queue.dequeue_next(JobPriority.NORMAL, "dead-worker")
        (variant,) = pipeline.media.list_variants(video.id)
        pipeline.media.update_variant(variant.id, {"status": VariantStatus.PROCESSING})

        later = datetime.now() + timedelta(seconds=config.queue.job_timeout_s + 5)
        assert pipeline.scheduler.reap_stuck_jobs(later) == 1

        reaped = pipeline.queue.get_job(job.id)
        assert reaped.status == JobStatus.QUEUED
        assert "timeout" in reaped.error
        assert pipeline.media.get_variant(variant.id).status == VariantStatus.PENDING

        late = pipeline.queue.report_outcome(
            job.id, JobOutcome(claim_token=job.claim_token, status=JobStatus.COMPLETED)
        )
        assert late is None
        assert pipeline.queue.get_job(job.id).status == JobStatus.QUEUED
        assert pipeline.service.get_video(video.id).status == VideoStatus.PROCESSING

    def test_reap_last_attempt_fails_video(self, make_pipeline, config, video):
        cfg = config.model_copy(deep=True)
        cfg.queue.max_attempts = 1
        pipeline = make_pipeline(cfg=cfg)
        pipeline.service.process_video(video.id, NO_EXTRAS)
        pipeline.queue.dequeue_next(JobPriority.NORMAL, "dead-worker")

        later = datetime.now() + timedelta(seconds=config.queue.job_timeout_s + 5)
        pipeline.scheduler.reap_stuck_jobs(later)

        failed = pipeline.service.get_video(video.id)
        assert failed.status == VideoStatus.FAILED
        assert "1 of 1 jobs failed" in failed.processing_error
        (variant,) = pipeline.media.list_variants(video.id)
        assert variant.status == VariantStatus.FAILED

    def test_recover_leaves_live_jobs(self, pipeline, video):
        pipeline.service.process_video(video.id, NO_EXTRAS)
        job = pipeline.queue.dequeue_next(JobPriority.NORMAL, "live-worker")

        assert pipeline.scheduler.recover() == 0
        assert pipeline.queue.get_job(job.id).status == JobStatus.PROCESSING


class TestMetricsAndLifecycle:
    def test_snapshot_metrics(self, pipeline, video):
        pipeline.service.process_video(video.id, NO_EXTRAS)

        pipeline.scheduler.snapshot_metrics()

        (snapshot,) = pipeline.monitor.get_metric_history()
        assert [lane["queue_name"] for lane in snapshot["lanes"]] == [
            "high",
            "normal",
            "thumbnail",
            "low",
        ]
        assert snapshot["jobs"] == {"queued": 1}
        assert snapshot["videos"] == {"processing": 1}

    def test_old_snapshots_are_pruned(self, pipeline):
        pipeline.scheduler.snapshot_metrics()

        pipeline.scheduler.snapshot_metrics(datetime.now() + timedelta(days=31))

        assert len(pipeline.monitor.get_metric_history()) == 0

    def test_start_stop(self, pipeline):
        pipeline.scheduler.start()
        assert pipeline.scheduler.running

        pipeline.scheduler.stop()
        assert not pipeline.scheduler.running
