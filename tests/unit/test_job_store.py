from datetime import timedelta, timezone

import pytest

from upscaler.core.exceptions import InvalidTransitionError
from upscaler.modules.imagery.models import ImageJob, JobState, utcnow
from upscaler.modules.imagery.schemas import StateTransition


def test_create_and_get(store, job_factory):
    job = job_factory()

    stored = store.get(job.id)

    assert stored.job_state == JobState.QUEUED
    assert stored.progress_percent == 0
    assert stored.attempts == 0
    assert store.get("does-not-exist") is None


def test_create_rejects_non_queued_job(store):
    job = ImageJob(
        owner_id="owner-1",
        operation_kind="upscale",
        scale_factor=2,
        input_ref="a",
        output_ref="b",
        state=JobState.RUNNING.value,
    )

    with pytest.raises(InvalidTransitionError):
        store.create(job)


def test_start_transition_only_wins_once(store, job_factory):
    job = job_factory()

    assert store.update_state(job.id, StateTransition.start("fast-resample")) is True
    assert store.update_state(job.id, StateTransition.start("fast-resample")) is False

    running = store.get(job.id)
    assert running.job_state == JobState.RUNNING
    assert running.started_at is not None
    assert running.attempts == 1


def test_succeed_records_output_facts(store, job_factory):
    job = job_factory()
    store.update_state(job.id, StateTransition.start("ai-enhance", {"schema_version": 1, "enhance_model": "m"}))
    store.update_progress(job.id, 40)

    moved = store.update_state(job.id, StateTransition.succeed("jobs/x/processed.png", 128, 96, 2048))

    done = store.get(job.id)
    assert moved is True
    assert done.job_state == JobState.SUCCEEDED
    assert done.progress_percent == 100
    assert (done.output_width, done.output_height, done.output_size_bytes) == (128, 96, 2048)
    assert done.strategy == "ai-enhance"
    assert done.get_details().enhance_model == "m"
    assert done.completed_at is not None
    assert done.duration_ms is not None and done.duration_ms >= 0


def test_terminal_states_are_final(store, job_factory):
    job = job_factory()
    store.update_state(job.id, StateTransition.start("fast-resample"))
    store.update_state(job.id, StateTransition.fail("ExecutionError: boom"))

    assert store.update_state(job.id, StateTransition.succeed("jobs/x/processed.png")) is False
    assert store.update_state(job.id, StateTransition.fail("again")) is False
    assert store.update_progress(job.id, 50) is False

    failed = store.get(job.id)
    assert failed.job_state == JobState.FAILED
    assert failed.error_detail == "ExecutionError: boom"


def test_queued_job_cannot_finish_without_running(store, job_factory):
    job = job_factory()

    assert store.update_state(job.id, StateTransition.succeed("jobs/x/processed.png")) is False
    assert store.update_state(job.id, StateTransition.fail("nope")) is False
    assert store.get(job.id).job_state == JobState.QUEUED


def test_no_transition_back_to_queued(store, job_factory):
    job = job_factory()

    with pytest.raises(InvalidTransitionError):
        store.update_state(job.id, StateTransition(target=JobState.QUEUED))


def test_progress_is_monotonic_and_below_100(store, job_factory):
    job = job_factory()
    assert store.update_progress(job.id, 10) is False  # not RUNNING yet

    store.update_state(job.id, StateTransition.start("fast-resample"))
    assert store.update_progress(job.id, 40) is True
    assert store.update_progress(job.id, 30) is False
    assert store.update_progress(job.id, 40) is False
    assert store.get(job.id).progress_percent == 40

    assert store.update_progress(job.id, 100) is True
    assert store.get(job.id).progress_percent == 99


def test_reclaim_stale_requires_old_heartbeat(store, job_factory):
    job = job_factory()
    store.update_state(job.id, StateTransition.start("fast-resample"))

    assert store.reclaim_stale(job.id, utcnow() - timedelta(minutes=10)) is False

    assert store.reclaim_stale(job.id, utcnow() + timedelta(seconds=1)) is True
    reclaimed = store.get(job.id)
    assert reclaimed.job_state == JobState.RUNNING
    assert reclaimed.attempts == 2

    # The reclaim refreshed the heartbeat
    assert store.reclaim_stale(job.id, utcnow() - timedelta(seconds=5)) is False


def test_reclaim_ignores_queued_jobs(store, job_factory):
    job = job_factory()

    assert store.reclaim_stale(job.id, utcnow() + timedelta(seconds=1)) is False


def test_timestamps_round_trip_as_utc(store, job_factory):
    job = job_factory()
    store.update_state(job.id, StateTransition.start("fast-resample"))

    running = store.get(job.id)

    for value in (running.created_at, running.updated_at, running.started_at):
        assert value.tzinfo is not None
        assert value.utcoffset() == timedelta(0)
    assert running.created_at <= running.updated_at <= utcnow()


def test_reclaim_compares_instants_across_offsets(store, job_factory):
    job = job_factory()
    store.update_state(job.id, StateTransition.start("fast-resample"))
    plus_five = timezone(timedelta(hours=5))

    assert store.reclaim_stale(job.id, (utcnow() - timedelta(minutes=10)).astimezone(plus_five)) is False
    assert store.reclaim_stale(job.id, (utcnow() + timedelta(seconds=1)).astimezone(plus_five)) is True


def test_heartbeat_refreshes_running_jobs_only(store, job_factory):
    job = job_factory()
    assert store.heartbeat(job.id) is False

    store.update_state(job.id, StateTransition.start("fast-resample"))
    before = store.get(job.id).updated_at
    assert store.heartbeat(job.id) is True
    assert store.get(job.id).updated_at >= before

    store.update_state(job.id, StateTransition.fail("ExecutionError: boom"))
    assert store.heartbeat(job.id) is False


def test_switch_strategy_applies_to_running_jobs(store, job_factory):
    job = job_factory()
    details = {"schema_version": 1, "fallback_reason": "binary_unavailable", "enhance_model": None}
    assert store.switch_strategy(job.id, "fast-resample", details) is False

    store.update_state(job.id, StateTransition.start("ai-enhance", {"schema_version": 1, "enhance_model": "m"}))
    assert store.switch_strategy(job.id, "fast-resample", details) is True

    running = store.get(job.id)
    assert running.strategy == "fast-resample"
    assert running.get_details().fallback_reason == "binary_unavailable"
