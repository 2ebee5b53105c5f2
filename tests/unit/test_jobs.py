import hashlib
from unittest.mock import MagicMock

import pytest

from conftest import ManualTimer
from liverc_ingest.services.jobs import (
    ITEM_FAILED_MESSAGE,
    JOB_FAILED_MESSAGE,
    EnqueueItem,
    JobQueue,
    JobRunnerStats,
    compute_plan_hash,
)
from liverc_ingest.storage.memory import InMemoryImportJobRepository

COUNTS = {"sessions_imported": 2, "result_rows_imported": 4, "laps_imported": 8}


@pytest.fixture
def timer() -> ManualTimer:
    return ManualTimer()


@pytest.fixture
def job_repo() -> InMemoryImportJobRepository:
    return InMemoryImportJobRepository()


@pytest.fixture
def importer() -> MagicMock:
    importer = MagicMock()
    importer.ingest_event_summary.return_value = COUNTS
    return importer


@pytest.fixture
def queue(job_repo: InMemoryImportJobRepository, importer: MagicMock, timer: ManualTimer) -> JobQueue:
    return JobQueue(
        job_repo,
        importer,
        poll_interval_ms=2000,
        processing_delay_ms=0,
        timer=timer,
        sleep=MagicMock(),
        telemetry=MagicMock(),
    )


def test_start_and_stop_are_idempotent(queue: JobQueue, timer: ManualTimer) -> None:
    queue.start()
    queue.start()

    assert queue.running
    assert len(timer.pending) == 1
    assert timer.pending[0][0] == 2.0

    queue.stop()
    queue.stop()

    assert not queue.running
    assert timer.pending == []


def test_tick_is_ignored_when_stopped(queue: JobQueue, importer: MagicMock) -> None:
    queue.enqueue_job("plan-1", [EnqueueItem("https://club.liverc.com/results/a")])

    queue.run_tick()

    importer.ingest_event_summary.assert_not_called()


def test_enqueue_drops_blank_refs_and_hashes_plan(
    queue: JobQueue, job_repo: InMemoryImportJobRepository
) -> None:
    job_id = queue.enqueue_job(
        "plan-1",
        [EnqueueItem("   "), EnqueueItem(" https://club.liverc.com/results/a ", {"sessions": 3})],
    )

    job = queue.get_job(job_id)
    assert job is not None
    assert job.state == "QUEUED"
    (item,) = job.items
    assert item.target_type == "EVENT"
    assert item.target_ref == "https://club.liverc.com/results/a"
    assert item.counts == {"sessions": 3}
    assert job_repo.plan_hashes[job_id] == hashlib.sha256(b"plan-1").hexdigest()


def test_compute_plan_hash_is_stable() -> None:
    assert compute_plan_hash("abc") == compute_plan_hash("abc")
    assert compute_plan_hash("abc") != compute_plan_hash("abd")


def test_successful_job_marks_items_and_progress(
    queue: JobQueue, importer: MagicMock, timer: ManualTimer
) -> None:
    """Test every item is imported in order and the job completes at 100%."""
    job_id = queue.enqueue_job(
        "plan-1",
        [EnqueueItem("https://club.liverc.com/results/a"), EnqueueItem("https://club.liverc.com/results/b")],
    )
    queue.start()

    queue.run_tick()

    job = queue.get_job(job_id)
    assert job is not None
    assert job.state == "SUCCEEDED"
    assert job.progress_pct == 100
    assert [item.state for item in job.items] == ["SUCCEEDED", "SUCCEEDED"]
    assert job.items[0].counts == COUNTS
    assert [c.args[0] for c in importer.ingest_event_summary.call_args_list] == [
        "https://club.liverc.com/results/a",
        "https://club.liverc.com/results/b",
    ]
    assert queue.stats.to_dict() == {
        "jobs_succeeded": 1,
        "jobs_failed": 0,
        "items_succeeded": 2,
        "items_failed": 0,
    }
    assert len(timer.pending) == 1


def test_item_failure_fails_the_job(queue: JobQueue, importer: MagicMock) -> None:
    importer.ingest_event_summary.side_effect = [COUNTS, RuntimeError("upstream down"), COUNTS]
    job_id = queue.enqueue_job(
        "plan-1",
        [EnqueueItem("ref-a"), EnqueueItem("ref-b"), EnqueueItem("ref-c")],
    )
    queue.start()

    queue.run_tick()

    job = queue.get_job(job_id)
    assert job is not None
    assert job.state == "FAILED"
    assert job.message == JOB_FAILED_MESSAGE
    assert job.progress_pct == 33
    assert [item.state for item in job.items] == ["SUCCEEDED", "FAILED", "QUEUED"]
    assert job.items[1].message == ITEM_FAILED_MESSAGE
    assert importer.ingest_event_summary.call_count == 2
    assert queue.stats.jobs_failed == 1
    assert queue.stats.items_failed == 1


def test_telemetry_records_each_item(queue: JobQueue, importer: MagicMock) -> None:
    importer.ingest_event_summary.side_effect = [COUNTS, ValueError("bad")]
    queue.enqueue_job("plan-1", [EnqueueItem("ref-a"), EnqueueItem("ref-b")])
    queue.start()

    queue.run_tick()

    outcomes = [c.args[0] for c in queue.telemetry.record_event_ingestion.call_args_list]  # type: ignore[attr-defined]
    assert outcomes == ["success", "failure"]


def test_one_job_per_tick(queue: JobQueue) -> None:
    first = queue.enqueue_job("plan-1", [EnqueueItem("ref-a")])
    second = queue.enqueue_job("plan-2", [EnqueueItem("ref-b")])
    queue.start()

    queue.run_tick()

    assert queue.get_job(first).state == "SUCCEEDED"  # type: ignore[union-attr]
    assert queue.get_job(second).state == "QUEUED"  # type: ignore[union-attr]

    queue.run_tick()

    assert queue.get_job(second).state == "SUCCEEDED"  # type: ignore[union-attr]


def test_empty_job_completes(queue: JobQueue) -> None:
    job_id = queue.enqueue_job("plan-1", [])
    queue.start()

    queue.run_tick()

    job = queue.get_job(job_id)
    assert job is not None
    assert job.state == "SUCCEEDED"
    assert job.progress_pct == 100


def test_processing_delay_before_each_item(
    job_repo: InMemoryImportJobRepository, importer: MagicMock, timer: ManualTimer
) -> None:
    sleep = MagicMock()
    queue = JobQueue(job_repo, importer, processing_delay_ms=250, timer=timer, sleep=sleep)
    queue.enqueue_job("plan-1", [EnqueueItem("ref-a"), EnqueueItem("ref-b")])
    queue.start()

    queue.run_tick()

    assert [c.args[0] for c in sleep.call_args_list] == [0.25, 0.25]


def test_tick_errors_keep_the_runner_alive(importer: MagicMock, timer: ManualTimer) -> None:
    """Test a repository failure is logged and the next tick is still scheduled."""
    repository = MagicMock()
    repository.take_next_queued_job.side_effect = RuntimeError("db offline")
    queue = JobQueue(repository, importer, timer=timer)
    queue.start()

    queue.run_tick()

    assert queue.running
    assert len(timer.pending) == 1


def test_stats_reset() -> None:
    stats = JobRunnerStats()
    stats.increment("items_succeeded", 3)
    stats.reset()
    assert stats.to_dict()["items_succeeded"] == 0
