from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from liverc_ingest.domain import (
    ImportPlan,
    ImportPlanCounts,
    ImportPlanItem,
    ImportPlanRequest,
    PlanEventRef,
)
from liverc_ingest.exceptions import LiveRcPlanError
from liverc_ingest.services.apply import (
    ImportApplyService,
    InMemoryPlanStore,
    StoredPlan,
    compute_plan_totals,
)


def _plan(*laps: float, plan_id: str = "plan-1") -> ImportPlan:
    return ImportPlan(
        plan_id=plan_id,
        generated_at=datetime(2024, 5, 12, tzinfo=UTC),
        items=[
            ImportPlanItem(
                event_ref=f"https://club.liverc.com/results/event-{index}",
                status="NEW",
                counts=ImportPlanCounts(sessions=4, drivers=20, estimated_laps=estimate),  # type: ignore[arg-type]
            )
            for index, estimate in enumerate(laps)
        ],
    )


def _request(count: int = 1) -> ImportPlanRequest:
    return ImportPlanRequest(
        events=[PlanEventRef(f"https://club.liverc.com/results/event-{i}") for i in range(count)]
    )


@pytest.fixture
def store() -> InMemoryPlanStore:
    return InMemoryPlanStore()


@pytest.fixture
def job_queue() -> MagicMock:
    queue = MagicMock()
    queue.enqueue_job.return_value = "job-1"
    return queue


def test_compute_plan_totals_ignores_non_finite_estimates() -> None:
    assert compute_plan_totals(_plan(100, float("nan"), float("inf"), 50)) == {
        "event_count": 4,
        "estimated_laps": 150,
    }


def test_apply_enqueues_every_item(store: InMemoryPlanStore, job_queue: MagicMock) -> None:
    """Test an accepted plan becomes one job carrying each item's estimates."""
    telemetry = MagicMock()
    store.save_plan(_request(2), _plan(300, 400))
    service = ImportApplyService(store, job_queue, telemetry=telemetry)

    assert service.apply(" plan-1 ") == "job-1"

    plan_id, items = job_queue.enqueue_job.call_args.args
    assert plan_id == "plan-1"
    assert [item.event_ref for item in items] == [
        "https://club.liverc.com/results/event-0",
        "https://club.liverc.com/results/event-1",
    ]
    assert items[0].counts == {"sessions": 4, "drivers": 20, "estimated_laps": 300}
    outcome, _, event_count = telemetry.record_apply_request.call_args.args
    assert (outcome, event_count) == ("success", 2)


def test_apply_requires_plan_id(store: InMemoryPlanStore, job_queue: MagicMock) -> None:
    with pytest.raises(LiveRcPlanError) as excinfo:
        ImportApplyService(store, job_queue).apply("  ")
    assert excinfo.value.code == "INVALID_REQUEST"


def test_apply_unknown_plan(store: InMemoryPlanStore, job_queue: MagicMock) -> None:
    telemetry = MagicMock()

    with pytest.raises(LiveRcPlanError) as excinfo:
        ImportApplyService(store, job_queue, telemetry=telemetry).apply("missing")

    assert excinfo.value.code == "PLAN_NOT_FOUND"
    assert telemetry.record_apply_request.call_args.args[0] == "failure"
    job_queue.enqueue_job.assert_not_called()


@pytest.mark.parametrize(
    ("laps", "max_events", "max_laps"),
    [
        ((100, 100, 100), 2, 10_000),
        ((6000, 4001), 12, 10_000),
    ],
)
def test_guardrails(
    store: InMemoryPlanStore, job_queue: MagicMock, laps: tuple[int, ...], max_events: int, max_laps: int
) -> None:
    store.save_plan(_request(len(laps)), _plan(*laps))
    service = ImportApplyService(store, job_queue, max_events=max_events, max_estimated_laps=max_laps)

    with pytest.raises(LiveRcPlanError) as excinfo:
        service.apply("plan-1")

    assert excinfo.value.code == "PLAN_GUARDRAILS_EXCEEDED"
    assert excinfo.value.details == {
        "event_count": len(laps),
        "estimated_laps": sum(laps),
        "limits": {"max_events": max_events, "max_estimated_laps": max_laps},
    }
    job_queue.enqueue_job.assert_not_called()


def test_guardrails_are_inclusive(store: InMemoryPlanStore, job_queue: MagicMock) -> None:
    store.save_plan(_request(2), _plan(6000, 4000))
    service = ImportApplyService(store, job_queue, max_events=2, max_estimated_laps=10_000)

    assert service.apply("plan-1") == "job-1"


def test_plan_without_items_is_recomputed(store: InMemoryPlanStore, job_queue: MagicMock) -> None:
    """Test a request-only plan is recomputed and saved under its original id."""
    request = _request(1)
    store.save(StoredPlan(plan_id="plan-1", request=request))
    plan_service = MagicMock()
    plan_service.create_plan.return_value = _plan(250, plan_id="fresh-id")

    job_id = ImportApplyService(store, job_queue, plan_service=plan_service).apply("plan-1")

    assert job_id == "job-1"
    plan_service.create_plan.assert_called_once_with(request)
    stored = store.get("plan-1")
    assert stored is not None
    assert stored.plan is not None
    assert stored.plan.plan_id == "plan-1"


@pytest.mark.parametrize("plan_service", [None, MagicMock(**{"create_plan.side_effect": RuntimeError("boom")})])
def test_recompute_failures(store: InMemoryPlanStore, job_queue: MagicMock, plan_service) -> None:
    store.save(StoredPlan(plan_id="plan-1", request=_request(1)))

    with pytest.raises(LiveRcPlanError) as excinfo:
        ImportApplyService(store, job_queue, plan_service=plan_service).apply("plan-1")

    assert excinfo.value.code == "PLAN_RECOMPUTE_FAILED"


def test_enqueue_failure_is_wrapped(store: InMemoryPlanStore, job_queue: MagicMock) -> None:
    job_queue.enqueue_job.side_effect = RuntimeError("queue offline")
    store.save_plan(_request(1), _plan(10))

    with pytest.raises(LiveRcPlanError) as excinfo:
        ImportApplyService(store, job_queue).apply("plan-1")

    assert excinfo.value.code == "JOB_ENQUEUE_FAILED"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
