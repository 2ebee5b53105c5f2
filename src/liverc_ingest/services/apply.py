# src/liverc_ingest/services/apply.py
"""
Turning a stored import plan into a queued job, subject to size guardrails.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Protocol

from ..config import MAX_EVENTS_PER_PLAN, MAX_TOTAL_ESTIMATED_LAPS
from ..domain import ImportPlan, ImportPlanRequest
from ..exceptions import LiveRcPlanError
from ..ports import NoopTelemetry, Telemetry
from .jobs import EnqueueItem, JobQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredPlan:
    plan_id: str
    request: ImportPlanRequest
    plan: ImportPlan | None = None


class PlanService(Protocol):
    def create_plan(self, request: ImportPlanRequest) -> ImportPlan: ...


class InMemoryPlanStore:
    def __init__(self) -> None:
        self._plans: dict[str, StoredPlan] = {}
        self._lock = threading.Lock()

    def save(self, stored: StoredPlan) -> None:
        with self._lock:
            self._plans[stored.plan_id] = stored

    def save_plan(self, request: ImportPlanRequest, plan: ImportPlan) -> StoredPlan:
        stored = StoredPlan(plan_id=plan.plan_id, request=request, plan=plan)
        self.save(stored)
        return stored

    def get(self, plan_id: str) -> StoredPlan | None:
        with self._lock:
            return self._plans.get(plan_id)


def compute_plan_totals(plan: ImportPlan) -> dict[str, int]:
    """Event count and summed estimated laps; non-finite estimates count as 0."""
    estimated_laps = 0
    for item in plan.items:
        laps = item.counts.estimated_laps
        if isinstance(laps, (int, float)) and math.isfinite(laps):
            estimated_laps += int(laps)
    return {"event_count": len(plan.items), "estimated_laps": estimated_laps}


class ImportApplyService:
    """
    Applies a stored plan.

    A plan saved without its computed items is recomputed from the original
    request and stored again under the same id before guardrails are checked.
    """

    def __init__(
        self,
        plan_store: InMemoryPlanStore,
        job_queue: JobQueue,
        plan_service: PlanService | None = None,
        max_events: int = MAX_EVENTS_PER_PLAN,
        max_estimated_laps: int = MAX_TOTAL_ESTIMATED_LAPS,
        telemetry: Telemetry | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.plan_store = plan_store
        self.job_queue = job_queue
        self.plan_service = plan_service
        self.max_events = max_events
        self.max_estimated_laps = max_estimated_laps
        self.telemetry = telemetry or NoopTelemetry()
        self.logger = log or logger

    def apply(self, plan_id: str) -> str:
        """
        Enqueue a job for every item of the plan.

        Args:
            plan_id: Identifier returned when the plan was created

        Returns:
            The queued job id

        Raises:
            LiveRcPlanError: INVALID_REQUEST, PLAN_NOT_FOUND, PLAN_RECOMPUTE_FAILED,
                PLAN_GUARDRAILS_EXCEEDED or JOB_ENQUEUE_FAILED
        """
        started = time.perf_counter()
        try:
            job_id, event_count = self._apply(plan_id)
        except LiveRcPlanError:
            self.telemetry.record_apply_request("failure", (time.perf_counter() - started) * 1000)
            raise

        self.telemetry.record_apply_request(
            "success", (time.perf_counter() - started) * 1000, event_count
        )
        return job_id

    def _apply(self, plan_id: str) -> tuple[str, int]:
        plan_id = (plan_id or "").strip()
        if not plan_id:
            raise LiveRcPlanError("Plan identifier is required.", code="INVALID_REQUEST")

        stored = self.plan_store.get(plan_id)
        if stored is None:
            self.logger.warning(
                f"⚠️ Apply requested for unknown plan {plan_id}",
                extra={"event": "liverc.importApply.plan_not_found", "plan_id": plan_id},
            )
            raise LiveRcPlanError(
                "Import plan could not be found. Generate a new plan and try again.",
                code="PLAN_NOT_FOUND",
            )

        plan = stored.plan or self._recompute(stored)

        totals = compute_plan_totals(plan)
        if totals["event_count"] > self.max_events or totals["estimated_laps"] > self.max_estimated_laps:
            limits = {"max_events": self.max_events, "max_estimated_laps": self.max_estimated_laps}
            self.logger.warning(
                f"⚠️ Plan {plan_id} exceeds guardrails: {totals} > {limits}",
                extra={"event": "liverc.importApply.guardrails_exceeded", "plan_id": plan_id},
            )
            raise LiveRcPlanError(
                "Selected LiveRC events exceed import guardrails.",
                code="PLAN_GUARDRAILS_EXCEEDED",
                details={**totals, "limits": limits},
            )

        try:
            job_id = self.job_queue.enqueue_job(
                plan_id,
                [
                    EnqueueItem(
                        event_ref=item.event_ref,
                        counts={
                            "sessions": item.counts.sessions,
                            "drivers": item.counts.drivers,
                            "estimated_laps": item.counts.estimated_laps,
                        },
                    )
                    for item in plan.items
                ],
            )
        except Exception as e:
            self.logger.error(
                f"❌ Failed to enqueue job for plan {plan_id}: {e}",
                extra={"event": "liverc.importApply.enqueue_failed", "plan_id": plan_id},
            )
            raise LiveRcPlanError(
                "Unable to queue LiveRC import job. Try again later.", code="JOB_ENQUEUE_FAILED"
            ) from e

        self.logger.info(
            f"✅ Plan {plan_id} accepted as job {job_id} "
            f"({totals['event_count']} event(s), ~{totals['estimated_laps']} laps)",
            extra={"event": "liverc.importApply.success", "plan_id": plan_id, "job_id": job_id},
        )
        return job_id, totals["event_count"]

    def _recompute(self, stored: StoredPlan) -> ImportPlan:
        if self.plan_service is None:
            raise LiveRcPlanError(
                "Unable to recompute LiveRC import plan. Generate a new plan and try again.",
                code="PLAN_RECOMPUTE_FAILED",
            )
        try:
            plan = replace(self.plan_service.create_plan(stored.request), plan_id=stored.plan_id)
        except Exception as e:
            self.logger.error(
                f"❌ Failed to recompute plan {stored.plan_id}: {e}",
                extra={"event": "liverc.importApply.plan_recompute_failed", "plan_id": stored.plan_id},
            )
            raise LiveRcPlanError(
                "Unable to recompute LiveRC import plan. Generate a new plan and try again.",
                code="PLAN_RECOMPUTE_FAILED",
            ) from e

        self.plan_store.save(StoredPlan(plan_id=stored.plan_id, request=stored.request, plan=plan))
        return plan
