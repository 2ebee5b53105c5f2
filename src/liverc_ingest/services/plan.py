# src/liverc_ingest/services/plan.py
"""
Import planning: estimate the scope of importing each requested event and
classify it against what is already stored locally.
"""

import logging
import time
import uuid
from datetime import UTC, datetime

from ..config import INCLUDE_EXISTING_EVENTS
from ..domain import (
    ImportPlan,
    ImportPlanCounts,
    ImportPlanEventState,
    ImportPlanItem,
    ImportPlanRequest,
    PlanStatus,
)
from ..ingestion.html import enumerate_sessions_from_event_html
from ..ingestion.http_client import LiveRcClient
from ..ports import ImportPlanRepository, NoopTelemetry, Telemetry
from .heuristics import build_heuristic_summary, compute_scaled_totals

logger = logging.getLogger(__name__)


def derive_status(enumerated_session_count: int, state: ImportPlanEventState | None) -> PlanStatus:
    """
    Classify local coverage of an event.

    Args:
        enumerated_session_count: Sessions listed on the upstream overview page
        state: Local ingestion state, or None when the event is unknown

    Returns:
        NEW, PARTIAL or EXISTING
    """
    if state is None:
        return "NEW"

    if enumerated_session_count == 0:
        if state.sessions_with_laps > 0:
            return "EXISTING"
        if state.session_count > 0 or state.lap_count > 0 or state.entrant_count > 0:
            return "PARTIAL"
        return "NEW"

    covers_all_sessions = (
        state.session_count >= enumerated_session_count
        and state.sessions_with_laps >= enumerated_session_count
        and state.sessions_with_laps == state.session_count
        and state.lap_count > 0
    )
    if covers_all_sessions:
        return "EXISTING"

    if state.session_count > 0 or state.sessions_with_laps > 0 or state.lap_count > 0:
        return "PARTIAL"
    return "NEW"


class ImportPlanService:
    """Builds import plans from event overview pages and local state."""

    def __init__(
        self,
        client: LiveRcClient,
        repository: ImportPlanRepository,
        include_existing_events: bool = INCLUDE_EXISTING_EVENTS,
        telemetry: Telemetry | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.repository = repository
        self.include_existing_events = include_existing_events
        self.telemetry = telemetry or NoopTelemetry()
        self.logger = log or logger

    def create_plan(self, request: ImportPlanRequest) -> ImportPlan:
        """
        Estimate sessions, drivers and laps for every requested event.

        EXISTING events are dropped from the plan unless
        ``include_existing_events`` is set.

        Raises:
            LiveRcClientError: When an overview page cannot be fetched
        """
        started = time.perf_counter()
        try:
            items = [self._plan_event(ref.event_ref) for ref in request.events]
        except Exception:
            self.telemetry.record_plan_request(
                "failure", (time.perf_counter() - started) * 1000, len(request.events)
            )
            raise

        if not self.include_existing_events:
            items = [item for item in items if item.status != "EXISTING"]

        plan = ImportPlan(plan_id=str(uuid.uuid4()), generated_at=datetime.now(UTC), items=items)
        duration_ms = (time.perf_counter() - started) * 1000
        self.telemetry.record_plan_request("success", duration_ms, len(request.events))
        self.logger.info(
            f"📊 Import plan {plan.plan_id}: {len(items)}/{len(request.events)} event(s) "
            f"in {duration_ms:.0f}ms",
            extra={"event": "liverc.plan.created", "plan_id": plan.plan_id},
        )
        return plan

    def _plan_event(self, event_ref: str) -> ImportPlanItem:
        html = self.client.get_event_overview(event_ref)
        state = self.repository.get_event_state_by_ref(event_ref)

        sessions = enumerate_sessions_from_event_html(html)
        summary = build_heuristic_summary(sessions)

        catalogue_drivers = 0
        if state is not None:
            catalogue_drivers = max(state.event.drivers_count or 0, state.event.entries_count or 0)
        entrant_count = state.entrant_count if state is not None else 0
        totals = compute_scaled_totals(summary, max(entrant_count, catalogue_drivers))

        status = derive_status(len(sessions), state)
        self.logger.debug(
            f"Planned {event_ref}: {status}, {len(sessions)} session(s), "
            f"~{totals.driver_count} drivers, ~{totals.total_laps} laps"
        )

        return ImportPlanItem(
            event_ref=event_ref,
            status=status,
            counts=ImportPlanCounts(
                sessions=len(sessions),
                drivers=totals.driver_count,
                estimated_laps=max(state.lap_count if state is not None else 0, totals.total_laps),
            ),
        )
