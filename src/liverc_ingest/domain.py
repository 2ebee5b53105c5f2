# src/liverc_ingest/domain.py
"""
Canonical racing domain records and the inputs used to upsert them.

Records are immutable snapshots handed out by repositories; services never
mutate them, they send a new upsert instead.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobState = Literal["QUEUED", "RUNNING", "SUCCEEDED", "FAILED"]
JobItemTarget = Literal["EVENT", "SESSION"]
PlanStatus = Literal["NEW", "PARTIAL", "EXISTING"]


# --- Persisted entities ---


@dataclass(frozen=True)
class Event:
    id: str
    source_event_id: str
    source_url: str
    name: str
    provider: str = "LiveRC"
    entries_count: int | None = None
    drivers_count: int | None = None


@dataclass(frozen=True)
class RaceClass:
    id: str
    event_id: str
    class_code: str
    source_url: str
    name: str


@dataclass(frozen=True)
class Session:
    id: str
    event_id: str
    race_class_id: str
    source_session_id: str
    source_url: str
    name: str
    scheduled_start: datetime | None = None


@dataclass(frozen=True)
class Driver:
    id: str
    display_name: str
    provider: str | None = None
    source_driver_id: str | None = None


@dataclass(frozen=True)
class Entrant:
    id: str
    event_id: str
    race_class_id: str
    session_id: str
    display_name: str
    source_entrant_id: str | None
    driver_id: str | None = None
    car_number: str | None = None
    source_transponder_id: str | None = None


@dataclass(frozen=True)
class Lap:
    id: str
    entrant_id: str
    session_id: str
    lap_number: int
    time_ms: int


@dataclass(frozen=True)
class ResultRow:
    id: str
    session_id: str
    driver_id: str
    position: int | None = None
    car_number: str | None = None
    laps_completed: int | None = None
    total_time_ms: int | None = None
    behind_ms: int | None = None
    fastest_lap_ms: int | None = None
    fastest_lap_num: int | None = None
    avg_lap_ms: int | None = None
    avg_top5_ms: int | None = None
    avg_top10_ms: int | None = None
    avg_top15_ms: int | None = None
    top3_consecutive_ms: int | None = None
    std_dev_ms: int | None = None
    consistency_pct: float | None = None


@dataclass(frozen=True)
class Club:
    id: str
    liverc_subdomain: str
    display_name: str
    country: str | None = None
    region: str | None = None
    is_active: bool = True
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None


# --- Upsert inputs ---


@dataclass(frozen=True)
class EventUpsert:
    source_event_id: str
    source_url: str
    name: str


@dataclass(frozen=True)
class RaceClassUpsert:
    event_id: str
    class_code: str
    source_url: str
    name: str


@dataclass(frozen=True)
class SessionUpsert:
    event_id: str
    race_class_id: str
    source_session_id: str
    source_url: str
    name: str
    scheduled_start: datetime | None = None


@dataclass(frozen=True)
class EntrantUpsert:
    event_id: str
    race_class_id: str
    session_id: str
    display_name: str
    source_entrant_id: str
    driver_id: str | None = None
    car_number: str | None = None
    source_transponder_id: str | None = None


@dataclass(frozen=True)
class LapInput:
    id: str
    lap_number: int
    time_ms: int


@dataclass(frozen=True)
class ResultRowUpsert:
    session_id: str
    driver_id: str
    position: int | None = None
    car_number: str | None = None
    laps_completed: int | None = None
    total_time_ms: int | None = None
    behind_ms: int | None = None
    fastest_lap_ms: int | None = None
    fastest_lap_num: int | None = None
    avg_lap_ms: int | None = None
    avg_top5_ms: int | None = None
    avg_top10_ms: int | None = None
    avg_top15_ms: int | None = None
    top3_consecutive_ms: int | None = None
    std_dev_ms: int | None = None
    consistency_pct: float | None = None


@dataclass(frozen=True)
class ClubUpsert:
    liverc_subdomain: str
    display_name: str
    country: str | None = None
    region: str | None = None
    seen_at: datetime | None = None


# --- Import jobs ---


@dataclass(frozen=True)
class ImportJobItem:
    id: str
    target_type: JobItemTarget
    target_ref: str
    state: JobState
    message: str | None = None
    counts: dict[str, Any] | None = None


@dataclass(frozen=True)
class ImportJob:
    job_id: str
    state: JobState
    progress_pct: int = 0
    message: str | None = None
    items: list[ImportJobItem] = field(default_factory=list)


@dataclass(frozen=True)
class ImportJobItemInput:
    target_type: JobItemTarget
    target_ref: str
    counts: dict[str, Any] | None = None


@dataclass(frozen=True)
class CreateImportJobInput:
    plan_id: str
    plan_hash: str
    mode: str
    items: list[ImportJobItemInput]


@dataclass(frozen=True)
class ImportJobItemUpdate:
    state: JobState
    message: str | None = None
    counts: dict[str, Any] | None = None


# --- Import planning ---


@dataclass(frozen=True)
class PlanEventRef:
    event_ref: str


@dataclass(frozen=True)
class ImportPlanRequest:
    events: list[PlanEventRef]


@dataclass(frozen=True)
class ImportPlanCounts:
    sessions: int
    drivers: int
    estimated_laps: int


@dataclass(frozen=True)
class ImportPlanItem:
    event_ref: str
    status: PlanStatus
    counts: ImportPlanCounts


@dataclass(frozen=True)
class ImportPlan:
    plan_id: str
    generated_at: datetime
    items: list[ImportPlanItem]


@dataclass(frozen=True)
class ImportPlanEventSummary:
    id: str
    source_event_id: str | None
    source_url: str | None
    entries_count: int | None = None
    drivers_count: int | None = None


@dataclass(frozen=True)
class ImportPlanEventState:
    event: ImportPlanEventSummary
    session_count: int
    sessions_with_laps: int
    lap_count: int
    entrant_count: int
