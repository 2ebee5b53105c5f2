# src/liverc_ingest/ports.py
"""
Port interfaces consumed by the ingestion services.

Storage is reached only through these protocols. Telemetry and the raw
payload archive are optional capabilities with no-op defaults, so services
take them as constructor arguments instead of looking them up globally.
"""

from collections.abc import Sequence
from typing import Any, Literal, Protocol

from .domain import (
    Club,
    ClubUpsert,
    CreateImportJobInput,
    Driver,
    Entrant,
    EntrantUpsert,
    Event,
    EventUpsert,
    ImportJob,
    ImportJobItemUpdate,
    ImportPlanEventState,
    LapInput,
    RaceClass,
    RaceClassUpsert,
    ResultRow,
    ResultRowUpsert,
    Session,
    SessionUpsert,
)

Outcome = Literal["success", "failure"]


class EventRepository(Protocol):
    def upsert_by_source(self, data: EventUpsert) -> Event: ...


class RaceClassRepository(Protocol):
    def upsert_by_source(self, data: RaceClassUpsert) -> RaceClass: ...


class SessionRepository(Protocol):
    def upsert_by_source(self, data: SessionUpsert) -> Session: ...


class DriverRepository(Protocol):
    def upsert_by_display_name(self, display_name: str) -> Driver: ...

    def upsert_by_source(
        self, provider: str, source_driver_id: str, display_name: str
    ) -> Driver: ...


class EntrantRepository(Protocol):
    def upsert_by_source(self, data: EntrantUpsert) -> Entrant: ...

    def find_by_source_entrant_id(
        self, event_id: str, race_class_id: str, session_id: str, source_entrant_id: str
    ) -> Entrant | None: ...

    def list_by_session(self, session_id: str) -> list[Entrant]: ...


class ResultRowRepository(Protocol):
    def upsert_by_session_and_driver(self, data: ResultRowUpsert) -> ResultRow: ...


class LapRepository(Protocol):
    def replace_for_entrant(
        self, entrant_id: str, session_id: str, laps: Sequence[LapInput]
    ) -> None: ...


class ImportJobRepository(Protocol):
    def create_job(self, data: CreateImportJobInput) -> str: ...

    def get_job(self, job_id: str) -> ImportJob | None: ...

    def take_next_queued_job(self) -> ImportJob | None: ...

    def mark_job_succeeded(self, job_id: str, message: str | None = None) -> None: ...

    def mark_job_failed(self, job_id: str, message: str) -> None: ...

    def update_job_progress(self, job_id: str, progress_pct: int) -> None: ...

    def update_job_item(self, item_id: str, update: ImportJobItemUpdate) -> None: ...


class ImportPlanRepository(Protocol):
    def get_event_state_by_ref(self, event_ref: str) -> ImportPlanEventState | None: ...


class ClubRepository(Protocol):
    def upsert_by_liverc_subdomain(self, data: ClubUpsert) -> Club: ...

    def mark_inactive_clubs_not_in_subdomains(self, subdomains: Sequence[str]) -> int: ...

    def search_by_display_name(self, query: str, limit: int) -> list[Club]: ...

    def find_by_id(self, club_id: str) -> Club | None: ...


# --- Optional capabilities ---


class Telemetry(Protocol):
    def record_plan_request(
        self, outcome: Outcome, duration_ms: float, event_count: int = 0
    ) -> None: ...

    def record_apply_request(
        self, outcome: Outcome, duration_ms: float, event_count: int = 0
    ) -> None: ...

    def record_event_ingestion(
        self, outcome: Outcome, duration_ms: float, counts: dict[str, Any] | None = None
    ) -> None: ...

    def record_session_ingestion(
        self, outcome: Outcome, duration_ms: float, counts: dict[str, Any] | None = None
    ) -> None: ...


class NoopTelemetry:
    """Telemetry sink that discards everything."""

    def record_plan_request(
        self, outcome: Outcome, duration_ms: float, event_count: int = 0
    ) -> None:
        return None

    def record_apply_request(
        self, outcome: Outcome, duration_ms: float, event_count: int = 0
    ) -> None:
        return None

    def record_event_ingestion(
        self, outcome: Outcome, duration_ms: float, counts: dict[str, Any] | None = None
    ) -> None:
        return None

    def record_session_ingestion(
        self, outcome: Outcome, duration_ms: float, counts: dict[str, Any] | None = None
    ) -> None:
        return None


class PayloadArchive(Protocol):
    def archive(self, source_url: str, payload: Any) -> None: ...


class NoopPayloadArchive:
    """Archive that keeps nothing."""

    def archive(self, source_url: str, payload: Any) -> None:
        return None
