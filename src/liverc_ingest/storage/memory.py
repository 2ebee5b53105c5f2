# src/liverc_ingest/storage/memory.py
"""
In-memory implementations of every repository port.

Used by the unit tests and by the dry-run CLI. Each repository guards its
maps with a lock so the job queue thread and a caller can share them.
"""

import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from urllib.parse import urlsplit

from ..domain import (
    Club,
    ClubUpsert,
    CreateImportJobInput,
    Driver,
    Entrant,
    EntrantUpsert,
    Event,
    EventUpsert,
    ImportJob,
    ImportJobItem,
    ImportJobItemUpdate,
    ImportPlanEventState,
    ImportPlanEventSummary,
    Lap,
    LapInput,
    RaceClass,
    RaceClassUpsert,
    ResultRow,
    ResultRowUpsert,
    Session,
    SessionUpsert,
)


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryEventRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: dict[str, Event] = {}

    def upsert_by_source(self, data: EventUpsert) -> Event:
        with self._lock:
            existing = self.find_by_source_event_id(data.source_event_id)
            if existing is None:
                event = Event(
                    id=_new_id(),
                    source_event_id=data.source_event_id,
                    source_url=data.source_url,
                    name=data.name,
                )
            else:
                event = replace(existing, source_url=data.source_url, name=data.name)
            self.events[event.id] = event
            return event

    def find_by_source_event_id(self, source_event_id: str) -> Event | None:
        return next(
            (e for e in self.events.values() if e.source_event_id == source_event_id), None
        )

    def set_counts(
        self, event_id: str, entries_count: int | None, drivers_count: int | None
    ) -> Event:
        """Record the catalogue entry/driver counts published for an event."""
        with self._lock:
            event = replace(
                self.events[event_id], entries_count=entries_count, drivers_count=drivers_count
            )
            self.events[event_id] = event
            return event


class InMemoryRaceClassRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.race_classes: dict[str, RaceClass] = {}

    def upsert_by_source(self, data: RaceClassUpsert) -> RaceClass:
        with self._lock:
            existing = next(
                (
                    c
                    for c in self.race_classes.values()
                    if c.event_id == data.event_id and c.class_code == data.class_code
                ),
                None,
            )
            if existing is None:
                race_class = RaceClass(
                    id=_new_id(),
                    event_id=data.event_id,
                    class_code=data.class_code,
                    source_url=data.source_url,
                    name=data.name,
                )
            else:
                race_class = replace(existing, source_url=data.source_url, name=data.name)
            self.race_classes[race_class.id] = race_class
            return race_class


class InMemorySessionRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sessions: dict[str, Session] = {}

    def upsert_by_source(self, data: SessionUpsert) -> Session:
        with self._lock:
            existing = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.event_id == data.event_id and s.source_session_id == data.source_session_id
                ),
                None,
            )
            if existing is None:
                session = Session(
                    id=_new_id(),
                    event_id=data.event_id,
                    race_class_id=data.race_class_id,
                    source_session_id=data.source_session_id,
                    source_url=data.source_url,
                    name=data.name,
                    scheduled_start=data.scheduled_start,
                )
            else:
                session = replace(
                    existing,
                    race_class_id=data.race_class_id,
                    source_url=data.source_url,
                    name=data.name,
                    scheduled_start=data.scheduled_start,
                )
            self.sessions[session.id] = session
            return session

    def list_by_event(self, event_id: str) -> list[Session]:
        return [s for s in self.sessions.values() if s.event_id == event_id]


class InMemoryDriverRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.drivers: dict[str, Driver] = {}

    def upsert_by_display_name(self, display_name: str) -> Driver:
        """
        Match on the exact trimmed name.

        Case and whitespace normalisation only applies when matching laps to rows.
        """
        name = display_name.strip()
        with self._lock:
            existing = next(
                (
                    d
                    for d in self.drivers.values()
                    if d.source_driver_id is None and d.display_name == name
                ),
                None,
            )
            if existing is not None:
                return existing
            driver = Driver(id=_new_id(), display_name=name)
            self.drivers[driver.id] = driver
            return driver

    def upsert_by_source(self, provider: str, source_driver_id: str, display_name: str) -> Driver:
        with self._lock:
            existing = next(
                (
                    d
                    for d in self.drivers.values()
                    if d.provider == provider and d.source_driver_id == source_driver_id
                ),
                None,
            )
            if existing is None:
                driver = Driver(
                    id=_new_id(),
                    display_name=display_name,
                    provider=provider,
                    source_driver_id=source_driver_id,
                )
            else:
                driver = replace(existing, display_name=display_name)
            self.drivers[driver.id] = driver
            return driver


class InMemoryEntrantRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.entrants: dict[str, Entrant] = {}

    def upsert_by_source(self, data: EntrantUpsert) -> Entrant:
        with self._lock:
            existing = self._find(
                data.event_id, data.race_class_id, data.session_id, data.source_entrant_id
            )
            entrant = Entrant(
                id=existing.id if existing else _new_id(),
                event_id=data.event_id,
                race_class_id=data.race_class_id,
                session_id=data.session_id,
                display_name=data.display_name,
                source_entrant_id=data.source_entrant_id,
                driver_id=data.driver_id,
                car_number=data.car_number,
                source_transponder_id=data.source_transponder_id,
            )
            self.entrants[entrant.id] = entrant
            return entrant

    def find_by_source_entrant_id(
        self, event_id: str, race_class_id: str, session_id: str, source_entrant_id: str
    ) -> Entrant | None:
        with self._lock:
            return self._find(event_id, race_class_id, session_id, source_entrant_id)

    def list_by_session(self, session_id: str) -> list[Entrant]:
        with self._lock:
            return [e for e in self.entrants.values() if e.session_id == session_id]

    def _find(
        self, event_id: str, race_class_id: str, session_id: str, source_entrant_id: str
    ) -> Entrant | None:
        return next(
            (
                e
                for e in self.entrants.values()
                if e.event_id == event_id
                and e.race_class_id == race_class_id
                and e.session_id == session_id
                and e.source_entrant_id == source_entrant_id
            ),
            None,
        )


class InMemoryResultRowRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.rows: dict[tuple[str, str], ResultRow] = {}

    def upsert_by_session_and_driver(self, data: ResultRowUpsert) -> ResultRow:
        key = (data.session_id, data.driver_id)
        with self._lock:
            existing = self.rows.get(key)
            row = ResultRow(id=existing.id if existing else _new_id(), **vars(data))
            self.rows[key] = row
            return row


class InMemoryLapRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.laps: dict[tuple[str, str], list[Lap]] = {}

    def replace_for_entrant(
        self, entrant_id: str, session_id: str, laps: Sequence[LapInput]
    ) -> None:
        with self._lock:
            self.laps[(entrant_id, session_id)] = [
                Lap(
                    id=lap.id,
                    entrant_id=entrant_id,
                    session_id=session_id,
                    lap_number=lap.lap_number,
                    time_ms=lap.time_ms,
                )
                for lap in laps
            ]

    def list_for_entrant(self, entrant_id: str, session_id: str) -> list[Lap]:
        with self._lock:
            return list(self.laps.get((entrant_id, session_id), []))

    def count_for_session(self, session_id: str) -> int:
        with self._lock:
            return sum(len(laps) for (_, sid), laps in self.laps.items() if sid == session_id)

    def count(self) -> int:
        with self._lock:
            return sum(len(laps) for laps in self.laps.values())


class InMemoryImportJobRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.jobs: dict[str, ImportJob] = {}
        self.plan_hashes: dict[str, str] = {}

    def create_job(self, data: CreateImportJobInput) -> str:
        job_id = _new_id()
        items = [
            ImportJobItem(
                id=_new_id(),
                target_type=item.target_type,
                target_ref=item.target_ref,
                state="QUEUED",
                counts=item.counts,
            )
            for item in data.items
        ]
        with self._lock:
            self.jobs[job_id] = ImportJob(job_id=job_id, state="QUEUED", items=items)
            self.plan_hashes[job_id] = data.plan_hash
        return job_id

    def get_job(self, job_id: str) -> ImportJob | None:
        with self._lock:
            return self.jobs.get(job_id)

    def take_next_queued_job(self) -> ImportJob | None:
        with self._lock:
            for job_id, job in self.jobs.items():
                if job.state == "QUEUED":
                    running = replace(job, state="RUNNING")
                    self.jobs[job_id] = running
                    return running
        return None

    def mark_job_succeeded(self, job_id: str, message: str | None = None) -> None:
        self._update_job(job_id, state="SUCCEEDED", progress_pct=100, message=message)

    def mark_job_failed(self, job_id: str, message: str) -> None:
        self._update_job(job_id, state="FAILED", message=message)

    def update_job_progress(self, job_id: str, progress_pct: int) -> None:
        self._update_job(job_id, progress_pct=progress_pct)

    def update_job_item(self, item_id: str, update: ImportJobItemUpdate) -> None:
        with self._lock:
            for job_id, job in self.jobs.items():
                if not any(item.id == item_id for item in job.items):
                    continue
                items = [
                    replace(item, state=update.state, message=update.message, counts=update.counts)
                    if item.id == item_id
                    else item
                    for item in job.items
                ]
                self.jobs[job_id] = replace(job, items=items)
                return
        raise KeyError(f"Unknown import job item: {item_id}")

    def _update_job(self, job_id: str, **changes: object) -> None:
        with self._lock:
            self.jobs[job_id] = replace(self.jobs[job_id], **changes)  # type: ignore[arg-type]


class InMemoryClubRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.clubs: dict[str, Club] = {}

    def upsert_by_liverc_subdomain(self, data: ClubUpsert) -> Club:
        seen_at = data.seen_at or datetime.now(UTC)
        subdomain = data.liverc_subdomain.lower()
        with self._lock:
            existing = next(
                (c for c in self.clubs.values() if c.liverc_subdomain == subdomain), None
            )
            club = Club(
                id=existing.id if existing else _new_id(),
                liverc_subdomain=subdomain,
                display_name=data.display_name,
                country=data.country,
                region=data.region,
                is_active=True,
                first_seen_at=existing.first_seen_at if existing else seen_at,
                last_seen_at=seen_at,
            )
            self.clubs[club.id] = club
            return club

    def mark_inactive_clubs_not_in_subdomains(self, subdomains: Sequence[str]) -> int:
        keep = {s.lower() for s in subdomains}
        deactivated = 0
        with self._lock:
            for club_id, club in list(self.clubs.items()):
                if club.is_active and club.liverc_subdomain not in keep:
                    self.clubs[club_id] = replace(club, is_active=False)
                    deactivated += 1
        return deactivated

    def search_by_display_name(self, query: str, limit: int) -> list[Club]:
        needle = query.strip().lower()
        with self._lock:
            matches = [
                c for c in self.clubs.values() if c.is_active and needle in c.display_name.lower()
            ]
        matches.sort(key=lambda c: (not c.display_name.lower().startswith(needle), c.display_name))
        return matches[:limit]

    def find_by_id(self, club_id: str) -> Club | None:
        with self._lock:
            return self.clubs.get(club_id)

    def list_active(self) -> list[Club]:
        with self._lock:
            return sorted(
                (c for c in self.clubs.values() if c.is_active), key=lambda c: c.liverc_subdomain
            )


def _ref_path(ref: str) -> str:
    """Path part of a ref, lowercased, without surrounding slashes."""
    trimmed = ref.strip()
    path = urlsplit(trimmed).path if "://" in trimmed else trimmed.split("?")[0].split("#")[0]
    return path.strip("/").lower()


class InMemoryImportPlanRepository:
    """Derives per-event ingestion state from the other in-memory repositories."""

    def __init__(
        self,
        events: InMemoryEventRepository,
        sessions: InMemorySessionRepository,
        entrants: InMemoryEntrantRepository,
        laps: InMemoryLapRepository,
    ) -> None:
        self.events = events
        self.sessions = sessions
        self.entrants = entrants
        self.laps = laps

    def get_event_state_by_ref(self, event_ref: str) -> ImportPlanEventState | None:
        event = self._find_event(event_ref)
        if event is None:
            return None

        sessions = self.sessions.list_by_event(event.id)
        lap_counts = [self.laps.count_for_session(s.id) for s in sessions]
        entrant_count = sum(len(self.entrants.list_by_session(s.id)) for s in sessions)

        return ImportPlanEventState(
            event=ImportPlanEventSummary(
                id=event.id,
                source_event_id=event.source_event_id,
                source_url=event.source_url,
                entries_count=event.entries_count,
                drivers_count=event.drivers_count,
            ),
            session_count=len(sessions),
            sessions_with_laps=sum(1 for count in lap_counts if count > 0),
            lap_count=sum(lap_counts),
            entrant_count=entrant_count,
        )

    def _find_event(self, event_ref: str) -> Event | None:
        ref = event_ref.strip()
        if not ref:
            return None
        ref_path = _ref_path(ref)
        for event in self.events.events.values():
            if event.source_event_id == ref or event.source_url.rstrip("/") == ref.rstrip("/"):
                return event
            if ref_path and _ref_path(event.source_url) == ref_path:
                return event
        return None


@dataclass
class InMemoryRepositories:
    """Every in-memory repository wired together."""

    events: InMemoryEventRepository = field(default_factory=InMemoryEventRepository)
    race_classes: InMemoryRaceClassRepository = field(default_factory=InMemoryRaceClassRepository)
    sessions: InMemorySessionRepository = field(default_factory=InMemorySessionRepository)
    drivers: InMemoryDriverRepository = field(default_factory=InMemoryDriverRepository)
    entrants: InMemoryEntrantRepository = field(default_factory=InMemoryEntrantRepository)
    result_rows: InMemoryResultRowRepository = field(default_factory=InMemoryResultRowRepository)
    laps: InMemoryLapRepository = field(default_factory=InMemoryLapRepository)
    jobs: InMemoryImportJobRepository = field(default_factory=InMemoryImportJobRepository)
    clubs: InMemoryClubRepository = field(default_factory=InMemoryClubRepository)
    plans: InMemoryImportPlanRepository = field(init=False)

    def __post_init__(self) -> None:
        self.plans = InMemoryImportPlanRepository(
            self.events, self.sessions, self.entrants, self.laps
        )
