# src/liverc_ingest/services/summary.py
"""
Event summary importer.

Walks an event overview page session by session: result rows come from the
session HTML, laps from the session's JSON payload. Lap groups are tied to
result rows by normalised driver name. Each session is isolated: a failure is
logged and the import moves on to the next one.
"""

import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar
from urllib.parse import urljoin, urlsplit

from ..domain import (
    Driver,
    EntrantUpsert,
    EventUpsert,
    LapInput,
    RaceClass,
    RaceClassUpsert,
    ResultRowUpsert,
    Session,
    SessionUpsert,
)
from ..exceptions import LiveRcSummaryError
from ..ingestion.html import (
    LiveRcEventMetadata,
    LiveRcEventSessionSummary,
    LiveRcSessionResultRow,
    enumerate_sessions_from_event_html,
    extract_event_metadata_from_html,
    normalise_driver_name,
    parse_session_results_from_html,
)
from ..ingestion.http_client import LiveRcClient, append_json_suffix
from ..ingestion.schemas import LiveRcRaceContext, RaceResultLap, map_race_result_response
from ..lap_id import build_lap_id
from ..ports import (
    DriverRepository,
    EntrantRepository,
    EventRepository,
    LapRepository,
    NoopTelemetry,
    RaceClassRepository,
    ResultRowRepository,
    SessionRepository,
    Telemetry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NameMultiset(Generic[T]):
    """
    Items keyed by normalised driver name, consumed first-in first-out.

    Two rows for "John Smith" are handed out in the order they were added,
    so duplicate names resolve by payload order.
    """

    def __init__(self) -> None:
        self._slots: dict[str, deque[T]] = defaultdict(deque)

    def add(self, name: str, item: T) -> None:
        self._slots[normalise_driver_name(name)].append(item)

    def take(self, name: str) -> T | None:
        slots = self._slots.get(normalise_driver_name(name))
        if not slots:
            return None
        return slots.popleft()

    def __len__(self) -> int:
        return sum(len(slots) for slots in self._slots.values())


@dataclass
class _RowSlot:
    driver: Driver
    row: LiveRcSessionResultRow
    lap_count: int | None = None
    matched: bool = False


@dataclass
class _SessionCounts:
    result_rows_imported: int = 0
    laps_imported: int = 0
    drivers_with_laps: int = 0
    laps_skipped: int = 0


def _parse_optional_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def derive_session_slugs(segments: list[str]) -> tuple[str, str]:
    """
    Round and race slugs from the path segments after ``results``.

    ``[event, class, round, race]`` gives ``(round, race)``; deeper paths
    join the middle segments into the round slug; shallow paths fall back to
    ``main`` for the round.
    """
    if len(segments) <= 2:
        return "main", segments[-1] if segments else "race"
    tail = segments[2:]
    round_slug = "/".join(tail[:-1]) if len(tail) > 1 else tail[0]
    return round_slug or "main", tail[-1]


class LiveRcSummaryImporter:
    """Imports every session listed on an event overview page."""

    def __init__(
        self,
        client: LiveRcClient,
        events: EventRepository,
        race_classes: RaceClassRepository,
        sessions: SessionRepository,
        drivers: DriverRepository,
        result_rows: ResultRowRepository,
        entrants: EntrantRepository,
        laps: LapRepository,
        telemetry: Telemetry | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.events = events
        self.race_classes = race_classes
        self.sessions = sessions
        self.drivers = drivers
        self.result_rows = result_rows
        self.entrants = entrants
        self.laps = laps
        self.telemetry = telemetry or NoopTelemetry()
        self.logger = log or logger

    def ingest_event_summary(self, event_ref: str) -> dict[str, int]:
        """
        Import one event.

        Args:
            event_ref: Event URL or a ref relative to the LiveRC origin

        Returns:
            Counts: sessions_imported, result_rows_imported, laps_imported,
            drivers_with_laps, laps_skipped

        Raises:
            LiveRcClientError: When the overview page cannot be fetched
        """
        event_url = self.client.resolve_absolute_url(event_ref)
        event_html = self.client.get_event_overview(event_url)
        meta = extract_event_metadata_from_html(event_html, event_url)
        event = self.events.upsert_by_source(
            EventUpsert(
                source_event_id=meta.event_slug,
                source_url=meta.canonical_url,
                name=meta.event_name,
            )
        )

        parts = urlsplit(urljoin(event_url, meta.canonical_url))
        base_origin = f"{parts.scheme}://{parts.netloc}"

        summaries = enumerate_sessions_from_event_html(event_html)
        self.logger.info(f"🚀 Importing {len(summaries)} session(s) for event '{meta.event_name}'")

        totals = {
            "sessions_imported": 0,
            "result_rows_imported": 0,
            "laps_imported": 0,
            "drivers_with_laps": 0,
            "laps_skipped": 0,
        }

        for summary in summaries:
            session_ref = urljoin(f"{base_origin}/", summary.session_ref)
            started = time.perf_counter()
            try:
                counts = self._process_session(summary, session_ref, meta, event.id)
            except Exception as e:
                self.telemetry.record_session_ingestion(
                    "failure", (time.perf_counter() - started) * 1000
                )
                self.logger.warning(
                    f"⚠️ Session {session_ref} skipped: {e}",
                    extra={"event": "liverc.summary.session_failed", "session_ref": session_ref},
                )
                continue

            session_counts = vars(counts)
            self.telemetry.record_session_ingestion(
                "success", (time.perf_counter() - started) * 1000, session_counts
            )
            totals["sessions_imported"] += 1
            for key, value in session_counts.items():
                totals[key] += value

        self.logger.info(f"📊 Event '{meta.event_name}' imported: {totals}")
        return totals

    def _process_session(
        self,
        summary: LiveRcEventSessionSummary,
        session_ref: str,
        meta: LiveRcEventMetadata,
        event_id: str,
    ) -> _SessionCounts:
        session_html = self.client.get_session_page(session_ref)
        results = parse_session_results_from_html(session_html, session_ref)
        session_url = urljoin(meta.canonical_url, results.canonical_url or session_ref)

        parts = urlsplit(session_url)
        segments = [s for s in parts.path.split("/") if s]
        if "results" not in segments or len(segments) <= segments.index("results") + 2:
            raise LiveRcSummaryError(f"LiveRC session URL is missing expected segments: {session_url}")

        slugs = segments[segments.index("results") + 1 :]
        event_slug, class_slug = slugs[0], slugs[1]
        origin = f"{parts.scheme}://{parts.netloc}"

        race_class = self.race_classes.upsert_by_source(
            RaceClassUpsert(
                event_id=event_id,
                class_code=class_slug,
                source_url=f"{origin}/results/{event_slug}/{class_slug}",
                name=summary.class_name,
            )
        )
        source_session_id = "/".join(slugs)
        session = self.sessions.upsert_by_source(
            SessionUpsert(
                event_id=event_id,
                race_class_id=race_class.id,
                source_session_id=source_session_id,
                source_url=session_url,
                name=summary.title or results.session_name or source_session_id,
                scheduled_start=_parse_optional_datetime(summary.completed_at),
            )
        )

        slots: list[_RowSlot] = []
        by_name: NameMultiset[_RowSlot] = NameMultiset()
        for row in results.rows:
            name = row.driver_name.strip()
            if not name:
                continue
            slot = _RowSlot(driver=self.drivers.upsert_by_display_name(name), row=row)
            slots.append(slot)
            by_name.add(name, slot)

        counts = _SessionCounts()
        round_slug, race_slug = derive_session_slugs(slugs)
        context = LiveRcRaceContext(
            event_slug=event_slug,
            class_slug=class_slug,
            round_slug=round_slug,
            race_slug=race_slug,
            results_base_url=f"{origin}/results",
            origin=origin,
        )
        if slots:
            self._import_session_laps(session_html, session, race_class, context, by_name, counts)

        fallback_index: dict[str, int] = defaultdict(int)
        # Result rows are keyed by (session, driver); the first row per driver wins.
        persisted_drivers: set[str] = set()
        for slot in slots:
            if not slot.matched:
                key = normalise_driver_name(slot.driver.display_name)
                fallback_index[key] += 1
                self.entrants.upsert_by_source(
                    EntrantUpsert(
                        event_id=event_id,
                        race_class_id=race_class.id,
                        session_id=session.id,
                        display_name=slot.driver.display_name,
                        source_entrant_id=f"summary:{key}:{fallback_index[key]}",
                        driver_id=slot.driver.id,
                        car_number=slot.row.car_number,
                    )
                )
            if slot.driver.id in persisted_drivers:
                continue
            persisted_drivers.add(slot.driver.id)
            self._upsert_result_row(session.id, slot)
            counts.result_rows_imported += 1

        return counts

    def _import_session_laps(
        self,
        session_html: str,
        session: Session,
        race_class: RaceClass,
        context: LiveRcRaceContext,
        by_name: NameMultiset[_RowSlot],
        counts: _SessionCounts,
    ) -> None:
        json_url = self.client.resolve_json_url_from_html(session_html) or append_json_suffix(
            session.source_url
        )
        try:
            result = map_race_result_response(self.client.fetch_json(json_url), context)
        except Exception as e:
            self.logger.warning(
                f"⚠️ Lap import failed for session {session.source_url}: {e}",
                extra={"event": "liverc.summary.laps_failed", "json_url": json_url},
            )
            return

        groups: dict[str, list[RaceResultLap]] = {}
        for lap in result.laps:
            entry_id = lap.entry_id.strip()
            if entry_id and lap.driver_name.strip():
                groups.setdefault(entry_id, []).append(lap)

        for entry_id, laps in groups.items():
            driver_name = laps[0].driver_name.strip()
            slot = by_name.take(driver_name)
            if slot is None:
                self.logger.warning(
                    f"⚠️ No summary row for '{driver_name}' (entry {entry_id}); "
                    f"skipping {len(laps)} lap(s)",
                    extra={"event": "liverc.summary.laps_missing_driver", "entry_id": entry_id},
                )
                counts.laps_skipped += len(laps)
                continue

            entrant = self.entrants.upsert_by_source(
                EntrantUpsert(
                    event_id=session.event_id,
                    race_class_id=race_class.id,
                    session_id=session.id,
                    display_name=slot.driver.display_name,
                    source_entrant_id=entry_id,
                    driver_id=slot.driver.id,
                    car_number=slot.row.car_number,
                )
            )

            lap_inputs: list[LapInput] = []
            for lap in laps:
                time_ms = lap.lap_time_seconds * 1000
                if not math.isfinite(time_ms) or round(time_ms) <= 0:
                    counts.laps_skipped += 1
                    continue
                lap_inputs.append(
                    LapInput(
                        id=build_lap_id(
                            result.event_id or session.event_id,
                            session.id,
                            result.race_id or session.source_session_id,
                            entry_id,
                            lap.lap_number,
                        ),
                        lap_number=lap.lap_number,
                        time_ms=round(time_ms),
                    )
                )
            lap_inputs.sort(key=lambda lap_input: lap_input.lap_number)

            self.laps.replace_for_entrant(entrant.id, session.id, lap_inputs)
            slot.matched = True
            slot.lap_count = len(lap_inputs)
            counts.laps_imported += len(lap_inputs)
            if lap_inputs:
                counts.drivers_with_laps += 1

    def _upsert_result_row(self, session_id: str, slot: _RowSlot) -> None:
        row = slot.row
        self.result_rows.upsert_by_session_and_driver(
            ResultRowUpsert(
                session_id=session_id,
                driver_id=slot.driver.id,
                position=row.position,
                car_number=row.car_number,
                laps_completed=slot.lap_count if slot.matched else row.laps,
                total_time_ms=row.total_time_ms,
                behind_ms=row.behind_ms,
                fastest_lap_ms=row.fastest_lap_ms,
                fastest_lap_num=row.fastest_lap_num,
                avg_lap_ms=row.avg_lap_ms,
                avg_top5_ms=row.avg_top5_ms,
                avg_top10_ms=row.avg_top10_ms,
                avg_top15_ms=row.avg_top15_ms,
                top3_consecutive_ms=row.top3_consecutive_ms,
                std_dev_ms=row.std_dev_ms,
                consistency_pct=row.consistency_pct,
            )
        )
