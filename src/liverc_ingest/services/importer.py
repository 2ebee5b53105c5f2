# src/liverc_ingest/services/importer.py
"""
Single race import, from a LiveRC JSON results URL or an uploaded payload.

The entry list is authoritative: laps are only kept for entrants it lists
and who have not withdrawn. Everyone else in the session ends the import
with an empty lap set, so scratched drivers cannot linger in the results.
"""

import logging
import math
import re
import time
import unicodedata
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any
from urllib.parse import quote

from ..domain import (
    Entrant,
    EntrantUpsert,
    Event,
    EventUpsert,
    LapInput,
    RaceClass,
    RaceClassUpsert,
    Session,
    SessionUpsert,
)
from ..exceptions import LiveRcImportError
from ..ingestion.http_client import LiveRcClient
from ..ingestion.schemas import (
    EntryListEntry,
    EntryListResponse,
    LiveRcRaceContext,
    RaceResultLap,
    RaceResultResponse,
    parse_race_result_payload,
)
from ..ingestion.url_parser import (
    LiveRcHtmlUrl,
    LiveRcInvalidUrl,
    LiveRcUrlInvalidReason,
    parse_liverc_url,
)
from ..lap_id import build_lap_id
from ..ports import (
    EntrantRepository,
    EventRepository,
    LapRepository,
    RaceClassRepository,
    SessionRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_RESULTS_BASE_URL = "https://liverc.com/results"

INVALID_REASON_CODES: dict[LiveRcUrlInvalidReason, str] = {
    LiveRcUrlInvalidReason.INVALID_ABSOLUTE_URL: "INVALID_URL",
    LiveRcUrlInvalidReason.EXTRA_SEGMENTS: "INVALID_URL",
    LiveRcUrlInvalidReason.EMPTY_SEGMENT: "INVALID_URL",
    LiveRcUrlInvalidReason.EMPTY_SLUG: "INVALID_URL",
    LiveRcUrlInvalidReason.INVALID_RESULTS_PATH: "UNSUPPORTED_URL",
    LiveRcUrlInvalidReason.INCOMPLETE_RESULTS_SEGMENTS: "INCOMPLETE_URL",
}


@dataclass(frozen=True)
class LiveRcImportSummary:
    event_id: str
    event_name: str
    race_class_id: str
    race_class_name: str
    session_id: str
    session_name: str
    race_id: str
    round_id: str
    entrants_processed: int
    laps_imported: int
    skipped_lap_count: int
    skipped_entrant_count: int
    skipped_outlap_count: int
    source_url: str
    include_outlaps: bool


def _normalise_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def title_from_slug(slug: str) -> str:
    """``"summer-series"`` -> ``"Summer Series"``."""
    return _normalise_whitespace(
        " ".join(part[:1].upper() + part[1:] for part in re.split(r"[/-]+", slug) if part)
    )


def _results_base(value: str | None) -> str:
    if not value or not value.strip():
        return DEFAULT_RESULTS_BASE_URL
    return value.rstrip("/")


def build_results_url(base: str | None, segments: list[str]) -> str:
    return f"{_results_base(base)}/{'/'.join(quote(s, safe='') for s in segments)}"


def parse_start_time(value: str | None) -> datetime | None:
    """
    Parse a start time only when it carries an explicit timezone.

    ``"2024-05-12 10:15:00+1000"`` is accepted; ``"2024-05-12 10:15"`` is not.
    """
    if not value or not value.strip():
        return None
    compact = re.sub(r"\s+", "", value)
    if not re.search(r"(Z|[+-]\d{2}:?\d{2})$", compact, re.I):
        return None

    normalised = value.strip()
    if "T" not in normalised and " " in normalised:
        normalised = normalised.replace(" ", "T", 1)
    normalised = re.sub(r"([+-])(\d{2})(\d{2})$", r"\1\2:\3", normalised)
    normalised = re.sub(r"[Zz]$", "+00:00", normalised)
    try:
        return datetime.fromisoformat(normalised)
    except ValueError:
        return None


def _race_context_from_url(url: str) -> LiveRcRaceContext:
    parsed = parse_liverc_url(url)
    if isinstance(parsed, LiveRcHtmlUrl):
        raise LiveRcImportError(
            "LiveRC HTML results URLs are not supported. Please use the JSON results link.",
            status=400,
            code="UNSUPPORTED_URL",
            details={"url": url, "detected_type": "html"},
        )
    if isinstance(parsed, LiveRcInvalidUrl):
        raise LiveRcImportError(
            parsed.reason.message,
            status=400,
            code=INVALID_REASON_CODES.get(parsed.reason, "INVALID_URL"),
            details={"url": url, "reason": parsed.reason.value},
        )

    event_slug, class_slug, round_slug, race_slug = parsed.slugs
    return LiveRcRaceContext(
        event_slug=event_slug,
        class_slug=class_slug,
        round_slug=round_slug,
        race_slug=race_slug,
        results_base_url=parsed.results_base_url,
        origin=parsed.origin,
    )


class LiveRcImportService:
    """Imports one race and reconciles its entrants against the entry list."""

    def __init__(
        self,
        client: LiveRcClient,
        events: EventRepository,
        race_classes: RaceClassRepository,
        sessions: SessionRepository,
        entrants: EntrantRepository,
        laps: LapRepository,
        log: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.events = events
        self.race_classes = race_classes
        self.sessions = sessions
        self.entrants = entrants
        self.laps = laps
        self.logger = log or logger

    def import_from_url(self, url: str, include_outlaps: bool = False) -> LiveRcImportSummary:
        """
        Import the race behind a JSON results URL.

        Args:
            url: ``https://<club>.liverc.com/results/<event>/<class>/<round>/<race>[.json]``
            include_outlaps: Keep laps flagged as outlaps

        Raises:
            LiveRcImportError: INVALID_URL, INCOMPLETE_URL or UNSUPPORTED_URL (400)
            LiveRcClientError: When a payload cannot be fetched
        """
        context = _race_context_from_url(url)
        results_base = _results_base(context.results_base_url)
        context = replace(context, results_base_url=results_base)

        self.logger.info(f"🚀 Importing LiveRC race {url}")
        with ThreadPoolExecutor(max_workers=2) as executor:
            entry_list_future = executor.submit(
                self.client.fetch_entry_list, results_base, context.event_slug, context.class_slug
            )
            race_result_future = executor.submit(self.client.fetch_race_result, context)
            entry_list = entry_list_future.result()
            race_result = race_result_future.result()

        return self._execute_import(entry_list, race_result, context, url, include_outlaps)

    def import_from_payload(
        self, payload: Any, namespace_seed: str | None = None, include_outlaps: bool = False
    ) -> LiveRcImportSummary:
        """
        Import an uploaded race-result payload.

        The entry list is rebuilt from the payload's laps, so every driver
        with laps counts as entered.

        Raises:
            LiveRcImportError: INVALID_RACE_RESULT_PAYLOAD (422) when ids or laps are missing
        """
        parsed = parse_race_result_payload(payload, namespace_seed)
        if parsed.missing_identifiers or not parsed.has_lap_data:
            raise LiveRcImportError(
                "LiveRC race result payload is missing required fields.",
                status=422,
                code="INVALID_RACE_RESULT_PAYLOAD",
                details={
                    "missing_identifiers": parsed.missing_identifiers,
                    "has_lap_data": parsed.has_lap_data,
                },
            )

        entry_list = self._entry_list_from_race_result(parsed.race_result)
        context = parsed.context
        source_url = "uploaded-file://" + "/".join(
            quote(s, safe="")
            for s in (context.event_slug, context.class_slug, context.round_slug, context.race_slug)
        )
        return self._execute_import(
            entry_list, parsed.race_result, context, source_url, include_outlaps
        )

    def _execute_import(
        self,
        entry_list: EntryListResponse,
        race_result: RaceResultResponse,
        context: LiveRcRaceContext,
        source_url: str,
        include_outlaps: bool,
    ) -> LiveRcImportSummary:
        started = time.perf_counter()
        event = self._persist_event(entry_list, race_result, context)
        race_class = self._persist_race_class(event.id, entry_list, race_result, context)
        session = self._persist_session(event.id, race_class.id, race_result, context, source_url)

        entries = {entry.entry_id: entry for entry in entry_list.entries}
        laps_by_entry, skipped_laps, skipped_outlaps = self._group_laps(race_result, include_outlaps)

        entrants_processed = 0
        laps_imported = 0
        skipped_entrants = 0

        for entry_id, laps in laps_by_entry.items():
            entry = entries.get(entry_id)
            if entry is None or entry.withdrawn:
                skipped_entrants += 1
                skipped_laps += len(laps)
                reason = "withdrawn" if entry is not None else "not in entry list"
                self.logger.info(
                    f"ℹ️ Skipping {len(laps)} lap(s) for entry {entry_id} ({reason})",
                    extra={"event": "liverc.import.skipped_entry", "entry_id": entry_id},
                )
                self._clear_laps(event, race_class, session, entry_id)
                continue

            entrant = self._persist_entrant(event.id, race_class.id, session.id, entry)
            lap_inputs = [
                LapInput(
                    id=build_lap_id(
                        race_result.event_id,
                        session.source_session_id,
                        race_result.race_id,
                        lap.entry_id,
                        lap.lap_number,
                    ),
                    lap_number=lap.lap_number,
                    time_ms=round(lap.lap_time_seconds * 1000),
                )
                for lap in laps
            ]
            lap_inputs.sort(key=lambda lap_input: lap_input.lap_number)
            self.laps.replace_for_entrant(entrant.id, session.id, lap_inputs)

            if lap_inputs:
                entrants_processed += 1
                laps_imported += len(lap_inputs)

        # Withdrawn entries without laps in this payload still lose any laps stored earlier.
        for entry in entry_list.entries:
            if entry.withdrawn and entry.entry_id not in laps_by_entry:
                self._clear_laps(event, race_class, session, entry.entry_id)

        active_ids = {entry.entry_id for entry in entry_list.entries if not entry.withdrawn}
        for stale in self.entrants.list_by_session(session.id):
            if stale.source_entrant_id not in active_ids:
                self.laps.replace_for_entrant(stale.id, session.id, [])

        summary = LiveRcImportSummary(
            event_id=event.id,
            event_name=event.name,
            race_class_id=race_class.id,
            race_class_name=race_class.name,
            session_id=session.id,
            session_name=session.name,
            race_id=race_result.race_id,
            round_id=race_result.round_id or context.round_slug,
            entrants_processed=entrants_processed,
            laps_imported=laps_imported,
            skipped_lap_count=skipped_laps,
            skipped_entrant_count=skipped_entrants,
            skipped_outlap_count=skipped_outlaps,
            source_url=source_url,
            include_outlaps=include_outlaps,
        )
        self.logger.info(
            f"✅ Imported {laps_imported} lap(s) for {entrants_processed} entrant(s) "
            f"in {(time.perf_counter() - started) * 1000:.0f}ms "
            f"(skipped: {skipped_laps} laps, {skipped_entrants} entrants, {skipped_outlaps} outlaps)",
            extra={"event": "liverc.import.completed", "session_id": session.id},
        )
        return summary

    def _clear_laps(self, event: Event, race_class: RaceClass, session: Session, entry_id: str) -> None:
        existing = self.entrants.find_by_source_entrant_id(
            event.id, race_class.id, session.id, entry_id
        )
        if existing is not None:
            self.laps.replace_for_entrant(existing.id, session.id, [])

    def _persist_event(
        self, entry_list: EntryListResponse, race_result: RaceResultResponse, context: LiveRcRaceContext
    ) -> Event:
        name = race_result.event_name or entry_list.event_name or title_from_slug(context.event_slug)
        return self.events.upsert_by_source(
            EventUpsert(
                source_event_id=race_result.event_id or entry_list.event_id or context.event_slug,
                source_url=build_results_url(context.results_base_url, [context.event_slug]),
                name=_normalise_whitespace(name) or title_from_slug(context.event_slug),
            )
        )

    def _persist_race_class(
        self,
        event_id: str,
        entry_list: EntryListResponse,
        race_result: RaceResultResponse,
        context: LiveRcRaceContext,
    ) -> RaceClass:
        code = entry_list.class_code or race_result.class_code or context.class_slug
        return self.race_classes.upsert_by_source(
            RaceClassUpsert(
                event_id=event_id,
                class_code=_normalise_whitespace(code.upper()),
                source_url=build_results_url(
                    context.results_base_url, [context.event_slug, context.class_slug]
                ),
                name=race_result.class_name
                or entry_list.class_name
                or title_from_slug(context.class_slug),
            )
        )

    def _persist_session(
        self,
        event_id: str,
        race_class_id: str,
        race_result: RaceResultResponse,
        context: LiveRcRaceContext,
        source_url: str,
    ) -> Session:
        segments = [
            race_result.event_id or context.event_slug,
            race_result.class_id or race_result.class_code or context.class_slug,
            race_result.round_id or context.round_slug,
            race_result.race_id or context.race_slug,
        ]
        source_session_id = ":".join(s for s in segments if s) or source_url
        return self.sessions.upsert_by_source(
            SessionUpsert(
                event_id=event_id,
                race_class_id=race_class_id,
                source_session_id=source_session_id,
                source_url=source_url,
                name=race_result.race_name or title_from_slug(context.race_slug),
                scheduled_start=parse_start_time(race_result.start_time_utc),
            )
        )

    def _persist_entrant(
        self, event_id: str, race_class_id: str, session_id: str, entry: EntryListEntry
    ) -> Entrant:
        return self.entrants.upsert_by_source(
            EntrantUpsert(
                event_id=event_id,
                race_class_id=race_class_id,
                session_id=session_id,
                display_name=_normalise_whitespace(unicodedata.normalize("NFC", entry.display_name)),
                source_entrant_id=entry.entry_id,
                car_number=entry.car_number,
                source_transponder_id=entry.source_transponder_id,
            )
        )

    @staticmethod
    def _group_laps(
        race_result: RaceResultResponse, include_outlaps: bool
    ) -> tuple[dict[str, list[RaceResultLap]], int, int]:
        """Group laps by entry id, dropping outlaps (unless included) and zero-millisecond times."""
        laps_by_entry: dict[str, list[RaceResultLap]] = {}
        skipped = 0
        skipped_outlaps = 0
        for lap in race_result.laps:
            if not include_outlaps and lap.is_outlap:
                skipped_outlaps += 1
                continue
            if not math.isfinite(lap.lap_time_seconds) or round(lap.lap_time_seconds * 1000) <= 0:
                skipped += 1
                continue
            laps_by_entry.setdefault(lap.entry_id, []).append(lap)
        return laps_by_entry, skipped, skipped_outlaps

    @staticmethod
    def _entry_list_from_race_result(race_result: RaceResultResponse) -> EntryListResponse:
        entries: dict[str, EntryListEntry] = {}
        for lap in race_result.laps:
            if lap.entry_id not in entries:
                entries[lap.entry_id] = EntryListEntry(entry_id=lap.entry_id, display_name=lap.driver_name)
        return EntryListResponse(
            event_id=race_result.event_id,
            event_name=race_result.event_name,
            class_id=race_result.class_id,
            class_name=race_result.class_name,
            class_code=race_result.class_code,
            entries=list(entries.values()),
        )
