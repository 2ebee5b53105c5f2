# src/liverc_ingest/services/events.py
"""Free-text event search within a single club."""

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime

from dateutil.relativedelta import relativedelta

from ..ports import ClubRepository
from .discovery import LiveRcDiscoveryService

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 2
MAX_SEARCH_LIMIT = 25
DISCOVERY_LIMIT = 100
DEFAULT_WINDOW = relativedelta(months=6)


@dataclass(frozen=True)
class EventSearchResult:
    event_ref: str
    title: str
    when_iso: str
    club_id: str
    club_subdomain: str


def default_date_range(today: date | None = None) -> tuple[str, str]:
    """Six months either side of today (UTC)."""
    anchor = today or datetime.now(UTC).date()
    return (anchor - DEFAULT_WINDOW).isoformat(), (anchor + DEFAULT_WINDOW).isoformat()


class EventSearchService:
    def __init__(
        self,
        discovery: LiveRcDiscoveryService,
        clubs: ClubRepository,
        log: logging.Logger | None = None,
    ) -> None:
        self.discovery = discovery
        self.clubs = clubs
        self.logger = log or logger

    def search_events(
        self,
        club_id: str,
        query: str,
        start_date: str | None = None,
        end_date: str | None = None,
        limit: int = 10,
    ) -> list[EventSearchResult]:
        """
        Club events whose title contains ``query``, most recent first.

        Args:
            club_id: Local club id
            query: Case-insensitive title fragment, at least 2 characters
            start_date: ``YYYY-MM-DD``; both bounds default to today ± 6 months
            end_date: ``YYYY-MM-DD``
            limit: Clamped to 1..25

        Raises:
            LiveRcDiscoveryError: Invalid explicit date range
        """
        needle = query.strip().lower()
        if len(needle) < MIN_QUERY_LENGTH:
            return []

        bounded = max(1, min(limit, MAX_SEARCH_LIMIT))
        if not (start_date and end_date):
            start_date, end_date = default_date_range()

        club = self.clubs.find_by_id(club_id)
        if club is None:
            self.logger.warning(
                f"⚠️ Club {club_id} not found for event search",
                extra={"event": "liverc.events.search.club_not_found", "club_id": club_id},
            )
            return []

        discovered = self.discovery.discover_by_club_and_date_range(
            club_id, start_date, end_date, limit=DISCOVERY_LIMIT
        )
        matches = [event for event in discovered.events if needle in event.title.lower()]
        matches.sort(key=lambda event: event.when_iso, reverse=True)

        results = [
            EventSearchResult(
                event_ref=event.event_ref,
                title=event.title,
                when_iso=event.when_iso,
                club_id=club_id,
                club_subdomain=club.liverc_subdomain,
            )
            for event in matches[:bounded]
        ]
        self.logger.debug(f"Event search '{needle}' for club {club_id}: {len(results)} result(s)")
        return results
