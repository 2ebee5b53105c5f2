# src/liverc_ingest/services/discovery.py
"""
Club-based event discovery.

A club is resolved to its LiveRC subdomain and its ``/events/`` listing is
fetched once; event links and dates are read from the listing and filtered
to the requested (inclusive, UTC) date window.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, date
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag
from dateutil import parser as date_parser

from ..exceptions import LiveRcClientError, LiveRcDiscoveryError
from ..ingestion.html import normalise_text
from ..ingestion.http_client import LiveRcClient
from ..ports import ClubRepository

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 40
MAX_LIMIT = 100


@dataclass(frozen=True)
class LiveRcDiscoveryEvent:
    event_ref: str
    title: str
    when_iso: str  # YYYY-MM-DD


@dataclass(frozen=True)
class LiveRcDiscoveryResult:
    club_base_origin: str
    events: list[LiveRcDiscoveryEvent] = field(default_factory=list)


def clamp_limit(limit: int | None, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    if limit is None:
        return default
    return max(1, min(maximum, int(limit)))


def parse_date_only(value: str) -> date | None:
    """Parse a strict ``YYYY-MM-DD`` date."""
    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def parse_event_date(raw: str) -> date | None:
    """Best-effort date from listing text such as ``2024-05-12`` or ``May 12, 2024``."""
    cleaned = normalise_text(raw)
    if not cleaned:
        return None
    strict = parse_date_only(cleaned)
    if strict is not None:
        return strict
    try:
        parsed = date_parser.parse(cleaned, fuzzy=False)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC)
    return parsed.date()


def build_club_base_origin(liverc_subdomain: str) -> str:
    trimmed = liverc_subdomain.strip()
    if not trimmed:
        return "https://liverc.com"
    host = re.sub(r"^https?://", "", trimmed, flags=re.I).rstrip("/")
    if not re.search(r"\.liverc\.com$", host, re.I):
        host = f"{host}.liverc.com"
    return f"https://{host}"


def normalise_event_ref(href: str, base_origin: str) -> str | None:
    """Absolute event URL with query, fragment and trailing slashes removed."""
    absolute = urljoin(base_origin.rstrip("/") + "/", href.strip())
    parts = urlsplit(absolute)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}{parts.path.rstrip('/')}"


def _extract_date_text(node: Tag) -> str:
    cell = (
        node.select_one(".event-date")
        or node.select_one("time")
        or node.select_one("td[data-date]")
        or node.select_one("td")
    )
    if cell is None:
        return ""
    attr = cell.get("data-date")
    if attr:
        return str(attr)
    return normalise_text(cell.get_text(" "))


def _parse_event(node: Tag, anchor: Tag, base_origin: str) -> LiveRcDiscoveryEvent | None:
    href = anchor.get("href")
    title = normalise_text(anchor.get_text(" "))
    date_text = _extract_date_text(node)
    if not href or not title or not date_text:
        return None

    event_ref = normalise_event_ref(str(href), base_origin)
    when = parse_event_date(date_text)
    if event_ref is None or when is None:
        return None
    return LiveRcDiscoveryEvent(event_ref=event_ref, title=title, when_iso=when.isoformat())


def parse_club_events_from_html(html: str, base_origin: str) -> list[LiveRcDiscoveryEvent]:
    """
    Read events from a club listing.

    Rows of ``table.events`` are preferred; when none yield an event, every
    link is tried with its parent element as the row.
    """
    soup = BeautifulSoup(html, "html.parser")
    events: list[LiveRcDiscoveryEvent] = []

    for row in soup.select("table.events tr"):
        anchor = row.select_one("a[href]")
        if anchor is None:
            continue
        event = _parse_event(row, anchor, base_origin)
        if event is not None:
            events.append(event)

    if not events:
        for anchor in soup.select("a[href]"):
            if not isinstance(anchor.parent, Tag):
                continue
            event = _parse_event(anchor.parent, anchor, base_origin)
            if event is not None:
                events.append(event)

    return events


class LiveRcDiscoveryService:
    """Lists a club's events within a date window."""

    def __init__(
        self,
        client: LiveRcClient,
        clubs: ClubRepository,
        log: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.clubs = clubs
        self.logger = log or logger

    def discover_by_club_and_date_range(
        self, club_id: str, start_date: str, end_date: str, limit: int | None = DEFAULT_LIMIT
    ) -> LiveRcDiscoveryResult:
        """
        Discover events for a club.

        Args:
            club_id: Local club id
            start_date: Inclusive start, ``YYYY-MM-DD``
            end_date: Inclusive end, ``YYYY-MM-DD``
            limit: Maximum events to return, clamped to 1..100

        Returns:
            Events sorted by date then title, plus the club's base origin

        Raises:
            LiveRcDiscoveryError: Invalid date range or unknown club
            LiveRcClientError: Listing fetch failures other than 404
        """
        bounded = clamp_limit(limit)
        start = parse_date_only(start_date)
        end = parse_date_only(end_date)
        if start is None or end is None or end < start:
            raise LiveRcDiscoveryError("Invalid date range provided to LiveRC discovery.")

        club = self.clubs.find_by_id(club_id)
        if club is None:
            self.logger.warning(
                f"⚠️ Club {club_id} not found for discovery",
                extra={"event": "liverc.discovery.club_not_found", "club_id": club_id},
            )
            raise LiveRcDiscoveryError("Club not found for LiveRC discovery.")

        base_origin = build_club_base_origin(club.liverc_subdomain)
        try:
            html = self.client.get_club_events_page(club.liverc_subdomain)
        except LiveRcClientError as e:
            if e.status == 404:
                self.logger.info(
                    f"ℹ️ No events page for {club.liverc_subdomain} (404); treating as empty",
                    extra={"event": "liverc.discovery.club_events_not_found", "club_id": club_id},
                )
                return LiveRcDiscoveryResult(club_base_origin=base_origin)
            self.logger.error(
                f"❌ Failed to fetch events page for {club.liverc_subdomain}: {e}",
                extra={"event": "liverc.discovery.fetch_failed", "club_id": club_id},
            )
            raise

        events = [
            event
            for event in parse_club_events_from_html(html, base_origin)
            if start.isoformat() <= event.when_iso <= end.isoformat()
        ]
        events.sort(key=lambda event: (event.when_iso, event.title))
        events = events[:bounded]

        self.logger.debug(
            f"Discovered {len(events)} event(s) for {club.liverc_subdomain}",
            extra={"event": "liverc.discovery.parsed", "club_id": club_id},
        )
        return LiveRcDiscoveryResult(club_base_origin=base_origin, events=events)
