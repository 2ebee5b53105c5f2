# src/liverc_ingest/services/clubs.py
"""
LiveRC club catalogue: sync from the root track directory and name search.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from ..domain import Club, ClubUpsert
from ..ingestion.http_client import LiveRcClient
from ..ports import ClubRepository

logger = logging.getLogger(__name__)

LIVERC_HOST_SUFFIX = ".liverc.com"
MIN_QUERY_LENGTH = 2
MAX_SEARCH_LIMIT = 25


@dataclass(frozen=True)
class ParsedClub:
    liverc_subdomain: str
    display_name: str
    country: str | None = None
    region: str | None = None


def _clean(value: object) -> str | None:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def extract_subdomain_from_href(href: str | None) -> str | None:
    """
    ``https://mytrack.liverc.com/`` -> ``mytrack``.

    Nested subdomains are kept whole; hosts outside liverc.com give None.
    """
    if not href:
        return None
    host = (urlsplit(urljoin("https://live.liverc.com/", href)).hostname or "").lower()
    if not host.endswith(LIVERC_HOST_SUFFIX):
        return None
    return host[: -len(LIVERC_HOST_SUFFIX)] or None


def _location_attribute(row: Tag, attribute: str) -> str | None:
    direct = _clean(row.get(attribute))
    if direct:
        return direct
    location = row.select_one("[data-track-location]")
    if location is None:
        return None
    own = _clean(location.get(attribute))
    if own:
        return own
    nested = location.select_one(f"[{attribute}]")
    return _clean(nested.get(attribute)) if nested is not None else None


def parse_clubs_from_html(html: str) -> list[ParsedClub]:
    """Read ``[data-track-row]`` rows; later duplicates of a subdomain win."""
    soup = BeautifulSoup(html, "html.parser")
    clubs: dict[str, ParsedClub] = {}

    for row in soup.select("[data-track-row]"):
        link = row.select_one("a[data-track-link]") or row.select_one("a.track-link") or row.select_one("a")
        if link is None:
            continue
        href = link.get("href")
        subdomain = extract_subdomain_from_href(str(href) if href else None)
        display_name = _clean(link.get_text(" "))
        if not subdomain or not display_name:
            continue

        clubs[subdomain] = ParsedClub(
            liverc_subdomain=subdomain,
            display_name=display_name,
            country=_location_attribute(row, "data-country"),
            region=_location_attribute(row, "data-region"),
        )

    return list(clubs.values())


class ClubCatalogueService:
    """Keeps the local club table in step with LiveRC's track directory."""

    def __init__(
        self,
        client: LiveRcClient,
        repository: ClubRepository,
        clock: Callable[[], datetime] | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.repository = repository
        self.clock = clock or (lambda: datetime.now(UTC))
        self.logger = log or logger

    def sync_catalogue(self) -> dict[str, int]:
        """
        Upsert every listed club and deactivate the ones no longer listed.

        Returns:
            ``{"upserted": n, "deactivated": m}``
        """
        started = time.perf_counter()
        self.logger.info("🚀 Starting LiveRC club catalogue sync", extra={"event": "liverc.clubs.sync.start"})

        clubs = parse_clubs_from_html(self.client.get_root_track_list())
        seen_at = self.clock()
        for club in clubs:
            self.repository.upsert_by_liverc_subdomain(
                ClubUpsert(
                    liverc_subdomain=club.liverc_subdomain,
                    display_name=club.display_name,
                    country=club.country,
                    region=club.region,
                    seen_at=seen_at,
                )
            )

        deactivated = self.repository.mark_inactive_clubs_not_in_subdomains(
            [club.liverc_subdomain for club in clubs]
        )
        self.logger.info(
            f"✅ Club catalogue synced: {len(clubs)} upserted, {deactivated} deactivated "
            f"in {time.perf_counter() - started:.2f}s",
            extra={"event": "liverc.clubs.sync.complete"},
        )
        return {"upserted": len(clubs), "deactivated": deactivated}


class ClubSearchService:
    def __init__(self, repository: ClubRepository) -> None:
        self.repository = repository

    def search(self, query: str, limit: int = 10) -> list[Club]:
        """Active clubs whose name contains ``query`` (at least 2 characters)."""
        trimmed = query.strip()
        if len(trimmed) < MIN_QUERY_LENGTH:
            return []
        return self.repository.search_by_display_name(trimmed, max(1, min(limit, MAX_SEARCH_LIMIT)))
