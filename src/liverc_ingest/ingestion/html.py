# src/liverc_ingest/ingestion/html.py
"""
HTML extractors for LiveRC event overview and session result pages.

Markup differs between club sub-sites, so every extractor maps table columns
by header text (or a cell's ``data-label`` / ``aria-label``) rather than by
position, and prefers machine-readable attributes over visible text.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Literal
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Tag

SessionType = Literal["QUAL", "MAIN"]

HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]

COMPLETED_AT_ATTRIBUTES = (
    "datetime",
    "data-datetime",
    "data-time",
    "data-utc",
    "data-timestamp",
    "data-value",
    "title",
)

# (key, substrings) checked in order; the first rule with any substring
# contained in the header wins.
SESSION_COLUMN_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("class", ("class",)),
    ("round", ("round",)),
    ("heat", ("heat",)),
    ("completed", ("time", "finish", "completed", "done")),
    ("title", ("race", "event", "title", "session")),
)

# (key, required substrings) checked in order; every substring must be in
# the header. More specific headers sit above the generic ones they contain.
RESULT_COLUMN_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("laps_time", ("laps", "/", "time")),
    ("top3_consecutive", ("top", "3", "consec")),
    ("avg_top15", ("top", "15")),
    ("avg_top10", ("top", "10")),
    ("avg_top5", ("top", "5")),
    ("fastest_lap_num", ("fast", "lap", "#")),
    ("fastest_lap", ("fast",)),
    ("std_dev", ("std",)),
    ("consistency", ("consist",)),
    ("avg_lap", ("avg",)),
    ("avg_lap", ("average",)),
    ("behind", ("behind",)),
    ("position", ("pos",)),
    ("position", ("place",)),
    ("driver", ("driver",)),
    ("driver", ("name",)),
    ("car_number", ("car",)),
    ("car_number", ("#",)),
    ("laps", ("laps",)),
    ("total_time", ("total",)),
    ("total_time", ("time",)),
)


@dataclass(frozen=True)
class LiveRcEventSessionSummary:
    """One session row from an event overview page."""

    session_ref: str
    title: str
    class_name: str
    type: SessionType
    round_label: str | None = None
    heat_label: str | None = None
    completed_at: str | None = None


@dataclass(frozen=True)
class LiveRcEventMetadata:
    event_slug: str
    canonical_url: str
    event_name: str


@dataclass(frozen=True)
class LiveRcSessionResultRow:
    driver_name: str
    position: int | None = None
    car_number: str | None = None
    laps: int | None = None
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
class LiveRcSessionResults:
    canonical_url: str | None
    session_name: str | None
    rows: list[LiveRcSessionResultRow] = field(default_factory=list)


# --- Text helpers ---


def normalise_text(value: str | None) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def normalise_driver_name(value: str) -> str:
    """NFKC-normalise, collapse whitespace and case-fold a driver name."""
    return normalise_text(unicodedata.normalize("NFKC", value)).casefold()


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def _text(node: Tag) -> str:
    return normalise_text(node.get_text(" "))


def _attr(node: Tag, name: str) -> str | None:
    value = node.get(name)
    if value is None:
        return None
    if isinstance(value, list):
        value = " ".join(value)
    return str(value)


# --- Timestamps ---


def _to_iso_utc(value: datetime) -> str:
    utc = value.astimezone(UTC)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


_ISO_WITH_ZONE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)\s*(Z|z|[+-]\d{2}:?\d{2})$"
)


def parse_iso_candidate(candidate: str | None) -> str | None:
    """
    Normalise a timestamp candidate to ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    Only values that pin down an instant are accepted: ISO-8601 with an
    explicit offset or ``Z``, RFC 2822 dates with a zone, or epoch seconds /
    milliseconds. Timezone-less text returns None.
    """
    value = (candidate or "").strip()
    if not value:
        return None

    if re.fullmatch(r"\d{10}|\d{13}", value):
        seconds = int(value) / (1000 if len(value) == 13 else 1)
        return _to_iso_utc(datetime.fromtimestamp(seconds, UTC))

    match = _ISO_WITH_ZONE.match(value)
    if match:
        date_part, time_part, zone = match.groups()
        zone = "+00:00" if zone in ("Z", "z") else zone
        if re.fullmatch(r"[+-]\d{4}", zone):
            zone = f"{zone[:3]}:{zone[3:]}"
        try:
            return _to_iso_utc(datetime.fromisoformat(f"{date_part}T{time_part}{zone}"))
        except ValueError:
            return None

    if re.search(r"[A-Za-z]{3},?\s+\d", value):
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is not None:
            return _to_iso_utc(parsed)

    return None


def _extract_completed_at(cell: Tag | None) -> str | None:
    if cell is None:
        return None

    candidates: list[str] = []
    for node in [cell, *cell.find_all(True)]:
        for name in COMPLETED_AT_ATTRIBUTES:
            value = _attr(node, name)
            if value:
                candidates.append(value)

    for candidate in candidates:
        parsed = parse_iso_candidate(candidate)
        if parsed:
            return parsed

    return parse_iso_candidate(_text(cell))


# --- Event overview ---


def _is_heading(node: Tag) -> bool:
    return node.name in HEADING_TAGS


def find_nearest_heading(element: Tag) -> Tag | None:
    """
    Walk backwards from ``element``: previous siblings first (or a heading
    nested inside one), then the same search from each ancestor.
    """
    current: Tag | None = element
    while current is not None:
        for sibling in current.find_previous_siblings():
            if not isinstance(sibling, Tag):
                continue
            if _is_heading(sibling):
                return sibling
            nested = sibling.find(HEADING_TAGS)
            if isinstance(nested, Tag):
                return nested
        parent = current.parent
        current = parent if isinstance(parent, Tag) else None
    return None


def _derive_section_meta(raw_heading: str) -> tuple[SessionType, str | None] | None:
    heading = normalise_text(raw_heading).lower()
    if not heading:
        return None
    if "main event" in heading:
        return ("MAIN", None)
    if "qualifier" in heading:
        match = re.search(r"round\s+([\w-]+)", raw_heading, re.I)
        return ("QUAL", f"Round {match.group(1)}" if match else None)
    return None


def _session_header_key(raw: str | None) -> str | None:
    value = normalise_text(raw).lower()
    if not value:
        return None
    for key, needles in SESSION_COLUMN_RULES:
        if any(needle in value for needle in needles):
            return key
    return value


def _result_header_key(raw: str | None) -> str | None:
    value = normalise_text(raw).lower()
    if not value:
        return None
    for key, needles in RESULT_COLUMN_RULES:
        if all(needle in value for needle in needles):
            return key
    return value


def _header_labels(table: Tag) -> list[str]:
    headers = table.select("thead tr th")
    if not headers:
        first_row = table.find("tr")
        headers = first_row.find_all("th") if isinstance(first_row, Tag) else []
    return [_text(header) for header in headers]


def _body_rows(table: Tag) -> list[Tag]:
    rows = table.select("tbody tr")
    if not rows:
        rows = [row for row in table.find_all("tr") if row.find("td")]
    return rows


def _is_data_row(row: Tag) -> bool:
    cells = row.find_all("td")
    if not cells:
        return False
    if len(cells) == 1:
        colspan = _attr(cells[0], "colspan") or ""
        if colspan.strip().isdigit() and int(colspan) > 1:
            return False
    return True


def _collect_cells(row: Tag, headers: list[str], key_fn) -> dict[str, Tag]:
    cells: dict[str, Tag] = {}
    for index, cell in enumerate(row.find_all("td")):
        label = _attr(cell, "data-label") or _attr(cell, "aria-label")
        if label is None:
            label = headers[index] if index < len(headers) else ""
        key = key_fn(label)
        if key and key not in cells:
            cells[key] = cell
    return cells


def enumerate_sessions_from_event_html(html: str) -> list[LiveRcEventSessionSummary]:
    """
    List the qualifier and main-event sessions on an event overview page.

    Tables are classified by their nearest preceding heading ("Main Events",
    "Qualifier Round 2", ...). Tables under any other heading are ignored.
    """
    soup = _soup(html)
    sessions: list[LiveRcEventSessionSummary] = []

    for table in soup.find_all("table"):
        heading = find_nearest_heading(table)
        if heading is None:
            continue
        meta = _derive_section_meta(heading.get_text(" "))
        if meta is None:
            continue
        session_type, section_round = meta

        headers = _header_labels(table)
        for row in _body_rows(table):
            if not _is_data_row(row):
                continue

            link = row.find("a", href=True)
            if not isinstance(link, Tag):
                continue
            session_ref = (_attr(link, "href") or "").strip()
            title = _text(link)
            if not session_ref or not title:
                continue

            cells = _collect_cells(row, headers, _session_header_key)
            class_cell = cells.get("class")
            class_name = _text(class_cell) if class_cell is not None else ""
            if not class_name:
                continue

            round_cell = cells.get("round")
            heat_cell = cells.get("heat")

            sessions.append(
                LiveRcEventSessionSummary(
                    session_ref=session_ref,
                    title=title,
                    class_name=class_name,
                    type=session_type,
                    round_label=(_text(round_cell) or None) if round_cell is not None else section_round,
                    heat_label=(_text(heat_cell) or None) if heat_cell is not None else None,
                    completed_at=_extract_completed_at(cells.get("completed")),
                )
            )

    return sessions


def _meta_content(soup: BeautifulSoup, prop: str) -> str | None:
    tag = soup.find("meta", attrs={"property": prop}) or soup.find("meta", attrs={"name": prop})
    if isinstance(tag, Tag):
        return normalise_text(_attr(tag, "content")) or None
    return None


def _canonical_link(soup: BeautifulSoup) -> str | None:
    for link in soup.find_all("link", href=True):
        rel = _attr(link, "rel") or ""
        if "canonical" in rel.lower().split():
            return (_attr(link, "href") or "").strip() or None
    return None


def _slug_from_url(url: str) -> str | None:
    segments = [s for s in urlsplit(url).path.split("/") if s]
    lowered = [s.lower() for s in segments]
    if "results" in lowered:
        index = lowered.index("results")
        if index + 1 < len(segments):
            return segments[index + 1]
    return segments[-1] if segments else None


def _slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower())
    return slug.strip("-")


def extract_event_metadata_from_html(html: str, event_url: str) -> LiveRcEventMetadata:
    """
    Pull the event slug, canonical URL and display name from an overview page.

    Args:
        html: Event overview HTML
        event_url: URL the page was fetched from (fallback for canonical URL)
    """
    soup = _soup(html)
    canonical_url = _canonical_link(soup) or _meta_content(soup, "og:url") or event_url

    name = None
    h1 = soup.find("h1")
    if isinstance(h1, Tag):
        name = _text(h1) or None
    if not name:
        name = _meta_content(soup, "og:title")
    if not name and soup.title is not None:
        name = re.sub(r"\s*[|-]\s*LiveRC.*$", "", _text(soup.title), flags=re.I) or None

    slug = _slug_from_url(canonical_url) or _slug_from_url(event_url) or _slugify(name or "")
    if not name:
        name = " ".join(part.capitalize() for part in re.split(r"[-_]+", slug) if part)

    return LiveRcEventMetadata(event_slug=slug, canonical_url=canonical_url, event_name=name)


# --- Session results ---


def parse_duration_ms(raw: str | None) -> int | None:
    """
    Parse "17.123", "5:08.123" or "1:02:03.4" into milliseconds.

    Values that carry no time ("-", "1 Lap") return None.
    """
    value = normalise_text(raw).lstrip("+")
    match = re.search(r"(?:(\d+):)?(?:(\d+):)?(\d+(?:\.\d+)?)", value)
    if not match or re.search(r"lap", value, re.I):
        return None

    first, second, seconds = match.groups()
    if first is not None and second is not None:
        hours, minutes = int(first), int(second)
    else:
        hours, minutes = 0, int(first or 0)
    total = hours * 3600 + minutes * 60 + float(seconds)
    return round(total * 1000)


def _parse_int(raw: str | None) -> int | None:
    match = re.search(r"-?\d+", normalise_text(raw))
    return int(match.group(0)) if match else None


def _parse_percent(raw: str | None) -> float | None:
    match = re.search(r"-?\d+(?:\.\d+)?", normalise_text(raw))
    return float(match.group(0)) if match else None


def _driver_name(cell: Tag) -> str:
    for selector in (".driver_name", ".driver-name", "a"):
        node = cell.select_one(selector)
        if isinstance(node, Tag) and _text(node):
            return _text(node)
    return _text(cell)


def _find_results_table(soup: BeautifulSoup) -> tuple[Tag, list[str]] | None:
    for table in soup.find_all("table"):
        headers = _header_labels(table)
        keys = {_result_header_key(h) for h in headers}
        if "driver" in keys:
            return table, headers
        rows = _body_rows(table)
        if rows and any(
            _result_header_key(_attr(td, "data-label")) == "driver" for td in rows[0].find_all("td")
        ):
            return table, headers
    return None


def _build_result_row(cells: dict[str, Tag]) -> LiveRcSessionResultRow | None:
    driver_cell = cells.get("driver")
    if driver_cell is None:
        return None
    driver_name = _driver_name(driver_cell)
    if not driver_name:
        return None

    def text(key: str) -> str | None:
        cell = cells.get(key)
        return _text(cell) if cell is not None else None

    laps = _parse_int(text("laps"))
    total_time_ms = parse_duration_ms(text("total_time"))
    combined = text("laps_time")
    if combined:
        laps_part, _, time_part = combined.partition("/")
        laps = laps if laps is not None else _parse_int(laps_part)
        total_time_ms = total_time_ms if total_time_ms is not None else parse_duration_ms(time_part)

    fastest_raw = text("fastest_lap")
    fastest_lap_num = _parse_int(text("fastest_lap_num"))
    if fastest_raw and fastest_lap_num is None:
        in_parens = re.search(r"\((?:lap\s*)?(\d+)\)", fastest_raw, re.I)
        fastest_lap_num = int(in_parens.group(1)) if in_parens else None
        fastest_raw = re.sub(r"\(.*?\)", "", fastest_raw)

    car_number = text("car_number") or None

    return LiveRcSessionResultRow(
        driver_name=driver_name,
        position=_parse_int(text("position")),
        car_number=car_number,
        laps=laps,
        total_time_ms=total_time_ms,
        behind_ms=parse_duration_ms(text("behind")),
        fastest_lap_ms=parse_duration_ms(fastest_raw),
        fastest_lap_num=fastest_lap_num,
        avg_lap_ms=parse_duration_ms(text("avg_lap")),
        avg_top5_ms=parse_duration_ms(text("avg_top5")),
        avg_top10_ms=parse_duration_ms(text("avg_top10")),
        avg_top15_ms=parse_duration_ms(text("avg_top15")),
        top3_consecutive_ms=parse_duration_ms(text("top3_consecutive")),
        std_dev_ms=parse_duration_ms(text("std_dev")),
        consistency_pct=_parse_percent(text("consistency")),
    )


def parse_session_results_from_html(
    html: str, session_url: str | None = None
) -> LiveRcSessionResults:
    """
    Read the per-driver result rows from a session page.

    The results table is the first table with a driver column. Rows without
    a driver name are skipped.
    """
    soup = _soup(html)
    canonical_url = _canonical_link(soup) or _meta_content(soup, "og:url") or session_url

    session_name = None
    for tag_name in ("h1", "h2", "h3"):
        heading = soup.find(tag_name)
        if isinstance(heading, Tag) and _text(heading):
            session_name = _text(heading)
            break
    if session_name is None and soup.title is not None:
        session_name = _text(soup.title) or None

    found = _find_results_table(soup)
    if found is None:
        return LiveRcSessionResults(canonical_url=canonical_url, session_name=session_name)

    table, headers = found
    rows = []
    for row in _body_rows(table):
        if not _is_data_row(row):
            continue
        result = _build_result_row(_collect_cells(row, headers, _result_header_key))
        if result is not None:
            rows.append(result)

    return LiveRcSessionResults(canonical_url=canonical_url, session_name=session_name, rows=rows)
