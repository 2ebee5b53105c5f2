# src/liverc_ingest/ingestion/url_parser.py
"""
LiveRC results URL parser.

Turns a user supplied results URL into one of three shapes:

- LiveRcJsonUrl: a ``/results/<event>/<class>/<round>/<race>[.json]`` URL with
  its canonical JSON path.
- LiveRcHtmlUrl: the legacy ``?p=view_race_result&id=...`` page.
- LiveRcInvalidUrl: anything else, tagged with a LiveRcUrlInvalidReason.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Literal
from urllib.parse import parse_qs, unquote, urlsplit

_MALFORMED_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_JSON_SUFFIX = re.compile(r"\.json$", re.IGNORECASE)


class LiveRcUrlInvalidReason(str, Enum):
    INVALID_ABSOLUTE_URL = "INVALID_ABSOLUTE_URL"
    INVALID_RESULTS_PATH = "INVALID_RESULTS_PATH"
    INCOMPLETE_RESULTS_SEGMENTS = "INCOMPLETE_RESULTS_SEGMENTS"
    EXTRA_SEGMENTS = "EXTRA_SEGMENTS"
    EMPTY_SEGMENT = "EMPTY_SEGMENT"
    EMPTY_SLUG = "EMPTY_SLUG"

    @property
    def message(self) -> str:
        return _REASON_MESSAGES[self]


_REASON_MESSAGES: dict[LiveRcUrlInvalidReason, str] = {
    LiveRcUrlInvalidReason.INVALID_ABSOLUTE_URL: "LiveRC import requires an absolute URL.",
    LiveRcUrlInvalidReason.INVALID_RESULTS_PATH: (
        "LiveRC URL must point to a JSON results endpoint under /results/."
    ),
    LiveRcUrlInvalidReason.INCOMPLETE_RESULTS_SEGMENTS: (
        "LiveRC results URL must include event, class, round, and race segments."
    ),
    LiveRcUrlInvalidReason.EXTRA_SEGMENTS: (
        "LiveRC results URL must not include extra path segments after the race slug."
    ),
    LiveRcUrlInvalidReason.EMPTY_SEGMENT: (
        "LiveRC results URL must not include empty path segments."
    ),
    LiveRcUrlInvalidReason.EMPTY_SLUG: (
        "LiveRC results URL contains a segment that resolves to an empty slug."
    ),
}


@dataclass(frozen=True)
class LiveRcJsonUrl:
    slugs: tuple[str, str, str, str]
    canonical_json_path: str
    origin: str
    results_base_url: str
    type: Literal["json"] = "json"


@dataclass(frozen=True)
class LiveRcHtmlUrl:
    type: Literal["html"] = "html"


@dataclass(frozen=True)
class LiveRcInvalidUrl:
    reason: LiveRcUrlInvalidReason
    type: Literal["invalid"] = "invalid"


LiveRcUrlParseResult = LiveRcJsonUrl | LiveRcHtmlUrl | LiveRcInvalidUrl


class _SegmentError(ValueError):
    def __init__(self, reason: LiveRcUrlInvalidReason) -> None:
        super().__init__(reason.value)
        self.reason = reason


def _normalise_segment(segment: str, is_race_segment: bool) -> str:
    if _MALFORMED_ESCAPE.search(segment):
        raise _SegmentError(LiveRcUrlInvalidReason.INVALID_ABSOLUTE_URL)
    try:
        decoded = unquote(segment, errors="strict")
    except UnicodeDecodeError as e:
        raise _SegmentError(LiveRcUrlInvalidReason.INVALID_ABSOLUTE_URL) from e

    trimmed = decoded.strip()
    if not trimmed:
        raise _SegmentError(LiveRcUrlInvalidReason.EMPTY_SEGMENT)

    slug = _JSON_SUFFIX.sub("", trimmed) if is_race_segment else trimmed
    slug = slug.strip()
    if not slug:
        raise _SegmentError(LiveRcUrlInvalidReason.EMPTY_SLUG)
    return slug


def parse_liverc_url(url: str) -> LiveRcUrlParseResult:
    """
    Parse a LiveRC results URL.

    Args:
        url: Absolute URL as typed or pasted by a user

    Returns:
        LiveRcJsonUrl, LiveRcHtmlUrl or LiveRcInvalidUrl
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return LiveRcInvalidUrl(LiveRcUrlInvalidReason.INVALID_ABSOLUTE_URL)

    if not parts.scheme or not parts.netloc:
        return LiveRcInvalidUrl(LiveRcUrlInvalidReason.INVALID_ABSOLUTE_URL)

    query = parse_qs(parts.query)
    legacy_page = (query.get("p") or [""])[0]
    if legacy_page.lower() == "view_race_result":
        legacy_id = (query.get("id") or [""])[0]
        if legacy_id.strip():
            return LiveRcHtmlUrl()

    path_segments = [segment for segment in parts.path.split("/") if segment]
    results_index = next(
        (i for i, segment in enumerate(path_segments) if segment.lower() == "results"), -1
    )
    if results_index == -1:
        return LiveRcInvalidUrl(LiveRcUrlInvalidReason.INVALID_RESULTS_PATH)

    after_results = path_segments[results_index + 1 :]
    if len(after_results) < 4:
        return LiveRcInvalidUrl(LiveRcUrlInvalidReason.INCOMPLETE_RESULTS_SEGMENTS)
    if len(after_results) > 4:
        return LiveRcInvalidUrl(LiveRcUrlInvalidReason.EXTRA_SEGMENTS)

    slugs: list[str] = []
    for index, segment in enumerate(after_results):
        try:
            slugs.append(_normalise_segment(segment, is_race_segment=index == 3))
        except _SegmentError as e:
            return LiveRcInvalidUrl(e.reason)

    base_segments = path_segments[: results_index + 1]
    canonical_segments = base_segments + slugs[:3] + [f"{slugs[3]}.json"]
    origin = f"{parts.scheme.lower()}://{parts.netloc.lower()}"

    return LiveRcJsonUrl(
        slugs=(slugs[0], slugs[1], slugs[2], slugs[3]),
        canonical_json_path="/" + "/".join(canonical_segments),
        origin=origin,
        results_base_url=f"{origin}/{'/'.join(base_segments)}".rstrip("/"),
    )
