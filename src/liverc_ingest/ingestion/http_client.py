# src/liverc_ingest/ingestion/http_client.py
"""
LiveRC HTTP client.

Every request passes through one FIFO gate per client instance that keeps a
minimum gap between requests, then through a tenacity retry loop: 429 and 5xx
responses and transport exceptions are retried with capped exponential backoff
plus jitter (or the server's Retry-After), any other non-2xx fails at once.
"""

import logging
import random
import re
import threading
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar
from urllib.parse import quote

import requests
from bs4 import BeautifulSoup
from requests import RequestException
from requests.adapters import HTTPAdapter
from requests_ratelimiter import LimiterSession
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)
from urllib3.util.retry import Retry

from ..config import (
    API_RATE_PER_MIN,
    DEFAULT_HEADERS,
    HTML_ACCEPT,
    JSON_ACCEPT,
    LIVERC_BASE_ORIGIN,
    MIN_REQUEST_INTERVAL_MS,
    REQUEST_TIMEOUT,
    RETRY_INITIAL_DELAY_MS,
    RETRY_JITTER_RATIO,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_MS,
    USER_AGENT,
)
from ..exceptions import LiveRcClientError
from ..ports import NoopPayloadArchive, PayloadArchive
from .schemas import (
    EntryListResponse,
    LiveRcRaceContext,
    RaceResultResponse,
    map_entry_list_response,
    map_race_result_response,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FALLBACK_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"""<link[^>]+rel=["']canonical["'][^>]*href=["'](?P<url>[^"']+)["']""", re.I),
    re.compile(r"""<meta[^>]+property=["']og:url["'][^>]*content=["'](?P<url>[^"']+)["']""", re.I),
    re.compile(r"""data-json-url=["'](?P<url>[^"']+)["']""", re.I),
)

RETRYABLE_STATUS = 429


def create_session() -> requests.Session:
    """
    Creates a Session with:
    1. A coarse per-minute ceiling (client-side throttling)
    2. No status retries at the transport level: LiveRcClient owns those so it
       can honour Retry-After and report MAX_RETRIES_EXCEEDED itself.
    """
    session = LimiterSession(per_minute=API_RATE_PER_MIN)

    retry_strategy = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry_strategy)

    session.mount("https://", adapter)
    session.mount("http://", adapter)

    session.headers.update(DEFAULT_HEADERS)
    return session


def append_json_suffix(url: str) -> str:
    """
    Add ``.json`` to the path of ``url``, keeping any query string.

    >>> append_json_suffix("https://www.liverc.com/results/?p=view_event&id=1")
    'https://www.liverc.com/results.json?p=view_event&id=1'
    """
    base, sep, query = url.partition("?")
    stripped = base.rstrip("/")
    with_suffix = stripped if stripped.lower().endswith(".json") else f"{stripped}.json"
    return f"{with_suffix}?{query}" if sep and query else with_suffix


def parse_retry_after(value: str, now: datetime | None = None) -> float:
    """Convert a Retry-After header (seconds or HTTP-date) into seconds to wait."""
    trimmed = value.strip()
    if not trimmed:
        return 0.0

    match = re.match(r"^-?\d+", trimmed)
    if match:
        return max(0.0, float(int(match.group(0))))

    try:
        target = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError):
        return 0.0
    if target.tzinfo is None:
        target = target.replace(tzinfo=UTC)

    delta = (target - (now or datetime.now(UTC))).total_seconds()
    return delta if delta > 0 else 0.0


class RetryableStatusError(Exception):
    """Internal signal: LiveRC answered 429 or 5xx."""

    def __init__(self, response: requests.Response) -> None:
        super().__init__(f"LiveRC responded with a retryable status ({response.status_code}).")
        self.response = response
        self.status = response.status_code
        self.retry_after = parse_retry_after(response.headers.get("Retry-After", ""))


class wait_retry_after_or_backoff:
    """
    Tenacity wait strategy.

    Uses the server's Retry-After when one was sent, otherwise
    ``min(max_delay, initial_delay * 2**attempt)`` plus up to
    ``jitter_ratio`` of that value in random jitter.
    """

    def __init__(
        self,
        initial_delay: float,
        max_delay: float,
        jitter_ratio: float,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self.random_fn = random_fn

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if isinstance(error, RetryableStatusError) and error.retry_after > 0:
            return error.retry_after

        attempt = retry_state.attempt_number - 1
        exponential = min(self.max_delay, self.initial_delay * 2**attempt)
        return exponential + exponential * self.jitter_ratio * self.random_fn()


class RequestGate:
    """
    FIFO gate that lets one request through at a time, in arrival order,
    spacing consecutive requests by at least ``min_interval`` seconds.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._condition = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        self._next_allowed_at = 0.0

    def run(self, operation: Callable[[], T]) -> T:
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving:
                self._condition.wait()

        try:
            wait = self._next_allowed_at - self._clock()
            if wait > 0:
                self._sleep(wait)
            try:
                return operation()
            finally:
                self._next_allowed_at = self._clock() + self.min_interval
        finally:
            with self._condition:
                self._serving += 1
                self._condition.notify_all()


class LiveRcClient:
    """
    Polite HTTP client for LiveRC HTML pages and JSON endpoints.

    Features:
    - One FIFO request gate per instance (minimum interval between requests)
    - Bounded retries with exponential backoff, jitter and Retry-After
    - JSON endpoint discovery from session HTML
    - Optional raw payload archiving of every JSON body fetched
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        base_origin: str = LIVERC_BASE_ORIGIN,
        user_agent: str = USER_AGENT,
        min_request_interval_ms: int = MIN_REQUEST_INTERVAL_MS,
        max_retries: int = RETRY_MAX_ATTEMPTS,
        initial_retry_delay_ms: int = RETRY_INITIAL_DELAY_MS,
        max_retry_delay_ms: int = RETRY_MAX_DELAY_MS,
        jitter_ratio: float = RETRY_JITTER_RATIO,
        timeout: int = REQUEST_TIMEOUT,
        archive: PayloadArchive | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        """
        Initialize the client.

        Args:
            session: Optional pre-configured requests session
            base_origin: Origin that relative refs resolve against
            user_agent: User-Agent sent with every request
            min_request_interval_ms: Minimum gap between requests
            max_retries: Retries after the first attempt
            initial_retry_delay_ms: First backoff delay
            max_retry_delay_ms: Backoff cap (before jitter)
            jitter_ratio: Maximum jitter as a fraction of the backoff delay
            timeout: Per-request timeout in seconds
            archive: Sink for raw JSON payloads
            sleep: Sleep function (injected in tests)
            clock: Monotonic clock in seconds (injected in tests)
            random_fn: Random source for jitter (injected in tests)
        """
        self.session = session or create_session()
        self.base_origin = base_origin
        self.user_agent = user_agent
        self.max_retries = max_retries
        self.timeout = timeout
        self.archive = archive or NoopPayloadArchive()
        self._sleep = sleep
        self._gate = RequestGate(min_request_interval_ms / 1000, clock=clock, sleep=sleep)
        self._wait = wait_retry_after_or_backoff(
            initial_retry_delay_ms / 1000,
            max_retry_delay_ms / 1000,
            jitter_ratio,
            random_fn=random_fn,
        )

    # --- HTML pages ---

    def get_root_track_list(self) -> str:
        """Fetch the LiveRC track directory, served from the root of the base origin."""
        return self._fetch_with_retry(self.resolve_absolute_url("/"), HTML_ACCEPT).text

    def get_club_events_page(self, liverc_subdomain: str) -> str:
        """
        Fetch a club's ``/events/`` listing.

        Args:
            liverc_subdomain: Bare subdomain ("mytrack") or full host
                ("mytrack.liverc.com")

        Raises:
            LiveRcClientError: INVALID_SUBDOMAIN for a blank subdomain
        """
        subdomain = liverc_subdomain.strip()
        if not subdomain:
            raise LiveRcClientError(
                "LiveRC subdomain is required to fetch club events.", code="INVALID_SUBDOMAIN"
            )

        host = subdomain if re.search(r"\.liverc\.com$", subdomain, re.I) else f"{subdomain}.liverc.com"
        url = f"https://{host.rstrip('/')}/events/"
        return self._fetch_with_retry(url, HTML_ACCEPT).text

    def get_event_overview(self, url_or_ref: str) -> str:
        return self._fetch_with_retry(self.resolve_absolute_url(url_or_ref), HTML_ACCEPT).text

    def get_session_page(self, url_or_ref: str) -> str:
        return self._fetch_with_retry(self.resolve_absolute_url(url_or_ref), HTML_ACCEPT).text

    # --- JSON endpoints ---

    def resolve_json_url_from_html(
        self, html: str, extra_patterns: Sequence[str] | None = None
    ) -> str | None:
        """
        Find the JSON endpoint advertised by a session page.

        Tries ``<link rel="alternate" type="application/json">`` first, then
        the canonical link, ``og:url``, ``data-json-url`` and finally any
        caller-supplied regex patterns (group ``url`` or group 1).

        Returns:
            Absolute JSON URL, or None when nothing usable was found
        """
        link_href = self._find_alternate_json_link(html)
        if link_href:
            return self._normalise_candidate_url(link_href)

        patterns = list(DEFAULT_FALLBACK_PATTERNS)
        patterns.extend(re.compile(pattern, re.I) for pattern in extra_patterns or [])

        for pattern in patterns:
            match = pattern.search(html)
            if not match:
                continue
            candidate = match.group("url") if "url" in pattern.groupindex else match.group(1)
            normalised = self._normalise_candidate_url((candidate or "").strip())
            if normalised:
                return normalised

        return None

    def fetch_json(self, url: str) -> Any:
        """
        Fetch and decode a JSON endpoint.

        Raises:
            LiveRcClientError: INVALID_CONTENT_TYPE or JSON_PARSE_FAILURE, plus
                anything raised by the retry loop
        """
        response = self._fetch_with_retry(url, JSON_ACCEPT)

        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type.lower():
            raise LiveRcClientError(
                "LiveRC responded with a non-JSON payload.",
                code="INVALID_CONTENT_TYPE",
                status=response.status_code,
                url=url,
                details={"content_type": content_type},
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise LiveRcClientError(
                "Failed to parse JSON response from LiveRC.",
                code="JSON_PARSE_FAILURE",
                status=response.status_code,
                url=url,
                details={"cause": str(e)},
            ) from e

        self._archive(url, payload)
        return payload

    def fetch_entry_list(
        self, results_base_url: str, event_slug: str, class_slug: str
    ) -> EntryListResponse:
        """Fetch ``{results_base}/{event}/{class}/entry-list.json``."""
        segments = "/".join(quote(s, safe="") for s in (event_slug, class_slug))
        url = f"{results_base_url.rstrip('/')}/{segments}/entry-list.json"
        return map_entry_list_response(self.fetch_json(url), event_slug, class_slug)

    def fetch_race_result(self, context: LiveRcRaceContext) -> RaceResultResponse:
        """Fetch ``{results_base}/{event}/{class}/{round}/{race}.json``."""
        base = (context.results_base_url or self.resolve_absolute_url("/results")).rstrip("/")
        slugs = (context.event_slug, context.class_slug, context.round_slug, context.race_slug)
        url = f"{base}/{'/'.join(quote(s, safe='') for s in slugs)}.json"
        return map_race_result_response(self.fetch_json(url), context)

    # --- URL helpers ---

    def resolve_absolute_url(self, url_or_ref: str) -> str:
        """
        Resolve a ref against the base origin.

        Raises:
            LiveRcClientError: EMPTY_URL for a blank ref
        """
        trimmed = url_or_ref.strip()
        if not trimmed:
            raise LiveRcClientError("LiveRC request URL cannot be empty.", code="EMPTY_URL")

        if re.match(r"^https?://", trimmed, re.I):
            return trimmed
        if trimmed.startswith("//"):
            return f"https:{trimmed}"

        base = self.base_origin.rstrip("/")
        if trimmed.startswith("/"):
            return f"{base}{trimmed}"
        return f"{base}/{trimmed}"

    @staticmethod
    def _find_alternate_json_link(html: str) -> str | None:
        soup = BeautifulSoup(html, "html.parser")
        for link in soup.find_all("link"):
            rel = link.get("rel") or []
            rel_values = rel if isinstance(rel, list) else str(rel).split()
            if "alternate" not in {value.lower() for value in rel_values}:
                continue

            link_type = link.get("type")
            if link_type and "application/json" not in str(link_type).lower():
                continue

            href = link.get("href")
            if href:
                return str(href)
        return None

    @staticmethod
    def _normalise_candidate_url(candidate: str) -> str | None:
        trimmed = candidate.strip()
        if not trimmed:
            return None
        if trimmed.startswith("//"):
            return f"https:{trimmed}"
        if re.match(r"^https?://", trimmed, re.I):
            if re.search(r"\.json(\?|$)", trimmed, re.I):
                return trimmed
            return append_json_suffix(trimmed)
        # Relative candidates need page context we don't have.
        return None

    # --- Transport ---

    def _send(self, url: str, accept: str) -> requests.Response:
        response = self.session.get(
            url,
            headers={"Accept": accept, "User-Agent": self.user_agent},
            timeout=self.timeout,
        )
        status = response.status_code
        if status == RETRYABLE_STATUS or 500 <= status < 600:
            raise RetryableStatusError(response)
        if not 200 <= status < 300:
            raise LiveRcClientError(
                "LiveRC responded with an error status.",
                code="HTTP_ERROR",
                status=status,
                url=url,
                details={"reason": response.reason},
            )
        return response

    def _fetch_with_retry(self, url: str, accept: str) -> requests.Response:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception_type((RetryableStatusError, RequestException)),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            return retrying(self._gate.run, lambda: self._send(url, accept))
        except RetryError as e:
            last_error = e.last_attempt.exception()
            status = last_error.status if isinstance(last_error, RetryableStatusError) else None
            logger.error(f"❌ Giving up on {url} after {self.max_retries + 1} attempt(s): {last_error}")
            raise LiveRcClientError(
                "Failed to contact LiveRC after retries.",
                code="MAX_RETRIES_EXCEEDED",
                status=status,
                url=url,
                details={
                    "last_error": {
                        "name": type(last_error).__name__,
                        "message": str(last_error),
                    }
                },
            ) from last_error

    def _archive(self, url: str, payload: Any) -> None:
        try:
            self.archive.archive(url, payload)
        except Exception as e:
            logger.warning(f"⚠️  Failed to archive payload from {url}: {e}")
