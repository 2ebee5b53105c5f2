import json
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from liverc_ingest.ingestion.http_client import LiveRcClient
from liverc_ingest.storage.memory import InMemoryRepositories

CLUB_ORIGIN = "https://club.liverc.com"
EVENT_URL = f"{CLUB_ORIGIN}/results/spring-cup"


@pytest.fixture
def mock_env(monkeypatch):
    """
    Sets up a mock environment for testing.
    Ensures no real LiveRC or S3 connections are attempted.
    """
    env_vars = {
        "LIVERC_BASE_ORIGIN": "https://live.liverc.com/",
        "LIVERC_MIN_INTERVAL_MS": "1",
        "LIVERC_MAX_RETRIES": "1",
        "MINIO_ENDPOINT": "http://mock-minio:9000",
        "MINIO_ACCESS_KEY": "mock_access",
        "MINIO_SECRET_KEY": "mock_secret",
        "MINIO_REGION": "us-east-1",
        "BUCKET_RAW": "test-raw",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    return env_vars


@pytest.fixture
def mock_s3_client():
    """Returns a magic mock for boto3 client"""
    return MagicMock()


# --- HTTP fakes ---


def make_response(
    status: int = 200,
    body: str | bytes = "",
    content_type: str = "text/html; charset=utf-8",
    headers: dict[str, str] | None = None,
    url: str = "",
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = body.encode("utf-8") if isinstance(body, str) else body
    response.encoding = "utf-8"
    response.headers["Content-Type"] = content_type
    response.headers.update(headers or {})
    response.reason = "OK" if status < 400 else "Error"
    response.url = url
    return response


def json_response(payload: Any, status: int = 200) -> requests.Response:
    return make_response(status, json.dumps(payload), content_type="application/json")


class FakeSession:
    """
    Stands in for ``requests.Session``.

    Responses are either queued (served in order, whatever the URL) or
    routed by exact URL. Queued items may be exceptions, which are raised.
    """

    def __init__(self) -> None:
        self.queue: list[requests.Response | Exception] = []
        self.routes: dict[str, requests.Response | Callable[[], requests.Response]] = {}
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, headers: dict[str, str] | None = None, timeout: float | None = None):
        self.calls.append({"url": url, "headers": headers or {}, "timeout": timeout})
        if self.queue:
            item = self.queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        route = self.routes.get(url)
        if route is None:
            return make_response(404, "not found", url=url)
        return route() if callable(route) else route

    @property
    def urls(self) -> list[str]:
        return [call["url"] for call in self.calls]


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ManualTimer:
    """Timer that records scheduled callbacks instead of running them."""

    class Handle:
        def __init__(self) -> None:
            self.cancelled = False

        def cancel(self) -> None:
            self.cancelled = True

    def __init__(self) -> None:
        self.scheduled: list[tuple[float, Callable[[], None], "ManualTimer.Handle"]] = []

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> "ManualTimer.Handle":
        handle = ManualTimer.Handle()
        self.scheduled.append((delay_seconds, callback, handle))
        return handle

    @property
    def pending(self) -> list[tuple[float, Callable[[], None], "ManualTimer.Handle"]]:
        return [entry for entry in self.scheduled if not entry[2].cancelled]


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client(fake_session: FakeSession, fake_clock: FakeClock) -> LiveRcClient:
    return LiveRcClient(
        session=fake_session,
        base_origin="https://live.liverc.com/",
        min_request_interval_ms=10,
        max_retries=2,
        initial_retry_delay_ms=750,
        max_retry_delay_ms=5000,
        jitter_ratio=0.35,
        sleep=fake_clock.sleep,
        clock=fake_clock.monotonic,
        random_fn=lambda: 0.0,
    )


@pytest.fixture
def repos() -> InMemoryRepositories:
    return InMemoryRepositories()


# --- LiveRC page builders ---


def session_link(event: str, klass: str, round_: str, race: str) -> str:
    return f"/results/{event}/{klass}/{round_}/{race}"


def event_overview_html(
    name: str = "Spring Cup",
    canonical: str | None = EVENT_URL,
    mains: list[tuple[str, str, str]] | None = None,
    qualifiers: list[tuple[str, str, str]] | None = None,
    qualifier_round: str = "1",
) -> str:
    """
    Event overview page. ``mains`` / ``qualifiers`` are (href, title, class)
    tuples; qualifiers also get a heat column.
    """
    canonical_tag = f'<link rel="canonical" href="{canonical}">' if canonical else ""
    parts = [f"<html><head><title>{name} | LiveRC</title>{canonical_tag}</head><body>", f"<h1>{name}</h1>"]
    if mains:
        parts.append("<h2>Main Events</h2>")
        parts.append("<table><thead><tr><th>Race</th><th>Class</th><th>Completed</th></tr></thead><tbody>")
        for href, title, klass in mains:
            parts.append(
                f'<tr><td><a href="{href}">{title}</a></td><td>{klass}</td>'
                f'<td><time datetime="2024-05-12T15:30:00Z">3:30pm</time></td></tr>'
            )
        parts.append("</tbody></table>")
    if qualifiers:
        parts.append(f"<h2>Qualifier Round {qualifier_round}</h2>")
        parts.append("<table><thead><tr><th>Race</th><th>Class</th><th>Heat</th></tr></thead><tbody>")
        for index, (href, title, klass) in enumerate(qualifiers, start=1):
            parts.append(
                f'<tr><td><a href="{href}">{title}</a></td><td>{klass}</td><td>Heat {index}</td></tr>'
            )
        parts.append("</tbody></table>")
    parts.append("</body></html>")
    return "".join(parts)


def session_results_html(
    title: str,
    rows: list[tuple[int, str, str, int, str]],
    json_url: str | None = None,
    canonical: str | None = None,
) -> str:
    """Session result page. ``rows`` are (position, driver, car, laps, total time)."""
    head = ""
    if json_url:
        head += f'<link rel="alternate" type="application/json" href="{json_url}">'
    if canonical:
        head += f'<link rel="canonical" href="{canonical}">'
    body_rows = "".join(
        f"<tr><td>{pos}</td><td><a href='#'>{driver}</a></td><td>{car}</td>"
        f"<td>{laps}/{total}</td><td>15.105 (3)</td></tr>"
        for pos, driver, car, laps, total in rows
    )
    return (
        f"<html><head>{head}</head><body><h1>{title}</h1>"
        "<table><thead><tr><th>Pos</th><th>Driver</th><th>Car #</th><th>Laps/Time</th>"
        f"<th>Fastest Lap</th></tr></thead><tbody>{body_rows}</tbody></table></body></html>"
    )


def race_result_payload(
    laps: list[tuple[str, str, int, float]],
    event_id: str = "evt-1",
    class_id: str = "cls-1",
    round_id: str = "rnd-1",
    race_id: str = "race-1",
    **extra: Any,
) -> dict[str, Any]:
    """Race result JSON. ``laps`` are (entry id, driver name, lap number, seconds)."""
    return {
        "event_id": event_id,
        "class_id": class_id,
        "round_id": round_id,
        "race_id": race_id,
        "laps": [
            {"entry_id": entry_id, "driver_name": name, "lap": number, "lap_time": seconds}
            for entry_id, name, number, seconds in laps
        ],
        **extra,
    }
