from datetime import UTC, datetime
from typing import Any

import pytest

from conftest import FakeSession, json_response, race_result_payload
from liverc_ingest.exceptions import LiveRcClientError, LiveRcImportError
from liverc_ingest.ingestion.http_client import LiveRcClient
from liverc_ingest.services.importer import (
    LiveRcImportService,
    build_results_url,
    parse_start_time,
    title_from_slug,
)
from liverc_ingest.storage.memory import InMemoryRepositories

RACE_URL = "https://club.liverc.com/results/spring/buggy/a-main/race-1.json"
BASE = "https://club.liverc.com/results"
ENTRY_LIST_URL = f"{BASE}/spring/buggy/entry-list.json"


def _entry_list(*entries: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": {"id": "evt-1", "name": "Spring  Cup"},
        "class": {"id": "cls-1", "code": "bug"},
        "entries": list(entries),
    }


def _race(laps: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "event_id": "evt-1",
        "class_id": "cls-1",
        "class_name": "1/8 Buggy",
        "round_id": "rnd-1",
        "race_id": "race-1",
        "race_name": "A Main",
        "start_time": "2024-05-12 10:15:00+1000",
        "laps": laps,
    }


def _lap(entry_id: str, name: str, number: int, seconds: float, outlap: bool = False) -> dict[str, Any]:
    return {"entry_id": entry_id, "driver_name": name, "lap": number, "lap_time": seconds, "is_outlap": outlap}


JANE = {"id": "e1", "name": "Jane Doe", "car_number": "7", "transponder_id": "991"}
BOB = {"id": "e2", "name": "Bob Ray"}
ANN = {"id": "e3", "name": "Ann Lee"}

JANE_LAPS = [
    _lap("e1", "Jane Doe", 0, 20.0, outlap=True),
    _lap("e1", "Jane Doe", 2, 15.25),
    _lap("e1", "Jane Doe", 1, 15.0),
    _lap("e1", "Jane Doe", 3, 0.0),
]


@pytest.fixture
def service(client: LiveRcClient, repos: InMemoryRepositories) -> LiveRcImportService:
    return LiveRcImportService(
        client, repos.events, repos.race_classes, repos.sessions, repos.entrants, repos.laps
    )


def _serve(fake_session: FakeSession, entry_list: dict[str, Any], race: dict[str, Any]) -> None:
    fake_session.routes[ENTRY_LIST_URL] = json_response(entry_list)
    fake_session.routes[RACE_URL] = json_response(race)


def _laps_for(repos: InMemoryRepositories, source_entrant_id: str) -> list[int]:
    entrant = next(e for e in repos.entrants.entrants.values() if e.source_entrant_id == source_entrant_id)
    return [lap.lap_number for lap in repos.laps.list_for_entrant(entrant.id, entrant.session_id)]


def test_import_from_url(service: LiveRcImportService, repos: InMemoryRepositories, fake_session: FakeSession) -> None:
    """Test withdrawn and unlisted entries are skipped along with outlaps and zero times."""
    _serve(
        fake_session,
        _entry_list(JANE, {**BOB, "withdrawn": True}),
        _race([*JANE_LAPS, _lap("e2", "Bob Ray", 1, 16.0), _lap("e9", "Ghost", 1, 17.0)]),
    )

    summary = service.import_from_url(RACE_URL)

    assert summary.entrants_processed == 1
    assert summary.laps_imported == 2
    assert summary.skipped_outlap_count == 1
    assert summary.skipped_lap_count == 3
    assert summary.skipped_entrant_count == 2
    assert summary.race_id == "race-1"
    assert summary.round_id == "rnd-1"
    assert summary.source_url == RACE_URL
    assert summary.include_outlaps is False

    assert summary.event_name == "Spring Cup"
    assert summary.race_class_name == "1/8 Buggy"
    assert summary.session_name == "A Main"
    (event,) = repos.events.events.values()
    assert event.source_event_id == "evt-1"
    assert event.source_url == f"{BASE}/spring"
    (race_class,) = repos.race_classes.race_classes.values()
    assert race_class.class_code == "BUG"
    (session,) = repos.sessions.sessions.values()
    assert session.source_session_id == "evt-1:cls-1:rnd-1:race-1"
    assert session.scheduled_start == datetime(2024, 5, 12, 0, 15, tzinfo=UTC)

    (jane,) = repos.entrants.entrants.values()
    assert jane.car_number == "7"
    assert jane.source_transponder_id == "991"
    assert _laps_for(repos, "e1") == [1, 2]


def test_import_can_keep_outlaps(service: LiveRcImportService, repos: InMemoryRepositories, fake_session: FakeSession) -> None:
    _serve(fake_session, _entry_list(JANE), _race(JANE_LAPS))

    summary = service.import_from_url(RACE_URL, include_outlaps=True)

    assert summary.skipped_outlap_count == 0
    assert summary.laps_imported == 3
    assert _laps_for(repos, "e1") == [0, 1, 2]


def test_withdrawal_clears_previously_imported_laps(
    service: LiveRcImportService, repos: InMemoryRepositories, fake_session: FakeSession
) -> None:
    race = _race([*JANE_LAPS, _lap("e2", "Bob Ray", 1, 16.0)])
    _serve(fake_session, _entry_list(JANE, BOB), race)
    service.import_from_url(RACE_URL)
    assert _laps_for(repos, "e2") == [1]

    _serve(fake_session, _entry_list(JANE, {**BOB, "withdrawn": "true"}), _race(JANE_LAPS))
    service.import_from_url(RACE_URL)

    assert _laps_for(repos, "e2") == []
    assert _laps_for(repos, "e1") == [1, 2]


def test_entrants_dropped_from_entry_list_lose_laps(
    service: LiveRcImportService, repos: InMemoryRepositories, fake_session: FakeSession
) -> None:
    _serve(fake_session, _entry_list(JANE, ANN), _race([*JANE_LAPS, _lap("e3", "Ann Lee", 1, 18.0)]))
    service.import_from_url(RACE_URL)

    _serve(fake_session, _entry_list(JANE), _race(JANE_LAPS))
    service.import_from_url(RACE_URL)

    assert _laps_for(repos, "e3") == []
    assert repos.laps.count() == 2


def test_reimport_is_idempotent(service: LiveRcImportService, repos: InMemoryRepositories, fake_session: FakeSession) -> None:
    _serve(fake_session, _entry_list(JANE), _race(JANE_LAPS))

    first = service.import_from_url(RACE_URL)
    second = service.import_from_url(RACE_URL)

    assert first == second
    assert len(repos.sessions.sessions) == 1
    assert len(repos.entrants.entrants) == 1
    assert repos.laps.count() == 2


@pytest.mark.parametrize(
    ("url", "code"),
    [
        ("https://club.liverc.com/results/?p=view_race_result&id=42", "UNSUPPORTED_URL"),
        ("https://club.liverc.com/events/e/c/r/race", "UNSUPPORTED_URL"),
        ("https://club.liverc.com/results/e/c/r", "INCOMPLETE_URL"),
        ("https://club.liverc.com/results/e/c/r/race/extra", "INVALID_URL"),
        ("not a url", "INVALID_URL"),
    ],
)
def test_rejected_urls(service: LiveRcImportService, fake_session: FakeSession, url: str, code: str) -> None:
    with pytest.raises(LiveRcImportError) as excinfo:
        service.import_from_url(url)

    assert excinfo.value.status == 400
    assert excinfo.value.code == code
    assert excinfo.value.details["url"] == url
    assert fake_session.calls == []


def test_fetch_failures_propagate(service: LiveRcImportService, fake_session: FakeSession) -> None:
    fake_session.routes[RACE_URL] = json_response(_race(JANE_LAPS))

    with pytest.raises(LiveRcClientError) as excinfo:
        service.import_from_url(RACE_URL)

    assert excinfo.value.code == "HTTP_ERROR"


def test_import_from_payload(service: LiveRcImportService, repos: InMemoryRepositories) -> None:
    """Test an upload treats every driver with laps as entered."""
    payload = race_result_payload(
        [("e1", "Jane Doe", 1, 15.0), ("e1", "Jane Doe", 2, 15.5), ("e2", "Bob Ray", 1, 16.0)]
    )

    summary = service.import_from_payload(payload, namespace_seed="upload.json")

    assert summary.entrants_processed == 2
    assert summary.laps_imported == 3
    assert summary.skipped_entrant_count == 0
    assert summary.source_url.startswith("uploaded-file://")
    assert sorted(e.display_name for e in repos.entrants.entrants.values()) == ["Bob Ray", "Jane Doe"]


@pytest.mark.parametrize(
    "payload",
    [
        {"laps": [{"entry_id": "1", "driver_name": "A", "lap": 1, "lap_time": 12}]},
        {key: value for key, value in race_result_payload([]).items() if key != "laps"},
        "not even an object",
    ],
)
def test_invalid_payload(service: LiveRcImportService, payload: Any) -> None:
    with pytest.raises(LiveRcImportError) as excinfo:
        service.import_from_payload(payload)

    assert excinfo.value.status == 422
    assert excinfo.value.code == "INVALID_RACE_RESULT_PAYLOAD"
    assert set(excinfo.value.details) == {"missing_identifiers", "has_lap_data"}


def test_payload_with_empty_lap_list_imports_nothing(service: LiveRcImportService, repos: InMemoryRepositories) -> None:
    """Test an explicit empty laps list is valid lap data."""
    summary = service.import_from_payload(race_result_payload([]))

    assert summary.laps_imported == 0
    assert summary.entrants_processed == 0
    assert repos.laps.count() == 0


def test_sub_millisecond_laps_are_counted_as_skipped(service: LiveRcImportService, repos: InMemoryRepositories) -> None:
    payload = race_result_payload([("e1", "Jane Doe", 1, 15.0), ("e1", "Jane Doe", 2, 0.0004)])

    summary = service.import_from_payload(payload)

    assert summary.laps_imported == 1
    assert summary.skipped_lap_count == 1
    assert _laps_for(repos, "e1") == [1]


def test_title_from_slug() -> None:
    assert title_from_slug("summer-series") == "Summer Series"
    assert title_from_slug("1-8-buggy/a") == "1 8 Buggy A"


def test_build_results_url_quotes_segments() -> None:
    assert build_results_url(None, ["spring cup", "a/b"]) == "https://liverc.com/results/spring%20cup/a%2Fb"
    assert build_results_url("https://x.liverc.com/results/", ["e"]) == "https://x.liverc.com/results/e"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("2024-05-12T10:15:00Z", datetime(2024, 5, 12, 10, 15, tzinfo=UTC)),
        ("2024-05-12 10:15:00+1000", datetime(2024, 5, 12, 0, 15, tzinfo=UTC)),
        ("2024-05-12T10:15:00-05:00", datetime(2024, 5, 12, 15, 15, tzinfo=UTC)),
        ("2024-05-12 10:15", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_start_time(value: str | None, expected: datetime | None) -> None:
    """Test only timestamps with an explicit zone are accepted."""
    assert parse_start_time(value) == expected
