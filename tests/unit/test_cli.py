import json
from pathlib import Path

import pytest

from conftest import (
    CLUB_ORIGIN,
    EVENT_URL,
    FakeSession,
    event_overview_html,
    json_response,
    make_response,
    race_result_payload,
    session_link,
    session_results_html,
)
from liverc_ingest.cli import build_parser, main, run_command, run_plan, to_jsonable
from liverc_ingest.ingestion.http_client import LiveRcClient
from liverc_ingest.storage.memory import InMemoryRepositories

LAPS = [("e1", "Jane Doe", 1, 15.0), ("e1", "Jane Doe", 2, 15.5)]


def test_parser_commands() -> None:
    parser = build_parser()

    args = parser.parse_args(["plan", "ref-a", "ref-b", "--apply"])
    assert (args.command, args.event_refs, args.apply) == ("plan", ["ref-a", "ref-b"], True)

    args = parser.parse_args(["-v", "import-url", "https://x", "--include-outlaps"])
    assert args.verbose and args.include_outlaps

    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_sync_clubs_command(client: LiveRcClient, repos: InMemoryRepositories, fake_session: FakeSession) -> None:
    fake_session.routes["https://live.liverc.com/"] = make_response(
        body='<table><tr data-track-row><td><a data-track-link href="https://mytrack.liverc.com/">My Track</a></td></tr></table>'
    )

    result = run_command(build_parser().parse_args(["sync-clubs"]), client, repos)

    assert result["upserted"] == 1
    assert result["deactivated"] == 0
    assert [club["liverc_subdomain"] for club in result["clubs"]] == ["mytrack"]


def test_import_file_command(client: LiveRcClient, repos: InMemoryRepositories, tmp_path: Path) -> None:
    path = tmp_path / "race.json"
    path.write_text(json.dumps(race_result_payload(LAPS)), encoding="utf-8")

    summary = run_command(build_parser().parse_args(["import-file", str(path)]), client, repos)

    assert summary.laps_imported == 2
    assert to_jsonable(summary)["entrants_processed"] == 1


def test_plan_without_apply(client: LiveRcClient, repos: InMemoryRepositories, fake_session: FakeSession) -> None:
    fake_session.routes[EVENT_URL] = make_response(
        body=event_overview_html(mains=[(session_link("spring-cup", "buggy", "main", "a-main"), "A Main", "1/8 Buggy")])
    )

    result = run_plan(client, repos, [EVENT_URL])

    (item,) = result["plan"]["items"]
    assert item["status"] == "NEW"
    assert "job" not in result


def test_plan_with_apply_runs_the_job(
    client: LiveRcClient, repos: InMemoryRepositories, fake_session: FakeSession
) -> None:
    """Test the applied plan is imported by the job runner before returning."""
    main_ref = session_link("spring-cup", "buggy", "main", "a-main")
    fake_session.routes[EVENT_URL] = make_response(
        body=event_overview_html(mains=[(main_ref, "A Main", "1/8 Buggy")])
    )
    fake_session.routes[CLUB_ORIGIN + main_ref] = make_response(
        body=session_results_html("A Main", [(1, "Jane Doe", "7", 2, "30.500")])
    )
    fake_session.routes[f"{CLUB_ORIGIN}{main_ref}.json"] = json_response(race_result_payload(LAPS))

    result = run_plan(client, repos, [EVENT_URL], apply=True, wait_timeout=30)

    assert result["job"]["state"] == "SUCCEEDED"
    assert result["job"]["items"][0]["counts"]["laps_imported"] == 2
    assert result["job_runner"]["jobs_succeeded"] == 1
    assert repos.laps.count() == 2


def test_main_prints_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "race.json"
    path.write_text(json.dumps(race_result_payload(LAPS)), encoding="utf-8")

    assert main(["import-file", str(path)]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["laps_imported"] == 2
    assert output["source_url"].startswith("uploaded-file://")


def test_main_reports_import_errors() -> None:
    assert main(["import-url", "https://club.liverc.com/results/?p=view_race_result&id=1"]) == 1
