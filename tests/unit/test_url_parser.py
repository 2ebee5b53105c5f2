import pytest

from liverc_ingest.ingestion.url_parser import (
    LiveRcHtmlUrl,
    LiveRcInvalidUrl,
    LiveRcJsonUrl,
    LiveRcUrlInvalidReason,
    parse_liverc_url,
)


def test_parses_json_results_url() -> None:
    """Test a full results URL yields slugs, canonical path and origin."""
    result = parse_liverc_url("https://MyTrack.LiveRC.com/results/spring-series/1-8-buggy/a-main/race-1.json")

    assert isinstance(result, LiveRcJsonUrl)
    assert result.slugs == ("spring-series", "1-8-buggy", "a-main", "race-1")
    assert result.canonical_json_path == "/results/spring-series/1-8-buggy/a-main/race-1.json"
    assert result.origin == "https://mytrack.liverc.com"
    assert result.results_base_url == "https://mytrack.liverc.com/results"


def test_json_suffix_is_optional_and_segments_are_decoded() -> None:
    """Test the race segment without .json and percent-encoded slugs."""
    result = parse_liverc_url("https://club.liverc.com/results/spring%20cup/mod%20buggy/main/race-2")

    assert isinstance(result, LiveRcJsonUrl)
    assert result.slugs == ("spring cup", "mod buggy", "main", "race-2")
    assert result.canonical_json_path.endswith("/race-2.json")


def test_legacy_html_result_page() -> None:
    """Test the legacy view_race_result page is recognised as HTML."""
    result = parse_liverc_url("https://club.liverc.com/results/?p=view_race_result&id=42")
    assert isinstance(result, LiveRcHtmlUrl)


@pytest.mark.parametrize(
    ("url", "reason"),
    [
        ("not a url", LiveRcUrlInvalidReason.INVALID_ABSOLUTE_URL),
        ("/results/e/c/r/race.json", LiveRcUrlInvalidReason.INVALID_ABSOLUTE_URL),
        ("https://club.liverc.com/events/e/c/r/race", LiveRcUrlInvalidReason.INVALID_RESULTS_PATH),
        ("https://club.liverc.com/results/e/c/r", LiveRcUrlInvalidReason.INCOMPLETE_RESULTS_SEGMENTS),
        ("https://club.liverc.com/results/e/c/r/race/extra", LiveRcUrlInvalidReason.EXTRA_SEGMENTS),
        ("https://club.liverc.com/results/e/%20/r/race", LiveRcUrlInvalidReason.EMPTY_SEGMENT),
        ("https://club.liverc.com/results/e/c/r/.json", LiveRcUrlInvalidReason.EMPTY_SLUG),
        ("https://club.liverc.com/results/e/c%zz/r/race", LiveRcUrlInvalidReason.INVALID_ABSOLUTE_URL),
    ],
)
def test_invalid_urls(url: str, reason: LiveRcUrlInvalidReason) -> None:
    """Test each rejected shape is tagged with its reason."""
    result = parse_liverc_url(url)
    assert isinstance(result, LiveRcInvalidUrl)
    assert result.reason is reason


def test_reason_messages_are_human_readable() -> None:
    """Test every reason carries a message."""
    for reason in LiveRcUrlInvalidReason:
        assert reason.message.startswith("LiveRC")
