import hashlib

from liverc_ingest.lap_id import build_lap_id


def test_lap_id_is_deterministic() -> None:
    """Test the same facts always hash to the same id."""
    first = build_lap_id("event", "session", "race", "driver", 3)
    assert first == build_lap_id("event", "session", "race", "driver", 3)
    assert len(first) == 64


def test_lap_id_matches_pipe_joined_sha256() -> None:
    """Test the id is the sha256 of the pipe-joined facts."""
    expected = hashlib.sha256(b"e|s|r|d|7").hexdigest()
    assert build_lap_id("e", "s", "r", "d", 7) == expected


def test_lap_id_changes_with_lap_number() -> None:
    assert build_lap_id("e", "s", "r", "d", 1) != build_lap_id("e", "s", "r", "d", 2)
