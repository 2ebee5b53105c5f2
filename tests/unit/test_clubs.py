from datetime import UTC, datetime
from unittest.mock import MagicMock

from liverc_ingest.domain import ClubUpsert
from liverc_ingest.services.clubs import (
    ClubCatalogueService,
    ClubSearchService,
    extract_subdomain_from_href,
    parse_clubs_from_html,
)
from liverc_ingest.storage.memory import InMemoryClubRepository

SEEN_AT = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

TRACK_LIST_HTML = """
<table>
  <tr data-track-row data-country="US" data-region="CA">
    <td><a data-track-link href="https://mytrack.liverc.com/">My Track</a></td>
  </tr>
  <tr data-track-row>
    <td><a class="track-link" href="//other.liverc.com">Other   Raceway</a></td>
    <td data-track-location data-country="AU"><span data-region="NSW">Sydney</span></td>
  </tr>
  <tr data-track-row><td><a href="https://example.com/">Not LiveRC</a></td></tr>
  <tr data-track-row><td>No link here</td></tr>
  <tr data-track-row><td><a href="https://MyTrack.liverc.com/events/">My Track (new name)</a></td></tr>
</table>
"""


def test_extract_subdomain_from_href() -> None:
    assert extract_subdomain_from_href("https://mytrack.liverc.com/") == "mytrack"
    assert extract_subdomain_from_href("//a.b.liverc.com/x") == "a.b"
    assert extract_subdomain_from_href("https://liverc.com/") is None
    assert extract_subdomain_from_href("https://example.com/") is None
    assert extract_subdomain_from_href(None) is None


def test_parse_clubs_reads_rows_and_locations() -> None:
    """Test link fallbacks, location attributes and subdomain de-duplication."""
    clubs = parse_clubs_from_html(TRACK_LIST_HTML)

    assert [c.liverc_subdomain for c in clubs] == ["mytrack", "other"]
    mytrack, other = clubs
    assert mytrack.display_name == "My Track (new name)"
    assert other.display_name == "Other Raceway"
    assert other.country == "AU"
    assert other.region == "NSW"


def test_row_attributes_take_precedence() -> None:
    (club,) = parse_clubs_from_html(TRACK_LIST_HTML.split("<tr data-track-row>")[0] + "</table>")
    assert (club.country, club.region) == ("US", "CA")


def test_sync_catalogue_upserts_and_deactivates() -> None:
    repository = InMemoryClubRepository()
    repository.upsert_by_liverc_subdomain(
        ClubUpsert(liverc_subdomain="closed", display_name="Closed Track", seen_at=datetime(2023, 1, 1, tzinfo=UTC))
    )
    client = MagicMock()
    client.get_root_track_list.return_value = TRACK_LIST_HTML

    summary = ClubCatalogueService(client, repository, clock=lambda: SEEN_AT).sync_catalogue()

    assert summary == {"upserted": 2, "deactivated": 1}
    active = {club.liverc_subdomain: club for club in repository.list_active()}
    assert set(active) == {"mytrack", "other"}
    assert active["other"].last_seen_at == SEEN_AT


def test_sync_is_repeatable() -> None:
    """Test a second sweep keeps ids and first-seen timestamps."""
    repository = InMemoryClubRepository()
    client = MagicMock()
    client.get_root_track_list.return_value = TRACK_LIST_HTML
    service = ClubCatalogueService(client, repository, clock=lambda: SEEN_AT)

    service.sync_catalogue()
    first_ids = {c.liverc_subdomain: c.id for c in repository.list_active()}
    summary = service.sync_catalogue()

    assert summary == {"upserted": 2, "deactivated": 0}
    assert {c.liverc_subdomain: c.id for c in repository.list_active()} == first_ids


def test_club_search_trims_and_clamps() -> None:
    repository = MagicMock()
    repository.search_by_display_name.return_value = []
    service = ClubSearchService(repository)

    assert service.search(" m ") == []
    repository.search_by_display_name.assert_not_called()

    service.search("  my tr ", limit=100)
    repository.search_by_display_name.assert_called_once_with("my tr", 25)


def test_club_search_against_repository() -> None:
    repository = InMemoryClubRepository()
    for subdomain, name in [("a", "Speedway Park"), ("b", "Park Raceway"), ("c", "Parking Lot RC")]:
        repository.upsert_by_liverc_subdomain(ClubUpsert(liverc_subdomain=subdomain, display_name=name))

    names = [club.display_name for club in ClubSearchService(repository).search("park", limit=2)]

    assert names == ["Park Raceway", "Parking Lot RC"]
