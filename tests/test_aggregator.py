import pytest
from unittest.mock import AsyncMock, patch

from racecard import (
    AggregatedResponse,
    HorseEntry,
    NO_HREF_NOTE,
    NavigationError,
    RaceDetail,
    RaceListItem,
    aggregate_races,
)

INDEX_HTML = """
<html><body>
    <a href="/race/20240501/1">2024-05-01 Race 1</a>
    <a href="https://www.keiba.go.jp/race/20240501/2">Race 2</a>
    <a href="/race/20240501/3">Race 3</a>
</body></html>
"""


def race_page(name, horses):
    rows = "".join(f"<tr><td>{n}</td><td>{h}</td><td>J{n}</td></tr>" for n, h in horses)
    return f"<html><body><h1>{name}</h1><table>{rows}</table></body></html>"


def candidates(n):
    return [RaceListItem(text=f"Race {i}", href=f"/race/20240501/{i}") for i in range(1, n + 1)]


def detail_for(link, session_factory=None):
    return RaceDetail(race_name=link.rsplit("/", 1)[-1], horses=[HorseEntry(num=1, name="Horse", jockey="J")])


@pytest.mark.asyncio
async def test_only_first_six_candidates_are_fetched():
    with patch("racecard.discover_races", new_callable=AsyncMock) as mock_discover, \
            patch("racecard.extract_race_detail", new_callable=AsyncMock) as mock_extract:
        mock_discover.return_value = candidates(10)
        mock_extract.side_effect = detail_for

        result = await aggregate_races("2024-05-01")

    assert mock_discover.await_count == 1
    assert mock_extract.await_count == 6
    assert len(result.entries) == 6
    assert [e.link for e in result.entries] == [
        f"https://www.keiba.go.jp/race/20240501/{i}" for i in range(1, 7)
    ]


@pytest.mark.asyncio
async def test_one_failed_detail_does_not_affect_siblings():
    async def flaky(link, session_factory=None):
        if link.endswith("/3"):
            raise NavigationError(link, "net::ERR_CONNECTION_RESET")
        return detail_for(link)

    with patch("racecard.discover_races", new_callable=AsyncMock) as mock_discover, \
            patch("racecard.extract_race_detail", new_callable=AsyncMock) as mock_extract:
        mock_discover.return_value = candidates(6)
        mock_extract.side_effect = flaky

        result = await aggregate_races("2024-05-01")

    assert len(result.entries) == 6
    failed = [e for e in result.entries if e.error is not None]
    succeeded = [e for e in result.entries if e.detail is not None]
    assert len(failed) == 1
    assert len(succeeded) == 5
    assert "ERR_CONNECTION_RESET" in failed[0].error
    assert failed[0].source_text == "Race 3"
    assert result.entries[2] is failed[0]


@pytest.mark.asyncio
async def test_candidate_without_href_is_noted_not_fetched():
    items = [RaceListItem(text="出馬表", href=""), RaceListItem(text="Race 1", href="/race/1")]

    with patch("racecard.discover_races", new_callable=AsyncMock) as mock_discover, \
            patch("racecard.extract_race_detail", new_callable=AsyncMock) as mock_extract:
        mock_discover.return_value = items
        mock_extract.side_effect = detail_for

        result = await aggregate_races("2024-05-01")

    assert mock_extract.await_count == 1
    assert result.entries[0].note == NO_HREF_NOTE
    assert result.entries[0].link is None
    assert result.entries[1].detail is not None


@pytest.mark.asyncio
async def test_discovery_failure_propagates():
    with patch("racecard.discover_races", new_callable=AsyncMock) as mock_discover:
        mock_discover.side_effect = NavigationError("https://www.keiba.go.jp/", "timed out after 30000ms")

        with pytest.raises(NavigationError):
            await aggregate_races("2024-05-01")


@pytest.mark.asyncio
async def test_pipeline_end_to_end_with_fake_browser(make_factory, index_url):
    pages = {
        index_url: INDEX_HTML,
        "https://www.keiba.go.jp/race/20240501/1": race_page("Opening Sprint", [(1, "Alpha"), (2, "Bravo")]),
        "https://www.keiba.go.jp/race/20240501/2": race_page("Second Stakes", [(1, "Charlie")]),
    }
    factory = make_factory(pages, fail_content=["https://www.keiba.go.jp/race/20240501/3"])

    result = await aggregate_races("2024-05-01", session_factory=factory)

    assert factory.navigated == [
        index_url,
        "https://www.keiba.go.jp/race/20240501/1",
        "https://www.keiba.go.jp/race/20240501/2",
        "https://www.keiba.go.jp/race/20240501/3",
    ]
    assert all(s.closed for s in factory.sessions)
    assert len(factory.sessions) == 4

    first, second, third = result.entries
    assert first.detail.race_name == "Opening Sprint"
    assert [h.name for h in first.detail.horses] == ["Alpha", "Bravo"]
    assert second.detail.race_name == "Second Stakes"
    assert third.error is not None and third.detail is None


def test_payload_shape_per_entry_kind():
    payload = AggregatedResponse(
        date="2024-05-01",
        entries=[
            {"link": "https://x.test/1", "source_text": "R1", "detail": {"race_name": "R", "horses": [{"num": 1, "name": "H", "jockey": "J"}]}},
            {"link": "https://x.test/2", "source_text": "R2", "error": "boom"},
            {"source_text": "R3", "note": NO_HREF_NOTE},
        ],
    ).to_payload()

    assert set(payload) == {"date", "fetchedAt", "list"}
    assert isinstance(payload["fetchedAt"], str)
    ok, failed, skipped = payload["list"]
    assert ok == {
        "link": "https://x.test/1",
        "sourceText": "R1",
        "detail": {"raceName": "R", "horses": [{"num": 1, "name": "H", "jockey": "J"}]},
    }
    assert failed == {"link": "https://x.test/2", "sourceText": "R2", "error": "boom"}
    assert skipped == {"sourceText": "R3", "note": NO_HREF_NOTE}
