"""
Tests for the Sport80 source adapter against a mocked HTTP transport.

Run: pytest backend/tests/test_sport80.py -v
"""
from __future__ import annotations

from datetime import date
from typing import Callable

import httpx
import pytest

from shared.models.enums import Gender

from reconciler.errors import SourceFormatChanged, SourceUnavailable
from reconciler.names import SurnameFirstNormalizer
from reconciler.sources import Sport80Source

from conftest import make_settings

Handler = Callable[[httpx.Request], httpx.Response]


def row(name: str, day: str = "2024-04-06", **fields) -> dict:
    return {"name": name, "date": day, **fields}


def page(rows: list[dict], last_page: int = 1, **extra) -> dict:
    return {"data": rows, "last_page": last_page, **extra}


class Recorder:
    """Wraps a handler and keeps every request it saw."""

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture
def make_source(tmp_path):
    def _make(handler: Handler, normalizer=None, **overrides) -> Sport80Source:
        settings = make_settings(tmp_path, source_rpm=60000, source_burst=1000, **overrides)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://sport80.test")
        source = Sport80Source(settings, client=client, normalizer=normalizer)
        return source

    return _make


# ── Search ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_search_follows_pages_and_dedupes(make_source) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["page"] == "1":
            return httpx.Response(200, json=page([
                row("Jane Doe", total="180", lifter_age="27", club="Iron Barn", wso="Florida", gender="Female"),
                row("Ann Fox", total=150),
            ], last_page=2))
        return httpx.Response(200, json=page([row("Sam Lee"), row("jane  doe", total=180.0)], last_page=2))

    recorder = Recorder(handler)
    source = make_source(recorder)

    found = await source.search_candidates("w71", date(2024, 4, 1), date(2024, 4, 11), name_filter="Jane")

    assert [c.name for c in found] == ["Jane Doe", "Ann Fox", "Sam Lee"]
    jane = found[0]
    assert jane.total == 180.0
    assert jane.competition_age == 27
    assert jane.club_name == "Iron Barn"
    assert jane.region == "Florida"
    assert jane.gender == Gender.FEMALE
    params = recorder.requests[0].url.params
    assert recorder.requests[0].url.path == "/api/rankings/results"
    assert params["weight_class"] == "w71"
    assert params["date_range_start"] == "2024-04-01"
    assert params["date_range_end"] == "2024-04-11"
    assert params["search"] == "Jane"
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_search_without_filters_sends_only_dates(make_source) -> None:
    recorder = Recorder(lambda request: httpx.Response(200, json=page([])))
    source = make_source(recorder)

    assert await source.search_candidates(None, date(2024, 1, 1), date(2024, 1, 2)) == []
    params = recorder.requests[0].url.params
    assert "weight_class" not in params
    assert "search" not in params


# ── Counts ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_result_count_uses_total(make_source) -> None:
    recorder = Recorder(lambda request: httpx.Response(200, json=page([row("A")], total=152)))
    source = make_source(recorder)

    assert await source.get_result_count(7001) == 152
    assert recorder.requests[0].url.path == "/api/meets/7001/results"
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_result_count_falls_back_to_counting_rows(make_source) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["page"] == "1":
            return httpx.Response(200, json=page([row("A"), row("B")], last_page=2))
        return httpx.Response(200, json=page([row("C")], last_page=2))

    source = make_source(handler)
    assert await source.get_result_count(7001) == 3


# ── Failure handling ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_transient_errors_are_retried(make_source) -> None:
    responses = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200, json=page([], total=5))])
    recorder = Recorder(lambda request: next(responses))
    source = make_source(recorder)

    assert await source.get_result_count(7001) == 5
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_unavailable(make_source) -> None:
    recorder = Recorder(lambda request: httpx.Response(502))
    source = make_source(recorder)

    with pytest.raises(SourceUnavailable) as exc_info:
        await source.get_result_count(7001)
    assert exc_info.value.operation == "result_count"
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_network_errors_are_retried(make_source) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    source = make_source(handler, retry_max_attempts=2)
    with pytest.raises(SourceUnavailable, match="ConnectError"):
        await source.get_result_count(7001)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(404),
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"rows": []}),
    ],
    ids=["not-found", "html", "list-body", "no-data-key"],
)
async def test_unexpected_shapes_raise_format_changed(make_source, response) -> None:
    recorder = Recorder(lambda request: response)
    source = make_source(recorder)

    with pytest.raises(SourceFormatChanged):
        await source.search_candidates("w71", date(2024, 1, 1), date(2024, 1, 2))
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_row_without_name_raises_format_changed(make_source) -> None:
    source = make_source(lambda request: httpx.Response(200, json=page([{"date": "2024-01-01"}])))
    with pytest.raises(SourceFormatChanged):
        await source.search_candidates("w71", date(2024, 1, 1), date(2024, 1, 2))


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures(make_source) -> None:
    recorder = Recorder(lambda request: httpx.Response(503))
    source = make_source(recorder, retry_max_attempts=1, circuit_failure_threshold=2)

    for _ in range(2):
        with pytest.raises(SourceUnavailable):
            await source.get_result_count(7001)
    with pytest.raises(SourceUnavailable, match="OPEN"):
        await source.get_result_count(7001)
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_format_errors_do_not_trip_circuit(make_source) -> None:
    recorder = Recorder(lambda request: httpx.Response(404))
    source = make_source(recorder, retry_max_attempts=1, circuit_failure_threshold=1)

    for _ in range(3):
        with pytest.raises(SourceFormatChanged):
            await source.get_result_count(7001)
    assert len(recorder.requests) == 3


# ── History / recorded date ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_competitor_history(make_source) -> None:
    recorder = Recorder(lambda request: httpx.Response(200, json=page([
        {"meet": "Spring Open ", "date": "2024-04-06T00:00:00", "division": "Open Men's 89kg", "total": "250"},
        {"meet": "Fall Classic", "date": "2023-10-01"},
    ])))
    source = make_source(recorder)

    history = await source.get_competitor_history(501)

    assert recorder.requests[0].url.path == "/api/members/501/results"
    assert history[0].meet_name == "Spring Open"
    assert history[0].date == date(2024, 4, 6)
    assert history[0].total == 250.0
    assert history[1].division is None


@pytest.mark.asyncio
async def test_recorded_date_matches_reordered_names(make_source) -> None:
    source = make_source(
        lambda request: httpx.Response(200, json=page([row("LI Wei", "2024-04-07"), row("WANG Hao", "2024-04-08")])),
        normalizer=SurnameFirstNormalizer(),
    )

    assert await source.get_recorded_date(7001, "Hao WANG") == date(2024, 4, 8)
    assert await source.get_recorded_date(7001, "Nobody Here") is None
