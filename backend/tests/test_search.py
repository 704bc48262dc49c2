"""
Unit tests for adaptive date-range splitting.

Run: pytest backend/tests/test_search.py -v
"""
from __future__ import annotations

from datetime import date, timedelta

import pytest

from reconciler.errors import SourceUnavailable
from reconciler.names import PlainNameNormalizer
from reconciler.search import RangeSearcher

from conftest import candidate

START = date(2023, 1, 1)
END = START + timedelta(days=600)


def searcher(source, threshold: int = 365, depth: int = 3) -> RangeSearcher:
    return RangeSearcher(source, PlainNameNormalizer(), split_threshold_days=threshold, max_depth=depth)


def span(call) -> int:
    return (call[2] - call[1]).days


@pytest.mark.asyncio
async def test_empty_long_unfiltered_query_is_bisected(source) -> None:
    target_day = START + timedelta(days=40)

    def handler(division, start, end, name):
        if (end - start).days > 365:
            return []
        return [candidate("Jane Doe", target_day)] if start <= target_day <= end else []

    source.search_handler = handler
    found = await searcher(source).search("w71", START, END, target=lambda c: c.name == "Jane Doe")

    assert [c.name for c in found] == ["Jane Doe"]
    assert len(source.search_calls) == 2
    first, second = source.search_calls
    assert (first[1], first[2]) == (START, END)
    assert second[1] == START and second[2] < END
    # the later half was never queried
    assert all(call[1] == START for call in source.search_calls)


@pytest.mark.asyncio
async def test_both_halves_merged_without_duplicates(source) -> None:
    shared = candidate("Sam Lee", START + timedelta(days=300), total=200.0)

    def handler(division, start, end, name):
        if (end - start).days > 365:
            return []
        rows = [c for c in (shared, candidate("Ann Fox", START + timedelta(days=500))) if start <= c.date <= end]
        # the source repeats a row across the boundary
        return rows + [shared]

    source.search_handler = handler
    found = await searcher(source).search("w71", START, END)

    assert sorted(c.name for c in found) == ["Ann Fox", "Sam Lee"]
    assert len(source.search_calls) == 3


@pytest.mark.asyncio
async def test_short_or_filtered_empty_ranges_are_trusted(source) -> None:
    s = searcher(source)
    assert await s.search("w71", START, START + timedelta(days=30)) == []
    assert await s.search("w71", START, END, name_filter="Jane Doe") == []
    assert len(source.search_calls) == 2


@pytest.mark.asyncio
async def test_name_filtered_earlier_half_short_circuits(source) -> None:
    def handler(division, start, end, name):
        if start == START and end == END:
            raise SourceUnavailable("timeout")
        return [candidate("Jane Doe", start)] if start == START else [candidate("Jane Doe", end)]

    source.search_handler = handler
    found = await searcher(source).search("w71", START, END, name_filter="Jane Doe")

    assert len(found) == 1
    assert len(source.search_calls) == 2


@pytest.mark.asyncio
async def test_recursion_is_bounded(source) -> None:
    source.search_handler = lambda *args: []
    found = await searcher(source, threshold=1, depth=3).search("w71", START, END)

    assert found == []
    # a full binary tree of depth 3: 1 + 2 + 4 + 8 queries
    assert len(source.search_calls) == 15


@pytest.mark.asyncio
async def test_unavailable_at_leaf_is_raised(source) -> None:
    def handler(division, start, end, name):
        raise SourceUnavailable("down")

    source.search_handler = handler
    with pytest.raises(SourceUnavailable):
        await searcher(source, depth=1).search("w71", START, END)
    assert len(source.search_calls) == 2


@pytest.mark.asyncio
async def test_split_halves_cover_range_without_overlap(source) -> None:
    source.search_handler = lambda *args: []
    await searcher(source, threshold=1, depth=1).search("w71", START, END)
    _, left, right = source.search_calls
    assert left[1] == START
    assert right[1] == left[2] + timedelta(days=1)
    assert right[2] == END
