"""Tests for the window and backward-cursor pagination engines."""

from dataclasses import dataclass

import pytest

from perpdata.exchange.pagination import (
    Page,
    PageRequest,
    paginate,
    paginate_backward,
    paginate_window,
)
from perpdata.platforms import PaginationStyle, PagingSpec

HOUR_MS = 3_600_000


@dataclass
class Point:
    timestamp_ms: int


class BackwardServer:
    """Serves ``limit`` hourly points strictly before the cursor, newest first."""

    def __init__(self, floor_ms: int | None = None) -> None:
        self.floor_ms = floor_ms
        self.requests: list[PageRequest] = []

    async def __call__(self, request: PageRequest) -> Page[Point]:
        self.requests.append(request)
        newest = request.cursor - HOUR_MS
        points = [Point(newest - i * HOUR_MS) for i in range(request.limit)]
        if self.floor_ms is not None:
            points = [p for p in points if p.timestamp_ms >= self.floor_ms]
        return Page(points)


# ---------------------------------------------------------------------------
# CURSOR_BACKWARD
# ---------------------------------------------------------------------------


class TestPaginateBackward:
    @pytest.mark.asyncio
    async def test_always_full_server_stops_at_horizon(self) -> None:
        end_ms = 1000 * HOUR_MS
        start_ms = end_ms - 480 * HOUR_MS
        server = BackwardServer()

        points = await paginate_backward(server, start_ms=start_ms, end_ms=end_ms, limit=100)

        # 480 hourly slots / 100 per page
        assert len(server.requests) == 5
        assert all(p.timestamp_ms >= start_ms for p in points)
        assert min(p.timestamp_ms for p in points) == start_ms
        assert len({p.timestamp_ms for p in points}) == 480

    @pytest.mark.asyncio
    async def test_cursor_is_exclusive_and_moves_to_oldest(self) -> None:
        end_ms = 1000 * HOUR_MS
        server = BackwardServer()

        await paginate_backward(
            server, start_ms=end_ms - 300 * HOUR_MS, end_ms=end_ms, limit=100
        )

        assert server.requests[0].cursor == end_ms
        assert server.requests[1].cursor == end_ms - 100 * HOUR_MS

    @pytest.mark.asyncio
    async def test_short_page_stops(self) -> None:
        end_ms = 1000 * HOUR_MS
        server = BackwardServer(floor_ms=end_ms - 150 * HOUR_MS)

        points = await paginate_backward(
            server, start_ms=end_ms - 480 * HOUR_MS, end_ms=end_ms, limit=100
        )

        assert len(server.requests) == 2
        assert len(points) == 150

    @pytest.mark.asyncio
    async def test_empty_page_stops(self) -> None:
        calls = 0

        async def fetch(request: PageRequest) -> Page[Point]:
            nonlocal calls
            calls += 1
            return Page([])

        assert await paginate_backward(fetch, start_ms=0, end_ms=HOUR_MS, limit=10) == []
        assert calls == 1

    @pytest.mark.asyncio
    async def test_stalled_cursor_stops(self) -> None:
        calls = 0

        async def fetch(request: PageRequest) -> Page[Point]:
            # Ignores the cursor and returns the same full page forever
            nonlocal calls
            calls += 1
            return Page([Point(request.end_ms + i) for i in range(10)])

        await paginate_backward(fetch, start_ms=0, end_ms=100 * HOUR_MS, limit=10)

        assert calls == 1

    @pytest.mark.asyncio
    async def test_max_pages_bounds_requests(self) -> None:
        server = BackwardServer()

        await paginate_backward(
            server, start_ms=0, end_ms=10_000 * HOUR_MS, limit=10, max_pages=3
        )

        assert len(server.requests) == 3


# ---------------------------------------------------------------------------
# WINDOW
# ---------------------------------------------------------------------------


class TestPaginateWindow:
    @pytest.mark.asyncio
    async def test_short_page_is_final(self) -> None:
        calls: list[PageRequest] = []

        async def fetch(request: PageRequest) -> Page[Point]:
            calls.append(request)
            return Page([Point(i) for i in range(5)], next_cursor=6)

        points = await paginate_window(fetch, start_ms=0, end_ms=100, limit=10)

        assert len(points) == 5
        assert len(calls) == 1
        assert calls[0].cursor is None

    @pytest.mark.asyncio
    async def test_full_pages_follow_cursor(self) -> None:
        pages = {
            None: Page([Point(i) for i in range(10)], next_cursor=10),
            10: Page([Point(i) for i in range(10, 20)], next_cursor=20),
            20: Page([Point(i) for i in range(20, 23)], next_cursor=23),
        }
        cursors: list[object] = []

        async def fetch(request: PageRequest) -> Page[Point]:
            cursors.append(request.cursor)
            return pages[request.cursor]

        points = await paginate_window(fetch, start_ms=0, end_ms=100, limit=10)

        assert cursors == [None, 10, 20]
        assert [p.timestamp_ms for p in points] == list(range(23))

    @pytest.mark.asyncio
    async def test_full_page_without_cursor_accepts_gap(self) -> None:
        calls = 0

        async def fetch(request: PageRequest) -> Page[Point]:
            nonlocal calls
            calls += 1
            return Page([Point(i) for i in range(10)])

        points = await paginate_window(fetch, start_ms=0, end_ms=100, limit=10)

        assert calls == 1
        assert len(points) == 10

    @pytest.mark.asyncio
    async def test_repeated_cursor_stops(self) -> None:
        calls = 0

        async def fetch(request: PageRequest) -> Page[Point]:
            nonlocal calls
            calls += 1
            return Page([Point(i) for i in range(10)], next_cursor="same")

        await paginate_window(fetch, start_ms=0, end_ms=100, limit=10)

        assert calls == 2


class TestPaginateDispatch:
    @pytest.mark.asyncio
    async def test_backward_spec_uses_cursor(self) -> None:
        server = BackwardServer(floor_ms=0)

        await paginate(
            server,
            PagingSpec(PaginationStyle.CURSOR_BACKWARD, 10),
            start_ms=0,
            end_ms=5 * HOUR_MS,
        )

        assert server.requests[0].cursor == 5 * HOUR_MS
