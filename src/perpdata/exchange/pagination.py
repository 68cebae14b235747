"""Generic pagination engine shared by every exchange client.

Concrete clients supply one page fetcher per dataset that turns a
PageRequest into a Page. The engine decides how many pages to request and
when to stop, according to the dataset's PaginationStyle:

- WINDOW: request the whole [start, end] window once. When the page is
  full, follow the page's forward cursor if the exchange provides one,
  otherwise accept the gap and log it.
- CURSOR_BACKWARD: exchanges that return newest records first. Walk an
  exclusive "before" cursor back in time until a short page arrives, the
  lookback horizon is crossed, or the cursor stops moving.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from perpdata.logging import get_logger
from perpdata.platforms import PaginationStyle, PagingSpec

logger = get_logger(__name__)

DEFAULT_MAX_PAGES = 1000


class TimedPoint(Protocol):
    timestamp_ms: int


P = TypeVar("P", bound=TimedPoint)


@dataclass
class PageRequest:
    """Parameters for one page request.

    ``cursor`` is None on the first WINDOW request. For CURSOR_BACKWARD it
    is the exclusive upper bound in milliseconds (``end_ms`` on the first
    page, then the oldest timestamp seen so far).
    """

    start_ms: int
    end_ms: int
    limit: int
    cursor: Any = None


@dataclass
class Page(Generic[P]):
    """One page of points plus the exchange's continuation cursor, if any."""

    points: list[P] = field(default_factory=list)
    next_cursor: Any = None


PageFetcher = Callable[[PageRequest], Awaitable[Page[P]]]


async def paginate(
    fetch_page: PageFetcher[P],
    spec: PagingSpec,
    *,
    start_ms: int,
    end_ms: int,
    page_delay: float = 0.0,
    max_pages: int = DEFAULT_MAX_PAGES,
    context: dict[str, Any] | None = None,
) -> list[P]:
    """Dispatch to the engine matching ``spec.style``."""
    if spec.style is PaginationStyle.CURSOR_BACKWARD:
        return await paginate_backward(
            fetch_page,
            start_ms=start_ms,
            end_ms=end_ms,
            limit=spec.page_limit,
            page_delay=page_delay,
            max_pages=max_pages,
            context=context,
        )
    return await paginate_window(
        fetch_page,
        start_ms=start_ms,
        end_ms=end_ms,
        limit=spec.page_limit,
        page_delay=page_delay,
        max_pages=max_pages,
        context=context,
    )


async def paginate_window(
    fetch_page: PageFetcher[P],
    *,
    start_ms: int,
    end_ms: int,
    limit: int,
    page_delay: float = 0.0,
    max_pages: int = DEFAULT_MAX_PAGES,
    context: dict[str, Any] | None = None,
) -> list[P]:
    """Fetch a time window, following forward cursors while pages are full."""
    context = context or {}
    points: list[P] = []
    cursor: Any = None
    seen_cursors: set[Any] = set()

    for page_number in range(max_pages):
        if page_number > 0 and page_delay > 0:
            await asyncio.sleep(page_delay)

        page = await fetch_page(PageRequest(start_ms, end_ms, limit, cursor))
        points.extend(page.points)

        if len(page.points) < limit:
            break
        if page.next_cursor is None or page.next_cursor == "":
            logger.warning(
                "page_ceiling_reached",
                page_limit=limit,
                fetched=len(points),
                **context,
            )
            break
        if page.next_cursor in seen_cursors:
            logger.warning("pagination_cursor_repeated", cursor=page.next_cursor, **context)
            break
        seen_cursors.add(page.next_cursor)
        cursor = page.next_cursor
    else:
        logger.warning("pagination_max_pages_reached", max_pages=max_pages, **context)

    return points


async def paginate_backward(
    fetch_page: PageFetcher[P],
    *,
    start_ms: int,
    end_ms: int,
    limit: int,
    page_delay: float = 0.0,
    max_pages: int = DEFAULT_MAX_PAGES,
    context: dict[str, Any] | None = None,
) -> list[P]:
    """Walk backwards from ``end_ms`` to the ``start_ms`` horizon.

    Points older than the horizon are dropped. Terminates on a short page,
    once the oldest point reaches the horizon, or when the oldest timestamp
    fails to move below the current cursor.
    """
    context = context or {}
    points: list[P] = []
    before = end_ms

    for page_number in range(max_pages):
        if page_number > 0 and page_delay > 0:
            await asyncio.sleep(page_delay)

        page = await fetch_page(PageRequest(start_ms, end_ms, limit, before))
        if not page.points:
            break

        points.extend(p for p in page.points if p.timestamp_ms >= start_ms)
        oldest = min(p.timestamp_ms for p in page.points)

        if len(page.points) < limit:
            break
        if oldest <= start_ms:
            break
        if oldest >= before:
            logger.warning(
                "pagination_cursor_stalled",
                cursor=before,
                oldest=oldest,
                **context,
            )
            break
        before = oldest
    else:
        logger.warning("pagination_max_pages_reached", max_pages=max_pages, **context)

    return points
