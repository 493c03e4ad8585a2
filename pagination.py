import asyncio
import math
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, TypeVar

from config import ALLOWED_PAGE_SIZES, DEFAULT_PAGE_SIZE

T = TypeVar("T")

CountFn = Callable[[], Awaitable[int]]
FetchFn = Callable[[int, int], Awaitable[List[T]]]


def normalize_page_size(page_size) -> int:
    """Anything outside the allowed set silently becomes the default."""
    return page_size if page_size in ALLOWED_PAGE_SIZES else DEFAULT_PAGE_SIZE


def total_pages_for(total_count: int, page_size: int) -> int:
    return max(1, math.ceil(total_count / page_size))


@dataclass(frozen=True, slots=True)
class PageRequest:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    def normalized(self) -> "PageRequest":
        return PageRequest(page=max(1, self.page), page_size=normalize_page_size(self.page_size))


@dataclass(slots=True)
class PageResult(Generic[T]):
    items: List[T] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    total_pages: int = 1

    @classmethod
    def empty(cls, page_size: int = DEFAULT_PAGE_SIZE) -> "PageResult[T]":
        return cls(items=[], total_count=0, page=1,
                   page_size=normalize_page_size(page_size), total_pages=1)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


async def paginate(count_fn: CountFn, fetch_fn: FetchFn, request: PageRequest) -> PageResult:
    """Serve one page of a collection that may be changing underneath us.

    The count and the fetch are issued together. If the requested page lies
    beyond the last page (the collection shrank, or the caller asked for page
    99), the last page is fetched instead, so the result never reports
    ``page > total_pages``.
    """
    request = request.normalized()
    total_count, items = await asyncio.gather(count_fn(), fetch_fn(request.page, request.page_size))

    total_pages = total_pages_for(total_count, request.page_size)
    page = request.page
    if page > total_pages:
        page = total_pages
        items = await fetch_fn(page, request.page_size)

    return PageResult(
        items=list(items),
        total_count=total_count,
        page=page,
        page_size=request.page_size,
        total_pages=total_pages,
    )
