"""Substring search over threads, posts and users.

Each entity kind is paginated on its own; ``search_all`` merges the three
pages into one result whose ``total_pages`` is the largest of the three.
"""
import asyncio
import calendar
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from config import DATE_RANGES, SEARCH_QUERY_MIN_LENGTH, SEARCH_SUGGESTION_LIMIT
from exceptions import ValidationFailed
from pagination import PageRequest, PageResult
from posts import Post, PostManager
from threads import Thread, ThreadManager
from users import User, UserManager

logger = logging.getLogger(__name__)

_UNRESOLVED = object()


def _months_back(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def date_range_start(date_range: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Lower bound on ``created_at`` for a date range name, or None for "all"."""
    if not date_range or date_range == "all":
        return None
    if date_range not in DATE_RANGES:
        raise ValidationFailed(f"Unknown date range: {date_range}")
    now = now or datetime.now(timezone.utc)
    if date_range == "week":
        start = now - timedelta(days=7)
    elif date_range == "month":
        start = _months_back(now, 1)
    else:
        start = _months_back(now, 12)
    return start.timestamp()


def highlight_text(text: str, query: str) -> str:
    """HTML-escape ``text`` and wrap case-insensitive matches of ``query`` in <mark>.

    Matching runs on the raw text, so a query can never land inside an
    entity produced by escaping.
    """
    if not is_searchable(query):
        return html.escape(text)
    pattern = re.compile(re.escape(query.strip()), re.IGNORECASE)
    parts = []
    position = 0
    for match in pattern.finditer(text):
        parts.append(html.escape(text[position:match.start()]))
        parts.append(f"<mark>{html.escape(match.group(0))}</mark>")
        position = match.end()
    parts.append(html.escape(text[position:]))
    return "".join(parts)


def is_searchable(query: Optional[str]) -> bool:
    return bool(query) and len(query.strip()) >= SEARCH_QUERY_MIN_LENGTH


@dataclass(frozen=True, slots=True)
class SearchFilters:
    date_range: str = "all"
    category_ids: tuple[int, ...] = ()
    author_id: Optional[int] = None
    author: Optional[str] = None


@dataclass(slots=True)
class CombinedSearchResult:
    query: str
    threads: PageResult[Thread]
    posts: PageResult[Post]
    users: PageResult[User]
    page: int = 1
    page_size: int = 15
    total_pages: int = 1
    total_count: int = 0

    @classmethod
    def merge(cls, query: str, threads: PageResult, posts: PageResult, users: PageResult) -> "CombinedSearchResult":
        kinds = (threads, posts, users)
        return cls(
            query=query,
            threads=threads,
            posts=posts,
            users=users,
            page=max(result.page for result in kinds),
            page_size=threads.page_size,
            total_pages=max(result.total_pages for result in kinds),
            total_count=sum(result.total_count for result in kinds),
        )


@dataclass(slots=True)
class SearchSuggestions:
    threads: List[Thread] = field(default_factory=list)
    posts: List[Post] = field(default_factory=list)
    users: List[User] = field(default_factory=list)


class SearchEngine:
    def __init__(self, threads: ThreadManager, posts: PostManager, users: UserManager):
        self.threads = threads
        self.posts = posts
        self.users = users

    async def _content_criteria(self, query: str, filters: SearchFilters):
        """Shared thread/post criteria, or _UNRESOLVED when the author filter matches nobody."""
        author_id = filters.author_id
        if filters.author:
            author_id = await self.users.resolve_username(filters.author)
            if author_id is None:
                return _UNRESOLVED
        criteria: Dict = {
            "text": query.strip(),
            "since": date_range_start(filters.date_range),
            "category_ids": tuple(filters.category_ids),
        }
        if author_id is not None:
            criteria["author_id"] = author_id
        return criteria

    async def search_threads(self, query: str, request: PageRequest,
                             filters: Optional[SearchFilters] = None) -> PageResult[Thread]:
        request = request.normalized()
        if not is_searchable(query):
            return PageResult.empty(request.page_size)
        criteria = await self._content_criteria(query, filters or SearchFilters())
        if criteria is _UNRESOLVED:
            return PageResult.empty(request.page_size)
        return await self.threads.list_page(request, **criteria)

    async def search_posts(self, query: str, request: PageRequest,
                           filters: Optional[SearchFilters] = None) -> PageResult[Post]:
        request = request.normalized()
        if not is_searchable(query):
            return PageResult.empty(request.page_size)
        criteria = await self._content_criteria(query, filters or SearchFilters())
        if criteria is _UNRESOLVED:
            return PageResult.empty(request.page_size)
        return await self.posts.list_page(request, newest_first=True, **criteria)

    async def search_users(self, query: str, request: PageRequest) -> PageResult[User]:
        request = request.normalized()
        if not is_searchable(query):
            return PageResult.empty(request.page_size)
        return await self.users.list_page(request, username=query.strip())

    async def search_all(self, query: str, request: PageRequest,
                         filters: Optional[SearchFilters] = None) -> CombinedSearchResult:
        filters = filters or SearchFilters()
        threads, posts, users = await asyncio.gather(
            self.search_threads(query, request, filters),
            self.search_posts(query, request, filters),
            self.search_users(query, request),
        )
        result = CombinedSearchResult.merge((query or "").strip(), threads, posts, users)
        logger.debug("search %r matched %s items", result.query, result.total_count)
        return result

    async def suggestions(self, query: str, limit: int = SEARCH_SUGGESTION_LIMIT) -> SearchSuggestions:
        """A handful of newest matches per kind, for autocomplete."""
        if not is_searchable(query):
            return SearchSuggestions()
        text = query.strip()
        limit = max(1, limit)
        rows: Sequence = await asyncio.gather(
            self._first(self.threads.db.fetch_threads, limit, text=text),
            self._first(self.posts.db.fetch_posts, limit, text=text),
            self._first(self.users.db.fetch_users, limit, username=text),
        )
        return SearchSuggestions(
            threads=[Thread.from_row(row) for row in rows[0]],
            posts=[Post.from_row(row) for row in rows[1]],
            users=[User.from_row(row) for row in rows[2]],
        )

    async def _first(self, fetch, limit: int, **criteria):
        async with self.threads.db.read() as conn:
            return await fetch(conn, 0, limit, **criteria)
