import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from categories import Category, CategoryManager
from config import (DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD, DEFAULT_ADMIN_USERNAME,
                    SEARCH_SUGGESTION_LIMIT, STATS_CACHE_TTL)
from database import DatabaseManager
from exceptions import NotFound, ValidationFailed
from moderation import ensure, require_admin
from pagination import PageRequest, PageResult, paginate
from posts import Post, PostManager
from revisions import RevisionRecord, RevisionStore
from search import CombinedSearchResult, SearchEngine, SearchFilters, SearchSuggestions, is_searchable
from security import SecurityManager
from threads import Thread, ThreadManager
from users import Actor, Role, User, UserActivity, UserManager, UserStatus

logger = logging.getLogger(__name__)

LIST_KINDS = (
    "threads", "category_threads", "locked_threads", "thread_posts", "users",
    "search_threads", "search_posts", "search_users", "moderation_log",
)
ADMIN_KINDS = ("locked_threads", "users", "moderation_log")


@dataclass(frozen=True, slots=True)
class ListFilters:
    """Everything a listing can be narrowed by; each kind reads what it needs."""
    category_id: Optional[int] = None
    thread_id: Optional[int] = None
    query: Optional[str] = None
    search: Optional[SearchFilters] = None
    user_search: Optional[str] = None
    status: Optional[UserStatus] = None
    role: Optional[Role] = None


class Forum:
    """Main Forum class that orchestrates all components.

    Holds no state of its own apart from the stats cache; every component
    shares the one ``DatabaseManager`` handed in.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.revisions = RevisionStore()
        self.users = UserManager(db)
        self.categories = CategoryManager(db)
        self.threads = ThreadManager(db, self.revisions)
        self.posts = PostManager(db, self.revisions)
        self.search = SearchEngine(self.threads, self.posts, self.users)
        self._stats_cache: Optional[Dict[str, Any]] = None
        self._stats_cached_at = 0.0

    async def initialize(self, bootstrap_admin: bool = True):
        await self.db.initialize()
        if bootstrap_admin:
            password_hash, _ = SecurityManager.hash_password(DEFAULT_ADMIN_PASSWORD)
            await self.users.ensure_admin_exists(DEFAULT_ADMIN_USERNAME, DEFAULT_ADMIN_EMAIL, password_hash)

    # -- threads ---------------------------------------------------------------

    async def create_thread(self, actor: Actor, title: str, content: str,
                            category_ids=()) -> Thread:
        return await self.threads.create(actor, {"title": title, "content": content,
                                                 "category_ids": category_ids})

    async def get_thread(self, thread_id: int) -> Thread:
        return await self.threads.get(thread_id)

    async def edit_thread(self, thread_id: int, actor: Actor, new_fields: Dict[str, Any],
                          expected_version: Optional[int] = None) -> Thread:
        return await self.threads.edit(thread_id, actor, new_fields, expected_version)

    async def delete_thread(self, thread_id: int, actor: Actor) -> None:
        await self.threads.delete(thread_id, actor)

    async def list_thread_history(self, thread_id: int) -> List[RevisionRecord]:
        return await self.threads.list_history(thread_id)

    async def get_thread_version(self, thread_id: int, version: int) -> RevisionRecord:
        return await self.threads.get_version(thread_id, version)

    async def set_thread_lock(self, thread_id: int, actor: Actor, locked: bool) -> Thread:
        thread = await self.threads.set_lock(actor, thread_id, locked)
        self._stats_cache = None
        return thread

    # -- posts -----------------------------------------------------------------

    async def create_post(self, thread_id: int, actor: Actor, content: str) -> Post:
        return await self.posts.create(actor, {"thread_id": thread_id, "content": content})

    async def get_post(self, post_id: int) -> Post:
        return await self.posts.get(post_id)

    async def edit_post(self, post_id: int, actor: Actor, new_fields: Dict[str, Any],
                        expected_version: Optional[int] = None) -> Post:
        return await self.posts.edit(post_id, actor, new_fields, expected_version)

    async def delete_post(self, post_id: int, actor: Actor) -> None:
        await self.posts.delete(post_id, actor)

    async def list_post_history(self, post_id: int) -> List[RevisionRecord]:
        return await self.posts.list_history(post_id)

    async def get_post_version(self, post_id: int, version: int) -> RevisionRecord:
        return await self.posts.get_version(post_id, version)

    # -- moderation --------------------------------------------------------------

    async def set_role(self, actor: Actor, user_id: int, role: Role) -> User:
        return await self.users.set_role(actor, user_id, role)

    async def ban(self, actor: Actor, user_id: int, reason: Optional[str] = None,
                  until: Optional[float] = None) -> User:
        return await self.users.ban(actor, user_id, reason, until)

    async def unban(self, actor: Actor, user_id: int) -> User:
        return await self.users.unban(actor, user_id)

    async def delete_user(self, actor: Actor, user_id: int) -> None:
        await self.users.delete_user(actor, user_id)
        self._stats_cache = None

    async def delete_own_account(self, actor: Actor) -> None:
        await self.users.delete_own_account(actor)
        self._stats_cache = None

    # -- profiles ----------------------------------------------------------------

    async def get_profile(self, username: str) -> UserActivity:
        return await self.users.get_profile(username)

    async def get_user_activity(self, actor: Actor, user_id: int) -> UserActivity:
        return await self.users.get_user_activity(actor, user_id)

    # -- categories --------------------------------------------------------------

    async def create_category(self, actor: Actor, name: str, description: str = "",
                              color: Optional[str] = None) -> Category:
        category = await self.categories.create_category(actor, name, description, color)
        self._stats_cache = None
        return category

    async def get_categories(self) -> List[Category]:
        return await self.categories.get_categories()

    # -- listings ----------------------------------------------------------------

    async def list_page(self, kind: str, request: PageRequest, filters: Optional[ListFilters] = None,
                        actor: Optional[Actor] = None) -> PageResult:
        """Serve one page of any listing the forum offers.

        Admin-only kinds need ``actor``; the others are public.
        """
        if kind not in LIST_KINDS:
            raise ValidationFailed(f"Unknown listing: {kind}")
        filters = filters or ListFilters()
        if kind in ADMIN_KINDS:
            ensure(require_admin(actor))

        if kind == "threads":
            return await self.threads.list_page(request)
        if kind == "category_threads":
            if filters.category_id is None:
                raise ValidationFailed("category_id is required")
            await self.categories.get_category(filters.category_id)
            return await self.threads.list_page(request, category_ids=(filters.category_id,))
        if kind == "locked_threads":
            return await self.threads.list_page(request, locked=True)
        if kind == "thread_posts":
            if filters.thread_id is None:
                raise ValidationFailed("thread_id is required")
            await self.threads.get(filters.thread_id)
            return await self.posts.list_page(request, newest_first=False, thread_id=filters.thread_id)
        if kind == "users":
            return await self.users.list_page(
                request,
                search=filters.user_search.strip() if is_searchable(filters.user_search) else None,
                status=filters.status.value if filters.status else None,
                role=filters.role.value if filters.role else None,
            )
        if kind == "moderation_log":
            return await self._moderation_log_page(request)

        search_filters = filters.search or SearchFilters()
        if kind == "search_threads":
            return await self.search.search_threads(filters.query or "", request, search_filters)
        if kind == "search_posts":
            return await self.search.search_posts(filters.query or "", request, search_filters)
        return await self.search.search_users(filters.query or "", request)

    async def _moderation_log_page(self, request: PageRequest) -> PageResult[Dict]:
        async with self.db.read() as conn:
            async def count():
                return await self.db.count_moderation_log(conn)

            async def fetch(page: int, page_size: int):
                return await self.db.fetch_moderation_log(conn, (page - 1) * page_size, page_size)

            return await paginate(count, fetch, request)

    async def search_all(self, query: str, request: PageRequest,
                         filters: Optional[SearchFilters] = None) -> CombinedSearchResult:
        return await self.search.search_all(query, request, filters)

    async def search_suggestions(self, query: str, limit: int = SEARCH_SUGGESTION_LIMIT) -> SearchSuggestions:
        return await self.search.suggestions(query, limit)

    # -- stats -------------------------------------------------------------------

    async def admin_stats(self, actor: Actor) -> Dict[str, Any]:
        ensure(require_admin(actor))
        now = time.monotonic()
        if self._stats_cache is None or now - self._stats_cached_at > STATS_CACHE_TTL:
            self._stats_cache = await self.db.get_forum_statistics()
            self._stats_cached_at = now
        return dict(self._stats_cache)

    async def get_user(self, user_id: int) -> User:
        user = await self.users.get_user(user_id)
        if not user or user.is_deleted:
            raise NotFound("User not found")
        return user
