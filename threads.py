import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiosqlite

from exceptions import ValidationFailed
from moderation import can_lock, ensure
from pagination import PageRequest, PageResult, paginate
from utils import parse_id_list, timestamp
from versioning import VersionedEntityController

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Thread:
    thread_id: int
    author_id: int
    title: str
    content: str
    is_locked: bool = False
    current_version: int = 1
    created_at: float = field(default_factory=timestamp)
    updated_at: float = field(default_factory=timestamp)
    author_name: Optional[str] = None
    post_count: int = 0
    category_ids: tuple[int, ...] = ()

    def __str__(self) -> str:
        locked_marker = " [LOCKED]" if self.is_locked else ""
        return f"Thread {self.thread_id}: {self.title} (v{self.current_version}){locked_marker}"

    @classmethod
    def from_row(cls, row: dict) -> "Thread":
        return cls(
            thread_id=row["thread_id"],
            author_id=row["author_id"],
            title=row["title"],
            content=row["content"],
            is_locked=bool(row["is_locked"]),
            current_version=row["current_version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            author_name=row.get("author_name"),
            post_count=row.get("post_count") or 0,
            category_ids=parse_id_list(row.get("category_ids")),
        )


class ThreadManager(VersionedEntityController[Thread]):
    kind = "thread"
    label = "Thread"
    table = "threads"
    id_column = "thread_id"
    required_fields = ("title", "content")
    editable_fields = ("title", "content")

    def _from_row(self, row: dict) -> Thread:
        return Thread.from_row(row)

    async def _fetch_row(self, conn: aiosqlite.Connection, entity_id: int) -> Optional[dict]:
        return await self.db.get_thread_by_id(conn, entity_id)

    async def _before_create(self, conn: aiosqlite.Connection, actor, fields: Dict[str, Any]):
        category_ids = parse_id_list(fields.get("category_ids"))
        unknown = set(category_ids) - await self.db.existing_category_ids(conn, category_ids)
        if unknown:
            raise ValidationFailed(f"Unknown category: {', '.join(str(c) for c in sorted(unknown))}")
        fields["category_ids"] = category_ids

    async def _insert(self, conn: aiosqlite.Connection, actor, fields: Dict[str, Any]) -> int:
        return await self.db.create_thread(conn, actor.id, fields["title"], fields["content"],
                                           fields["category_ids"])

    async def _delete_dependents(self, conn: aiosqlite.Connection, entity: Thread):
        # Post rows go with the thread via ON DELETE CASCADE; their history does not.
        post_ids = await self.db.get_thread_post_ids(conn, entity.thread_id)
        await self.revisions.purge(conn, "post", post_ids)

    async def set_lock(self, actor, thread_id: int, locked: bool) -> Thread:
        """Lock or unlock a thread. Locking only stops new replies."""
        ensure(can_lock(actor))
        async with self.db.transaction() as conn:
            thread = await self._load(conn, thread_id)
            if thread.is_locked != locked:
                await self.db.update_thread_lock_status(conn, thread_id, locked)
                await self.db.log_moderation_action(conn, actor.id, "thread", thread_id,
                                                    "lock" if locked else "unlock")
                thread = await self._load(conn, thread_id)
        logger.info("thread %s %s by %s", thread_id, "locked" if locked else "unlocked", actor.id)
        return thread

    async def list_page(self, request: PageRequest, **criteria) -> PageResult[Thread]:
        async with self.db.read() as conn:
            async def count():
                return await self.db.count_threads(conn, **criteria)

            async def fetch(page: int, page_size: int):
                rows = await self.db.fetch_threads(conn, (page - 1) * page_size, page_size, **criteria)
                return [Thread.from_row(row) for row in rows]

            return await paginate(count, fetch, request)
