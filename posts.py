from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiosqlite

from exceptions import NotFound
from moderation import can_post_reply, ensure
from pagination import PageRequest, PageResult, paginate
from threads import Thread
from utils import timestamp
from versioning import VersionedEntityController


@dataclass(slots=True)
class Post:
    post_id: int
    thread_id: int
    author_id: int
    content: str
    current_version: int = 1
    created_at: float = field(default_factory=timestamp)
    updated_at: float = field(default_factory=timestamp)
    author_name: Optional[str] = None
    thread_title: Optional[str] = None

    def __str__(self) -> str:
        return f"Post {self.post_id} in thread {self.thread_id} by {self.author_id} (v{self.current_version})"

    @classmethod
    def from_row(cls, row: dict) -> "Post":
        return cls(
            post_id=row["post_id"],
            thread_id=row["thread_id"],
            author_id=row["author_id"],
            content=row["content"],
            current_version=row["current_version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            author_name=row.get("author_name"),
            thread_title=row.get("thread_title"),
        )


class PostManager(VersionedEntityController[Post]):
    kind = "post"
    label = "Post"
    table = "posts"
    id_column = "post_id"
    required_fields = ("thread_id", "content")
    editable_fields = ("content",)

    def _from_row(self, row: dict) -> Post:
        return Post.from_row(row)

    async def _fetch_row(self, conn: aiosqlite.Connection, entity_id: int) -> Optional[dict]:
        return await self.db.get_post_by_id(conn, entity_id)

    async def _before_create(self, conn: aiosqlite.Connection, actor, fields: Dict[str, Any]):
        row = await self.db.get_thread_by_id(conn, fields["thread_id"])
        if not row:
            raise NotFound("Thread not found")
        ensure(can_post_reply(actor, Thread.from_row(row)))

    async def _insert(self, conn: aiosqlite.Connection, actor, fields: Dict[str, Any]) -> int:
        return await self.db.create_post(conn, fields["thread_id"], actor.id, fields["content"])

    async def list_page(self, request: PageRequest, newest_first: bool = True, **criteria) -> PageResult[Post]:
        async with self.db.read() as conn:
            async def count():
                return await self.db.count_posts(conn, **criteria)

            async def fetch(page: int, page_size: int):
                rows = await self.db.fetch_posts(conn, (page - 1) * page_size, page_size,
                                                 newest_first=newest_first, **criteria)
                return [Post.from_row(row) for row in rows]

            return await paginate(count, fetch, request)
