import logging
from dataclasses import dataclass, field
from typing import Optional

import aiosqlite

from database import DatabaseManager
from exceptions import NotFound, ValidationFailed
from moderation import ensure, require_admin
from utils import timestamp

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Category:
    category_id: int
    name: str
    description: str = ""
    color: Optional[str] = None
    thread_count: int = 0
    created_at: float = field(default_factory=timestamp)

    def __str__(self) -> str:
        return f"Category '{self.name}': {self.description}"

    @classmethod
    def from_row(cls, row: dict) -> "Category":
        return cls(
            category_id=row["category_id"],
            name=row["name"],
            description=row["description"] or "",
            color=row.get("color"),
            thread_count=row.get("thread_count") or 0,
            created_at=row["created_at"],
        )


class CategoryManager:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def create_category(self, actor, name: str, description: str = "",
                              color: Optional[str] = None) -> Category:
        ensure(require_admin(actor))
        try:
            async with self.db.transaction() as conn:
                category_id = await self.db.create_category(conn, name, description, color)
                row = await self.db.get_category(conn, category_id)
        except aiosqlite.IntegrityError as exc:
            raise ValidationFailed(f"Category '{name}' already exists") from exc
        logger.info("category %s (%s) created by %s", category_id, name, actor.id)
        return Category.from_row(row)  # type: ignore

    async def get_category(self, category_id: int) -> Category:
        async with self.db.read() as conn:
            row = await self.db.get_category(conn, category_id)
        if not row:
            raise NotFound("Category not found")
        return Category.from_row(row)

    async def get_categories(self) -> list[Category]:
        async with self.db.read() as conn:
            rows = await self.db.get_all_categories(conn)
        return [Category.from_row(row) for row in rows]
