import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import aiosqlite

from exceptions import Conflict
from utils import timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RevisionRecord:
    """Pre-edit snapshot of a thread or post.

    ``version`` is the version the entity had before the edit that produced
    this record, so an entity at version N has records 1..N-1.
    """
    entity_type: str
    entity_id: int
    version: int
    content: str
    title: Optional[str] = None
    editor_id: Optional[int] = None
    snapshot_at: float = 0.0

    @classmethod
    def from_row(cls, row: dict) -> "RevisionRecord":
        return cls(
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            version=row["version"],
            content=row["content"],
            title=row["title"],
            editor_id=row["editor_id"],
            snapshot_at=row["snapshot_at"],
        )


class RevisionStore:
    """Append-only history rows, always written on the caller's transaction."""

    async def append(self, conn: aiosqlite.Connection, record: RevisionRecord) -> RevisionRecord:
        snapshot_at = record.snapshot_at or timestamp()
        try:
            await conn.execute("""
                INSERT INTO revisions (entity_type, entity_id, version, title, content, editor_id, snapshot_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (record.entity_type, record.entity_id, record.version, record.title,
                  record.content, record.editor_id, snapshot_at))
        except aiosqlite.IntegrityError as exc:
            logger.warning("revision %s %s v%s already recorded",
                           record.entity_type, record.entity_id, record.version)
            raise Conflict() from exc
        return RevisionRecord(
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            version=record.version,
            content=record.content,
            title=record.title,
            editor_id=record.editor_id,
            snapshot_at=snapshot_at,
        )

    async def list(self, conn: aiosqlite.Connection, entity_type: str, entity_id: int) -> List[RevisionRecord]:
        rows = await conn.execute_fetchall("""
            SELECT * FROM revisions
            WHERE entity_type = ? AND entity_id = ?
            ORDER BY version ASC
        """, (entity_type, entity_id))
        return [RevisionRecord.from_row(dict(row)) for row in rows]

    async def get(self, conn: aiosqlite.Connection, entity_type: str, entity_id: int,
                  version: int) -> Optional[RevisionRecord]:
        cursor = await conn.execute("""
            SELECT * FROM revisions WHERE entity_type = ? AND entity_id = ? AND version = ?
        """, (entity_type, entity_id, version))
        row = await cursor.fetchone()
        await cursor.close()
        return RevisionRecord.from_row(dict(row)) if row else None

    async def purge(self, conn: aiosqlite.Connection, entity_type: str, entity_ids: Sequence[int]):
        """Drop the history of deleted entities."""
        if not entity_ids:
            return
        placeholders = ", ".join("?" for _ in entity_ids)
        await conn.execute(
            f"DELETE FROM revisions WHERE entity_type = ? AND entity_id IN ({placeholders})",
            (entity_type, *entity_ids),
        )
