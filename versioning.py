"""Shared edit protocol for threads and posts.

An edit snapshots the pre-edit state into the revision store and bumps
``current_version`` by one, all in a single ``BEGIN IMMEDIATE`` transaction.
The row update only matches while the stored version still equals the one
that was read, so a lost update surfaces as ``Conflict`` instead of silently
overwriting someone else's edit.
"""
import logging
from typing import Any, Dict, Generic, List, Optional, TypeVar

import aiosqlite

from database import DatabaseManager
from exceptions import Conflict, NotFound, ValidationFailed
from moderation import can_author, can_moderate, ensure
from revisions import RevisionRecord, RevisionStore

logger = logging.getLogger(__name__)

E = TypeVar("E")


class VersionedEntityController(Generic[E]):
    kind: str = ""
    label: str = ""
    table: str = ""
    id_column: str = ""
    required_fields: tuple = ()
    editable_fields: tuple = ()

    def __init__(self, db: DatabaseManager, revisions: Optional[RevisionStore] = None):
        self.db = db
        self.revisions = revisions or RevisionStore()

    # -- hooks -----------------------------------------------------------------

    def _from_row(self, row: dict) -> E:
        raise NotImplementedError

    async def _fetch_row(self, conn: aiosqlite.Connection, entity_id: int) -> Optional[dict]:
        raise NotImplementedError

    async def _insert(self, conn: aiosqlite.Connection, actor, fields: Dict[str, Any]) -> int:
        raise NotImplementedError

    async def _before_create(self, conn: aiosqlite.Connection, actor, fields: Dict[str, Any]):
        pass

    async def _delete_dependents(self, conn: aiosqlite.Connection, entity: E):
        pass

    # -- helpers ---------------------------------------------------------------

    def _entity_id(self, entity: E) -> int:
        return getattr(entity, self.id_column)

    async def _load(self, conn: aiosqlite.Connection, entity_id: int) -> E:
        row = await self._fetch_row(conn, entity_id)
        if not row:
            raise NotFound(f"{self.label} not found")
        return self._from_row(row)

    async def _log_if_moderated(self, conn: aiosqlite.Connection, actor, entity: E, action: str):
        if actor.id != entity.author_id:
            await self.db.log_moderation_action(conn, actor.id, self.kind, self._entity_id(entity), action)

    # -- operations --------------------------------------------------------------

    async def get(self, entity_id: int) -> E:
        async with self.db.read() as conn:
            return await self._load(conn, entity_id)

    async def create(self, actor, fields: Dict[str, Any]) -> E:
        ensure(can_author(actor))
        missing = [name for name in self.required_fields if fields.get(name) is None]
        if missing:
            raise ValidationFailed(f"Missing field: {', '.join(missing)}")
        async with self.db.transaction() as conn:
            await self._before_create(conn, actor, fields)
            entity_id = await self._insert(conn, actor, fields)
            entity = await self._load(conn, entity_id)
        logger.info("%s %s created by %s", self.kind, entity_id, actor.id)
        return entity

    async def edit(self, entity_id: int, actor, new_fields: Dict[str, Any],
                   expected_version: Optional[int] = None) -> E:
        ensure(can_author(actor))
        unknown = set(new_fields) - set(self.editable_fields)
        if unknown:
            raise ValidationFailed(f"{self.label} fields cannot be edited: {', '.join(sorted(unknown))}")
        changes = {name: value for name, value in new_fields.items() if value is not None}

        async with self.db.transaction() as conn:
            entity = await self._load(conn, entity_id)
            ensure(can_moderate(actor, entity))
            read_version = entity.current_version
            if expected_version is not None and expected_version != read_version:
                logger.warning("%s %s edit by %s expected v%s, found v%s",
                               self.kind, entity_id, actor.id, expected_version, read_version)
                raise Conflict()

            await self.revisions.append(conn, RevisionRecord(
                entity_type=self.kind,
                entity_id=entity_id,
                version=read_version,
                title=getattr(entity, "title", None),
                content=entity.content,
                editor_id=actor.id,
            ))
            if not await self.db.apply_edit(conn, self.table, self.id_column, entity_id, changes, read_version):
                logger.warning("%s %s changed underneath edit by %s", self.kind, entity_id, actor.id)
                raise Conflict()
            await self._log_if_moderated(conn, actor, entity, "edit")
            updated = await self._load(conn, entity_id)

        logger.info("%s %s edited by %s -> v%s", self.kind, entity_id, actor.id, updated.current_version)
        return updated

    async def delete(self, entity_id: int, actor) -> None:
        ensure(can_author(actor))
        async with self.db.transaction() as conn:
            entity = await self._load(conn, entity_id)
            ensure(can_moderate(actor, entity))
            await self._delete_dependents(conn, entity)
            await self.revisions.purge(conn, self.kind, [entity_id])
            await self.db.delete_row(conn, self.table, self.id_column, entity_id)
            await self._log_if_moderated(conn, actor, entity, "delete")
        logger.info("%s %s deleted by %s", self.kind, entity_id, actor.id)

    async def list_history(self, entity_id: int) -> List[RevisionRecord]:
        async with self.db.read() as conn:
            await self._load(conn, entity_id)
            return await self.revisions.list(conn, self.kind, entity_id)

    async def get_version(self, entity_id: int, version: int) -> RevisionRecord:
        async with self.db.read() as conn:
            entity = await self._load(conn, entity_id)
            record = None
            # The live row is the current version; history holds 1..current-1.
            if 1 <= version < entity.current_version:
                record = await self.revisions.get(conn, self.kind, entity_id, version)
        if record is None:
            raise NotFound(f"{self.label} version {version} not found")
        return record
