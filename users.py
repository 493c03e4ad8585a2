import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import aiosqlite

from config import ADMIN_ACTIVITY_LIMIT, PROFILE_RECENT_LIMIT
from database import DatabaseManager
from exceptions import NotFound, Unauthorized, ValidationFailed
from moderation import (can_ban, can_change_role, can_delete_own_account, can_delete_user, can_unban,
                        ensure, require_admin)
from pagination import PageRequest, PageResult, paginate
from posts import Post
from threads import Thread
from utils import timestamp

logger = logging.getLogger(__name__)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ACTIVE = "active"
    BANNED = "banned"
    DELETED = "deleted"


@dataclass(frozen=True, slots=True)
class Actor:
    """The user performing an operation, as supplied by the session layer."""
    id: int
    role: Role = Role.USER
    is_banned: bool = False
    banned_until: Optional[float] = None
    is_deleted: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(slots=True)
class User:
    user_id: int
    username: str
    email: str
    role: Role = Role.USER
    status: UserStatus = UserStatus.ACTIVE
    ban_reason: Optional[str] = None
    banned_until: Optional[float] = None
    banned_by: Optional[int] = None
    password_hash: str = field(default="", repr=False)
    created_at: float = field(default_factory=timestamp)
    last_activity: float = field(default_factory=timestamp)
    thread_count: int = 0
    post_count: int = 0

    def __str__(self) -> str:
        admin_marker = " [ADMIN]" if self.is_admin else ""
        status_marker = f" [{self.status.value.upper()}]" if self.status != UserStatus.ACTIVE else ""
        return f"User {self.user_id}: {self.username}{admin_marker}{status_marker}"

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_deleted(self) -> bool:
        return self.status == UserStatus.DELETED

    @property
    def is_banned(self) -> bool:
        return self.is_ban_active()

    def is_ban_active(self, now: Optional[float] = None) -> bool:
        """A ban counts until ``banned_until`` passes; no end date means permanent."""
        if self.status != UserStatus.BANNED:
            return False
        if self.banned_until is None:
            return True
        return (now if now is not None else timestamp()) < self.banned_until

    def to_actor(self) -> Actor:
        return Actor(
            id=self.user_id,
            role=self.role,
            is_banned=self.is_ban_active(),
            banned_until=self.banned_until,
            is_deleted=self.is_deleted,
        )

    @classmethod
    def from_row(cls, row: dict) -> "User":
        return cls(
            user_id=row["user_id"],
            username=row["username"],
            email=row["email"],
            role=Role(row["role"]),
            status=UserStatus(row["status"]),
            ban_reason=row.get("ban_reason"),
            banned_until=row.get("banned_until"),
            banned_by=row.get("banned_by"),
            password_hash=row.get("password_hash", ""),
            created_at=row["created_at"],
            last_activity=row["last_activity"],
            thread_count=row.get("thread_count") or 0,
            post_count=row.get("post_count") or 0,
        )


@dataclass(slots=True)
class UserActivity:
    """A user with their newest threads and posts, newest first."""
    user: User
    threads: List[Thread] = field(default_factory=list)
    posts: List[Post] = field(default_factory=list)


class UserManager:
    """Account lookups and the admin-only moderation mutations on users.

    Every mutation loads the target, counts the remaining administrators and
    writes inside one ``BEGIN IMMEDIATE`` transaction, so the last-admin check
    cannot be raced by a concurrent demotion or deletion.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.db.read() as conn:
            row = await self.db.get_user_by_id(conn, user_id)
        return User.from_row(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self.db.read() as conn:
            row = await self.db.get_user_by_username(conn, username)
        return User.from_row(row) if row else None

    async def get_actor(self, user_id: int) -> Optional[Actor]:
        user = await self.get_user(user_id)
        if not user or user.is_deleted:
            return None
        return user.to_actor()

    async def create_user(self, username: str, email: str, password_hash: str,
                          role: Role = Role.USER) -> User:
        try:
            async with self.db.transaction() as conn:
                if await self.db.check_user_exists(conn, username, email):
                    raise ValidationFailed("Username or email already exists")
                user_id = await self.db.create_user(conn, username, email, password_hash, role.value)
                row = await self.db.get_user_by_id(conn, user_id)
        except aiosqlite.IntegrityError as exc:
            raise ValidationFailed("Username or email already exists") from exc
        logger.info("user %s registered as %s", user_id, role.value)
        return User.from_row(row)  # type: ignore

    async def record_login(self, user: User) -> None:
        if user.is_deleted:
            raise Unauthorized("Account has been deleted")
        async with self.db.transaction() as conn:
            await self.db.touch_user(conn, user.user_id)

    async def ensure_admin_exists(self, username: str, email: str, password_hash: str) -> Optional[User]:
        """Create the bootstrap administrator when the forum has none."""
        async with self.db.transaction() as conn:
            if await self.db.count_admins(conn) > 0:
                return None
            if await self.db.check_user_exists(conn, username, email):
                row = await self.db.get_user_by_username(conn, username)
                if not row:
                    logger.warning("bootstrap admin email %s already taken", email)
                    return None
                user_id = row["user_id"]
                await self.db.unban_user(conn, user_id)
                await self.db.set_user_role(conn, user_id, Role.ADMIN.value)
            else:
                user_id = await self.db.create_user(conn, username, email, password_hash, Role.ADMIN.value)
            row = await self.db.get_user_by_id(conn, user_id)
        logger.info("bootstrapped administrator %s (%s)", username, user_id)
        return User.from_row(row)  # type: ignore

    async def _load_target(self, conn: aiosqlite.Connection, user_id: int) -> User:
        row = await self.db.get_user_by_id(conn, user_id)
        if not row or row["status"] == UserStatus.DELETED.value:
            raise NotFound("User not found")
        return User.from_row(row)

    async def set_role(self, actor: Actor, user_id: int, role: Role) -> User:
        ensure(require_admin(actor))
        async with self.db.transaction() as conn:
            target = await self._load_target(conn, user_id)
            ensure(can_change_role(actor, target, role, await self.db.count_admins(conn)))
            if target.role != role:
                await self.db.set_user_role(conn, user_id, role.value)
                action = "promote_admin" if role == Role.ADMIN else "demote_admin"
                await self.db.log_moderation_action(conn, actor.id, "user", user_id, action)
            row = await self.db.get_user_by_id(conn, user_id)
        logger.info("user %s role set to %s by %s", user_id, role.value, actor.id)
        return User.from_row(row)  # type: ignore

    async def ban(self, actor: Actor, user_id: int, reason: Optional[str] = None,
                  until: Optional[float] = None) -> User:
        ensure(require_admin(actor))
        if until is not None and until <= timestamp():
            raise ValidationFailed("Ban end must lie in the future")
        async with self.db.transaction() as conn:
            target = await self._load_target(conn, user_id)
            ensure(can_ban(actor, target, await self.db.count_admins(conn)))
            await self.db.ban_user(conn, user_id, actor.id, reason, until)
            await self.db.log_moderation_action(conn, actor.id, "user", user_id, "ban",
                                                reason or "No reason provided")
            row = await self.db.get_user_by_id(conn, user_id)
        logger.info("user %s banned by %s until %s", user_id, actor.id, until or "forever")
        return User.from_row(row)  # type: ignore

    async def unban(self, actor: Actor, user_id: int) -> User:
        ensure(require_admin(actor))
        async with self.db.transaction() as conn:
            target = await self._load_target(conn, user_id)
            ensure(can_unban(actor, target))
            if target.status == UserStatus.BANNED:
                await self.db.unban_user(conn, user_id)
                await self.db.log_moderation_action(conn, actor.id, "user", user_id, "unban")
            row = await self.db.get_user_by_id(conn, user_id)
        logger.info("user %s unbanned by %s", user_id, actor.id)
        return User.from_row(row)  # type: ignore

    async def delete_user(self, actor: Actor, user_id: int) -> None:
        ensure(require_admin(actor))
        async with self.db.transaction() as conn:
            target = await self._load_target(conn, user_id)
            ensure(can_delete_user(actor, target, await self.db.count_admins(conn)))
            await self.db.soft_delete_user(conn, user_id)
            await self.db.log_moderation_action(conn, actor.id, "user", user_id, "delete")
        logger.info("user %s deleted by %s", user_id, actor.id)

    async def list_page(self, request: PageRequest, **criteria) -> PageResult[User]:
        async with self.db.read() as conn:
            async def count():
                return await self.db.count_users(conn, **criteria)

            async def fetch(page: int, page_size: int):
                rows = await self.db.fetch_users(conn, (page - 1) * page_size, page_size, **criteria)
                return [User.from_row(row) for row in rows]

            return await paginate(count, fetch, request)

    async def resolve_username(self, username: str) -> Optional[int]:
        user = await self.get_user_by_username(username)
        if not user or user.is_deleted:
            return None
        return user.user_id

    async def delete_own_account(self, actor: Actor) -> None:
        """Soft-delete the caller's account. Their threads and posts stay."""
        async with self.db.transaction() as conn:
            user = await self._load_target(conn, actor.id)
            ensure(can_delete_own_account(user, await self.db.count_admins(conn)))
            await self.db.soft_delete_user(conn, user.user_id)
        logger.info("user %s deleted their own account", actor.id)

    async def _activity(self, conn: aiosqlite.Connection, user: User, limit: int) -> UserActivity:
        thread_rows, post_rows = await asyncio.gather(
            self.db.fetch_threads(conn, 0, limit, author_id=user.user_id),
            self.db.fetch_posts(conn, 0, limit, author_id=user.user_id),
        )
        return UserActivity(
            user=user,
            threads=[Thread.from_row(row) for row in thread_rows],
            posts=[Post.from_row(row) for row in post_rows],
        )

    async def get_profile(self, username: str) -> UserActivity:
        """Public profile: thread/post counts plus the newest few of each."""
        async with self.db.read() as conn:
            row = await self.db.get_user_by_username(conn, username)
            if not row or row["status"] == UserStatus.DELETED.value:
                raise NotFound("User not found")
            return await self._activity(conn, User.from_row(row), PROFILE_RECENT_LIMIT)

    async def get_user_activity(self, actor: Actor, user_id: int) -> UserActivity:
        # Deleted accounts stay inspectable here; their content is still on the forum.
        ensure(require_admin(actor))
        async with self.db.read() as conn:
            row = await self.db.get_user_by_id(conn, user_id)
            if not row:
                raise NotFound("User not found")
            return await self._activity(conn, User.from_row(row), ADMIN_ACTIVITY_LIMIT)
