import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from utils import timestamp

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE COLLATE NOCASE,
    email TEXT NOT NULL UNIQUE COLLATE NOCASE,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'USER' CHECK (role IN ('USER', 'ADMIN')),
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'banned', 'deleted')),
    ban_reason TEXT,
    banned_until REAL,
    banned_by INTEGER REFERENCES users(user_id) ON DELETE SET NULL,
    created_at REAL NOT NULL,
    last_activity REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS categories (
    category_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
    description TEXT NOT NULL DEFAULT '',
    color TEXT,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS threads (
    thread_id INTEGER PRIMARY KEY AUTOINCREMENT,
    author_id INTEGER NOT NULL REFERENCES users(user_id),
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    is_locked INTEGER NOT NULL DEFAULT 0,
    current_version INTEGER NOT NULL DEFAULT 1 CHECK (current_version >= 1),
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS thread_categories (
    thread_id INTEGER NOT NULL REFERENCES threads(thread_id) ON DELETE CASCADE,
    category_id INTEGER NOT NULL REFERENCES categories(category_id) ON DELETE CASCADE,
    PRIMARY KEY (thread_id, category_id)
);

CREATE TABLE IF NOT EXISTS posts (
    post_id INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id INTEGER NOT NULL REFERENCES threads(thread_id) ON DELETE CASCADE,
    author_id INTEGER NOT NULL REFERENCES users(user_id),
    content TEXT NOT NULL,
    current_version INTEGER NOT NULL DEFAULT 1 CHECK (current_version >= 1),
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS revisions (
    revision_id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL CHECK (entity_type IN ('thread', 'post')),
    entity_id INTEGER NOT NULL,
    version INTEGER NOT NULL CHECK (version >= 1),
    title TEXT,
    content TEXT NOT NULL,
    editor_id INTEGER,
    snapshot_at REAL NOT NULL,
    UNIQUE (entity_type, entity_id, version)
);

CREATE TABLE IF NOT EXISTS moderation_log (
    log_id INTEGER PRIMARY KEY AUTOINCREMENT,
    moderator_id INTEGER NOT NULL,
    target_type TEXT NOT NULL,
    target_id INTEGER NOT NULL,
    action TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    timestamp REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_threads_created ON threads(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_threads_author ON threads(author_id);
CREATE INDEX IF NOT EXISTS idx_posts_thread ON posts(thread_id, created_at);
CREATE INDEX IF NOT EXISTS idx_posts_author ON posts(author_id);
CREATE INDEX IF NOT EXISTS idx_thread_categories_category ON thread_categories(category_id);
CREATE INDEX IF NOT EXISTS idx_users_role_status ON users(role, status);
CREATE INDEX IF NOT EXISTS idx_moderation_log_timestamp ON moderation_log(timestamp DESC);
"""

THREAD_COLUMNS = """
    t.*,
    u.username AS author_name,
    (SELECT COUNT(*) FROM posts p2 WHERE p2.thread_id = t.thread_id) AS post_count,
    (SELECT GROUP_CONCAT(tc.category_id) FROM thread_categories tc
     WHERE tc.thread_id = t.thread_id) AS category_ids
"""

POST_COLUMNS = """
    p.*,
    u.username AS author_name,
    t.title AS thread_title
"""

USER_COLUMNS = """
    u.*,
    (SELECT COUNT(*) FROM threads t2 WHERE t2.author_id = u.user_id) AS thread_count,
    (SELECT COUNT(*) FROM posts p2 WHERE p2.author_id = u.user_id) AS post_count
"""


def _contains_ci(haystack: Optional[str], needle: Optional[str]) -> int:
    """Case-insensitive literal substring test, registered as SQL contains_ci()."""
    if haystack is None or needle is None:
        return 0
    return int(needle.casefold() in haystack.casefold())


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _thread_where(text: Optional[str] = None, since: Optional[float] = None,
                  category_ids: Sequence[int] = (), author_id: Optional[int] = None,
                  locked: Optional[bool] = None) -> tuple[str, list]:
    clauses, params = [], []
    if text:
        clauses.append("(contains_ci(t.title, ?) OR contains_ci(t.content, ?))")
        params.extend([text, text])
    if since is not None:
        clauses.append("t.created_at >= ?")
        params.append(since)
    if category_ids:
        clauses.append(
            "EXISTS (SELECT 1 FROM thread_categories tc WHERE tc.thread_id = t.thread_id "
            f"AND tc.category_id IN ({_placeholders(category_ids)}))"
        )
        params.extend(category_ids)
    if author_id is not None:
        clauses.append("t.author_id = ?")
        params.append(author_id)
    if locked is not None:
        clauses.append("t.is_locked = ?")
        params.append(int(locked))
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


def _post_where(text: Optional[str] = None, since: Optional[float] = None,
                category_ids: Sequence[int] = (), author_id: Optional[int] = None,
                thread_id: Optional[int] = None) -> tuple[str, list]:
    clauses, params = [], []
    if text:
        clauses.append("contains_ci(p.content, ?)")
        params.append(text)
    if since is not None:
        clauses.append("p.created_at >= ?")
        params.append(since)
    if category_ids:
        clauses.append(
            "EXISTS (SELECT 1 FROM thread_categories tc WHERE tc.thread_id = p.thread_id "
            f"AND tc.category_id IN ({_placeholders(category_ids)}))"
        )
        params.extend(category_ids)
    if author_id is not None:
        clauses.append("p.author_id = ?")
        params.append(author_id)
    if thread_id is not None:
        clauses.append("p.thread_id = ?")
        params.append(thread_id)
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


def _user_where(username: Optional[str] = None, search: Optional[str] = None,
                status: Optional[str] = None, role: Optional[str] = None) -> tuple[str, list]:
    clauses, params = ["u.status != 'deleted'"], []
    if username:
        clauses.append("contains_ci(u.username, ?)")
        params.append(username)
    if search:
        clauses.append("(contains_ci(u.username, ?) OR contains_ci(u.email, ?))")
        params.extend([search, search])
    if status is not None:
        clauses.append("u.status = ?")
        params.append(status)
    if role is not None:
        clauses.append("u.role = ?")
        params.append(role)
    return " WHERE " + " AND ".join(clauses), params


class DatabaseManager:
    """Store handle for one SQLite database file.

    Every write the forum performs goes through ``transaction()``, which opens
    its own connection and takes SQLite's write lock up front
    (``BEGIN IMMEDIATE``), so writers are serialised and a read-check-write
    sequence inside one transaction cannot interleave with another writer.
    Listings use ``read()``, a deferred transaction that pins one snapshot for
    all the queries issued on that connection.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    async def get_connection(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path, isolation_level=None, timeout=10.0)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.create_function("contains_ci", 2, _contains_ci, deterministic=True)
        return conn

    async def initialize(self):
        conn = await self.get_connection()
        try:
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.executescript(SCHEMA)
        finally:
            await conn.close()
        logger.info("database ready at %s", self.db_path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self.get_connection()
        try:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")
        finally:
            await conn.close()

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self.get_connection()
        try:
            await conn.execute("BEGIN")
            try:
                yield conn
            finally:
                await conn.execute("COMMIT")
        finally:
            await conn.close()

    async def execute_query(self, query: str, params: tuple = (), fetch_one: bool = False):
        conn = await self.get_connection()
        try:
            cursor = await conn.execute(query, params)
            if fetch_one:
                result = await cursor.fetchone()
            else:
                result = await cursor.fetchall()
            await cursor.close()
            return result
        finally:
            await conn.close()

    async def ping(self) -> bool:
        try:
            await self.execute_query("SELECT 1", fetch_one=True)
            return True
        except aiosqlite.Error:
            logger.error("database ping failed", exc_info=True)
            return False

    @staticmethod
    async def _fetch_one(conn: aiosqlite.Connection, query: str, params: Sequence[Any] = ()) -> Optional[Dict]:
        cursor = await conn.execute(query, tuple(params))
        row = await cursor.fetchone()
        await cursor.close()
        return dict(row) if row else None

    @staticmethod
    async def _fetch_all(conn: aiosqlite.Connection, query: str, params: Sequence[Any] = ()) -> List[Dict]:
        rows = await conn.execute_fetchall(query, tuple(params))
        return [dict(row) for row in rows]

    @staticmethod
    async def _count(conn: aiosqlite.Connection, query: str, params: Sequence[Any] = ()) -> int:
        cursor = await conn.execute(query, tuple(params))
        row = await cursor.fetchone()
        await cursor.close()
        return int(row[0]) if row else 0

    # -- users -----------------------------------------------------------------

    async def get_user_by_id(self, conn: aiosqlite.Connection, user_id: int) -> Optional[Dict]:
        return await self._fetch_one(conn, f"SELECT {USER_COLUMNS} FROM users u WHERE u.user_id = ?", (user_id,))

    async def get_user_by_username(self, conn: aiosqlite.Connection, username: str) -> Optional[Dict]:
        return await self._fetch_one(conn, f"SELECT {USER_COLUMNS} FROM users u WHERE u.username = ?", (username,))

    async def check_user_exists(self, conn: aiosqlite.Connection, username: str, email: str) -> bool:
        existing = await self._fetch_one(
            conn, "SELECT user_id FROM users WHERE username = ? OR email = ?", (username, email)
        )
        return existing is not None

    async def create_user(self, conn: aiosqlite.Connection, username: str, email: str,
                          password_hash: str, role: str = "USER") -> int:
        current_time = timestamp()
        cursor = await conn.execute("""
            INSERT INTO users (username, email, password_hash, role, created_at, last_activity, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (username, email, password_hash, role, current_time, current_time, current_time))
        return cursor.lastrowid  # type: ignore

    async def touch_user(self, conn: aiosqlite.Connection, user_id: int):
        await conn.execute("UPDATE users SET last_activity = ? WHERE user_id = ?", (timestamp(), user_id))

    async def count_admins(self, conn: aiosqlite.Connection) -> int:
        """Administrators who can still act: not deleted and not under an active ban."""
        return await self._count(conn, """
            SELECT COUNT(*) FROM users
            WHERE role = 'ADMIN' AND status != 'deleted'
              AND NOT (status = 'banned' AND (banned_until IS NULL OR banned_until > ?))
        """, (timestamp(),))

    async def set_user_role(self, conn: aiosqlite.Connection, user_id: int, role: str):
        await conn.execute(
            "UPDATE users SET role = ?, updated_at = ? WHERE user_id = ?", (role, timestamp(), user_id)
        )

    async def ban_user(self, conn: aiosqlite.Connection, user_id: int, banned_by: int,
                       reason: Optional[str], until: Optional[float]):
        await conn.execute("""
            UPDATE users
            SET status = 'banned', ban_reason = ?, banned_until = ?, banned_by = ?, updated_at = ?
            WHERE user_id = ?
        """, (reason, until, banned_by, timestamp(), user_id))

    async def unban_user(self, conn: aiosqlite.Connection, user_id: int):
        await conn.execute("""
            UPDATE users
            SET status = 'active', ban_reason = NULL, banned_until = NULL, banned_by = NULL, updated_at = ?
            WHERE user_id = ?
        """, (timestamp(), user_id))

    async def soft_delete_user(self, conn: aiosqlite.Connection, user_id: int):
        await conn.execute("""
            UPDATE users
            SET status = 'deleted', ban_reason = NULL, banned_until = NULL, banned_by = NULL, updated_at = ?
            WHERE user_id = ?
        """, (timestamp(), user_id))

    async def count_users(self, conn: aiosqlite.Connection, **criteria) -> int:
        where, params = _user_where(**criteria)
        return await self._count(conn, f"SELECT COUNT(*) FROM users u{where}", params)

    async def fetch_users(self, conn: aiosqlite.Connection, offset: int, limit: int, **criteria) -> List[Dict]:
        where, params = _user_where(**criteria)
        return await self._fetch_all(conn, f"""
            SELECT {USER_COLUMNS} FROM users u{where}
            ORDER BY u.created_at DESC, u.user_id DESC
            LIMIT ? OFFSET ?
        """, [*params, limit, offset])

    # -- categories ----------------------------------------------------------

    async def create_category(self, conn: aiosqlite.Connection, name: str, description: str,
                              color: Optional[str]) -> int:
        cursor = await conn.execute(
            "INSERT INTO categories (name, description, color, created_at) VALUES (?, ?, ?, ?)",
            (name, description, color, timestamp()),
        )
        return cursor.lastrowid  # type: ignore

    async def get_category(self, conn: aiosqlite.Connection, category_id: int) -> Optional[Dict]:
        return await self._fetch_one(conn, """
            SELECT c.*, (SELECT COUNT(*) FROM thread_categories tc WHERE tc.category_id = c.category_id)
                   AS thread_count
            FROM categories c WHERE c.category_id = ?
        """, (category_id,))

    async def get_all_categories(self, conn: aiosqlite.Connection) -> List[Dict]:
        return await self._fetch_all(conn, """
            SELECT c.*, (SELECT COUNT(*) FROM thread_categories tc WHERE tc.category_id = c.category_id)
                   AS thread_count
            FROM categories c ORDER BY c.name
        """)

    async def existing_category_ids(self, conn: aiosqlite.Connection, category_ids: Sequence[int]) -> set[int]:
        if not category_ids:
            return set()
        rows = await self._fetch_all(
            conn,
            f"SELECT category_id FROM categories WHERE category_id IN ({_placeholders(category_ids)})",
            category_ids,
        )
        return {row["category_id"] for row in rows}

    # -- threads -------------------------------------------------------------

    async def get_thread_by_id(self, conn: aiosqlite.Connection, thread_id: int) -> Optional[Dict]:
        return await self._fetch_one(conn, f"""
            SELECT {THREAD_COLUMNS}
            FROM threads t JOIN users u ON u.user_id = t.author_id
            WHERE t.thread_id = ?
        """, (thread_id,))

    async def create_thread(self, conn: aiosqlite.Connection, author_id: int, title: str, content: str,
                            category_ids: Sequence[int] = ()) -> int:
        current_time = timestamp()
        cursor = await conn.execute("""
            INSERT INTO threads (author_id, title, content, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (author_id, title, content, current_time, current_time))
        thread_id = cursor.lastrowid
        if category_ids:
            await conn.executemany(
                "INSERT INTO thread_categories (thread_id, category_id) VALUES (?, ?)",
                [(thread_id, category_id) for category_id in category_ids],
            )
        return thread_id  # type: ignore

    async def update_thread_lock_status(self, conn: aiosqlite.Connection, thread_id: int, locked: bool):
        await conn.execute(
            "UPDATE threads SET is_locked = ?, updated_at = ? WHERE thread_id = ?",
            (int(locked), timestamp(), thread_id),
        )

    async def get_thread_post_ids(self, conn: aiosqlite.Connection, thread_id: int) -> List[int]:
        rows = await self._fetch_all(conn, "SELECT post_id FROM posts WHERE thread_id = ?", (thread_id,))
        return [row["post_id"] for row in rows]

    async def count_threads(self, conn: aiosqlite.Connection, **criteria) -> int:
        where, params = _thread_where(**criteria)
        return await self._count(conn, f"SELECT COUNT(*) FROM threads t{where}", params)

    async def fetch_threads(self, conn: aiosqlite.Connection, offset: int, limit: int, **criteria) -> List[Dict]:
        where, params = _thread_where(**criteria)
        return await self._fetch_all(conn, f"""
            SELECT {THREAD_COLUMNS}
            FROM threads t JOIN users u ON u.user_id = t.author_id{where}
            ORDER BY t.created_at DESC, t.thread_id DESC
            LIMIT ? OFFSET ?
        """, [*params, limit, offset])

    # -- posts ---------------------------------------------------------------

    async def get_post_by_id(self, conn: aiosqlite.Connection, post_id: int) -> Optional[Dict]:
        return await self._fetch_one(conn, f"""
            SELECT {POST_COLUMNS}
            FROM posts p
            JOIN users u ON u.user_id = p.author_id
            JOIN threads t ON t.thread_id = p.thread_id
            WHERE p.post_id = ?
        """, (post_id,))

    async def create_post(self, conn: aiosqlite.Connection, thread_id: int, author_id: int, content: str) -> int:
        current_time = timestamp()
        cursor = await conn.execute("""
            INSERT INTO posts (thread_id, author_id, content, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (thread_id, author_id, content, current_time, current_time))
        return cursor.lastrowid  # type: ignore

    async def count_posts(self, conn: aiosqlite.Connection, **criteria) -> int:
        where, params = _post_where(**criteria)
        return await self._count(conn, f"SELECT COUNT(*) FROM posts p{where}", params)

    async def fetch_posts(self, conn: aiosqlite.Connection, offset: int, limit: int,
                          newest_first: bool = True, **criteria) -> List[Dict]:
        where, params = _post_where(**criteria)
        direction = "DESC" if newest_first else "ASC"
        return await self._fetch_all(conn, f"""
            SELECT {POST_COLUMNS}
            FROM posts p
            JOIN users u ON u.user_id = p.author_id
            JOIN threads t ON t.thread_id = p.thread_id{where}
            ORDER BY p.created_at {direction}, p.post_id {direction}
            LIMIT ? OFFSET ?
        """, [*params, limit, offset])

    # -- versioned rows --------------------------------------------------------

    async def apply_edit(self, conn: aiosqlite.Connection, table: str, id_column: str, entity_id: int,
                         changes: Dict[str, Any], read_version: int) -> bool:
        """Write ``changes`` and bump the version, only if nobody bumped it first."""
        assignments = [f"{column} = ?" for column in changes]
        values = list(changes.values())
        cursor = await conn.execute(f"""
            UPDATE {table}
            SET {', '.join(assignments + ['current_version = current_version + 1', 'updated_at = ?'])}
            WHERE {id_column} = ? AND current_version = ?
        """, (*values, timestamp(), entity_id, read_version))
        return cursor.rowcount == 1

    async def delete_row(self, conn: aiosqlite.Connection, table: str, id_column: str, entity_id: int):
        await conn.execute(f"DELETE FROM {table} WHERE {id_column} = ?", (entity_id,))

    # -- moderation log ------------------------------------------------------

    async def log_moderation_action(self, conn: aiosqlite.Connection, moderator_id: int, target_type: str,
                                    target_id: int, action: str, reason: str = ""):
        await conn.execute("""
            INSERT INTO moderation_log (moderator_id, target_type, target_id, action, reason, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (moderator_id, target_type, target_id, action, reason or "", timestamp()))

    async def count_moderation_log(self, conn: aiosqlite.Connection) -> int:
        return await self._count(conn, "SELECT COUNT(*) FROM moderation_log")

    async def fetch_moderation_log(self, conn: aiosqlite.Connection, offset: int, limit: int) -> List[Dict]:
        return await self._fetch_all(conn, """
            SELECT ml.*, u.username AS moderator_name
            FROM moderation_log ml
            LEFT JOIN users u ON ml.moderator_id = u.user_id
            ORDER BY ml.timestamp DESC, ml.log_id DESC
            LIMIT ? OFFSET ?
        """, (limit, offset))

    # -- statistics ----------------------------------------------------------

    async def get_forum_statistics(self) -> Dict:
        """Counts for the admin dashboard, read from one snapshot."""
        async with self.read() as conn:
            return {
                "user_count": await self._count(conn, "SELECT COUNT(*) FROM users WHERE status != 'deleted'"),
                "category_count": await self._count(conn, "SELECT COUNT(*) FROM categories"),
                "locked_thread_count": await self._count(conn, "SELECT COUNT(*) FROM threads WHERE is_locked = 1"),
                "thread_count": await self._count(conn, "SELECT COUNT(*) FROM threads"),
                "post_count": await self._count(conn, "SELECT COUNT(*) FROM posts"),
            }
