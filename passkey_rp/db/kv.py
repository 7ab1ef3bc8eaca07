# passkey_rp/db/kv.py
from __future__ import annotations
import asyncio, logging, sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiosqlite

from passkey_rp.core.errors import StorageUnavailable

log = logging.getLogger(__name__)

# Namespaces the ceremony core persists into.
USERS = "users"     # username -> user id
STATE = "state"     # user id -> tagged ceremony JSON
KEYS = "keys"       # user id -> JSON list of credentials
OWNERS = "owners"   # credential id -> user id


class Database:
    """
    Durable key-value store on a single aiosqlite connection.

    Each namespace behaves like an independent store with single-key atomic
    operations; no cross-key transactions are offered.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = str(path or ":memory:")
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self, path: Optional[str] = None):
        """
        Initialize (or re-initialize) the DB connection.
        If `path` is provided and differs from the current path, the connection is reopened.
        """
        if path and str(path) != self.path:
            await self.close()
            self.path = str(path)

        if self._conn is None:
            try:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                self._conn = await aiosqlite.connect(self.path)
                self._conn.row_factory = aiosqlite.Row
                # Pragmas: durability + concurrency
                await self._conn.execute("PRAGMA journal_mode=WAL;")
                await self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS kv (
                  store TEXT NOT NULL,
                  key   TEXT NOT NULL,
                  value TEXT NOT NULL,
                  updated_at INTEGER NOT NULL DEFAULT (strftime('%s','now')),
                  PRIMARY KEY (store, key)
                );
                """)
                await self._conn.commit()
            except (aiosqlite.Error, sqlite3.Error, OSError) as e:
                log.exception("failed to open store at %s", self.path)
                self._conn = None
                raise StorageUnavailable(f"cannot open store: {e}") from e
            log.info("KV store ready at %s", self.path)

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None

    def store(self, name: str) -> "KVStore":
        return KVStore(self, name)

    # --- low-level helpers -------------------------------------------------

    async def _conn_or_init(self) -> aiosqlite.Connection:
        if not self._conn:
            async with self._lock:
                if not self._conn:
                    await self.init()
        return self._conn  # type: ignore[return-value]

    async def fetch_value(self, store: str, key: str) -> Optional[str]:
        conn = await self._conn_or_init()
        async with self._lock:
            try:
                cur = await conn.execute("SELECT value FROM kv WHERE store=? AND key=?", (store, key))
                row = await cur.fetchone()
                await cur.close()
            except (aiosqlite.Error, sqlite3.Error) as e:
                log.exception("read failed store=%s", store)
                raise StorageUnavailable(str(e)) from e
        return row["value"] if row else None

    async def write_value(self, store: str, key: str, value: str, *, only_if_absent: bool = False) -> bool:
        conn = await self._conn_or_init()
        if only_if_absent:
            sql = "INSERT OR IGNORE INTO kv(store, key, value) VALUES(?,?,?)"
        else:
            sql = (
                "INSERT INTO kv(store, key, value) VALUES(?,?,?) "
                "ON CONFLICT(store, key) DO UPDATE SET value=excluded.value, updated_at=strftime('%s','now')"
            )
        async with self._lock:
            try:
                cur = await conn.execute(sql, (store, key, value))
                changed = cur.rowcount
                await cur.close()
                await conn.commit()
            except (aiosqlite.Error, sqlite3.Error) as e:
                log.exception("write failed store=%s", store)
                raise StorageUnavailable(str(e)) from e
        return changed > 0

    async def pop_value(self, store: str, key: str) -> Optional[str]:
        """Delete one key and hand back the value it held, as a single statement."""
        conn = await self._conn_or_init()
        async with self._lock:
            try:
                cur = await conn.execute(
                    "DELETE FROM kv WHERE store=? AND key=? RETURNING value", (store, key)
                )
                row = await cur.fetchone()
                await cur.close()
                await conn.commit()
            except (aiosqlite.Error, sqlite3.Error) as e:
                log.exception("delete failed store=%s", store)
                raise StorageUnavailable(str(e)) from e
        return row["value"] if row else None

    async def items(self, store: str) -> List[Tuple[str, str]]:
        conn = await self._conn_or_init()
        async with self._lock:
            try:
                cur = await conn.execute("SELECT key, value FROM kv WHERE store=? ORDER BY key", (store,))
                rows = await cur.fetchall()
                await cur.close()
            except (aiosqlite.Error, sqlite3.Error) as e:
                raise StorageUnavailable(str(e)) from e
        return [(r["key"], r["value"]) for r in rows]


class KVStore:
    """One named namespace of a Database: get/put-by-key, nothing more."""

    def __init__(self, db: Database, name: str):
        self._db = db
        self.name = name

    async def get(self, key: str) -> Optional[str]:
        return await self._db.fetch_value(self.name, key)

    async def put(self, key: str, value: str) -> None:
        await self._db.write_value(self.name, key, value)

    async def put_if_absent(self, key: str, value: str) -> bool:
        """Create-if-absent. Returns False when the key already held a value."""
        return await self._db.write_value(self.name, key, value, only_if_absent=True)

    async def take(self, key: str) -> Optional[str]:
        """Read and delete in one step; a racing second take sees None."""
        return await self._db.pop_value(self.name, key)

    async def dump(self) -> Dict[str, str]:
        return dict(await self._db.items(self.name))
