"""Module store: string key-value persistence for identity state."""
#
# PURPOSE:
# IdentityManager needs a tiny amount of local state (keypair, salt, address,
# randomness, epoch bound, provisioning markers). This module gives it a
# string->string store with two backends:
# - MemoryKeyValueStore: process-local dict, for tests and ephemeral sessions
# - SqliteKeyValueStore: aiosqlite-backed file under the storage base_dir
#
# KEY CONCEPTS:
# - Async API on both backends so callers never branch on the backend
# - Lazy init: the sqlite connection and table are created on first use
# - No transactions across keys: read-modify-write is not isolated, one active
#   session per storage scope
#
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

import aiosqlite

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self) -> List[str]: ...


class MemoryKeyValueStore:
    """Dict-backed store. Contents vanish with the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> List[str]:
        return list(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class SqliteKeyValueStore:
    """
    Persistent store in a single-table SQLite file.

    Usage:
        store = SqliteKeyValueStore(config.storage.db_path)
        await store.set("k", "v")
        ...
        await store.close()
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        # asyncio.Lock must be created inside a running loop
        self._init_lock: Optional[asyncio.Lock] = None

    async def init(self) -> None:
        if self._db is not None:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()

        async with self._init_lock:
            if self._db is not None:
                return
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            try:
                db = await aiosqlite.connect(self.db_path, timeout=5.0)
                await db.execute("PRAGMA journal_mode=WAL;")
                await db.execute("PRAGMA busy_timeout=5000;")
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                    """
                )
                await db.commit()
            except Exception as e:
                logger.error(f"Key-value store init failed: {e}")
                raise
            self._db = db
            logger.info(f"Key-value store opened at {self.db_path}")

    async def _conn(self) -> aiosqlite.Connection:
        await self.init()
        assert self._db is not None
        return self._db

    async def get(self, key: str) -> Optional[str]:
        db = await self._conn()
        async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        db = await self._conn()
        await db.execute(
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        await db.commit()

    async def delete(self, key: str) -> None:
        db = await self._conn()
        await db.execute("DELETE FROM kv WHERE key = ?", (key,))
        await db.commit()

    async def keys(self) -> List[str]:
        db = await self._conn()
        async with db.execute("SELECT key FROM kv ORDER BY key") as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("Key-value store closed.")
