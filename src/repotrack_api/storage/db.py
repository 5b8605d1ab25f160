"""SQLite connection shared by the project store and the default job queue.

``REPOTRACK_DATABASE_URL`` selects the file (``sqlite:///path/to/file.db``);
``sqlite:///:memory:`` works for throwaway databases.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from repotrack_api.config import settings

logger = logging.getLogger(__name__)

_SQLITE_PREFIX = "sqlite:///"
_SCHEMA = Path(__file__).with_name("schema.sql")


def parse_database_url(url: str) -> str:
    """File path of a ``sqlite:///`` URL; other schemes raise ValueError."""
    if not url.startswith(_SQLITE_PREFIX):
        raise ValueError(f"Unsupported database URL: {url}. Only sqlite:/// is supported")
    path = url.removeprefix(_SQLITE_PREFIX)
    if not path:
        raise ValueError("Database URL is missing a path")
    return path


class Database:
    """One aiosqlite connection in autocommit mode.

    Single statements commit on their own. Anything that reads and then writes
    goes through `transaction()`, which holds a process-local lock and opens
    ``BEGIN IMMEDIATE`` so SQLite's write lock is taken before the read.
    """

    def __init__(self, database_url: str | None = None, *, db_path: Path | None = None) -> None:
        if db_path is not None:
            database_url = f"{_SQLITE_PREFIX}{db_path}"
        self._path = parse_database_url(database_url or settings.database_url or "")
        self._connection: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()
        self._cleanups: set[asyncio.Task[None]] = set()

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_memory(self) -> bool:
        return self._path == ":memory:"

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Database not connected")
        return self._connection

    async def connect(self) -> None:
        if not self.is_memory:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(self._path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        if not self.is_memory:
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.execute("PRAGMA busy_timeout = 5000")
        self._connection = conn

    async def disconnect(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def initialize(self) -> None:
        """Create missing tables and indexes. Idempotent."""
        if self._connection is None:
            await self.connect()
        await self.connection.executescript(_SCHEMA.read_text())

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[aiosqlite.Connection]:
        conn = self.connection
        await self._tx_lock.acquire()
        begin = asyncio.ensure_future(conn.execute("BEGIN IMMEDIATE"))
        try:
            await asyncio.shield(begin)
        except asyncio.CancelledError:
            # The BEGIN still runs on the connection thread once the write
            # lock frees; the lock stays held until it has been rolled back
            cleanup = asyncio.create_task(self._abandon(begin))
            self._cleanups.add(cleanup)
            cleanup.add_done_callback(self._cleanups.discard)
            raise
        except BaseException:
            self._tx_lock.release()
            raise

        try:
            yield conn
        except BaseException:
            await conn.execute("ROLLBACK")
            raise
        else:
            await conn.execute("COMMIT")
        finally:
            self._tx_lock.release()

    async def _abandon(self, begin: asyncio.Future[aiosqlite.Cursor]) -> None:
        try:
            try:
                await begin
            except aiosqlite.Error as e:
                logger.debug("Abandoned BEGIN did not start a transaction: %s", e)
                return
            await self.connection.execute("ROLLBACK")
        finally:
            self._tx_lock.release()


_db: Database | None = None


async def get_db() -> Database:
    """Process-wide database, connected and migrated on first use."""
    global _db
    if _db is None:
        db = Database()
        await db.initialize()
        _db = db
    return _db


async def reset_db() -> None:
    """Close the process-wide database; the next `get_db` reopens it."""
    global _db
    if _db is not None:
        await _db.disconnect()
        _db = None
