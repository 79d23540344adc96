from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from ledgerline.exception import LedgerlineError, StorageFailure
from ledgerline.transaction.interfaces import IsolationLevel

from .base import StorageBackend

try:
    import aiosqlite

    AIOSQLITE_ENABLED = True
except ModuleNotFoundError:
    AIOSQLITE_ENABLED = False

logger = logging.getLogger(__name__)


class SQLiteBackend(StorageBackend):
    """Backend for a SQLite database file

    Keeps a small pool of autocommit connections so that independent
    transactions (REQUIRES_NEW) run on their own connection. SQLite has one
    writer at a time, so concurrent writers wait up to ``busy_timeout``.

    SERIALIZABLE starts with ``BEGIN IMMEDIATE``. READ_UNCOMMITTED turns on
    ``PRAGMA read_uncommitted``, which only matters for shared-cache
    connections. The other levels use ``BEGIN DEFERRED``.
    """

    scheme = "sqlite"
    KEYWORD_SUB = r":\1"

    def __init__(
        self, db_path: str, max_size: int = 5, busy_timeout: float = 5.0
    ):
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._idle: List[Any] = []
        self._closed = False
        super().__init__(max_size=max_size)

    def _setup_pool(self):
        if not AIOSQLITE_ENABLED:
            raise LedgerlineError(
                "SQLite driver not found. Try installing aiosqlite: "
                "pip install aiosqlite"
            )
        self._semaphore = asyncio.Semaphore(self.max_size)

    @property
    def dsn(self) -> str:
        return f"{self.scheme}:///{self._db_path}"

    full_dsn = dsn

    @property
    def db_path(self) -> str:
        return self._db_path

    async def _connect(self):
        try:
            conn = await aiosqlite.connect(
                self._db_path,
                timeout=self._busy_timeout,
                isolation_level=None,
            )
            conn.row_factory = aiosqlite.Row
            if self._db_path != ":memory:":
                await conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as e:
            raise StorageFailure(
                f"Could not connect to SQLite database {self._db_path}: {e}"
            ) from e
        logger.debug("Opened SQLite connection to %s", self._db_path)
        return conn

    async def open(self):
        """Open the first connection of the pool"""
        self._closed = False
        if not self._idle:
            self._idle.append(await self._connect())

    async def close(self):
        """Close the idle connections of the pool"""
        self._closed = True
        while self._idle:
            conn = self._idle.pop()
            await conn.close()

    @asynccontextmanager
    async def connection(self, timeout: Optional[float] = None):
        """Obtain a connection to the database

        Waits for a free slot when ``max_size`` connections are in use.

        Args:
            timeout (float, optional): Time before an error is raised while
                waiting for a free connection. Defaults to `None`.

        Yields:
            Iterator[AsyncIterator[Connection]]: A database connection
        """
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout)
        except asyncio.TimeoutError:
            raise StorageFailure(
                f"Timeout waiting for a connection to {self._db_path}"
            )

        conn = None
        try:
            conn = self._idle.pop() if self._idle else await self._connect()
            yield conn
        finally:
            if conn is not None:
                await self._return(conn)
            self._semaphore.release()

    async def _return(self, conn) -> None:
        if conn.in_transaction:
            logger.warning(
                "Connection returned to the pool inside a transaction, "
                "rolling back"
            )
            try:
                await conn.rollback()
            except sqlite3.Error as e:
                logger.warning("Discarding broken SQLite connection: %s", e)
                await conn.close()
                return
        if self._closed:
            await conn.close()
        else:
            self._idle.append(conn)

    async def begin(self, connection: Any, isolation: IsolationLevel):
        read_uncommitted = int(isolation is IsolationLevel.READ_UNCOMMITTED)
        await self.execute(
            connection, f"PRAGMA read_uncommitted = {read_uncommitted}"
        )
        if isolation is IsolationLevel.SERIALIZABLE:
            await self.execute(connection, "BEGIN IMMEDIATE")
        else:
            await self.execute(connection, "BEGIN DEFERRED")

    async def _run_sql(
        self,
        connection: Any,
        query: str,
        params: Optional[Dict[str, Any]] = None,
        method: Optional[str] = None,
    ):
        try:
            async with connection.execute(query, params or {}) as cursor:
                if method is None:
                    return None
                raw = await getattr(cursor, method)()
        except (sqlite3.Error, OverflowError) as e:
            raise StorageFailure(f"SQLite error: {e}") from e

        if method == "fetchone":
            return dict(raw) if raw is not None else None
        return [dict(row) for row in raw]
