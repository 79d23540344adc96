from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from ledgerline.exception import LedgerlineError, StorageFailure
from ledgerline.transaction.interfaces import IsolationLevel

from .base import StorageBackend

try:
    from psycopg import AsyncConnection
    from psycopg import Error as PsycopgError
    from psycopg.rows import dict_row
    from psycopg_pool import AsyncConnectionPool

    POSTGRES_ENABLED = True
except ModuleNotFoundError:
    POSTGRES_ENABLED = False
    AsyncConnection = type("Connection", (), {})  # type: ignore
    AsyncConnectionPool = type("Connection", (), {})  # type: ignore
    PsycopgError = type("Error", (Exception,), {})  # type: ignore


class PostgresBackend(StorageBackend):
    """Backend for a Postgres database"""

    scheme = "postgres"
    default_port = 5432
    KEYWORD_SUB = r"%(\1)s"

    def _setup_pool(self):
        if not POSTGRES_ENABLED:
            raise LedgerlineError(
                "Postgres driver not found. Try reinstalling Ledgerline: "
                "pip install ledgerline[postgres]"
            )
        self._pool = AsyncConnectionPool(
            self.full_dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            kwargs={"autocommit": True, "row_factory": dict_row},
            open=False,
        )

    async def open(self):
        """Open connections to the pool"""
        await self._pool.open()

    async def close(self):
        """Close connections to the pool"""
        await self._pool.close()

    @asynccontextmanager
    async def connection(
        self, timeout: Optional[float] = None
    ) -> AsyncIterator[AsyncConnection]:
        """Obtain a connection to the database

        Args:
            timeout (float, optional): Time before an error is raised on
                failure to connect. Defaults to `None`.

        Yields:
            Iterator[AsyncIterator[Connection]]: A database connection
        """
        async with self._pool.connection(timeout=timeout) as conn:
            yield conn

    async def begin(self, connection: Any, isolation: IsolationLevel):
        await self.execute(
            connection, f"BEGIN ISOLATION LEVEL {isolation.value}"
        )

    async def _run_sql(
        self,
        connection: Any,
        query: str,
        params: Optional[Dict[str, Any]] = None,
        method: Optional[str] = None,
    ):
        try:
            cursor = await connection.execute(query, params)
            if method is None:
                return None
            return await getattr(cursor, method)()
        except PsycopgError as e:
            raise StorageFailure(f"Postgres error: {e}") from e
