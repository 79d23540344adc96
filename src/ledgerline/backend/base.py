from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, Dict, List, Optional, Set, Type
from urllib.parse import urlparse

from ledgerline.exception import LedgerlineError
from ledgerline.transaction.interfaces import IsolationLevel

DOLLAR_KEYWORD = re.compile(r"\$([a-z][a-z0-9_]*)")


@lru_cache(maxsize=256)
def convert_sql_params(query: str, keyword_sub: str) -> str:
    """Rewrite `$name` placeholders into a driver's keyword param style"""
    return DOLLAR_KEYWORD.sub(keyword_sub, query)


@dataclass
class ConnectionArgs:
    """Where a database server lives and how to log into it"""

    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None
    db: Optional[str] = None
    query: str = ""

    @classmethod
    def parse(cls, dsn: str) -> ConnectionArgs:
        parts = urlparse(dsn)
        try:
            port = parts.port
        except ValueError as e:
            raise LedgerlineError(f"port: {e}") from e
        return cls(
            host=parts.hostname or "localhost",
            port=port,
            user=parts.username,
            password=parts.password or None,
            db=parts.path.lstrip("/") or None,
            query=parts.query,
        )

    def merge(self, **explicit: Any) -> ConnectionArgs:
        """Explicitly passed values win over the ones parsed from a DSN"""
        explicit = {
            key: value for key, value in explicit.items() if value is not None
        }
        return replace(self, **explicit)

    def validate(self) -> None:
        if self.port is not None and (
            not isinstance(self.port, int) or self.port not in range(0, 65536)
        ):
            raise LedgerlineError(
                "port: must be an integer between 0 and 65535"
            )
        if self.host is not None and (
            not isinstance(self.host, str) or not self.host
        ):
            raise LedgerlineError(
                "host: must be a string at least 1 character long"
            )
        if self.password is not None and (
            not isinstance(self.password, str) or not self.password
        ):
            raise LedgerlineError(
                "password: must be a string at least 1 character long"
            )

    def render(self, scheme: str, masked: bool = True) -> str:
        """Build a DSN, hiding the password unless ``masked`` is off"""
        auth = self.user or ""
        if self.password:
            auth += ":..." if masked else f":{self.password}"
        netloc = f"{auth}@{self.host or ''}" if auth else self.host or ""
        if self.port is not None:
            netloc += f":{self.port}"
        dsn = f"{scheme}://{netloc}/{self.db or ''}"
        if self.query and not masked:
            dsn += f"?{self.query}"
        return dsn


class StorageBackend(ABC):
    """
    Access to a transactional SQL database through a connection pool.

    Connections handed out by ``connection`` are in auto-commit mode.
    Transactions are started explicitly with ``begin`` and ended with
    ``commit`` or ``rollback``. Statements use `$name` keyword params.
    """

    scheme = "dummy"
    default_port: Optional[int] = None
    supports_savepoints = True
    KEYWORD_SUB: str = r"%(\1)s"
    registered_backends: Set[Type[StorageBackend]] = set()

    def __init_subclass__(cls) -> None:
        StorageBackend.registered_backends.add(cls)

    @abstractmethod
    async def open(self): ...

    @abstractmethod
    async def close(self): ...

    @abstractmethod
    def connection(self, timeout: Optional[float] = None): ...

    @abstractmethod
    async def begin(self, connection: Any, isolation: IsolationLevel): ...

    @abstractmethod
    async def _run_sql(
        self,
        connection: Any,
        query: str,
        params: Optional[Dict[str, Any]] = None,
        method: Optional[str] = None,
    ): ...

    def __init__(
        self,
        dsn: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        db: Optional[str] = None,
        query: Optional[str] = None,
        min_size: int = 1,
        max_size: Optional[int] = None,
    ) -> None:
        """Backend initialization.

        Values passed explicitly take precedence over the ones in ``dsn``.

        Args:
            dsn (str, optional): DB data source name
            host (str, optional): DB address URL or IP
            port (int, optional): DB port. Defaults to the backend's
                default port
            user (str, optional): DB user
            password (str, optional): DB password
            db (str, optional): DB name
            query (str, optional): DB query parameters. Defaults to None
            min_size (int, optional): Minimum number of connections in pool.
                Defaults to 1
            max_size (int, optional): Maximum number of connections in pool.
                Defaults to None

        Raises:
            LedgerlineError: If the connection arguments are invalid
        """
        if dsn and host:
            raise LedgerlineError("Cannot connect to DB using host and dsn")
        if max_size is not None and max_size < min_size:
            raise LedgerlineError("max_size: must not be less than min_size")

        args = ConnectionArgs.parse(dsn) if dsn else ConnectionArgs()
        self.args = args.merge(
            host=host,
            port=port,
            user=user,
            password=password,
            db=db,
            query=query,
        )
        if self.args.port is None:
            self.args.port = self.default_port
        self.args.validate()
        self._min_size = min_size
        self._max_size = max_size

        self._setup_pool()

    def _setup_pool(self):
        pass

    def __str__(self) -> str:
        return f"<{self.__class__.__name__} {self.dsn}>"

    @property
    def dsn(self) -> str:
        return self.args.render(self.scheme)

    @property
    def full_dsn(self) -> str:
        return self.args.render(self.scheme, masked=False)

    @property
    def min_size(self) -> int:
        return self._min_size

    @property
    def max_size(self) -> Optional[int]:
        return self._max_size

    async def commit(self, connection: Any) -> None:
        await self.execute(connection, "COMMIT")

    async def rollback(self, connection: Any) -> None:
        await self.execute(connection, "ROLLBACK")

    async def savepoint(self, connection: Any, name: str) -> None:
        await self.execute(connection, f"SAVEPOINT {name}")

    async def rollback_to_savepoint(self, connection: Any, name: str) -> None:
        await self.execute(connection, f"ROLLBACK TO SAVEPOINT {name}")

    async def release_savepoint(self, connection: Any, name: str) -> None:
        await self.execute(connection, f"RELEASE SAVEPOINT {name}")

    async def execute(
        self,
        connection: Any,
        query: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._run_sql(connection, self.prepare(query), params)

    async def fetch_one(
        self,
        connection: Any,
        query: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        return await self._run_sql(
            connection, self.prepare(query), params, "fetchone"
        )

    async def fetch_all(
        self,
        connection: Any,
        query: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        return (
            await self._run_sql(
                connection, self.prepare(query), params, "fetchall"
            )
            or []
        )

    def prepare(self, query: str) -> str:
        return convert_sql_params(query, self.KEYWORD_SUB)

    @classmethod
    def for_dsn(cls, dsn: str) -> Type[StorageBackend]:
        """Pick the registered backend whose scheme matches the DSN"""
        parts = urlparse(dsn)
        for backend_type in cls.registered_backends:
            if backend_type.scheme and parts.scheme.startswith(
                backend_type.scheme
            ):
                return backend_type
        raise LedgerlineError(f"No storage backend for DSN scheme: {dsn}")
