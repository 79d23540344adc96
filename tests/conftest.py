from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest

from ledgerline import Ledgerline
from ledgerline.backend.base import StorageBackend
from ledgerline.exception import StorageFailure
from ledgerline.transaction import TransactionManager


class FakeConnection:
    def __init__(self, number: int):
        self.number = number
        self.in_transaction = False
        self.pending: List[Tuple[str, Any]] = []
        self.savepoints: Dict[str, int] = {}

    def __repr__(self) -> str:
        return f"<FakeConnection {self.number}>"


class FakeBackend(StorageBackend):
    """Key/value store with connection-scoped pending writes

    Writes on a connection inside a transaction stay pending until commit.
    Savepoints remember how many writes were pending when they were taken.
    """

    scheme = "fake"

    def __init__(self, supports_savepoints: bool = True):
        self.supports_savepoints = supports_savepoints
        self.store: Dict[str, Any] = {}
        self.calls: List[Tuple[str, int, Optional[str]]] = []
        self.fail_on: set = set()
        self.acquired = 0
        self.released = 0
        self._counter = 0
        super().__init__()

    async def open(self):
        pass

    async def close(self):
        pass

    @asynccontextmanager
    async def connection(self, timeout: Optional[float] = None):
        self._counter += 1
        self.acquired += 1
        conn = FakeConnection(self._counter)
        try:
            yield conn
        finally:
            self.released += 1

    @property
    def in_use(self) -> int:
        return self.acquired - self.released

    def _record(self, name: str, conn: FakeConnection, arg=None) -> None:
        self.calls.append((name, conn.number, arg))
        if name in self.fail_on:
            raise StorageFailure(f"{name} failed")

    def calls_named(self, name: str) -> List[Tuple[str, int, Optional[str]]]:
        return [call for call in self.calls if call[0] == name]

    async def begin(self, connection, isolation):
        self._record("begin", connection, isolation.value)
        connection.in_transaction = True

    async def commit(self, connection):
        self._record("commit", connection)
        for key, value in connection.pending:
            self.store[key] = value
        connection.pending.clear()
        connection.in_transaction = False

    async def rollback(self, connection):
        connection.pending.clear()
        connection.in_transaction = False
        self._record("rollback", connection)

    async def savepoint(self, connection, name):
        self._record("savepoint", connection, name)
        connection.savepoints[name] = len(connection.pending)

    async def rollback_to_savepoint(self, connection, name):
        self._record("rollback_to_savepoint", connection, name)
        del connection.pending[connection.savepoints[name] :]

    async def release_savepoint(self, connection, name):
        self._record("release_savepoint", connection, name)
        connection.savepoints.pop(name)

    async def _run_sql(self, connection, query, params=None, method=None):
        self._record("sql", connection, query)

    def write(self, connection: FakeConnection, key: str, value: Any):
        if "write" in self.fail_on:
            raise StorageFailure(f"write of {key} failed")
        if connection.in_transaction:
            connection.pending.append((key, value))
        else:
            self.store[key] = value


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def manager(backend):
    return TransactionManager(backend)


@pytest.fixture
def write(manager, backend):
    async def _write(key: str, value: Any = True, chain=None):
        async with manager.connection(chain) as conn:
            backend.write(conn, key, value)

    return _write


@pytest.fixture
async def ledger(tmp_path):
    ledger = Ledgerline(db_path=str(tmp_path / "bank.db"))
    await ledger.connect(create_schema=True)
    yield ledger
    await ledger.disconnect()


@pytest.fixture
async def accounts(ledger):
    alice = await ledger.service.open_account("A-100", Decimal("1000"))
    bob = await ledger.service.open_account("B-200", Decimal("500"))
    return alice, bob


@pytest.fixture
def savepointless_backend():
    return FakeBackend(supports_savepoints=False)
