import logging

import pytest

from ledgerline.backend import postgres
from ledgerline.backend.base import (
    ConnectionArgs,
    StorageBackend,
    convert_sql_params,
)
from ledgerline.backend.postgres import PostgresBackend
from ledgerline.backend.sqlite import SQLiteBackend
from ledgerline.exception import LedgerlineError, StorageFailure
from ledgerline.transaction import IsolationLevel


class FakePool:
    def __init__(self, conninfo, **kwargs):
        self.conninfo = conninfo
        self.kwargs = kwargs


class FakePostgresConnection:
    def __init__(self, fail=False):
        self.fail = fail
        self.queries = []

    async def execute(self, query, params=None):
        if self.fail:
            raise postgres.PsycopgError("connection lost")
        self.queries.append((query, params))


@pytest.fixture
def fake_pool(monkeypatch):
    monkeypatch.setattr(postgres, "POSTGRES_ENABLED", True)
    monkeypatch.setattr(postgres, "AsyncConnectionPool", FakePool)
    monkeypatch.setattr(postgres, "dict_row", object(), raising=False)


@pytest.mark.parametrize(
    "query,keyword_sub,expected",
    (
        (
            "SELECT * FROM accounts WHERE id = $id",
            r":\1",
            "SELECT * FROM accounts WHERE id = :id",
        ),
        (
            "UPDATE accounts SET balance_cents = $balance WHERE id = $id",
            r"%(\1)s",
            "UPDATE accounts SET balance_cents = %(balance)s "
            "WHERE id = %(id)s",
        ),
        ("SELECT 1", r":\1", "SELECT 1"),
    ),
)
def test_convert_sql_params(query, keyword_sub, expected):
    assert convert_sql_params(query, keyword_sub) == expected


@pytest.mark.parametrize(
    "dsn,backend_type",
    (
        ("postgres://user@localhost/bank", PostgresBackend),
        ("postgresql://user@localhost/bank", PostgresBackend),
        ("sqlite:///bank.db", SQLiteBackend),
    ),
)
def test_for_dsn(dsn, backend_type):
    assert StorageBackend.for_dsn(dsn) is backend_type


def test_for_dsn_unknown_scheme():
    with pytest.raises(LedgerlineError, match="No storage backend"):
        StorageBackend.for_dsn("mysql://user@localhost/bank")


def test_postgres_dsn_is_parsed(fake_pool):
    backend = PostgresBackend(dsn="postgres://teller:secret@db:5433/bank")

    assert backend.args == ConnectionArgs(
        host="db", port=5433, user="teller", password="secret", db="bank"
    )
    assert backend.dsn == "postgres://teller:...@db:5433/bank"
    assert backend.full_dsn == "postgres://teller:secret@db:5433/bank"
    assert "secret" not in str(backend)


def test_explicit_args_win_over_dsn(fake_pool):
    backend = PostgresBackend(
        dsn="postgres://teller@db/bank?sslmode=require",
        user="auditor",
        db="archive",
    )

    assert backend.args.port == 5432
    assert backend.dsn == "postgres://auditor@db:5432/archive"
    assert backend.full_dsn == (
        "postgres://auditor@db:5432/archive?sslmode=require"
    )


def test_postgres_pool_settings(fake_pool):
    backend = PostgresBackend(
        host="db", port=5432, user="teller", db="bank", max_size=4
    )

    assert backend._pool.conninfo == "postgres://teller@db:5432/bank"
    assert backend._pool.kwargs["max_size"] == 4
    assert backend._pool.kwargs["open"] is False
    assert backend._pool.kwargs["kwargs"]["autocommit"] is True


@pytest.mark.parametrize(
    "kwargs,message",
    (
        (
            {"dsn": "postgres://localhost/bank", "host": "localhost"},
            "host and dsn",
        ),
        ({"host": "localhost", "port": 70000}, "port"),
        ({"dsn": "postgres://db:99999/bank"}, "port"),
        ({"host": "localhost", "password": ""}, "password"),
        ({"host": "localhost", "min_size": 5, "max_size": 2}, "max_size"),
    ),
)
def test_invalid_connection_args(fake_pool, kwargs, message):
    with pytest.raises(LedgerlineError, match=message):
        PostgresBackend(**kwargs)


def test_postgres_driver_missing(monkeypatch):
    monkeypatch.setattr(postgres, "POSTGRES_ENABLED", False)

    with pytest.raises(LedgerlineError, match="driver not found"):
        PostgresBackend(host="localhost")


@pytest.mark.parametrize(
    "isolation",
    (
        IsolationLevel.READ_UNCOMMITTED,
        IsolationLevel.READ_COMMITTED,
        IsolationLevel.REPEATABLE_READ,
        IsolationLevel.SERIALIZABLE,
    ),
)
async def test_postgres_begin_uses_isolation(fake_pool, isolation):
    backend = PostgresBackend(host="localhost")
    conn = FakePostgresConnection()

    await backend.begin(conn, isolation)

    assert conn.queries == [
        (f"BEGIN ISOLATION LEVEL {isolation.value}", None)
    ]


async def test_postgres_statements(fake_pool):
    backend = PostgresBackend(host="localhost")
    conn = FakePostgresConnection()

    await backend.savepoint(conn, "sp_1")
    await backend.rollback_to_savepoint(conn, "sp_1")
    await backend.release_savepoint(conn, "sp_1")
    await backend.commit(conn)
    await backend.execute(
        conn, "DELETE FROM accounts WHERE id = $id", {"id": 1}
    )

    assert [query for query, _ in conn.queries] == [
        "SAVEPOINT sp_1",
        "ROLLBACK TO SAVEPOINT sp_1",
        "RELEASE SAVEPOINT sp_1",
        "COMMIT",
        "DELETE FROM accounts WHERE id = %(id)s",
    ]


async def test_postgres_driver_errors_are_storage_failures(fake_pool):
    backend = PostgresBackend(host="localhost")

    with pytest.raises(StorageFailure, match="connection lost"):
        await backend.commit(FakePostgresConnection(fail=True))


@pytest.fixture
async def sqlite(tmp_path):
    backend = SQLiteBackend(str(tmp_path / "backend.db"), max_size=2)
    await backend.open()
    async with backend.connection() as conn:
        await backend.execute(
            conn, "CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)"
        )
    yield backend
    await backend.close()


async def test_sqlite_dsn(tmp_path):
    backend = SQLiteBackend(str(tmp_path / "bank.db"))

    assert backend.dsn == f"sqlite:///{tmp_path / 'bank.db'}"
    assert backend.max_size == 5


async def test_sqlite_autocommit_connection(sqlite):
    async with sqlite.connection() as conn:
        await sqlite.execute(
            conn, "INSERT INTO items (name) VALUES ($name)", {"name": "a"}
        )
    async with sqlite.connection() as conn:
        row = await sqlite.fetch_one(
            conn, "SELECT name FROM items WHERE name = $name", {"name": "a"}
        )

    assert row == {"name": "a"}


async def test_sqlite_transaction_and_savepoint(sqlite):
    async with sqlite.connection() as conn:
        await sqlite.begin(conn, IsolationLevel.READ_COMMITTED)
        await sqlite.execute(conn, "INSERT INTO items (name) VALUES ('a')")
        await sqlite.savepoint(conn, "sp_1")
        await sqlite.execute(conn, "INSERT INTO items (name) VALUES ('b')")
        await sqlite.rollback_to_savepoint(conn, "sp_1")
        await sqlite.release_savepoint(conn, "sp_1")
        await sqlite.commit(conn)

        rows = await sqlite.fetch_all(conn, "SELECT name FROM items")

    assert rows == [{"name": "a"}]


async def test_sqlite_rollback(sqlite):
    async with sqlite.connection() as conn:
        await sqlite.begin(conn, IsolationLevel.SERIALIZABLE)
        await sqlite.execute(conn, "INSERT INTO items (name) VALUES ('a')")
        await sqlite.rollback(conn)

        rows = await sqlite.fetch_all(conn, "SELECT name FROM items")

    assert rows == []


async def test_sqlite_connection_returned_mid_transaction(sqlite, caplog):
    with caplog.at_level(logging.WARNING):
        async with sqlite.connection() as conn:
            await sqlite.begin(conn, IsolationLevel.READ_COMMITTED)
            await sqlite.execute(
                conn, "INSERT INTO items (name) VALUES ('lost')"
            )

    assert "inside a transaction" in caplog.text
    async with sqlite.connection() as conn:
        assert await sqlite.fetch_all(conn, "SELECT * FROM items") == []


async def test_sqlite_pool_limit(sqlite):
    async with sqlite.connection():
        async with sqlite.connection():
            with pytest.raises(StorageFailure, match="Timeout"):
                async with sqlite.connection(timeout=0.05):
                    pass


async def test_sqlite_errors_are_storage_failures(sqlite):
    async with sqlite.connection() as conn:
        with pytest.raises(StorageFailure, match="no such table"):
            await sqlite.execute(conn, "SELECT * FROM missing")
