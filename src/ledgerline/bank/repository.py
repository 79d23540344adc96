from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ledgerline.exception import AccountNotFound
from ledgerline.hydrator import Hydrator
from ledgerline.transaction import TransactionChain, TransactionManager

from .models import Account, from_cents, to_cents

logger = logging.getLogger(__name__)

SCHEMA = {
    "sqlite": """
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_number TEXT NOT NULL UNIQUE,
            balance_cents INTEGER NOT NULL CHECK (balance_cents >= 0),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "postgres": """
        CREATE TABLE IF NOT EXISTS accounts (
            id BIGSERIAL PRIMARY KEY,
            account_number TEXT NOT NULL UNIQUE,
            balance_cents BIGINT NOT NULL CHECK (balance_cents >= 0),
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
}

SELECT_BY_ID = "SELECT * FROM accounts WHERE id = $account_id"
SELECT_BY_NUMBER = (
    "SELECT * FROM accounts WHERE account_number = $account_number"
)
SELECT_ALL = "SELECT * FROM accounts ORDER BY id"
INSERT_ACCOUNT = """
    INSERT INTO accounts (account_number, balance_cents)
    VALUES ($account_number, $balance_cents)
    RETURNING *
"""
UPDATE_ACCOUNT = """
    UPDATE accounts
    SET balance_cents = $balance_cents, updated_at = CURRENT_TIMESTAMP
    WHERE id = $account_id
    RETURNING *
"""


def _timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class AccountHydrator(Hydrator):
    """Casts `accounts` rows into Account models"""

    fallback = Account
    casts = {
        "balance_cents": ("balance", from_cents),
        "created_at": _timestamp,
        "updated_at": _timestamp,
    }


class AccountRepository(ABC):
    """Storage access for accounts

    Implementations take part in whatever transaction is bound to the
    calling chain and never manage transactions themselves.
    """

    @abstractmethod
    async def find_by_id(
        self,
        account_id: int,
        *,
        lock: bool = False,
        chain: Optional[TransactionChain] = None,
    ) -> Optional[Account]: ...

    @abstractmethod
    async def find_by_account_number(
        self, account_number: str, *, chain: Optional[TransactionChain] = None
    ) -> Optional[Account]: ...

    @abstractmethod
    async def find_all(
        self, *, chain: Optional[TransactionChain] = None
    ) -> List[Account]: ...

    @abstractmethod
    async def save(
        self, account: Account, *, chain: Optional[TransactionChain] = None
    ) -> Account: ...


class SQLAccountRepository(AccountRepository):
    """Account repository running SQL through the transaction manager"""

    def __init__(
        self, manager: TransactionManager, hydrator: Optional[Hydrator] = None
    ) -> None:
        self.manager = manager
        self.hydrator = hydrator or AccountHydrator()

    @property
    def backend(self):
        return self.manager.backend

    async def create_schema(
        self, *, chain: Optional[TransactionChain] = None
    ) -> None:
        try:
            ddl = SCHEMA[self.backend.scheme]
        except KeyError:
            ddl = SCHEMA["sqlite"]
        async with self.manager.connection(chain) as conn:
            await self.backend.execute(conn, ddl)
        logger.debug("Ensured accounts schema on %s", self.backend)

    async def find_by_id(
        self,
        account_id: int,
        *,
        lock: bool = False,
        chain: Optional[TransactionChain] = None,
    ) -> Optional[Account]:
        query = SELECT_BY_ID
        if lock and self.backend.scheme == "postgres":
            query += " FOR UPDATE"
        return await self._fetch_one(
            query, {"account_id": account_id}, chain
        )

    async def find_by_account_number(
        self, account_number: str, *, chain: Optional[TransactionChain] = None
    ) -> Optional[Account]:
        return await self._fetch_one(
            SELECT_BY_NUMBER, {"account_number": account_number}, chain
        )

    async def find_all(
        self, *, chain: Optional[TransactionChain] = None
    ) -> List[Account]:
        async with self.manager.connection(chain) as conn:
            rows = await self.backend.fetch_all(conn, SELECT_ALL)
        return self.hydrator.many(rows)

    async def save(
        self, account: Account, *, chain: Optional[TransactionChain] = None
    ) -> Account:
        """Insert a new account or update the balance of an existing one

        Raises:
            AccountNotFound: If the account to update does not exist
            StorageFailure: If the backend rejects the write
        """
        if account.id is None:
            saved = await self._fetch_one(
                INSERT_ACCOUNT,
                {
                    "account_number": account.account_number,
                    "balance_cents": to_cents(account.balance),
                },
                chain,
            )
        else:
            saved = await self._fetch_one(
                UPDATE_ACCOUNT,
                {
                    "account_id": account.id,
                    "balance_cents": to_cents(account.balance),
                },
                chain,
            )
        if saved is None:
            raise AccountNotFound(f"Account {account.id} does not exist")
        return saved

    async def _fetch_one(
        self,
        query: str,
        params: Dict[str, Any],
        chain: Optional[TransactionChain],
    ) -> Optional[Account]:
        async with self.manager.connection(chain) as conn:
            row = await self.backend.fetch_one(conn, query, params)
        return self.hydrator.one(row)
