from importlib.metadata import version

from .backend import PostgresBackend, SQLiteBackend, StorageBackend
from .bank import (
    Account,
    AccountRepository,
    SQLAccountRepository,
    TransferResult,
    TransferService,
)
from .exception import LedgerlineError
from .ledgerline import Ledgerline
from .transaction import (
    IsolationLevel,
    Propagation,
    RollbackRules,
    TransactionChain,
    TransactionContext,
    TransactionManager,
    TransactionStatus,
)

__version__ = version("ledgerline")

__all__ = (
    "Account",
    "AccountRepository",
    "IsolationLevel",
    "Ledgerline",
    "LedgerlineError",
    "PostgresBackend",
    "Propagation",
    "RollbackRules",
    "SQLAccountRepository",
    "SQLiteBackend",
    "StorageBackend",
    "TransactionChain",
    "TransactionContext",
    "TransactionManager",
    "TransactionStatus",
    "TransferResult",
    "TransferService",
)
