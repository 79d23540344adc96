"""
Transaction engine for Ledgerline.
Propagation, isolation, rollback rules, timeouts and savepoint nesting over a
storage backend.
"""

from ledgerline.exception import (
    IllegalTransactionState,
    NoActiveTransaction,
    SavepointUnsupported,
    TransactionError,
    TransactionTimeout,
    UnexpectedActiveTransaction,
)

from .chain import TransactionChain, current_chain
from .connection_manager import PhysicalTransaction
from .context import RollbackRules, TransactionContext
from .interfaces import (
    FailureKind,
    IsolationLevel,
    Propagation,
    TransactionStatus,
    classify_failure,
    default_rollback_predicate,
)
from .manager import TransactionManager
from .savepoint import Savepoint, SavepointCoordinator

__all__ = [
    "TransactionManager",
    "TransactionContext",
    "TransactionChain",
    "PhysicalTransaction",
    "SavepointCoordinator",
    "Savepoint",
    "RollbackRules",
    "IsolationLevel",
    "Propagation",
    "TransactionStatus",
    "FailureKind",
    "classify_failure",
    "current_chain",
    "default_rollback_predicate",
    "TransactionError",
    "TransactionTimeout",
    "NoActiveTransaction",
    "UnexpectedActiveTransaction",
    "SavepointUnsupported",
    "IllegalTransactionState",
]
