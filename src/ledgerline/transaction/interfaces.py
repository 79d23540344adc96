from __future__ import annotations

from enum import Enum
from typing import Callable, Type, Union

from ledgerline.exception import RecoverableError

Failure = Union[BaseException, Type[BaseException]]
RollbackPredicate = Callable[[Failure], bool]


class IsolationLevel(Enum):
    """SQL transaction isolation levels"""

    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class Propagation(Enum):
    """How a unit of work relates to one that is already running

    REQUIRED joins the current transaction or starts one. REQUIRES_NEW always
    starts an independent transaction on its own connection and parks the
    current one. NESTED adds a savepoint to the current transaction (or acts
    as REQUIRED when there is none). SUPPORTS joins if possible and otherwise
    runs without a transaction. NOT_SUPPORTED parks the current transaction
    and runs without one. MANDATORY and NEVER assert that a transaction does,
    or does not, exist.
    """

    REQUIRED = "required"
    REQUIRES_NEW = "requires_new"
    NESTED = "nested"
    SUPPORTS = "supports"
    NOT_SUPPORTED = "not_supported"
    MANDATORY = "mandatory"
    NEVER = "never"


class TransactionStatus(Enum):
    """Transaction state machine states"""

    ACTIVE = "active"
    MARKED_ROLLBACK_ONLY = "marked_rollback_only"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class FailureKind(Enum):
    FATAL = "fatal"  # not an Exception, eg. KeyboardInterrupt
    UNCHECKED = "unchecked"
    RECOVERABLE = "recoverable"


def classify_failure(failure: Failure) -> FailureKind:
    """Map a raised exception (or exception class) onto a FailureKind"""
    failure_type = failure if isinstance(failure, type) else type(failure)
    if not issubclass(failure_type, Exception):
        return FailureKind.FATAL
    if issubclass(failure_type, RecoverableError):
        return FailureKind.RECOVERABLE
    return FailureKind.UNCHECKED


def default_rollback_predicate(failure: Failure) -> bool:
    """Roll back on fatal and unchecked failures only"""
    return classify_failure(failure) is not FailureKind.RECOVERABLE
