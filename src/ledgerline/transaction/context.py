from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Sequence, Tuple, Type
from uuid import uuid4

from ledgerline.exception import IllegalTransactionState

from .interfaces import (
    Failure,
    IsolationLevel,
    Propagation,
    RollbackPredicate,
    TransactionStatus,
    default_rollback_predicate,
)

if TYPE_CHECKING:
    from .chain import TransactionChain
    from .connection_manager import PhysicalTransaction
    from .savepoint import Savepoint

logger = logging.getLogger(__name__)


class RollbackRules:
    """
    Rollback predicate built from exception types.

    The rule whose type sits closest to the failure in its MRO wins. When a
    type appears on both sides, ``no_rollback_for`` wins. Failures matching
    no rule fall back to the default predicate.

    Example:

    ```python
    rules = RollbackRules(rollback_for=[InsufficientFunds])
    rules(InsufficientFunds("..."))  # True
    ```
    """

    def __init__(
        self,
        rollback_for: Sequence[Type[BaseException]] = (),
        no_rollback_for: Sequence[Type[BaseException]] = (),
        fallback: RollbackPredicate = default_rollback_predicate,
    ):
        self.rollback_for: Tuple[Type[BaseException], ...] = tuple(
            rollback_for
        )
        self.no_rollback_for: Tuple[Type[BaseException], ...] = tuple(
            no_rollback_for
        )
        self.fallback = fallback

    def __call__(self, failure: Failure) -> bool:
        failure_type = failure if isinstance(failure, type) else type(failure)
        mro = failure_type.__mro__
        best: Optional[Tuple[int, bool]] = None
        for rule_types, rollback in (
            (self.no_rollback_for, False),
            (self.rollback_for, True),
        ):
            for rule_type in rule_types:
                if rule_type in mro:
                    depth = mro.index(rule_type)
                    if best is None or depth < best[0]:
                        best = (depth, rollback)
        if best is None:
            return self.fallback(failure)
        return best[1]

    def __repr__(self) -> str:
        return (
            f"RollbackRules(rollback_for={self.rollback_for}, "
            f"no_rollback_for={self.no_rollback_for})"
        )


class TransactionContext:
    """
    One logical unit of work.

    A context either owns a physical transaction, is nested inside one via a
    savepoint, participates in (joins) another context, or has no physical
    binding at all (SUPPORTS, NOT_SUPPORTED, NEVER). Only the
    TransactionManager mutates it, apart from marking it rollback-only.
    """

    def __init__(
        self,
        propagation: Propagation,
        isolation_level: IsolationLevel,
        timeout: float = -1,
        rollback_predicate: Optional[RollbackPredicate] = None,
        name: Optional[str] = None,
    ):
        self.transaction_id = f"txn_{uuid4().hex[:8]}"
        self.name = name
        self.propagation = propagation
        self.isolation_level = isolation_level
        self.timeout = timeout
        self.rollback_predicate = (
            rollback_predicate or default_rollback_predicate
        )
        self.status = TransactionStatus.ACTIVE
        self.physical: Optional[PhysicalTransaction] = None
        self.owns_physical = False
        self.savepoint: Optional[Savepoint] = None
        self.owner: Optional[TransactionContext] = None
        self.chain: Optional[TransactionChain] = None

    def should_rollback(self, failure: Failure) -> bool:
        return bool(self.rollback_predicate(failure))

    def mark_rollback_only(self) -> None:
        if self.is_completed:
            raise IllegalTransactionState(
                f"Transaction {self.transaction_id} already completed"
            )
        if self.status is not TransactionStatus.MARKED_ROLLBACK_ONLY:
            logger.debug(
                "Transaction %s marked rollback-only", self.transaction_id
            )
        self.status = TransactionStatus.MARKED_ROLLBACK_ONLY

    @property
    def is_nested(self) -> bool:
        return self.savepoint is not None

    @property
    def is_participant(self) -> bool:
        return self.owner is not None

    @property
    def has_transaction(self) -> bool:
        """Whether a live physical transaction backs this context"""
        return self.physical is not None and self.physical.is_active

    @property
    def is_active(self) -> bool:
        return self.status is TransactionStatus.ACTIVE

    @property
    def is_rollback_only(self) -> bool:
        return self.status is TransactionStatus.MARKED_ROLLBACK_ONLY

    @property
    def is_completed(self) -> bool:
        return self.status in (
            TransactionStatus.COMMITTED,
            TransactionStatus.ROLLED_BACK,
        )

    @property
    def role(self) -> str:
        if self.owns_physical:
            return "owner"
        if self.is_nested:
            return "nested"
        if self.is_participant:
            return "participant"
        return "unbound"

    def __repr__(self) -> str:
        return (
            f"<TransactionContext {self.transaction_id} "
            f"{self.propagation.name} {self.role} {self.status.value}>"
        )
