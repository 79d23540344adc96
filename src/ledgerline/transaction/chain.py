from __future__ import annotations

import asyncio
import logging
import threading
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, List, Optional, Tuple
from uuid import uuid4

from ledgerline.exception import IllegalTransactionState

if TYPE_CHECKING:
    from .connection_manager import PhysicalTransaction
    from .context import TransactionContext

logger = logging.getLogger(__name__)

_current_chain: ContextVar[Optional["TransactionChain"]] = ContextVar(
    "transaction_chain", default=None
)


def _current_owner() -> Any:
    try:
        task = asyncio.current_task()
    except RuntimeError:
        task = None
    return task if task is not None else threading.get_ident()


class TransactionChain:
    """
    The transaction state of one logical call chain.

    Keeps the stack of open contexts (innermost last), the physical
    transaction currently bound to the chain, and the bindings parked by
    REQUIRES_NEW and NOT_SUPPORTED until those contexts complete.

    A chain can be passed explicitly (``chain=``) to the manager. Otherwise
    the manager uses the implicit chain of the running task, see
    ``current_chain``.
    """

    def __init__(self) -> None:
        self.chain_id = f"chain_{uuid4().hex[:8]}"
        self.stack: List[TransactionContext] = []
        self.suspended: List[PhysicalTransaction] = []
        self.bound: Optional[PhysicalTransaction] = None
        self._restore: List[Tuple[Optional[PhysicalTransaction], bool]] = []
        self._owner: Any = None

    @property
    def top(self) -> Optional[TransactionContext]:
        return self.stack[-1] if self.stack else None

    @property
    def is_empty(self) -> bool:
        return not self.stack

    def push(
        self,
        context: TransactionContext,
        physical: Optional[PhysicalTransaction],
        suspend: bool = False,
    ) -> None:
        """Push a context and bind ``physical`` to the chain

        With ``suspend``, the binding being replaced is parked and restored
        when the context is popped.
        """
        previous = self.bound
        parked = suspend and previous is not None
        if parked:
            self.suspended.append(previous)  # type: ignore[arg-type]
            logger.debug(
                "Suspended %s in %s", previous.transaction_id, self.chain_id
            )
        self._restore.append((previous, parked))
        context.chain = self
        self.stack.append(context)
        self.bound = physical

    def pop(self, context: TransactionContext) -> None:
        if self.top is not context:
            raise IllegalTransactionState(
                f"Transaction {context.transaction_id} is not the innermost "
                f"transaction of {self.chain_id}"
            )
        self.stack.pop()
        previous, parked = self._restore.pop()
        if parked:
            self.suspended.pop()
            logger.debug(
                "Resumed %s in %s", previous.transaction_id, self.chain_id
            )
        self.bound = previous

    def contexts_on(
        self, physical: PhysicalTransaction
    ) -> List[TransactionContext]:
        """Open contexts sharing the given physical transaction"""
        return [
            context for context in self.stack if context.physical is physical
        ]

    def __len__(self) -> int:
        return len(self.stack)

    def __repr__(self) -> str:
        return (
            f"<TransactionChain {self.chain_id} depth={len(self.stack)} "
            f"suspended={len(self.suspended)}>"
        )


def current_chain() -> TransactionChain:
    """
    Get the implicit chain of the running task (or thread), creating it if
    needed.

    Child tasks copy their parent's context variables, so a chain found in
    the context variable is only reused by the task that created it. Any
    other task gets a fresh, empty chain.
    """
    owner = _current_owner()
    chain = _current_chain.get()
    if chain is None or chain._owner is not owner:
        chain = TransactionChain()
        chain._owner = owner
        _current_chain.set(chain)
    return chain
