from __future__ import annotations

import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    Optional,
    Sequence,
    Type,
)

from ledgerline.exception import (
    IllegalTransactionState,
    NoActiveTransaction,
    StorageFailure,
    TransactionTimeout,
    UnexpectedActiveTransaction,
)

from .chain import TransactionChain, current_chain
from .connection_manager import PhysicalTransaction
from .context import RollbackRules, TransactionContext
from .interfaces import (
    Failure,
    IsolationLevel,
    Propagation,
    RollbackPredicate,
    TransactionStatus,
)
from .savepoint import SavepointCoordinator

if TYPE_CHECKING:
    from ledgerline.backend.base import StorageBackend

logger = logging.getLogger(__name__)

_JOIN_PROPAGATIONS = (
    Propagation.REQUIRED,
    Propagation.NESTED,
    Propagation.SUPPORTS,
    Propagation.MANDATORY,
)


def _is_storage_failure(failure: Optional[Failure]) -> bool:
    if failure is None:
        return False
    failure_type = failure if isinstance(failure, type) else type(failure)
    return issubclass(failure_type, StorageFailure)


class TransactionManager:
    """
    Creates, joins, suspends and completes transaction contexts.

    Every call takes an optional ``chain``. Without one, the implicit chain
    of the running task is used.

    Example:

    ```python
    manager = TransactionManager(backend)

    async with manager.transaction(Propagation.REQUIRED) as txn:
        async with manager.connection() as conn:
            ...
    ```
    """

    def __init__(
        self,
        backend: StorageBackend,
        *,
        default_isolation: IsolationLevel = IsolationLevel.READ_COMMITTED,
        default_timeout: float = -1,
        acquire_timeout: float = 30.0,
        savepoints: Optional[SavepointCoordinator] = None,
    ):
        self.backend = backend
        self.default_isolation = default_isolation
        self.default_timeout = default_timeout
        self.acquire_timeout = acquire_timeout
        self.savepoints = savepoints or SavepointCoordinator()
        self._metrics: Counter = Counter()

    def chain(
        self, chain: Optional[TransactionChain] = None
    ) -> TransactionChain:
        return chain if chain is not None else current_chain()

    def current_context(
        self, chain: Optional[TransactionChain] = None
    ) -> Optional[TransactionContext]:
        return self.chain(chain).top

    async def begin(
        self,
        propagation: Propagation = Propagation.REQUIRED,
        isolation: Optional[IsolationLevel] = None,
        timeout: Optional[float] = None,
        *,
        rollback_predicate: Optional[RollbackPredicate] = None,
        rollback_for: Sequence[Type[BaseException]] = (),
        no_rollback_for: Sequence[Type[BaseException]] = (),
        chain: Optional[TransactionChain] = None,
        name: Optional[str] = None,
    ) -> TransactionContext:
        """Begin a unit of work according to its propagation

        Args:
            propagation (Propagation, optional): How to relate to a running
                transaction. Defaults to `Propagation.REQUIRED`.
            isolation (IsolationLevel, optional): Isolation requested for a
                new physical transaction. Defaults to the manager default.
            timeout (float, optional): Seconds before a new physical
                transaction expires, `-1` for none. Defaults to the manager
                default.
            rollback_predicate (RollbackPredicate, optional): Decides whether
                a failure rolls back. Defaults to rolling back on everything
                except `RecoverableError`.
            rollback_for (Sequence[Type[BaseException]], optional): Extra
                exception types that roll back.
            no_rollback_for (Sequence[Type[BaseException]], optional): Extra
                exception types that do not roll back.
            chain (TransactionChain, optional): Explicit call chain. Defaults
                to the implicit chain of the running task.
            name (str, optional): Label used in logs.

        Raises:
            NoActiveTransaction: MANDATORY without a running transaction
            UnexpectedActiveTransaction: NEVER inside a running transaction
            SavepointUnsupported: NESTED on a backend without savepoints
            TransactionTimeout: The running transaction already expired
            StorageFailure: A connection could not be acquired or begun

        Returns:
            TransactionContext: The context to pass to `complete`
        """
        chain = self.chain(chain)
        if rollback_predicate is None and (rollback_for or no_rollback_for):
            rollback_predicate = RollbackRules(rollback_for, no_rollback_for)
        context = TransactionContext(
            propagation,
            isolation or self.default_isolation,
            self.default_timeout if timeout is None else timeout,
            rollback_predicate,
            name,
        )

        if propagation in _JOIN_PROPAGATIONS or (
            propagation is Propagation.NEVER
        ):
            await self._ensure_live(chain)
        bound = chain.bound

        if propagation is Propagation.REQUIRED:
            if bound is not None:
                self._join(chain, context)
            else:
                await self._start(chain, context)
        elif propagation is Propagation.REQUIRES_NEW:
            await self._start(chain, context, suspend=True)
        elif propagation is Propagation.NESTED:
            if bound is not None:
                await self._nest(chain, context)
            else:
                await self._start(chain, context)
        elif propagation is Propagation.SUPPORTS:
            if bound is not None:
                self._join(chain, context)
            else:
                chain.push(context, None)
        elif propagation is Propagation.NOT_SUPPORTED:
            chain.push(context, None, suspend=True)
        elif propagation is Propagation.MANDATORY:
            if bound is None:
                raise NoActiveTransaction(
                    "No existing transaction found for propagation MANDATORY"
                )
            self._join(chain, context)
        elif propagation is Propagation.NEVER:
            if bound is not None:
                raise UnexpectedActiveTransaction(
                    f"Existing transaction {bound.transaction_id} found for "
                    "propagation NEVER"
                )
            chain.push(context, None)
        else:
            raise IllegalTransactionState(
                f"Unknown propagation {propagation!r}"
            )

        logger.debug("Began %r in %s", context, chain.chain_id)
        return context

    async def _start(
        self,
        chain: TransactionChain,
        context: TransactionContext,
        suspend: bool = False,
    ) -> None:
        physical = PhysicalTransaction(
            context.transaction_id,
            self.backend,
            context.isolation_level,
            context.timeout,
            self.acquire_timeout,
        )
        await physical.begin()
        self._metrics["begun"] += 1
        context.physical = physical
        context.owns_physical = True
        chain.push(context, physical, suspend=suspend)

    def _join(self, chain: TransactionChain, context: TransactionContext):
        top = chain.top
        assert top is not None, "A bound chain always has a top context"
        owner = top.owner if top.owner is not None else top
        context.physical = chain.bound
        context.owner = owner
        if context.isolation_level is not owner.isolation_level:
            logger.debug(
                "Transaction %s joins %s, requested isolation %s is ignored",
                context.transaction_id,
                owner.transaction_id,
                context.isolation_level.value,
            )
        chain.push(context, chain.bound)

    async def _nest(
        self, chain: TransactionChain, context: TransactionContext
    ) -> None:
        physical = chain.bound
        assert physical is not None
        savepoint = await self.savepoints.create_savepoint(physical)
        self._metrics["savepoints"] += 1
        context.physical = physical
        context.savepoint = savepoint
        chain.push(context, physical)

    async def _ensure_live(self, chain: TransactionChain) -> None:
        bound = chain.bound
        if bound is None:
            return
        if bound.is_active and bound.expired:
            await self._expire(chain, bound)
        if not bound.is_active:
            if bound.timed_out:
                bound.check_deadline()
            raise IllegalTransactionState(
                f"Transaction {bound.transaction_id} is no longer active"
            )

    async def _expire(
        self, chain: TransactionChain, physical: PhysicalTransaction
    ) -> None:
        """Force a rollback of an expired transaction and raise"""
        logger.warning(
            "Transaction %s timed out, rolling back", physical.transaction_id
        )
        self._metrics["timed_out"] += 1
        try:
            await physical.rollback(timed_out=True)
        except StorageFailure as rollback_error:
            logger.critical(
                "Rollback after timeout also failed: %s", rollback_error
            )
        self._metrics["rolled_back"] += 1
        for context in chain.contexts_on(physical):
            context.status = TransactionStatus.ROLLED_BACK
        physical.check_deadline()

    def mark_rollback_only(self, context: TransactionContext) -> None:
        """Force the eventual rollback of a context

        Marking is idempotent and cannot be undone. A participant shares the
        fate of the context it joined, so that one is marked as well.
        """
        context.mark_rollback_only()
        if context.owner is not None and not context.owner.is_completed:
            context.owner.mark_rollback_only()

    async def complete(
        self, context: TransactionContext, failure: Optional[Failure] = None
    ) -> TransactionStatus:
        """Commit or roll back a context

        Rolls back when the context is marked rollback-only, when the failure
        is a storage failure, or when its rollback predicate accepts the
        failure. Commits otherwise.

        Args:
            context (TransactionContext): The innermost context of its chain
            failure (Failure, optional): The exception raised by the unit of
                work, if any. Defaults to `None`.

        Raises:
            IllegalTransactionState: If the context is not the innermost one
                or is already completed
            TransactionTimeout: If the transaction expired before commit
            StorageFailure: If the backend failed to commit or roll back

        Returns:
            TransactionStatus: `COMMITTED` or `ROLLED_BACK`
        """
        chain = context.chain
        if chain is None or context not in chain.stack:
            raise IllegalTransactionState(
                f"Transaction {context.transaction_id} is not open"
            )
        if chain.top is not context:
            raise IllegalTransactionState(
                f"Transaction {context.transaction_id} is not the innermost "
                f"transaction of {chain.chain_id}"
            )

        if context.status is TransactionStatus.ROLLED_BACK:
            # Already rolled back by a timeout
            chain.pop(context)
            return context.status

        storage_failure = _is_storage_failure(failure)
        if storage_failure:
            self._doom_ancestors(chain, context)

        joined_rollback_only = (
            context.owner is not None and context.owner.is_rollback_only
        )
        rollback = (
            context.is_rollback_only
            or joined_rollback_only
            or storage_failure
            or (failure is not None and context.should_rollback(failure))
        )
        if (
            rollback
            and failure is None
            and context.owns_physical
            and context.is_rollback_only
        ):
            logger.warning(
                "Transaction %s rolled back because it has been marked as "
                "rollback-only",
                context.transaction_id,
            )

        try:
            if rollback:
                await self._rollback(chain, context)
            else:
                await self._commit(chain, context)
        finally:
            chain.pop(context)
        return context.status

    async def _commit(
        self, chain: TransactionChain, context: TransactionContext
    ) -> None:
        physical = context.physical
        if physical is not None and physical.is_active and physical.expired:
            await self._expire(chain, physical)

        if context.owns_physical:
            assert physical is not None
            try:
                await physical.commit()
            except StorageFailure:
                context.status = TransactionStatus.ROLLED_BACK
                self._metrics["rolled_back"] += 1
                raise
            self._metrics["committed"] += 1
            logger.info(
                "Transaction %s committed successfully",
                context.transaction_id,
            )
        elif context.is_nested:
            assert physical is not None and context.savepoint is not None
            try:
                await self.savepoints.release_savepoint(
                    physical, context.savepoint
                )
            except StorageFailure:
                context.status = TransactionStatus.ROLLED_BACK
                self._doom_ancestors(chain, context)
                raise
        context.status = TransactionStatus.COMMITTED

    async def _rollback(
        self, chain: TransactionChain, context: TransactionContext
    ) -> None:
        physical = context.physical
        try:
            if context.owns_physical:
                assert physical is not None
                if physical.is_active:
                    self._metrics["rolled_back"] += 1
                    await physical.rollback()
                    logger.info(
                        "Transaction %s rolled back successfully",
                        context.transaction_id,
                    )
            elif context.is_nested:
                assert physical is not None and context.savepoint is not None
                if physical.is_active:
                    try:
                        await self.savepoints.rollback_to_savepoint(
                            physical, context.savepoint
                        )
                        await self.savepoints.release_savepoint(
                            physical, context.savepoint
                        )
                    except StorageFailure:
                        # Work after the savepoint may still be pending
                        self._doom_ancestors(chain, context)
                        raise
            elif context.owner is not None:
                if not context.owner.is_completed:
                    context.owner.mark_rollback_only()
        finally:
            context.status = TransactionStatus.ROLLED_BACK

    def _doom_ancestors(
        self, chain: TransactionChain, context: TransactionContext
    ) -> None:
        if context.physical is None:
            return
        for other in chain.contexts_on(context.physical):
            if other is not context and not other.is_completed:
                other.mark_rollback_only()

    @asynccontextmanager
    async def transaction(
        self,
        propagation: Propagation = Propagation.REQUIRED,
        isolation: Optional[IsolationLevel] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> AsyncIterator[TransactionContext]:
        """Run a block inside a transaction context

        The context is completed when the block exits, with whatever
        exception the block raised. The exception is always re-raised.

        Example:

        ```python
        async with manager.transaction(
            Propagation.REQUIRES_NEW, rollback_for=[InsufficientFunds]
        ) as txn:
            ...
        ```
        """
        context = await self.begin(propagation, isolation, timeout, **kwargs)
        try:
            yield context
        except BaseException as e:
            try:
                await self.complete(context, e)
            except Exception as complete_error:
                logger.error(
                    "Error completing %s after failure: %s",
                    context.transaction_id,
                    complete_error,
                )
            raise
        else:
            await self.complete(context)

    @asynccontextmanager
    async def connection(
        self, chain: Optional[TransactionChain] = None
    ) -> AsyncIterator[Any]:
        """Obtain the connection to run a statement on

        Yields the connection of the physical transaction bound to the chain.
        With nothing bound, yields a pooled connection in auto-commit mode.

        Raises:
            TransactionTimeout: If the bound transaction expired
        """
        chain = self.chain(chain)
        if chain.bound is not None:
            await self._ensure_live(chain)
            yield chain.bound.connection
        else:
            async with self.backend.connection() as conn:
                yield conn

    def get_metrics(self) -> Dict[str, int]:
        """
        Get transaction metrics.

        Returns:
            Dictionary of physical transaction counters
        """
        return {
            key: self._metrics[key]
            for key in (
                "begun",
                "committed",
                "rolled_back",
                "savepoints",
                "timed_out",
            )
        }
