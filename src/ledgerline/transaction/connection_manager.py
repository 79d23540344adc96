from __future__ import annotations

import asyncio
import logging
from time import monotonic
from typing import TYPE_CHECKING, Any, Dict, Optional

from ledgerline.exception import (
    IllegalTransactionState,
    StorageFailure,
    TransactionTimeout,
)

from .interfaces import IsolationLevel

if TYPE_CHECKING:
    from ledgerline.backend.base import StorageBackend

    from .savepoint import Savepoint

logger = logging.getLogger(__name__)


class PhysicalTransaction:
    """
    A backend transaction on one dedicated pooled connection.

    The connection is held from ``begin`` until commit or rollback, at which
    point it is handed back to the pool. While held, it is owned by exactly
    one chain.
    """

    def __init__(
        self,
        transaction_id: str,
        backend: StorageBackend,
        isolation_level: IsolationLevel,
        timeout: float = -1,
        acquire_timeout: float = 30.0,
    ):
        self.transaction_id = transaction_id
        self.backend = backend
        self.isolation_level = isolation_level
        self.timeout = timeout
        self.acquire_timeout = acquire_timeout
        self.deadline: Optional[float] = None
        self.savepoints: Dict[str, Savepoint] = {}
        self._savepoint_counter = 0
        self._connection: Any = None
        self._connection_context: Any = None
        self._begun = False
        self._committed = False
        self._rolled_back = False
        self._timed_out = False

    async def begin(self) -> None:
        """Acquire a dedicated connection and start the transaction on it"""
        if self._begun or self.is_finalized:
            raise IllegalTransactionState(
                f"Transaction {self.transaction_id} already begun"
            )

        await self._acquire()
        try:
            await self.backend.begin(self._connection, self.isolation_level)
        except Exception as e:
            await self._release()
            if isinstance(e, StorageFailure):
                raise
            raise StorageFailure(
                f"Failed to begin transaction {self.transaction_id}: {e}"
            ) from e

        self._begun = True
        if self.timeout is not None and self.timeout >= 0:
            self.deadline = monotonic() + self.timeout
        logger.debug(
            "Transaction %s began with isolation %s",
            self.transaction_id,
            self.isolation_level.value,
        )

    async def _acquire(self) -> None:
        connection_context = self.backend.connection()
        try:
            connection = await asyncio.wait_for(
                connection_context.__aenter__(), timeout=self.acquire_timeout
            )
        except asyncio.TimeoutError:
            raise StorageFailure(
                f"Timeout getting connection for transaction "
                f"{self.transaction_id}"
            )
        except StorageFailure:
            raise
        except Exception as e:
            raise StorageFailure(
                f"Failed to get connection for transaction "
                f"{self.transaction_id}: {e}"
            ) from e
        self._connection = connection
        self._connection_context = connection_context
        logger.debug(
            "Acquired connection for transaction %s", self.transaction_id
        )

    async def _release(self) -> None:
        context, self._connection_context = self._connection_context, None
        self._connection = None
        if context is None:
            return
        try:
            await context.__aexit__(None, None, None)
            logger.debug(
                "Released connection for transaction %s", self.transaction_id
            )
        except Exception as e:
            logger.warning(
                "Error releasing connection for transaction %s: %s",
                self.transaction_id,
                e,
            )

    @property
    def connection(self) -> Any:
        if not self.is_active:
            raise IllegalTransactionState(
                f"Transaction {self.transaction_id} is not active"
            )
        return self._connection

    @property
    def expired(self) -> bool:
        return self.deadline is not None and monotonic() > self.deadline

    def check_deadline(self) -> None:
        if self._timed_out or (self.is_active and self.expired):
            raise TransactionTimeout(
                f"Transaction {self.transaction_id} timed out after "
                f"{self.timeout} seconds"
            )

    async def commit(self) -> None:
        if not self.is_active:
            raise IllegalTransactionState(
                f"Transaction {self.transaction_id} is not active"
            )

        try:
            await self.backend.commit(self._connection)
            self._committed = True
        except Exception as e:
            logger.error(
                "Commit failed for %s, attempting rollback: %s",
                self.transaction_id,
                e,
            )
            try:
                await self.backend.rollback(self._connection)
            except Exception as rollback_error:
                logger.critical(
                    "Rollback after failed commit also failed: %s",
                    rollback_error,
                )
            self._rolled_back = True
            if isinstance(e, StorageFailure):
                raise
            raise StorageFailure(
                f"Failed to commit transaction {self.transaction_id}: {e}"
            ) from e
        finally:
            await self._release()

    async def rollback(self, timed_out: bool = False) -> None:
        if not self.is_active:
            raise IllegalTransactionState(
                f"Transaction {self.transaction_id} is not active"
            )

        # Marked rolled back even if the SQL fails, so nothing else runs on it
        self._rolled_back = True
        self._timed_out = timed_out
        try:
            await self.backend.rollback(self._connection)
        except Exception as e:
            logger.critical(
                "CRITICAL: Rollback failed for %s: %s", self.transaction_id, e
            )
            if isinstance(e, StorageFailure):
                raise
            raise StorageFailure(
                f"Failed to rollback transaction {self.transaction_id}: {e}"
            ) from e
        finally:
            await self._release()

    def next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    @property
    def is_active(self) -> bool:
        return self._begun and not self.is_finalized

    @property
    def is_finalized(self) -> bool:
        return self._committed or self._rolled_back

    @property
    def is_committed(self) -> bool:
        return self._committed

    @property
    def is_rolled_back(self) -> bool:
        return self._rolled_back

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    def __repr__(self) -> str:
        if self._committed:
            state = "committed"
        elif self._rolled_back:
            state = "rolled_back"
        else:
            state = "active" if self._begun else "pending"
        return f"<PhysicalTransaction {self.transaction_id} ({state})>"
