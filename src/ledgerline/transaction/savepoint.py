"""
Savepoint implementation for nested transaction rollback points.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ledgerline.exception import (
    SavepointUnsupported,
    StorageFailure,
    TransactionError,
)

if TYPE_CHECKING:
    from .connection_manager import PhysicalTransaction

logger = logging.getLogger(__name__)


class Savepoint:
    """
    A named marker inside one physical transaction. Rolling back to it undoes
    only the work done after it was created.
    """

    def __init__(self, name: str, physical: PhysicalTransaction):
        self.name = name
        self.physical = physical
        self._released = False

    @property
    def is_released(self) -> bool:
        """Check if this savepoint has been released"""
        return self._released

    def __str__(self) -> str:
        status = "released" if self._released else "active"
        return f"<Savepoint {self.name} ({status})>"


class SavepointCoordinator:
    """Implements NESTED semantics on top of a single physical transaction"""

    async def create_savepoint(
        self, physical: PhysicalTransaction
    ) -> Savepoint:
        if not physical.backend.supports_savepoints:
            raise SavepointUnsupported(
                "Savepoints not supported by storage backend "
                f"{physical.backend}"
            )
        if not physical.is_active:
            raise TransactionError(
                f"Cannot create savepoint - transaction "
                f"{physical.transaction_id} not active"
            )

        name = physical.next_savepoint_name()
        try:
            await physical.backend.savepoint(physical.connection, name)
        except Exception as e:
            logger.error("Failed to create savepoint %s: %s", name, e)
            if isinstance(e, StorageFailure):
                raise
            raise StorageFailure(
                f"Failed to create savepoint {name}: {e}"
            ) from e

        savepoint = Savepoint(name, physical)
        physical.savepoints[name] = savepoint
        logger.debug(
            "Created savepoint %s in transaction %s",
            name,
            physical.transaction_id,
        )
        return savepoint

    async def rollback_to_savepoint(
        self, physical: PhysicalTransaction, savepoint: Savepoint
    ) -> None:
        self._check_usable(physical, savepoint, "rollback")
        logger.debug("Rolling back to savepoint %s", savepoint.name)

        try:
            await physical.backend.rollback_to_savepoint(
                physical.connection, savepoint.name
            )
        except Exception as e:
            logger.error(
                "Failed to rollback to savepoint %s: %s", savepoint.name, e
            )
            if isinstance(e, StorageFailure):
                raise
            raise StorageFailure(
                f"Failed to rollback to savepoint {savepoint.name}: {e}"
            ) from e
        logger.info("Rolled back to savepoint %s", savepoint.name)

    async def release_savepoint(
        self, physical: PhysicalTransaction, savepoint: Savepoint
    ) -> None:
        self._check_usable(physical, savepoint, "release")
        logger.debug("Releasing savepoint %s", savepoint.name)

        try:
            await physical.backend.release_savepoint(
                physical.connection, savepoint.name
            )
        except Exception as e:
            logger.error(
                "Failed to release savepoint %s: %s", savepoint.name, e
            )
            if isinstance(e, StorageFailure):
                raise
            raise StorageFailure(
                f"Failed to release savepoint {savepoint.name}: {e}"
            ) from e
        savepoint._released = True
        physical.savepoints.pop(savepoint.name, None)

    @staticmethod
    def _check_usable(
        physical: PhysicalTransaction, savepoint: Savepoint, action: str
    ) -> None:
        if savepoint.is_released:
            raise TransactionError(
                f"Savepoint {savepoint.name} already released"
            )
        if savepoint.physical is not physical:
            raise TransactionError(
                f"Savepoint {savepoint.name} does not belong to transaction "
                f"{physical.transaction_id}"
            )
        if not physical.is_active:
            raise TransactionError(
                f"Cannot {action} savepoint {savepoint.name} - "
                f"transaction not active"
            )
