from .models import Account, TransferResult
from .repository import (
    AccountHydrator,
    AccountRepository,
    SQLAccountRepository,
)
from .service import TransferService

__all__ = (
    "Account",
    "AccountHydrator",
    "AccountRepository",
    "SQLAccountRepository",
    "TransferResult",
    "TransferService",
)
