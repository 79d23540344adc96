from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Optional, Union

from ledgerline.exception import InsufficientFunds, InvalidAmount
from ledgerline.transaction import TransactionStatus

CENT = Decimal("0.01")
# Balances are stored as signed 64-bit cents
MAX_AMOUNT = Decimal(2**63 - 1) / 100
Amount = Union[Decimal, int, str, float]


def to_amount(value: Amount) -> Decimal:
    """Parse a money amount with at most two decimal places"""
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidAmount(f"Not a valid amount: {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmount(f"Not a valid amount: {value!r}")
    if abs(amount) > MAX_AMOUNT:
        raise InvalidAmount(f"Amount is too large: {value}")
    if amount != amount.quantize(CENT, rounding=ROUND_HALF_EVEN):
        raise InvalidAmount(f"Amount has more than two decimals: {value}")
    return amount.quantize(CENT)


def to_cents(amount: Decimal) -> int:
    return int(amount.quantize(CENT) * 100)


def from_cents(cents: Any) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)


@dataclass
class Account:
    account_number: str
    balance: Decimal = Decimal("0.00")
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def debit(self, amount: Decimal) -> None:
        if amount > self.balance:
            raise InsufficientFunds(
                f"Account {self.account_number} has {self.balance}, "
                f"cannot debit {amount}"
            )
        self.balance -= amount

    def credit(self, amount: Decimal) -> None:
        self.balance += amount


@dataclass
class TransferResult:
    transaction_id: str
    status: TransactionStatus
    amount: Decimal
    source: Account
    target: Account

    @property
    def committed(self) -> bool:
        return self.status is TransactionStatus.COMMITTED
