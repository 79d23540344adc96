from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple, Type

from ledgerline.exception import (
    AccountNotFound,
    DuplicateAccount,
    InsufficientFunds,
    InvalidAmount,
    InvalidTransfer,
    LedgerlineError,
)
from ledgerline.transaction import (
    IsolationLevel,
    Propagation,
    TransactionChain,
    TransactionManager,
)
from ledgerline.transaction.interfaces import RollbackPredicate

from .models import Account, Amount, TransferResult, to_amount
from .repository import AccountRepository

logger = logging.getLogger(__name__)


class TransferService:
    """
    Moves money between accounts.

    Every operation runs in an explicit transaction context from the
    manager. Reads and writes go through the repository, which joins the
    physical transaction bound to the chain. Balances only change on commit.

    ``InsufficientFunds`` and ``AccountNotFound`` are recoverable failures:
    they do not roll back by default. Pass ``rollback_for`` (or a
    ``rollback_predicate``) to opt them in.
    """

    def __init__(
        self,
        manager: TransactionManager,
        repository: AccountRepository,
        *,
        isolation: IsolationLevel = IsolationLevel.READ_COMMITTED,
        timeout: Optional[float] = None,
    ) -> None:
        self.manager = manager
        self.repository = repository
        self.isolation = isolation
        self.timeout = timeout

    async def transfer(
        self,
        from_id: int,
        to_id: int,
        amount: Amount,
        *,
        timeout: Optional[float] = None,
        rollback_for: Sequence[Type[BaseException]] = (),
        no_rollback_for: Sequence[Type[BaseException]] = (),
        rollback_predicate: Optional[RollbackPredicate] = None,
        chain: Optional[TransactionChain] = None,
    ) -> TransferResult:
        """Debit one account and credit another atomically

        Args:
            from_id (int): The account to debit
            to_id (int): The account to credit
            amount (Amount): Positive amount with at most two decimals
            timeout (float, optional): Seconds before the transfer times
                out. Defaults to the service timeout.
            rollback_for (Sequence[Type[BaseException]], optional): Failure
                types that should roll back in addition to the defaults.
            no_rollback_for (Sequence[Type[BaseException]], optional):
                Failure types that should not roll back.
            rollback_predicate (RollbackPredicate, optional): Replaces the
                rollback rules entirely.
            chain (TransactionChain, optional): Explicit call chain.

        Raises:
            InvalidAmount: If the amount is not positive
            InvalidTransfer: If both accounts are the same
            AccountNotFound: If either account does not exist
            InsufficientFunds: If the source balance is below the amount
            TransactionTimeout: If the transfer ran out of time
            StorageFailure: If the backend failed

        Returns:
            TransferResult: Final state of both accounts
        """
        value = self._positive(amount)
        if from_id == to_id:
            raise InvalidTransfer(f"Cannot transfer from {from_id} to itself")

        async with self.manager.transaction(
            Propagation.REQUIRED,
            self.isolation,
            self.timeout if timeout is None else timeout,
            rollback_predicate=rollback_predicate,
            rollback_for=rollback_for,
            no_rollback_for=no_rollback_for,
            chain=chain,
            name="transfer",
        ) as context:
            source, target = await self._load_pair(from_id, to_id, chain)
            if source.balance < value:
                raise InsufficientFunds(
                    f"Account {source.account_number} has {source.balance}, "
                    f"cannot transfer {value}"
                )
            source.debit(value)
            target.credit(value)
            source = await self.repository.save(source, chain=chain)
            target = await self.repository.save(target, chain=chain)

        logger.info(
            "Transfer of %s from %s to %s finished as %s",
            value,
            source.account_number,
            target.account_number,
            context.status.value,
        )
        return TransferResult(
            transaction_id=context.transaction_id,
            status=context.status,
            amount=value,
            source=source,
            target=target,
        )

    async def _load_pair(
        self, from_id: int, to_id: int, chain: Optional[TransactionChain]
    ) -> Tuple[Account, Account]:
        # Lock in id order so concurrent opposite transfers cannot deadlock
        loaded = {}
        for account_id in sorted((from_id, to_id)):
            account = await self.repository.find_by_id(
                account_id, lock=True, chain=chain
            )
            if account is None:
                raise AccountNotFound(f"Account {account_id} does not exist")
            loaded[account_id] = account
        return loaded[from_id], loaded[to_id]

    async def open_account(
        self,
        account_number: str,
        initial_balance: Amount = 0,
        *,
        chain: Optional[TransactionChain] = None,
    ) -> Account:
        balance = to_amount(initial_balance)
        if balance < 0:
            raise InvalidAmount("Initial balance cannot be negative")
        if not account_number:
            raise LedgerlineError("Account number is required")

        async with self.manager.transaction(
            Propagation.REQUIRED, self.isolation, chain=chain
        ):
            existing = await self.repository.find_by_account_number(
                account_number, chain=chain
            )
            if existing is not None:
                raise DuplicateAccount(
                    f"Account {account_number} already exists"
                )
            account = await self.repository.save(
                Account(account_number=account_number, balance=balance),
                chain=chain,
            )
        logger.debug("Opened account %s", account_number)
        return account

    async def get_account(
        self, account_id: int, *, chain: Optional[TransactionChain] = None
    ) -> Account:
        async with self.manager.transaction(
            Propagation.SUPPORTS, chain=chain
        ):
            account = await self.repository.find_by_id(
                account_id, chain=chain
            )
        if account is None:
            raise AccountNotFound(f"Account {account_id} does not exist")
        return account

    async def get_account_by_number(
        self, account_number: str, *, chain: Optional[TransactionChain] = None
    ) -> Account:
        async with self.manager.transaction(
            Propagation.SUPPORTS, chain=chain
        ):
            account = await self.repository.find_by_account_number(
                account_number, chain=chain
            )
        if account is None:
            raise AccountNotFound(f"Account {account_number} does not exist")
        return account

    async def list_accounts(
        self, *, chain: Optional[TransactionChain] = None
    ) -> List[Account]:
        async with self.manager.transaction(
            Propagation.SUPPORTS, chain=chain
        ):
            return await self.repository.find_all(chain=chain)

    async def deposit(
        self,
        account_id: int,
        amount: Amount,
        *,
        chain: Optional[TransactionChain] = None,
    ) -> Account:
        value = self._positive(amount)
        async with self.manager.transaction(
            Propagation.REQUIRED, self.isolation, chain=chain
        ):
            account = await self._require(account_id, chain)
            account.credit(value)
            return await self.repository.save(account, chain=chain)

    async def withdraw(
        self,
        account_id: int,
        amount: Amount,
        *,
        chain: Optional[TransactionChain] = None,
    ) -> Account:
        value = self._positive(amount)
        async with self.manager.transaction(
            Propagation.REQUIRED, self.isolation, chain=chain
        ):
            account = await self._require(account_id, chain)
            account.debit(value)
            return await self.repository.save(account, chain=chain)

    async def _require(
        self, account_id: int, chain: Optional[TransactionChain]
    ) -> Account:
        account = await self.repository.find_by_id(
            account_id, lock=True, chain=chain
        )
        if account is None:
            raise AccountNotFound(f"Account {account_id} does not exist")
        return account

    @staticmethod
    def _positive(amount: Amount):
        value = to_amount(amount)
        if value <= 0:
            raise InvalidAmount(f"Amount must be positive, got {value}")
        return value
