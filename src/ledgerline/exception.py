class LedgerlineError(Exception):
    pass


class TransactionError(LedgerlineError):
    """Base exception for transaction errors"""

    pass


class NoActiveTransaction(TransactionError):
    """Raised when MANDATORY propagation finds no transaction to join"""

    pass


class UnexpectedActiveTransaction(TransactionError):
    """Raised when NEVER propagation finds an active transaction"""

    pass


class SavepointUnsupported(TransactionError):
    """Raised when savepoints are not supported by the storage backend"""

    pass


class TransactionTimeout(TransactionError):
    """Raised when an operation observes an expired transaction deadline"""

    pass


class IllegalTransactionState(TransactionError):
    """Raised when a context is completed out of order or twice"""

    pass


class StorageFailure(LedgerlineError):
    """Raised when the storage backend or its driver fails"""

    pass


class RecoverableError(LedgerlineError):
    """Failures that do not trigger a rollback unless a rule says so"""

    pass


class AccountNotFound(RecoverableError):
    pass


class InsufficientFunds(RecoverableError):
    pass


class InvalidAmount(RecoverableError):
    pass


class InvalidTransfer(RecoverableError):
    pass


class DuplicateAccount(RecoverableError):
    pass
