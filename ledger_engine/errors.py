"""
Ledger Error Taxonomy

Every failure surfaced by the store or the transfer processor is one of the
classes below. Driver exceptions are translated at the store boundary so
callers never need to know which database backs the ledger.
"""

from typing import Any, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""
    pass


class NotFoundError(LedgerError):
    """A referenced row does not exist"""
    
    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ConstraintViolationError(LedgerError):
    """Foreign-key, unique or check constraint failure"""
    pass


class RetryableError(LedgerError):
    """Store-level contention; the caller may re-issue the whole unit of work"""
    pass


class LockWaitTimeoutError(RetryableError):
    """Gave up waiting for a row or database lock"""
    pass


class SerializationFailureError(RetryableError):
    """The store aborted the transaction to preserve isolation"""
    pass


class RollbackError(LedgerError):
    """
    Rollback failed after the unit of work had already failed.
    
    Both errors are kept: the store is in an unknown state and neither
    may be masked by the other.
    """
    
    def __init__(self, original_error: BaseException, rollback_error: BaseException):
        self.original_error = original_error
        self.rollback_error = rollback_error
        super().__init__(
            f"rollback failed ({rollback_error!r}) after error: {original_error!r}"
        )


class CommitError(LedgerError):
    """Commit failed after a successful unit of work; no effect may be assumed"""
    pass


class TransferCancelledError(LedgerError):
    """The unit of work was cancelled or exceeded its deadline"""
    
    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(f"unit of work aborted: {reason}")


class InsufficientFundsError(LedgerError):
    """Source account would go below zero (only when the check is enabled)"""
    
    def __init__(self, account_id: int, balance: Any, amount: Optional[Any] = None):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"account {account_id} has insufficient funds: balance after transfer would be {balance}"
        )


class CurrencyMismatchError(LedgerError):
    """Source and destination accounts hold different currencies"""
    
    def __init__(self, from_currency: str, to_currency: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(f"currency mismatch: {from_currency} != {to_currency}")


class StoreError(LedgerError):
    """Any other failure reported by the underlying database driver"""
    pass
