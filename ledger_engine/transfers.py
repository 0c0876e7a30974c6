"""
Transfer Processing Module

Moves funds between two accounts as one unit of work: a transfer row, a
debit entry, a credit entry and two balance updates, committed together or
not at all. Balance row locks are always taken smaller account id first, so
concurrent transfers in opposite directions cannot wait on each other in a
cycle.
"""

from decimal import Decimal
from typing import Callable, Optional, Tuple, TypeVar, Union
import threading
import time

from .config import LedgerConfig, get_config
from .errors import (
    LedgerError, RetryableError, InsufficientFundsError, CurrencyMismatchError,
)
from .logging_config import get_logger, log_action
from .models import Account, TransferRequest, TransferResult
from .storage import LedgerStore, Queries


T = TypeVar("T")


def ordered_pair(a: int, b: int) -> Tuple[int, int]:
    """Lock-acquisition order for two accounts: smaller id first, whatever the direction"""
    return (a, b) if a < b else (b, a)


class TransferProcessor:
    """
    Executes transfers against a LedgerStore.

    The processor never retries and never recovers locally; every error
    raised inside the unit of work reaches the caller after the store has
    rolled back.
    """

    def __init__(self, store: LedgerStore, config: Optional[LedgerConfig] = None,
                 enforce_sufficient_funds: Optional[bool] = None,
                 enforce_currency_match: Optional[bool] = None):
        self.store = store
        if config is None:
            config = get_config()
        self.enforce_sufficient_funds = (
            config.enforce_sufficient_funds if enforce_sufficient_funds is None else enforce_sufficient_funds
        )
        self.enforce_currency_match = (
            config.enforce_currency_match if enforce_currency_match is None else enforce_currency_match
        )
        self.logger = get_logger("ledger.transfers")

    def transfer(
        self,
        from_account_id: int,
        to_account_id: int,
        amount: Union[Decimal, str, int],
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        correlation_id: Optional[str] = None
    ) -> TransferResult:
        """
        Move ``amount`` from one account to another.

        Args:
            from_account_id: Account to debit
            to_account_id: Account to credit
            amount: Positive amount to move
            timeout: Seconds before the unit of work is aborted and rolled back
            cancel_event: Set from another thread to abort the transfer
            correlation_id: Request id carried into log records

        Returns:
            TransferResult with the transfer, both entries and both accounts
            as they are after the transfer

        Raises:
            ValueError: Amount not positive or both accounts the same
            LedgerError: Any store or precondition failure; nothing was written
        """
        request = TransferRequest(from_account_id, to_account_id, amount)
        return self.execute(request, timeout=timeout, cancel_event=cancel_event,
                            correlation_id=correlation_id)

    def execute(self, request: TransferRequest, timeout: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None,
                correlation_id: Optional[str] = None) -> TransferResult:
        """Run a validated TransferRequest as one unit of work"""
        try:
            result = self.store.execute_atomically(
                lambda queries: self._transfer_tx(queries, request),
                timeout=timeout,
                cancel_event=cancel_event,
            )
        except RetryableError as e:
            log_action(
                self.logger, "warning", f"Transfer aborted by contention: {e}",
                action="transfer", correlation_id=correlation_id,
                extra=self._request_fields(request)
            )
            raise
        except LedgerError as e:
            log_action(
                self.logger, "error", f"Transfer failed: {type(e).__name__}: {e}",
                action="transfer", correlation_id=correlation_id,
                extra=self._request_fields(request)
            )
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            action="transfer", resource=f"transfer:{result.transfer.id}",
            correlation_id=correlation_id,
            extra={
                **self._request_fields(request),
                "transfer_id": result.transfer.id,
                "from_entry_id": result.from_entry.id,
                "to_entry_id": result.to_entry.id,
            }
        )
        return result

    def _transfer_tx(self, queries: Queries, request: TransferRequest) -> TransferResult:
        """The unit of work; step order is fixed"""
        if self.enforce_currency_match:
            self._check_currencies(queries, request)

        transfer = queries.create_transfer(request.from_account_id, request.to_account_id, request.amount)
        from_entry = queries.create_entry(request.from_account_id, -request.amount)
        to_entry = queries.create_entry(request.to_account_id, request.amount)

        from_account, to_account = self._move_money(
            queries, request.from_account_id, -request.amount,
            request.to_account_id, request.amount
        )

        if self.enforce_sufficient_funds and from_account.balance < 0:
            # raising here rolls back every row written above
            raise InsufficientFundsError(from_account.id, from_account.balance, request.amount)

        return TransferResult(
            transfer=transfer,
            from_account=from_account,
            to_account=to_account,
            from_entry=from_entry,
            to_entry=to_entry,
        )

    def _move_money(self, queries: Queries, from_account_id: int, from_delta: Decimal,
                    to_account_id: int, to_delta: Decimal) -> Tuple[Account, Account]:
        """Apply both balance deltas in lock order; returns (from_account, to_account)"""
        deltas = {from_account_id: from_delta, to_account_id: to_delta}
        first_id, second_id = ordered_pair(from_account_id, to_account_id)

        updated = {}
        updated[first_id] = queries.add_account_balance(first_id, deltas[first_id])
        updated[second_id] = queries.add_account_balance(second_id, deltas[second_id])
        return updated[from_account_id], updated[to_account_id]

    def _check_currencies(self, queries: Queries, request: TransferRequest) -> None:
        # plain reads: currency never changes, so no lock is needed
        from_account = queries.get_account(request.from_account_id)
        to_account = queries.get_account(request.to_account_id)
        if from_account.currency != to_account.currency:
            raise CurrencyMismatchError(from_account.currency, to_account.currency)

    @staticmethod
    def _request_fields(request: TransferRequest) -> dict:
        return {
            "from_account_id": request.from_account_id,
            "to_account_id": request.to_account_id,
            "amount": str(request.amount),
        }


def retry_on_contention(operation: Callable[[], T], attempts: int = 3,
                        backoff_seconds: float = 0.05) -> T:
    """
    Re-run ``operation`` while it fails with a RetryableError.

    For callers that choose to retry contention failures; the transfer
    processor itself never calls this. Backoff doubles after each attempt.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    logger = get_logger("ledger.transfers")
    delay = backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except RetryableError as e:
            if attempt == attempts:
                raise
            logger.warning(f"Retrying after contention (attempt {attempt}/{attempts}): {e}")
            time.sleep(delay)
            delay *= 2
