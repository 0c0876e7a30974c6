"""
Ledger Data Model

Accounts, entries and transfers as immutable records built from database
rows. All monetary values are Decimal; serialized forms carry them as
strings so no precision is lost.
"""

from dataclasses import dataclass, asdict, fields
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Union


def to_decimal(value: Union[Decimal, int, str, float]) -> Decimal:
    """Coerce a database or caller value to Decimal without going through binary floats"""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")


def to_account_id(value: Union[int, str]) -> int:
    """Account ids must be integers; numeric strings are accepted and converted"""
    if isinstance(value, bool):
        raise ValueError(f"Invalid account id: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise ValueError(f"Invalid account id: {value!r}")


def to_datetime(value: Union[datetime, str]) -> datetime:
    """SQLite hands back timestamps as text"""
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class LedgerRecord:
    """Base class for all persisted ledger rows"""
    id: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
        return result

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'LedgerRecord':
        """Build a record from a database row keyed by column name"""
        values = {}
        for f in fields(cls):
            value = row[f.name]
            if f.type in (Decimal, 'Decimal'):
                value = to_decimal(value)
            elif f.type in (datetime, 'datetime'):
                value = to_datetime(value)
            values[f.name] = value
        return cls(**values)


@dataclass(frozen=True)
class Account(LedgerRecord):
    """An account holding a running balance in a single currency"""
    owner: str
    balance: Decimal
    currency: str


@dataclass(frozen=True)
class Entry(LedgerRecord):
    """
    One account's side of a transfer.

    Positive amounts credit the account, negative amounts debit it.
    Entries are write-once.
    """
    account_id: int
    amount: Decimal


@dataclass(frozen=True)
class Transfer(LedgerRecord):
    """Logical record of funds moved from one account to another"""
    from_account_id: int
    to_account_id: int
    amount: Decimal


@dataclass(frozen=True)
class TransferRequest:
    """Instruction to move a positive amount between two distinct accounts"""
    from_account_id: int
    to_account_id: int
    amount: Decimal

    def __post_init__(self):
        amount = to_decimal(self.amount)
        # frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, 'amount', amount)
        # lock order compares ids, so they must be ints, not strings
        object.__setattr__(self, 'from_account_id', to_account_id(self.from_account_id))
        object.__setattr__(self, 'to_account_id', to_account_id(self.to_account_id))

        if not amount.is_finite() or amount <= 0:
            raise ValueError("Transfer amount must be positive")

        if self.from_account_id == self.to_account_id:
            raise ValueError("Cannot transfer to the same account")


@dataclass(frozen=True)
class TransferResult:
    """Everything a committed transfer created or changed"""
    transfer: Transfer
    from_account: Account
    to_account: Account
    from_entry: Entry
    to_entry: Entry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfer": self.transfer.to_dict(),
            "from_account": self.from_account.to_dict(),
            "to_account": self.to_account.to_dict(),
            "from_entry": self.from_entry.to_dict(),
            "to_entry": self.to_entry.to_dict(),
        }
