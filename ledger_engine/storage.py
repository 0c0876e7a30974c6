"""
Ledger Store Module

Transaction executor for the ledger. ``LedgerStore.execute_atomically`` runs a
unit of work against a ``Queries`` handle bound to one open transaction,
commits on success and rolls back on any failure. Implementations exist for
SQLite (local and test use) and PostgreSQL (production). All monetary values
are Decimal; SQLite stores them as text and adds them with a registered SQL
function so precision is never lost.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar, Union
from decimal import Decimal
from pathlib import Path
import sqlite3
import threading
import time

from .config import LedgerConfig
from .errors import (
    LedgerError, NotFoundError, ConstraintViolationError, LockWaitTimeoutError,
    SerializationFailureError, RollbackError, CommitError,
    TransferCancelledError, StoreError,
)
from .logging_config import get_logger
from .models import Account, Entry, Transfer, to_decimal


T = TypeVar("T")

ACCOUNT_COLUMNS = "id, owner, balance, currency, created_at"
ENTRY_COLUMNS = "id, account_id, amount, created_at"
TRANSFER_COLUMNS = "id, from_account_id, to_account_id, amount, created_at"

LEDGER_TABLES = ("accounts", "entries", "transfers")

logger = get_logger("ledger.storage")


class Queries:
    """
    Transactional handle passed to a unit of work.

    Exposes the ledger primitives and the balance mutator, all running on the
    transaction opened by the store. The handle is only valid while the unit
    of work is running; every statement first checks for cancellation.
    """

    def __init__(self, store: 'LedgerStore', connection: Any, deadline: '_Deadline'):
        self._store = store
        self._connection = connection
        self._deadline = deadline
        self._closed = False

    def close(self) -> None:
        """End the scope; further use raises RuntimeError"""
        self._closed = True

    def checkpoint(self) -> None:
        """Raise TransferCancelledError if the unit of work was cancelled or timed out"""
        if self._closed:
            raise RuntimeError("Queries handle used outside of its transaction")
        self._deadline.check()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[Any]:
        """
        Run one statement inside the transaction and return all rows.

        Driver errors are translated into the ledger error taxonomy.
        """
        self.checkpoint()
        try:
            cursor = self._connection.cursor()
            try:
                if params:
                    cursor.execute(self._store.prepare_sql(sql), self._store.prepare_params(params))
                else:
                    cursor.execute(self._store.prepare_sql(sql))
                rows = cursor.fetchall() if cursor.description else []
            finally:
                cursor.close()
        except LedgerError:
            raise
        except Exception as exc:
            translated = self._store.translate_error(exc, self._deadline)
            if translated is None:
                raise
            raise translated from exc
        return rows

    def _fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Any]:
        rows = self.execute(sql, params)
        return rows[0] if rows else None

    def _page_limit(self, limit: Optional[int]) -> int:
        return self._store.page_size if limit is None else limit

    # Accounts

    def create_account(self, owner: str, balance: Union[Decimal, str, int], currency: str) -> Account:
        """Insert a new account with an opening balance"""
        row = self._fetch_one(
            f"INSERT INTO accounts (owner, balance, currency) VALUES (%s, %s, %s) "
            f"RETURNING {ACCOUNT_COLUMNS}",
            (owner, to_decimal(balance), currency),
        )
        return Account.from_row(row)

    def get_account(self, account_id: int) -> Account:
        """Load an account; raises NotFoundError when missing"""
        row = self._fetch_one(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = %s",
            (account_id,),
        )
        if row is None:
            raise NotFoundError("account", account_id)
        return Account.from_row(row)

    def get_account_for_update(self, account_id: int) -> Account:
        """Load an account and hold its row lock until the transaction ends"""
        row = self._fetch_one(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = %s{self._store.row_lock_clause}",
            (account_id,),
        )
        if row is None:
            raise NotFoundError("account", account_id)
        return Account.from_row(row)

    def list_accounts(self, owner: Optional[str] = None, limit: Optional[int] = None,
                      offset: int = 0) -> List[Account]:
        """List accounts ordered by id, optionally for one owner"""
        limit = self._page_limit(limit)
        if owner is None:
            rows = self.execute(
                f"SELECT {ACCOUNT_COLUMNS} FROM accounts ORDER BY id LIMIT %s OFFSET %s",
                (limit, offset),
            )
        else:
            rows = self.execute(
                f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE owner = %s "
                f"ORDER BY id LIMIT %s OFFSET %s",
                (owner, limit, offset),
            )
        return [Account.from_row(row) for row in rows]

    def add_account_balance(self, account_id: int, delta: Union[Decimal, str, int]) -> Account:
        """
        Apply a signed delta to an account balance in a single statement.

        The read and the write happen under the same row lock, so concurrent
        mutations of one account can never lose an update. No business rules
        are applied here: the balance may go negative.

        Args:
            account_id: Account to mutate
            delta: Signed amount; negative debits, positive credits

        Returns:
            The account as it is after the update
        """
        row = self._fetch_one(
            f"UPDATE accounts SET balance = {self._store.balance_add_expression} "
            f"WHERE id = %s RETURNING {ACCOUNT_COLUMNS}",
            (to_decimal(delta), account_id),
        )
        if row is None:
            raise NotFoundError("account", account_id)
        return Account.from_row(row)

    # Entries

    def create_entry(self, account_id: int, amount: Union[Decimal, str, int]) -> Entry:
        row = self._fetch_one(
            f"INSERT INTO entries (account_id, amount) VALUES (%s, %s) RETURNING {ENTRY_COLUMNS}",
            (account_id, to_decimal(amount)),
        )
        return Entry.from_row(row)

    def get_entry(self, entry_id: int) -> Entry:
        row = self._fetch_one(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id = %s",
            (entry_id,),
        )
        if row is None:
            raise NotFoundError("entry", entry_id)
        return Entry.from_row(row)

    def list_entries(self, account_id: int, limit: Optional[int] = None, offset: int = 0) -> List[Entry]:
        limit = self._page_limit(limit)
        rows = self.execute(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE account_id = %s "
            f"ORDER BY id LIMIT %s OFFSET %s",
            (account_id, limit, offset),
        )
        return [Entry.from_row(row) for row in rows]

    # Transfers

    def create_transfer(self, from_account_id: int, to_account_id: int,
                        amount: Union[Decimal, str, int]) -> Transfer:
        row = self._fetch_one(
            f"INSERT INTO transfers (from_account_id, to_account_id, amount) "
            f"VALUES (%s, %s, %s) RETURNING {TRANSFER_COLUMNS}",
            (from_account_id, to_account_id, to_decimal(amount)),
        )
        return Transfer.from_row(row)

    def get_transfer(self, transfer_id: int) -> Transfer:
        row = self._fetch_one(
            f"SELECT {TRANSFER_COLUMNS} FROM transfers WHERE id = %s",
            (transfer_id,),
        )
        if row is None:
            raise NotFoundError("transfer", transfer_id)
        return Transfer.from_row(row)

    def list_transfers(self, from_account_id: Optional[int] = None, to_account_id: Optional[int] = None,
                       limit: Optional[int] = None, offset: int = 0) -> List[Transfer]:
        """List transfers matching all given account filters, ordered by id"""
        limit = self._page_limit(limit)
        conditions = []
        params: List[Any] = []
        if from_account_id is not None:
            conditions.append("from_account_id = %s")
            params.append(from_account_id)
        if to_account_id is not None:
            conditions.append("to_account_id = %s")
            params.append(to_account_id)

        where_clause = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        rows = self.execute(
            f"SELECT {TRANSFER_COLUMNS} FROM transfers {where_clause}ORDER BY id LIMIT %s OFFSET %s",
            (*params, limit, offset),
        )
        return [Transfer.from_row(row) for row in rows]

    def count(self, table: str) -> int:
        """Count rows in one of the ledger tables"""
        if table not in LEDGER_TABLES:
            raise ValueError(f"Unknown ledger table: {table}")
        row = self._fetch_one(f"SELECT COUNT(*) AS count FROM {table}")
        return int(row["count"])


class _Deadline:
    """
    Cancellation state for one unit of work.

    A timer (for ``timeout``) and a watcher thread (for ``cancel_event``)
    interrupt the connection when they trip, so a statement blocked on a lock
    is aborted too, not just the next one.
    """

    POLL_SECONDS = 0.05

    def __init__(self, store: 'LedgerStore', connection: Any,
                 timeout: Optional[float], cancel_event: Optional[threading.Event]):
        self._store = store
        self._connection = connection
        self._cancel_event = cancel_event
        self._lock = threading.Lock()
        self._done = threading.Event()
        self.timeout = timeout
        self.timed_out = False
        self.cancelled = False
        self._expires_at = time.monotonic() + timeout if timeout is not None else None

        self._timer: Optional[threading.Timer] = None
        if timeout is not None:
            self._timer = threading.Timer(timeout, self._interrupt, args=("timeout",))
            self._timer.daemon = True
            self._timer.start()

        if cancel_event is not None:
            watcher = threading.Thread(target=self._watch, name="ledger-cancel-watcher", daemon=True)
            watcher.start()

    def _watch(self) -> None:
        while not self._done.is_set():
            if self._cancel_event.wait(self.POLL_SECONDS):
                self._interrupt("cancelled")
                return

    def _interrupt(self, reason: str) -> None:
        with self._lock:
            if self._done.is_set():
                return
            if reason == "timeout":
                self.timed_out = True
            else:
                self.cancelled = True
            self._store.interrupt(self._connection)

    @property
    def reason(self) -> Optional[str]:
        if self.timed_out or (self._expires_at is not None and time.monotonic() >= self._expires_at):
            return "timeout"
        if self.cancelled or (self._cancel_event is not None and self._cancel_event.is_set()):
            return "cancelled"
        return None

    def check(self) -> None:
        reason = self.reason
        if reason:
            raise TransferCancelledError(reason)

    def finish(self) -> None:
        """Stop the timer and watcher; once this returns the connection is never interrupted"""
        with self._lock:
            self._done.set()
        if self._timer is not None:
            self._timer.cancel()


class LedgerStore(ABC):
    """Abstract transaction executor over a relational ledger database"""

    dialect = ""
    # SQL fragments that differ between backends
    balance_add_expression = "balance + %s"
    row_lock_clause = ""
    # list_* default when no limit is given
    page_size = 50

    def execute_atomically(self, unit_of_work: Callable[[Queries], T],
                           timeout: Optional[float] = None,
                           cancel_event: Optional[threading.Event] = None) -> T:
        """
        Run ``unit_of_work`` exactly once inside a single transaction.

        Args:
            unit_of_work: Callable receiving the transactional Queries handle
            timeout: Seconds after which the work is aborted and rolled back
            cancel_event: Set from another thread to abort the work

        Returns:
            Whatever the unit of work returned, once committed

        Raises:
            RollbackError: The work failed and the rollback failed too
            CommitError: The work succeeded but the commit failed
            LedgerError: Any error raised by the work itself, unchanged
        """
        connection = self._acquire()
        discard = False
        deadline = _Deadline(self, connection, timeout, cancel_event)
        queries = Queries(self, connection, deadline)
        try:
            try:
                self._begin(connection, deadline)
                result = unit_of_work(queries)
                queries.close()
                deadline.finish()
                # cancelled after the last statement but before commit
                deadline.check()
            except BaseException as exc:
                queries.close()
                deadline.finish()
                if isinstance(exc, StoreError) or not isinstance(exc, Exception):
                    discard = True
                try:
                    self._rollback(connection)
                except Exception as rollback_exc:
                    discard = True
                    logger.error(f"Rollback failed after {exc!r}: {rollback_exc!r}")
                    raise RollbackError(exc, rollback_exc) from exc
                reason = deadline.reason
                if reason and isinstance(exc, Exception) and not isinstance(exc, TransferCancelledError):
                    # a cancelled or timed-out lock wait is reported as cancellation, never as contention
                    raise TransferCancelledError(reason) from exc
                logger.debug(f"Rolled back unit of work: {exc!r}")
                raise

            try:
                self._commit(connection)
            except Exception as exc:
                discard = True
                logger.error(f"Commit failed: {exc!r}")
                raise CommitError(f"commit failed: {exc}") from exc
            return result
        finally:
            self._release(connection, discard)

    # Backend hooks

    @abstractmethod
    def _acquire(self) -> Any:
        """Get a connection dedicated to one unit of work"""
        pass

    @abstractmethod
    def _release(self, connection: Any, discard: bool = False) -> None:
        """Return a connection; discard it if its state is unknown"""
        pass

    @abstractmethod
    def _begin(self, connection: Any, deadline: _Deadline) -> None:
        """Open the transaction; waiting for locks must honour the deadline"""
        pass

    @abstractmethod
    def _commit(self, connection: Any) -> None:
        pass

    @abstractmethod
    def _rollback(self, connection: Any) -> None:
        pass

    @abstractmethod
    def interrupt(self, connection: Any) -> None:
        """Abort whatever statement is running on the connection (thread-safe)"""
        pass

    @abstractmethod
    def translate_error(self, exc: Exception, deadline: Optional[_Deadline] = None) -> Optional[LedgerError]:
        """Map a driver exception to the ledger taxonomy (None = not a driver error)"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release all resources held by the store"""
        pass

    def prepare_sql(self, sql: str) -> str:
        return sql

    def prepare_params(self, params: Sequence[Any]) -> Sequence[Any]:
        return tuple(params)

    # Single-statement conveniences, each in its own unit of work

    def create_account(self, owner: str, balance: Union[Decimal, str, int], currency: str) -> Account:
        return self.execute_atomically(lambda q: q.create_account(owner, balance, currency))

    def get_account(self, account_id: int) -> Account:
        return self.execute_atomically(lambda q: q.get_account(account_id))

    def list_accounts(self, owner: Optional[str] = None, limit: Optional[int] = None,
                      offset: int = 0) -> List[Account]:
        return self.execute_atomically(lambda q: q.list_accounts(owner, limit, offset))

    def get_entry(self, entry_id: int) -> Entry:
        return self.execute_atomically(lambda q: q.get_entry(entry_id))

    def list_entries(self, account_id: int, limit: Optional[int] = None, offset: int = 0) -> List[Entry]:
        return self.execute_atomically(lambda q: q.list_entries(account_id, limit, offset))

    def get_transfer(self, transfer_id: int) -> Transfer:
        return self.execute_atomically(lambda q: q.get_transfer(transfer_id))

    def list_transfers(self, from_account_id: Optional[int] = None, to_account_id: Optional[int] = None,
                       limit: Optional[int] = None, offset: int = 0) -> List[Transfer]:
        return self.execute_atomically(
            lambda q: q.list_transfers(from_account_id, to_account_id, limit, offset)
        )

    def count(self, table: str) -> int:
        return self.execute_atomically(lambda q: q.count(table))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


def _decimal_add(value: Any, delta: Any) -> Optional[str]:
    """SQL function: exact decimal addition on text-encoded amounts"""
    if value is None or delta is None:
        return None
    return str(Decimal(str(value)) + Decimal(str(delta)))


class SQLiteLedgerStore(LedgerStore):
    """
    SQLite ledger store.

    Each unit of work gets its own connection and starts with
    ``BEGIN IMMEDIATE``, taking the database write lock up front. Competing
    writers poll for the lock for up to ``busy_timeout`` seconds and then fail
    with LockWaitTimeoutError; a cancellation or timeout ends the wait early.
    An in-memory database cannot be shared between connections, so a file
    path is required.
    """

    dialect = "sqlite"
    balance_add_expression = "decimal_add(balance, %s)"
    row_lock_clause = ""

    def __init__(self, db_path: Union[str, Path], busy_timeout: float = 30.0, page_size: int = 50):
        self.db_path = str(db_path)
        if self.db_path == ":memory:" or self.db_path.startswith("file::memory:"):
            raise ValueError("SQLiteLedgerStore needs a database file shared by all connections")
        self.busy_timeout = busy_timeout
        self.page_size = page_size

        # WAL lets readers proceed while a transfer holds the write lock
        connection = self._connect(busy_timeout)
        try:
            connection.execute("PRAGMA journal_mode = WAL")
            connection.execute("PRAGMA synchronous = NORMAL")
        finally:
            connection.close()

    def _connect(self, timeout: float) -> sqlite3.Connection:
        # isolation_level=None: transactions are issued explicitly below
        connection = sqlite3.connect(
            self.db_path,
            timeout=timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.create_function("decimal_add", 2, _decimal_add, deterministic=True)
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _acquire(self) -> sqlite3.Connection:
        try:
            # short driver-level wait; _begin polls the lock so cancellation is seen
            return self._connect(min(self.busy_timeout, _Deadline.POLL_SECONDS))
        except sqlite3.Error as exc:
            raise self.translate_error(exc) from exc

    def _release(self, connection: sqlite3.Connection, discard: bool = False) -> None:
        connection.close()

    def _begin(self, connection: sqlite3.Connection, deadline: _Deadline) -> None:
        give_up_at = time.monotonic() + self.busy_timeout
        while True:
            deadline.check()
            try:
                connection.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.Error as exc:
                error = self.translate_error(exc, deadline)
                if not isinstance(error, LockWaitTimeoutError) or time.monotonic() >= give_up_at:
                    raise error from exc

    def _commit(self, connection: sqlite3.Connection) -> None:
        connection.execute("COMMIT")

    def _rollback(self, connection: sqlite3.Connection) -> None:
        if connection.in_transaction:
            connection.execute("ROLLBACK")

    def interrupt(self, connection: sqlite3.Connection) -> None:
        connection.interrupt()

    def prepare_sql(self, sql: str) -> str:
        return sql.replace("%s", "?")

    def prepare_params(self, params: Sequence[Any]) -> Sequence[Any]:
        # Amounts are stored as text so no float conversion ever happens
        return tuple(str(p) if isinstance(p, Decimal) else p for p in params)

    def translate_error(self, exc: Exception, deadline: Optional[_Deadline] = None) -> Optional[LedgerError]:
        if not isinstance(exc, sqlite3.Error):
            return None
        message = str(exc).lower()
        if isinstance(exc, sqlite3.IntegrityError):
            return ConstraintViolationError(str(exc))
        if isinstance(exc, sqlite3.OperationalError):
            if "interrupted" in message:
                return TransferCancelledError((deadline and deadline.reason) or "interrupted")
            if "locked" in message or "busy" in message:
                return LockWaitTimeoutError(str(exc))
        return StoreError(str(exc))

    def close(self) -> None:
        """Nothing is held between units of work"""
        pass


class PostgreSQLLedgerStore(LedgerStore):
    """
    PostgreSQL ledger store with row-level locking.

    Connections come from a psycopg2 ThreadedConnectionPool; callers beyond
    ``max_connections`` wait for a free connection instead of failing.
    """

    dialect = "postgresql"
    balance_add_expression = "balance + %s"
    row_lock_clause = " FOR NO KEY UPDATE"

    # SQLSTATE codes
    SERIALIZATION_FAILURE = "40001"
    DEADLOCK_DETECTED = "40P01"
    LOCK_NOT_AVAILABLE = "55P03"
    QUERY_CANCELED = "57014"
    INTEGRITY_CLASS = "23"

    def __init__(self, connection_string: str, min_connections: int = 1, max_connections: int = 20,
                 lock_timeout_ms: int = 5000, statement_timeout_ms: int = 0, page_size: int = 50):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.lock_timeout_ms = lock_timeout_ms
        self.statement_timeout_ms = statement_timeout_ms
        self.page_size = page_size
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            min_connections,
            max_connections,
            connection_string,
            cursor_factory=self.extras.RealDictCursor,
        )
        # ThreadedConnectionPool raises when exhausted instead of blocking
        self._slots = threading.BoundedSemaphore(max_connections)

    def _acquire(self) -> Any:
        self._slots.acquire()
        try:
            connection = self._pool.getconn()
            connection.autocommit = False
            return connection
        except Exception as exc:
            self._slots.release()
            translated = self.translate_error(exc)
            if translated is None:
                raise
            raise translated from exc

    def _release(self, connection: Any, discard: bool = False) -> None:
        try:
            self._pool.putconn(connection, close=discard or bool(connection.closed))
        finally:
            self._slots.release()

    def _begin(self, connection: Any, deadline: _Deadline) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        deadline.check()
        statement_timeout_ms = self.statement_timeout_ms
        if deadline.timeout is not None:
            timeout_ms = max(1, int(deadline.timeout * 1000))
            statement_timeout_ms = min(statement_timeout_ms, timeout_ms) if statement_timeout_ms else timeout_ms

        cursor = connection.cursor()
        try:
            cursor.execute(
                "SELECT set_config('lock_timeout', %s, true), set_config('statement_timeout', %s, true)",
                (f"{self.lock_timeout_ms}ms", f"{statement_timeout_ms}ms"),
            )
        except self.psycopg2.Error as exc:
            raise self.translate_error(exc, deadline) from exc
        finally:
            cursor.close()

    def _commit(self, connection: Any) -> None:
        connection.commit()

    def _rollback(self, connection: Any) -> None:
        connection.rollback()

    def interrupt(self, connection: Any) -> None:
        connection.cancel()

    def translate_error(self, exc: Exception, deadline: Optional[_Deadline] = None) -> Optional[LedgerError]:
        if isinstance(exc, self.psycopg2.pool.PoolError):
            return StoreError(str(exc))
        if not isinstance(exc, self.psycopg2.Error):
            return None
        code = getattr(exc, "pgcode", None) or ""
        if code in (self.SERIALIZATION_FAILURE, self.DEADLOCK_DETECTED):
            return SerializationFailureError(str(exc))
        if code == self.LOCK_NOT_AVAILABLE:
            return LockWaitTimeoutError(str(exc))
        if code == self.QUERY_CANCELED:
            return TransferCancelledError((deadline and deadline.reason) or "statement timeout")
        if code.startswith(self.INTEGRITY_CLASS):
            return ConstraintViolationError(str(exc))
        return StoreError(str(exc))

    def close(self) -> None:
        """Close every pooled connection"""
        self._pool.closeall()


def create_store(config: Optional[LedgerConfig] = None) -> LedgerStore:
    """
    Build a store from configuration.

    ``sqlite:///relative/path.db`` and ``sqlite:////absolute/path.db`` select
    SQLite; ``postgresql://`` or ``postgres://`` URLs select PostgreSQL.
    """
    if config is None:
        from .config import get_config
        config = get_config()

    url = config.database_url
    if url.startswith("sqlite:///"):
        return SQLiteLedgerStore(url[len("sqlite:///"):], busy_timeout=config.sqlite_busy_timeout_seconds,
                                page_size=config.default_page_size)
    if url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLLedgerStore(
            url,
            min_connections=config.database_pool_min,
            max_connections=config.database_pool_max,
            lock_timeout_ms=config.lock_timeout_ms,
            statement_timeout_ms=config.statement_timeout_ms,
            page_size=config.default_page_size,
        )
    raise ValueError(f"Unsupported database URL: {url}")
