"""
Database Migration System

Versioned schema migrations for the ledger tables. Each migration carries
up/down SQL for every supported dialect; applied versions are recorded in
``schema_migrations`` together with a checksum of the SQL that was run.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import hashlib

from .config import LedgerConfig, get_config
from .logging_config import get_logger
from .storage import LedgerStore, Queries, create_store


logger = get_logger("ledger.migrations")


SCHEMA_POSTGRESQL_UP = """
CREATE TABLE accounts (
  id BIGSERIAL PRIMARY KEY,
  owner varchar NOT NULL,
  balance decimal NOT NULL,
  currency varchar NOT NULL,
  created_at timestamp DEFAULT (now())
);
CREATE TABLE entries (
  id BIGSERIAL PRIMARY KEY,
  account_id bigint NOT NULL REFERENCES accounts (id),
  amount decimal NOT NULL,
  created_at timestamp DEFAULT (now())
);
CREATE TABLE transfers (
  id BIGSERIAL PRIMARY KEY,
  from_account_id bigint NOT NULL REFERENCES accounts (id),
  to_account_id bigint NOT NULL REFERENCES accounts (id),
  amount decimal NOT NULL,
  created_at timestamp DEFAULT (now())
);
CREATE INDEX ON accounts (owner);
CREATE INDEX ON entries (account_id);
CREATE INDEX ON transfers (from_account_id);
CREATE INDEX ON transfers (to_account_id);
CREATE INDEX ON transfers (from_account_id, to_account_id);
"""

# Amounts are TEXT: NUMERIC affinity would round them through binary floats
SCHEMA_SQLITE_UP = """
CREATE TABLE accounts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  owner TEXT NOT NULL,
  balance TEXT NOT NULL,
  currency TEXT NOT NULL,
  created_at TEXT DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE TABLE entries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  account_id INTEGER NOT NULL REFERENCES accounts (id),
  amount TEXT NOT NULL,
  created_at TEXT DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE TABLE transfers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  from_account_id INTEGER NOT NULL REFERENCES accounts (id),
  to_account_id INTEGER NOT NULL REFERENCES accounts (id),
  amount TEXT NOT NULL,
  created_at TEXT DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE INDEX idx_accounts_owner ON accounts (owner);
CREATE INDEX idx_entries_account_id ON entries (account_id);
CREATE INDEX idx_transfers_from_account_id ON transfers (from_account_id);
CREATE INDEX idx_transfers_to_account_id ON transfers (to_account_id);
CREATE INDEX idx_transfers_from_to ON transfers (from_account_id, to_account_id);
"""

SCHEMA_DOWN = """
DROP TABLE IF EXISTS transfers;
DROP TABLE IF EXISTS entries;
DROP TABLE IF EXISTS accounts;
"""


def split_statements(sql: str) -> List[str]:
    """Split a migration script into single statements"""
    return [statement.strip() for statement in sql.split(";") if statement.strip()]


class Migration:
    """Represents a single database migration"""

    def __init__(self, version: int, name: str, up_sql: Dict[str, str],
                 down_sql: Optional[Dict[str, str]] = None):
        self.version = version
        self.name = name
        self.up_sql = up_sql
        self.down_sql = down_sql or {}
        self.applied_at: Optional[datetime] = None

    def up_for(self, dialect: str) -> str:
        try:
            return self.up_sql[dialect]
        except KeyError:
            raise ValueError(f"{self} has no SQL for dialect {dialect!r}")

    def down_for(self, dialect: str) -> Optional[str]:
        return self.down_sql.get(dialect)

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


class MigrationManager:
    """Manages database migrations"""

    def __init__(self, store: LedgerStore):
        self.store = store
        self.dialect = store.dialect
        self.migrations: List[Migration] = []
        self._migration_table = "schema_migrations"
        self._init_migrations()
        self._ensure_migration_table()

    def _init_migrations(self) -> None:
        """Initialize built-in migrations"""

        # v001: accounts, entries, transfers and their indices
        self.add_migration(
            1, "Create ledger tables",
            {"postgresql": SCHEMA_POSTGRESQL_UP, "sqlite": SCHEMA_SQLITE_UP},
            {"postgresql": SCHEMA_DOWN, "sqlite": SCHEMA_DOWN},
        )

    def _ensure_migration_table(self) -> None:
        """Ensure the migration tracking table exists"""
        self.store.execute_atomically(lambda q: q.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._migration_table} (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """))

    def add_migration(self, version: int, name: str, up_sql: Dict[str, str],
                      down_sql: Optional[Dict[str, str]] = None) -> None:
        """Add a migration to the manager"""
        if any(m.version == version for m in self.migrations):
            raise ValueError(f"Duplicate migration version {version}")
        self.migrations.append(Migration(version, name, up_sql, down_sql))
        # Keep migrations sorted by version
        self.migrations.sort(key=lambda m: m.version)

    def get_current_version(self) -> int:
        """Get the current database version"""
        row = self.store.execute_atomically(
            lambda q: q.execute(f"SELECT MAX(version) AS version FROM {self._migration_table}")
        )
        version = row[0]["version"] if row else None
        return int(version) if version is not None else 0

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = self.get_current_version()
        max_version = target_version if target_version is not None else max(
            (m.version for m in self.migrations), default=0
        )
        return [m for m in self.migrations if current_version < m.version <= max_version]

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        rows = self.store.execute_atomically(lambda q: q.execute(
            f"SELECT version, name, checksum, applied_at FROM {self._migration_table} ORDER BY version"
        ))
        return [dict(row) for row in rows]

    def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.info("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")

        for migration in pending:
            logger.info(f"Applying {migration}")
            up_sql = migration.up_for(self.dialect)
            applied_at = datetime.now(timezone.utc)

            def apply(q: Queries) -> None:
                for statement in split_statements(up_sql):
                    q.execute(statement)
                q.execute(
                    f"INSERT INTO {self._migration_table} (version, name, checksum, applied_at) "
                    f"VALUES (%s, %s, %s, %s)",
                    (migration.version, migration.name, self._calculate_checksum(up_sql),
                     applied_at.isoformat()),
                )

            try:
                self.store.execute_atomically(apply)
            except Exception as e:
                logger.error(f"Failed to apply {migration}: {e}")
                raise RuntimeError(f"Migration failed: {migration}") from e

            migration.applied_at = applied_at
            applied.append(migration)
            logger.info(f"Successfully applied {migration}")

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def migrate_down(self, target_version: int) -> List[Migration]:
        """Rollback migrations down to target version"""
        current_version = self.get_current_version()

        if target_version >= current_version:
            logger.info("Target version is not lower than current version")
            return []

        rollback_migrations = [
            m for m in reversed(self.migrations)
            if target_version < m.version <= current_version
        ]
        rolledback = []

        logger.info(f"Rolling back {len(rollback_migrations)} migrations")

        for migration in rollback_migrations:
            down_sql = migration.down_for(self.dialect)
            if not down_sql:
                # stop here: later versions cannot be removed from under this one
                raise RuntimeError(f"No rollback SQL for {migration}")

            logger.info(f"Rolling back {migration}")

            def revert(q: Queries) -> None:
                for statement in split_statements(down_sql):
                    q.execute(statement)
                q.execute(
                    f"DELETE FROM {self._migration_table} WHERE version = %s",
                    (migration.version,),
                )

            try:
                self.store.execute_atomically(revert)
            except Exception as e:
                logger.error(f"Failed to rollback {migration}: {e}")
                raise RuntimeError(f"Rollback failed: {migration}") from e

            migration.applied_at = None
            rolledback.append(migration)
            logger.info(f"Successfully rolled back {migration}")

        logger.info(f"Successfully rolled back {len(rolledback)} migrations")
        return rolledback

    def _calculate_checksum(self, sql: str) -> str:
        """Calculate checksum for migration SQL"""
        return hashlib.md5(sql.encode()).hexdigest()

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        for applied_migration in self.get_applied_migrations():
            version = int(applied_migration["version"])
            stored_checksum = applied_migration.get("checksum", "")

            migration = next((m for m in self.migrations if m.version == version), None)
            if not migration:
                logger.warning(f"Applied migration v{version} not found in definitions")
                continue

            expected_checksum = self._calculate_checksum(migration.up_for(self.dialect))
            if stored_checksum != expected_checksum:
                logger.error(f"Checksum mismatch for v{version}: expected {expected_checksum}, got {stored_checksum}")
                return False

        logger.info("All applied migrations validated successfully")
        return True

    def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        current_version = self.get_current_version()
        pending = self.get_pending_migrations()
        applied = self.get_applied_migrations()

        return {
            "current_version": current_version,
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_count": len(pending),
            "applied_count": len(applied),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0
        }


def ensure_schema(store: LedgerStore) -> List[Migration]:
    """Bring the store's schema up to the latest version"""
    return MigrationManager(store).migrate_up()


def open_store(config: Optional[LedgerConfig] = None) -> LedgerStore:
    """Create the configured store, migrating it first when auto_migrate is on"""
    config = config or get_config()
    store = create_store(config)
    if config.auto_migrate:
        ensure_schema(store)
    return store
