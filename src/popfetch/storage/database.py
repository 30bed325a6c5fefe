# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite file that backs the delivery ledger.
#
# Schema overview:
#   - schema_version: Version of the schema in this file
#   - ledger: One row per delivered message key (existence is the only fact)
#
# The connection runs in autocommit mode and transactions are opened
# explicitly through Database.transaction(), so that every per-message
# decision either commits completely or not at all.
# =============================================================================

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from popfetch.config import Config


logger = logging.getLogger(__name__)

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1


class Database:
    """
    Manages the SQLite database connection and schema.

    Usage:
        >>> db = Database(path)
        >>> db.connect()
        >>> with db.transaction() as conn:
        ...     conn.execute("INSERT INTO ledger (key) VALUES (?)", (key,))
        >>> db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Initialize the database manager.

        Args:
            db_path: Path to database file. Defaults to XDG data location.
        """
        self.db_path = Path(db_path) if db_path else Config.database_path()
        self._connection: sqlite3.Connection | None = None
        self._depth = 0

    def connect(self) -> None:
        """
        Open the database connection and ensure the schema exists.

        Creates the database file (and its directory) if it doesn't exist.

        Raises:
            StorageError: If the file cannot be opened or is not a database.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None: no implicit transactions, we BEGIN ourselves
            self._connection = sqlite3.connect(self.db_path, isolation_level=None)
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute("PRAGMA synchronous = FULL")
            self._init_schema()
        except StorageError:
            self.close()
            raise
        except (OSError, sqlite3.Error) as e:
            self.close()
            raise StorageError(f"Cannot open ledger {self.db_path}: {e}") from e

        logger.debug(f"Ledger database open: {self.db_path}")

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
            self._depth = 0

    def __enter__(self) -> "Database":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    @property
    def in_transaction(self) -> bool:
        """True while a transaction() block is open."""
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for a ledger transaction.

        Commits on normal exit. Rolls back on any exception, including
        KeyboardInterrupt, and re-raises it. A nested transaction() joins the
        outermost one: only the outermost block commits or rolls back.

        Yields:
            sqlite3.Connection: The database connection.

        Raises:
            StorageError: If BEGIN, COMMIT or ROLLBACK fails.
        """
        conn = self.conn

        if self._depth:
            self._depth += 1
            try:
                yield conn
            finally:
                self._depth -= 1
            return

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot begin transaction: {e}") from e

        self._depth = 1
        try:
            yield conn
        except BaseException as e:
            self._depth = 0
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            logger.debug(f"Transaction rolled back: {e!r}")
            raise

        self._depth = 0
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                pass
            raise StorageError(f"Cannot commit transaction: {e}") from e
        logger.debug("Transaction committed")

    def _init_schema(self) -> None:
        """
        Initialize the database schema.

        Creates tables if they don't exist, runs migrations if needed.
        """
        try:
            row = self.conn.execute("SELECT version FROM schema_version").fetchone()
            current_version = row[0] if row else 0
        except sqlite3.OperationalError:
            # Table doesn't exist, this is a fresh database
            current_version = 0

        if current_version > SCHEMA_VERSION:
            raise StorageError(
                f"Ledger schema version {current_version} is newer than "
                f"supported version {SCHEMA_VERSION}"
            )

        if current_version < SCHEMA_VERSION:
            self._create_schema()

    def _create_schema(self) -> None:
        """Create the database schema from scratch."""
        schema = """
        -- Schema version tracking
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        -- Delivered messages: "<user>@<host>:<port>#<uidl>"
        CREATE TABLE IF NOT EXISTS ledger (
            key TEXT PRIMARY KEY NOT NULL
        ) WITHOUT ROWID;
        """

        # executescript() commits any pending transaction first
        self.conn.executescript(schema)
        with self.transaction() as conn:
            conn.execute("DELETE FROM schema_version")
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,)
            )


# =============================================================================
# Exceptions
# =============================================================================

class StorageError(Exception):
    """Raised when the ledger database is unreachable or corrupt."""
    pass
