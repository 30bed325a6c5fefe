# =============================================================================
# Ledger - Delivered Message Keys
# =============================================================================
# The ledger is the single source of truth for "has this message already
# been delivered". Everything else (message numbers, pending deletions) is
# rebuilt from the server on every connection.
#
# Keys look like "<user>@<host>:<port>#<uidl>" (see Account.message_key).
# All statements run inside the caller's transaction when one is open; the
# fetch loop wraps each message in Ledger.transaction().
# =============================================================================

import logging
import sqlite3
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterable, Iterator

from popfetch.storage.database import StorageError

if TYPE_CHECKING:
    from popfetch.storage.database import Database


logger = logging.getLogger(__name__)


class Ledger:
    """
    Persistent set of delivered message keys.

    Usage:
        >>> ledger = Ledger(database)
        >>> with ledger.transaction():
        ...     if not ledger.exists(key):
        ...         deliver(...)
        ...         ledger.record(key)

    Attributes:
        db: Connected Database instance.
    """

    def __init__(self, db: "Database") -> None:
        """
        Initialize the ledger.

        Args:
            db: Connected Database instance.
        """
        self.db = db

    @contextmanager
    def transaction(self) -> Iterator["Ledger"]:
        """Scope a check-and-record decision; rolls back on any exception."""
        with self.db.transaction():
            yield self

    def exists(self, key: str) -> bool:
        """
        Check whether a key has been recorded.

        Raises:
            StorageError: If the database cannot be queried.
        """
        row = self._execute(
            "SELECT 1 FROM ledger WHERE key = ?", (key,)
        ).fetchone()
        return row is not None

    def record(self, key: str) -> None:
        """
        Record a key as delivered.

        Recording a key that is already present is a no-op.
        """
        with self.db.transaction():
            self._execute("INSERT OR IGNORE INTO ledger (key) VALUES (?)", (key,))

    def remove_many(self, keys: Iterable[str]) -> int:
        """
        Delete keys in bulk.

        Used to prune keys of duplicate messages that were also deleted
        from the server. Missing keys are ignored.

        Returns:
            Number of keys actually removed.
        """
        keys = list(keys)
        if not keys:
            return 0

        with self.db.transaction():
            removed = 0
            for key in keys:
                removed += self._execute(
                    "DELETE FROM ledger WHERE key = ?", (key,)
                ).rowcount
        logger.debug(f"Pruned {removed} of {len(keys)} ledger keys")
        return removed

    def forget(self, scope: str) -> int:
        """
        Delete every key belonging to an account scope.

        This is an explicit, out-of-band operation: the next run will
        deliver every message still on that server again.

        Args:
            scope: Account.ledger_scope, e.g. "me@pop.example.com:995".

        Returns:
            Number of keys removed.
        """
        with self.db.transaction():
            removed = self._execute(
                "DELETE FROM ledger WHERE substr(key, 1, ?) = ?",
                (len(scope) + 1, f"{scope}#"),
            ).rowcount
        logger.info(f"Forgot {removed} ledger keys for {scope}")
        return removed

    def count(self, scope: str | None = None) -> int:
        """
        Number of recorded keys, optionally limited to one account scope.
        """
        if scope is None:
            row = self._execute("SELECT COUNT(*) FROM ledger").fetchone()
        else:
            row = self._execute(
                "SELECT COUNT(*) FROM ledger WHERE substr(key, 1, ?) = ?",
                (len(scope) + 1, f"{scope}#"),
            ).fetchone()
        return row[0]

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Run a statement, converting sqlite errors to StorageError."""
        try:
            return self.db.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"Ledger query failed: {e}") from e
