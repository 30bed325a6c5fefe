# =============================================================================
# Storage Module
# =============================================================================
# Persistent storage for the delivery ledger using SQLite.
#
# Provides:
#   - Database initialization, schema versioning and scoped transactions
#   - Ledger: exists / record / remove_many / forget / count
#
# The database lives in the XDG data directory (~/.local/share/popfetch/)
# unless configured otherwise.
# =============================================================================

from popfetch.storage.database import Database, StorageError
from popfetch.storage.ledger import Ledger

__all__ = ["Database", "Ledger", "StorageError"]
