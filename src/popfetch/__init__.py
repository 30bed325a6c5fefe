# =============================================================================
# popfetch: Exactly-Once POP3 Fetching
# =============================================================================
#
# popfetch drains one or more POP3 mailboxes and pipes every new message to
# a delivery command (procmail, maildrop, a script...). A SQLite ledger
# remembers which messages were delivered, so repeated runs never deliver a
# message twice, even after crashes or dropped connections.
#
# Features:
#   - POP3 over plain TCP or TLS, USER/PASS or APOP
#   - Per-message ledger transactions
#   - Optional delete-after-fetch with ledger pruning
#   - Periodic reconnects for mailboxes too large for one session
#   - Passwords from the config file or the system keyring
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "popfetch"


# Main entry point - this is what gets called by the 'popfetch' command
from popfetch.app import main


__all__ = ["main", "__version__", "__app_name__"]
