# =============================================================================
# popfetch Core Module
# =============================================================================
# Plain dataclasses and enums with no external dependencies, importable from
# anywhere without circular imports:
#   - Account: One POP3 mailbox and its delivery command
#   - DeliveryOutcome: delivered / skipped / failed
# =============================================================================

from popfetch.core.account import Account, POP3_PORT, POP3_SSL_PORT
from popfetch.core.message import DeliveryOutcome

__all__ = [
    "Account",
    "DeliveryOutcome",
    "POP3_PORT",
    "POP3_SSL_PORT",
]
