# =============================================================================
# Message Outcomes
# =============================================================================
# What happened to a single message during a fetch pass. The outcome decides
# whether the ledger is updated and whether the message is deleted from the
# server.
# =============================================================================

from enum import Enum


class DeliveryOutcome(Enum):
    """
    Result of processing one message.

    - DELIVERED: the delivery command exited 0 and the key was recorded.
    - SKIPPED: the key was already in the ledger; nothing was delivered.
    - FAILED: the delivery command failed; the ledger was left untouched.
    """
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"
