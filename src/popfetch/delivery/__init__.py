# =============================================================================
# Delivery Module
# =============================================================================
# Delivers fetched messages to an external command and reports its exit
# status.
# =============================================================================

from popfetch.delivery.command import CommandSink, DeliveryError, SpawnError

__all__ = ["CommandSink", "DeliveryError", "SpawnError"]
