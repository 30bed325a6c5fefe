# =============================================================================
# UI Module
# =============================================================================
# Terminal output for fetch runs (rich console rendering).
# =============================================================================

from popfetch.ui.progress import ConsoleReporter, format_size

__all__ = ["ConsoleReporter", "format_size"]
