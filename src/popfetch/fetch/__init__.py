# =============================================================================
# Fetch Module
# =============================================================================
# The per-account fetch/dedup/deliver/commit loop and its progress types.
# =============================================================================

from popfetch.fetch.loop import (
    AccountFetcher,
    FetchContext,
    FetchProgress,
    FetchResult,
    FetchStatus,
    ProgressCallback,
    default_sink_factory,
)

__all__ = [
    "AccountFetcher",
    "FetchContext",
    "FetchProgress",
    "FetchResult",
    "FetchStatus",
    "ProgressCallback",
    "default_sink_factory",
]
