# =============================================================================
# POP3 Module
# =============================================================================
# Handles all POP3 (Post Office Protocol v3) operations:
#   - Connecting with or without implicit TLS
#   - USER/PASS and APOP authentication
#   - Listing messages with their UIDLs
#   - Streaming message bodies and deferred deletion
#
# Built on the standard library's poplib; all calls block.
# =============================================================================

from popfetch.pop3.client import (
    CHUNK_SIZE,
    MAX_LINE,
    MessageHandle,
    POP3AuthenticationError,
    POP3ConnectionError,
    POP3Error,
    POP3Session,
    POP3StreamError,
    POP3TLSError,
    SessionState,
    normalize_line_endings,
    open_session,
)

__all__ = [
    "CHUNK_SIZE",
    "MAX_LINE",
    "MessageHandle",
    "POP3AuthenticationError",
    "POP3ConnectionError",
    "POP3Error",
    "POP3Session",
    "POP3StreamError",
    "POP3TLSError",
    "SessionState",
    "normalize_line_endings",
    "open_session",
]
