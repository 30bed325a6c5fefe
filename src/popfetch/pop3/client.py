# =============================================================================
# POP3 Mailbox Session
# =============================================================================
# A thin blocking wrapper around poplib for one authenticated connection.
#
# Key responsibilities:
#   - Connection management (plain or implicit TLS, optional verification)
#   - Authentication (USER/PASS or APOP)
#   - Listing pending messages with their sizes and UIDLs
#   - Streaming message bodies chunk by chunk
#   - Deferred deletion (DELE only takes effect on a successful QUIT)
#
# Design notes:
#   - Message numbers are only valid for the current session; the UIDL is
#     the stable identity.
#   - Any network error while streaming poisons the whole session. Callers
#     must abort() and reconnect rather than carry on.
#   - RETR is read line by line from the client's socket file instead of
#     through poplib.retr(), which buffers the whole message and rejects
#     lines over 2048 bytes. This relies on poplib.POP3._putcmd and
#     poplib.POP3.file; both are used only in _retr_lines().
# =============================================================================

import logging
import poplib
import ssl
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Iterator

if TYPE_CHECKING:
    from popfetch.core import Account


# Set up logging for this module
logger = logging.getLogger(__name__)

# Approximate number of bytes grouped into one streamed chunk
CHUNK_SIZE = 64 * 1024

# Longest RETR line accepted. RFC 5322 asks for 998 octets, but unwrapped
# HTML bodies and long headers routinely exceed that.
MAX_LINE = 1024 * 1024


def normalize_line_endings(chunk: bytes) -> bytes:
    """
    Rewrite CRLF line terminators to a bare LF.

    Chunks produced by MessageHandle.stream() always end on a line boundary,
    so each chunk can be rewritten on its own.
    """
    return chunk.replace(b"\r\n", b"\n")


@dataclass
class SessionState:
    """
    Tracks the current state of a POP3 session.

    Attributes:
        connected: Whether we have an open socket.
        authenticated: Whether login succeeded.
        listed: Whether list_pending() has been called.
        pending_deletions: Message numbers marked with DELE in this session.
    """
    connected: bool = False
    authenticated: bool = False
    listed: bool = False
    pending_deletions: set[int] = field(default_factory=set)


class MessageHandle:
    """
    One message on the server, as seen by the current session.

    Attributes:
        number: Message number (ordinal) within this session.
        size: Size in octets reported by LIST.
        uid: Server-assigned unique identifier (UIDL).
    """

    def __init__(self, session: "POP3Session", number: int, size: int, uid: str) -> None:
        self._session = session
        self.number = number
        self.size = size
        self.uid = uid

    def stream(self) -> Iterator[bytes]:
        """
        Retrieve the message, yielding chunks with LF line endings.

        Raises:
            POP3StreamError: On any network or protocol failure.
        """
        for chunk in self._session.retrieve(self.number):
            yield normalize_line_endings(chunk)

    def mark_deleted(self) -> None:
        """Request deletion; it only takes effect when the session closes."""
        self._session.delete(self.number)

    def __repr__(self) -> str:
        return f"MessageHandle(number={self.number}, size={self.size}, uid={self.uid!r})"


class POP3Session:
    """
    Blocking POP3 session for one account.

    Usage:
        >>> session = POP3Session(account)
        >>> session.open()
        >>> for handle in session.list_pending():
        ...     body = b"".join(handle.stream())
        ...     handle.mark_deleted()
        >>> session.close()

    Attributes:
        account: The Account to connect to.
        message_count: Number of messages reported by STAT.
        mailbox_size: Total octets reported by STAT.
        state: Current session state.
    """

    def __init__(
        self,
        account: "Account",
        *,
        verify_certificates: bool = True,
        timeout: float | None = None,
    ) -> None:
        """
        Initialize the session.

        Args:
            account: Account configuration with POP3 server details.
            verify_certificates: Verify the server's TLS certificate.
            timeout: Socket timeout in seconds. None keeps the transport default.
        """
        self.account = account
        self.verify_certificates = verify_certificates
        self.timeout = timeout
        self.message_count = 0
        self.mailbox_size = 0
        self.state = SessionState()
        self._client: poplib.POP3 | None = None

    # =========================================================================
    # Connection Management
    # =========================================================================

    def open(self) -> "POP3Session":
        """
        Connect, authenticate and read the mailbox statistics.

        Returns:
            self, for chaining.

        Raises:
            POP3TLSError: If TLS negotiation or certificate checks fail.
            POP3ConnectionError: If unable to connect to the server.
            POP3AuthenticationError: If login fails.
        """
        host, port = self.account.host, self.account.port
        logger.info(f"Connecting to {host}:{port} (ssl={self.account.use_ssl})")

        kwargs = {}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout

        try:
            if self.account.use_ssl:
                self._client = poplib.POP3_SSL(
                    host, port, context=self._ssl_context(), **kwargs
                )
            else:
                self._client = poplib.POP3(host, port, **kwargs)
        except ssl.SSLError as e:
            raise POP3TLSError(f"TLS negotiation with {host}:{port} failed: {e}") from e
        except (OSError, poplib.error_proto) as e:
            raise POP3ConnectionError(f"Failed to connect to {host}:{port}: {e}") from e

        self.state.connected = True
        logger.debug(f"Server greeting: {self._client.getwelcome()!r}")

        try:
            self._authenticate()
            self.message_count, self.mailbox_size = self._client.stat()
        except POP3Error:
            self.abort()
            raise
        except (OSError, poplib.error_proto) as e:
            self.abort()
            raise POP3ConnectionError(f"Connection to {host}:{port} lost: {e}") from e

        logger.info(
            f"{self.account.name}: {self.message_count} messages, "
            f"{self.mailbox_size} octets"
        )
        return self

    def _ssl_context(self) -> ssl.SSLContext:
        """Build the TLS context, optionally without peer verification."""
        context = ssl.create_default_context()
        if not self.verify_certificates:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _authenticate(self) -> None:
        """
        Log in with APOP or USER/PASS depending on the account.

        Raises:
            POP3AuthenticationError: If login fails or APOP is unavailable.
        """
        user, password = self.account.user, self.account.password

        try:
            if self.account.use_apop:
                logger.debug(f"Authenticating as {user} with APOP")
                self._client.apop(user, password)
            else:
                logger.debug(f"Authenticating as {user}")
                self._client.user(user)
                self._client.pass_(password)
        except poplib.error_proto as e:
            raise POP3AuthenticationError(
                f"Authentication failed for {user}@{self.account.host}: {_text(e)}"
            ) from e

        self.state.authenticated = True
        logger.debug("Authentication successful")

    def close(self) -> None:
        """
        Send QUIT, committing any deletions requested in this session.

        Raises:
            POP3ConnectionError: If QUIT fails. Deletions are then unconfirmed.
        """
        if not self._client:
            return

        deletions = len(self.state.pending_deletions)
        try:
            logger.debug(f"Sending QUIT ({deletions} deletions pending)")
            self._client.quit()
        except (OSError, poplib.error_proto) as e:
            self.abort()
            raise POP3ConnectionError(
                f"QUIT failed on {self.account.host}, deletions unconfirmed: {e}"
            ) from e

        self._client = None
        self.state = SessionState()

    def abort(self) -> None:
        """
        Drop the connection without QUIT.

        No deletion requested in this session takes effect.
        """
        if self._client:
            try:
                self._client.close()
            except OSError as e:
                logger.warning(f"Error closing connection: {e}")
            finally:
                self._client = None
                self.state = SessionState()

    @property
    def is_open(self) -> bool:
        """Check if the session is connected and authenticated."""
        return self.state.authenticated and self._client is not None

    # =========================================================================
    # Message Operations
    # =========================================================================

    def list_pending(self) -> Iterator[MessageHandle]:
        """
        List the messages on the server in ascending message-number order.

        The listing is read once; iterating again needs a new session.

        Raises:
            POP3Error: If the server does not support UIDL, or the listing
                       was already consumed.
            POP3StreamError: On network failure.
        """
        if self.state.listed:
            raise POP3Error("Message list already consumed; open a new session")
        self.state.listed = True

        try:
            _, list_lines, _ = self._require_client().list()
        except (OSError, poplib.error_proto) as e:
            raise POP3StreamError(f"LIST failed: {e}") from e

        try:
            _, uidl_lines, _ = self._client.uidl()
        except poplib.error_proto as e:
            raise POP3Error(
                f"{self.account.host} does not support UIDL: {_text(e)}"
            ) from e
        except OSError as e:
            raise POP3StreamError(f"UIDL failed: {e}") from e

        sizes = dict(_parse_listing(list_lines, int))
        uids = dict(_parse_listing(uidl_lines, str))

        handles = []
        for number in sorted(sizes):
            uid = uids.get(number)
            if uid is None:
                logger.warning(f"Message {number} has no UIDL, skipping")
                continue
            handles.append(MessageHandle(self, number, sizes[number], uid))

        logger.debug(f"Listed {len(handles)} messages")
        return iter(handles)

    def retrieve(self, number: int) -> Iterator[bytes]:
        """
        RETR a message and yield it in line-aligned chunks (CRLF endings).

        Leading dots are un-stuffed; the terminating "." line is consumed.

        Raises:
            POP3StreamError: On any network or protocol failure.
        """
        client = self._require_client()
        try:
            lines: list[bytes] = []
            pending = 0
            for line in _retr_lines(client, number):
                lines.append(line)
                pending += len(line) + 2
                if pending >= CHUNK_SIZE:
                    yield b"\r\n".join(lines) + b"\r\n"
                    lines, pending = [], 0

            if lines:
                yield b"\r\n".join(lines) + b"\r\n"
        except (OSError, EOFError, poplib.error_proto) as e:
            raise POP3StreamError(f"RETR {number} failed: {e}") from e

    def delete(self, number: int) -> None:
        """
        Mark a message for deletion (DELE).

        Raises:
            POP3StreamError: On network failure.
        """
        try:
            self._require_client().dele(number)
        except (OSError, poplib.error_proto) as e:
            raise POP3StreamError(f"DELE {number} failed: {e}") from e
        self.state.pending_deletions.add(number)

    def _require_client(self) -> poplib.POP3:
        if self._client is None:
            raise POP3Error("Session is not open")
        return self._client


def _retr_lines(client: poplib.POP3, number: int) -> Iterator[bytes]:
    """
    Send RETR and yield the body lines without terminators, dot-unstuffed.

    Raises:
        poplib.error_proto: On a -ERR status or a line over MAX_LINE.
        EOFError: If the server closes the connection mid-message.
    """
    client._putcmd(f"RETR {number}")
    status = _read_line(client)
    if not status.startswith(b"+"):
        raise poplib.error_proto(status.decode("utf-8", errors="replace"))

    while True:
        line = _read_line(client)
        if line == b".":
            return
        if line.startswith(b".."):
            line = line[1:]
        yield line


def _read_line(client: poplib.POP3) -> bytes:
    """Read one response line from the server and strip its terminator."""
    line = client.file.readline(MAX_LINE + 2)
    if not line:
        raise EOFError("connection closed by server")
    if line.endswith(b"\r\n"):
        line = line[:-2]
    elif line.endswith(b"\n"):
        line = line[:-1]
    if len(line) > MAX_LINE:
        raise poplib.error_proto(f"line longer than {MAX_LINE} bytes")
    return line


def _parse_listing(lines: Iterable[bytes], convert) -> Iterator[tuple[int, object]]:
    """
    Parse "<number> <value>" lines from LIST or UIDL.

    Some servers append extra fields after the value; those are ignored.
    """
    for raw in lines:
        parts = raw.decode("ascii", errors="replace").split()
        if len(parts) < 2:
            logger.warning(f"Ignoring malformed listing line: {raw!r}")
            continue
        try:
            yield int(parts[0]), convert(parts[1])
        except ValueError:
            logger.warning(f"Ignoring malformed listing line: {raw!r}")


def _text(error: Exception) -> str:
    """Decode the server response carried by a poplib error."""
    arg = error.args[0] if error.args else error
    if isinstance(arg, bytes):
        return arg.decode("utf-8", errors="replace")
    return str(arg)


def open_session(
    account: "Account",
    *,
    verify_certificates: bool = True,
    timeout: float | None = None,
) -> POP3Session:
    """Create and open a session for an account."""
    return POP3Session(
        account, verify_certificates=verify_certificates, timeout=timeout
    ).open()


# =============================================================================
# Exceptions
# =============================================================================

class POP3Error(Exception):
    """Base exception for POP3 operations."""
    pass


class POP3ConnectionError(POP3Error):
    """Raised when unable to connect to (or cleanly leave) the POP3 server."""
    pass


class POP3AuthenticationError(POP3Error):
    """Raised when POP3 authentication fails."""
    pass


class POP3TLSError(POP3ConnectionError):
    """Raised when TLS negotiation or certificate verification fails."""
    pass


class POP3StreamError(POP3Error):
    """Raised when the connection fails mid-session; the session is unusable."""
    pass
