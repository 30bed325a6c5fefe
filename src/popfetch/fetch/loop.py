# =============================================================================
# Account Fetch Loop
# =============================================================================
# Drains one POP3 account: fetch, deduplicate against the ledger, deliver,
# record, and (optionally) delete.
#
# States:
#   CONNECTING -> LISTING -> PER_MESSAGE -> DRAINING -> DONE
#                     ^                          |
#                     +------ RECONNECTING <-----+   (reconnect_interval)
#   Any unrecoverable error -> FAILED
#
# Ordering guarantees per message:
#   1. The ledger transaction commits before DELE is sent.
#   2. DELE is sent before QUIT.
# So a crash can leave a message undelivered-and-undeleted (retried next run)
# or delivered-and-recorded-but-not-deleted (skipped as a duplicate next run),
# never delivered-but-unrecorded.
# =============================================================================

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable

from popfetch.core import Account, DeliveryOutcome
from popfetch.delivery import CommandSink, DeliveryError
from popfetch.pop3 import MessageHandle, POP3Error, POP3Session, POP3StreamError, open_session

if TYPE_CHECKING:
    from popfetch.config import FetchConfig
    from popfetch.storage import Ledger


logger = logging.getLogger(__name__)


class FetchStatus(Enum):
    """Current state of an account fetch."""
    CONNECTING = auto()     # Opening a session
    LISTING = auto()        # Reading the message list
    PER_MESSAGE = auto()    # Processing one message
    RECONNECTING = auto()   # Session lifetime elapsed, starting a new one
    DRAINING = auto()       # Closing the session, committing deletions
    DONE = auto()           # Finished normally
    FAILED = auto()         # Stopped by an error


@dataclass
class FetchProgress:
    """
    Progress information for an account fetch.

    A single instance is updated in place and handed to the progress
    callback after every change.

    Attributes:
        status: Current state.
        account: Name of the account being fetched.
        session: Number of the current session (1-based).
        total_messages: Count announced by the first session.
        message_index: Position of the current message in its session.
        message_uid: UIDL of the current message.
        message_size: Size reported by the server for the current message.
        bytes_received: Bytes streamed so far for the current message.
        outcome: Outcome of the current message, once known.
        delivered: Messages delivered so far.
        skipped: Duplicates skipped so far.
        deleted: Deletions requested so far.
        error: Error message if status is FAILED.
    """
    status: FetchStatus = FetchStatus.CONNECTING
    account: str | None = None
    session: int = 0
    total_messages: int = 0
    message_index: int = 0
    message_uid: str | None = None
    message_size: int = 0
    bytes_received: int = 0
    outcome: DeliveryOutcome | None = None
    delivered: int = 0
    skipped: int = 0
    deleted: int = 0
    error: str | None = None


# Type alias for progress callbacks
ProgressCallback = Callable[[FetchProgress], None]


@dataclass
class FetchResult:
    """
    Result of fetching one account.

    Attributes:
        account: Account name.
        delivered: Messages delivered and recorded.
        skipped: Messages already in the ledger.
        deleted: Deletions requested on the server.
        pruned: Duplicate keys removed from the ledger.
        sessions: Sessions opened.
        no_mail: The mailbox was empty on the first connection.
        duration_seconds: Time taken.
    """
    account: str
    delivered: int = 0
    skipped: int = 0
    deleted: int = 0
    pruned: int = 0
    sessions: int = 0
    no_mail: bool = False
    duration_seconds: float = 0.0


SessionFactory = Callable[[Account], POP3Session]
SinkFactory = Callable[[Account, MessageHandle], CommandSink]


def default_sink_factory(account: Account, handle: MessageHandle) -> CommandSink:
    """Build the command sink for one message, exposing its identity to the command."""
    return CommandSink(
        account.delivery_command,
        env={
            "POPFETCH_ACCOUNT": account.name,
            "POPFETCH_USER": account.user,
            "POPFETCH_HOST": account.host,
            "POPFETCH_UID": handle.uid,
        },
    )


@dataclass
class FetchContext:
    """
    Everything an AccountFetcher needs, passed explicitly.

    Attributes:
        ledger: The delivery ledger.
        options: Run-wide fetch options.
        session_factory: Opens an authenticated session for an account.
        sink_factory: Builds the delivery sink for a message.
        clock: Monotonic clock used for the reconnect interval.
    """
    ledger: "Ledger"
    options: "FetchConfig"
    session_factory: SessionFactory | None = None
    sink_factory: SinkFactory = default_sink_factory
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        if self.session_factory is None:
            self.session_factory = self._open_session

    def _open_session(self, account: Account) -> POP3Session:
        return open_session(
            account,
            verify_certificates=self.options.verify_certificates,
            timeout=self.options.timeout or None,
        )


class AccountFetcher:
    """
    Runs the fetch/dedup/deliver/commit loop for one account.

    Usage:
        >>> fetcher = AccountFetcher(account, context)
        >>> result = fetcher.run(progress_callback=reporter)

    Attributes:
        account: Account being fetched.
        context: Ledger, options and collaborator factories.
    """

    def __init__(self, account: Account, context: FetchContext) -> None:
        self.account = account
        self.context = context
        self._progress = FetchProgress(account=account.name)
        self._callback: ProgressCallback | None = None

    @property
    def ledger(self) -> "Ledger":
        return self.context.ledger

    @property
    def options(self) -> "FetchConfig":
        return self.context.options

    def _report_progress(self, **updates) -> None:
        """
        Update progress and notify the callback.

        Args:
            **updates: Fields to update in progress.
        """
        for key, value in updates.items():
            if hasattr(self._progress, key):
                setattr(self._progress, key, value)

        if self._callback:
            self._callback(self._progress)

    def run(self, progress_callback: ProgressCallback | None = None) -> FetchResult:
        """
        Fetch the account until it is drained.

        Args:
            progress_callback: Function to call with progress updates.

        Returns:
            FetchResult with statistics.

        Raises:
            POP3Error: Connection, authentication or transfer failure.
            DeliveryError: The delivery command failed; the pass stopped.
            StorageError: The ledger failed.
        """
        start = self.context.clock()
        result = FetchResult(account=self.account.name)
        self._callback = progress_callback
        self._progress = FetchProgress(account=self.account.name)

        # Keys handled during this run, across reconnects
        handled: set[str] = set()
        announced: int | None = None

        try:
            while True:
                self._report_progress(
                    status=FetchStatus.CONNECTING, session=result.sessions + 1
                )
                session = self.context.session_factory(self.account)
                result.sessions += 1

                if announced is None:
                    announced = session.message_count
                    logger.info(f"{self.account.name}: {announced} messages pending")
                    self._report_progress(
                        status=FetchStatus.LISTING, total_messages=announced
                    )
                    if announced == 0:
                        result.no_mail = True
                        self._drain(session, [], result)
                        break
                else:
                    self._report_progress(status=FetchStatus.LISTING)
                    if len(handled) >= announced:
                        # Server still offers messages we've already handled
                        logger.info(
                            f"{self.account.name}: all {announced} announced "
                            f"messages handled, stopping"
                        )
                        self._drain(session, [], result)
                        break

                if self._process_session(session, handled, result):
                    break

                logger.info(
                    f"{self.account.name}: reconnect interval elapsed after "
                    f"{len(handled)}/{announced} messages"
                )
                self._report_progress(status=FetchStatus.RECONNECTING)

        except BaseException as e:
            self._report_progress(status=FetchStatus.FAILED, error=str(e) or repr(e))
            raise

        result.duration_seconds = self.context.clock() - start
        self._report_progress(status=FetchStatus.DONE)
        return result

    def _process_session(
        self,
        session: POP3Session,
        handled: set[str],
        result: FetchResult,
    ) -> bool:
        """
        Walk the messages of one session.

        Returns:
            True if the listing was exhausted, False if the session was cut
            short by the reconnect interval.
        """
        started = self.context.clock()
        prune: list[str] = []
        exhausted = True

        try:
            for index, handle in enumerate(session.list_pending(), start=1):
                key = self.account.message_key(handle.uid)
                if key in handled:
                    # Seen in an earlier session of this run
                    continue

                self._process_message(handle, key, index, prune, result)
                handled.add(key)

                if self._interval_elapsed(started):
                    exhausted = False
                    break
        except (POP3StreamError, KeyboardInterrupt):
            # The connection is unusable (or we're stopping): leave without
            # QUIT so nothing from this session is deleted
            session.abort()
            raise
        except BaseException:
            # Earlier messages were recorded before their DELE; flush them
            self._drain(session, prune, result, raise_errors=False)
            raise

        self._drain(session, prune, result)
        return exhausted

    def _process_message(
        self,
        handle: MessageHandle,
        key: str,
        index: int,
        prune: list[str],
        result: FetchResult,
    ) -> None:
        """
        Decide, deliver and record a single message.

        The check and the record happen in one ledger transaction; a failed
        delivery rolls it back and propagates.
        """
        self._report_progress(
            status=FetchStatus.PER_MESSAGE,
            message_index=index,
            message_uid=handle.uid,
            message_size=handle.size,
            bytes_received=0,
            outcome=None,
        )

        try:
            with self.ledger.transaction():
                if self.ledger.exists(key):
                    outcome = DeliveryOutcome.SKIPPED
                else:
                    body = self._fetch(handle)
                    sink = self.context.sink_factory(self.account, handle)
                    status = sink.deliver(body)
                    if status != 0:
                        raise DeliveryError(sink.command, status, sink.last_stderr)
                    self.ledger.record(key)
                    outcome = DeliveryOutcome.DELIVERED
        except DeliveryError:
            self._report_progress(outcome=DeliveryOutcome.FAILED)
            raise

        # The ledger has committed; only now may the server forget the message
        if self.options.delete:
            handle.mark_deleted()
            result.deleted += 1
            if outcome is DeliveryOutcome.SKIPPED:
                prune.append(key)

        if outcome is DeliveryOutcome.DELIVERED:
            result.delivered += 1
            logger.debug(f"Delivered {key}")
        else:
            result.skipped += 1
            logger.debug(f"Skipped {key}, already delivered")

        self._report_progress(
            outcome=outcome,
            delivered=result.delivered,
            skipped=result.skipped,
            deleted=result.deleted,
        )

    def _fetch(self, handle: MessageHandle) -> bytes:
        """Stream a whole message into memory, reporting byte progress."""
        body = bytearray()
        for chunk in handle.stream():
            body += chunk
            self._report_progress(bytes_received=len(body))
        return bytes(body)

    def _drain(
        self,
        session: POP3Session,
        prune: list[str],
        result: FetchResult,
        raise_errors: bool = True,
    ) -> None:
        """
        Close the session, then prune duplicate keys whose deletion the
        server confirmed.

        Args:
            raise_errors: False while another error is already propagating.
                          A failed close is then logged instead of raised,
                          and pruning is skipped so a ledger failure cannot
                          mask the original error. A leftover duplicate key
                          only costs one ledger row.
        """
        self._report_progress(status=FetchStatus.DRAINING)
        try:
            session.close()
        except POP3Error as e:
            if raise_errors:
                raise
            logger.warning(f"{self.account.name}: {e}")
            return

        if prune and raise_errors:
            result.pruned += self.ledger.remove_many(prune)

    def _interval_elapsed(self, started: float) -> bool:
        interval = self.options.reconnect_interval
        return bool(interval) and self.context.clock() - started >= interval
