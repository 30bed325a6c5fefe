# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the popfetch test suite.
#
# FakeMailbox stands in for a POP3 server: every FakeSession opened on it
# sees the messages present at that moment, and deletions only take effect
# when the session closes cleanly - just like POP3.
# =============================================================================

import tempfile
from pathlib import Path

import keyring
import pytest

from popfetch.config import FetchConfig
from popfetch.core import Account
from popfetch.fetch import FetchContext
from popfetch.pop3 import POP3ConnectionError, POP3StreamError
from popfetch.storage import Database, Ledger


class FakeHandle:
    """Message handle served by a FakeSession."""

    def __init__(self, session, number, uid, body):
        self._session = session
        self.number = number
        self.uid = uid
        self.body = body
        self.size = len(body)

    def stream(self):
        mailbox = self._session.mailbox
        if self.uid in mailbox.interrupt_uids:
            raise mailbox.interrupt_uids[self.uid]
        # Two chunks so byte progress is reported more than once
        half = len(self.body) // 2
        yield self.body[:half]
        if self.uid in mailbox.fail_stream_uids:
            raise POP3StreamError(f"connection reset while reading {self.uid}")
        yield self.body[half:]

    def mark_deleted(self):
        self._session.deletions.add(self.uid)


class FakeSession:
    """Session over a FakeMailbox snapshot."""

    def __init__(self, mailbox):
        self.mailbox = mailbox
        self.snapshot = list(mailbox.messages.items())
        self.message_count = len(self.snapshot)
        self.deletions = set()
        self.closed = False
        self.aborted = False
        self._listed = False

    def list_pending(self):
        assert not self._listed, "listing consumed twice"
        self._listed = True
        for number, (uid, body) in enumerate(self.snapshot, start=1):
            yield FakeHandle(self, number, uid, body)

    def close(self):
        if self.mailbox.fail_close:
            self.aborted = True
            raise POP3ConnectionError("QUIT failed, deletions unconfirmed")
        for uid in self.deletions:
            self.mailbox.messages.pop(uid, None)
        self.closed = True

    def abort(self):
        self.aborted = True


class FakeMailbox:
    """
    In-memory POP3 mailbox.

    Attributes:
        messages: uid -> raw message, in server order.
        sessions: Every session opened so far.
        fail_stream_uids: UIDs whose transfer dies halfway.
        interrupt_uids: UIDs whose transfer raises the given exception.
        fail_close: Make QUIT fail.
    """

    def __init__(self, messages=None):
        self.messages = dict(messages or {})
        self.sessions = []
        self.fail_stream_uids = set()
        self.interrupt_uids = {}
        self.fail_close = False

    def open(self, account):
        session = FakeSession(self)
        self.sessions.append(session)
        return session


class FakeSink:
    """Delivery sink that records what it was given."""

    def __init__(self, statuses=None, clock=None, cost=0.0):
        self.command = "fake-deliver"
        self.delivered = []
        self.statuses = list(statuses or [])
        self.last_stderr = ""
        self.clock = clock
        self.cost = cost

    def deliver(self, data):
        if self.clock is not None:
            self.clock.advance(self.cost)
        status = self.statuses.pop(0) if self.statuses else 0
        if status == 0:
            self.delivered.append(data)
        else:
            self.last_stderr = "mailbox full"
        return status

    def factory(self, account, handle):
        return self


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(autouse=True)
def no_keyring(monkeypatch):
    """Keep tests away from the real system keyring."""
    monkeypatch.setattr(keyring, "get_password", lambda service, user: None)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_account():
    """Create a sample Account for testing."""
    return Account(
        name="test",
        host="pop.example.com",
        user="alice",
        password="secret",
        delivery_command="cat > /dev/null",
        use_ssl=True,
    )


@pytest.fixture
def database(temp_dir):
    """An open ledger database in a temporary directory."""
    db = Database(temp_dir / "ledger.db")
    db.connect()
    yield db
    db.close()


@pytest.fixture
def ledger(database):
    return Ledger(database)


@pytest.fixture
def mailbox():
    """Mailbox with three messages, UIDs A, B and C."""
    return FakeMailbox({
        "A": b"Subject: a\n\nfirst\n",
        "B": b"Subject: b\n\nsecond\n",
        "C": b"Subject: c\n\nthird\n",
    })


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_context(ledger, mailbox, sink, clock):
    """Build a FetchContext around the fakes, with optional FetchConfig overrides."""
    def _make(**options):
        return FetchContext(
            ledger=ledger,
            options=FetchConfig(**options),
            session_factory=mailbox.open,
            sink_factory=sink.factory,
            clock=clock,
        )
    return _make
