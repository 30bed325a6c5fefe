# =============================================================================
# Run Driver Tests
# =============================================================================
# main() end to end against a FakeMailbox, real delivery commands and a
# ledger in a temporary directory.
# =============================================================================

import logging

import pytest

from popfetch import app
from popfetch.fetch import loop
from popfetch.pop3 import POP3AuthenticationError
from popfetch.storage import Database, Ledger, StorageError


CONFIG = """
[general]
command = "cat > /dev/null"

[accounts.first]
host = "pop.one.example"
user = "alice"
password = "pw1"

[accounts.second]
host = "pop.two.example"
user = "bob"
password = "pw2"
"""


@pytest.fixture(autouse=True)
def restore_logging():
    """main() reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config_file(temp_dir):
    path = temp_dir / "config.toml"
    path.write_text(CONFIG)
    return path


@pytest.fixture
def ledger_file(temp_dir):
    return temp_dir / "ledger.db"


@pytest.fixture
def servers(monkeypatch, mailbox):
    """
    Route every connection to the shared mailbox fixture.

    Map an account name to an exception to make connecting to it fail.
    """
    failures = {}
    opened = []

    def fake_open_session(account, **kwargs):
        opened.append(account.name)
        if account.name in failures:
            raise failures[account.name]
        return mailbox.open(account)

    monkeypatch.setattr(loop, "open_session", fake_open_session)
    fake_open_session.failures = failures
    fake_open_session.opened = opened
    return fake_open_session


def run(config_file, ledger_file, *extra):
    return app.main(
        ["--config", str(config_file), "--database", str(ledger_file), "-q", *extra]
    )


def ledger_count(ledger_file, scope=None):
    with Database(ledger_file) as db:
        return Ledger(db).count(scope)


class TestRun:
    def test_fetches_every_account(self, config_file, ledger_file, servers):
        assert run(config_file, ledger_file) == 0

        assert servers.opened == ["first", "second"]
        assert ledger_count(ledger_file, "alice@pop.one.example:110") == 3
        assert ledger_count(ledger_file, "bob@pop.two.example:110") == 3

    def test_second_run_delivers_nothing_new(self, config_file, ledger_file, servers):
        run(config_file, ledger_file)
        run(config_file, ledger_file)

        assert ledger_count(ledger_file) == 6

    def test_selected_accounts_only(self, config_file, ledger_file, servers):
        assert run(config_file, ledger_file, "second") == 0

        assert servers.opened == ["second"]

    def test_unknown_account_is_not_fatal(self, config_file, ledger_file, servers):
        assert run(config_file, ledger_file, "nope", "first") == 0

        assert servers.opened == ["first"]

    def test_verbose_lists_skipped_duplicates(
        self, config_file, ledger_file, servers, capsys
    ):
        run(config_file, ledger_file, "first")
        capsys.readouterr()

        code = app.main([
            "--config", str(config_file), "--database", str(ledger_file),
            "-v", "first",
        ])

        assert code == 0
        assert capsys.readouterr().out.count("skipped") >= 3

    def test_failing_account_does_not_stop_the_next(
        self, config_file, ledger_file, servers
    ):
        servers.failures["first"] = POP3AuthenticationError("bad password")

        assert run(config_file, ledger_file) == 0

        assert servers.opened == ["first", "second"]
        assert ledger_count(ledger_file, "alice@pop.one.example:110") == 0
        assert ledger_count(ledger_file, "bob@pop.two.example:110") == 3

    def test_failing_delivery_command_is_isolated(
        self, temp_dir, ledger_file, servers
    ):
        path = temp_dir / "config.toml"
        path.write_text(CONFIG.replace(
            'password = "pw1"', 'password = "pw1"\ncommand = "exit 75"'
        ))

        assert run(path, ledger_file) == 0

        assert ledger_count(ledger_file, "alice@pop.one.example:110") == 0
        assert ledger_count(ledger_file, "bob@pop.two.example:110") == 3

    def test_interrupt_stops_remaining_accounts(
        self, config_file, ledger_file, servers
    ):
        servers.failures["first"] = KeyboardInterrupt()

        assert run(config_file, ledger_file) == app.EXIT_INTERRUPTED

        assert servers.opened == ["first"]

    def test_ledger_failure_is_fatal(self, config_file, ledger_file, servers):
        servers.failures["first"] = StorageError("disk I/O error")

        assert run(config_file, ledger_file) == app.EXIT_FATAL

        assert servers.opened == ["first"]


class TestStartupErrors:
    def test_delete_with_reconnect_never_connects(
        self, config_file, ledger_file, servers
    ):
        code = run(config_file, ledger_file, "--delete", "--reconnect-interval", "60")

        assert code == app.EXIT_FATAL
        assert servers.opened == []

    def test_invalid_config_file(self, temp_dir, ledger_file, servers):
        path = temp_dir / "config.toml"
        path.write_text("[general\n")

        assert run(path, ledger_file) == app.EXIT_FATAL
        assert servers.opened == []

    def test_no_accounts(self, temp_dir, ledger_file, servers):
        assert run(temp_dir / "absent.toml", ledger_file) == app.EXIT_FATAL

    def test_unopenable_ledger(self, config_file, temp_dir, servers):
        blocker = temp_dir / "file"
        blocker.write_text("not a directory")

        assert run(config_file, blocker / "ledger.db") == app.EXIT_FATAL
        assert servers.opened == []


class TestOverrides:
    def test_command_line_wins(self, config_file):
        args = app.parse_args(["--delete", "--timeout", "30", "--insecure"])
        options = app.apply_overrides(app.Config.load(config_file).fetch, args)

        assert options.delete
        assert options.timeout == 30
        assert not options.verify_certificates
        assert options.command == "cat > /dev/null"

    def test_unset_flags_keep_file_values(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text("[general]\ndelete = true\n")
        args = app.parse_args([])

        options = app.apply_overrides(app.Config.load(path).fetch, args)

        assert options.delete
        assert options.verify_certificates


class TestMaintenanceCommands:
    def test_forget(self, config_file, ledger_file, servers, capsys):
        run(config_file, ledger_file)

        assert run(config_file, ledger_file, "--forget", "first") == 0

        assert ledger_count(ledger_file, "alice@pop.one.example:110") == 0
        assert ledger_count(ledger_file, "bob@pop.two.example:110") == 3
        out = capsys.readouterr().out
        assert "Removed 3" in out
        assert "3 remain" in out

    def test_forget_unknown_account(self, config_file, ledger_file):
        assert run(config_file, ledger_file, "--forget", "nope") == app.EXIT_FATAL

    def test_init_config(self, temp_dir, capsys):
        path = temp_dir / "new" / "config.toml"

        assert app.main(["--config", str(path), "--init-config"]) == 0
        assert path.exists()
        assert "keyring set" in capsys.readouterr().out

        # Never overwrites
        assert app.main(["--config", str(path), "--init-config"]) == app.EXIT_FATAL

    def test_paths(self, config_file, capsys):
        assert app.main(["--config", str(config_file), "--paths"]) == 0

        out = capsys.readouterr().out
        assert str(config_file) in out
        assert "Ledger:" in out
