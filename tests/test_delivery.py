# =============================================================================
# Command Delivery Tests
# =============================================================================
# These run real /bin/sh commands.
# =============================================================================

import subprocess

import pytest

from popfetch.delivery import CommandSink, DeliveryError, SpawnError
from popfetch.delivery import command as command_module


MESSAGE = b"From: a@example.com\nSubject: hi\n\nbody\n"


class TestCommandSink:
    def test_writes_message_to_stdin(self, temp_dir):
        target = temp_dir / "out.eml"

        status = CommandSink(f"cat > '{target}'").deliver(MESSAGE)

        assert status == 0
        assert target.read_bytes() == MESSAGE

    def test_returns_nonzero_exit_status(self):
        assert CommandSink("cat > /dev/null; exit 75").deliver(MESSAGE) == 75

    def test_command_that_ignores_stdin(self):
        # Must not fail with a broken pipe when the child never reads
        assert CommandSink("exit 0").deliver(MESSAGE * 10000) == 0

    def test_signal_death_is_negative(self):
        assert CommandSink("kill -KILL $$").deliver(MESSAGE) == -9

    def test_unknown_command_is_a_failure_not_a_spawn_error(self):
        sink = CommandSink("/nonexistent/deliver-mail")

        assert sink.deliver(MESSAGE) == 127
        assert sink.last_stderr

    def test_captures_stderr(self):
        sink = CommandSink("cat > /dev/null; echo 'quota exceeded' >&2; exit 1")

        assert sink.deliver(MESSAGE) == 1
        assert sink.last_stderr == "quota exceeded"

    def test_extra_environment(self, temp_dir):
        target = temp_dir / "uid"
        sink = CommandSink(
            f"cat > /dev/null; printf %s \"$POPFETCH_UID\" > '{target}'",
            env={"POPFETCH_UID": "abc123"},
        )

        assert sink.deliver(MESSAGE) == 0
        assert target.read_text() == "abc123"

    def test_spawn_failure(self, monkeypatch):
        def fail(*args, **kwargs):
            raise FileNotFoundError("/bin/sh")

        monkeypatch.setattr(command_module.subprocess, "Popen", fail)

        with pytest.raises(SpawnError) as excinfo:
            CommandSink("procmail").deliver(MESSAGE)

        assert excinfo.value.status is None
        assert isinstance(excinfo.value, DeliveryError)


class TestDeliveryError:
    def test_describes_exit_status(self):
        error = DeliveryError("procmail", 75, "mailbox full")
        assert str(error) == "Delivery command 'procmail' exited 75 (mailbox full)"

    def test_describes_signal(self):
        assert "killed by signal 9" in str(DeliveryError("procmail", -9))

    def test_describes_spawn_failure(self):
        assert "could not be started" in str(SpawnError("procmail", None, "ENOENT"))
