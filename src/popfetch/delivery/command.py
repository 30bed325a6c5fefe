# =============================================================================
# Command Delivery
# =============================================================================
# Hands a complete message to an external program (procmail, maildrop,
# dovecot-lda, a custom script...) on its standard input.
#
# The command string is run through the shell. Success is exit status 0;
# anything else is a failed delivery. This module knows nothing about where
# the mail ends up.
# =============================================================================

import logging
import os
import subprocess
from typing import Mapping


logger = logging.getLogger(__name__)


class CommandSink:
    """
    Delivers messages by piping them into a shell command.

    Usage:
        >>> sink = CommandSink("/usr/bin/procmail")
        >>> status = sink.deliver(message_bytes)
        >>> status == 0
        True

    Attributes:
        command: Shell command line that receives the message on stdin.
        env: Extra environment variables for the child process.
    """

    def __init__(self, command: str, env: Mapping[str, str] | None = None) -> None:
        """
        Initialize the sink.

        Args:
            command: Shell command line.
            env: Variables added to the inherited environment.
        """
        self.command = command
        self.env = dict(env or {})
        self.last_stderr = ""

    def deliver(self, data: bytes) -> int:
        """
        Run the command, write the message to it and wait for it to finish.

        Args:
            data: The full message.

        Returns:
            The exit status. Negative values mean the child was killed by
            that signal number.

        Raises:
            SpawnError: If the command could not be started at all.
        """
        logger.debug(f"Delivering {len(data)} bytes to {self.command!r}")

        env = {**os.environ, **self.env}
        try:
            proc = subprocess.Popen(
                self.command,
                shell=True,
                stdin=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise SpawnError(self.command, None, str(e)) from e

        # The context manager closes the pipes and waits for the child on
        # every exit path
        with proc:
            _, stderr = proc.communicate(data)

        self.last_stderr = stderr.decode("utf-8", errors="replace").strip()
        if self.last_stderr:
            logger.info(f"Command {self.command!r} said: {self.last_stderr}")

        logger.debug(f"Command {self.command!r} exited with {proc.returncode}")
        return proc.returncode


# =============================================================================
# Exceptions
# =============================================================================

class DeliveryError(Exception):
    """
    Raised when a message could not be delivered.

    Attributes:
        command: The delivery command line.
        status: Exit status, or None if the command never ran.
        stderr: What the command wrote to stderr, if anything.
    """

    def __init__(self, command: str, status: int | None, stderr: str = "") -> None:
        self.command = command
        self.status = status
        self.stderr = stderr
        super().__init__(self._describe())

    def _describe(self) -> str:
        if self.status is None:
            reason = "could not be started"
        elif self.status < 0:
            reason = f"was killed by signal {-self.status}"
        else:
            reason = f"exited {self.status}"
        message = f"Delivery command {self.command!r} {reason}"
        if self.stderr:
            message += f" ({self.stderr})"
        return message


class SpawnError(DeliveryError):
    """Raised when the delivery command cannot be started."""
    pass
