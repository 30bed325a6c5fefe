# =============================================================================
# Console Progress Reporter
# =============================================================================
# Renders FetchProgress updates on the terminal with rich:
#   - one line when an account connects and how much mail it has
#   - a transient transfer bar while a message streams
#   - one line per finished message (index/total, size, outcome)
#   - a summary line per account
#
# Purely observational: nothing here affects what gets delivered.
# =============================================================================

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)

from popfetch.core import DeliveryOutcome
from popfetch.fetch import FetchProgress, FetchResult, FetchStatus


# How each outcome is shown
OUTCOME_STYLES = {
    DeliveryOutcome.DELIVERED: "[green]✓ delivered[/]",
    DeliveryOutcome.SKIPPED: "[dim]· skipped[/]",
    DeliveryOutcome.FAILED: "[red]✗ failed[/]",
}


def format_size(size: int) -> str:
    """Human-readable octet count (e.g. "12.3 KiB")."""
    value = float(size)
    for unit in ("B", "KiB", "MiB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GiB"


class ConsoleReporter:
    """
    Progress callback that prints fetch progress to a rich Console.

    Usage:
        >>> reporter = ConsoleReporter()
        >>> fetcher.run(progress_callback=reporter)
        >>> reporter.summary(result)

    Attributes:
        console: Console to write to.
        show_skipped: Print a line for every skipped duplicate.
    """

    def __init__(self, console: Console | None = None, show_skipped: bool = False) -> None:
        self.console = console or Console()
        self.show_skipped = show_skipped
        self._transfer: Progress | None = None
        self._task = None
        self._last_status: FetchStatus | None = None

    def __call__(self, progress: FetchProgress) -> None:
        status = progress.status
        changed = status is not self._last_status
        self._last_status = status

        if status is FetchStatus.CONNECTING and changed:
            if progress.session == 1:
                self.console.print(f"[bold]{progress.account}[/]: connecting")
            else:
                self.console.print(
                    f"[bold]{progress.account}[/]: reconnecting (session {progress.session})"
                )
        elif status is FetchStatus.LISTING and changed and progress.session == 1:
            if progress.total_messages:
                self.console.print(
                    f"[bold]{progress.account}[/]: {progress.total_messages} messages"
                )
            else:
                self.console.print(f"[bold]{progress.account}[/]: no mail")
        elif status is FetchStatus.PER_MESSAGE:
            self._on_message(progress, started=changed or progress.bytes_received == 0)
        elif status is FetchStatus.FAILED:
            self._stop_transfer()
            self.console.print(f"[bold red]{progress.account}[/]: {progress.error}")
        else:
            self._stop_transfer()

    def _on_message(self, progress: FetchProgress, started: bool) -> None:
        if progress.outcome is not None:
            self._stop_transfer()
            if progress.outcome is DeliveryOutcome.SKIPPED and not self.show_skipped:
                return
            self.console.print(
                f"  {progress.message_index}/{progress.total_messages} "
                f"{format_size(progress.message_size):>10}  "
                f"{OUTCOME_STYLES[progress.outcome]}"
            )
        elif started:
            self._stop_transfer()
        else:
            # Byte tick
            if self._transfer is None:
                self._start_transfer(progress)
            self._transfer.update(self._task, completed=progress.bytes_received)

    def _start_transfer(self, progress: FetchProgress) -> None:
        self._transfer = Progress(
            TextColumn(f"  {progress.message_index}/{progress.total_messages}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=self.console,
            transient=True,
        )
        self._transfer.start()
        self._task = self._transfer.add_task(
            "retr", total=progress.message_size or None
        )

    def _stop_transfer(self) -> None:
        if self._transfer is not None:
            self._transfer.stop()
            self._transfer = None
            self._task = None

    def summary(self, result: FetchResult) -> None:
        """Print the per-account summary line."""
        self._stop_transfer()
        if result.no_mail:
            return
        parts = [f"{result.delivered} delivered", f"{result.skipped} skipped"]
        if result.deleted:
            parts.append(f"{result.deleted} deleted")
        if result.pruned:
            parts.append(f"{result.pruned} pruned")
        if result.sessions > 1:
            parts.append(f"{result.sessions} sessions")
        self.console.print(
            f"[bold]{result.account}[/]: {', '.join(parts)} "
            f"in {result.duration_seconds:.1f}s"
        )
