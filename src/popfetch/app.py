# =============================================================================
# popfetch Run Driver
# =============================================================================
# Command-line entry point. Loads the configuration, opens the ledger and
# runs one AccountFetcher per account, strictly one after another.
#
# Failure isolation:
#   - Bad config file / bad options / unopenable ledger: abort before any
#     account is touched (exit 1)
#   - Connection, authentication, transfer or delivery failure: logged,
#     the next account is processed
#   - Ledger failure during a run: abort (exit 1), dedup can't be trusted
#   - Ctrl-C: the open ledger transaction rolls back, no further accounts
#     are processed (exit 130)
# =============================================================================

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from popfetch import __version__, __app_name__
from popfetch.config import (
    Config,
    ConfigError,
    FetchConfig,
    keyring_service,
    print_paths,
    starter_config,
)
from popfetch.delivery import DeliveryError
from popfetch.fetch import AccountFetcher, FetchContext
from popfetch.pop3 import POP3Error
from popfetch.storage import Database, Ledger, StorageError
from popfetch.ui import ConsoleReporter


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INTERRUPTED = 130


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description=(
            "popfetch: fetch mail from POP3 mailboxes and deliver each "
            "message exactly once to a command"
        ),
    )

    parser.add_argument(
        "accounts",
        nargs="*",
        metavar="ACCOUNT",
        help="Only fetch these accounts (default: all configured accounts)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--database",
        type=Path,
        help="Path to the ledger database (overrides the config file)",
    )

    parser.add_argument(
        "--delete",
        action="store_true",
        default=None,
        help="Delete messages from the server once delivered",
    )

    parser.add_argument(
        "--reconnect-interval",
        type=float,
        metavar="SECONDS",
        help="Open a new session after this many seconds (not with --delete)",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        metavar="SECONDS",
        help="Socket timeout for POP3 connections",
    )

    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Do not verify TLS certificates",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="More logging (-vv for debug output and tracebacks)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Don't show progress, only errors",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write an example config file and exit",
    )

    parser.add_argument(
        "--forget",
        metavar="ACCOUNT",
        help="Remove every ledger entry of ACCOUNT and exit",
    )

    return parser.parse_args(argv)


def setup_logging(verbosity: int) -> None:
    """Send log records to stderr through rich."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def apply_overrides(fetch: FetchConfig, args: argparse.Namespace) -> FetchConfig:
    """
    Merge command-line options into the [general] options.

    Raises:
        ConfigError: If the resulting combination is invalid.
    """
    changes = {}
    if args.database is not None:
        changes["database"] = args.database.expanduser()
    if args.delete is not None:
        changes["delete"] = args.delete
    if args.reconnect_interval is not None:
        changes["reconnect_interval"] = args.reconnect_interval
    if args.timeout is not None:
        changes["timeout"] = args.timeout
    if args.insecure:
        changes["verify_certificates"] = False
    # replace() re-runs FetchConfig validation
    return dataclasses.replace(fetch, **changes)


def init_config(path: Path | None) -> int:
    """Write a starter config file unless one already exists."""
    target = path or Config.config_file_path()
    if target.exists():
        logger.error(f"{target} already exists, not overwriting")
        return EXIT_FATAL
    written = starter_config().save(target)
    print(f"Wrote {written}")
    print(f"Store the password with: keyring set {keyring_service('example')} me")
    return EXIT_OK


def forget_account(config: Config, ledger: Ledger, name: str) -> int:
    """Drop every ledger key of one account."""
    account = config.accounts.get(name)
    if account is None:
        reason = config.account_errors.get(name, "no such account")
        logger.error(f"Cannot forget {name}: {reason}")
        return EXIT_FATAL
    removed = ledger.forget(account.ledger_scope)
    print(f"Removed {removed} ledger entries for {account}, {ledger.count()} remain")
    return EXIT_OK


def run_accounts(
    config: Config,
    ledger: Ledger,
    names: list[str],
    reporter: ConsoleReporter | None,
    verbose: bool = False,
) -> int:
    """
    Fetch the selected accounts one after another.

    Returns:
        Process exit code.
    """
    selected = names or list(config.accounts) + list(config.account_errors)
    context = FetchContext(ledger=ledger, options=config.fetch)
    failures = 0

    for name in selected:
        account = config.accounts.get(name)
        if account is None:
            reason = config.account_errors.get(name) or "no such account"
            logger.error(f"Skipping account {name}: {reason}")
            failures += 1
            continue

        try:
            result = AccountFetcher(account, context).run(progress_callback=reporter)
        except StorageError as e:
            logger.critical(f"Ledger failure, stopping: {e}", exc_info=verbose)
            return EXIT_FATAL
        except KeyboardInterrupt:
            logger.warning(f"Interrupted while fetching {name}, stopping")
            return EXIT_INTERRUPTED
        except (POP3Error, DeliveryError) as e:
            logger.error(f"{name}: {e}", exc_info=verbose)
            failures += 1
            continue
        except Exception as e:
            logger.error(f"{name}: unexpected error: {e}", exc_info=True)
            failures += 1
            continue

        if reporter:
            reporter.summary(result)

    if failures:
        logger.warning(f"{failures} of {len(selected)} accounts failed")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for popfetch.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --init-config, --forget)
        3. Loads and validates configuration
        4. Opens the ledger and fetches each account

    Returns:
        Exit code (0 for success, non-zero for fatal errors).
    """
    args = parse_args(argv)
    setup_logging(args.verbose)

    if args.paths:
        print_paths(args.config)
        return EXIT_OK

    if args.init_config:
        return init_config(args.config)

    try:
        config = Config.load(args.config)
        config.fetch = apply_overrides(config.fetch, args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_FATAL

    if not config.accounts and not config.account_errors:
        logger.error(
            f"No accounts configured. Create one with: {__app_name__} --init-config"
        )
        return EXIT_FATAL

    database = Database(config.ledger_path)
    try:
        database.connect()
    except StorageError as e:
        logger.error(str(e))
        return EXIT_FATAL

    try:
        ledger = Ledger(database)
        if args.forget:
            return forget_account(config, ledger, args.forget)

        reporter = None
        if not args.quiet:
            # -v also lists duplicates that were skipped
            reporter = ConsoleReporter(show_skipped=args.verbose >= 1)
        return run_accounts(
            config, ledger, args.accounts, reporter, verbose=args.verbose >= 2
        )
    except StorageError as e:
        logger.error(str(e))
        return EXIT_FATAL
    finally:
        database.close()


if __name__ == "__main__":
    sys.exit(main())
