# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating popfetch configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/popfetch/  (default: ~/.config/popfetch/)
#   - Data:    $XDG_DATA_HOME/popfetch/    (default: ~/.local/share/popfetch/)
#
# Files:
#   - config.toml: User configuration (accounts, fetch options)
#   - ledger.db: SQLite ledger of delivered messages (in data directory)
#
# Accounts are validated strictly: unknown keys are warned about, a missing
# or malformed required key disables that account only.
# =============================================================================

import logging
import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import keyring
import tomli_w  # For writing TOML (tomllib is read-only)
from keyring.errors import KeyringError

from popfetch.core import Account


logger = logging.getLogger(__name__)


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "popfetch"

# Used when neither the account nor [general] names a command
DEFAULT_COMMAND = "/usr/bin/procmail"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for popfetch.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/popfetch/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for popfetch.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/popfetch/
    This is where the ledger database lives.
    """
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base = Path(xdg_data)
    else:
        base = Path.home() / ".local" / "share"
    return base / APP_NAME


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class FetchConfig:
    """
    Options that apply to every account in a run.

    Attributes:
        command: Default delivery command for accounts without their own.
        database: Ledger database path. None uses the XDG data location.
        delete: Delete messages from the server once delivered (or once
                recognised as duplicates).
        reconnect_interval: Seconds after which a session is closed and a
                            new one opened (0 = never). Cannot be combined
                            with delete.
        verify_certificates: Verify TLS server certificates.
        timeout: Socket timeout in seconds (0 = transport default).
    """
    command: str = DEFAULT_COMMAND
    database: Path | None = None
    delete: bool = False
    reconnect_interval: float = 0
    verify_certificates: bool = True
    timeout: float = 0

    def __post_init__(self) -> None:
        """
        Validate option combinations.

        Raises:
            ConfigError: If the options are inconsistent.
        """
        if self.reconnect_interval < 0:
            raise ConfigError("reconnect_interval must not be negative")
        if self.timeout < 0:
            raise ConfigError("timeout must not be negative")
        if self.delete and self.reconnect_interval:
            # Reconnecting halfway through a mailbox defeats deleting as we go
            raise ConfigError("delete cannot be combined with reconnect_interval")
        if not self.command:
            raise ConfigError("command must not be empty")


# Keys accepted in [general] and in each [accounts.<name>] table
GENERAL_KEYS = {
    "command": str,
    "database": str,
    "delete": bool,
    "reconnect_interval": (int, float),
    "verify_certificates": bool,
    "timeout": (int, float),
}

ACCOUNT_KEYS = {
    "host": str,
    "user": str,
    "password": str,
    "command": str,
    "ssl": bool,
    "apop": bool,
    "port": int,
}

REQUIRED_ACCOUNT_KEYS = ("host", "user")


@dataclass
class Config:
    """
    Main configuration container for popfetch.

    Attributes:
        fetch: Options shared by all accounts.
        accounts: Valid accounts, keyed by name, in file order.
        account_errors: Accounts that failed validation, keyed by name.
                        Each is fatal for that account only.

    Usage:
        >>> config = Config.load()
        >>> print(config.accounts['personal'].host)
        'pop.example.com'
    """
    fetch: FetchConfig = field(default_factory=FetchConfig)
    accounts: dict[str, Account] = field(default_factory=dict)
    account_errors: dict[str, "ConfigError"] = field(default_factory=dict)

    # Raw account tables, kept so save() can write them back
    _account_tables: dict[str, dict[str, Any]] = field(default_factory=dict, repr=False)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """Returns the default path to the ledger database."""
        return get_xdg_data_home() / "ledger.db"

    @property
    def ledger_path(self) -> Path:
        """The ledger path in effect for this configuration."""
        return self.fetch.database or self.database_path()

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from a config file.

        If the config file doesn't exist, returns default configuration
        with no accounts.

        Args:
            path: Config file to read. Defaults to the XDG location.

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the file exists but is unreadable or invalid.
        """
        config_path = Path(path) if path else cls.config_file_path()

        if not config_path.exists():
            logger.info(f"No config file at {config_path}, using defaults")
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read config file {config_path}: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> Path:
        """
        Save configuration to a config file.

        Passwords are never written; store them in the keyring instead.

        Returns:
            The path written.
        """
        config_path = Path(path) if path else self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

        return config_path

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Raises:
            ConfigError: If the [general] section is invalid.
        """
        config = cls()

        for key in data.keys() - {"general", "accounts"}:
            logger.warning(f"Ignoring unknown config section: {key}")

        general = data.get("general", {})
        if not isinstance(general, dict):
            raise ConfigError("[general] must be a table")
        _check_keys("[general]", general, GENERAL_KEYS)

        database = general.get("database")
        config.fetch = FetchConfig(
            command=general.get("command", DEFAULT_COMMAND),
            database=Path(database).expanduser() if database else None,
            delete=general.get("delete", False),
            reconnect_interval=general.get("reconnect_interval", 0),
            verify_certificates=general.get("verify_certificates", True),
            timeout=general.get("timeout", 0),
        )

        # Accounts - each key under [accounts] is an account name
        accounts_data = data.get("accounts", {})
        if not isinstance(accounts_data, dict):
            raise ConfigError("[accounts] must be a table of account tables")

        for name, acct_data in accounts_data.items():
            try:
                if not isinstance(acct_data, dict):
                    raise ConfigError(f"Account {name!r} must be a table")
                config._account_tables[name] = dict(acct_data)
                config.accounts[name] = _build_account(
                    name, acct_data, config.fetch.command
                )
            except ConfigError as e:
                logger.error(str(e))
                config.account_errors[name] = e

        return config

    def _to_dict(self) -> dict[str, Any]:
        """
        Convert Config to a dictionary for TOML serialization.
        """
        data: dict[str, Any] = {}

        general: dict[str, Any] = {
            "command": self.fetch.command,
            "delete": self.fetch.delete,
            "reconnect_interval": self.fetch.reconnect_interval,
            "verify_certificates": self.fetch.verify_certificates,
            "timeout": self.fetch.timeout,
        }
        if self.fetch.database:
            general["database"] = str(self.fetch.database)
        data["general"] = general

        data["accounts"] = {}
        for name, table in self._account_tables.items():
            data["accounts"][name] = {
                key: value for key, value in table.items() if key != "password"
            }
        for name, account in self.accounts.items():
            if name in data["accounts"]:
                continue
            data["accounts"][name] = {
                "host": account.host,
                "user": account.user,
                "port": account.port,
                "ssl": account.use_ssl,
                "apop": account.use_apop,
                "command": account.delivery_command,
            }

        return data


# =============================================================================
# Validation
# =============================================================================

def _check_keys(where: str, table: dict[str, Any], schema: dict[str, Any]) -> None:
    """
    Warn about unknown keys and reject values of the wrong type.

    Raises:
        ConfigError: If a known key has the wrong type.
    """
    for key, value in table.items():
        expected = schema.get(key)
        if expected is None:
            logger.warning(f"{where}: ignoring unknown key {key!r}")
            continue
        # bool is a subclass of int; don't accept true as a port number
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(f"{where}: {key!r} must not be a boolean")
        if not isinstance(value, expected):
            raise ConfigError(f"{where}: {key!r} has invalid value {value!r}")


def _build_account(name: str, table: dict[str, Any], default_command: str) -> Account:
    """
    Validate one [accounts.<name>] table and build the Account.

    Raises:
        ConfigError: If a required key is missing or a value is invalid.
    """
    where = f"[accounts.{name}]"
    _check_keys(where, table, ACCOUNT_KEYS)

    missing = [key for key in REQUIRED_ACCOUNT_KEYS if not table.get(key)]
    if missing:
        raise ConfigError(f"{where}: missing required keys: {', '.join(missing)}")

    port = table.get("port", 0)
    if port and not 0 < port < 65536:
        raise ConfigError(f"{where}: port {port} out of range")

    password = table.get("password") or lookup_password(name, table["user"])
    if not password:
        raise ConfigError(
            f"{where}: no password in config or keyring. "
            f"Set it with: keyring set {keyring_service(name)} {table['user']}"
        )

    return Account(
        name=name,
        host=table["host"],
        user=table["user"],
        password=password,
        delivery_command=table.get("command") or default_command,
        port=port,
        use_ssl=table.get("ssl", False),
        use_apop=table.get("apop", False),
    )


def keyring_service(name: str) -> str:
    """
    Service name under which an account password is stored.

    Passwords can be managed with the keyring CLI:
        keyring set popfetch:personal me
    """
    return f"{APP_NAME}:{name}"


def lookup_password(name: str, user: str) -> str | None:
    """
    Retrieve an account password from the system keyring.

    Returns:
        The password, or None if none is stored or no keyring is available.
    """
    try:
        return keyring.get_password(keyring_service(name), user)
    except KeyringError as e:
        logger.warning(f"Keyring lookup failed for {name}: {e}")
        return None


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or validating configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def starter_config() -> Config:
    """
    Build the example configuration written by --init-config.
    """
    config = Config()
    config._account_tables["example"] = {
        "host": "pop.example.com",
        "user": "me",
        "ssl": True,
        "apop": False,
    }
    return config


def print_paths(config_path: Path | None = None) -> None:
    """
    Print the paths popfetch uses.
    Useful for users wondering where their config and ledger are stored.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print()
    print(f"Config file:  {config_path or Config.config_file_path()}")
    print(f"Ledger:       {Config.database_path()}")
