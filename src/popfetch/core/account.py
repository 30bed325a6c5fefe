# =============================================================================
# Account Model
# =============================================================================
# Represents one POP3 mailbox to drain, plus the command that receives its
# mail. Instances are built by the config loader after validation and are
# never modified afterwards.
#
# Ledger scoping: every message key is prefixed with "<user>@<host>:<port>",
# so the same server-assigned UID in two different accounts never collides.
# =============================================================================

from dataclasses import dataclass


# Standard POP3 ports
POP3_PORT = 110
POP3_SSL_PORT = 995


@dataclass(frozen=True)
class Account:
    """
    Represents a POP3 account and its delivery command.

    Attributes:
        name: Identifier for this account (the config table name, e.g.
              "personal"). Used for display and keyring lookups.
        host: Hostname of the POP3 server (e.g., "pop.example.com").
        user: Login name on the server.
        password: Login password (from the config file or the keyring).
        delivery_command: Shell command that receives each message on stdin.
        port: Server port. Standard ports:
              - 995 for POP3 over SSL/TLS
              - 110 for plain POP3
        use_ssl: Connect with implicit TLS.
        use_apop: Authenticate with APOP instead of USER/PASS.

    Example:
        >>> account = Account(
        ...     name="personal",
        ...     host="pop.example.com",
        ...     user="me",
        ...     password="secret",
        ...     delivery_command="/usr/bin/procmail",
        ...     use_ssl=True,
        ... )
        >>> account.port
        995
    """

    name: str
    host: str
    user: str
    password: str
    delivery_command: str
    port: int = 0                       # 0 = pick from use_ssl
    use_ssl: bool = False
    use_apop: bool = False

    def __post_init__(self) -> None:
        """Fill in the default port for the chosen transport."""
        if not self.port:
            object.__setattr__(
                self, "port", POP3_SSL_PORT if self.use_ssl else POP3_PORT
            )

    @property
    def ledger_scope(self) -> str:
        """Prefix shared by every ledger key of this account."""
        return f"{self.user}@{self.host}:{self.port}"

    def message_key(self, uid: str) -> str:
        """
        Build the ledger key for a server-assigned unique identifier.

        Args:
            uid: The UIDL value reported by the server.

        Returns:
            "<user>@<host>:<port>#<uid>"
        """
        return f"{self.ledger_scope}#{uid}"

    def __str__(self) -> str:
        return f"{self.name} <{self.ledger_scope}>"

    def __repr__(self) -> str:
        # Never include the password
        return (
            f"Account(name={self.name!r}, user={self.user!r}, "
            f"server={self.host}:{self.port}, ssl={self.use_ssl}, "
            f"apop={self.use_apop})"
        )
