# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""BMC connection configuration, one entry per managed endpoint."""

import dataclasses
import logging
import secrets
import time
from dataclasses import dataclass, field

from .redfish_model import KIND_IPMI, KIND_REDFISH, KINDS

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL = 5
MAX_POLL_INTERVAL = 3600
DEFAULT_POLL_INTERVAL = 30

PROTOCOLS = ("http", "https")

# Wire name -> attribute name.  Wire names are what gets persisted and what
# the REST API accepts.
FIELD_NAMES = {
    "id": "id",
    "name": "name",
    "host": "host",
    "port": "port",
    "protocol": "protocol",
    "username": "username",
    "secret": "secret",
    "kind": "kind",
    "enabled": "enabled",
    "pollIntervalSeconds": "poll_interval_seconds",
    "lastPolledAt": "last_polled_at",
    "lastError": "last_error",
}

# Owned by the scheduler (or assigned once at creation)
READ_ONLY_FIELDS = frozenset({"id", "last_polled_at", "last_error"})

# Older configs stored the IPMI flavour as plain "ipmi"
_LEGACY_KINDS = {"ipmi": KIND_IPMI}


@dataclass
class Connection:
    """Configuration for a single BMC endpoint."""
    id: str
    name: str = ""
    host: str = ""
    port: int = 443
    protocol: str = "https"
    username: str = ""
    secret: str = field(default="", repr=False)
    kind: str = KIND_REDFISH
    enabled: bool = True
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL
    last_polled_at: float | None = None   # scheduler-owned
    last_error: str | None = None         # scheduler-owned

    @property
    def address(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    def to_dict(self, include_secret: bool = True) -> dict:
        d = {
            wire: getattr(self, attr)
            for wire, attr in FIELD_NAMES.items()
        }
        if not include_secret:
            d.pop("secret")
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Connection":
        kind = d.get("kind", KIND_REDFISH)
        return cls(
            id=d["id"],
            name=d.get("name", ""),
            host=d.get("host", ""),
            port=int(d.get("port", 443)),
            protocol=d.get("protocol", "https"),
            username=d.get("username", ""),
            secret=d.get("secret", ""),
            kind=_LEGACY_KINDS.get(kind, kind),
            enabled=bool(d.get("enabled", True)),
            poll_interval_seconds=int(d.get("pollIntervalSeconds", DEFAULT_POLL_INTERVAL)),
            last_polled_at=d.get("lastPolledAt"),
            last_error=d.get("lastError"),
        )

    def validate(self):
        for attr in ("name", "host", "username", "secret"):
            if not isinstance(getattr(self, attr), str):
                raise ValueError(f"Connection {self.id!r} {attr} must be a string")
        if not self.host:
            raise ValueError(f"Connection {self.id!r} has no host configured")
        if ":" in self.username:
            raise ValueError(f"Connection {self.id!r} username must not contain ':'")
        try:
            f"{self.username}:{self.secret}".encode("latin-1")
        except UnicodeEncodeError:
            raise ValueError(
                f"Connection {self.id!r} credentials must be latin-1 characters"
            )
        if not (1 <= self.port <= 65535):
            raise ValueError(
                f"Connection {self.id!r} port out of range: {self.port}"
            )
        if self.protocol not in PROTOCOLS:
            raise ValueError(
                f"Connection {self.id!r} protocol must be 'http' or 'https', got {self.protocol!r}"
            )
        if self.kind not in KINDS:
            raise ValueError(
                f"Connection {self.id!r} kind must be one of {', '.join(KINDS)}, got {self.kind!r}"
            )
        if isinstance(self.poll_interval_seconds, bool) or self.poll_interval_seconds <= 0:
            raise ValueError(
                f"Connection {self.id!r} pollIntervalSeconds must be a positive integer"
            )

    def with_changes(self, changes: dict) -> "Connection":
        """Return a copy with *changes* (attribute names) applied."""
        return dataclasses.replace(self, **changes)


def new_connection_id() -> str:
    """Return a fresh opaque connection id."""
    return f"conn-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


def changes_from_wire(d: dict) -> dict:
    """Translate a partial wire-format dict into attribute-name changes.

    Raises ValueError for unknown fields and for fields the caller may not
    set (id, lastPolledAt, lastError).
    """
    changes = {}
    for wire, value in d.items():
        attr = FIELD_NAMES.get(wire)
        if attr is None:
            raise ValueError(f"unknown connection field: {wire!r}")
        if attr in READ_ONLY_FIELDS:
            raise ValueError(f"connection field {wire!r} is read-only")
        if attr == "port" or attr == "poll_interval_seconds":
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValueError(f"connection field {wire!r} must be an integer")
        elif attr == "enabled":
            value = bool(value)
        elif attr == "kind":
            value = _LEGACY_KINDS.get(value, value)
        changes[attr] = value
    return changes


def clamp_poll_interval(value, default: int = DEFAULT_POLL_INTERVAL) -> int:
    """Clamp a user-supplied poll interval into the recommended range."""
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return default
    if seconds <= 0:
        return default
    return max(MIN_POLL_INTERVAL, min(MAX_POLL_INTERVAL, seconds))
