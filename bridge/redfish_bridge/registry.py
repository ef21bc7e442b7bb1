# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Connection registry: the single source of truth for what gets polled.

Every mutating call rewrites the full connection list into one storage slot
before returning.  Storage failures are logged and swallowed: the in-memory
registry stays authoritative for the running process.
"""

import json
import logging
from typing import Callable

from .connection import Connection, changes_from_wire, new_connection_id
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

STORAGE_KEY = "datacenter-connections"

EVENT_ADDED = "added"
EVENT_UPDATED = "updated"
EVENT_REMOVED = "removed"

# (event, connection, changed attribute names)
ChangeCallback = Callable[[str, Connection, frozenset], None]


class ConnectionRegistry:
    """Owns the configured connections and persists them."""

    def __init__(self, storage: KeyValueStore, storage_key: str = STORAGE_KEY):
        self._storage = storage
        self._storage_key = storage_key
        self._connections: dict[str, Connection] = {}
        self._change_callback: ChangeCallback | None = None
        self._load()

    def set_change_callback(self, callback: ChangeCallback | None):
        """Set the synchronous listener notified after every mutation."""
        self._change_callback = callback

    # -- Persistence ------------------------------------------------------

    def _load(self):
        try:
            blob = self._storage.get(self._storage_key)
        except Exception:
            logger.exception("Failed to read connections from storage")
            return
        if not blob:
            return
        try:
            entries = json.loads(blob)
        except ValueError:
            logger.exception("Stored connections are not valid JSON, starting empty")
            return
        if not isinstance(entries, list):
            logger.error("Stored connections are not a list, starting empty")
            return

        for d in entries:
            if not isinstance(d, dict):
                logger.warning("Skipping stored connection that is not an object: %r", d)
                continue
            try:
                conn = Connection.from_dict(d)
                conn.validate()
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid stored connection %r: %s", d.get("id"), e)
                continue
            self._connections[conn.id] = conn
        logger.info("Loaded %d connection(s) from storage", len(self._connections))

    def _persist(self):
        data = json.dumps([c.to_dict() for c in self._connections.values()])
        try:
            self._storage.set(self._storage_key, data.encode("utf-8"))
        except Exception:
            logger.exception("Failed to persist %d connection(s)", len(self._connections))

    def _notify(self, event: str, conn: Connection, changed: frozenset = frozenset()):
        if self._change_callback is None:
            return
        self._change_callback(event, conn, changed)

    # -- CRUD -------------------------------------------------------------

    def add(self, data: dict) -> Connection:
        """Create a connection from wire-format fields and assign it an id.

        Any id, lastPolledAt or lastError in *data* is ignored.
        """
        fields = {k: v for k, v in data.items()
                  if k not in ("id", "lastPolledAt", "lastError")}
        conn = Connection.from_dict({**fields, "id": new_connection_id()})
        while conn.id in self._connections:
            conn = conn.with_changes({"id": new_connection_id()})
        conn.validate()

        self._connections[conn.id] = conn
        self._persist()
        logger.info("[%s] Added connection %s (%s, %s)",
                    conn.id, conn.name or conn.host, conn.address, conn.kind)
        self._notify(EVENT_ADDED, conn)
        return conn

    def update(self, conn_id: str, changes: dict) -> Connection | None:
        """Apply a partial wire-format update.  Unknown ids are a no-op."""
        existing = self._connections.get(conn_id)
        if existing is None:
            return None

        attrs = changes_from_wire(changes)
        updated = existing.with_changes(attrs)
        updated.validate()

        changed = frozenset(
            name for name, value in attrs.items()
            if getattr(existing, name) != value
        )
        self._connections[conn_id] = updated
        self._persist()
        if changed:
            logger.info("[%s] Updated %s", conn_id, ", ".join(sorted(changed)))
        self._notify(EVENT_UPDATED, updated, changed)
        return updated

    def remove(self, conn_id: str) -> bool:
        conn = self._connections.pop(conn_id, None)
        if conn is None:
            return False
        self._persist()
        logger.info("[%s] Removed connection", conn_id)
        self._notify(EVENT_REMOVED, conn)
        return True

    def list(self) -> list[Connection]:
        return list(self._connections.values())

    def get(self, conn_id: str) -> Connection | None:
        return self._connections.get(conn_id)

    def __contains__(self, conn_id: str) -> bool:
        return conn_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    # -- Scheduler-owned state --------------------------------------------

    def record_poll_success(self, conn_id: str, polled_at: float):
        """Set lastPolledAt and clear lastError (called by the scheduler)."""
        conn = self._connections.get(conn_id)
        if conn is not None:
            self._connections[conn_id] = conn.with_changes(
                {"last_polled_at": polled_at, "last_error": None}
            )

    def record_poll_failure(self, conn_id: str, message: str):
        """Set lastError (called by the scheduler)."""
        conn = self._connections.get(conn_id)
        if conn is not None:
            self._connections[conn_id] = conn.with_changes({"last_error": message})
