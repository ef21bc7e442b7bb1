# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Per-connection polling.

Architecture
------------
ConnectionRegistry  -- tells the scheduler about adds, removes and
                       enabled/interval changes (synchronously).
PollingScheduler    -- one cancellable timer task per enabled connection.
                       Each tick spawns a poll cycle task; cycles for one
                       connection are serialized by a per-connection lock
                       (a tick that finds a cycle in flight is skipped).

Cancelling a timer never aborts an in-flight cycle: the cycle finishes on
its own and its result is dropped if the connection was removed meanwhile.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from .connection import Connection
from .normalizer import mark_offline, merge_record
from .notifications import NotificationBus
from .redfish_client import RedfishClient, RedfishError
from .redfish_model import CanonicalRecord
from .registry import EVENT_ADDED, EVENT_REMOVED, EVENT_UPDATED, ConnectionRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Connection], RedfishClient]

# Registry changes that require the timer to be re-armed
RESCHEDULE_FIELDS = frozenset({"enabled", "poll_interval_seconds"})

TEST_CONNECTION_PREFIX = "test-"


@dataclass
class PollResult:
    connection_id: str
    success: bool
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.connection_id,
            "success": self.success,
            "error": self.error,
        }


@dataclass
class PollStats:
    poll_count: int = 0
    poll_errors: int = 0
    consecutive_failures: int = 0
    skipped_ticks: int = 0
    last_poll_duration: float | None = None
    last_successful_poll: float | None = None


class PollingScheduler:
    """Owns the timers, the latest record per connection and poll stats."""

    def __init__(self, registry: ConnectionRegistry, bus: NotificationBus,
                 client_factory: ClientFactory,
                 clock: Callable[[], float] = time.time):
        self._registry = registry
        self._bus = bus
        self._client_factory = client_factory
        self._clock = clock
        self._running = False

        self._timers: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._cycles: set[asyncio.Task] = set()
        self._records: dict[str, CanonicalRecord] = {}
        self._stats: dict[str, PollStats] = {}

        registry.set_change_callback(self._on_registry_change)

    # -- Lifecycle --------------------------------------------------------

    def start(self):
        """Arm a timer for every enabled connection.  Needs a running loop."""
        self._running = True
        enabled = [c for c in self._registry.list() if c.enabled]
        for conn in enabled:
            self._start_polling(conn)
        logger.info("Scheduler started: %d of %d connection(s) enabled",
                    len(enabled), len(self._registry))

    async def shutdown(self):
        """Cancel all timers and in-flight cycles, drop all subscribers."""
        self._running = False
        for conn_id in list(self._timers):
            self._stop_polling(conn_id)
        cycles = list(self._cycles)
        for task in cycles:
            task.cancel()
        if cycles:
            await asyncio.gather(*cycles, return_exceptions=True)
        self._bus.clear()
        logger.info("Scheduler stopped")

    def _on_registry_change(self, event: str, conn: Connection, changed: frozenset):
        if event == EVENT_ADDED:
            if conn.enabled:
                self._start_polling(conn)
        elif event == EVENT_UPDATED:
            if changed & RESCHEDULE_FIELDS:
                self._stop_polling(conn.id)
                if conn.enabled:
                    self._start_polling(conn)
        elif event == EVENT_REMOVED:
            self._stop_polling(conn.id)
            self._records.pop(conn.id, None)
            self._stats.pop(conn.id, None)
            lock = self._locks.get(conn.id)
            if lock is not None and not lock.locked():
                del self._locks[conn.id]
            self._publish_snapshot()

    # -- Timers -----------------------------------------------------------

    def _start_polling(self, conn: Connection):
        if not self._running:
            return
        self._stop_polling(conn.id)
        # Poll right away, then every interval from now on
        self._spawn_cycle(conn.id, skip_if_busy=False)
        self._timers[conn.id] = asyncio.get_running_loop().create_task(
            self._timer_loop(conn.id, conn.poll_interval_seconds),
            name=f"timer-{conn.id}",
        )
        logger.info("[%s] Polling every %ds", conn.id, conn.poll_interval_seconds)

    def _stop_polling(self, conn_id: str):
        task = self._timers.pop(conn_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.info("[%s] Polling stopped", conn_id)

    async def _timer_loop(self, conn_id: str, interval: int):
        while True:
            await asyncio.sleep(interval)
            self._spawn_cycle(conn_id, skip_if_busy=True)

    def _spawn_cycle(self, conn_id: str, skip_if_busy: bool):
        task = asyncio.get_running_loop().create_task(
            self._poll(conn_id, skip_if_busy), name=f"poll-{conn_id}",
        )
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    def is_active(self, conn_id: str) -> bool:
        """True when a recurring timer exists for *conn_id*."""
        task = self._timers.get(conn_id)
        return task is not None and not task.done()

    def active_ids(self) -> set[str]:
        return {conn_id for conn_id in self._timers if self.is_active(conn_id)}

    # -- Polling ----------------------------------------------------------

    async def poll_one(self, conn_id: str) -> PollResult:
        """Run one poll cycle now, outside the timer cadence."""
        return await self._poll(conn_id, skip_if_busy=False)

    async def poll_all(self) -> list[PollResult]:
        """Poll every registered connection concurrently and wait for all."""
        ids = [c.id for c in self._registry.list()]
        outcomes = await asyncio.gather(
            *(self.poll_one(conn_id) for conn_id in ids),
            return_exceptions=True,
        )
        results = []
        for conn_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                results.append(PollResult(conn_id, False, str(outcome) or type(outcome).__name__))
            else:
                results.append(outcome)
        failed = sum(1 for r in results if not r.success)
        logger.info("Polled %d connection(s), %d failed", len(results), failed)
        return results

    async def _poll(self, conn_id: str, skip_if_busy: bool) -> PollResult:
        if conn_id not in self._registry:
            return PollResult(conn_id, False, "unknown connection")
        lock = self._locks.setdefault(conn_id, asyncio.Lock())
        if skip_if_busy and lock.locked():
            stats = self._stats.setdefault(conn_id, PollStats())
            stats.skipped_ticks += 1
            logger.debug("[%s] Previous poll still running, skipping tick", conn_id)
            return PollResult(conn_id, False, "poll already in progress")
        try:
            async with lock:
                return await self._run_cycle(conn_id)
        finally:
            # Removed mid-cycle: nobody else will free the lock entry
            if conn_id not in self._registry and not lock.locked():
                if self._locks.get(conn_id) is lock:
                    del self._locks[conn_id]

    async def _run_cycle(self, conn_id: str) -> PollResult:
        conn = self._registry.get(conn_id)
        if conn is None:
            return PollResult(conn_id, False, "unknown connection")

        poll_start = time.monotonic()
        try:
            fresh = await self._client_factory(conn).fetch_canonical_snapshot()
        except RedfishError as e:
            return self._handle_failure(conn_id, str(e), poll_start)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[%s] Unexpected error while polling", conn_id)
            return self._handle_failure(conn_id, str(e) or type(e).__name__, poll_start)
        return self._handle_success(conn_id, fresh, poll_start)

    def _handle_success(self, conn_id: str, fresh: CanonicalRecord,
                        poll_start: float) -> PollResult:
        if conn_id not in self._registry:
            logger.debug("[%s] Connection removed during poll, discarding result", conn_id)
            return PollResult(conn_id, False, "connection removed")

        now = self._clock()
        self._records[conn_id] = merge_record(self._records.get(conn_id), fresh, now)
        self._registry.record_poll_success(conn_id, now)

        stats = self._stats.setdefault(conn_id, PollStats())
        if stats.consecutive_failures:
            logger.info("[%s] Communication restored after %d failed poll(s)",
                        conn_id, stats.consecutive_failures)
        stats.poll_count += 1
        stats.consecutive_failures = 0
        stats.last_successful_poll = now
        stats.last_poll_duration = time.monotonic() - poll_start

        if stats.poll_count % 60 == 1:
            logger.info(
                "[%s] Poll #%d: status=%s temp=%s°C power=%sW (%.0fms)",
                conn_id, stats.poll_count, fresh.status,
                fresh.metrics.temperature, fresh.metrics.power_consumption,
                stats.last_poll_duration * 1000,
            )

        self._publish_snapshot()
        return PollResult(conn_id, True)

    def _handle_failure(self, conn_id: str, message: str,
                        poll_start: float) -> PollResult:
        conn = self._registry.get(conn_id)
        if conn is None:
            logger.debug("[%s] Connection removed during poll, discarding error", conn_id)
            return PollResult(conn_id, False, message)

        self._registry.record_poll_failure(conn_id, message)
        self._records[conn_id] = mark_offline(self._records.get(conn_id), conn)

        stats = self._stats.setdefault(conn_id, PollStats())
        stats.poll_errors += 1
        stats.consecutive_failures += 1
        stats.last_poll_duration = time.monotonic() - poll_start
        if stats.consecutive_failures <= 5 or stats.consecutive_failures % 30 == 0:
            logger.warning("[%s] Poll failed (failure %d): %s",
                           conn_id, stats.consecutive_failures, message)

        self._bus.publish_error(conn_id, message)
        self._publish_snapshot()
        return PollResult(conn_id, False, message)

    def _publish_snapshot(self):
        self._bus.publish_snapshot(self.get_servers())

    # -- Probe ------------------------------------------------------------

    async def test_connection(self, candidate: dict) -> dict:
        """Probe a BMC with unsaved credentials.

        Uses an ephemeral connection id and never touches the registry, the
        timers or the published snapshot.
        """
        fields = {k: v for k, v in candidate.items()
                  if k not in ("id", "lastPolledAt", "lastError")}
        try:
            conn = Connection.from_dict({
                **fields, "id": f"{TEST_CONNECTION_PREFIX}{int(self._clock() * 1000)}",
            })
            conn.validate()
        except (KeyError, TypeError, ValueError) as e:
            return {"success": False, "message": f"Invalid connection: {e}"}

        try:
            client = self._client_factory(conn)
            root = await client.get_root()
            record = await client.fetch_canonical_snapshot()
        except RedfishError as e:
            logger.info("Test connection to %s failed: %s", conn.address, e)
            return {"success": False, "message": str(e)}
        except (TypeError, ValueError, UnicodeError) as e:
            logger.info("Test connection to %s rejected: %s", conn.address, e)
            return {"success": False, "message": f"Invalid connection: {e}"}

        version = root.get("RedfishVersion", "unknown") if isinstance(root, dict) else "unknown"
        logger.info("Test connection to %s succeeded (Redfish %s)", conn.address, version)
        return {
            "success": True,
            "message": f"Connected successfully! Redfish version: {version}",
            "data": record.to_dict(),
        }

    # -- Readers ----------------------------------------------------------

    def get_servers(self) -> list[CanonicalRecord]:
        """Point-in-time list of the latest records."""
        return list(self._records.values())

    def get_record(self, conn_id: str) -> CanonicalRecord | None:
        return self._records.get(conn_id)

    def get_status_detail(self, conn_id: str) -> dict | None:
        conn = self._registry.get(conn_id)
        if conn is None:
            return None
        stats = self._stats.get(conn_id, PollStats())
        now = self._clock()
        record = self._records.get(conn_id)
        lock = self._locks.get(conn_id)
        return {
            "id": conn_id,
            "name": conn.name,
            "enabled": conn.enabled,
            "active": self.is_active(conn_id),
            "in_flight": bool(lock and lock.locked()),
            "status": record.status if record else None,
            "poll_interval_seconds": conn.poll_interval_seconds,
            "poll_count": stats.poll_count,
            "poll_errors": stats.poll_errors,
            "consecutive_failures": stats.consecutive_failures,
            "skipped_ticks": stats.skipped_ticks,
            "last_poll_duration_ms": (
                round(stats.last_poll_duration * 1000, 1)
                if stats.last_poll_duration is not None else None
            ),
            "last_successful_poll": stats.last_successful_poll,
            "seconds_since_last_poll": (
                round(now - stats.last_successful_poll, 1)
                if stats.last_successful_poll else None
            ),
            "last_error": conn.last_error,
        }

    def get_all_status(self) -> list[dict]:
        return [self.get_status_detail(c.id) for c in self._registry.list()]
