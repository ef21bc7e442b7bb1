# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Tests for PollingScheduler: timers, poll cycles, fan-out and probes."""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from redfish_bridge.normalizer import normalize
from redfish_bridge.notifications import NotificationBus
from redfish_bridge.redfish_client import ProtocolError, TransportError
from redfish_bridge.registry import ConnectionRegistry
from redfish_bridge.scheduler import PollingScheduler
from redfish_bridge.storage import MemoryStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeFleet:
    """Client factory whose per-host outcome can change between polls.

    An outcome is a PowerState string, an exception to raise, or an
    asyncio.Event the fetch waits on before answering "On".
    """

    def __init__(self):
        self.outcomes = {}
        self.calls = []

    def __call__(self, conn):
        client = MagicMock()

        async def fetch():
            self.calls.append(conn.id)
            outcome = self.outcomes.get(conn.host, "On")
            if isinstance(outcome, asyncio.Event):
                await outcome.wait()
                outcome = "On"
            if isinstance(outcome, BaseException):
                raise outcome
            system = {"PowerState": outcome, "Status": {"Health": "OK"},
                      "Manufacturer": "Dell Inc.", "Model": "PowerEdge R750"}
            return normalize(system, {}, {}, {}, conn)

        client.fetch_canonical_snapshot = fetch
        client.get_root = AsyncMock(return_value={"RedfishVersion": "1.11.0"})
        return client

    def count(self, conn_id):
        return self.calls.count(conn_id)


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def conn_fields(host="10.0.1.50", **overrides):
    fields = {
        "name": host, "host": host, "port": 443, "protocol": "https",
        "username": "root", "secret": "calvin", "kind": "idrac",
        "enabled": True, "pollIntervalSeconds": 3600,
    }
    fields.update(overrides)
    return fields


async def settle():
    """Let spawned poll tasks run to completion."""
    for _ in range(20):
        await asyncio.sleep(0)


@pytest_asyncio.fixture
async def env():
    registry = ConnectionRegistry(MemoryStore())
    bus = NotificationBus()
    fleet = FakeFleet()
    clock = Clock()
    scheduler = PollingScheduler(registry, bus, fleet, clock=clock)
    scheduler.start()
    yield registry, bus, fleet, scheduler, clock
    await scheduler.shutdown()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_add_enabled_polls_immediately(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        conn = registry.add(conn_fields())
        await settle()

        assert fleet.count(conn.id) == 1
        assert scheduler.is_active(conn.id)
        record = scheduler.get_record(conn.id)
        assert record.status == "online"
        assert registry.get(conn.id).last_polled_at == 1000.0

    @pytest.mark.asyncio
    async def test_add_disabled_does_not_poll(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        conn = registry.add(conn_fields(enabled=False))
        await settle()

        assert fleet.count(conn.id) == 0
        assert not scheduler.is_active(conn.id)
        assert scheduler.get_record(conn.id) is None

    @pytest.mark.asyncio
    async def test_one_timer_per_enabled_connection(self, env):
        registry, _bus, _fleet, scheduler, _clock = env
        a = registry.add(conn_fields("10.0.1.1"))
        b = registry.add(conn_fields("10.0.1.2", enabled=False))
        c = registry.add(conn_fields("10.0.1.3"))
        await settle()
        assert scheduler.active_ids() == {a.id, c.id}

        registry.update(a.id, {"enabled": False})
        registry.update(b.id, {"enabled": True})
        registry.remove(c.id)
        assert scheduler.active_ids() == {b.id}

    @pytest.mark.asyncio
    async def test_reenable_polls_immediately(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        conn = registry.add(conn_fields())
        await settle()
        first_timer = scheduler._timers[conn.id]

        registry.update(conn.id, {"enabled": False})
        await settle()
        assert first_timer.cancelled() or first_timer.done()
        assert not scheduler.is_active(conn.id)

        registry.update(conn.id, {"enabled": True})
        await settle()
        assert fleet.count(conn.id) == 2
        assert scheduler._timers[conn.id] is not first_timer

    @pytest.mark.asyncio
    async def test_interval_change_reschedules(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        conn = registry.add(conn_fields())
        await settle()
        first_timer = scheduler._timers[conn.id]

        registry.update(conn.id, {"pollIntervalSeconds": 60})
        await settle()
        assert scheduler._timers[conn.id] is not first_timer
        assert fleet.count(conn.id) == 2

    @pytest.mark.asyncio
    async def test_other_changes_do_not_reschedule(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        conn = registry.add(conn_fields())
        await settle()
        first_timer = scheduler._timers[conn.id]

        registry.update(conn.id, {"name": "renamed", "pollIntervalSeconds": 3600})
        await settle()
        assert scheduler._timers[conn.id] is first_timer
        assert fleet.count(conn.id) == 1

    @pytest.mark.asyncio
    async def test_remove_discards_record_and_stats(self, env):
        registry, bus, _fleet, scheduler, _clock = env
        conn = registry.add(conn_fields())
        await settle()
        assert scheduler.get_record(conn.id) is not None

        registry.remove(conn.id)
        assert scheduler.get_record(conn.id) is None
        assert scheduler.get_status_detail(conn.id) is None
        assert [r.id for r in bus.snapshot] == []

    @pytest.mark.asyncio
    async def test_timer_ticks(self):
        registry = ConnectionRegistry(MemoryStore())
        fleet = FakeFleet()
        scheduler = PollingScheduler(registry, NotificationBus(), fleet)
        scheduler.start()
        try:
            conn = registry.add(conn_fields(pollIntervalSeconds=1))
            await asyncio.sleep(1.3)
            assert fleet.count(conn.id) == 2
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_start_arms_existing_connections(self):
        store = MemoryStore()
        seed = ConnectionRegistry(store)
        on = seed.add(conn_fields("10.0.1.1"))
        off = seed.add(conn_fields("10.0.1.2", enabled=False))

        registry = ConnectionRegistry(store)
        fleet = FakeFleet()
        scheduler = PollingScheduler(registry, NotificationBus(), fleet)
        try:
            scheduler.start()
            await settle()
            assert scheduler.active_ids() == {on.id}
            assert fleet.count(on.id) == 1
            assert fleet.count(off.id) == 0
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self, env):
        registry, bus, fleet, scheduler, _clock = env
        gate = asyncio.Event()
        fleet.outcomes["10.0.1.50"] = gate
        subscriber = MagicMock()
        bus.subscribe(subscriber)

        conn = registry.add(conn_fields())
        await settle()
        await scheduler.shutdown()

        assert scheduler.active_ids() == set()
        assert scheduler._cycles == set()
        assert bus.get_status()["data_subscribers"] == 0
        # Re-enabling after shutdown does not arm a timer
        registry.update(conn.id, {"enabled": False})
        registry.update(conn.id, {"enabled": True})
        assert not scheduler.is_active(conn.id)


# ---------------------------------------------------------------------------
# Poll cycle outcomes
# ---------------------------------------------------------------------------

class TestPollCycle:
    @pytest.mark.asyncio
    async def test_http_401_forces_offline(self, env):
        registry, bus, fleet, scheduler, _clock = env
        fleet.outcomes["10.0.1.50"] = ProtocolError("Redfish API error: 401 Unauthorized", 401)
        errors = []
        bus.subscribe_to_errors(lambda cid, msg: errors.append((cid, msg)))

        conn = registry.add(conn_fields())
        await settle()

        assert "401" in registry.get(conn.id).last_error
        assert scheduler.get_record(conn.id).status == "offline"
        assert errors == [(conn.id, "Redfish API error: 401 Unauthorized")]

    @pytest.mark.asyncio
    async def test_failure_keeps_known_facts(self, env):
        registry, _bus, fleet, scheduler, clock = env
        conn = registry.add(conn_fields())
        await settle()

        clock.now = 2000.0
        fleet.outcomes["10.0.1.50"] = TransportError("Connection to 10.0.1.50:443 failed: timeout")
        result = await scheduler.poll_one(conn.id)

        assert result.success is False
        record = scheduler.get_record(conn.id)
        assert record.status == "offline"
        assert record.hardware.manufacturer == "Dell Inc."
        assert record.last_seen == 1000.0
        assert registry.get(conn.id).last_polled_at == 1000.0

    @pytest.mark.asyncio
    async def test_failure_always_offline_regardless_of_prior_status(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        fleet.outcomes["10.0.1.50"] = "PoweringOn"
        conn = registry.add(conn_fields())
        await settle()
        assert scheduler.get_record(conn.id).status == "maintenance"

        fleet.outcomes["10.0.1.50"] = TransportError("down")
        await scheduler.poll_one(conn.id)
        assert scheduler.get_record(conn.id).status == "offline"
        assert registry.get(conn.id).last_error == "down"

    @pytest.mark.asyncio
    async def test_success_after_failure_clears_error(self, env):
        registry, _bus, fleet, scheduler, clock = env
        fleet.outcomes["10.0.1.50"] = TransportError("down")
        conn = registry.add(conn_fields())
        await settle()
        assert scheduler.get_record(conn.id).status == "offline"

        clock.now = 3000.0
        fleet.outcomes["10.0.1.50"] = "On"
        result = await scheduler.poll_one(conn.id)

        assert result.success is True
        assert registry.get(conn.id).last_error is None
        assert scheduler.get_record(conn.id).status == "online"
        assert scheduler.get_record(conn.id).last_seen == 3000.0

    @pytest.mark.asyncio
    async def test_unexpected_exception_takes_failure_path(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        conn = registry.add(conn_fields(enabled=False))
        fleet.outcomes["10.0.1.50"] = KeyError("Members")

        result = await scheduler.poll_one(conn.id)
        assert result.success is False
        assert registry.get(conn.id).last_error
        assert scheduler.get_record(conn.id).status == "offline"

    @pytest.mark.asyncio
    async def test_tags_survive_later_polls(self, env):
        registry, _bus, _fleet, scheduler, _clock = env
        conn = registry.add(conn_fields(enabled=False))
        await scheduler.poll_one(conn.id)

        registry.update(conn.id, {"kind": "ilo"})
        await scheduler.poll_one(conn.id)
        record = scheduler.get_record(conn.id)
        assert record.tags == ["idrac"]
        assert record.management_type == "iLO"

    @pytest.mark.asyncio
    async def test_snapshot_published_on_success_and_failure(self, env):
        registry, bus, fleet, scheduler, _clock = env
        snapshots = []
        bus.subscribe(lambda records: snapshots.append([(r.id, r.status) for r in records]))
        conn = registry.add(conn_fields(enabled=False))

        await scheduler.poll_one(conn.id)
        fleet.outcomes["10.0.1.50"] = TransportError("down")
        await scheduler.poll_one(conn.id)

        assert snapshots == [[], [(conn.id, "online")], [(conn.id, "offline")]]

    @pytest.mark.asyncio
    async def test_result_discarded_when_removed_mid_poll(self, env):
        registry, bus, fleet, scheduler, _clock = env
        gate = asyncio.Event()
        fleet.outcomes["10.0.1.50"] = gate
        conn = registry.add(conn_fields())
        await settle()
        assert fleet.count(conn.id) == 1

        registry.remove(conn.id)
        gate.set()
        await settle()

        assert scheduler.get_record(conn.id) is None
        assert all(r.id != conn.id for r in bus.snapshot)

    @pytest.mark.asyncio
    async def test_poll_one_does_not_touch_timer(self, env):
        registry, _bus, _fleet, scheduler, _clock = env
        conn = registry.add(conn_fields())
        await settle()
        timer = scheduler._timers[conn.id]
        await scheduler.poll_one(conn.id)
        assert scheduler._timers[conn.id] is timer

    @pytest.mark.asyncio
    async def test_poll_one_unknown_connection(self, env):
        _registry, _bus, _fleet, scheduler, _clock = env
        result = await scheduler.poll_one("missing")
        assert result.success is False

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_polling(self, env):
        registry, bus, _fleet, scheduler, _clock = env
        bus.subscribe(MagicMock(side_effect=[None, RuntimeError("ui crashed")]))
        conn = registry.add(conn_fields(enabled=False))

        result = await scheduler.poll_one(conn.id)
        assert result.success is True
        assert scheduler.get_record(conn.id).status == "online"


# ---------------------------------------------------------------------------
# Overlap guard
# ---------------------------------------------------------------------------

class TestSerialization:
    @pytest.mark.asyncio
    async def test_tick_skipped_while_cycle_in_flight(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        gate = asyncio.Event()
        fleet.outcomes["10.0.1.50"] = gate
        conn = registry.add(conn_fields())
        await settle()

        result = await scheduler._poll(conn.id, skip_if_busy=True)
        assert result.success is False
        assert scheduler.get_status_detail(conn.id)["skipped_ticks"] == 1
        assert scheduler.get_status_detail(conn.id)["in_flight"] is True

        gate.set()
        await settle()
        assert fleet.count(conn.id) == 1

    @pytest.mark.asyncio
    async def test_manual_poll_waits_for_in_flight_cycle(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        gate = asyncio.Event()
        fleet.outcomes["10.0.1.50"] = gate
        conn = registry.add(conn_fields())
        await settle()

        manual = asyncio.ensure_future(scheduler.poll_one(conn.id))
        await settle()
        assert fleet.count(conn.id) == 1
        assert not manual.done()

        gate.set()
        result = await manual
        assert result.success is True
        assert fleet.count(conn.id) == 2

    @pytest.mark.asyncio
    async def test_unknown_id_leaves_no_lock(self, env):
        _registry, _bus, fleet, scheduler, _clock = env
        result = await scheduler.poll_one("conn-missing")
        assert result.success is False
        assert result.error == "unknown connection"
        assert "conn-missing" not in scheduler._locks
        assert "conn-missing" not in scheduler._stats
        assert fleet.calls == []

    @pytest.mark.asyncio
    async def test_lock_dropped_when_removed_mid_cycle(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        gate = asyncio.Event()
        fleet.outcomes["10.0.1.50"] = gate
        conn = registry.add(conn_fields())
        await settle()
        assert scheduler._locks[conn.id].locked()

        registry.remove(conn.id)
        assert conn.id in scheduler._locks

        gate.set()
        await settle()
        assert conn.id not in scheduler._locks
        assert scheduler.get_record(conn.id) is None


# ---------------------------------------------------------------------------
# poll_all
# ---------------------------------------------------------------------------

class TestPollAll:
    @pytest.mark.asyncio
    async def test_n_connections_m_failures(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        conns = [registry.add(conn_fields(f"10.0.2.{n}", enabled=False)) for n in range(1, 6)]
        fleet.outcomes["10.0.2.2"] = ProtocolError("Redfish API error: 500", 500)
        fleet.outcomes["10.0.2.4"] = TransportError("unreachable")

        results = await scheduler.poll_all()

        assert [r.connection_id for r in results] == [c.id for c in conns]
        failed = {r.connection_id for r in results if not r.success}
        assert failed == {conns[1].id, conns[3].id}
        assert len(scheduler.get_servers()) == 5
        statuses = {r.id: r.status for r in scheduler.get_servers()}
        assert statuses[conns[0].id] == "online"
        assert statuses[conns[1].id] == "offline"

    @pytest.mark.asyncio
    async def test_includes_disabled_connections(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        conn = registry.add(conn_fields(enabled=False))
        results = await scheduler.poll_all()
        assert [r.connection_id for r in results] == [conn.id]
        assert fleet.count(conn.id) == 1

    @pytest.mark.asyncio
    async def test_empty_registry(self, env):
        _registry, _bus, _fleet, scheduler, _clock = env
        assert await scheduler.poll_all() == []

    @pytest.mark.asyncio
    async def test_slow_connection_does_not_block_others_from_updating(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        gate = asyncio.Event()
        slow = registry.add(conn_fields("10.0.3.1", enabled=False))
        fast = registry.add(conn_fields("10.0.3.2", enabled=False))
        fleet.outcomes["10.0.3.1"] = gate

        pending = asyncio.ensure_future(scheduler.poll_all())
        await settle()
        assert scheduler.get_record(fast.id).status == "online"
        assert scheduler.get_record(slow.id) is None

        gate.set()
        results = await pending
        assert all(r.success for r in results)


# ---------------------------------------------------------------------------
# test_connection
# ---------------------------------------------------------------------------

class TestProbe:
    @pytest.mark.asyncio
    async def test_success(self, env):
        registry, bus, fleet, scheduler, _clock = env
        result = await scheduler.test_connection(conn_fields())

        assert result["success"] is True
        assert result["message"] == "Connected successfully! Redfish version: 1.11.0"
        assert result["data"]["status"] == "online"
        assert result["data"]["id"].startswith("test-")
        assert len(registry) == 0
        assert bus.snapshot == []
        assert scheduler.active_ids() == set()

    @pytest.mark.asyncio
    async def test_failure_is_structured(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        fleet.outcomes["10.0.1.50"] = ProtocolError("Redfish API error: 401 Unauthorized", 401)
        result = await scheduler.test_connection(conn_fields())

        assert result == {"success": False, "message": "Redfish API error: 401 Unauthorized"}
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_invalid_candidate(self, env):
        _registry, _bus, fleet, scheduler, _clock = env
        result = await scheduler.test_connection(conn_fields(host=""))
        assert result["success"] is False
        assert "Invalid connection" in result["message"]
        assert fleet.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"username": "dom:ain"},
        {"secret": "密码"},
        {"username": None},
        {"host": 12345},
    ])
    async def test_unusable_credentials_are_structured(self, env, overrides):
        _registry, _bus, fleet, scheduler, _clock = env
        result = await scheduler.test_connection(conn_fields(**overrides))
        assert result["success"] is False
        assert result["message"].startswith("Invalid connection")
        assert fleet.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        ValueError('A ":" is not allowed in login'),
        UnicodeEncodeError("latin-1", "x", 0, 1, "ordinal not in range"),
        TypeError("argument of type 'int' is not iterable"),
    ])
    async def test_client_construction_error_is_structured(self, error):
        def factory(conn):
            raise error

        scheduler = PollingScheduler(ConnectionRegistry(MemoryStore()),
                                     NotificationBus(), factory)
        result = await scheduler.test_connection(conn_fields())
        assert result["success"] is False
        assert result["message"].startswith("Invalid connection")

    @pytest.mark.asyncio
    async def test_ignores_caller_id(self, env):
        _registry, _bus, _fleet, scheduler, _clock = env
        result = await scheduler.test_connection(conn_fields(id="conn-real"))
        assert result["data"]["id"] != "conn-real"


# ---------------------------------------------------------------------------
# Status detail
# ---------------------------------------------------------------------------

class TestStatusDetail:
    @pytest.mark.asyncio
    async def test_counts(self, env):
        registry, _bus, fleet, scheduler, _clock = env
        conn = registry.add(conn_fields(enabled=False))
        await scheduler.poll_one(conn.id)
        fleet.outcomes["10.0.1.50"] = TransportError("down")
        await scheduler.poll_one(conn.id)
        await scheduler.poll_one(conn.id)

        detail = scheduler.get_status_detail(conn.id)
        assert detail["poll_count"] == 1
        assert detail["poll_errors"] == 2
        assert detail["consecutive_failures"] == 2
        assert detail["status"] == "offline"
        assert detail["last_error"] == "down"
        assert detail["active"] is False

    @pytest.mark.asyncio
    async def test_all_status(self, env):
        registry, _bus, _fleet, scheduler, _clock = env
        registry.add(conn_fields("10.0.4.1", enabled=False))
        registry.add(conn_fields("10.0.4.2", enabled=False))
        assert len(scheduler.get_all_status()) == 2
