# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Entry point -- Redfish BMC poller with REST, SSE and MQTT outputs.

Architecture
------------
BridgeManager      -- owns the shared services (HTTP session, storage,
                      MQTT, web) and wires the core together.
ConnectionRegistry -- the configured BMC endpoints (persisted).
PollingScheduler   -- one timer per enabled connection; publishes every
                      result on the NotificationBus.
NotificationBus    -- fans snapshots and errors out to MQTT and SSE.
"""

__version__ = "1.0.0"

import asyncio
import json
import logging
import signal
import sys
import time

import aiohttp

from .config import Config, ConfigError
from .connection import Connection
from .mock_bmc import MOCK_PASSWORD, MOCK_USERNAME, MockBMC
from .mqtt_handler import MQTTHandler
from .notifications import NotificationBus
from .redfish_client import ProxyConfig, RedfishClient, RedfishError
from .redfish_model import KIND_IDRAC, KIND_ILO, KIND_REDFISH, POWER_ACTION_MAP
from .registry import ConnectionRegistry
from .scheduler import PollingScheduler
from .storage import FileStore, KeyValueStore, MemoryStore
from .web import RingBufferHandler, WebServer

logger = logging.getLogger("redfish_bridge")

PROXY_STORAGE_KEY = "redfish-proxy"

# Simulated fleet for BRIDGE_MOCK_MODE: (vendor/kind, hostname, rack)
MOCK_FLEET = [
    (KIND_IDRAC, "mock-r750-01", "R01"),
    (KIND_ILO, "mock-dl380-01", "R01"),
    (KIND_REDFISH, "mock-smc-01", "R02"),
]


class BridgeManager:
    """Top-level orchestrator.

    Storage, HTTP session and MQTT client are injectable so tests can run
    the whole bridge in-process.
    """

    def __init__(self, config: Config | None = None,
                 storage: KeyValueStore | None = None,
                 session: aiohttp.ClientSession | None = None,
                 mqtt: MQTTHandler | None = None):
        self.config = config or Config()
        self._running = False
        self._start_time = time.time()
        self._stopped = asyncio.Event()

        if storage is None:
            # Mock fleets get fresh ports every run, never persist them
            storage = MemoryStore() if self.config.mock_mode else FileStore(self.config.data_dir)
        self.storage = storage

        self._session = session
        self._owns_session = session is None

        self._proxy = self._load_proxy_config()

        # Core
        self.bus = NotificationBus()
        self.registry = ConnectionRegistry(self.storage)
        self.scheduler = PollingScheduler(self.registry, self.bus, self._make_client)

        # Outer surfaces
        if mqtt is None and self.config.mqtt_enabled:
            mqtt = MQTTHandler(self.config)
        self.mqtt = mqtt
        self._unsubscribes = []

        self.web = WebServer(
            self.registry, self.scheduler, self.bus,
            port=self.config.web_port, mqtt=self.mqtt,
        )
        self.web.set_power_callback(self.power_action)
        self.web.set_proxy_callbacks(self.get_proxy_config, self.configure_proxy)
        self.web.set_bridge_version(__version__)
        self.web.set_start_time(self._start_time)
        self.web.set_settings(self.config.settings_dict)

        self._mock_bmcs: list[MockBMC] = []

        logger.info(
            "BridgeManager: %d connection(s) configured, proxy %s",
            len(self.registry), self._proxy.url if self._proxy.enabled else "off",
        )

    # ------------------------------------------------------------------
    # HTTP client
    # ------------------------------------------------------------------

    def _create_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=self.config.http_timeout)
        # BMCs usually present self-signed certificates
        connector = aiohttp.TCPConnector(ssl=bool(self.config.verify_tls))
        return aiohttp.ClientSession(timeout=timeout, connector=connector)

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = self._create_session()
        return self._session

    def _make_client(self, conn: Connection) -> RedfishClient:
        return RedfishClient(conn, self.session, proxy=self.get_proxy_config)

    # ------------------------------------------------------------------
    # Proxy configuration
    # ------------------------------------------------------------------

    def _load_proxy_config(self) -> ProxyConfig:
        default = ProxyConfig(url=self.config.proxy_url, enabled=self.config.proxy_enabled)
        try:
            blob = self.storage.get(PROXY_STORAGE_KEY)
        except Exception:
            logger.exception("Failed to read proxy configuration, using defaults")
            return default
        if not blob:
            return default
        try:
            proxy = ProxyConfig.from_dict(json.loads(blob))
            proxy.validate()
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Ignoring invalid stored proxy configuration: %s", e)
            return default
        return proxy

    def get_proxy_config(self) -> ProxyConfig:
        return self._proxy

    def configure_proxy(self, url: str, enabled: bool) -> ProxyConfig:
        """Replace the proxy setting; applies from the next request on."""
        proxy = ProxyConfig(url=url, enabled=enabled)
        proxy.validate()
        self._proxy = proxy
        try:
            self.storage.set(PROXY_STORAGE_KEY, json.dumps(proxy.to_dict()).encode("utf-8"))
        except Exception:
            logger.exception("Failed to persist proxy configuration")
        logger.info("Proxy %s (%s)", "enabled" if enabled else "disabled", url)
        return proxy

    # ------------------------------------------------------------------
    # Power control
    # ------------------------------------------------------------------

    async def power_action(self, conn_id: str, action: str):
        """Run a power action and re-poll the connection once.

        Raises KeyError for an unknown connection, ValueError for an unknown
        action and RedfishError when the BMC refuses.
        """
        conn = self.registry.get(conn_id)
        if conn is None:
            raise KeyError(conn_id)
        reset_type = POWER_ACTION_MAP.get(action)
        if reset_type is None:
            raise ValueError(f"unknown power action: {action}")

        await self._make_client(conn).reset(reset_type)
        logger.info("[%s] Power %s (%s) accepted", conn_id, action, reset_type)
        await self.scheduler.poll_one(conn_id)

    async def _handle_mqtt_power(self, conn_id: str, command: str):
        """Power command from MQTT; answers on the response topic."""
        error = None
        try:
            await self.power_action(conn_id, command)
        except KeyError:
            error = f"unknown connection: {conn_id}"
        except ValueError as e:
            error = str(e)
        except RedfishError as e:
            error = str(e)
        except Exception as e:
            logger.exception("[%s] Power command %s failed", conn_id, command)
            error = str(e) or type(e).__name__

        if self.mqtt:
            self.mqtt.publish_command_response(conn_id, command, error is None, error)
        logger.info("[%s] MQTT power %s -> %s", conn_id, command,
                    "OK" if error is None else f"FAILED ({error})")

    # ------------------------------------------------------------------
    # Mock mode
    # ------------------------------------------------------------------

    async def _start_mock_fleet(self):
        for kind, hostname, rack in MOCK_FLEET:
            bmc = MockBMC(vendor=kind, hostname=hostname, rack=rack)
            port = await bmc.start()
            self._mock_bmcs.append(bmc)
            self.registry.add({
                "name": hostname, "host": "127.0.0.1", "port": port,
                "protocol": "http", "username": MOCK_USERNAME, "secret": MOCK_PASSWORD,
                "kind": kind, "enabled": True, "pollIntervalSeconds": 10,
            })
        logger.info("Mock mode: %d simulated BMC(s) registered", len(self._mock_bmcs))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self):
        """Start MQTT, web server and scheduler; return after stop()."""
        self._running = True

        if self.mqtt:
            self.mqtt.set_power_callback(self._handle_mqtt_power)
            self.mqtt.connect()
            self._unsubscribes.append(self.bus.subscribe(self.mqtt.handle_snapshot))
            self._unsubscribes.append(self.bus.subscribe_to_errors(self.mqtt.handle_error))

        await self.web.start()

        self.scheduler.start()
        if self.config.mock_mode:
            await self._start_mock_fleet()

        await self._stopped.wait()

    async def shutdown(self):
        """Stop polling, close the web server, HTTP session and MQTT."""
        if not self._running:
            return
        self._running = False

        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()

        await self.scheduler.shutdown()
        await self.web.stop()
        for bmc in self._mock_bmcs:
            await bmc.stop()
        self._mock_bmcs.clear()

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        if self.mqtt:
            self.mqtt.disconnect()
        self._stopped.set()
        logger.info("Bridge stopped.")

    def stop(self):
        """Request shutdown from a signal handler."""
        asyncio.get_running_loop().create_task(self.shutdown())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    # Set up ring buffer for /api/system/logs
    log_buffer = RingBufferHandler(1000)
    log_buffer.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    logging.getLogger().addHandler(log_buffer)

    async def _run():
        manager = BridgeManager(config)
        manager.web.set_log_buffer(log_buffer)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, manager.stop)
        try:
            await manager.run()
        finally:
            await manager.shutdown()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    logger.info("Exiting.")


if __name__ == "__main__":
    main()
