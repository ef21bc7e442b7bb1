# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""MQTT publisher: server snapshots out, power commands in.

Topic layout (``{id}`` is the connection id)::

    bmc/{id}/state                   retained, canonical record JSON
    bmc/{id}/status                  retained, online|offline|warning|maintenance
    bmc/{id}/error                   QoS 1, last poll failure
    bmc/{id}/power/command           on|off|reset|shutdown (subscribed)
    bmc/{id}/power/command/response  QoS 1, command outcome
    bmc/bridge/status                retained, online|offline (LWT)

The handler is a NotificationBus subscriber: :meth:`handle_snapshot` and
:meth:`handle_error` are passed to ``subscribe``/``subscribe_to_errors``.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import paho.mqtt.client as mqtt

from .config import Config
from .redfish_model import CanonicalRecord

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "bmc"
BRIDGE_STATUS_TOPIC = f"{TOPIC_PREFIX}/bridge/status"
POWER_COMMAND_TOPIC = f"{TOPIC_PREFIX}/+/power/command"
MAX_RETAINED_BACKLOG = 100

PowerCallback = Callable[[str, str], Awaitable[None]]


@dataclass
class LinkStats:
    connects: int = 0
    connected_at: float | None = None
    disconnected_at: float | None = None
    publishes: int = 0
    failed_publishes: int = 0


class MQTTHandler:
    def __init__(self, config: Config):
        self.config = config
        self._power_callback: PowerCallback | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        # Connection ids with retained topics on the broker
        self._published_ids: set[str] = set()

        self._connected = False
        self._stats = LinkStats()

        # Retained state that failed to go out: topic -> (payload, qos).
        # Only the newest value per topic matters, so later writes replace
        # earlier ones; new topics are dropped once the backlog is full.
        self._retained_backlog: dict[str, tuple[str, int]] = {}
        self._max_backlog = MAX_RETAINED_BACKLOG

        self.client = mqtt.Client(
            client_id="redfish-bridge",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(BRIDGE_STATUS_TOPIC, "offline", qos=1, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    def set_power_callback(self, callback: PowerCallback):
        """Set the coroutine run for ``bmc/{id}/power/command`` messages.

        Called as *callback(connection_id, command)*; it is responsible for
        answering via :meth:`publish_command_response`.
        """
        self._power_callback = callback

    # ------------------------------------------------------------------
    # Broker link
    # ------------------------------------------------------------------

    def connect(self):
        broker, port = self.config.mqtt_broker, self.config.mqtt_port
        self._loop = asyncio.get_running_loop()
        if self.config.mqtt_username:
            self.client.username_pw_set(self.config.mqtt_username, self.config.mqtt_password)

        logger.info("Connecting to MQTT broker %s:%d%s", broker, port,
                    f" as {self.config.mqtt_username}" if self.config.mqtt_username else "")
        try:
            self.client.connect(broker, port, keepalive=60)
            self.client.loop_start()
        except Exception:
            logger.exception("MQTT broker %s:%d unreachable, state will not be published", broker, port)

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        self._stats.connects += 1
        self._stats.connected_at = time.time()
        self._connected = True
        if self._stats.connects > 1:
            logger.info("MQTT link restored (rc=%s, reconnect #%d)",
                        reason_code, self._stats.connects - 1)
        else:
            logger.info("MQTT link up (rc=%s)", reason_code)

        client.publish(BRIDGE_STATUS_TOPIC, "online", qos=1, retain=True)
        client.subscribe(POWER_COMMAND_TOPIC, qos=1)
        self._flush_backlog(client)

    def _flush_backlog(self, client):
        backlog, self._retained_backlog = self._retained_backlog, {}
        for topic, (payload, qos) in backlog.items():
            try:
                client.publish(topic, payload, qos=qos, retain=True)
            except Exception:
                logger.debug("Retained replay to %s failed", topic, exc_info=True)
        if backlog:
            logger.info("Replayed %d retained topic(s) after reconnect", len(backlog))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._connected = False
        self._stats.disconnected_at = time.time()
        logger.warning("MQTT link down (rc=%s)", reason_code)

    def get_status(self) -> dict:
        """Broker link health for /api/health."""
        return {
            "connected": self._connected,
            "broker": f"{self.config.mqtt_broker}:{self.config.mqtt_port}",
            "reconnect_count": max(self._stats.connects - 1, 0),
            "last_connect": self._stats.connected_at,
            "last_disconnect": self._stats.disconnected_at,
            "total_publishes": self._stats.publishes,
            "publish_errors": self._stats.failed_publishes,
            "retained_backlog": len(self._retained_backlog),
            "published_servers": sorted(self._published_ids),
        }

    def _publish(self, topic: str, payload, retain: bool = False, qos: int = 0):
        """Publish one message; retained state that fails goes to the backlog."""
        self._stats.publishes += 1
        try:
            rc = self.client.publish(topic, payload, qos=qos, retain=retain).rc
        except Exception:
            logger.debug("Publish to %s raised", topic, exc_info=True)
            rc = None
        if rc == mqtt.MQTT_ERR_SUCCESS:
            return

        self._stats.failed_publishes += 1
        if self._stats.failed_publishes % 100 == 1:
            logger.warning("MQTT publish to %s failed (rc=%s, %d failure(s) so far)",
                           topic, rc, self._stats.failed_publishes)
        if retain and (topic in self._retained_backlog
                       or len(self._retained_backlog) < self._max_backlog):
            self._retained_backlog[topic] = (str(payload), qos)

    # ------------------------------------------------------------------
    # Incoming message routing
    # ------------------------------------------------------------------

    @staticmethod
    def _command_target(topic: str) -> str | None:
        """Connection id of a ``bmc/{id}/power/command`` topic, else None."""
        prefix, _, rest = topic.partition("/")
        conn_id, _, suffix = rest.partition("/")
        if prefix != TOPIC_PREFIX or not conn_id or suffix != "power/command":
            return None
        return conn_id

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
        """Dispatch power commands onto the event loop (runs on the paho thread)."""
        conn_id = self._command_target(msg.topic)
        if conn_id is None:
            return
        try:
            command = msg.payload.decode("utf-8").strip().lower()
        except UnicodeDecodeError:
            logger.warning("[%s] Ignoring power command with undecodable payload", conn_id)
            return
        logger.info("[%s] Power command received: %s", conn_id, command)

        if self._loop is None or self._power_callback is None:
            logger.warning("[%s] Power control not wired, ignoring %s", conn_id, command)
            return
        asyncio.run_coroutine_threadsafe(self._power_callback(conn_id, command), self._loop)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def handle_snapshot(self, records: list[CanonicalRecord]):
        """NotificationBus data handler."""
        current = set()
        for record in records:
            current.add(record.id)
            self.publish_record(record)
        for conn_id in self._published_ids - current:
            self.clear_server(conn_id)
        self._published_ids = current

    def handle_error(self, conn_id: str, message: str):
        """NotificationBus error handler."""
        self._publish(
            f"{TOPIC_PREFIX}/{conn_id}/error",
            json.dumps({"error": message, "ts": time.time()}),
            qos=1,
        )

    def publish_record(self, record: CanonicalRecord):
        prefix = f"{TOPIC_PREFIX}/{record.id}"
        self._publish(f"{prefix}/state", json.dumps(record.to_dict()), retain=True)
        self._publish(f"{prefix}/status", record.status, retain=True)

    def clear_server(self, conn_id: str):
        """Remove the retained topics of a connection that no longer exists."""
        prefix = f"{TOPIC_PREFIX}/{conn_id}"
        # An empty retained payload deletes the retained message
        self._publish(f"{prefix}/state", "", retain=True)
        self._publish(f"{prefix}/status", "", retain=True)
        logger.info("[%s] Cleared retained MQTT topics", conn_id)

    def publish_command_response(
        self, conn_id: str, command: str, success: bool, error: str | None = None,
    ):
        resp = {
            "success": success,
            "command": command,
            "error": error,
            "ts": time.time(),
        }
        self._publish(
            f"{TOPIC_PREFIX}/{conn_id}/power/command/response",
            json.dumps(resp),
            qos=1,
        )

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        """Publish bridge offline status and disconnect."""
        self._publish(BRIDGE_STATUS_TOPIC, "offline", qos=1, retain=True)
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Error during MQTT disconnect", exc_info=True)
