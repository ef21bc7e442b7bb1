# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""REST API and live event stream for the BMC bridge."""

import asyncio
import collections
import json
import logging
import time
from typing import Any, Awaitable, Callable

from aiohttp import web

from .connection import clamp_poll_interval
from .notifications import NotificationBus
from .redfish_client import ProxyConfig, RedfishError
from .redfish_model import POWER_ACTION_MAP, STATUS_OFFLINE
from .registry import ConnectionRegistry
from .scheduler import PollingScheduler

logger = logging.getLogger(__name__)

PowerCallback = Callable[[str, str], Awaitable[None]]
ProxyGetCallback = Callable[[], ProxyConfig]
ProxySetCallback = Callable[[str, bool], ProxyConfig]

SSE_KEEPALIVE_SECONDS = 30


# ---------------------------------------------------------------------------
# RingBufferHandler: in-memory log capture for /api/system/logs
# ---------------------------------------------------------------------------

class RingBufferHandler(logging.Handler):
    """Keeps the newest log records in memory for /api/system/logs."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self._records: collections.deque = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            self._records.append({
                "ts": record.created,
                "level": record.levelname,
                "levelno": record.levelno,
                "logger": record.name,
                "message": self.format(record),
                "text": record.getMessage(),
            })
        except Exception:
            self.handleError(record)

    def get_records(self, level: str | None = None, limit: int = 200,
                    search: str | None = None,
                    connection_id: str | None = None) -> list[dict]:
        """Newest first.  *connection_id* matches the ``[id]`` line prefix."""
        min_level = logging.getLevelName(level.upper()) if level else logging.NOTSET
        if not isinstance(min_level, int):
            min_level = logging.NOTSET
        needle = search.lower() if search else None
        prefix = f"[{connection_id}]" if connection_id else None

        matched = []
        for rec in reversed(self._records):
            if rec["levelno"] < min_level:
                continue
            if prefix and not rec["text"].startswith(prefix):
                continue
            if needle and needle not in rec["message"].lower():
                continue
            matched.append({k: rec[k] for k in ("ts", "level", "logger", "message")})
            if len(matched) >= limit:
                break
        return matched


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response(status=204)
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


class WebServer:
    def __init__(self, registry: ConnectionRegistry, scheduler: PollingScheduler,
                 bus: NotificationBus, port: int = 8080, mqtt=None):
        self._registry = registry
        self._scheduler = scheduler
        self._bus = bus
        self._port = port
        self._mqtt = mqtt

        self._power_callback: PowerCallback | None = None
        self._proxy_get_callback: ProxyGetCallback | None = None
        self._proxy_set_callback: ProxySetCallback | None = None

        # Open /api/stream responses
        self._sse_clients: list[web.StreamResponse] = []

        self._log_buffer: RingBufferHandler | None = None
        self._bridge_version: str = "0.0.0"
        self._settings: dict = {}
        self._start_time: float = time.time()

        self._app = web.Application(middlewares=[cors_middleware])
        self._runner: web.AppRunner | None = None
        self._setup_routes()

    # --- Wiring ---

    def set_power_callback(self, callback: PowerCallback):
        self._power_callback = callback

    def set_proxy_callbacks(self, getter: ProxyGetCallback, setter: ProxySetCallback):
        self._proxy_get_callback = getter
        self._proxy_set_callback = setter

    def set_log_buffer(self, handler: RingBufferHandler):
        self._log_buffer = handler

    def set_bridge_version(self, version: str):
        self._bridge_version = version

    def set_start_time(self, start_time: float):
        self._start_time = start_time

    def set_settings(self, settings: dict):
        """Non-secret process settings reported by /api/health."""
        self._settings = settings

    def _setup_routes(self):
        r = self._app.router
        # Connections
        r.add_get("/api/connections", self._handle_list_connections)
        r.add_post("/api/connections", self._handle_add_connection)
        r.add_post("/api/connections/test", self._handle_test_connection)
        r.add_get("/api/connections/{id}", self._handle_get_connection)
        r.add_put("/api/connections/{id}", self._handle_update_connection)
        r.add_delete("/api/connections/{id}", self._handle_delete_connection)
        r.add_post("/api/connections/{id}/poll", self._handle_poll_connection)
        r.add_post("/api/connections/{id}/power", self._handle_power)

        # Servers and polling
        r.add_post("/api/poll", self._handle_poll_all)
        r.add_get("/api/servers", self._handle_servers)
        r.add_get("/api/errors", self._handle_errors)

        # Proxy
        r.add_get("/api/proxy", self._handle_get_proxy)
        r.add_put("/api/proxy", self._handle_set_proxy)

        # Status
        r.add_get("/api/health", self._handle_health)
        r.add_get("/api/stream", self._handle_sse)
        r.add_get("/api/system/logs", self._handle_system_logs)

    # --- Utility ---

    def _json(self, data, status=200):
        return web.Response(
            text=json.dumps(data),
            content_type="application/json",
            status=status,
        )

    async def _read_body(self, request) -> dict | None:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def _clamp_interval(body: dict) -> dict:
        if "pollIntervalSeconds" in body:
            body = {**body, "pollIntervalSeconds": clamp_poll_interval(body["pollIntervalSeconds"])}
        return body

    def _connection_view(self, conn) -> dict:
        d = conn.to_dict(include_secret=False)
        d["active"] = self._scheduler.is_active(conn.id)
        return d

    # --- Connections ---

    async def _handle_list_connections(self, request):
        """GET /api/connections"""
        conns = [self._connection_view(c) for c in self._registry.list()]
        return self._json({"connections": conns, "count": len(conns)})

    async def _handle_add_connection(self, request):
        """POST /api/connections: create a connection (polling starts if enabled)."""
        body = await self._read_body(request)
        if body is None:
            return self._json({"error": "invalid JSON body"}, 400)
        try:
            conn = self._registry.add(self._clamp_interval(body))
        except (KeyError, TypeError, ValueError) as e:
            return self._json({"error": str(e)}, 400)
        return self._json(self._connection_view(conn), 201)

    async def _handle_get_connection(self, request):
        conn_id = request.match_info["id"]
        conn = self._registry.get(conn_id)
        if conn is None:
            return self._json({"error": f"connection '{conn_id}' not found"}, 404)
        record = self._scheduler.get_record(conn_id)
        return self._json({
            "connection": self._connection_view(conn),
            "server": record.to_dict() if record else None,
            "poller": self._scheduler.get_status_detail(conn_id),
        })

    async def _handle_update_connection(self, request):
        """PUT /api/connections/{id}: partial update."""
        conn_id = request.match_info["id"]
        body = await self._read_body(request)
        if body is None:
            return self._json({"error": "invalid JSON body"}, 400)
        try:
            conn = self._registry.update(conn_id, self._clamp_interval(body))
        except (TypeError, ValueError) as e:
            return self._json({"error": str(e)}, 400)
        if conn is None:
            return self._json({"error": f"connection '{conn_id}' not found"}, 404)
        return self._json(self._connection_view(conn))

    async def _handle_delete_connection(self, request):
        conn_id = request.match_info["id"]
        if not self._registry.remove(conn_id):
            return self._json({"error": f"connection '{conn_id}' not found"}, 404)
        return self._json({"id": conn_id, "deleted": True})

    async def _handle_test_connection(self, request):
        """POST /api/connections/test: probe unsaved credentials."""
        body = await self._read_body(request)
        if body is None:
            return self._json({"error": "invalid JSON body"}, 400)
        result = await self._scheduler.test_connection(self._clamp_interval(body))
        return self._json(result)

    async def _handle_poll_connection(self, request):
        conn_id = request.match_info["id"]
        if conn_id not in self._registry:
            return self._json({"error": f"connection '{conn_id}' not found"}, 404)
        result = await self._scheduler.poll_one(conn_id)
        record = self._scheduler.get_record(conn_id)
        return self._json({
            **result.to_dict(),
            "server": record.to_dict() if record else None,
        })

    async def _handle_power(self, request):
        """POST /api/connections/{id}/power  {"action": "on|off|reset|shutdown"}"""
        conn_id = request.match_info["id"]
        if conn_id not in self._registry:
            return self._json({"error": f"connection '{conn_id}' not found"}, 404)
        body = await self._read_body(request)
        if body is None:
            return self._json({"error": "invalid JSON body"}, 400)
        action = str(body.get("action", "")).lower()
        if action not in POWER_ACTION_MAP:
            return self._json({"error": f"invalid action: {action}"}, 400)
        if not self._power_callback:
            return self._json({"error": "power control not available"}, 503)

        try:
            await self._power_callback(conn_id, action)
        except KeyError:
            return self._json({"error": f"connection '{conn_id}' not found"}, 404)
        except RedfishError as e:
            return self._json({"id": conn_id, "action": action, "ok": False,
                               "error": str(e)}, 502)
        return self._json({"id": conn_id, "action": action, "ok": True})

    # --- Servers ---

    async def _handle_poll_all(self, request):
        """POST /api/poll: poll every connection now and wait for all."""
        results = await self._scheduler.poll_all()
        return self._json({
            "results": [r.to_dict() for r in results],
            "count": len(results),
            "failed": sum(1 for r in results if not r.success),
        })

    async def _handle_servers(self, request):
        servers = [r.to_dict() for r in self._scheduler.get_servers()]
        return self._json({"servers": servers, "count": len(servers)})

    async def _handle_errors(self, request):
        """GET /api/errors: last poll error per connection."""
        errors = {c.id: c.last_error for c in self._registry.list() if c.last_error}
        return self._json({"errors": errors, "count": len(errors)})

    # --- Proxy ---

    async def _handle_get_proxy(self, request):
        if not self._proxy_get_callback:
            return self._json({"error": "proxy configuration not available"}, 503)
        return self._json(self._proxy_get_callback().to_dict())

    async def _handle_set_proxy(self, request):
        """PUT /api/proxy  {"url": ..., "enabled": bool}"""
        if not self._proxy_set_callback or not self._proxy_get_callback:
            return self._json({"error": "proxy configuration not available"}, 503)
        body = await self._read_body(request)
        if body is None:
            return self._json({"error": "invalid JSON body"}, 400)
        current = self._proxy_get_callback()
        url = body.get("url", current.url)
        enabled = body.get("enabled", current.enabled)
        if not isinstance(url, str) or not isinstance(enabled, bool):
            return self._json({"error": "url must be a string and enabled a boolean"}, 400)
        try:
            proxy = self._proxy_set_callback(url, enabled)
        except ValueError as e:
            return self._json({"error": str(e)}, 400)
        return self._json(proxy.to_dict())

    # --- Health ---

    async def _handle_health(self, request):
        """GET /api/health: 503 while an enabled connection is down or MQTT is disconnected."""
        issues = []
        pollers = self._scheduler.get_all_status()
        for p in pollers:
            if p["enabled"] and p["status"] == STATUS_OFFLINE and p["last_error"]:
                issues.append(f"[{p['id']}] {p['last_error']}")

        mqtt_status = self._mqtt.get_status() if self._mqtt else {"status": "disabled"}
        if self._mqtt and not mqtt_status.get("connected"):
            issues.append("MQTT disconnected")

        healthy = not issues
        result = {
            "status": "healthy" if healthy else "degraded",
            "issues": issues,
            "version": self._bridge_version,
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "connection_count": len(self._registry),
            "active_pollers": len(self._scheduler.active_ids()),
            "subsystems": {
                "mqtt": mqtt_status,
                "notifications": self._bus.get_status(),
                "sse_clients": len(self._sse_clients),
            },
            "pollers": pollers,
            "settings": self._settings,
        }
        return self._json(result, 200 if healthy else 503)

    # --- SSE (Server-Sent Events) ---

    async def _handle_sse(self, request):
        """GET /api/stream: pushes ``servers`` snapshots and ``error`` events.

        The first ``servers`` event is the current snapshot.
        """
        response = web.StreamResponse()
        response.content_type = "text/event-stream"
        response.headers["Cache-Control"] = "no-cache"
        response.headers["X-Accel-Buffering"] = "no"
        await response.prepare(request)

        queue: asyncio.Queue = asyncio.Queue(maxsize=100)

        def _enqueue(event_type: str, data):
            try:
                queue.put_nowait((event_type, data))
            except asyncio.QueueFull:
                logger.debug("SSE client too slow, dropping %s event", event_type)

        unsubscribe_data = self._bus.subscribe(
            lambda records: _enqueue("servers", [r.to_dict() for r in records])
        )
        unsubscribe_errors = self._bus.subscribe_to_errors(
            lambda conn_id, message: _enqueue("error", {"id": conn_id, "error": message})
        )
        self._sse_clients.append(response)

        try:
            await response.write(b"event: connected\ndata: {}\n\n")
            while True:
                try:
                    event_type, data = await asyncio.wait_for(
                        queue.get(), timeout=SSE_KEEPALIVE_SECONDS,
                    )
                except asyncio.TimeoutError:
                    await response.write(b":\n\n")  # keepalive
                    continue
                payload = f"event: {event_type}\ndata: {json.dumps(data)}\n\n"
                await response.write(payload.encode())
        except (ConnectionResetError, ConnectionError):
            pass
        finally:
            unsubscribe_data()
            unsubscribe_errors()
            if response in self._sse_clients:
                self._sse_clients.remove(response)
        return response

    # --- Logs ---

    async def _handle_system_logs(self, request):
        """GET /api/system/logs?level=&search=&connection=&limit="""
        if not self._log_buffer:
            return self._json({"error": "log buffer not available"}, 503)

        query = request.query
        try:
            limit = max(1, min(int(query.get("limit", "200")), 1000))
        except ValueError:
            return self._json({"error": "limit must be an integer"}, 400)

        records = self._log_buffer.get_records(
            level=query.get("level"),
            limit=limit,
            search=query.get("search"),
            connection_id=query.get("connection"),
        )
        return self._json({"logs": records, "count": len(records)})

    async def start(self):
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self._port)
        await site.start()
        logger.info("REST API started on http://0.0.0.0:%d", self._port)

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
