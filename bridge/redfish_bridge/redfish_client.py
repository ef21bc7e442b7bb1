# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Redfish HTTP client for a single BMC endpoint.

The client holds no state between calls beyond the connection it was built
for: every request resolves its URL and headers afresh, either straight to
the BMC or through a forwarding proxy that reads the real target from
``X-Target-*`` headers.  Retries and timeouts are the caller's business;
timeouts come from the injected ``aiohttp.ClientSession``.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

import aiohttp

from .connection import Connection
from .normalizer import normalize
from .redfish_model import (
    API_ROOT,
    DEFAULT_CHASSIS_ID,
    DEFAULT_SYSTEM_ID,
    PATH_CHASSIS,
    PATH_SYSTEMS,
    RESET_FORCE_OFF,
    RESET_FORCE_RESTART,
    RESET_GRACEFUL_SHUTDOWN,
    RESET_ON,
    CanonicalRecord,
    path_chassis,
    path_drive,
    path_ethernet_interface,
    path_ethernet_interfaces,
    path_power,
    path_processor,
    path_processors,
    path_reset_action,
    path_system,
    path_thermal,
)

logger = logging.getLogger(__name__)

DEFAULT_PROXY_URL = "http://localhost:8443"


class RedfishError(Exception):
    """Base class for failures talking to a BMC."""


class TransportError(RedfishError):
    """No HTTP response at all (DNS, refused connection, timeout)."""


class ProtocolError(RedfishError):
    """An HTTP response arrived but was not a usable 2xx."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


@dataclass
class ProxyConfig:
    """Forwarding proxy settings (disabled means direct mode)."""
    url: str = DEFAULT_PROXY_URL
    enabled: bool = False

    def to_dict(self) -> dict:
        return {"url": self.url, "enabled": self.enabled}

    @classmethod
    def from_dict(cls, d: dict) -> "ProxyConfig":
        return cls(
            url=d.get("url", DEFAULT_PROXY_URL),
            enabled=bool(d.get("enabled", False)),
        )

    def validate(self):
        if self.enabled and not self.url.startswith(("http://", "https://")):
            raise ValueError(f"proxy url must start with http:// or https://, got {self.url!r}")


ProxyProvider = Callable[[], ProxyConfig | None]


class RedfishClient:
    """Client for one BMC, built per poll from the current Connection."""

    def __init__(self, connection: Connection, session: aiohttp.ClientSession,
                 proxy: ProxyConfig | ProxyProvider | None = None):
        self._connection = connection
        self._session = session
        self._proxy = proxy
        self._auth_header = aiohttp.BasicAuth(
            connection.username, connection.secret,
        ).encode()

    @property
    def connection(self) -> Connection:
        return self._connection

    def _proxy_config(self) -> ProxyConfig | None:
        proxy = self._proxy() if callable(self._proxy) else self._proxy
        if proxy is not None and proxy.enabled:
            return proxy
        return None

    def _base_url(self) -> str:
        host = self._connection.host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"  # IPv6 literal
        return f"{self._connection.protocol}://{host}:{self._connection.port}"

    def resolve(self, path: str) -> tuple[str, dict[str, str]]:
        """Return the (url, headers) pair a request for *path* should use."""
        headers = {
            "Authorization": self._auth_header,
            "Accept": "application/json",
        }
        proxy = self._proxy_config()
        if proxy is not None:
            url = f"{proxy.url.rstrip('/')}{path}"
            headers["X-Target-Host"] = self._connection.host
            headers["X-Target-Port"] = str(self._connection.port)
            headers["X-Target-Protocol"] = self._connection.protocol
        else:
            url = f"{self._base_url()}{path}"
        return url, headers

    # -- Transport --------------------------------------------------------

    async def _request(self, method: str, path: str, body: dict | None = None,
                       error_prefix: str = "Redfish API error") -> Any:
        url, headers = self.resolve(path)
        try:
            async with self._session.request(method, url, headers=headers, json=body) as resp:
                if not 200 <= resp.status < 300:
                    raise ProtocolError(
                        f"{error_prefix}: {resp.status} {resp.reason or ''}".rstrip(),
                        resp.status,
                    )
                payload = await resp.read()
                status = resp.status
        except RedfishError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(
                f"Connection to {self._connection.host}:{self._connection.port} failed: "
                f"{str(e) or type(e).__name__}"
            ) from e

        if method != "GET":
            return None
        try:
            return json.loads(payload)
        except ValueError:
            raise ProtocolError(
                f"Redfish API error: {status} invalid JSON body from {path}", status,
            )

    async def _get(self, path: str) -> dict:
        return await self._request("GET", path)

    # -- Resources --------------------------------------------------------

    async def get_root(self) -> dict:
        return await self._get(API_ROOT)

    async def get_systems(self) -> dict:
        return await self._get(PATH_SYSTEMS)

    async def get_system(self, system_id: str = DEFAULT_SYSTEM_ID) -> dict:
        return await self._get(path_system(system_id))

    async def get_chassis(self) -> dict:
        """The Chassis collection."""
        return await self._get(PATH_CHASSIS)

    async def get_chassis_by_id(self, chassis_id: str = DEFAULT_CHASSIS_ID) -> dict:
        return await self._get(path_chassis(chassis_id))

    async def get_thermal(self, chassis_id: str = DEFAULT_CHASSIS_ID) -> dict:
        return await self._get(path_thermal(chassis_id))

    async def get_power(self, chassis_id: str = DEFAULT_CHASSIS_ID) -> dict:
        return await self._get(path_power(chassis_id))

    async def get_processors(self, system_id: str = DEFAULT_SYSTEM_ID) -> dict:
        return await self._get(path_processors(system_id))

    async def get_processor(self, system_id: str, processor_id: str) -> dict:
        return await self._get(path_processor(system_id, processor_id))

    async def get_ethernet_interfaces(self, system_id: str = DEFAULT_SYSTEM_ID) -> dict:
        return await self._get(path_ethernet_interfaces(system_id))

    async def get_ethernet_interface(self, system_id: str, interface_id: str) -> dict:
        return await self._get(path_ethernet_interface(system_id, interface_id))

    async def get_drive(self, storage_id: str, drive_id: str) -> dict:
        return await self._get(path_drive(storage_id, drive_id))

    # -- Power control ----------------------------------------------------

    async def _reset(self, system_id: str, reset_type: str):
        logger.info("[%s] ComputerSystem.Reset %s on system %s",
                    self._connection.id, reset_type, system_id)
        await self._request(
            "POST", path_reset_action(system_id), body={"ResetType": reset_type},
            error_prefix="Power action failed",
        )

    async def power_on(self, system_id: str = DEFAULT_SYSTEM_ID):
        await self._reset(system_id, RESET_ON)

    async def power_off(self, system_id: str = DEFAULT_SYSTEM_ID):
        await self._reset(system_id, RESET_FORCE_OFF)

    async def power_reset(self, system_id: str = DEFAULT_SYSTEM_ID):
        await self._reset(system_id, RESET_FORCE_RESTART)

    async def graceful_shutdown(self, system_id: str = DEFAULT_SYSTEM_ID):
        await self._reset(system_id, RESET_GRACEFUL_SHUTDOWN)

    async def reset(self, reset_type: str, system_id: str = DEFAULT_SYSTEM_ID):
        """Issue an arbitrary ResetType token."""
        await self._reset(system_id, reset_type)

    # -- Composite snapshot -----------------------------------------------

    async def fetch_canonical_snapshot(self) -> CanonicalRecord:
        """Fetch system, chassis, thermal and power concurrently and normalize.

        Waits for all four requests; if any failed, the first failure (in
        that order) is raised.
        """
        results = await asyncio.gather(
            self.get_system(),
            self.get_chassis_by_id(),
            self.get_thermal(),
            self.get_power(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        system, chassis, thermal, power = results
        return normalize(system, chassis, thermal, power, self._connection)
