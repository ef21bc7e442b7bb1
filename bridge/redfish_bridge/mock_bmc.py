# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Simulated Redfish BMC for testing without real hardware.

Serves the subset of the Redfish tree the bridge reads (service root,
Systems, Chassis, Thermal, Power, Processors, EthernetInterfaces, Drives)
plus ComputerSystem.Reset, behind HTTP Basic auth.  Readings drift slowly
so a dashboard fed from it looks alive.

Faults can be injected for tests: :meth:`MockBMC.fail_with` answers every
request with an HTTP error, :attr:`MockBMC.latency` delays every response.
"""

import asyncio
import logging
import math
import random
import time

import aiohttp
from aiohttp import web

from .redfish_model import (
    API_ROOT,
    PATH_CHASSIS,
    PATH_SYSTEMS,
    RESET_FORCE_OFF,
    RESET_FORCE_RESTART,
    RESET_GRACEFUL_SHUTDOWN,
    RESET_ON,
)

logger = logging.getLogger(__name__)

MOCK_USERNAME = "root"
MOCK_PASSWORD = "calvin"

# (manufacturer, model, cpu model) per simulated vendor
VENDOR_PROFILES = {
    "idrac": ("Dell Inc.", "PowerEdge R750", "Intel(R) Xeon(R) Gold 6338 CPU @ 2.00GHz"),
    "ilo": ("HPE", "ProLiant DL380 Gen10 Plus", "Intel(R) Xeon(R) Silver 4314 CPU @ 2.40GHz"),
    "redfish": ("Supermicro", "SYS-1029U-TRT", "AMD EPYC 7543 32-Core Processor"),
}


class MockBMC:
    """Simulates one server's BMC with realistic-looking Redfish documents."""

    def __init__(self, vendor: str = "idrac", hostname: str = "mock-server-01",
                 username: str = MOCK_USERNAME, password: str = MOCK_PASSWORD,
                 rack: str = "R01", cpu_count: int = 2, memory_gib: int = 256):
        manufacturer, model, cpu_model = VENDOR_PROFILES.get(vendor, VENDOR_PROFILES["redfish"])
        self.manufacturer = manufacturer
        self.model = model
        self.cpu_model = cpu_model
        self.hostname = hostname
        self.rack = rack
        self.cpu_count = cpu_count
        self.memory_gib = memory_gib
        self.serial = f"MOCK{random.randint(100000, 999999):06d}"

        self._username = username
        self._password = password
        self._start_time = time.time()

        self.power_state = "On"
        self.health = "OK"
        self.latency: float = 0.0
        self._fail_status: int | None = None

        self.request_count = 0
        self.in_flight = 0
        self.peak_in_flight = 0
        self.reset_history: list[str] = []

        self._runner: web.AppRunner | None = None

    # -- Fault injection ---------------------------------------------------

    def fail_with(self, status: int | None):
        """Answer every request with *status* (None restores normal service)."""
        self._fail_status = status
        logger.info("Mock BMC: %s", f"failing with HTTP {status}" if status else "failures cleared")

    def set_health(self, health: str):
        self.health = health
        logger.info("Mock BMC: health -> %s", health)

    # -- Documents ----------------------------------------------------------

    def _elapsed(self) -> float:
        return time.time() - self._start_time

    def system_doc(self) -> dict:
        return {
            "@odata.id": f"{PATH_SYSTEMS}/1",
            "Id": "1",
            "Name": "System",
            "HostName": self.hostname,
            "Manufacturer": self.manufacturer,
            "Model": self.model,
            "SerialNumber": self.serial,
            "BiosVersion": "2.19.1",
            "PowerState": self.power_state,
            "Status": {"State": "Enabled", "Health": self.health},
            "ProcessorSummary": {"Count": self.cpu_count, "Model": self.cpu_model},
            "MemorySummary": {"TotalSystemMemoryGiB": self.memory_gib},
        }

    def chassis_doc(self) -> dict:
        return {
            "@odata.id": f"{PATH_CHASSIS}/1",
            "Id": "1",
            "Name": "Chassis",
            "Manufacturer": self.manufacturer,
            "Model": self.model,
            "SerialNumber": self.serial,
            "Location": {"Placement": {"Rack": self.rack}},
        }

    def thermal_doc(self) -> dict:
        elapsed = self._elapsed()
        on = self.power_state == "On"
        cpu_base = 58.0 if on else 25.0
        fan_base = 7200 if on else 0
        return {
            "@odata.id": f"{PATH_CHASSIS}/1/Thermal",
            "Temperatures": [
                {"Name": "System Board Inlet Temp", "PhysicalContext": "Intake",
                 "ReadingCelsius": round(22.0 + 1.5 * math.sin(elapsed / 120.0), 1)},
                {"Name": "CPU1 Temp", "PhysicalContext": "CPU",
                 "ReadingCelsius": round(cpu_base + 4.0 * math.sin(elapsed / 60.0), 1)},
            ],
            "Fans": [
                {"Name": f"Fan{n}", "Reading": fan_base + random.randint(-120, 120) if on else 0,
                 "ReadingUnits": "RPM"}
                for n in range(1, 5)
            ],
        }

    def power_doc(self) -> dict:
        watts = 310 + 25 * math.sin(self._elapsed() / 90.0) if self.power_state == "On" else 8
        return {
            "@odata.id": f"{PATH_CHASSIS}/1/Power",
            "PowerControl": [{"Name": "System Power Control",
                              "PowerConsumedWatts": round(watts)}],
        }

    # -- Handlers -----------------------------------------------------------

    @web.middleware
    async def _middleware(self, request, handler):
        self.request_count += 1
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            return await self._serve(request, handler)
        finally:
            self.in_flight -= 1

    async def _serve(self, request, handler):
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._fail_status:
            return web.json_response({"error": "injected failure"}, status=self._fail_status)

        try:
            auth = aiohttp.BasicAuth.decode(request.headers.get("Authorization", ""))
        except ValueError:
            auth = None
        if auth is None or (auth.login, auth.password) != (self._username, self._password):
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    async def _handle_root(self, request):
        return web.json_response({
            "@odata.id": API_ROOT,
            "Id": "RootService",
            "Name": "Root Service",
            "RedfishVersion": "1.11.0",
            "Systems": {"@odata.id": PATH_SYSTEMS},
            "Chassis": {"@odata.id": PATH_CHASSIS},
        })

    async def _handle_systems(self, request):
        return web.json_response({
            "@odata.id": PATH_SYSTEMS,
            "Members": [{"@odata.id": f"{PATH_SYSTEMS}/1"}],
            "Members@odata.count": 1,
        })

    async def _handle_chassis_collection(self, request):
        return web.json_response({
            "@odata.id": PATH_CHASSIS,
            "Members": [{"@odata.id": f"{PATH_CHASSIS}/1"}],
            "Members@odata.count": 1,
        })

    def _require_one(self, request, key: str):
        if request.match_info[key] != "1":
            raise web.HTTPNotFound(text='{"error": "Not Found"}', content_type="application/json")

    async def _handle_system(self, request):
        self._require_one(request, "system_id")
        return web.json_response(self.system_doc())

    async def _handle_chassis(self, request):
        self._require_one(request, "chassis_id")
        return web.json_response(self.chassis_doc())

    async def _handle_thermal(self, request):
        self._require_one(request, "chassis_id")
        return web.json_response(self.thermal_doc())

    async def _handle_power(self, request):
        self._require_one(request, "chassis_id")
        return web.json_response(self.power_doc())

    async def _handle_processors(self, request):
        self._require_one(request, "system_id")
        return web.json_response({
            "Members": [
                {"@odata.id": f"{PATH_SYSTEMS}/1/Processors/CPU.Socket.{n}"}
                for n in range(1, self.cpu_count + 1)
            ],
            "Members@odata.count": self.cpu_count,
        })

    async def _handle_processor(self, request):
        self._require_one(request, "system_id")
        proc_id = request.match_info["processor_id"]
        valid = {f"CPU.Socket.{n}" for n in range(1, self.cpu_count + 1)}
        if proc_id not in valid:
            raise web.HTTPNotFound()
        return web.json_response({
            "Id": proc_id, "Model": self.cpu_model,
            "TotalCores": 32, "TotalThreads": 64,
            "Status": {"State": "Enabled", "Health": "OK"},
        })

    async def _handle_ethernet_interfaces(self, request):
        self._require_one(request, "system_id")
        return web.json_response({
            "Members": [{"@odata.id": f"{PATH_SYSTEMS}/1/EthernetInterfaces/NIC.1"}],
            "Members@odata.count": 1,
        })

    async def _handle_ethernet_interface(self, request):
        self._require_one(request, "system_id")
        if request.match_info["interface_id"] != "NIC.1":
            raise web.HTTPNotFound()
        return web.json_response({
            "Id": "NIC.1", "MACAddress": "00:11:22:33:44:55", "SpeedMbps": 25000,
            "IPv4Addresses": [{"Address": "10.0.1.150"}],
            "Status": {"State": "Enabled", "Health": "OK"},
        })

    async def _handle_drive(self, request):
        if request.match_info["drive_id"] != "Disk.0":
            raise web.HTTPNotFound()
        return web.json_response({
            "Id": "Disk.0", "Name": "Solid State Disk 0",
            "MediaType": "SSD", "CapacityBytes": 960197124096,
            "Status": {"State": "Enabled", "Health": "OK"},
        })

    async def _handle_reset(self, request):
        self._require_one(request, "system_id")
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid JSON body"}, status=400)
        reset_type = body.get("ResetType") if isinstance(body, dict) else None

        if reset_type == RESET_ON:
            self.power_state = "On"
        elif reset_type in (RESET_FORCE_OFF, RESET_GRACEFUL_SHUTDOWN):
            self.power_state = "Off"
        elif reset_type == RESET_FORCE_RESTART:
            self.power_state = "On"
        else:
            return web.json_response({"error": f"unsupported ResetType {reset_type!r}"}, status=400)

        self.reset_history.append(reset_type)
        logger.info("Mock BMC %s: %s -> PowerState %s", self.hostname, reset_type, self.power_state)
        return web.Response(status=204)

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._middleware])
        r = app.router
        r.add_get(API_ROOT, self._handle_root)
        r.add_get(PATH_SYSTEMS, self._handle_systems)
        r.add_get(PATH_SYSTEMS + "/{system_id}", self._handle_system)
        r.add_get(PATH_SYSTEMS + "/{system_id}/Processors", self._handle_processors)
        r.add_get(PATH_SYSTEMS + "/{system_id}/Processors/{processor_id}", self._handle_processor)
        r.add_get(PATH_SYSTEMS + "/{system_id}/EthernetInterfaces", self._handle_ethernet_interfaces)
        r.add_get(PATH_SYSTEMS + "/{system_id}/EthernetInterfaces/{interface_id}",
                  self._handle_ethernet_interface)
        r.add_get(PATH_SYSTEMS + "/1/Storage/{storage_id}/Drives/{drive_id}", self._handle_drive)
        r.add_post(PATH_SYSTEMS + "/{system_id}/Actions/ComputerSystem.Reset", self._handle_reset)
        r.add_get(PATH_CHASSIS, self._handle_chassis_collection)
        r.add_get(PATH_CHASSIS + "/{chassis_id}", self._handle_chassis)
        r.add_get(PATH_CHASSIS + "/{chassis_id}/Thermal", self._handle_thermal)
        r.add_get(PATH_CHASSIS + "/{chassis_id}/Power", self._handle_power)
        return app

    # -- Standalone server ------------------------------------------------

    async def start(self, host: str = "127.0.0.1", port: int = 0) -> int:
        """Serve the mock on *host*; returns the bound port."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        bound = self._runner.addresses[0][1]
        logger.info("Mock BMC %s (%s %s) listening on http://%s:%d",
                    self.hostname, self.manufacturer, self.model, host, bound)
        return bound

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
