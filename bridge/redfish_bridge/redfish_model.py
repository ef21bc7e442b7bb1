"""Redfish resource paths, reset tokens and the canonical server record."""

from dataclasses import dataclass, field

# Redfish service root
API_ROOT = "/redfish/v1"

PATH_SYSTEMS = f"{API_ROOT}/Systems"
PATH_CHASSIS = f"{API_ROOT}/Chassis"

DEFAULT_SYSTEM_ID = "1"
DEFAULT_CHASSIS_ID = "1"


def path_system(system_id: str) -> str:
    return f"{PATH_SYSTEMS}/{system_id}"


def path_chassis(chassis_id: str) -> str:
    return f"{PATH_CHASSIS}/{chassis_id}"


def path_thermal(chassis_id: str) -> str:
    return f"{PATH_CHASSIS}/{chassis_id}/Thermal"


def path_power(chassis_id: str) -> str:
    return f"{PATH_CHASSIS}/{chassis_id}/Power"


def path_processors(system_id: str) -> str:
    return f"{PATH_SYSTEMS}/{system_id}/Processors"


def path_processor(system_id: str, processor_id: str) -> str:
    return f"{PATH_SYSTEMS}/{system_id}/Processors/{processor_id}"


def path_ethernet_interfaces(system_id: str) -> str:
    return f"{PATH_SYSTEMS}/{system_id}/EthernetInterfaces"


def path_ethernet_interface(system_id: str, interface_id: str) -> str:
    return f"{PATH_SYSTEMS}/{system_id}/EthernetInterfaces/{interface_id}"


def path_drive(storage_id: str, drive_id: str) -> str:
    # Drives always live under system 1 on the BMCs we talk to
    return f"{PATH_SYSTEMS}/1/Storage/{storage_id}/Drives/{drive_id}"


def path_reset_action(system_id: str) -> str:
    return f"{PATH_SYSTEMS}/{system_id}/Actions/ComputerSystem.Reset"


# ComputerSystem.Reset ResetType tokens
RESET_ON = "On"
RESET_FORCE_OFF = "ForceOff"
RESET_FORCE_RESTART = "ForceRestart"
RESET_GRACEFUL_SHUTDOWN = "GracefulShutdown"

POWER_ACTION_MAP = {
    "on": RESET_ON,
    "off": RESET_FORCE_OFF,
    "reset": RESET_FORCE_RESTART,
    "shutdown": RESET_GRACEFUL_SHUTDOWN,
}

# Connection kinds (normalization hints only, never transport)
KIND_REDFISH = "redfish"
KIND_IDRAC = "idrac"
KIND_ILO = "ilo"
KIND_IPMI = "ipmi-via-redfish"
KINDS = (KIND_REDFISH, KIND_IDRAC, KIND_ILO, KIND_IPMI)

MANAGEMENT_TYPE_MAP = {
    KIND_IDRAC: "iDRAC",
    KIND_ILO: "iLO",
}

# Canonical status values
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_WARNING = "warning"
STATUS_MAINTENANCE = "maintenance"

UNKNOWN = "Unknown"


@dataclass
class Location:
    datacenter: str = UNKNOWN
    rack: str = UNKNOWN
    unit: int = 0


@dataclass
class HardwareInfo:
    manufacturer: str = UNKNOWN
    model: str = UNKNOWN
    serial_number: str = UNKNOWN
    bios_version: str = UNKNOWN  # firmware fact


@dataclass
class ComputeSpecs:
    cpu: str = UNKNOWN
    cpu_cores: int = 0
    memory_gib: float = 0


@dataclass
class ServerMetrics:
    cpu_usage: float = 0          # % (not exposed by Redfish)
    memory_usage: float = 0       # % (not exposed by Redfish)
    temperature: float = 0        # °C
    fan_speed: int = 0            # mean of fan readings
    power_consumption: float = 0  # watts


@dataclass
class StorageDevice:
    name: str
    type: str = UNKNOWN     # SSD, HDD, NVMe
    capacity_bytes: int = 0
    health: str = UNKNOWN


@dataclass
class NetworkInterface:
    name: str
    mac: str = ""
    ip: str = ""
    speed_mbps: int = 0
    status: str = "down"


@dataclass
class CanonicalRecord:
    """Normalized view of one managed server.

    Records are replaced, never mutated, once they are stored by the
    scheduler, so a published record is always fully built.
    """
    id: str
    hostname: str
    host: str
    management_type: str = "IPMI"
    status: str = STATUS_MAINTENANCE
    location: Location = field(default_factory=Location)
    hardware: HardwareInfo = field(default_factory=HardwareInfo)
    specs: ComputeSpecs = field(default_factory=ComputeSpecs)
    storage: list[StorageDevice] = field(default_factory=list)
    network: list[NetworkInterface] = field(default_factory=list)
    metrics: ServerMetrics = field(default_factory=ServerMetrics)
    last_seen: float | None = None  # epoch seconds of the last successful poll
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "hostname": self.hostname,
            "host": self.host,
            "managementType": self.management_type,
            "status": self.status,
            "location": {
                "datacenter": self.location.datacenter,
                "rack": self.location.rack,
                "unit": self.location.unit,
            },
            "hardware": {
                "manufacturer": self.hardware.manufacturer,
                "model": self.hardware.model,
                "serialNumber": self.hardware.serial_number,
                "biosVersion": self.hardware.bios_version,
            },
            "specs": {
                "cpu": self.specs.cpu,
                "cpuCores": self.specs.cpu_cores,
                "memoryGiB": self.specs.memory_gib,
            },
            "storage": [
                {"name": d.name, "type": d.type,
                 "capacityBytes": d.capacity_bytes, "health": d.health}
                for d in self.storage
            ],
            "network": [
                {"name": n.name, "mac": n.mac, "ip": n.ip,
                 "speedMbps": n.speed_mbps, "status": n.status}
                for n in self.network
            ],
            "metrics": {
                "cpuUsage": self.metrics.cpu_usage,
                "memoryUsage": self.metrics.memory_usage,
                "temperature": self.metrics.temperature,
                "fanSpeed": self.metrics.fan_speed,
                "powerConsumption": self.metrics.power_consumption,
            },
            "lastSeen": self.last_seen,
            "tags": list(self.tags),
        }
