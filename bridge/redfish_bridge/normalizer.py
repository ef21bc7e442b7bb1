"""Map raw Redfish documents onto the canonical server record.

Everything here is pure: identical documents always produce identical
records.  Missing or odd fields degrade to defaults ("Unknown", 0) rather
than failing the whole snapshot.
"""

import dataclasses

from .connection import Connection
from .redfish_model import (
    MANAGEMENT_TYPE_MAP,
    STATUS_MAINTENANCE,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    STATUS_WARNING,
    UNKNOWN,
    CanonicalRecord,
    ComputeSpecs,
    HardwareInfo,
    Location,
    ServerMetrics,
)


def _obj(value) -> dict:
    return value if isinstance(value, dict) else {}


def _members(value) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [m for m in value if isinstance(m, dict)]


def _number(value, default=0):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def _first_text(*values) -> str:
    """First non-empty string, else "Unknown"."""
    for v in values:
        if isinstance(v, str) and v:
            return v
    return UNKNOWN


def derive_status(system: dict) -> str:
    """Canonical status from the system's PowerState and Status.Health."""
    power_state = system.get("PowerState")
    health = _obj(system.get("Status")).get("Health")
    if power_state == "Off":
        return STATUS_OFFLINE
    if health == "Critical":
        return STATUS_OFFLINE
    if health == "Warning":
        return STATUS_WARNING
    if power_state == "On":
        return STATUS_ONLINE
    return STATUS_MAINTENANCE


def cpu_temperature(thermal: dict) -> float:
    """Reading of the first sensor whose context or name mentions the CPU."""
    for sensor in _members(thermal.get("Temperatures")):
        context = sensor.get("PhysicalContext")
        name = sensor.get("Name")
        if (isinstance(context, str) and "cpu" in context.lower()) or \
                (isinstance(name, str) and "cpu" in name.lower()):
            return _number(sensor.get("ReadingCelsius"))
    return 0


def average_fan_speed(thermal: dict) -> int:
    fans = _members(thermal.get("Fans"))
    if not fans:
        return 0
    total = sum(_number(f.get("Reading")) for f in fans)
    # halves round up; round() would round them to even
    return int(total / len(fans) + 0.5)


def power_consumption(power: dict) -> float:
    controls = _members(power.get("PowerControl"))
    if not controls:
        return 0
    return _number(controls[0].get("PowerConsumedWatts"))


def normalize(system: dict, chassis: dict, thermal: dict, power: dict,
              connection: Connection) -> CanonicalRecord:
    """Build a fresh record from the four documents of one poll.

    The result carries tags seeded from the connection kind and no
    ``last_seen``; :func:`merge_record` completes it.
    """
    system = _obj(system)
    chassis = _obj(chassis)
    thermal = _obj(thermal)
    power = _obj(power)

    processors = _obj(system.get("ProcessorSummary"))
    memory = _obj(system.get("MemorySummary"))
    placement = _obj(_obj(chassis.get("Location")).get("Placement"))

    return CanonicalRecord(
        id=connection.id,
        hostname=_first_text(system.get("HostName"), connection.name, connection.host),
        host=connection.host,
        management_type=MANAGEMENT_TYPE_MAP.get(connection.kind, "IPMI"),
        status=derive_status(system),
        location=Location(rack=_first_text(placement.get("Rack"))),
        hardware=HardwareInfo(
            manufacturer=_first_text(system.get("Manufacturer"), chassis.get("Manufacturer")),
            model=_first_text(system.get("Model"), chassis.get("Model")),
            serial_number=_first_text(system.get("SerialNumber"), chassis.get("SerialNumber")),
            bios_version=_first_text(system.get("BiosVersion")),
        ),
        specs=ComputeSpecs(
            cpu=_first_text(processors.get("Model")),
            cpu_cores=int(_number(processors.get("Count"))),
            memory_gib=_number(memory.get("TotalSystemMemoryGiB")),
        ),
        metrics=ServerMetrics(
            temperature=cpu_temperature(thermal),
            fan_speed=average_fan_speed(thermal),
            power_consumption=power_consumption(power),
        ),
        tags=[connection.kind],
    )


def merge_record(previous: CanonicalRecord | None, fresh: CanonicalRecord,
                 seen_at: float) -> CanonicalRecord:
    """Fold a successful poll onto the previous record.

    Status, metrics and hardware facts come from *fresh*; tags already on
    *previous* survive untouched; ``last_seen`` advances to *seen_at*.
    """
    tags = list(previous.tags) if previous is not None and previous.tags else list(fresh.tags)
    return dataclasses.replace(fresh, tags=tags, last_seen=seen_at)


def mark_offline(previous: CanonicalRecord | None,
                 connection: Connection) -> CanonicalRecord:
    """Record state after a failed poll.

    Known hardware facts, tags and ``last_seen`` are kept; only the status is
    forced offline.  With no previous record a placeholder is built from the
    connection.
    """
    if previous is None:
        return CanonicalRecord(
            id=connection.id,
            hostname=_first_text(connection.name, connection.host),
            host=connection.host,
            management_type=MANAGEMENT_TYPE_MAP.get(connection.kind, "IPMI"),
            status=STATUS_OFFLINE,
            tags=[connection.kind],
        )
    return dataclasses.replace(previous, status=STATUS_OFFLINE)
