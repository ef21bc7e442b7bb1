#!/usr/bin/env python3
# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Redfish probe: check credentials and print the normalized record.

Runs the same connection test the REST API uses (service root plus one full
snapshot) against a single BMC without saving anything.

Usage:
    python3 tools/redfish_probe.py 10.0.1.50 root calvin --kind idrac
    python3 tools/redfish_probe.py bmc01 admin secret --proxy http://localhost:8443
    python3 tools/redfish_probe.py --mock
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import aiohttp

# Add bridge source to path
BRIDGE_DIR = Path(__file__).resolve().parent.parent / "bridge"
sys.path.insert(0, str(BRIDGE_DIR))

from redfish_bridge.mock_bmc import MOCK_PASSWORD, MOCK_USERNAME, MockBMC
from redfish_bridge.notifications import NotificationBus
from redfish_bridge.redfish_client import ProxyConfig, RedfishClient
from redfish_bridge.redfish_model import KINDS
from redfish_bridge.registry import ConnectionRegistry
from redfish_bridge.scheduler import PollingScheduler
from redfish_bridge.storage import MemoryStore


def banner(text: str):
    width = 60
    print(f"\n{'=' * width}")
    print(f"  {text}")
    print(f"{'=' * width}")


async def probe(args) -> dict:
    proxy = ProxyConfig(url=args.proxy, enabled=True) if args.proxy else None
    timeout = aiohttp.ClientTimeout(total=args.timeout)
    connector = aiohttp.TCPConnector(ssl=args.verify_tls)

    mock = None
    candidate = {
        "name": args.host,
        "host": args.host,
        "port": args.port,
        "protocol": args.protocol,
        "username": args.username,
        "secret": args.password,
        "kind": args.kind,
    }
    if args.mock:
        mock = MockBMC(vendor=args.kind)
        port = await mock.start()
        candidate.update(host="127.0.0.1", port=port, protocol="http",
                         username=MOCK_USERNAME, secret=MOCK_PASSWORD, name="mock")

    try:
        async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
            scheduler = PollingScheduler(
                ConnectionRegistry(MemoryStore()), NotificationBus(),
                lambda conn: RedfishClient(conn, session, proxy=proxy),
            )
            return await scheduler.test_connection(candidate)
    finally:
        if mock:
            await mock.stop()


def main():
    parser = argparse.ArgumentParser(description="Probe a Redfish BMC")
    parser.add_argument("host", nargs="?", default="", help="BMC hostname or IP")
    parser.add_argument("username", nargs="?", default="")
    parser.add_argument("password", nargs="?", default="")
    parser.add_argument("--port", type=int, default=443)
    parser.add_argument("--protocol", choices=("http", "https"), default="https")
    parser.add_argument("--kind", choices=KINDS, default="redfish")
    parser.add_argument("--proxy", help="forwarding proxy base URL")
    parser.add_argument("--timeout", type=float, default=10.0)
    parser.add_argument("--verify-tls", action="store_true")
    parser.add_argument("--mock", action="store_true", help="probe a local mock BMC")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    if not args.mock and not args.host:
        parser.error("host is required unless --mock is given")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    banner(f"Redfish probe: {'mock BMC' if args.mock else args.host}")
    result = asyncio.run(probe(args))
    print(json.dumps(result, indent=2))
    sys.exit(0 if result.get("success") else 1)


if __name__ == "__main__":
    main()
