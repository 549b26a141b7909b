"""Alpaca UDP discovery.

Clients broadcast a datagram containing ``alpacadiscovery`` to port 32227; we
answer with a JSON document pointing them at the HTTP API. The reply never
changes while the server runs, so it is rendered once when the responder
starts.
"""

from __future__ import annotations

import asyncio
import json
import socket
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from .config.settings import Settings

SERVER_NAME = "Origin Alpaca Server"
MANUFACTURER = "Origin Alpaca"
MANUFACTURER_VERSION = "0.1.0"
SERVER_ID = "Origin-0001"
DISCOVERY_TOKEN = b"alpacadiscovery"

_WILDCARD_HOSTS = frozenset({"0.0.0.0", "::", "127.0.0.1", "::1", "localhost"})

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AlpacaDevice:
    name: str
    device_type: str
    unique_id: str
    number: int = 0

    def describe(self) -> dict[str, Any]:
        return {
            "DeviceName": self.name,
            "DeviceType": self.device_type,
            "DeviceNumber": self.number,
            "UniqueID": self.unique_id,
        }


DEVICES = (
    AlpacaDevice("Origin Telescope", "Telescope", "Origin-Telescope"),
    AlpacaDevice("Origin Camera", "Camera", "Origin-Camera"),
)
DEVICE_LIST = [device.describe() for device in DEVICES]


def build_discovery_payload(settings: Settings, advertised_host: str) -> dict[str, Any]:
    return {
        "AlpacaVersion": 1,
        "AlpacaPort": settings.http_port,
        "ServerName": SERVER_NAME,
        "Manufacturer": MANUFACTURER,
        "ManufacturerVersion": MANUFACTURER_VERSION,
        "ServerID": SERVER_ID,
        "ServerUrl": f"{settings.http_scheme}://{advertised_host}:{settings.http_port}",
        "DeviceCount": len(DEVICE_LIST),
        "Devices": DEVICE_LIST,
        "DeviceList": DEVICE_LIST,
    }


def advertised_host(settings: Settings) -> str:
    """Address clients should use to reach the HTTP API."""
    if settings.http_advertise_host:
        return settings.http_advertise_host
    if settings.http_host not in _WILDCARD_HOSTS:
        return settings.http_host
    return _local_address_towards(settings.origin_host, settings.origin_port) or settings.http_host


def _local_address_towards(host: str, port: int) -> Optional[str]:
    # connecting a UDP socket sends nothing; it only asks the kernel for a route
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect((host, port))
            address = sock.getsockname()[0]
    except OSError as exc:
        logger.debug("discovery.route_lookup_failed", target=host, error=str(exc))
        return None
    if not address or address.startswith("127."):
        return None
    return address


class DiscoveryResponder(asyncio.DatagramProtocol):
    def __init__(self, reply: bytes) -> None:
        self.reply = reply
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if DISCOVERY_TOKEN not in data.lower():
            return
        if self.transport is not None:
            self.transport.sendto(self.reply, addr)
            logger.debug("discovery.responded", address=addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning("discovery.error", error=str(exc))


class DiscoveryService:
    """Binds the discovery responder for the lifetime of an ``async with`` block."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._transport: Optional[asyncio.DatagramTransport] = None

    @property
    def address(self) -> Optional[tuple[str, int]]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[:2]

    async def __aenter__(self) -> "DiscoveryService":
        host = advertised_host(self.settings)
        reply = json.dumps(build_discovery_payload(self.settings, host)).encode()
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryResponder(reply),
            local_addr=(self.settings.discovery_interface, self.settings.discovery_port),
            allow_broadcast=True,
        )
        logger.info(
            "discovery.started",
            address=self.address,
            advertised_host=host,
            http_port=self.settings.http_port,
        )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
            logger.info("discovery.stopped")
