import asyncio
import json

import pytest

from origin_alpaca.config.settings import Settings
from origin_alpaca.discovery import (
    DEVICE_LIST,
    DiscoveryResponder,
    DiscoveryService,
    advertised_host,
    build_discovery_payload,
)


class _RecordingTransport:
    def __init__(self) -> None:
        self.sent = []

    def sendto(self, data, addr):
        self.sent.append((data, addr))


class _ReplyCollector(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.replies: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data, addr):
        self.replies.put_nowait(data)


def test_discovery_payload_lists_all_devices():
    settings = Settings()
    payload = build_discovery_payload(settings, "192.168.1.100")

    assert payload["DeviceCount"] == len(DEVICE_LIST)
    assert payload["Devices"] == DEVICE_LIST
    assert payload["DeviceList"] == DEVICE_LIST
    assert payload["AlpacaPort"] == settings.http_port

    device_types = {device["DeviceType"] for device in payload["Devices"]}
    assert device_types == {"Telescope", "Camera"}

    assert payload["ServerUrl"] == "http://192.168.1.100:11111"


def test_advertised_host_prefers_explicit_settings():
    assert advertised_host(Settings(http_advertise_host="10.1.2.3")) == "10.1.2.3"
    assert advertised_host(Settings(http_host="192.168.5.20")) == "192.168.5.20"


def test_responder_answers_only_discovery_requests():
    responder = DiscoveryResponder(b'{"AlpacaPort": 11111}')
    transport = _RecordingTransport()
    responder.connection_made(transport)

    responder.datagram_received(b"hello", ("10.1.2.9", 40000))
    assert transport.sent == []

    responder.datagram_received(b"AlpacaDiscovery1", ("10.1.2.9", 40000))
    assert transport.sent == [(b'{"AlpacaPort": 11111}', ("10.1.2.9", 40000))]


@pytest.mark.asyncio
async def test_discovery_service_replies_over_udp():
    settings = Settings(
        discovery_interface="127.0.0.1",
        discovery_port=0,
        http_advertise_host="10.1.2.3",
    )
    loop = asyncio.get_running_loop()

    async with DiscoveryService(settings) as service:
        transport, collector = await loop.create_datagram_endpoint(
            _ReplyCollector,
            remote_addr=service.address,
        )
        try:
            transport.sendto(b"alpacadiscovery1")
            reply = await asyncio.wait_for(collector.replies.get(), timeout=2.0)
        finally:
            transport.close()

    payload = json.loads(reply)
    assert payload["ServerUrl"] == "http://10.1.2.3:11111"
    assert payload["DeviceCount"] == 2
    assert service.address is None
