import asyncio
import json

import httpx
import pytest

from fleetgate.errors import CommandError, CommandTimeoutError
from fleetgate.services.sms import CommandChannel, HttpSmsGateway, location_commands, normalize_number


class FakeGateway:
    def __init__(self, failing=(), delay=0):
        self.sent = []
        self.failing = set(failing)
        self.delay = delay

    async def send(self, to, message):
        if self.delay:
            await asyncio.sleep(self.delay)
        if message in self.failing:
            raise CommandError(f"gateway refused {message!r}")
        self.sent.append((to, message))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def channel(pipeline, store, gateway):
    channel = CommandChannel(pipeline, store, gateway, reply_timeout=5, command_delay=0)
    yield channel
    channel.cancel_all()


def test_normalize_number():
    assert normalize_number("+91 98765 43210") == "9876543210"
    assert normalize_number("09876543210") == "9876543210"
    assert normalize_number(None) == ""


def test_location_commands_by_model():
    assert location_commands("GT06N")[0] == "where"
    assert location_commands("TK103-2B")[0] == "G123456#"
    assert location_commands(None) == ("where", "G123456#", "loc")


async def test_request_resolved_by_reply(channel, store, gateway):
    device = store.devices[1]
    request = asyncio.create_task(channel.request_location(device))
    await asyncio.sleep(0)
    assert gateway.sent == [("+91 98765 43210", "where")]
    assert "GPS001" in channel.pending

    result = await channel.handle_inbound("9876543210", "Lat:13.0827,Lon:80.2707,Speed:15km/h")

    fix = await asyncio.wait_for(request, 1)
    assert (fix.latitude, fix.longitude, fix.speed) == (13.0827, 80.2707, 15)
    assert fix.device_identifier == "GPS001"
    assert result.outcome == "applied"
    assert store.snapshots[1].source_protocol == "sms"
    assert channel.pending == {}


async def test_non_location_reply_keeps_request_pending(channel, store):
    device = store.devices[1]
    request = asyncio.create_task(channel.request_location(device))
    await asyncio.sleep(0)

    assert await channel.handle_inbound("+919876543210", "SET OK") is None
    assert not request.done()
    assert "GPS001" in channel.pending

    await channel.handle_inbound("+919876543210", "http://maps.google.com/maps?q=13.0827,80.2707")
    fix = await asyncio.wait_for(request, 1)
    assert fix.latitude == 13.0827


async def test_concurrent_requests_share_one_command(channel, store, gateway):
    device = store.devices[1]
    first = asyncio.create_task(channel.request_location(device))
    second = asyncio.create_task(channel.request_location(device))
    await asyncio.sleep(0)

    await channel.handle_inbound("9876543210", "13.0827,80.2707")
    a, b = await asyncio.wait_for(asyncio.gather(first, second), 1)
    assert a == b
    assert len(gateway.sent) == 1


async def test_concurrent_requests_during_slow_send(pipeline, store):
    gateway = FakeGateway(delay=0.01)
    channel = CommandChannel(pipeline, store, gateway, reply_timeout=5)
    device = store.devices[1]

    first = asyncio.create_task(channel.request_location(device))
    await asyncio.sleep(0)
    second = asyncio.create_task(channel.request_location(device))
    await asyncio.sleep(0.05)

    await channel.handle_inbound("9876543210", "13.0827,80.2707")
    a, b = await asyncio.wait_for(asyncio.gather(first, second), 1)
    assert a == b
    assert gateway.sent == [("+91 98765 43210", "where")]
    assert channel.pending == {}


async def test_all_commands_failing_fails_every_caller(pipeline, store):
    gateway = FakeGateway(failing={"where", "G123456#"}, delay=0.01)
    channel = CommandChannel(pipeline, store, gateway, reply_timeout=5)
    device = store.devices[1]

    results = await asyncio.gather(
        channel.request_location(device), channel.request_location(device), return_exceptions=True
    )
    assert all(isinstance(r, CommandError) and not isinstance(r, CommandTimeoutError) for r in results)
    assert channel.pending == {}


async def test_request_times_out(channel, store):
    with pytest.raises(CommandTimeoutError) as exc:
        await channel.request_location(store.devices[1], timeout=0.05)
    assert exc.value.device_id == "GPS001"
    assert channel.pending == {}
    assert store.history == []


async def test_falls_back_to_next_command(pipeline, store):
    gateway = FakeGateway(failing={"where"})
    channel = CommandChannel(pipeline, store, gateway, reply_timeout=0.05)
    with pytest.raises(CommandTimeoutError):
        await channel.request_location(store.devices[1])
    assert gateway.sent == [("+91 98765 43210", "G123456#")]


async def test_device_without_sim(channel, store, gateway):
    with pytest.raises(CommandError):
        await channel.request_location(store.devices[2])
    assert gateway.sent == []


async def test_unsolicited_reply_from_known_sim(channel, store):
    result = await channel.handle_inbound("+91 98765 43210", "Location: 13.0827N,80.2707E Speed:0km/h")
    assert result.outcome == "applied"
    assert store.snapshots[1].latitude == 13.0827


async def test_reply_from_unknown_number(channel, store):
    assert await channel.handle_inbound("+15550001111", "13.0827,80.2707") is None
    assert store.history == []


async def test_configure_direct_connection(channel, store, gateway):
    result = await channel.configure_direct_connection(store.devices[1], "gw.example.com", 5023)

    assert result.success
    assert [message for _, message in gateway.sent] == [
        "APN internet",
        "SERVER gw.example.com 5023",
        "TIMER 30",
        "GPRS ON",
        "GMT +05:30",
    ]
    assert result.sent == result.commands


async def test_configure_stops_on_first_failure(pipeline, store):
    gateway = FakeGateway(failing={"TIMER 30"})
    channel = CommandChannel(pipeline, store, gateway, command_delay=0)

    result = await channel.configure_direct_connection(store.devices[1], "gw.example.com")

    assert not result.success
    assert result.sent == ["APN internet", "SERVER gw.example.com 8888"]
    assert "TIMER 30" in result.error


async def test_enable_realtime_tracking(channel, store, gateway):
    assert await channel.enable_realtime_tracking(store.devices[1], interval=30) == "T030S***"
    assert gateway.sent[-1] == ("+91 98765 43210", "T030S***")


async def test_no_gateway_configured(pipeline, store):
    channel = CommandChannel(pipeline, store, None)
    with pytest.raises(CommandError):
        await channel.enable_realtime_tracking(store.devices[1])


async def test_http_gateway_posts_message():
    seen = []

    def handler(request):
        seen.append((request.url.path, json.loads(request.content)))
        if b"fail" in request.content:
            return httpx.Response(500)
        return httpx.Response(200, json={"queued": True})

    gateway = HttpSmsGateway("https://sms.example.com", transport=httpx.MockTransport(handler))
    try:
        await gateway.send("+919876543210", "where")
        with pytest.raises(CommandError):
            await gateway.send("+919876543210", "fail")
    finally:
        await gateway.close()

    assert seen[0] == ("/send", {"to": "+919876543210", "message": "where"})
