import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

import httpx

from fleetgate.errors import CommandError, CommandTimeoutError, FrameDecodeError
from fleetgate.schemas import DeviceRecord, LocationFix
from fleetgate.services.decoders import SMSReplyDecoder
from fleetgate.services.ingest import IngestPipeline, IngestResult
from fleetgate.store.base import LocationStore

logger = logging.getLogger(__name__)

# Location request commands by device model, first one that sends is used
LOCATION_COMMANDS = {
    "gt06": ("where", "G123456#"),
    "tk103": ("G123456#", "where"),
    "gps103": ("G123456#", "where"),
    "default": ("where", "G123456#", "loc"),
}

REALTIME_COMMAND = "T{interval:03d}S***"


def normalize_number(number: Optional[str]) -> str:
    """Digits only, last ten, so '+91 98765 43210' and '9876543210' compare equal."""
    digits = re.sub(r"\D", "", number or "")
    return digits[-10:]


def location_commands(device_model: Optional[str]) -> tuple[str, ...]:
    model = (device_model or "").lower()
    for key, commands in LOCATION_COMMANDS.items():
        if key != "default" and key in model:
            return commands
    return LOCATION_COMMANDS["default"]


class HttpSmsGateway:
    """Outbound SMS through an HTTP gateway: POST {base}/send {"to", "message"}."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    async def send(self, to: str, message: str):
        try:
            resp = await self.client.post("/send", json={"to": to, "message": message})
        except httpx.HTTPError as e:
            raise CommandError(f"SMS gateway unreachable: {e}") from e
        if resp.status_code >= 400:
            raise CommandError(f"SMS gateway rejected message to {to}: HTTP {resp.status_code}")
        logger.info(f"SMS sent to {to}: {message!r}")

    async def close(self):
        await self.client.aclose()


@dataclass
class PendingRequest:
    device: DeviceRecord
    future: asyncio.Future
    timeout: float
    deadline: float
    command: Optional[str] = None
    timer: Optional[asyncio.TimerHandle] = None


@dataclass
class ProvisioningResult:
    device_id: str
    commands: list[str] = field(default_factory=list)
    sent: list[str] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None


class CommandChannel:
    """
    SMS request/response for devices without a socket link.

    Each location request becomes an entry in `pending`, keyed by device id,
    holding a future and a deadline. The entry ends in exactly one of two ways:
    a matching inbound reply resolves the future with the decoded fix, or the
    deadline timer fails it with CommandTimeoutError.
    """

    def __init__(
        self,
        pipeline: IngestPipeline,
        store: LocationStore,
        gateway: Optional[HttpSmsGateway],
        reply_timeout: float = 60.0,
        command_delay: float = 2.0,
        apn: str = "internet",
        report_interval: int = 30,
        timezone: str = "+05:30",
        default_port: int = 8888,
    ):
        self.pipeline = pipeline
        self.store = store
        self.gateway = gateway
        self.reply_timeout = reply_timeout
        self.command_delay = command_delay
        self.apn = apn
        self.report_interval = report_interval
        self.timezone = timezone
        self.default_port = default_port
        self.decoder = SMSReplyDecoder()
        self.pending: dict[str, PendingRequest] = {}

    async def _send(self, device: DeviceRecord, message: str):
        if self.gateway is None:
            raise CommandError("SMS gateway is not configured")
        if not device.sim_number:
            raise CommandError(f"No SIM number configured for device {device.device_id}")
        await self.gateway.send(device.sim_number, message)

    # ---------------------------------------------------------
    # Location request / reply
    # ---------------------------------------------------------

    async def request_location(self, device: DeviceRecord, timeout: Optional[float] = None) -> LocationFix:
        if not device.sim_number:
            raise CommandError(f"No SIM number configured for device {device.device_id}")

        pending = self.pending.get(device.device_id)
        if pending is None:
            pending = self._register(device, timeout or self.reply_timeout)
            await self._send_location_command(pending)
        else:
            logger.info(f"Location request for {device.device_id} already pending, joining it")

        # shield so one caller giving up does not cancel the request for others
        return await asyncio.shield(pending.future)

    def _register(self, device: DeviceRecord, timeout: float) -> PendingRequest:
        # registered before the first await so concurrent callers join this request
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            device=device,
            future=loop.create_future(),
            timeout=timeout,
            deadline=loop.time() + timeout,
        )
        pending.timer = loop.call_at(pending.deadline, self._expire, device.device_id, pending)
        self.pending[device.device_id] = pending
        return pending

    async def _send_location_command(self, pending: PendingRequest):
        device = pending.device
        last_error = None
        for command in location_commands(device.device_model):
            try:
                await self._send(device, command)
            except CommandError as e:
                last_error = e
                logger.warning(f"Location command {command!r} to {device.device_id} failed: {e}")
                continue
            pending.command = command
            return

        if self.pending.get(device.device_id) is pending:
            del self.pending[device.device_id]
        if pending.timer is not None:
            pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_exception(
                last_error or CommandError(f"No location command available for {device.device_id}")
            )

    def _expire(self, device_id: str, pending: PendingRequest):
        if self.pending.get(device_id) is pending:
            del self.pending[device_id]
        if not pending.future.done():
            logger.warning(f"No SMS reply from {device_id} to {pending.command!r}")
            pending.future.set_exception(CommandTimeoutError(device_id, pending.timeout))
            # mark retrieved, the caller may already have given up
            pending.future.exception()

    def _pending_for_sender(self, sender: str) -> Optional[PendingRequest]:
        number = normalize_number(sender)
        if not number:
            return None
        for pending in self.pending.values():
            if normalize_number(pending.device.sim_number) == number:
                return pending
        return None

    async def handle_inbound(self, sender: str, text: str) -> Optional[IngestResult]:
        """Correlate an inbound SMS with a device, decode it and apply the fix."""
        pending = self._pending_for_sender(sender)
        device = pending.device if pending else await self.store.get_device_by_sim(sender)
        if device is None:
            logger.warning(f"SMS from unknown number {sender}: {text[:60]!r}")
            return None

        try:
            fix = self.decoder.decode(text, device_identifier=device.device_id)
        except FrameDecodeError as e:
            # status/ack texts arrive on the same number; keep waiting for the location
            logger.info(f"SMS from {device.device_id} is not a location reply: {e}")
            return None

        if pending is not None:
            self.pending.pop(device.device_id, None)
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_result(fix)

        return await self.pipeline.ingest_fix(fix, source="sms")

    # ---------------------------------------------------------
    # Provisioning
    # ---------------------------------------------------------

    async def configure_direct_connection(
        self, device: DeviceRecord, server_host: str, server_port: Optional[int] = None
    ) -> ProvisioningResult:
        """Point a device at our own listener so it stops needing SMS polling."""
        port = server_port or self.default_port
        result = ProvisioningResult(
            device_id=device.device_id,
            commands=[
                f"APN {self.apn}",
                f"SERVER {server_host} {port}",
                f"TIMER {self.report_interval}",
                "GPRS ON",
                f"GMT {self.timezone}",
            ],
        )
        for i, command in enumerate(result.commands):
            if i:
                await asyncio.sleep(self.command_delay)
            try:
                await self._send(device, command)
            except CommandError as e:
                result.success = False
                result.error = f"{command!r} failed: {e}"
                logger.error(f"Provisioning {device.device_id} stopped: {result.error}")
                return result
            result.sent.append(command)

        logger.info(f"Device {device.device_id} configured to report to {server_host}:{port}")
        return result

    async def enable_realtime_tracking(self, device: DeviceRecord, interval: int = 30) -> str:
        command = REALTIME_COMMAND.format(interval=interval)
        await self._send(device, command)
        logger.info(f"Real-time tracking enabled for {device.device_id} every {interval}s")
        return command

    def cancel_all(self):
        for device_id, pending in list(self.pending.items()):
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.cancel()
        self.pending.clear()
