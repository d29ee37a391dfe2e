import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import httpx

from fleetgate.errors import (
    FrameDecodeError,
    PersistenceError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamTimeoutError,
)
from fleetgate.schemas import DeviceRecord, utcnow
from fleetgate.services.decoders.base import build_fix, in_range, parse_timestamp, pick, to_float
from fleetgate.services.ingest import IngestPipeline
from fleetgate.store.base import LocationStore

logger = logging.getLogger(__name__)

SOURCE = "console"
# The console gives no accuracy figure; this is the estimate stored with its fixes
ESTIMATED_ACCURACY = 10.0

LIST_ENDPOINTS = (
    "/vehicles/locations",
    "/vehicles",
    "/tracking/vehicles",
    "/api/vehicles",
    "/gps/vehicles",
    "/devices",
)

# Candidate keys per field; the console's response shape is not documented
CONSOLE_FIELDS = {
    "id": ("id", "device_id", "vehicle_id"),
    "name": ("name", "vehicle_name", "device_name"),
    "latitude": ("latitude", "lat", "location.latitude"),
    "longitude": ("longitude", "lng", "location.longitude"),
    "speed": ("speed", "velocity"),
    "heading": ("heading", "direction", "course"),
    "timestamp": ("timestamp", "last_update", "updated_at"),
    "status": ("status",),
}


class PollerState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    POLLING = "polling"


@dataclass
class ConsoleVehicle:
    id: str
    name: str
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    timestamp: Optional[datetime] = None
    status: str = "unknown"


@dataclass
class SyncResult:
    success: bool = True
    updated: int = 0
    unmatched: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)


def parse_console_vehicles(data: Any) -> list[ConsoleVehicle]:
    """Normalize any of the list shapes the console has been seen to return."""
    if isinstance(data, list):
        entries = data
    elif isinstance(data, dict):
        entries = data.get("vehicles") or data.get("data") or data.get("devices") or []
    else:
        entries = []

    vehicles = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        latitude = to_float(pick(entry, CONSOLE_FIELDS["latitude"]))
        longitude = to_float(pick(entry, CONSOLE_FIELDS["longitude"]))
        # 0/0 is what the console reports for units that never got a fix
        if not latitude or not longitude or not in_range(latitude, longitude):
            continue
        vehicle_id = pick(entry, CONSOLE_FIELDS["id"])
        vehicles.append(ConsoleVehicle(
            id=str(vehicle_id) if vehicle_id is not None else "",
            name=str(pick(entry, CONSOLE_FIELDS["name"]) or "Unknown Vehicle"),
            latitude=latitude,
            longitude=longitude,
            speed=to_float(pick(entry, CONSOLE_FIELDS["speed"])),
            heading=to_float(pick(entry, CONSOLE_FIELDS["heading"])),
            timestamp=parse_timestamp(pick(entry, CONSOLE_FIELDS["timestamp"])),
            status=str(pick(entry, CONSOLE_FIELDS["status"]) or "unknown"),
        ))
    return vehicles


def match_console_vehicle(device: DeviceRecord, vehicles: list[ConsoleVehicle]) -> Optional[ConsoleVehicle]:
    """Console name contains our device name, or our notes mention the console id."""
    name = (device.device_name or "").strip().lower()
    notes = device.notes or ""
    for vehicle in vehicles:
        if name and name in vehicle.name.lower():
            return vehicle
        if vehicle.id and vehicle.id in notes:
            return vehicle
    return None


class ConsolePoller:
    """
    Pulls vehicle positions from the third-party tracking console and feeds
    them through the same pipeline as socket traffic.

    UNAUTHENTICATED -> AUTHENTICATED -> POLLING -> AUTHENTICATED, dropping back
    to UNAUTHENTICATED whenever the console rejects the session token.
    """

    service_name = "mercyda"

    def __init__(
        self,
        pipeline: IngestPipeline,
        store: LocationStore,
        base_url: str,
        username: Optional[str],
        password: Optional[str],
        interval: float = 60.0,
        timeout: float = 15.0,
        auth_retries: int = 3,
        device_marker: str = "mercyda",
        retry_backoff: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.pipeline = pipeline
        self.store = store
        self.username = username
        self.password = password
        self.interval = interval
        self.auth_retries = max(1, auth_retries)
        self.device_marker = device_marker
        self.retry_backoff = retry_backoff
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

        self.state = PollerState.UNAUTHENTICATED
        self.token: Optional[str] = None
        self.consecutive_failures = 0
        self.last_result: Optional[SyncResult] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._wake = asyncio.Event()

    # ---------------------------------------------------------
    # Console API
    # ---------------------------------------------------------

    async def authenticate(self) -> str:
        if not self.username or not self.password:
            self.state = PollerState.UNAUTHENTICATED
            raise UpstreamAuthError("Console credentials are not configured")

        last_error: UpstreamError = UpstreamAuthError("Console login failed")
        for attempt in range(1, self.auth_retries + 1):
            try:
                resp = await self.client.post(
                    "/auth/login",
                    json={"username": self.username, "password": self.password},
                )
            except httpx.TimeoutException as e:
                last_error = UpstreamTimeoutError(f"Console login timed out: {e}")
            except httpx.HTTPError as e:
                last_error = UpstreamAuthError(f"Console login failed: {e}")
            else:
                if resp.status_code == 200:
                    token = _extract_token(resp)
                    if token:
                        self.token = token
                        self.state = PollerState.AUTHENTICATED
                        logger.info("Authenticated with tracking console")
                        return token
                    last_error = UpstreamAuthError("Console login response carried no token")
                else:
                    last_error = UpstreamAuthError(f"Console login rejected: HTTP {resp.status_code}")

            logger.warning(f"Console login attempt {attempt}/{self.auth_retries} failed: {last_error}")
            if attempt < self.auth_retries:
                await asyncio.sleep(self.retry_backoff * 2 ** (attempt - 1))

        self.token = None
        self.state = PollerState.UNAUTHENTICATED
        raise last_error

    async def fetch_vehicles(self) -> list[ConsoleVehicle]:
        headers = {"Authorization": f"Bearer {self.token}"}
        for endpoint in LIST_ENDPOINTS:
            try:
                resp = await self.client.get(endpoint, headers=headers)
            except httpx.TimeoutException as e:
                raise UpstreamTimeoutError(f"Console request {endpoint} timed out: {e}") from e
            except httpx.HTTPError as e:
                logger.warning(f"Console request {endpoint} failed: {e}")
                continue

            if resp.status_code in (401, 403):
                self.token = None
                self.state = PollerState.UNAUTHENTICATED
                raise UpstreamAuthError(f"Console session rejected: HTTP {resp.status_code}")
            if resp.status_code != 200:
                logger.debug(f"Console endpoint {endpoint} answered HTTP {resp.status_code}")
                continue
            try:
                data = resp.json()
            except ValueError:
                logger.warning(f"Console endpoint {endpoint} returned non-JSON body")
                continue
            return parse_console_vehicles(data)

        raise UpstreamError("No console endpoint returned vehicle data")

    async def _fetch_with_session(self) -> list[ConsoleVehicle]:
        if self.token is None:
            await self.authenticate()
        self.state = PollerState.POLLING
        try:
            vehicles = await self.fetch_vehicles()
        except UpstreamAuthError:
            # token expired between cycles, log in again once
            await self.authenticate()
            self.state = PollerState.POLLING
            vehicles = await self.fetch_vehicles()
        self.state = PollerState.AUTHENTICATED
        return vehicles

    # ---------------------------------------------------------
    # Sync cycle
    # ---------------------------------------------------------

    async def poll_once(self) -> SyncResult:
        result = SyncResult()
        try:
            vehicles = await self._fetch_with_session()
        except UpstreamError as e:
            if self.state == PollerState.POLLING:
                self.state = PollerState.AUTHENTICATED
            result.success = False
            result.errors.append(str(e))
            self.consecutive_failures += 1
            await self._escalate(e)
            return await self._finish(result)

        self.consecutive_failures = 0
        if not vehicles:
            result.errors.append("No vehicle data received from console")
            return await self._finish(result)

        try:
            devices = await self.store.list_devices(status="active", notes_contains=self.device_marker)
        except PersistenceError as e:
            result.success = False
            result.errors.append(f"Database error: {e}")
            return await self._finish(result)

        for device in devices:
            vehicle = match_console_vehicle(device, vehicles)
            if vehicle is None:
                result.unmatched += 1
                continue
            label = device.device_name or device.device_id
            try:
                fix = build_fix(
                    SOURCE,
                    device.device_id,
                    vehicle.latitude,
                    vehicle.longitude,
                    speed=vehicle.speed,
                    heading=vehicle.heading,
                    accuracy=ESTIMATED_ACCURACY,
                    timestamp=vehicle.timestamp,
                )
            except FrameDecodeError as e:
                result.errors.append(f"Error updating device {label}: {e}")
                continue

            ingest = await self.pipeline.ingest_fix(fix, source="poller")
            if ingest.ok:
                result.updated += 1
            else:
                result.errors.append(f"Error updating device {label}: {ingest.error}")

        return await self._finish(result)

    async def _finish(self, result: SyncResult) -> SyncResult:
        self.last_result = result
        logger.info(
            f"Console sync {'ok' if result.success else 'FAILED'}: {result.updated} updated, "
            f"{result.unmatched} unmatched, {len(result.errors)} errors"
        )
        try:
            await self.store.record_sync_log(
                self.service_name,
                "success" if result.success else "failed",
                result.updated,
                result.errors,
            )
        except PersistenceError as e:
            logger.error(f"Could not write sync log: {e}")
        return result

    async def _escalate(self, error: UpstreamError):
        # auth errors already went through the bounded retry in authenticate()
        if not isinstance(error, UpstreamAuthError) and self.consecutive_failures < self.auth_retries:
            logger.warning(f"Console poll failed ({self.consecutive_failures}x): {error}")
            return
        logger.error(f"Tracking console unavailable: {error}")
        try:
            await self.store.record_alert(
                alert_type=error.category,
                title="Tracking console sync failing",
                severity="high",
                description=str(error),
                alert_data={
                    "service": self.service_name,
                    "consecutive_failures": self.consecutive_failures,
                },
            )
        except PersistenceError as e:
            logger.error(f"Could not record console alert: {e}")

    # ---------------------------------------------------------
    # Loop control
    # ---------------------------------------------------------

    async def run(self):
        self._stopping = False
        self._wake.clear()
        logger.info(f"Console poller started, every {self.interval:.0f}s")
        while not self._stopping:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Console poll cycle crashed: {e}", exc_info=True)
            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Console poller stopped")

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name="console-poller")
        return self._task

    async def stop(self):
        """Ends the loop between ticks; an in-flight cycle is allowed to finish."""
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.client.aclose()


def _extract_token(resp: httpx.Response) -> Optional[str]:
    try:
        data = resp.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    return data.get("token") or data.get("access_token")
