from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Request

from fleetgate.schemas import (
    ConfigureDeviceIn,
    DeviceRecord,
    DeviceStatusIn,
    RealtimeTrackingIn,
    utcnow,
)

router = APIRouter(prefix="/devices")


async def _device_or_404(request: Request, device_id: str) -> DeviceRecord:
    device = await request.app.state.gateway.store.get_device_by_identifier(device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


def _require_sim(device: DeviceRecord):
    if not device.sim_number:
        raise HTTPException(400, "No SIM number configured for this device")


@router.get("/")
async def list_devices(request: Request, status: str | None = None):
    gateway = request.app.state.gateway
    now = utcnow()
    devices = await gateway.store.list_devices(status=status)
    return [
        {
            "device_id": d.device_id,
            "device_name": d.device_name,
            "imei": d.imei,
            "status": d.status,
            "last_heartbeat": d.last_heartbeat,
            "liveness": gateway.health.liveness(d, now),
        }
        for d in devices
    ]


@router.put("/{device_id}/status", response_model=DeviceRecord)
async def set_status(device_id: str, payload: DeviceStatusIn, request: Request):
    gateway = request.app.state.gateway
    device = await _device_or_404(request, device_id)
    updated = await gateway.store.set_device_status(device.device_id, payload.status)
    # cached resolutions carry the old record
    gateway.registry.invalidate()
    return updated


@router.post("/{device_id}/locate")
async def locate_device(device_id: str, request: Request):
    """Ask the device for its position over SMS and wait for the reply."""
    device = await _device_or_404(request, device_id)
    _require_sim(device)
    fix = await request.app.state.gateway.commands.request_location(device)
    return {
        "device_id": device.device_id,
        "latitude": fix.latitude,
        "longitude": fix.longitude,
        "speed": fix.speed,
        "timestamp": fix.timestamp,
    }


@router.post("/{device_id}/configure")
async def configure_device(device_id: str, payload: ConfigureDeviceIn, request: Request):
    """Send the setup SMS sequence that switches the device to direct TCP reporting."""
    device = await _device_or_404(request, device_id)
    _require_sim(device)
    result = await request.app.state.gateway.commands.configure_direct_connection(
        device, payload.server_host, payload.server_port
    )
    if not result.success:
        raise HTTPException(502, asdict(result))
    return asdict(result)


@router.post("/{device_id}/realtime")
async def enable_realtime(device_id: str, payload: RealtimeTrackingIn, request: Request):
    device = await _device_or_404(request, device_id)
    _require_sim(device)
    command = await request.app.state.gateway.commands.enable_realtime_tracking(
        device, payload.interval_seconds
    )
    return {"device_id": device.device_id, "command": command}


@router.post("/poll")
async def poll_console(request: Request):
    """Run one console sync cycle now."""
    poller = request.app.state.gateway.poller
    if poller is None:
        raise HTTPException(503, "Console polling is not configured")
    result = await poller.poll_once()
    return {
        "success": result.success,
        "updated": result.updated,
        "unmatched": result.unmatched,
        "errors": result.errors,
        "state": poller.state.value,
    }
