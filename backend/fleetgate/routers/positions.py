from fastapi import APIRouter, HTTPException, Request

from fleetgate.schemas import HistoryEntry, LocationFix, LocationUpdateIn, PositionSnapshot, RawFrameIn, utcnow
from fleetgate.services.decoders.base import in_range

router = APIRouter(prefix="/positions")

# ingest outcome -> HTTP status for structured updates
OUTCOME_STATUS = {
    "unresolved": 404,
    "tracking_disabled": 409,
    "invalid_coordinates": 400,
    "persistence_failed": 503,
}


@router.post("/ingest")
async def ingest_position(payload: RawFrameIn, request: Request):
    """
    Ingest a raw tracker frame relayed over HTTP.
    Payload: {"raw": "..."} or {"raw_hex": "...", "source_ip": "..."}

    Always 200 once the frame is accepted for processing so relays do not
    retry rejected frames; the outcome is in the body.
    """
    if payload.raw_hex:
        try:
            raw = bytes.fromhex(payload.raw_hex)
        except ValueError:
            raise HTTPException(400, "Invalid hex")
    elif payload.raw:
        raw = payload.raw
    else:
        raise HTTPException(400, "Missing raw or raw_hex")

    pipeline = request.app.state.gateway.pipeline
    result = await pipeline.ingest_frame(raw, source="http", peer=payload.source_ip)
    return result.as_dict()


@router.post("/location")
async def update_location(payload: LocationUpdateIn, request: Request):
    """Structured location update from an app or a relay that already decoded the frame."""
    if not in_range(payload.latitude, payload.longitude):
        raise HTTPException(400, f"Coordinates out of range: {payload.latitude}, {payload.longitude}")

    fix = LocationFix(
        device_identifier=payload.device_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        speed=max(payload.speed or 0.0, 0.0),
        heading=payload.heading or 0.0,
        altitude=payload.altitude,
        accuracy=payload.accuracy,
        timestamp=payload.timestamp or utcnow(),
        source_protocol="http",
    )
    result = await request.app.state.gateway.pipeline.ingest_fix(fix, source="http")
    if result.outcome in OUTCOME_STATUS:
        raise HTTPException(OUTCOME_STATUS[result.outcome], str(result.error))
    return result.as_dict()


@router.get("/stats")
async def ingest_stats(request: Request):
    gateway = request.app.state.gateway
    return {**gateway.health.stats(), **gateway.status()}


@router.get("/vehicles/{vehicle_id}", response_model=PositionSnapshot)
async def current_position(vehicle_id: int, request: Request):
    snapshot = await request.app.state.gateway.store.get_snapshot(vehicle_id)
    if snapshot is None:
        raise HTTPException(404, "No position for vehicle")
    return snapshot


@router.get("/vehicles/{vehicle_id}/history", response_model=list[HistoryEntry])
async def position_history(vehicle_id: int, request: Request, limit: int = 100):
    limit = max(1, min(limit, 1000))
    return await request.app.state.gateway.store.list_history(vehicle_id, limit=limit)
