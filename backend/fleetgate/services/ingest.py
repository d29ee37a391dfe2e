import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fleetgate.errors import (
    FrameDecodeError,
    GatewayError,
    InvalidCoordinateError,
    PersistenceError,
    TrackingDisabledError,
    UnresolvedDeviceError,
)
from fleetgate.schemas import LocationFix
from fleetgate.services.applier import ApplyOutcome, FixApplier
from fleetgate.services.decoders import Dispatcher
from fleetgate.services.health import DeviceHealthTracker
from fleetgate.services.registry import DeviceRegistry, Resolution

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    outcome: str
    fix: Optional[LocationFix] = None
    applied: Optional[ApplyOutcome] = None
    error: Optional[GatewayError] = None

    @property
    def decoded(self) -> bool:
        return self.fix is not None

    @property
    def ok(self) -> bool:
        return self.outcome in ("applied", "stale")

    def as_dict(self) -> dict:
        body = {"status": self.outcome, "decoded": self.decoded}
        if self.fix is not None:
            body["device_identifier"] = self.fix.device_identifier
            body["protocol"] = self.fix.source_protocol
        if self.applied is not None:
            body["vehicle_id"] = self.applied.vehicle_id
            if self.applied.history_entry is not None:
                body["history_id"] = self.applied.history_entry.id
        if self.error is not None:
            body["error"] = str(self.error)
        return body


class IngestPipeline:
    """
    Dispatcher -> Registry -> Applier. Every ingestion path (sockets, HTTP,
    console polling, SMS replies) ends up here so they share one write path.

    Errors are local to one frame: they are logged, counted and returned in the
    IngestResult, never raised to the caller.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        registry: DeviceRegistry,
        applier: FixApplier,
        health: DeviceHealthTracker,
    ):
        self.dispatcher = dispatcher
        self.registry = registry
        self.applier = applier
        self.health = health

    async def ingest_frame(
        self,
        raw: bytes | str,
        source: str = "tcp",
        peer: Optional[str] = None,
        received_at: Optional[datetime] = None,
    ) -> IngestResult:
        try:
            fix = self.dispatcher.decode_or_raise(raw, received_at=received_at)
        except FrameDecodeError as e:
            preview = raw.hex()[:40] if isinstance(raw, bytes) else raw[:80]
            logger.warning(f"[{source}] Decode failed from {peer or '?'}: {e} | {preview}")
            self.health.record("decode_failed", source)
            return IngestResult("decode_failed", error=e)

        logger.debug(f"[{source}] {fix.source_protocol} fix from {fix.device_identifier} ({peer or '?'})")
        return await self.ingest_fix(fix, source)

    async def ingest_fix(
        self,
        fix: LocationFix,
        source: str = "api",
        resolution: Optional[Resolution] = None,
    ) -> IngestResult:
        try:
            if resolution is None:
                resolution = await self.registry.resolve(fix.device_identifier)
            outcome = await self.applier.apply(resolution, fix)
        except UnresolvedDeviceError as e:
            logger.warning(f"[{source}] Unresolved fix: {e.reason} ({e.identifier!r})")
            self.health.record("unresolved", source, e.identifier)
            return IngestResult("unresolved", fix=fix, error=e)
        except TrackingDisabledError as e:
            logger.info(f"[{source}] Rejected fix: {e}")
            self.health.record("tracking_disabled", source)
            return IngestResult("tracking_disabled", fix=fix, error=e)
        except InvalidCoordinateError as e:
            logger.warning(f"[{source}] Rejected fix from {fix.device_identifier}: {e}")
            self.health.record("invalid_coordinates", source)
            return IngestResult("invalid_coordinates", fix=fix, error=e)
        except PersistenceError as e:
            logger.error(f"[{source}] Persistence failure for {fix.device_identifier}: {e}")
            self.health.record("persistence_failed", source)
            return IngestResult("persistence_failed", fix=fix, error=e)

        status = "applied" if outcome.snapshot_updated else "stale"
        self.health.record(status, source)
        logger.info(
            f"[{source}] {status.upper()} {fix.source_protocol} fix for vehicle {outcome.vehicle_id}: "
            f"{fix.latitude:.6f},{fix.longitude:.6f} {fix.speed:.1f}km/h"
        )
        return IngestResult(status, fix=fix, applied=outcome)
