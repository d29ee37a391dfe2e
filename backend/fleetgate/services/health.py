import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from fleetgate.schemas import DeviceRecord, as_utc, utcnow
from fleetgate.store.base import StoreTransaction

logger = logging.getLogger(__name__)

OUTCOMES = (
    "applied",
    "stale",
    "decode_failed",
    "unresolved",
    "tracking_disabled",
    "invalid_coordinates",
    "persistence_failed",
    "dropped",
)


class DeviceHealthTracker:
    """
    Device liveness plus per-category ingest counters.

    There is no polling loop here: liveness is whatever the last applied fix
    wrote into last_heartbeat.
    """

    def __init__(self, heartbeat_timeout: int = 600):
        self.heartbeat_timeout = timedelta(seconds=heartbeat_timeout)
        self.counters: Counter = Counter({name: 0 for name in OUTCOMES})
        self.by_source: Counter = Counter()
        self.unresolved_identifiers: Counter = Counter()
        self.started_at = utcnow()

    async def heartbeat(self, tx: StoreTransaction, gps_device_id: int, ts: Optional[datetime] = None):
        await tx.update_device_heartbeat(gps_device_id, ts or utcnow())

    def record(self, outcome: str, source: Optional[str] = None, identifier: Optional[str] = None):
        self.counters[outcome] += 1
        if source:
            self.by_source[f"{source}:{outcome}"] += 1
        if outcome == "unresolved" and identifier:
            self.unresolved_identifiers[identifier] += 1

    def liveness(self, device: DeviceRecord, now: Optional[datetime] = None) -> str:
        if device.status == "faulty":
            return "faulty"
        if device.last_heartbeat is None:
            return "never_seen"
        now = now or utcnow()
        if now - as_utc(device.last_heartbeat) > self.heartbeat_timeout:
            return "offline"
        return "online"

    def stats(self) -> dict:
        return {
            "since": self.started_at.isoformat(),
            "counters": dict(self.counters),
            "by_source": dict(self.by_source),
            "top_unresolved": dict(self.unresolved_identifiers.most_common(10)),
        }
