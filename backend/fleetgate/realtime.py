import json
import logging

import redis.asyncio as aioredis

from fleetgate.services.applier import ApplyOutcome

logger = logging.getLogger(__name__)

CHANNEL = "positions"


def position_payload(outcome: ApplyOutcome) -> dict:
    fix = outcome.fix
    return {
        "vehicle_id": outcome.vehicle_id,
        "gps_device_id": outcome.gps_device_id,
        "device_identifier": fix.device_identifier,
        "latitude": fix.latitude,
        "longitude": fix.longitude,
        "speed": fix.speed,
        "heading": fix.heading,
        "altitude": fix.altitude,
        "timestamp": fix.timestamp.isoformat(),
        "source": fix.source_protocol,
    }


class PositionPublisher:
    """Pushes every snapshot change onto the Redis `positions` channel."""

    def __init__(self, redis_url: str = None, client=None):
        self.redis = client if client is not None else aioredis.from_url(redis_url)

    async def __call__(self, outcome: ApplyOutcome):
        # late fixes only land in history, the live map has nothing to redraw
        if not outcome.snapshot_updated:
            return
        await self.publish_position(position_payload(outcome))

    async def publish_position(self, position_dict: dict):
        await self.redis.publish(CHANNEL, json.dumps(position_dict))

    async def close(self):
        await self.redis.aclose()
