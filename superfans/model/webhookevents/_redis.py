from __future__ import annotations
from typing import Optional
import logging
import redis.asyncio as redis

from ...helpers import now_ts
from . import CLAIMED, IN_FLIGHT, PROCESSED

log = logging.getLogger(__name__)

# processed events are remembered for Stripe's retry horizon
EVENT_TTL_SECONDS = 7 * 24 * 3600


# ---- keys
def k_event(evt: str) -> str: return f"whevt:{evt}"
def k_claim(evt: str) -> str: return f"whevt:claim:{evt}"


class WebhookEventStore:
    def __init__(self, r: redis.Redis, claim_ttl: int) -> None:
        self.r = r
        self.claim_ttl = claim_ttl

    async def claim(self, event_id: str, event_type: str) -> str:
        if await self.r.hget(k_event(event_id), "processed_at"):
            return PROCESSED
        # NX gate; expiry doubles as the stale-claim timeout
        ok = await self.r.set(k_claim(event_id), "1", nx=True,
                              ex=self.claim_ttl)
        if not ok:
            return IN_FLIGHT
        # finished between our check and the claim
        if await self.r.hget(k_event(event_id), "processed_at"):
            await self.r.delete(k_claim(event_id))
            return PROCESSED
        pipe = self.r.pipeline(transaction=True)
        pipe.hsetnx(k_event(event_id), "created_at", str(now_ts()))
        pipe.hset(k_event(event_id), mapping={"event_type": event_type})
        pipe.hincrby(k_event(event_id), "processing_attempts", 1)
        pipe.expire(k_event(event_id), EVENT_TTL_SECONDS)
        await pipe.execute()
        return CLAIMED

    async def finish(self, event_id: str,
                     error: Optional[str] = None) -> None:
        pipe = self.r.pipeline(transaction=True)
        if error is None:
            pipe.hset(k_event(event_id), mapping={
                "processed_at": str(now_ts()), "last_error": "",
            })
        else:
            pipe.hset(k_event(event_id), mapping={"last_error": error[:1000]})
            log.warning("[Webhook Events] %s failed: %s", event_id, error)
        pipe.delete(k_claim(event_id))
        await pipe.execute()

    async def get(self, event_id: str) -> Optional[dict]:
        h = await self.r.hgetall(k_event(event_id))
        return h or None
