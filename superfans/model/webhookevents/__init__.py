import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("WEBHOOK_EVENTS_BACKEND", "pg").lower()  # 'pg' | 'redis'

# a claim older than this belongs to a worker that died mid-event
CLAIM_TTL_SECONDS = int(os.getenv("WEBHOOK_CLAIM_TTL_SECONDS", "300"))

CLAIMED = "claimed"
PROCESSED = "processed"
IN_FLIGHT = "in_flight"

if BACKEND == "redis":
    from ._redis import WebhookEventStore as _WebhookEventStore
else:
    from ._postgres import WebhookEventStore as _WebhookEventStore


def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Gated = None,
              claim_ttl: int = CLAIM_TTL_SECONDS):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return _WebhookEventStore(r=r, claim_ttl=claim_ttl)
    if db is None:
        raise RuntimeError("WebhookEventStore(pg) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("WebhookEventStore(pg) requires gated=Gated")
    return _WebhookEventStore(db=db, gated=gated, claim_ttl=claim_ttl)


WebhookEventStore = _WebhookEventStore
__all__ = ["WebhookEventStore", "new_store", "BACKEND",
           "CLAIMED", "PROCESSED", "IN_FLIGHT"]
