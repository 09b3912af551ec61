from __future__ import annotations
from typing import Callable, AsyncContextManager, Optional
import logging

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from . import CLAIMED, IN_FLIGHT, PROCESSED

log = logging.getLogger(__name__)


class WebhookEventStore:
    """
    Ledger of received provider events (table ``webhook_events``).

    ``claim`` hands an event to exactly one worker: a first delivery inserts
    the row already claimed; a redelivery may only take over a row that is
    neither processed nor claimed (or whose claim has gone stale).
    """

    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]],
        claim_ttl: int,
    ) -> None:
        self.db = db
        self.gated = gated
        self.claim_ttl = claim_ttl

    async def claim(self, event_id: str, event_type: str) -> str:
        now = now_ts()
        try:
            async with self.gated():
                async with self.db.begin():
                    await self.db.execute(text("""
                      INSERT INTO webhook_events(
                        stripe_event_id, event_type, processing_attempts,
                        claimed_at, processed_at, last_error, created_at
                      ) VALUES (:id, :type, 1, :now, NULL, NULL, :now)
                    """), {"id": event_id, "type": event_type, "now": now})
            return CLAIMED
        except IntegrityError:
            # redelivery, or another instance inserted it first
            await self.db.rollback()

        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE webhook_events
                     SET processing_attempts = processing_attempts + 1,
                         claimed_at = :now
                   WHERE stripe_event_id = :id
                     AND processed_at IS NULL
                     AND (claimed_at IS NULL OR claimed_at < :stale)
                """), {"id": event_id, "now": now,
                       "stale": now - self.claim_ttl})
                if res.rowcount == 1:
                    return CLAIMED
                row = (await self.db.execute(text("""
                  SELECT processed_at FROM webhook_events
                   WHERE stripe_event_id = :id
                """), {"id": event_id})).first()
        if row is not None and row[0] is not None:
            return PROCESSED
        return IN_FLIGHT

    async def finish(self, event_id: str,
                     error: Optional[str] = None) -> None:
        async with self.gated():
            async with self.db.begin():
                if error is None:
                    await self.db.execute(text("""
                      UPDATE webhook_events
                         SET processed_at = :now, last_error = NULL
                       WHERE stripe_event_id = :id
                    """), {"id": event_id, "now": now_ts()})
                else:
                    # release the claim so a redelivery can retry
                    await self.db.execute(text("""
                      UPDATE webhook_events
                         SET last_error = :err, claimed_at = NULL
                       WHERE stripe_event_id = :id
                    """), {"id": event_id, "err": error[:1000]})
        if error is not None:
            log.warning("[Webhook Events] %s failed: %s", event_id, error)

    async def get(self, event_id: str) -> Optional[dict]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT stripe_event_id, event_type, processing_attempts,
                         claimed_at, processed_at, last_error
                    FROM webhook_events WHERE stripe_event_id = :id
                """), {"id": event_id})).mappings().first()
        return dict(row) if row else None
