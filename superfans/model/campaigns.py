# model/campaigns.py
"""
Campaign funding totals.

Totals move only through ``increment_progress``: a single UPDATE that adds
to the stored columns, so concurrent purchases are serialized by the
database and no increment is lost. The funded transition is guarded by
``status != 'funded'`` and only the request whose UPDATE hit a row reports
``funded_now``.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession

log = logging.getLogger(__name__)

DRAFT = "draft"
ACTIVE = "active"
FUNDED = "funded"
FAILED = "failed"
STATUSES = (DRAFT, ACTIVE, FUNDED, FAILED)


class CampaignNotFound(Exception):
    pass


@dataclass
class ProgressOutcome:
    updated: bool
    funded_now: bool = False
    current_funding_cents: Optional[int] = None
    funding_goal_cents: Optional[int] = None
    error: Optional[str] = None

    @property
    def partial_success(self) -> bool:
        return self.error is not None


SQL_INCREMENT = """
    UPDATE campaigns
       SET current_funding_cents = current_funding_cents + :funding,
           received_cents = received_cents + :received,
           total_tickets_sold = total_tickets_sold + :tickets,
           updated_at = :now
     WHERE id = :id
"""

SQL_TOTALS = """
    SELECT current_funding_cents, funding_goal_cents, status
      FROM campaigns WHERE id = :id
"""

SQL_MARK_FUNDED = """
    UPDATE campaigns SET status = 'funded', updated_at = :now
     WHERE id = :id AND status != 'funded'
"""


async def increment_progress(
    gs: GatedAsyncSession, campaign_id: str, *,
    funding_cents: int, received_cents: int, tickets: int = 0,
) -> ProgressOutcome:
    """
    Add to the campaign totals and detect a goal crossing. Runs as one
    transaction; raises ``CampaignNotFound`` when no row was updated.
    """
    db = gs.session
    async with gs.gated():
        async with db.begin():
            res = await db.execute(text(SQL_INCREMENT), {
                "funding": int(funding_cents),
                "received": int(received_cents),
                "tickets": int(tickets),
                "now": now_ts(),
                "id": campaign_id,
            })
            if res.rowcount == 0:
                raise CampaignNotFound(campaign_id)

            row = (await db.execute(
                text(SQL_TOTALS), {"id": campaign_id}
            )).mappings().first()
            current = int(row["current_funding_cents"])
            goal = int(row["funding_goal_cents"])

            funded_now = False
            if goal > 0 and current >= goal:
                res = await db.execute(text(SQL_MARK_FUNDED), {
                    "id": campaign_id, "now": now_ts(),
                })
                funded_now = res.rowcount == 1

    return ProgressOutcome(
        updated=True,
        funded_now=funded_now,
        current_funding_cents=current,
        funding_goal_cents=goal,
    )


async def apply_purchase(
    gs: GatedAsyncSession, campaign_id: str, *,
    funding_cents: int, received_cents: int, tickets: int = 0,
) -> ProgressOutcome:
    """
    ``increment_progress`` for a purchase that is already persisted. A
    failure is logged and returned, never raised: the purchase stays and the
    caller reports partial success.
    """
    try:
        outcome = await increment_progress(
            gs, campaign_id, funding_cents=funding_cents,
            received_cents=received_cents, tickets=tickets,
        )
    except CampaignNotFound:
        log.error("[Campaign Progress] campaign %s not found", campaign_id)
        return ProgressOutcome(updated=False,
                               error=f"Campaign {campaign_id} not found")
    except Exception as e:
        log.exception("[Campaign Progress] increment for %s failed",
                      campaign_id)
        await gs.session.rollback()
        return ProgressOutcome(updated=False, error=str(e) or type(e).__name__)

    log.info("[Campaign Progress] %s +%d cents (%d/%d)", campaign_id,
             funding_cents, outcome.current_funding_cents,
             outcome.funding_goal_cents)
    if outcome.funded_now:
        log.info("[Campaign Progress] campaign %s reached its funding goal",
                 campaign_id)
    return outcome


# ----------------------------
# Reads / lifecycle
# ----------------------------
def progress_view(row: Dict[str, Any]) -> Dict[str, Any]:
    goal = int(row["funding_goal_cents"] or 0)
    current = int(row["current_funding_cents"] or 0)
    pct = round(current * 100.0 / goal, 2) if goal > 0 else 0.0
    return {
        "campaign_id": row["id"],
        "club_id": row["club_id"],
        "title": row["title"],
        "status": row["status"],
        "funding_goal_cents": goal,
        "current_funding_cents": current,
        "received_cents": int(row["received_cents"] or 0),
        "funding_percentage": pct,
        "total_tickets_sold": int(row["total_tickets_sold"] or 0),
        "ticket_price_cents": int(row["ticket_price_cents"] or 0),
        "deadline": to_iso(row["deadline"]),
        "metal_presale_id": row["metal_presale_id"],
    }


SQL_SELECT_CAMPAIGN = """
    SELECT id, club_id, title, status, funding_goal_cents,
           current_funding_cents, received_cents, total_tickets_sold,
           ticket_price_cents, deadline, metal_presale_id
      FROM campaigns
"""


async def get_campaign(gs: GatedAsyncSession,
                       campaign_id: str) -> Optional[Dict[str, Any]]:
    async with gs.gated():
        async with gs.session.begin():
            row = (await gs.session.execute(
                text(SQL_SELECT_CAMPAIGN + " WHERE id = :id"),
                {"id": campaign_id},
            )).mappings().first()
    return dict(row) if row else None


async def active_campaign_for_club(
        gs: GatedAsyncSession, club_id: str) -> Optional[Dict[str, Any]]:
    async with gs.gated():
        async with gs.session.begin():
            row = (await gs.session.execute(
                text(SQL_SELECT_CAMPAIGN
                     + " WHERE club_id = :club_id AND status = 'active'"
                     + " ORDER BY created_at DESC LIMIT 1"),
                {"club_id": club_id},
            )).mappings().first()
    return dict(row) if row else None


async def list_campaigns(gs: GatedAsyncSession,
                         limit: int = 200) -> List[Dict[str, Any]]:
    async with gs.gated():
        async with gs.session.begin():
            rows = (await gs.session.execute(
                text(SQL_SELECT_CAMPAIGN
                     + " ORDER BY deadline DESC LIMIT :lim"),
                {"lim": int(limit)},
            )).mappings().all()
    return [dict(r) for r in rows]


async def find_expired_unfunded(gs: GatedAsyncSession,
                                now: Optional[float] = None
                                ) -> List[Dict[str, Any]]:
    now = now_ts() if now is None else now
    async with gs.gated():
        async with gs.session.begin():
            rows = (await gs.session.execute(
                text(SQL_SELECT_CAMPAIGN + """
                  WHERE status = 'active'
                    AND deadline IS NOT NULL AND deadline < :now
                    AND current_funding_cents < funding_goal_cents
                  ORDER BY deadline
                """),
                {"now": now},
            )).mappings().all()
    return [dict(r) for r in rows]


async def _transition(gs: GatedAsyncSession, campaign_id: str,
                      to_status: str, from_status: str) -> bool:
    async with gs.gated():
        async with gs.session.begin():
            res = await gs.session.execute(text("""
                UPDATE campaigns SET status = :to, updated_at = :now
                 WHERE id = :id AND status = :from
            """), {"to": to_status, "from": from_status, "id": campaign_id,
                   "now": now_ts()})
    return res.rowcount == 1


async def mark_failed(gs: GatedAsyncSession, campaign_id: str) -> bool:
    return await _transition(gs, campaign_id, FAILED, ACTIVE)


async def activate(gs: GatedAsyncSession, campaign_id: str) -> bool:
    return await _transition(gs, campaign_id, ACTIVE, DRAFT)


async def set_presale_id(gs: GatedAsyncSession, campaign_id: str,
                         presale_id: Optional[str]) -> None:
    async with gs.gated():
        async with gs.session.begin():
            res = await gs.session.execute(text("""
                UPDATE campaigns SET metal_presale_id = :pid, updated_at = :now
                 WHERE id = :id
            """), {"pid": presale_id, "id": campaign_id, "now": now_ts()})
            if res.rowcount == 0:
                raise CampaignNotFound(campaign_id)
