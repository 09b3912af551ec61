# model/refunds.py
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update

from ..errors import Retryable
from ..helpers import now_ts
from ..idempotency import refund_key
from ..infra.sql import GatedAsyncSession
from ..stripepay import PaymentAdapter
from . import campaigns
from .orm import RewardClaim

log = logging.getLogger(__name__)


@dataclass
class RefundResult:
    campaign_id: str
    refunded_count: int = 0
    failed_count: int = 0
    deferred_count: int = 0
    campaign_marked_failed: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def as_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "success": self.success,
            "refunded_count": self.refunded_count,
            "failed_count": self.failed_count,
            "deferred_count": self.deferred_count,
            "campaign_marked_failed": self.campaign_marked_failed,
            "errors": self.errors,
        }


async def paid_participants(gs: GatedAsyncSession,
                            campaign_id: str) -> List[RewardClaim]:
    async with gs.gated():
        async with gs.session.begin():
            rows = (await gs.session.execute(
                select(RewardClaim).where(
                    RewardClaim.campaign_id == campaign_id,
                    RewardClaim.refund_status == "none",
                    or_(RewardClaim.claim_method == "upgrade_purchased",
                        RewardClaim.payment_method == "stripe"),
                ).order_by(RewardClaim.claimed_at)
            )).scalars().all()
    return list(rows)


async def _set_refund(gs: GatedAsyncSession, claim: RewardClaim,
                      **values: Any) -> None:
    async with gs.gated():
        async with gs.session.begin():
            await gs.session.execute(
                update(RewardClaim)
                .where(RewardClaim.id == claim.id,
                       RewardClaim.refund_status == "none")
                .values(refunded_at=now_ts(), **values)
            )


def _failure_meta(claim: RewardClaim, reason: str) -> Dict[str, Any]:
    meta = dict(claim.meta or {})
    meta.update({"refund_failure_reason": reason,
                 "campaign_id": claim.campaign_id})
    return meta


async def process_campaign_refunds(
    gs: GatedAsyncSession, adapter: PaymentAdapter, campaign_id: str,
) -> RefundResult:
    """
    Refund every paid participant of a failed campaign, then move the
    campaign from active to failed. Each refund carries ``refund_<claim id>``
    as the provider idempotency key, so re-running after a partial failure
    never pays anyone twice.
    """
    out = RefundResult(campaign_id=campaign_id)
    participants = await paid_participants(gs, campaign_id)
    log.info("[Campaign Refunds] %d participants to refund for %s",
             len(participants), campaign_id)

    for claim in participants:
        if not claim.stripe_payment_intent_id:
            log.warning("[Campaign Refunds] claim %s has no payment intent",
                        claim.id)
            await _set_refund(
                gs, claim, refund_status="failed",
                meta=_failure_meta(claim, "missing_payment_intent_id"),
            )
            out.failed_count += 1
            out.errors.append(
                f"Skipped participant {claim.id}: missing payment intent ID"
            )
            continue

        try:
            refund_id = await adapter.create_refund(
                payment_intent=claim.stripe_payment_intent_id,
                amount=int(claim.paid_price_cents),
                metadata={
                    "type": "campaign_failure_refund",
                    "campaign_id": campaign_id,
                    "participation_id": claim.id,
                },
                idempotency_key=refund_key(claim.id),
            )
        except Retryable as e:
            # left at 'none'; the next sweep retries with the same key
            log.warning("[Campaign Refunds] claim %s deferred: %s",
                        claim.id, e.message)
            out.deferred_count += 1
            out.errors.append(f"Refund deferred for {claim.id}: {e.message}")
            continue
        except Exception as e:
            log.error("[Campaign Refunds] refund for claim %s failed: %s",
                      claim.id, e)
            await _set_refund(gs, claim, refund_status="failed",
                              meta=_failure_meta(claim, str(e)))
            out.failed_count += 1
            out.errors.append(f"Refund failed for participant {claim.id}: {e}")
            continue

        await _set_refund(gs, claim, refund_status="processed",
                          stripe_refund_id=refund_id)
        out.refunded_count += 1
        log.info("[Campaign Refunds] refunded %d cents to user %s",
                 claim.paid_price_cents, claim.user_id)

    out.campaign_marked_failed = await campaigns.mark_failed(gs, campaign_id)
    log.info("[Campaign Refunds] %s: %d refunded, %d failed, %d deferred",
             campaign_id, out.refunded_count, out.failed_count,
             out.deferred_count)
    return out


async def refund_stats(gs: GatedAsyncSession) -> Dict[str, Dict[str, int]]:
    async with gs.gated():
        async with gs.session.begin():
            rows = (await gs.session.execute(
                select(RewardClaim.campaign_id, RewardClaim.refund_status)
                .where(RewardClaim.campaign_id.is_not(None),
                       or_(RewardClaim.claim_method == "upgrade_purchased",
                           RewardClaim.payment_method == "stripe"))
            )).all()
    stats: Dict[str, Dict[str, int]] = {}
    for campaign_id, status in rows:
        s = stats.setdefault(campaign_id, {
            "total_participants": 0, "refunded": 0, "pending_refunds": 0,
            "failed_refunds": 0,
        })
        s["total_participants"] += 1
        if status == "processed":
            s["refunded"] += 1
        elif status == "failed":
            s["failed_refunds"] += 1
        elif status == "none":
            s["pending_refunds"] += 1
    return stats


async def sweep_campaign_failures(
    gs: GatedAsyncSession, adapter: PaymentAdapter,
    now: Optional[float] = None,
) -> List[RefundResult]:
    """Fail and refund every active campaign past its deadline and goal."""
    expired = await campaigns.find_expired_unfunded(gs, now)
    log.info("[Campaign Failures] %d expired unfunded campaigns",
             len(expired))
    results = []
    for c in expired:
        results.append(await process_campaign_refunds(gs, adapter, c["id"]))
    return results
