# model/purchases.py
"""
Conflict-safe persistence of verified purchases.

A purchase row carries the external transaction id (Stripe session id,
on-chain tx hash) under a unique constraint. Writing the same proof twice
therefore fails in the database, not in application code; the loser of the
race re-reads the winner's row and reports it as an idempotent replay.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional, Sequence, Tuple, Type, Union

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import Conflict
from ..helpers import access_code, new_id, now_ts
from ..infra.sql import GatedAsyncSession
from .orm import CreditPurchase, PaymentProof, RewardClaim

log = logging.getLogger(__name__)

Unique = Union[str, Sequence[str]]


class ProofAlreadyUsed(Conflict):
    """The transaction already paid for a purchase of another kind."""
    default_message = "Transaction already processed"

    def __init__(self, proof: PaymentProof) -> None:
        super().__init__(extra={"tx_hash": proof.tx_hash})
        self.proof = proof


async def _select_by(gs: GatedAsyncSession, model: Type[Any],
                     values: Dict[str, Any], unique: Sequence[str]):
    cond = and_(*[getattr(model, c) == values[c] for c in unique])
    async with gs.gated():
        async with gs.session.begin():
            return (await gs.session.execute(
                select(model).where(cond)
            )).scalars().first()


async def insert_or_get(
    gs: GatedAsyncSession,
    model: Type[Any],
    values: Dict[str, Any],
    unique: Unique,
    proof: Optional[str] = None,
) -> Tuple[Any, bool]:
    """
    INSERT ``values``; on a unique violation return the row that already
    holds ``unique``. Returns ``(row, idempotent)``.

    With ``proof`` (an on-chain tx hash) a ``payment_proofs`` row is written
    in the same transaction, so one transaction can back one purchase only,
    across tables. Raises ``ProofAlreadyUsed`` when another table holds it.
    """
    cols = (unique,) if isinstance(unique, str) else tuple(unique)
    row = model(**values)
    rows = [row]
    if proof is not None:
        rows.append(PaymentProof(
            tx_hash=proof, record_table=model.__tablename__,
            record_id=values["id"], user_id=values["user_id"],
            created_at=now_ts(),
        ))
    try:
        async with gs.gated():
            async with gs.session.begin():
                gs.session.add_all(rows)
        return row, False
    except IntegrityError as e:
        # idempotent replay racing the first write
        await gs.session.rollback()
        existing = await _select_by(gs, model, values, cols)
        if existing is None and proof is not None:
            holder = await find_one(gs, PaymentProof, tx_hash=proof)
            if holder is not None:
                log.warning("[Persister] %s already backs %s %s", proof,
                            holder.record_table, holder.record_id)
                raise ProofAlreadyUsed(holder)
        if existing is None:
            # some other constraint failed
            log.error("[Persister] %s insert failed: %s",
                      model.__tablename__, e.orig)
            raise
        log.info("[Persister] %s already recorded for %s",
                 model.__tablename__,
                 ", ".join(f"{c}={values[c]}" for c in cols))
        return existing, True


async def find_one(gs: GatedAsyncSession, model: Type[Any],
                   **where: Any) -> Optional[Any]:
    return await _select_by(gs, model, where, tuple(where))


async def ensure_proof_unused(gs: GatedAsyncSession, tx_hash: str,
                              model: Type[Any]) -> None:
    """Refuse a tx hash that already paid for a row outside ``model``."""
    holder = await find_one(gs, PaymentProof, tx_hash=tx_hash)
    if holder is not None and holder.record_table != model.__tablename__:
        raise ProofAlreadyUsed(holder)


# ----------------------------
# Row builders
# ----------------------------
def credit_purchase_values(
    *, user_id: str, club_id: str, campaign_id: Optional[str], credits: int,
    price_paid_cents: int, payment_method: str,
    tx_hash: Optional[str] = None,
    stripe_session_id: Optional[str] = None,
    stripe_payment_intent_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "id": new_id(),
        "user_id": user_id,
        "club_id": club_id,
        "campaign_id": campaign_id,
        "credits_purchased": credits,
        "price_paid_cents": price_paid_cents,
        "payment_method": payment_method,
        "status": "completed",
        "tx_hash": tx_hash,
        "stripe_session_id": stripe_session_id,
        "stripe_payment_intent_id": stripe_payment_intent_id,
        "progress_pending": False,
        "meta": meta or {},
        "purchased_at": now_ts(),
    }


def reward_claim_values(
    *, user_id: str, club_id: str, reward_id: str,
    campaign_id: Optional[str], claim_method: str, payment_method: str,
    original_price_cents: int, paid_price_cents: int,
    discount_applied_cents: int = 0, quantity: int = 1,
    user_tier: str = "cadet", tickets_purchased: int = 0,
    usdc_tx_hash: Optional[str] = None,
    stripe_session_id: Optional[str] = None,
    stripe_payment_intent_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "id": new_id(),
        "user_id": user_id,
        "club_id": club_id,
        "reward_id": reward_id,
        "campaign_id": campaign_id,
        "claim_method": claim_method,
        "user_tier_at_claim": user_tier,
        "quantity": quantity,
        "original_price_cents": original_price_cents,
        "paid_price_cents": paid_price_cents,
        "discount_applied_cents": discount_applied_cents,
        "payment_method": payment_method,
        "usdc_tx_hash": usdc_tx_hash,
        "stripe_session_id": stripe_session_id,
        "stripe_payment_intent_id": stripe_payment_intent_id,
        "refund_status": "none",
        "access_status": "granted",
        "access_code": access_code(),
        "is_ticket_claim": tickets_purchased > 0,
        "tickets_purchased": tickets_purchased,
        "progress_pending": False,
        "meta": meta or {},
        "claimed_at": now_ts(),
    }


async def mark_progress_pending(gs: GatedAsyncSession, model: Type[Any],
                                row_id: str) -> None:
    """Flag a purchase whose campaign increment failed."""
    async with gs.gated():
        async with gs.session.begin():
            await gs.session.execute(
                update(model).where(model.id == row_id)
                .values(progress_pending=True)
            )


async def record_credit_purchase(gs: GatedAsyncSession, unique: Unique,
                                 proof: Optional[str] = None,
                                 **kw: Any) -> Tuple[CreditPurchase, bool]:
    return await insert_or_get(gs, CreditPurchase,
                               credit_purchase_values(**kw), unique, proof)


async def record_reward_claim(gs: GatedAsyncSession, unique: Unique,
                              proof: Optional[str] = None,
                              **kw: Any) -> Tuple[RewardClaim, bool]:
    return await insert_or_get(gs, RewardClaim,
                               reward_claim_values(**kw), unique, proof)
