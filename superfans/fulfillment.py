"""
Turning verified Stripe events into purchase rows and campaign progress.

Everything here runs behind the webhook event ledger, but must still be safe
to run twice: purchase rows are keyed by the checkout session id and an
upgrade moves pending -> completed exactly once.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Type

import orjson
from sqlalchemy import text

from . import config
from .errors import ValidationFailed
from .helpers import now_ts
from .infra.sql import GatedAsyncSession
from .model import campaigns
from .model.campaigns import ProgressOutcome
from .model.orm import CreditPurchase, RewardClaim, TierReward, \
    UpgradeTransaction
from .model.purchases import find_one, mark_progress_pending, \
    record_credit_purchase, record_reward_claim
from .stripepay import PaymentAdapter

log = logging.getLogger(__name__)

HANDLED_EVENTS = (
    "checkout.session.completed",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
)


class FulfillmentError(ValidationFailed):
    """The event is authentic but does not match what we expected."""


# ----------------------------
# Campaign progress
# ----------------------------
async def credit_campaign(
    gs: GatedAsyncSession, model: Type[Any], row_id: str, campaign_id: str,
    *, funding_cents: int, received_cents: int, tickets: int = 0,
) -> ProgressOutcome:
    outcome = await campaigns.apply_purchase(
        gs, campaign_id, funding_cents=funding_cents,
        received_cents=received_cents, tickets=tickets,
    )
    if outcome.error:
        try:
            await mark_progress_pending(gs, model, row_id)
        except Exception:
            log.exception("[Campaign Progress] could not flag %s %s for "
                          "reconciliation", model.__tablename__, row_id)
    return outcome


def progress_fields(outcome: Optional[ProgressOutcome]) -> Dict[str, Any]:
    if outcome is None:
        return {"campaign_updated": False, "campaign_funded": False,
                "partial_success": False, "campaign_update_error": None}
    return {
        "campaign_updated": outcome.updated,
        "campaign_funded": outcome.funded_now,
        "partial_success": outcome.partial_success,
        "campaign_update_error": outcome.error,
    }


# ----------------------------
# Checkout metadata
# ----------------------------
def _meta_int(meta: Dict[str, Any], name: str) -> int:
    try:
        return int(meta[name])
    except (KeyError, TypeError, ValueError):
        raise FulfillmentError(f"Session metadata missing {name}")


def _meta_str(meta: Dict[str, Any], name: str) -> str:
    v = meta.get(name)
    if not v:
        raise FulfillmentError(f"Session metadata missing {name}")
    return str(v)


def encode_cart_items(items: List[Dict[str, Any]]) -> str:
    """Compact form stored in the session metadata (500 char limit)."""
    return orjson.dumps([
        {"id": i["reward_id"], "q": i["quantity"], "u": i["unit_cents"],
         "o": i["original_cents"], "c": i["campaign_id"] or "",
         "t": i["tickets"]}
        for i in items
    ]).decode()


def decode_cart_items(raw: Optional[str]) -> List[Dict[str, Any]]:
    try:
        items = orjson.loads(raw or "[]")
        return [{
            "reward_id": str(i["id"]),
            "quantity": int(i["q"]),
            "unit_cents": int(i["u"]),
            "original_cents": int(i["o"]),
            "campaign_id": i.get("c") or None,
            "tickets": int(i.get("t") or 0),
        } for i in items]
    except (TypeError, ValueError, KeyError):
        raise FulfillmentError("Session metadata has malformed items")


def _payment_intent_id(obj: Dict[str, Any]) -> Optional[str]:
    pi = obj.get("payment_intent")
    if isinstance(pi, dict):
        return pi.get("id")
    return pi


def _check_amount(session: Dict[str, Any], expected: int) -> int:
    total = session.get("amount_total")
    if total is None:
        return expected
    if int(total) != expected:
        raise FulfillmentError(
            f"Session amount mismatch for {session['id']}: received "
            f"{total} cents, expected {expected} cents"
        )
    return int(total)


# ----------------------------
# checkout.session.completed
# ----------------------------
async def fulfill_credit_session(gs: GatedAsyncSession,
                                 session: Dict[str, Any],
                                 payment_intent: Optional[str]) -> None:
    meta = session.get("metadata") or {}
    credits = _meta_int(meta, "credit_amount")
    price = _check_amount(session, credits * config.CENTS_PER_CREDIT)
    campaign_id = meta.get("campaign_id") or None

    row, idempotent = await record_credit_purchase(
        gs, "stripe_session_id",
        user_id=_meta_str(meta, "user_id"),
        club_id=_meta_str(meta, "club_id"),
        campaign_id=campaign_id,
        credits=credits,
        price_paid_cents=price,
        payment_method="stripe",
        stripe_session_id=session["id"],
        stripe_payment_intent_id=payment_intent,
        meta={"idempotency_key": meta.get("idempotency_key")},
    )
    if idempotent:
        return
    log.info("[Stripe Fulfillment] %d credits for user %s (session %s)",
             credits, row.user_id, session["id"])
    if campaign_id:
        await credit_campaign(gs, CreditPurchase, row.id, campaign_id,
                              funding_cents=price, received_cents=price,
                              tickets=credits)


async def fulfill_cart_session(gs: GatedAsyncSession,
                               session: Dict[str, Any],
                               payment_intent: Optional[str]) -> None:
    meta = session.get("metadata") or {}
    user_id = _meta_str(meta, "user_id")
    club_id = _meta_str(meta, "club_id")
    credits = _meta_int(meta, "total_credits")
    items = decode_cart_items(meta.get("items"))
    expected = credits * config.CENTS_PER_CREDIT + sum(
        i["unit_cents"] * i["quantity"] for i in items
    )
    _check_amount(session, expected)

    if credits > 0:
        campaign_id = meta.get("campaign_id") or None
        price = credits * config.CENTS_PER_CREDIT
        row, idempotent = await record_credit_purchase(
            gs, "stripe_session_id",
            user_id=user_id, club_id=club_id, campaign_id=campaign_id,
            credits=credits, price_paid_cents=price, payment_method="stripe",
            stripe_session_id=session["id"],
            stripe_payment_intent_id=payment_intent,
            meta={"source": "cart_checkout",
                  "idempotency_key": meta.get("idempotency_key")},
        )
        if not idempotent and campaign_id:
            await credit_campaign(gs, CreditPurchase, row.id, campaign_id,
                                  funding_cents=price, received_cents=price,
                                  tickets=credits)

    for item in items:
        qty = item["quantity"]
        paid = item["unit_cents"] * qty
        original = item["original_cents"] * qty
        claim, idempotent = await record_reward_claim(
            gs, ("stripe_session_id", "reward_id"),
            user_id=user_id, club_id=club_id, reward_id=item["reward_id"],
            campaign_id=item["campaign_id"], claim_method="cart_checkout",
            payment_method="stripe", original_price_cents=original,
            paid_price_cents=paid,
            discount_applied_cents=max(0, original - paid),
            quantity=qty, user_tier=meta.get("user_tier") or "cadet",
            tickets_purchased=item["tickets"] * qty,
            stripe_session_id=session["id"],
            stripe_payment_intent_id=payment_intent,
        )
        if not idempotent and item["campaign_id"]:
            # campaign items count at their original price
            await credit_campaign(gs, RewardClaim, claim.id,
                                  item["campaign_id"], funding_cents=original,
                                  received_cents=paid,
                                  tickets=item["tickets"] * qty)

    log.info("[Stripe Fulfillment] cart %s: %d credits, %d items",
             session["id"], credits, len(items))


async def complete_upgrade(gs: GatedAsyncSession, tx: UpgradeTransaction,
                           payment_intent: str, *,
                           amount: Optional[int] = None,
                           currency: Optional[str] = None) -> bool:
    """
    Grant the reward for a paid upgrade. Returns True when this call moved
    the transaction out of ``pending``.
    """
    if tx.status != "pending":
        log.info("[Tier Upgrade] transaction %s is %s, skipping", tx.id,
                 tx.status)
        return False
    if amount is not None and int(amount) != int(tx.amount_cents):
        raise FulfillmentError(
            f"Payment amount mismatch for transaction {tx.id}: received "
            f"{amount} cents, expected {tx.amount_cents} cents"
        )
    expected_currency = tx.currency or config.CURRENCY
    if currency is not None and currency.lower() != expected_currency:
        raise FulfillmentError(
            f"Payment currency mismatch for transaction {tx.id}: received "
            f"{currency}, expected {expected_currency}"
        )

    reward = await find_one(gs, TierReward, id=tx.reward_id)
    campaign_id = reward.campaign_id if reward is not None else None
    tickets = 0
    if reward is not None and reward.is_ticket_campaign:
        tickets = int(reward.ticket_cost or 0)

    claim, _ = await record_reward_claim(
        gs, ("stripe_session_id", "reward_id"),
        user_id=tx.user_id, club_id=tx.club_id, reward_id=tx.reward_id,
        campaign_id=campaign_id, claim_method="upgrade_purchased",
        payment_method="stripe", original_price_cents=tx.amount_cents,
        paid_price_cents=tx.amount_cents,
        user_tier=tx.user_tier_at_purchase or "cadet",
        tickets_purchased=tickets,
        stripe_session_id=tx.stripe_session_id,
        stripe_payment_intent_id=payment_intent,
        meta={"purchase_type": tx.purchase_type,
              "upgrade_transaction_id": tx.id},
    )

    async with gs.gated():
        async with gs.session.begin():
            res = await gs.session.execute(text("""
                UPDATE upgrade_transactions
                   SET status = 'completed',
                       stripe_payment_intent_id = :pi,
                       completed_at = :now
                 WHERE id = :id AND status = 'pending'
            """), {"pi": payment_intent, "now": now_ts(), "id": tx.id})
    if res.rowcount != 1:
        return False

    log.info("[Tier Upgrade] completed %s for user %s (reward %s)", tx.id,
             tx.user_id, tx.reward_id)
    if campaign_id:
        await credit_campaign(gs, RewardClaim, claim.id, campaign_id,
                              funding_cents=tx.amount_cents,
                              received_cents=tx.amount_cents,
                              tickets=tickets)
    return True


async def on_checkout_completed(gs: GatedAsyncSession,
                                adapter: PaymentAdapter,
                                session: Dict[str, Any]) -> None:
    session_id = session["id"]
    if session.get("payment_status") not in (None, "paid",
                                             "no_payment_required"):
        log.info("[Stripe Fulfillment] session %s not paid yet (%s)",
                 session_id, session.get("payment_status"))
        return

    payment_intent = _payment_intent_id(session)
    if not payment_intent:
        full = await adapter.retrieve_session(session_id)
        payment_intent = _payment_intent_id(full)

    kind = (session.get("metadata") or {}).get("type")
    if kind == "direct_credit_purchase":
        await fulfill_credit_session(gs, session, payment_intent)
        return
    if kind == "cart_checkout":
        await fulfill_cart_session(gs, session, payment_intent)
        return

    tx = await find_one(gs, UpgradeTransaction, stripe_session_id=session_id)
    if tx is None:
        if kind == "tier_upgrade":
            raise FulfillmentError(
                f"Upgrade transaction not found for checkout session: "
                f"{session_id}"
            )
        log.info("[Stripe Fulfillment] ignoring session %s (type %s)",
                 session_id, kind)
        return
    if not payment_intent:
        raise FulfillmentError(
            f"No payment intent found for checkout session: {session_id}"
        )
    await complete_upgrade(gs, tx, payment_intent,
                           amount=session.get("amount_total"),
                           currency=session.get("currency"))


# ----------------------------
# payment_intent.*
# ----------------------------
async def _upgrade_for_intent(gs: GatedAsyncSession,
                              intent: Dict[str, Any]):
    tx = await find_one(gs, UpgradeTransaction,
                        stripe_payment_intent_id=intent["id"])
    session_id = (intent.get("metadata") or {}).get("stripe_session_id")
    if tx is None and session_id:
        tx = await find_one(gs, UpgradeTransaction,
                            stripe_session_id=session_id)
    return tx


async def on_payment_intent_succeeded(gs: GatedAsyncSession,
                                      intent: Dict[str, Any]) -> None:
    tx = await _upgrade_for_intent(gs, intent)
    if tx is None:
        if (intent.get("metadata") or {}).get("type") == "tier_upgrade":
            # checkout.session.completed links the intent; retry after it
            raise FulfillmentError(
                f"Upgrade transaction not found for payment intent: "
                f"{intent['id']}"
            )
        return
    await complete_upgrade(gs, tx, intent["id"],
                           amount=intent.get("amount_received"),
                           currency=intent.get("currency"))


async def on_payment_intent_failed(gs: GatedAsyncSession,
                                   intent: Dict[str, Any]) -> None:
    tx = await _upgrade_for_intent(gs, intent)
    if tx is None:
        return
    async with gs.gated():
        async with gs.session.begin():
            res = await gs.session.execute(text("""
                UPDATE upgrade_transactions
                   SET status = 'failed', stripe_payment_intent_id = :pi
                 WHERE id = :id AND status = 'pending'
            """), {"pi": intent["id"], "id": tx.id})
    if res.rowcount:
        log.info("[Tier Upgrade] payment %s failed, transaction marked "
                 "failed", intent["id"])


async def handle_event(gs: GatedAsyncSession, adapter: PaymentAdapter,
                       event: Dict[str, Any]) -> bool:
    """Returns False for event types we do not act on."""
    kind = adapter.event_kind(event)
    obj = (event.get("data") or {}).get("object") or {}
    if kind == "checkout.session.completed":
        await on_checkout_completed(gs, adapter, obj)
    elif kind == "payment_intent.succeeded":
        await on_payment_intent_succeeded(gs, obj)
    elif kind == "payment_intent.payment_failed":
        await on_payment_intent_failed(gs, obj)
    else:
        log.info("[Stripe Webhook] ignoring event type %s", kind)
        return False
    return True
