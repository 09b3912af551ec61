from __future__ import annotations
import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy import select

from . import config
from .auth import CurrentUser, is_admin, parse_authorization, resolve_user
from .chain import UsdcVerifier, normalize_tx_hash
from .errors import (
    ApiError, Conflict, Forbidden, NotFound, Retryable, ServerError,
    ValidationFailed, install_error_handlers,
)
from .fulfillment import (
    credit_campaign, encode_cart_items, handle_event, progress_fields,
)
from .helpers import (
    is_eth_address, is_non_negative_int, is_positive_int, new_id, now_ts,
    parse_iso, same_address, to_iso,
)
from .idempotency import (
    cart_checkout_key, client_key, credit_purchase_key, upgrade_key,
)
from .infra.sql import GatedAsyncSession, is_postgres, make_database
from .infra.timings import aggregates, timeit
from .metal import MetalClient, MetalError, verify_transaction
from .model import campaigns
from .model.orm import (
    Base, Campaign, Club, CreditPurchase, RewardClaim, TierReward,
    UpgradeTransaction,
)
from .model.purchases import (
    ensure_proof_unused, find_one, insert_or_get, record_credit_purchase,
    record_reward_claim,
)
from .model.refunds import (
    process_campaign_refunds, refund_stats, sweep_campaign_failures,
)
from .model.tiers import (
    PgTierOracle, StaticTierOracle, TierOracle, discounted_price,
)
from .model.webhookevents import (
    BACKEND as WEBHOOK_EVENTS_BACKEND, CLAIMED, WebhookEventStore, new_store,
)
from .saga import Saga, SagaFailed
from .stripepay import PaymentAdapter, StripePay, line_item

log = logging.getLogger(__name__)

# Stripe rejects metadata values longer than this
STRIPE_METADATA_VALUE_MAX = 500


database = make_database(config.DATABASE_URL)

adapter: PaymentAdapter = StripePay()

app = FastAPI(
    title="SuperFans",
    default_response_class=ORJSONResponse,
)
install_error_handlers(app)


# ----------------------------
# Dependencies
# ----------------------------
async def get_db() -> GatedAsyncSession:
    async with database.session() as gs:
        yield gs


def _http() -> httpx.AsyncClient:
    http = getattr(app.state, "http", None)
    if http is None:
        raise RuntimeError("HTTP client not initialized")
    return http


def payments() -> PaymentAdapter:
    return adapter


def usdc_verifier() -> UsdcVerifier:
    return UsdcVerifier(_http())


def metal_client() -> MetalClient:
    return MetalClient(_http())


def tier_oracle(gs: GatedAsyncSession = Depends(get_db)) -> TierOracle:
    if is_postgres(config.DATABASE_URL):
        return PgTierOracle(gs)
    return StaticTierOracle()


async def webhook_events() -> WebhookEventStore:
    if WEBHOOK_EVENTS_BACKEND == "pg":
        async with database.sessionmaker() as session:
            yield new_store(db=session, gated=database.gated)
    else:
        yield new_store(r=app.state.redis)


async def current_user(
    request: Request, gs: GatedAsyncSession = Depends(get_db),
) -> CurrentUser:
    identity = parse_authorization(request.headers.get("authorization"))
    return await resolve_user(gs, identity)


async def admin_user(
    user: CurrentUser = Depends(current_user),
) -> CurrentUser:
    if not is_admin(user):
        log.warning("[Admin] access denied for %s", user.identity.user_id)
        raise Forbidden()
    return user


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db = "PostgreSQL" if is_postgres(config.DATABASE_URL) else "SQLite"
    events = "PostgreSQL" if WEBHOOK_EVENTS_BACKEND == "pg" else "Redis"
    log.info("SuperFans is starting up (environment: %s)",
             config.ENVIRONMENT)
    log.info("   - Database: %s", db)
    log.info("   - Webhook events backend: %s", events)
    if not config.STRIPE_SECRET_KEY:
        log.warning("   - STRIPE_SECRET_KEY not set, checkouts will fail")


@app.on_event("startup")
async def _db_init():
    await database.create_all(Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if WEBHOOK_EVENTS_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _db_close():
    await database.dispose()


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


# ----------------------------
# Helpers
# ----------------------------
def _require_str(payload: Dict[str, Any], name: str) -> str:
    v = payload.get(name)
    if not v or not isinstance(v, str):
        raise ValidationFailed(f"{name} is required", field=name)
    return v


def _optional_str(payload: Dict[str, Any], name: str) -> Optional[str]:
    v = payload.get(name)
    if v is None or v == "":
        return None
    if not isinstance(v, str):
        raise ValidationFailed(f"{name} must be a string when provided",
                               field=name)
    return v


def _credit_amount(payload: Dict[str, Any]) -> int:
    v = payload.get("credit_amount")
    if not is_positive_int(v):
        raise ValidationFailed("credit_amount must be a positive integer",
                               field="credit_amount")
    if v > config.MAX_CREDITS_PER_PURCHASE:
        raise ValidationFailed(
            f"credit_amount must be at most "
            f"{config.MAX_CREDITS_PER_PURCHASE}", field="credit_amount",
        )
    return v


def _redirect_url(value: Any, field: str) -> str:
    """Relative paths or URLs on an allowed origin only."""
    if not value or not isinstance(value, str):
        raise ValidationFailed(f"{field} is required", field=field)
    if value.startswith("/") and not value.startswith("//"):
        return config.BASE_URL + value
    parts = urlsplit(value)
    origin = f"{parts.scheme}://{parts.netloc}"
    if (parts.scheme not in ("http", "https")
            or origin not in config.ALLOWED_REDIRECT_ORIGINS):
        raise ValidationFailed(f"{field} must be on an allowed origin",
                               field=field)
    return value


def _check_metadata(metadata: Dict[str, str]) -> Dict[str, str]:
    for k, v in metadata.items():
        if len(v) > STRIPE_METADATA_VALUE_MAX:
            raise ValidationFailed(f"Too much data for checkout ({k})")
    return metadata


async def _club(gs: GatedAsyncSession, club_id: str) -> Club:
    club = await find_one(gs, Club, id=club_id)
    if club is None:
        raise NotFound("Club not found")
    return club


async def _campaign_for_club(gs: GatedAsyncSession, campaign_id: str,
                             club_id: str) -> Dict[str, Any]:
    campaign = await campaigns.get_campaign(gs, campaign_id)
    if campaign is None or campaign["club_id"] != club_id:
        raise NotFound("Campaign not found")
    if campaign["status"] in (campaigns.DRAFT, campaigns.FAILED):
        raise ValidationFailed(
            f"Campaign is {campaign['status']} and not accepting purchases",
            field="campaign_id")
    return campaign


def _manual_resolution(e: SagaFailed, message: str,
                       **context: Any) -> ORJSONResponse:
    log.critical("[Saga %s] %s %s", e.saga, message, context)
    body = {
        "error": message,
        "details": str(e.error),
        "requires_manual_resolution": True,
        "failed_step": e.step,
        "compensation_errors": [
            {"step": c.step, "error": str(c.error)}
            for c in e.compensation_errors
        ],
    }
    body.update(context)
    return ORJSONResponse(body, status_code=500)


def _computed_status(c: Dict[str, Any], now: float) -> str:
    if c["status"] == campaigns.ACTIVE and c["deadline"] is not None \
            and c["deadline"] < now:
        return "expired"
    return c["status"]


# ----------------------------
# Health
# ----------------------------
@app.get("/healthz")
async def healthz():
    return {"ok": True}


# ----------------------------
# API: Campaign progress
# ----------------------------
@app.get("/api/campaigns/{campaign_id}")
async def get_campaign(campaign_id: str,
                       gs: GatedAsyncSession = Depends(get_db)):
    async with timeit("db.get_campaign"):
        row = await campaigns.get_campaign(gs, campaign_id)
    if row is None:
        raise NotFound("Campaign not found")

    async with gs.gated():
        async with gs.session.begin():
            rewards = (await gs.session.execute(
                select(TierReward).where(
                    TierReward.campaign_id == campaign_id,
                    TierReward.is_active.is_(True),
                ).order_by(TierReward.created_at)
            )).scalars().all()

    out = campaigns.progress_view(row)
    out["items"] = [{
        "id": r.id,
        "title": r.title,
        "description": r.description,
        "tier": r.tier,
        "credit_cost": r.ticket_cost,
        "upgrade_price_cents": r.upgrade_price_cents,
        "is_ticket_campaign": bool(r.is_ticket_campaign),
    } for r in rewards]
    return out


# ----------------------------
# API: Stripe checkouts
# ----------------------------
@app.post("/api/campaigns/credit-purchase")
async def create_credit_purchase(
    payload: dict,
    idempotency_key: Optional[str] = Header(None),
    user: CurrentUser = Depends(current_user),
    gs: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payments),
):
    club_id = _require_str(payload, "club_id")
    credits = _credit_amount(payload)
    success_url = _redirect_url(payload.get("success_url"), "success_url")
    cancel_url = _redirect_url(payload.get("cancel_url"), "cancel_url")

    club = await _club(gs, club_id)
    campaign = await campaigns.active_campaign_for_club(gs, club_id)
    if campaign is None:
        raise NotFound("No active campaign found for this club")

    key = client_key(idempotency_key) or credit_purchase_key(
        user_id=user.id, club_id=club_id, campaign_id=campaign["id"],
        credit_amount=credits, success_url=success_url,
        cancel_url=cancel_url,
    )
    metadata = _check_metadata({
        "type": "direct_credit_purchase",
        "user_id": user.id,
        "club_id": club_id,
        "campaign_id": campaign["id"],
        "credit_amount": str(credits),
        "idempotency_key": key,
    })

    async with timeit("checkout.credit_purchase"):
        session = await adapter.create_checkout_session(
            line_items=[line_item(
                f"{credits} Credits",
                f"Credits for {club.name} - {campaign['title']}",
                credits * config.CENTS_PER_CREDIT,
            )],
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            idempotency_key=key,
            customer_email=user.email,
            client_reference_id=user.id,
        )
    log.info("[Credit Purchase] session %s for %d credits (user %s)",
             session["session_id"], credits, user.id)
    return {
        "checkout_url": session["url"],
        "session_id": session["session_id"],
        "credit_amount": credits,
        "amount_cents": credits * config.CENTS_PER_CREDIT,
        "campaign_id": campaign["id"],
    }


def _cart_items(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        raise ValidationFailed("items must be an array", field="items")
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationFailed(
                f"Invalid item at index {i}: must be an object",
                field="items")
        rid = item.get("tier_reward_id")
        if not rid or not isinstance(rid, str):
            raise ValidationFailed(
                f"Invalid item at index {i}: tier_reward_id is required "
                "and must be a string", field="items")
        if not is_positive_int(item.get("quantity")):
            raise ValidationFailed(
                f"Invalid item at index {i} (tier_reward_id: {rid}): "
                "quantity must be a positive integer", field="items")
    return raw


@app.post("/api/campaigns/cart-checkout")
async def create_cart_checkout(
    payload: dict,
    idempotency_key: Optional[str] = Header(None),
    user: CurrentUser = Depends(current_user),
    gs: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payments),
    tiers: TierOracle = Depends(tier_oracle),
):
    club_id = _require_str(payload, "club_id")
    total_credits = payload.get("total_credits", 0)
    if not is_non_negative_int(total_credits):
        raise ValidationFailed("total_credits must be a non-negative integer",
                               field="total_credits")
    if total_credits > config.MAX_CREDITS_PER_PURCHASE:
        raise ValidationFailed(
            f"total_credits must be at most "
            f"{config.MAX_CREDITS_PER_PURCHASE}", field="total_credits")
    items = _cart_items(payload.get("items", []))
    if total_credits == 0 and not items:
        raise ValidationFailed("Cart is empty")
    success_url = _redirect_url(payload.get("success_url"), "success_url")
    cancel_url = _redirect_url(payload.get("cancel_url"), "cancel_url")

    club = await _club(gs, club_id)
    async with timeit("tiers.check"):
        qualification = await tiers.check(user.id, club_id, "superfan")
    user_tier = qualification.effective_tier or qualification.earned_tier

    # same reward twice in one cart is one line
    quantities: Dict[str, int] = {}
    for item in items:
        rid = item["tier_reward_id"]
        quantities[rid] = quantities.get(rid, 0) + item["quantity"]

    rewards: Dict[str, TierReward] = {}
    if quantities:
        async with gs.gated():
            async with gs.session.begin():
                rows = (await gs.session.execute(
                    select(TierReward).where(
                        TierReward.id.in_(list(quantities)))
                )).scalars().all()
        rewards = {r.id: r for r in rows}

    line_items = []
    priced = []
    credits_campaign = None
    if total_credits > 0:
        credits_campaign = await campaigns.active_campaign_for_club(
            gs, club_id)
        line_items.append(line_item(
            f"{total_credits} Credits", f"Credits for {club.name}",
            total_credits * config.CENTS_PER_CREDIT,
        ))

    for rid, qty in sorted(quantities.items()):
        reward = rewards.get(rid)
        if reward is None or reward.club_id != club_id \
                or not reward.is_active:
            raise ValidationFailed(
                f"Cart item not found: tier_reward_id {rid}", field="items")
        if reward.is_ticket_campaign and reward.campaign_id:
            if not is_positive_int(reward.ticket_cost):
                raise ValidationFailed(
                    f"Invalid credit campaign item {rid}: credit_cost must "
                    "be a positive integer", field="items")
            original = unit = reward.ticket_cost * config.CENTS_PER_CREDIT
            tickets = reward.ticket_cost
        else:
            base = reward.upgrade_price_cents
            if not is_positive_int(base):
                raise ValidationFailed(
                    f"Invalid tier pricing for {rid}: upgrade_price_cents "
                    "not set", field="items")
            original = base
            unit, _ = discounted_price(base, user_tier, reward.tier)
            tickets = 0
        if unit < config.STRIPE_MIN_UNIT_CENTS:
            raise ValidationFailed(
                f"Computed price for {rid} is below Stripe minimum ($0.50)",
                field="items")
        priced.append({
            "reward_id": rid, "quantity": qty, "unit_cents": unit,
            "original_cents": original, "campaign_id": reward.campaign_id,
            "tickets": tickets,
        })
        line_items.append(line_item(
            reward.title, reward.description or f"Item from {club.name}",
            unit, quantity=qty,
        ))

    total_cents = total_credits * config.CENTS_PER_CREDIT + sum(
        p["unit_cents"] * p["quantity"] for p in priced
    )
    key = client_key(idempotency_key) or cart_checkout_key(
        user_id=user.id, club_id=club_id, total_credits=total_credits,
        items=items, success_url=success_url, cancel_url=cancel_url,
    )
    metadata = _check_metadata({
        "type": "cart_checkout",
        "user_id": user.id,
        "club_id": club_id,
        "campaign_id": credits_campaign["id"] if credits_campaign else "",
        "total_credits": str(total_credits),
        "user_tier": user_tier,
        "item_count": str(len(priced)),
        "items": encode_cart_items(priced),
        "idempotency_key": key,
    })

    async with timeit("checkout.cart"):
        session = await adapter.create_checkout_session(
            line_items=line_items,
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            idempotency_key=key,
            customer_email=user.email,
            client_reference_id=user.id,
        )
    log.info("[Cart Checkout] session %s: %d credits, %d items, %d cents",
             session["session_id"], total_credits, len(priced), total_cents)
    return {
        "checkout_url": session["url"],
        "session_id": session["session_id"],
        "total_cents": total_cents,
        "user_tier": user_tier,
        "idempotency_key": key,
    }


@app.post("/api/clubs/{club_id}/tier-rewards/{reward_id}/upgrade")
async def purchase_upgrade(
    club_id: str,
    reward_id: str,
    payload: dict,
    idempotency_key: Optional[str] = Header(None),
    user: CurrentUser = Depends(current_user),
    gs: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payments),
    tiers: TierOracle = Depends(tier_oracle),
):
    purchase_type = payload.get("purchase_type")
    if purchase_type not in ("tier_boost", "direct_unlock"):
        raise ValidationFailed(
            "purchase_type must be 'tier_boost' or 'direct_unlock'",
            field="purchase_type")
    success_url = _redirect_url(payload.get("success_url"), "success_url")
    cancel_url = _redirect_url(payload.get("cancel_url"), "cancel_url")

    reward = await find_one(gs, TierReward, id=reward_id, club_id=club_id)
    if reward is None:
        raise NotFound("Reward not found")
    if not reward.is_active:
        raise ValidationFailed("Reward is not active")
    if purchase_type == "direct_unlock":
        price = reward.direct_unlock_price_cents or reward.upgrade_price_cents
    else:
        price = reward.upgrade_price_cents
    if not is_positive_int(price):
        raise ValidationFailed(f"No pricing available for {purchase_type}")
    if price < config.STRIPE_MIN_UNIT_CENTS:
        raise ValidationFailed("Price is below Stripe minimum ($0.50)")

    claimed = await find_one(gs, RewardClaim, user_id=user.id,
                             reward_id=reward_id)
    if claimed is not None:
        raise Conflict("You have already claimed this reward")

    async with timeit("tiers.check"):
        qualification = await tiers.check(user.id, club_id, reward.tier)
        year, quarter = await tiers.current_quarter()

    if purchase_type == "tier_boost":
        boost = await find_one(
            gs, UpgradeTransaction, user_id=user.id, club_id=club_id,
            purchase_type="tier_boost", status="completed",
            quarter_year=year, quarter_number=quarter,
        )
        if boost is not None:
            raise Conflict("You already have a tier boost for this quarter")

    club = await _club(gs, club_id)
    key = client_key(idempotency_key) or upgrade_key(
        user_id=user.id, club_id=club_id, reward_id=reward_id,
        purchase_type=purchase_type, amount_cents=price,
        success_url=success_url, cancel_url=cancel_url,
    )
    if purchase_type == "tier_boost":
        name = (f"{reward.tier.capitalize()} Boost (Q{quarter} {year}) - "
                f"{reward.title}")
        description = (f"Temporary {reward.tier} access for one free claim "
                       f"this quarter in {club.name}")
    else:
        name = f"Unlock: {reward.title}"
        description = f"Direct unlock of {reward.title} in {club.name}"
    metadata = _check_metadata({
        "type": "tier_upgrade",
        "user_id": user.id,
        "club_id": club_id,
        "reward_id": reward_id,
        "purchase_type": purchase_type,
        "user_tier": qualification.earned_tier,
        "target_tier": reward.tier,
        "quarter_year": str(year),
        "quarter_number": str(quarter),
        "idempotency_key": key,
    })

    async def create_session(_):
        async with timeit("checkout.upgrade"):
            return await adapter.create_checkout_session(
                line_items=[line_item(name, description, price, metadata={
                    "reward_id": reward_id, "purchase_type": purchase_type,
                })],
                metadata=metadata,
                success_url=success_url,
                cancel_url=cancel_url,
                idempotency_key=key,
                customer_email=user.email,
                client_reference_id=user.id,
            )

    async def expire_session(session):
        await adapter.expire_session(session["session_id"])

    async def record_transaction(results):
        session = results["create_session"]
        tx, _ = await insert_or_get(gs, UpgradeTransaction, {
            "id": new_id(),
            "user_id": user.id,
            "club_id": club_id,
            "reward_id": reward_id,
            "purchase_type": purchase_type,
            "amount_cents": price,
            "currency": config.CURRENCY,
            "user_tier_at_purchase": qualification.earned_tier,
            "target_tier": reward.tier,
            "quarter_year": year,
            "quarter_number": quarter,
            "status": "pending",
            "stripe_session_id": session["session_id"],
            "meta": {"idempotency_key": key},
            "created_at": now_ts(),
        }, "stripe_session_id")
        return tx

    saga = Saga("tier_upgrade_checkout")
    saga.step("create_session", create_session, compensate=expire_session)
    saga.step("record_transaction", record_transaction)
    try:
        results = await saga.run()
    except SagaFailed as e:
        if e.step == "create_session":
            if isinstance(e.error, ApiError):
                raise e.error
            raise ServerError("Failed to create checkout session")
        if e.requires_manual_resolution:
            session = e.results.get("create_session") or {}
            return _manual_resolution(
                e, "Failed to create transaction record and the checkout "
                   "session could not be expired",
                session_id=session.get("session_id"),
            )
        raise ServerError("Failed to create transaction record")

    session = results["create_session"]
    tx = results["record_transaction"]
    log.info("[Tier Upgrade] created %s checkout %s for user %s, reward %s",
             purchase_type, session["session_id"], user.id, reward_id)
    out = {
        "checkout_url": session["url"],
        "session_id": session["session_id"],
        "transaction_id": tx.id,
        "purchase_type": purchase_type,
        "amount_cents": price,
    }
    if purchase_type == "tier_boost":
        out["quarter"] = {"year": year, "quarter": quarter}
    return out


# ----------------------------
# API: USDC on-chain purchase
# ----------------------------
@app.post("/api/campaigns/usdc-purchase")
async def usdc_purchase(
    payload: dict,
    user: CurrentUser = Depends(current_user),
    gs: GatedAsyncSession = Depends(get_db),
    verifier: UsdcVerifier = Depends(usdc_verifier),
):
    # malformed hashes never reach the RPC endpoint
    tx_hash = normalize_tx_hash(payload.get("tx_hash"))
    club_id = _require_str(payload, "club_id")
    credits = _credit_amount(payload)
    campaign_id = _optional_str(payload, "campaign_id")

    club = await _club(gs, club_id)
    if not club.usdc_wallet_address:
        raise ValidationFailed("This club does not accept USDC payments yet")
    if campaign_id:
        campaign = await _campaign_for_club(gs, campaign_id, club_id)
    else:
        campaign = await campaigns.active_campaign_for_club(gs, club_id)

    existing = await find_one(gs, CreditPurchase, tx_hash=tx_hash)
    if existing is not None:
        if existing.user_id != user.id:
            raise Conflict("Transaction already processed")
        log.info("[USDC Purchase] %s already recorded", tx_hash)
        return {
            "success": True,
            "idempotent": True,
            "purchase_id": existing.id,
            "credits_purchased": existing.credits_purchased,
            "tx_hash": tx_hash,
            **progress_fields(None),
        }

    await ensure_proof_unused(gs, tx_hash, CreditPurchase)
    transfer = await verifier.verify_transfer(
        tx_hash, recipient=club.usdc_wallet_address, amount_units=credits,
    )

    price = credits * config.CENTS_PER_CREDIT
    row, idempotent = await record_credit_purchase(
        gs, "tx_hash", proof=tx_hash,
        user_id=user.id, club_id=club_id,
        campaign_id=campaign["id"] if campaign else None,
        credits=credits, price_paid_cents=price, payment_method="usdc",
        tx_hash=tx_hash,
        meta={"sender": transfer.sender,
              "block_number": transfer.block_number,
              "raw_amount": str(transfer.raw_amount)},
    )
    if idempotent and row.user_id != user.id:
        raise Conflict("Transaction already processed")

    outcome = None
    if campaign and not idempotent:
        outcome = await credit_campaign(
            gs, CreditPurchase, row.id, campaign["id"],
            funding_cents=price, received_cents=price, tickets=credits,
        )
    log.info("[USDC Purchase] %d credits for user %s (tx %s)", credits,
             user.id, tx_hash)
    return {
        "success": True,
        "idempotent": idempotent,
        "purchase_id": row.id,
        "credits_purchased": row.credits_purchased,
        "tx_hash": tx_hash,
        "message": f"Successfully purchased {credits} credits with USDC",
        **progress_fields(outcome),
    }


# ----------------------------
# API: Metal presale purchases
# ----------------------------
def _metal_fields(payload: Dict[str, Any]):
    tx_hash = normalize_tx_hash(payload.get("tx_hash"))
    holder_id = payload.get("metal_holder_id")
    if not holder_id or not isinstance(holder_id, str):
        raise ValidationFailed(
            "metal_holder_id is required for Metal transaction verification",
            field="metal_holder_id")
    holder_address = payload.get("metal_holder_address")
    if holder_address is not None and not is_eth_address(holder_address):
        raise ValidationFailed(
            "metal_holder_address must be a valid Ethereum address (0x "
            "followed by 40 hex characters)", field="metal_holder_address")
    return tx_hash, holder_id, holder_address


@app.post("/api/metal/record-purchase")
async def metal_record_purchase(
    payload: dict,
    user: CurrentUser = Depends(current_user),
    gs: GatedAsyncSession = Depends(get_db),
    metal: MetalClient = Depends(metal_client),
):
    club_id = _require_str(payload, "club_id")
    campaign_id = _optional_str(payload, "campaign_id")
    credits = _credit_amount(payload)
    tx_hash, holder_id, holder_address = _metal_fields(payload)

    club = await _club(gs, club_id)
    campaign = None
    if campaign_id:
        campaign = await campaigns.get_campaign(gs, campaign_id)
        if campaign is None:
            log.warning("[Metal Credit Purchase] campaign %s not found, "
                        "recording as direct credit purchase", campaign_id)

    existing = await find_one(gs, CreditPurchase, tx_hash=tx_hash)
    if existing is not None:
        if existing.user_id != user.id:
            raise Conflict("Transaction already processed")
        return {
            "success": True,
            "idempotent": True,
            "message": "Purchase already recorded",
            "purchase_id": existing.id,
            "credits_purchased": existing.credits_purchased,
            **progress_fields(None),
        }

    price = credits * config.CENTS_PER_CREDIT
    await ensure_proof_unused(gs, tx_hash, CreditPurchase)
    await verify_transaction(metal, holder_id=holder_id, tx_hash=tx_hash,
                             expected_amount_usdc=price / 100)

    row, idempotent = await record_credit_purchase(
        gs, "tx_hash", proof=tx_hash,
        user_id=user.id, club_id=club_id,
        campaign_id=campaign["id"] if campaign else None,
        credits=credits, price_paid_cents=price,
        payment_method="metal_presale", tx_hash=tx_hash,
        meta={"campaign_title": campaign["title"] if campaign else None,
              "club_name": club.name,
              "metal_holder_id": holder_id,
              "metal_holder_address": holder_address},
    )

    # treasury purchases mirror Stripe sales that were already counted
    treasury = same_address(holder_address, club.treasury_wallet_address)
    if treasury:
        log.info("[Metal Credit Purchase] treasury purchase %s, not counted "
                 "toward campaign", tx_hash)

    outcome = None
    if campaign and not treasury and not idempotent:
        outcome = await credit_campaign(
            gs, CreditPurchase, row.id, campaign["id"],
            funding_cents=price, received_cents=price, tickets=credits,
        )
    return {
        "success": True,
        "idempotent": idempotent,
        "purchase_id": row.id,
        "credits_purchased": row.credits_purchased,
        "treasury_purchase": treasury,
        **progress_fields(outcome),
    }


@app.post("/api/metal/purchase-item")
async def metal_purchase_item(
    payload: dict,
    user: CurrentUser = Depends(current_user),
    gs: GatedAsyncSession = Depends(get_db),
    metal: MetalClient = Depends(metal_client),
):
    reward_id = _require_str(payload, "tier_reward_id")
    club_id = _require_str(payload, "club_id")
    paid = payload.get("amount_paid_cents")
    if not is_positive_int(paid):
        raise ValidationFailed("amount_paid_cents must be a positive integer",
                               field="amount_paid_cents")
    for name in ("original_price_cents", "discount_applied_cents"):
        if name in payload and not is_non_negative_int(payload[name]):
            raise ValidationFailed(f"{name} must be a non-negative integer",
                                   field=name)
    campaign_id = _optional_str(payload, "campaign_id")
    tx_hash, holder_id, holder_address = _metal_fields(payload)

    reward = await find_one(gs, TierReward, id=reward_id)
    if reward is None or reward.club_id != club_id:
        raise NotFound("Tier reward not found")
    campaign_id = campaign_id or reward.campaign_id

    is_credit_item = bool(reward.is_ticket_campaign and reward.campaign_id)
    tickets = int(reward.ticket_cost or 0) if is_credit_item else 0
    if is_credit_item:
        original = tickets * config.CENTS_PER_CREDIT
    else:
        original = (reward.upgrade_price_cents
                    or payload.get("original_price_cents") or paid)

    existing = await find_one(gs, RewardClaim, usdc_tx_hash=tx_hash)
    if existing is not None:
        if existing.user_id != user.id:
            raise Conflict("Transaction already processed")
        return {
            "success": True,
            "idempotent": True,
            "message": "Purchase already recorded",
            "claim_id": existing.id,
            "access_code": existing.access_code,
            "tier_reward_title": reward.title,
            **progress_fields(None),
        }

    await ensure_proof_unused(gs, tx_hash, RewardClaim)
    await verify_transaction(metal, holder_id=holder_id, tx_hash=tx_hash,
                             expected_amount_usdc=paid / 100)

    claim, idempotent = await record_reward_claim(
        gs, "usdc_tx_hash", proof=tx_hash,
        user_id=user.id, club_id=club_id, reward_id=reward_id,
        campaign_id=campaign_id, claim_method="metal_presale",
        payment_method="metal_presale", original_price_cents=original,
        paid_price_cents=paid,
        discount_applied_cents=max(0, original - paid),
        user_tier=payload.get("user_tier") or "cadet",
        tickets_purchased=tickets, usdc_tx_hash=tx_hash,
        meta={"metal_holder_id": holder_id,
              "metal_holder_address": holder_address},
    )

    outcome = None
    if campaign_id and not idempotent:
        outcome = await credit_campaign(
            gs, RewardClaim, claim.id, campaign_id,
            funding_cents=original, received_cents=paid, tickets=tickets,
        )
    log.info("[Metal Item Purchase] %s for user %s (tx %s)", reward.title,
             user.id, tx_hash)
    return {
        "success": True,
        "idempotent": idempotent,
        "claim_id": claim.id,
        "access_code": claim.access_code,
        "tier_reward_title": reward.title,
        **progress_fields(outcome),
    }


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    gs: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payments),
    events: WebhookEventStore = Depends(webhook_events),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_kind(event)
    event_id, _ = adapter.event_ids(event)
    if not event_id:
        raise ValidationFailed("missing event id")

    async with timeit("webhookevents.claim"):
        state = await events.claim(event_id, kind)
    if state != CLAIMED:
        log.info("[Stripe Webhook] event %s already %s", event_id, state)
        return {"received": True, "duplicate": True, "state": state}

    try:
        async with timeit(f"webhook.{kind}"):
            handled = await handle_event(gs, adapter, event)
    except ApiError as e:
        log.warning("[Stripe Webhook] event %s (%s) failed: %s", event_id,
                    kind, e.message)
        await events.finish(event_id, error=e.message)
        if isinstance(e, Retryable):
            raise
        return ORJSONResponse(
            {"error": "Event processing failed", "details": e.message},
            status_code=400,
        )
    except Exception as e:
        log.exception("[Stripe Webhook] event %s (%s) crashed", event_id,
                      kind)
        await events.finish(event_id, error=str(e) or type(e).__name__)
        raise ServerError("Webhook processing failed")

    async with timeit("webhookevents.finish"):
        await events.finish(event_id)
    return {"received": True, "handled": handled}


# ----------------------------
# Admin: campaigns
# ----------------------------
@app.get("/api/admin/campaigns")
async def admin_list_campaigns(
    limit: int = 200,
    admin: CurrentUser = Depends(admin_user),
    gs: GatedAsyncSession = Depends(get_db),
):
    rows = await campaigns.list_campaigns(gs, limit=max(1, min(limit, 500)))
    return {"items": [campaigns.progress_view(r) for r in rows],
            "limit": limit}


@app.post("/api/admin/campaigns", status_code=201)
async def admin_create_campaign(
    payload: dict,
    admin: CurrentUser = Depends(admin_user),
    gs: GatedAsyncSession = Depends(get_db),
):
    club_id = _require_str(payload, "club_id")
    title = _require_str(payload, "title")
    goal = payload.get("funding_goal_cents")
    if not is_positive_int(goal):
        raise ValidationFailed("funding_goal_cents must be a positive integer",
                               field="funding_goal_cents")
    ticket_price = payload.get("ticket_price_cents",
                               config.DEFAULT_TICKET_PRICE_CENTS)
    if not is_positive_int(ticket_price):
        raise ValidationFailed("ticket_price_cents must be a positive integer",
                               field="ticket_price_cents")
    try:
        deadline = parse_iso(_optional_str(payload, "deadline"))
    except ValueError:
        raise ValidationFailed("deadline must be an ISO 8601 timestamp",
                               field="deadline")
    await _club(gs, club_id)

    now = now_ts()
    campaign = Campaign(
        id=new_id(),
        club_id=club_id,
        title=title,
        description=_optional_str(payload, "description"),
        funding_goal_cents=goal,
        current_funding_cents=0,
        received_cents=0,
        total_tickets_sold=0,
        ticket_price_cents=ticket_price,
        deadline=deadline,
        status=campaigns.DRAFT,
        created_at=now,
        updated_at=now,
    )
    async with gs.gated():
        async with gs.session.begin():
            gs.session.add(campaign)
    log.info("[Admin] campaign %s created for club %s by %s", campaign.id,
             club_id, admin.identity.user_id)
    return campaigns.progress_view(await campaigns.get_campaign(
        gs, campaign.id))


@app.post("/api/admin/campaigns/{campaign_id}/activate")
async def admin_activate_campaign(
    campaign_id: str,
    payload: Optional[dict] = None,
    admin: CurrentUser = Depends(admin_user),
    gs: GatedAsyncSession = Depends(get_db),
    metal: MetalClient = Depends(metal_client),
):
    payload = payload or {}
    campaign = await campaigns.get_campaign(gs, campaign_id)
    if campaign is None:
        raise NotFound("Campaign not found")
    if campaign["status"] != campaigns.DRAFT:
        raise Conflict(f"Campaign is {campaign['status']}, only draft "
                       "campaigns can be activated")

    saga = Saga("activate_campaign")
    if payload.get("create_presale") and not campaign["metal_presale_id"]:
        club = await _club(gs, campaign["club_id"])
        if not club.metal_token_address:
            raise ValidationFailed("Club has no Metal token address",
                                   field="create_presale")
        price = payload.get("price", 1.0)
        if isinstance(price, bool) or not isinstance(price, (int, float)) \
                or price <= 0:
            raise ValidationFailed("price must be a positive number",
                                   field="price")

        async def create_presale(_):
            return await metal.create_presale(
                campaign_id=campaign_id,
                token_address=club.metal_token_address,
                price=price,
                total_supply=payload.get("total_supply"),
                lock_duration=payload.get("lock_duration"),
            )

        async def resolve_presale(presale):
            await metal.resolve_presale(presale.id)

        async def store_presale_id(results):
            await campaigns.set_presale_id(gs, campaign_id,
                                           results["create_presale"].id)

        async def clear_presale_id(_):
            await campaigns.set_presale_id(gs, campaign_id, None)

        saga.step("create_presale", create_presale, compensate=resolve_presale)
        saga.step("store_presale_id", store_presale_id,
                  compensate=clear_presale_id)

    async def activate(_):
        if not await campaigns.activate(gs, campaign_id):
            raise Conflict("Campaign is no longer in draft")

    saga.step("activate", activate)
    try:
        results = await saga.run()
    except SagaFailed as e:
        presale = e.results.get("create_presale")
        if e.requires_manual_resolution:
            return _manual_resolution(
                e, "Campaign activation failed and the Metal presale could "
                   "not be resolved",
                campaign_id=campaign_id,
                presale_id=presale.id if presale else None,
            )
        if isinstance(e.error, ApiError):
            raise e.error
        if isinstance(e.error, MetalError):
            cls = Retryable if e.error.retryable else ServerError
            raise cls("Failed to create Metal presale", details=str(e.error))
        raise ServerError("Campaign activation failed")

    presale = results.get("create_presale")
    log.info("[Admin] campaign %s activated by %s (presale %s)", campaign_id,
             admin.identity.user_id, presale.id if presale else None)
    out = campaigns.progress_view(await campaigns.get_campaign(
        gs, campaign_id))
    out["presale_created"] = presale is not None
    return out


@app.get("/api/admin/campaigns/status")
async def admin_campaigns_status(
    admin: CurrentUser = Depends(admin_user),
    gs: GatedAsyncSession = Depends(get_db),
):
    rows = await campaigns.list_campaigns(gs, limit=1000)
    stats = await refund_stats(gs)
    now = now_ts()

    items = []
    summary = {"total": 0, "draft": 0, "active": 0, "funded": 0,
               "failed": 0, "expired": 0}
    for r in rows:
        view = campaigns.progress_view(r)
        view["computed_status"] = _computed_status(r, now)
        view["refund_stats"] = stats.get(r["id"], {
            "total_participants": 0, "refunded": 0, "pending_refunds": 0,
            "failed_refunds": 0,
        })
        summary["total"] += 1
        summary[view["computed_status"]] = \
            summary.get(view["computed_status"], 0) + 1
        items.append(view)
    return {"summary": summary, "campaigns": items,
            "generated_at": to_iso(now)}


@app.post("/api/admin/campaigns/{campaign_id}/refund")
async def admin_refund_campaign(
    campaign_id: str,
    admin: CurrentUser = Depends(admin_user),
    gs: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payments),
):
    campaign = await campaigns.get_campaign(gs, campaign_id)
    if campaign is None:
        raise NotFound("Campaign not found")
    expired = campaign["deadline"] is not None \
        and campaign["deadline"] < now_ts()
    if campaign["status"] == campaigns.FUNDED or not (
            campaign["status"] == campaigns.FAILED or expired):
        raise ValidationFailed(
            "Campaign is not eligible for refunds (must be failed or past "
            "its deadline without reaching the goal)")

    log.info("[Admin] refunds for campaign %s requested by %s", campaign_id,
             admin.identity.user_id)
    async with timeit("refunds.campaign"):
        result = await process_campaign_refunds(gs, adapter, campaign_id)
    return result.as_dict()


@app.post("/api/admin/process-campaign-failures")
async def admin_process_campaign_failures(
    admin: CurrentUser = Depends(admin_user),
    gs: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payments),
):
    async with timeit("refunds.sweep"):
        results = await sweep_campaign_failures(gs, adapter)
    return {
        "processed": len(results),
        "results": [r.as_dict() for r in results],
    }


@app.get("/api/admin/timings")
async def admin_timings(admin: CurrentUser = Depends(admin_user)):
    return {"timings": aggregates()}
