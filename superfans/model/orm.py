from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    privy_id = Column(String, nullable=True, unique=True)
    farcaster_id = Column(String, nullable=True, unique=True)
    email = Column(String, nullable=True)
    # user | admin
    role = Column(String, nullable=False, default="user")
    created_at = Column(Float, nullable=False)


class Club(Base):
    __tablename__ = "clubs"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    # receiving wallet for direct USDC transfers
    usdc_wallet_address = Column(String, nullable=True)
    # Metal purchases from this wallet were already counted via Stripe
    treasury_wallet_address = Column(String, nullable=True)
    metal_token_address = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class Campaign(Base):
    __tablename__ = "campaigns"
    id = Column(String, primary_key=True)
    club_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    funding_goal_cents = Column(Integer, nullable=False)
    # only ever changed through increment_progress()
    current_funding_cents = Column(Integer, nullable=False, default=0)
    received_cents = Column(Integer, nullable=False, default=0)
    total_tickets_sold = Column(Integer, nullable=False, default=0)
    ticket_price_cents = Column(Integer, nullable=False, default=1800)
    deadline = Column(Float, nullable=True)

    # draft | active | funded | failed
    status = Column(String, nullable=False, default="draft")
    metal_presale_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class TierReward(Base):
    __tablename__ = "tier_rewards"
    id = Column(String, primary_key=True)
    club_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    # cadet | resident | headliner | superfan
    tier = Column(String, nullable=False, default="cadet")
    reward_type = Column(String, nullable=False, default="access")
    upgrade_price_cents = Column(Integer, nullable=True)
    direct_unlock_price_cents = Column(Integer, nullable=True)
    # credit cost for campaign items
    ticket_cost = Column(Integer, nullable=True)
    is_ticket_campaign = Column(Boolean, nullable=False, default=False)
    campaign_id = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class CreditPurchase(Base):
    __tablename__ = "credit_purchases"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    club_id = Column(String, nullable=False)
    campaign_id = Column(String, nullable=True, index=True)
    credits_purchased = Column(Integer, nullable=False)
    price_paid_cents = Column(Integer, nullable=False)

    # stripe | usdc | metal_presale
    payment_method = Column(String, nullable=False)
    # completed | refunded
    status = Column(String, nullable=False, default="completed")

    # one row per external transaction
    tx_hash = Column(String, nullable=True, unique=True)
    stripe_session_id = Column(String, nullable=True, unique=True)
    stripe_payment_intent_id = Column(String, nullable=True)

    # progress update failed; reconcile out-of-band
    progress_pending = Column(Boolean, nullable=False, default=False)
    meta = Column("metadata", JSON, nullable=True)
    purchased_at = Column(Float, nullable=False)


class RewardClaim(Base):
    __tablename__ = "reward_claims"
    __table_args__ = (
        UniqueConstraint("stripe_session_id", "reward_id",
                         name="uq_reward_claims_session_reward"),
        Index("ix_reward_claims_campaign_refund", "campaign_id",
              "refund_status"),
    )
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    club_id = Column(String, nullable=False)
    reward_id = Column(String, nullable=False)
    campaign_id = Column(String, nullable=True)

    # metal_presale | cart_checkout | upgrade_purchased
    claim_method = Column(String, nullable=False)
    user_tier_at_claim = Column(String, nullable=False, default="cadet")
    quantity = Column(Integer, nullable=False, default=1)
    original_price_cents = Column(Integer, nullable=False)
    paid_price_cents = Column(Integer, nullable=False)
    discount_applied_cents = Column(Integer, nullable=False, default=0)

    # stripe | metal_presale
    payment_method = Column(String, nullable=False)
    usdc_tx_hash = Column(String, nullable=True, unique=True)
    stripe_session_id = Column(String, nullable=True)
    stripe_payment_intent_id = Column(String, nullable=True)

    # none | processed | failed
    refund_status = Column(String, nullable=False, default="none")
    refunded_at = Column(Float, nullable=True)
    stripe_refund_id = Column(String, nullable=True)

    # granted | revoked
    access_status = Column(String, nullable=False, default="granted")
    access_code = Column(String, nullable=False, unique=True)

    is_ticket_claim = Column(Boolean, nullable=False, default=False)
    tickets_purchased = Column(Integer, nullable=False, default=0)
    progress_pending = Column(Boolean, nullable=False, default=False)
    meta = Column("metadata", JSON, nullable=True)
    claimed_at = Column(Float, nullable=False)


class PaymentProof(Base):
    """
    Every on-chain transaction spent on a purchase, whichever table the
    purchase landed in. Written in the same transaction as the purchase row.
    """
    __tablename__ = "payment_proofs"
    tx_hash = Column(String, primary_key=True)
    # credit_purchases | reward_claims
    record_table = Column(String, nullable=False)
    record_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)


class UpgradeTransaction(Base):
    __tablename__ = "upgrade_transactions"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    club_id = Column(String, nullable=False)
    reward_id = Column(String, nullable=False)
    # tier_boost | direct_unlock
    purchase_type = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="usd")
    user_tier_at_purchase = Column(String, nullable=True)
    target_tier = Column(String, nullable=True)
    # tier boosts are limited to one per club and quarter
    quarter_year = Column(Integer, nullable=True)
    quarter_number = Column(Integer, nullable=True)

    # pending | completed | failed
    status = Column(String, nullable=False, default="pending")
    stripe_session_id = Column(String, nullable=False, unique=True)
    stripe_payment_intent_id = Column(String, nullable=True, index=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    stripe_event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    processing_attempts = Column(Integer, nullable=False, default=1)
    claimed_at = Column(Float, nullable=True)
    processed_at = Column(Float, nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
