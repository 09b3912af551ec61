import pytest

from superfans import config
from superfans.model import campaigns
from superfans.model.purchases import record_reward_claim
from superfans.sweep import main, run_sweep

PAST = 1_000_000_000.0


async def test_dry_run_lists_without_touching(gs, factory, fake_pay):
    club = await factory.club()
    expired = await factory.campaign(club.id, deadline=PAST)
    await factory.campaign(club.id)

    out = await run_sweep(config.DATABASE_URL, fake_pay, dry_run=True)
    assert [c["campaign_id"] for c in out] == [expired.id]
    row = await campaigns.get_campaign(gs, expired.id)
    assert row["status"] == campaigns.ACTIVE


async def test_sweep_refunds_and_fails(gs, factory, fake_pay):
    club = await factory.club()
    expired = await factory.campaign(club.id, deadline=PAST)
    await record_reward_claim(
        gs, ("stripe_session_id", "reward_id"),
        user_id="u1", club_id=club.id, reward_id="r1",
        campaign_id=expired.id, claim_method="upgrade_purchased",
        payment_method="stripe", original_price_cents=5000,
        paid_price_cents=5000, stripe_session_id="cs_1",
        stripe_payment_intent_id="pi_1",
    )

    out = await run_sweep(config.DATABASE_URL, fake_pay)
    assert len(out) == 1
    assert out[0]["refunded_count"] == 1
    assert out[0]["campaign_marked_failed"] is True
    row = await campaigns.get_campaign(gs, expired.id)
    assert row["status"] == campaigns.FAILED


async def test_sweep_single_campaign(gs, factory, fake_pay):
    club = await factory.club()
    campaign = await factory.campaign(club.id)
    out = await run_sweep(config.DATABASE_URL, fake_pay,
                          campaign_id=campaign.id)
    assert out[0]["campaign_id"] == campaign.id
    assert out[0]["success"] is True


def test_main_rejects_bad_timestamp():
    with pytest.raises(SystemExit):
        main(["--dry-run", "--now", "yesterday"])
