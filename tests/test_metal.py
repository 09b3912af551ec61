import json

import httpx
import pytest
from sqlalchemy import select

from superfans import server
from superfans.errors import Retryable, ServerError, ValidationFailed
from superfans.metal import MetalClient, MetalError, verify_transaction
from superfans.model import campaigns
from superfans.model.orm import CreditPurchase, PaymentProof, RewardClaim

FAN = {"Authorization": "Farcaster farcaster:42"}

TX = "0x" + "b2" * 32
HOLDER = "holder-42"
HOLDER_ADDRESS = "0x" + "34" * 20
TREASURY_WALLET = "0x" + "cd" * 20


def metal_tx(amount="10.00", status="success", tx_hash=TX):
    return {"transactionHash": tx_hash, "amount": amount, "status": status}


class MetalApi:
    def __init__(self, txs=None, holder_status=200, resolve_status=200):
        self.txs = [] if txs is None else txs
        self.holder_status = holder_status
        self.resolve_status = resolve_status
        self.requests = []

    def __call__(self, request):
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append({"method": request.method, "path": path,
                              "key": request.headers.get("x-api-key"),
                              "json": body})
        if path.endswith("/transactions"):
            if self.holder_status != 200:
                return httpx.Response(self.holder_status,
                                      json={"message": "holder lookup"})
            return httpx.Response(200, json=self.txs)
        if path == "/merchant/presale":
            return httpx.Response(200, json={"id": f"presale-{body['id']}",
                                             "status": "active"})
        if path == "/merchant/presale/resolve":
            if self.resolve_status != 200:
                return httpx.Response(self.resolve_status,
                                      json={"message": "resolve failed"})
            return httpx.Response(200, json={"id": body["presaleId"],
                                             "status": "resolved"})
        return httpx.Response(404, json={"message": "no route"})

    def client(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return MetalClient(http, base_url="https://metal.test",
                           secret_key="sk_metal", public_key="pk_metal")

    def calls(self, suffix):
        return [r for r in self.requests if r["path"].endswith(suffix)]


# ----------------------------
# verify_transaction
# ----------------------------
async def test_verify_matches_hash_case_insensitively():
    api = MetalApi([metal_tx(tx_hash=TX.upper().replace("0X", "0x"))])
    match = await verify_transaction(api.client(), holder_id=HOLDER,
                                     tx_hash=TX[2:], expected_amount_usdc=10)
    assert match["amount"] == "10.00"
    assert api.requests[0]["key"] == "sk_metal"
    assert api.requests[0]["path"] == f"/holder/{HOLDER}/transactions"


async def test_verify_amount_within_tolerance():
    api = MetalApi([metal_tx(amount="10.005")])
    await verify_transaction(api.client(), holder_id=HOLDER, tx_hash=TX,
                             expected_amount_usdc=10)


@pytest.mark.parametrize("tx, exc", [
    (metal_tx(amount="10.50"), ValidationFailed),
    (metal_tx(status="pending"), ValidationFailed),
    (metal_tx(status=None), ValidationFailed),
    (metal_tx(tx_hash="0x" + "00" * 32), ValidationFailed),
])
async def test_verify_rejections(tx, exc):
    with pytest.raises(exc):
        await verify_transaction(MetalApi([tx]).client(), holder_id=HOLDER,
                                 tx_hash=TX, expected_amount_usdc=10)


@pytest.mark.parametrize("status, exc", [
    (404, ValidationFailed),
    (429, Retryable),
    (500, Retryable),
    (401, ServerError),
])
async def test_verify_provider_errors(status, exc):
    api = MetalApi(holder_status=status)
    with pytest.raises(exc):
        await verify_transaction(api.client(), holder_id=HOLDER, tx_hash=TX,
                                 expected_amount_usdc=10)


async def test_client_requires_key():
    http = httpx.AsyncClient(transport=httpx.MockTransport(MetalApi()))
    client = MetalClient(http, base_url="https://metal.test", secret_key="")
    with pytest.raises(MetalError) as info:
        await client.get_holder_transactions(HOLDER)
    assert info.value.kind == "AUTHENTICATION_ERROR"


async def test_create_and_resolve_presale():
    api = MetalApi()
    client = api.client()
    presale = await client.create_presale(campaign_id="camp-1",
                                          token_address="0xtoken", price=1.5)
    assert presale.id == "presale-camp-1"
    assert api.requests[0]["json"] == {"id": "camp-1",
                                       "tokenAddress": "0xtoken",
                                       "price": 1.5}
    resolved = await client.resolve_presale(presale.id)
    assert resolved.status == "resolved"


# ----------------------------
# POST /api/metal/record-purchase
# ----------------------------
@pytest.fixture
async def metal_setup(factory):
    club = await factory.club(treasury_wallet_address=TREASURY_WALLET)
    campaign = await factory.campaign(club.id)
    return club, campaign


def _use(api):
    server.app.dependency_overrides[server.metal_client] = api.client


async def test_record_purchase_credits_campaign(client, gs, metal_setup):
    club, campaign = metal_setup
    api = MetalApi([metal_tx(amount="15")])
    _use(api)

    r = await client.post("/api/metal/record-purchase", headers=FAN, json={
        "club_id": club.id, "campaign_id": campaign.id, "credit_amount": 15,
        "tx_hash": TX, "metal_holder_id": HOLDER,
        "metal_holder_address": HOLDER_ADDRESS,
    })
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["campaign_updated"] is True
    assert body["treasury_purchase"] is False
    row = await campaigns.get_campaign(gs, campaign.id)
    assert row["current_funding_cents"] == 1500
    assert row["total_tickets_sold"] == 15


async def test_record_purchase_from_treasury_is_not_counted(client, gs,
                                                            metal_setup):
    club, campaign = metal_setup
    _use(MetalApi([metal_tx(amount="15")]))

    r = await client.post("/api/metal/record-purchase", headers=FAN, json={
        "club_id": club.id, "campaign_id": campaign.id, "credit_amount": 15,
        "tx_hash": TX, "metal_holder_id": HOLDER,
        "metal_holder_address": TREASURY_WALLET.upper().replace("0X", "0x"),
    })
    assert r.status_code == 200, r.text
    assert r.json()["treasury_purchase"] is True
    assert r.json()["campaign_updated"] is False
    row = await campaigns.get_campaign(gs, campaign.id)
    assert row["current_funding_cents"] == 0

    async with gs.gated():
        async with gs.session.begin():
            purchase = (await gs.session.execute(
                select(CreditPurchase))).scalars().one()
    assert purchase.payment_method == "metal_presale"
    assert purchase.tx_hash == TX


async def test_record_purchase_duplicate(client, gs, metal_setup):
    club, campaign = metal_setup
    api = MetalApi([metal_tx(amount="15")])
    _use(api)
    payload = {"club_id": club.id, "campaign_id": campaign.id,
               "credit_amount": 15, "tx_hash": TX, "metal_holder_id": HOLDER}

    first = await client.post("/api/metal/record-purchase", headers=FAN,
                              json=payload)
    second = await client.post("/api/metal/record-purchase", headers=FAN,
                               json=payload)
    assert first.status_code == second.status_code == 200
    assert second.json()["idempotent"] is True
    assert second.json()["purchase_id"] == first.json()["purchase_id"]
    assert len(api.calls("/transactions")) == 1
    row = await campaigns.get_campaign(gs, campaign.id)
    assert row["current_funding_cents"] == 1500


async def test_record_purchase_amount_mismatch(client, gs, metal_setup):
    club, campaign = metal_setup
    _use(MetalApi([metal_tx(amount="14")]))

    r = await client.post("/api/metal/record-purchase", headers=FAN, json={
        "club_id": club.id, "campaign_id": campaign.id, "credit_amount": 15,
        "tx_hash": TX, "metal_holder_id": HOLDER,
    })
    assert r.status_code == 400
    async with gs.gated():
        async with gs.session.begin():
            rows = (await gs.session.execute(
                select(CreditPurchase))).scalars().all()
    assert rows == []


async def test_record_purchase_validates_holder_address(client,
                                                        metal_setup):
    club, _ = metal_setup
    _use(MetalApi())
    r = await client.post("/api/metal/record-purchase", headers=FAN, json={
        "club_id": club.id, "credit_amount": 1, "tx_hash": TX,
        "metal_holder_id": HOLDER, "metal_holder_address": "0x1234",
    })
    assert r.status_code == 400
    assert r.json()["field"] == "metal_holder_address"


# ----------------------------
# POST /api/metal/purchase-item
# ----------------------------
async def test_purchase_item_for_credit_campaign(client, gs, factory,
                                                 metal_setup):
    club, campaign = metal_setup
    reward = await factory.reward(club.id, title="Show Ticket",
                                  upgrade_price_cents=None, ticket_cost=18,
                                  is_ticket_campaign=True,
                                  campaign_id=campaign.id)
    _use(MetalApi([metal_tx(amount="18")]))

    r = await client.post("/api/metal/purchase-item", headers=FAN, json={
        "tier_reward_id": reward.id, "club_id": club.id,
        "amount_paid_cents": 1800, "tx_hash": TX, "metal_holder_id": HOLDER,
    })
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["access_code"].startswith("AC")
    assert body["tier_reward_title"] == "Show Ticket"
    assert body["campaign_updated"] is True

    row = await campaigns.get_campaign(gs, campaign.id)
    assert row["current_funding_cents"] == 1800
    assert row["total_tickets_sold"] == 18

    async with gs.gated():
        async with gs.session.begin():
            claim = (await gs.session.execute(
                select(RewardClaim))).scalars().one()
    assert claim.is_ticket_claim
    assert claim.claim_method == "metal_presale"


async def test_purchase_item_counts_original_price(client, gs, factory,
                                                   metal_setup):
    club, campaign = metal_setup
    reward = await factory.reward(club.id, upgrade_price_cents=5000,
                                  campaign_id=campaign.id)
    _use(MetalApi([metal_tx(amount="45")]))

    r = await client.post("/api/metal/purchase-item", headers=FAN, json={
        "tier_reward_id": reward.id, "club_id": club.id,
        "amount_paid_cents": 4500, "tx_hash": TX, "metal_holder_id": HOLDER,
        "user_tier": "resident",
    })
    assert r.status_code == 200, r.text
    row = await campaigns.get_campaign(gs, campaign.id)
    assert row["current_funding_cents"] == 5000
    assert row["received_cents"] == 4500

    second = await client.post("/api/metal/purchase-item", headers=FAN,
                               json={
        "tier_reward_id": reward.id, "club_id": club.id,
        "amount_paid_cents": 4500, "tx_hash": TX, "metal_holder_id": HOLDER,
    })
    assert second.json()["idempotent"] is True
    assert second.json()["access_code"] == r.json()["access_code"]


async def test_purchase_item_unknown_reward(client, metal_setup):
    club, _ = metal_setup
    _use(MetalApi())
    r = await client.post("/api/metal/purchase-item", headers=FAN, json={
        "tier_reward_id": "missing", "club_id": club.id,
        "amount_paid_cents": 100, "tx_hash": TX, "metal_holder_id": HOLDER,
    })
    assert r.status_code == 404


# ----------------------------
# One tx hash, one purchase
# ----------------------------
async def _all(gs, model):
    async with gs.gated():
        async with gs.session.begin():
            return (await gs.session.execute(select(model))).scalars().all()


@pytest.mark.parametrize("first", ["credits", "item"])
async def test_tx_hash_cannot_pay_for_credits_and_item(client, gs, factory,
                                                       metal_setup, first):
    club, campaign = metal_setup
    reward = await factory.reward(club.id, upgrade_price_cents=1000,
                                  campaign_id=campaign.id)
    api = MetalApi([metal_tx(amount="10")])
    _use(api)
    requests = {
        "credits": ("/api/metal/record-purchase", {
            "club_id": club.id, "campaign_id": campaign.id,
            "credit_amount": 10, "tx_hash": TX, "metal_holder_id": HOLDER,
        }),
        "item": ("/api/metal/purchase-item", {
            "tier_reward_id": reward.id, "club_id": club.id,
            "amount_paid_cents": 1000, "tx_hash": TX,
            "metal_holder_id": HOLDER,
        }),
    }
    second = "item" if first == "credits" else "credits"

    r1 = await client.post(requests[first][0], headers=FAN,
                           json=requests[first][1])
    r2 = await client.post(requests[second][0], headers=FAN,
                           json=requests[second][1])

    assert r1.status_code == 200, r1.text
    assert r2.status_code == 409
    assert r2.json()["tx_hash"] == TX
    # refused before asking Metal again
    assert len(api.calls("/transactions")) == 1

    records = await _all(gs, CreditPurchase) + await _all(gs, RewardClaim)
    assert len(records) == 1
    proofs = await _all(gs, PaymentProof)
    assert [p.record_id for p in proofs] == [records[0].id]

    row = await campaigns.get_campaign(gs, campaign.id)
    assert row["current_funding_cents"] == 1000
