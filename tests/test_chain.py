import json

import httpx
import pytest
from sqlalchemy import func, select

from superfans import config, server
from superfans.chain import (
    TRANSFER_TOPIC, TransferRejected, UsdcVerifier, normalize_tx_hash,
)
from superfans.errors import Retryable, ValidationFailed
from superfans.model import campaigns
from superfans.model.orm import CreditPurchase

FAN = {"Authorization": "Farcaster farcaster:42"}
OTHER_FAN = {"Authorization": "Farcaster farcaster:43"}

CLUB_WALLET = "0x" + "ab" * 20
SENDER = "0x" + "12" * 20
USDC = config.USDC_CONTRACT_ADDRESS
TX = "0x" + "a1" * 32


def _topic(addr):
    return "0x" + "0" * 24 + addr[2:].lower()


def receipt(units=10, *, to_wallet=CLUB_WALLET, status="0x1",
            contract=USDC):
    return {
        "transactionHash": TX,
        "status": status,
        "to": contract,
        "blockNumber": "0x1b4",
        "logs": [{
            "address": contract,
            "topics": [TRANSFER_TOPIC, _topic(SENDER), _topic(to_wallet)],
            "data": hex(units * 10 ** 6),
        }],
    }


class Rpc:
    """JSON-RPC endpoint answering every call with one canned result."""

    def __init__(self, result=None, status_code=200, error=None):
        self.result = result
        self.status_code = status_code
        self.error = error
        self.calls = []

    def __call__(self, request):
        body = json.loads(request.content)
        self.calls.append(body)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json={
            "jsonrpc": "2.0", "id": body["id"], "result": self.result,
        })

    def verifier(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return UsdcVerifier(http, rpc_url="https://rpc.test")


# ----------------------------
# normalize_tx_hash
# ----------------------------
def test_normalize_tx_hash():
    raw = "A1" * 32
    assert normalize_tx_hash(raw) == "0x" + "a1" * 32
    assert normalize_tx_hash("0x" + raw) == "0x" + "a1" * 32


@pytest.mark.parametrize("bad", [
    None, "", "0x1234", "0x" + "a1" * 31, "0x" + "zz" * 32,
    "a1" * 33, 12345,
])
def test_normalize_tx_hash_rejects_malformed(bad):
    with pytest.raises(ValidationFailed):
        normalize_tx_hash(bad)


# ----------------------------
# UsdcVerifier
# ----------------------------
async def test_verify_transfer_accepts_exact_amount():
    rpc = Rpc(receipt(10))
    out = await rpc.verifier().verify_transfer(
        TX, recipient=CLUB_WALLET.upper().replace("0X", "0x"),
        amount_units=10)
    assert out.amount_units == 10
    assert out.raw_amount == 10_000_000
    assert out.sender == SENDER
    assert out.block_number == 0x1b4
    assert rpc.calls[0]["method"] == "eth_getTransactionReceipt"
    assert rpc.calls[0]["params"] == [TX]


async def test_malformed_hash_makes_no_rpc_call():
    rpc = Rpc(receipt(10))
    with pytest.raises(ValidationFailed):
        await rpc.verifier().verify_transfer("0xdead", recipient=CLUB_WALLET,
                                             amount_units=10)
    assert rpc.calls == []


async def test_missing_receipt_is_retryable():
    rpc = Rpc(None)
    with pytest.raises(Retryable):
        await rpc.verifier().verify_transfer(TX, recipient=CLUB_WALLET,
                                             amount_units=10)


@pytest.mark.parametrize("rcpt, message", [
    (receipt(10, status="0x0"), "failed on blockchain"),
    (receipt(10, contract="0x" + "99" * 20), "not sent to USDC contract"),
    (receipt(10, to_wallet="0x" + "77" * 20), "club wallet"),
    (receipt(9), "does not match"),
    (receipt(11), "does not match"),
    (dict(receipt(10), logs=[dict(receipt(10)["logs"][0], data="0x")]),
     "Malformed Transfer value"),
    (dict(receipt(10), logs=[dict(receipt(10)["logs"][0], data="0xzz")]),
     "Malformed Transfer value"),
    (receipt(10, status="0x"), "Malformed status"),
])
async def test_verify_transfer_rejections(rcpt, message):
    rpc = Rpc(rcpt)
    with pytest.raises(TransferRejected) as info:
        await rpc.verifier().verify_transfer(TX, recipient=CLUB_WALLET,
                                             amount_units=10)
    assert message in info.value.message
    assert info.value.status_code == 400


async def test_rpc_outage_is_retryable():
    with pytest.raises(Retryable):
        await Rpc(status_code=502).verifier().verify_transfer(
            TX, recipient=CLUB_WALLET, amount_units=1)
    with pytest.raises(Retryable):
        await Rpc(error=httpx.ConnectError("refused")).verifier() \
            .verify_transfer(TX, recipient=CLUB_WALLET, amount_units=1)


# ----------------------------
# POST /api/campaigns/usdc-purchase
# ----------------------------
async def _purchase_count(gs):
    async with gs.gated():
        async with gs.session.begin():
            return (await gs.session.execute(
                select(func.count()).select_from(CreditPurchase)
            )).scalar_one()


@pytest.fixture
async def usdc_setup(factory):
    club = await factory.club()
    campaign = await factory.campaign(club.id)
    return club, campaign


async def test_usdc_purchase_records_and_credits_campaign(client, gs,
                                                          usdc_setup):
    club, campaign = usdc_setup
    rpc = Rpc(receipt(25))
    server.app.dependency_overrides[server.usdc_verifier] = rpc.verifier

    r = await client.post("/api/campaigns/usdc-purchase", headers=FAN, json={
        "tx_hash": TX.upper().replace("0X", "0x"), "club_id": club.id,
        "credit_amount": 25, "campaign_id": campaign.id,
    })
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] and not body["idempotent"]
    assert body["tx_hash"] == TX
    assert body["campaign_updated"] is True
    assert body["partial_success"] is False

    row = await campaigns.get_campaign(gs, campaign.id)
    assert row["current_funding_cents"] == 2500
    assert row["received_cents"] == 2500
    assert row["total_tickets_sold"] == 25


async def test_usdc_duplicate_submission_is_idempotent(client, gs,
                                                       usdc_setup):
    club, campaign = usdc_setup
    rpc = Rpc(receipt(5))
    server.app.dependency_overrides[server.usdc_verifier] = rpc.verifier
    payload = {"tx_hash": TX, "club_id": club.id, "credit_amount": 5}

    first = await client.post("/api/campaigns/usdc-purchase", headers=FAN,
                              json=payload)
    # same hash without the 0x prefix is the same transaction
    second = await client.post("/api/campaigns/usdc-purchase", headers=FAN,
                               json={**payload, "tx_hash": TX[2:]})
    assert first.status_code == second.status_code == 200
    assert second.json()["idempotent"] is True
    assert second.json()["purchase_id"] == first.json()["purchase_id"]
    assert len(rpc.calls) == 1
    assert await _purchase_count(gs) == 1

    row = await campaigns.get_campaign(gs, campaign.id)
    assert row["current_funding_cents"] == 500


async def test_usdc_same_hash_from_another_user_conflicts(client,
                                                          usdc_setup):
    club, _ = usdc_setup
    rpc = Rpc(receipt(5))
    server.app.dependency_overrides[server.usdc_verifier] = rpc.verifier
    payload = {"tx_hash": TX, "club_id": club.id, "credit_amount": 5}

    assert (await client.post("/api/campaigns/usdc-purchase", headers=FAN,
                              json=payload)).status_code == 200
    r = await client.post("/api/campaigns/usdc-purchase", headers=OTHER_FAN,
                          json=payload)
    assert r.status_code == 409


async def test_usdc_amount_mismatch_writes_nothing(client, gs, usdc_setup):
    club, campaign = usdc_setup
    rpc = Rpc(receipt(4))
    server.app.dependency_overrides[server.usdc_verifier] = rpc.verifier

    r = await client.post("/api/campaigns/usdc-purchase", headers=FAN, json={
        "tx_hash": TX, "club_id": club.id, "credit_amount": 5,
    })
    assert r.status_code == 400
    assert "does not match" in r.json()["error"]
    assert await _purchase_count(gs) == 0
    row = await campaigns.get_campaign(gs, campaign.id)
    assert row["current_funding_cents"] == 0


async def test_usdc_malformed_hash_is_rejected_before_rpc(client,
                                                          usdc_setup):
    club, _ = usdc_setup
    rpc = Rpc(receipt(5))
    server.app.dependency_overrides[server.usdc_verifier] = rpc.verifier

    r = await client.post("/api/campaigns/usdc-purchase", headers=FAN, json={
        "tx_hash": "0x1234", "club_id": club.id, "credit_amount": 5,
    })
    assert r.status_code == 400
    assert r.json()["field"] == "tx_hash"
    assert rpc.calls == []


async def test_usdc_pending_receipt_returns_503(client, gs, usdc_setup):
    club, _ = usdc_setup
    rpc = Rpc(None)
    server.app.dependency_overrides[server.usdc_verifier] = rpc.verifier

    r = await client.post("/api/campaigns/usdc-purchase", headers=FAN, json={
        "tx_hash": TX, "club_id": club.id, "credit_amount": 5,
    })
    assert r.status_code == 503
    assert r.json()["retryable"] is True
    assert await _purchase_count(gs) == 0


async def test_usdc_requires_club_wallet(client, factory):
    club = await factory.club(usdc_wallet_address=None)
    rpc = Rpc(receipt(5))
    server.app.dependency_overrides[server.usdc_verifier] = rpc.verifier

    r = await client.post("/api/campaigns/usdc-purchase", headers=FAN, json={
        "tx_hash": TX, "club_id": club.id, "credit_amount": 5,
    })
    assert r.status_code == 400
    assert rpc.calls == []


async def test_usdc_requires_auth(client, usdc_setup):
    club, _ = usdc_setup
    r = await client.post("/api/campaigns/usdc-purchase", json={
        "tx_hash": TX, "club_id": club.id, "credit_amount": 5,
    })
    assert r.status_code == 401
