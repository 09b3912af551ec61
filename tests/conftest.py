"""
Shared fixtures.

The app runs against a throw-away SQLite file. Environment variables are set
before anything from ``superfans`` is imported, because configuration is read
at import time.
"""
import hashlib
import hmac
import json
import os
import tempfile
import time

_TMP = tempfile.mkdtemp(prefix="superfans-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/superfans.db"
os.environ["ENVIRONMENT"] = "test"
os.environ["ADMIN_USER_IDS"] = "farcaster:1"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["WEBHOOK_EVENTS_BACKEND"] = "pg"
os.environ["BASE_URL"] = "http://localhost:3000"
os.environ["DB_GATE_LIMIT"] = "64"
os.environ.pop("ADMIN_CHECK_BYPASS", None)

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from superfans import server  # noqa: E402
from superfans.errors import Retryable  # noqa: E402
from superfans.helpers import new_id, now_ts  # noqa: E402
from superfans.model.orm import Base, Campaign, Club, TierReward  # noqa: E402
from superfans.stripepay import StripePay  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"

FAN = {"Authorization": "Farcaster farcaster:42"}
OTHER_FAN = {"Authorization": "Farcaster farcaster:43"}
ADMIN = {"Authorization": "Farcaster farcaster:1"}

CLUB_WALLET = "0x" + "ab" * 20
TREASURY_WALLET = "0x" + "cd" * 20


class FakePay(StripePay):
    """
    Stripe stand-in: honours idempotency keys like Stripe does and keeps the
    real webhook signature check.
    """

    def __init__(self):
        super().__init__(api_key="sk_test_dummy",
                         webhook_secret=WEBHOOK_SECRET)
        self.sessions = {}
        self.by_id = {}
        self.created = 0
        self.expired = []
        self.refunds = {}
        self.refund_calls = []
        self.refund_errors = {}
        self.create_error = None
        self.expire_error = None

    async def create_checkout_session(self, *, line_items, metadata,
                                      success_url, cancel_url,
                                      idempotency_key, customer_email=None,
                                      client_reference_id=None):
        if self.create_error is not None:
            raise self.create_error
        if idempotency_key in self.sessions:
            return self.sessions[idempotency_key]
        self.created += 1
        sid = f"cs_test_{self.created}"
        session = {"session_id": sid,
                   "url": f"https://checkout.stripe.test/{sid}"}
        self.sessions[idempotency_key] = session
        self.by_id[sid] = {
            "id": sid,
            "object": "checkout.session",
            "amount_total": sum(li["price_data"]["unit_amount"]
                                * li["quantity"] for li in line_items),
            "currency": "usd",
            "metadata": dict(metadata),
            "payment_status": "paid",
            "payment_intent": f"pi_{sid}",
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        return session

    async def retrieve_session(self, session_id):
        return self.by_id[session_id]

    async def expire_session(self, session_id):
        if self.expire_error is not None:
            raise self.expire_error
        self.expired.append(session_id)

    async def create_refund(self, *, payment_intent, amount, metadata,
                            idempotency_key):
        self.refund_calls.append({"payment_intent": payment_intent,
                                  "amount": amount,
                                  "idempotency_key": idempotency_key})
        err = self.refund_errors.get(payment_intent)
        if err is not None:
            raise err
        if idempotency_key not in self.refunds:
            self.refunds[idempotency_key] = f"re_{len(self.refunds) + 1}"
        return self.refunds[idempotency_key]

    def completed_event(self, session_id, event_id=None, **overrides):
        obj = dict(self.by_id[session_id])
        obj.update(overrides)
        return {
            "id": event_id or f"evt_{new_id()}",
            "type": "checkout.session.completed",
            "data": {"object": obj},
        }


def signed(event, secret=WEBHOOK_SECRET, ts=None):
    body = json.dumps(event).encode()
    ts = ts or int(time.time())
    mac = hmac.new(secret.encode(), f"{ts}.".encode() + body,
                   hashlib.sha256).hexdigest()
    return body, {"stripe-signature": f"t={ts},v1={mac}",
                  "content-type": "application/json"}


async def post_event(client, event, **kw):
    body, headers = signed(event, **kw)
    return await client.post("/api/webhooks/stripe", content=body,
                             headers=headers)


# ----------------------------
# Database
# ----------------------------
@pytest.fixture(scope="session", autouse=True)
async def schema():
    await server._db_init()
    yield
    await server.database.dispose()


@pytest.fixture(autouse=True)
async def clean_db(schema):
    yield
    async with server.database.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    server.app.dependency_overrides.clear()
    await server.database.dispose()


@pytest.fixture
async def gs():
    async with server.database.session() as gs:
        yield gs


class Factory:
    def __init__(self, gs):
        self.gs = gs

    async def _add(self, row):
        async with self.gs.gated():
            async with self.gs.session.begin():
                self.gs.session.add(row)
        return row

    async def club(self, **kw):
        values = dict(id=new_id(), name="Test Club",
                      usdc_wallet_address=CLUB_WALLET,
                      treasury_wallet_address=TREASURY_WALLET,
                      metal_token_address="0x" + "ef" * 20,
                      created_at=now_ts())
        values.update(kw)
        return await self._add(Club(**values))

    async def campaign(self, club_id, **kw):
        now = now_ts()
        values = dict(id=new_id(), club_id=club_id, title="Test Campaign",
                      funding_goal_cents=100_000, current_funding_cents=0,
                      received_cents=0, total_tickets_sold=0,
                      ticket_price_cents=1800, deadline=now + 86400,
                      status="active", created_at=now, updated_at=now)
        values.update(kw)
        return await self._add(Campaign(**values))

    async def reward(self, club_id, **kw):
        values = dict(id=new_id(), club_id=club_id, title="Backstage Pass",
                      tier="cadet", upgrade_price_cents=5000,
                      is_ticket_campaign=False, is_active=True,
                      created_at=now_ts())
        values.update(kw)
        return await self._add(TierReward(**values))


@pytest.fixture
def factory(gs):
    return Factory(gs)


# ----------------------------
# HTTP
# ----------------------------
@pytest.fixture
def fake_pay():
    return FakePay()


@pytest.fixture
async def client(fake_pay):
    server.app.dependency_overrides[server.payments] = lambda: fake_pay
    transport = ASGITransport(app=server.app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport,
                           base_url="http://test") as c:
        yield c


@pytest.fixture
def send_event(client):
    async def send(event, **kw):
        return await post_event(client, event, **kw)
    return send


@pytest.fixture
def retryable():
    return Retryable("Payment provider unreachable, retry shortly")
