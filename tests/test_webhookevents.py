import fakeredis.aioredis
import pytest

from superfans import server
from superfans.model.webhookevents import (
    CLAIMED, IN_FLIGHT, PROCESSED, new_store,
)
from superfans.model.webhookevents._redis import (
    WebhookEventStore as RedisEventStore,
)


@pytest.fixture(params=["pg", "redis"])
async def store(request):
    if request.param == "redis":
        r = fakeredis.aioredis.FakeRedis(decode_responses=True)
        yield RedisEventStore(r=r, claim_ttl=300)
        await r.aclose()
        return
    async with server.database.sessionmaker() as session:
        yield new_store(db=session, gated=server.database.gated, claim_ttl=300)


async def test_first_claim_wins(store):
    assert await store.claim("evt_1", "checkout.session.completed") == CLAIMED
    assert await store.claim("evt_1", "checkout.session.completed") == \
        IN_FLIGHT

    row = await store.get("evt_1")
    assert int(row["processing_attempts"]) == 1
    assert row["event_type"] == "checkout.session.completed"
    assert not row.get("processed_at")


async def test_processed_event_is_not_reclaimed(store):
    await store.claim("evt_2", "payment_intent.succeeded")
    await store.finish("evt_2")
    assert await store.claim("evt_2", "payment_intent.succeeded") == \
        PROCESSED


async def test_failed_event_can_be_reclaimed(store):
    await store.claim("evt_3", "checkout.session.completed")
    await store.finish("evt_3", error="boom")

    row = await store.get("evt_3")
    assert row["last_error"] == "boom"
    assert not row.get("processed_at")

    assert await store.claim("evt_3", "checkout.session.completed") == CLAIMED
    await store.finish("evt_3")
    row = await store.get("evt_3")
    assert int(row["processing_attempts"]) == 2
    assert not row["last_error"]
    assert row["processed_at"]


async def test_unknown_event(store):
    assert await store.get("evt_missing") is None


async def test_failure_releases_pg_claim():
    async with server.database.sessionmaker() as session:
        store = new_store(db=session, gated=server.database.gated,
                          claim_ttl=300)
        await store.claim("evt_5", "x")
        assert (await store.get("evt_5"))["claimed_at"] is not None
        await store.finish("evt_5", error="boom")
        assert (await store.get("evt_5"))["claimed_at"] is None


async def test_stale_claim_is_taken_over():
    async with server.database.sessionmaker() as session:
        eager = new_store(db=session, gated=server.database.gated, claim_ttl=-1)
        assert await eager.claim("evt_4", "x") == CLAIMED
        # claim_ttl < 0: every existing claim already counts as stale
        assert await eager.claim("evt_4", "x") == CLAIMED
        assert (await eager.get("evt_4"))["processing_attempts"] == 2


async def test_redis_claim_expires_with_its_ttl():
    r = fakeredis.aioredis.FakeRedis(decode_responses=True)
    store = RedisEventStore(r=r, claim_ttl=300)
    await store.claim("evt_6", "x")
    ttl = await r.ttl("whevt:claim:evt_6")
    assert 0 < ttl <= 300
    await r.aclose()


def test_new_store_requires_session():
    with pytest.raises(RuntimeError):
        new_store(gated=server.database.gated)
