import asyncio
import os
import sys

from superfans.helpers import now_ts
from superfans.infra.sql import make_database
from superfans.model.orm import Base, Campaign, Club, TierReward

# Demo data
DEMO_CLUB_ID = "club_demo"
DEMO_CAMPAIGN_ID = "campaign_demo"
DEMO_GOAL_CENTS = 500_000
DEMO_DEADLINE_DAYS = 30

# Test wallets on Base; replace before taking real money
DEMO_USDC_WALLET = "0x000000000000000000000000000000000000dEaD"
DEMO_TREASURY_WALLET = "0x000000000000000000000000000000000000bEEF"

REWARDS = [
    # id, title, tier, upgrade price, credit cost
    ("reward_backstage", "Backstage Pass", "headliner", 5000, None),
    ("reward_vinyl", "Signed Vinyl", "resident", 3500, None),
    ("reward_ticket", "Show Ticket", "cadet", None, 18),
]


async def seed(database_url: str) -> None:
    database = make_database(database_url)
    await database.create_all(Base.metadata)
    print('✅ schema created')

    now = now_ts()
    async with database.sessionmaker() as db:
        async with db.begin():
            if await db.get(Club, DEMO_CLUB_ID) is not None:
                print('✅ demo data already present')
                await database.dispose()
                return
            db.add(Club(
                id=DEMO_CLUB_ID,
                name="Demo Club",
                usdc_wallet_address=DEMO_USDC_WALLET,
                treasury_wallet_address=DEMO_TREASURY_WALLET,
                created_at=now,
            ))
            db.add(Campaign(
                id=DEMO_CAMPAIGN_ID,
                club_id=DEMO_CLUB_ID,
                title="Demo Album Campaign",
                funding_goal_cents=DEMO_GOAL_CENTS,
                current_funding_cents=0,
                received_cents=0,
                total_tickets_sold=0,
                deadline=now + DEMO_DEADLINE_DAYS * 86400,
                status="active",
                created_at=now,
                updated_at=now,
            ))
            for rid, title, tier, price, credits in REWARDS:
                db.add(TierReward(
                    id=rid,
                    club_id=DEMO_CLUB_ID,
                    title=title,
                    tier=tier,
                    upgrade_price_cents=price,
                    ticket_cost=credits,
                    is_ticket_campaign=credits is not None,
                    campaign_id=DEMO_CAMPAIGN_ID if credits else None,
                    created_at=now,
                ))
    print('✅ demo club, campaign and rewards created')
    await database.dispose()


if __name__ == '__main__':
    url = os.getenv("DATABASE_URL")
    if url is None:
        print("NEED DATABASE_URL!")
        sys.exit(1)
    asyncio.run(seed(url))
