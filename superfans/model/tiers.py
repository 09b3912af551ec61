# model/tiers.py
"""
Tier qualification is owned by the database: ``check_tier_qualification``
and ``get_current_quarter`` are stored functions whose bodies live outside
this repository. Only their input/output contract is used here.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple

from sqlalchemy import text

from .. import config
from ..infra.sql import GatedAsyncSession

log = logging.getLogger(__name__)

TIERS = ("cadet", "resident", "headliner", "superfan")
TIER_RANKS = {t: i for i, t in enumerate(TIERS)}
TIER_DISCOUNTS = {"superfan": 40, "headliner": 30, "resident": 20,
                  "cadet": 10}


@dataclass(frozen=True)
class TierQualification:
    qualified: bool
    earned_tier: str
    effective_tier: str
    current_points: int
    required_points: int
    points_needed: int
    has_active_boost: bool = False
    quarterly_free_used: bool = False


class TierOracle(Protocol):
    async def check(self, user_id: str, club_id: str, target_tier: str,
                    rolling_window_days: int = config.TIER_ROLLING_WINDOW_DAYS
                    ) -> TierQualification: ...

    async def current_quarter(self) -> Tuple[int, int]: ...


def tier_rank(tier: Optional[str]) -> int:
    return TIER_RANKS.get(tier or "", 0)


def discount_percentage(user_tier: str, reward_tier: str) -> int:
    if tier_rank(user_tier) < tier_rank(reward_tier):
        return 0
    return TIER_DISCOUNTS.get(user_tier, 0)


def discounted_price(price_cents: int, user_tier: str,
                     reward_tier: str) -> Tuple[int, int]:
    """Returns ``(unit_price_cents, discount_cents)``."""
    pct = discount_percentage(user_tier, reward_tier)
    discount = int(round(price_cents * pct / 100))
    return max(0, price_cents - discount), discount


def current_quarter(now: Optional[datetime] = None) -> Tuple[int, int]:
    now = now or datetime.now(timezone.utc)
    return now.year, (now.month - 1) // 3 + 1


# ----------------------------
# PostgreSQL stored functions
# ----------------------------
class PgTierOracle:
    def __init__(self, gs: GatedAsyncSession) -> None:
        self.gs = gs

    async def check(self, user_id, club_id, target_tier,
                    rolling_window_days=config.TIER_ROLLING_WINDOW_DAYS):
        async with self.gs.gated():
            async with self.gs.session.begin():
                row = (await self.gs.session.execute(text("""
                    SELECT * FROM check_tier_qualification(
                        :p_user_id, :p_club_id, :p_target_tier,
                        :p_rolling_window_days)
                """), {
                    "p_user_id": user_id,
                    "p_club_id": club_id,
                    "p_target_tier": target_tier,
                    "p_rolling_window_days": rolling_window_days,
                })).mappings().first()
        if row is None:
            raise LookupError("check_tier_qualification returned no row")
        return TierQualification(
            qualified=bool(row["qualified"]),
            earned_tier=row["earned_tier"] or "cadet",
            effective_tier=(row.get("effective_tier")
                            or row["earned_tier"] or "cadet"),
            current_points=int(row["current_points"] or 0),
            required_points=int(row["required_points"] or 0),
            points_needed=int(row["points_needed"] or 0),
            has_active_boost=bool(row.get("has_active_boost")),
            quarterly_free_used=bool(row.get("quarterly_free_used")),
        )

    async def current_quarter(self):
        async with self.gs.gated():
            async with self.gs.session.begin():
                row = (await self.gs.session.execute(
                    text("SELECT * FROM get_current_quarter()")
                )).mappings().first()
        if row is None:
            raise LookupError("get_current_quarter returned no row")
        return int(row["year"]), int(row["quarter"])


class StaticTierOracle:
    """Everyone is a cadet with no points. Used without PostgreSQL."""

    def __init__(self, tier: str = "cadet") -> None:
        self.tier = tier

    async def check(self, user_id, club_id, target_tier,
                    rolling_window_days=config.TIER_ROLLING_WINDOW_DAYS):
        return TierQualification(
            qualified=tier_rank(self.tier) >= tier_rank(target_tier),
            earned_tier=self.tier,
            effective_tier=self.tier,
            current_points=0,
            required_points=0,
            points_needed=0,
        )

    async def current_quarter(self):
        return current_quarter()
