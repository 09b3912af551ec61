"""
Campaign-failure sweep, meant to run from cron:

    superfans-sweep                 # fail + refund expired unfunded campaigns
    superfans-sweep --dry-run       # only list them
    superfans-sweep --campaign ID   # refund one campaign regardless of deadline
"""
from __future__ import annotations
import argparse
import asyncio
import logging
import sys
from typing import Optional

import orjson

from . import config
from .helpers import parse_iso
from .infra.sql import make_database
from .model import campaigns
from .model.refunds import process_campaign_refunds, sweep_campaign_failures
from .stripepay import PaymentAdapter, StripePay

log = logging.getLogger(__name__)


async def run_sweep(
    database_url: str,
    adapter: PaymentAdapter,
    *,
    now: Optional[float] = None,
    campaign_id: Optional[str] = None,
    dry_run: bool = False,
) -> list:
    database = make_database(database_url)
    try:
        async with database.session() as gs:
            if dry_run:
                expired = await campaigns.find_expired_unfunded(gs, now)
                return [campaigns.progress_view(c) for c in expired]
            if campaign_id:
                result = await process_campaign_refunds(gs, adapter,
                                                        campaign_id)
                return [result.as_dict()]
            results = await sweep_campaign_failures(gs, adapter, now)
            log.info("[sweep] %d expired campaign(s) processed", len(results))
            return [r.as_dict() for r in results]
    finally:
        await database.dispose()


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(
        description="Fail and refund expired unfunded campaigns")
    ap.add_argument("--database-url", default=config.DATABASE_URL,
                    help="Database to sweep (default: $DATABASE_URL)")
    ap.add_argument("--now", default=None,
                    help="ISO timestamp to treat as the current time")
    ap.add_argument("--campaign", default=None,
                    help="Refund this campaign only")
    ap.add_argument("--dry-run", action="store_true",
                    help="List expired campaigns without touching them")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        now = parse_iso(args.now)
    except ValueError:
        ap.error(f"--now: not an ISO timestamp: {args.now}")

    results = asyncio.run(run_sweep(
        args.database_url, StripePay(), now=now, campaign_id=args.campaign,
        dry_run=args.dry_run,
    ))
    sys.stdout.write(orjson.dumps(
        results, option=orjson.OPT_INDENT_2).decode() + "\n")
    if args.dry_run:
        return 0
    return 0 if all(r["success"] for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
