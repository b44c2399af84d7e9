#!/usr/bin/env python3
"""
Retry Unresolved Billing Events

Replays credit-pack payments whose Stripe customer could not be mapped to a
local user when the webhook arrived (typically the sync engine had not yet
mirrored the customer).

Usage:
    # Single sweep (for cron)
    python3 scripts/retry_unresolved_billing_events.py

    # Keep sweeping every 5 minutes
    python3 scripts/retry_unresolved_billing_events.py --loop --interval 300
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import settings
from app.db.session import close_engines, get_write_session
from app.models.api import WebhookOutcome
from app.observability import get_logger, setup_logging
from app.services.catalog import PriceCatalog
from app.services.reconciler import BillingEventReconciler
from app.services.stripe_provider import StripeProvider

logger = get_logger(__name__)


async def sweep(provider: StripeProvider, catalog: PriceCatalog, limit: int) -> int:
    """Replay one batch of unresolved events. Returns how many were applied."""
    async with get_write_session() as session:
        reconciler = BillingEventReconciler(session, provider, catalog)
        results = await reconciler.retry_unresolved(limit=limit)

    return sum(1 for result in results if result.outcome == WebhookOutcome.APPLIED)


async def run(loop: bool, interval: int, limit: int) -> None:
    provider = StripeProvider(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )
    catalog = PriceCatalog.from_settings(settings)

    try:
        while True:
            try:
                applied = await sweep(provider, catalog, limit)
                logger.info("unresolved_sweep_completed", applied=applied)
            except Exception as e:
                if not loop:
                    raise
                logger.error("unresolved_sweep_error", error=str(e), exc_info=True)

            if not loop:
                break
            await asyncio.sleep(interval)
    finally:
        await close_engines()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Retry unresolved Stripe billing events")
    parser.add_argument("--loop", action="store_true", help="Keep sweeping until interrupted")
    parser.add_argument("--interval", type=int, default=300, help="Seconds between sweeps")
    parser.add_argument("--limit", type=int, default=100, help="Events per sweep")
    args = parser.parse_args()

    setup_logging()

    if not settings.stripe_secret_key:
        logger.error("stripe_not_configured")
        sys.exit(1)

    try:
        asyncio.run(run(args.loop, args.interval, args.limit))
    except KeyboardInterrupt:
        logger.info("unresolved_sweep_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
