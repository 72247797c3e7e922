#!/usr/bin/env python3
"""
Forfeit Ended Subscriptions

Cron sweep: forfeits the remaining credits of profiles whose cancelled
subscription has expired or whose past-due grace period is over, and
lists active subscriptions that expire soon.
"""

import argparse
import asyncio
import sys

from credit_ledger.db.session import close_engines, get_write_session_factory
from credit_ledger.exceptions import ProfileNotFoundError
from credit_ledger.models.api import ForfeitReason, SubscriptionStatus
from credit_ledger.observability import get_logger, setup_logging
from credit_ledger.services.subscription import SubscriptionLifecycleHandler

logger = get_logger("scripts.forfeit_ended_subscriptions")


async def sweep(dry_run: bool, warn_days: int) -> int:
    """Run one sweep; returns the number of failed profiles."""
    handler = SubscriptionLifecycleHandler(get_write_session_factory())
    failures = 0

    try:
        for expiring in await handler.get_expiring_subscriptions(warn_days):
            logger.info(
                "subscription_expiring_soon",
                profile_id=expiring.profile_id,
                plan=expiring.plan,
                expires_at=expiring.expires_at.isoformat(),
            )

        profile_ids = await handler.list_forfeitable_profiles()
        logger.info("forfeit_sweep_started", candidates=len(profile_ids), dry_run=dry_run)

        for profile_id in profile_ids:
            if dry_run:
                logger.info("forfeit_skipped_dry_run", profile_id=profile_id)
                continue
            try:
                profile = await handler.require_profile(profile_id)
                reason = (
                    ForfeitReason.PAYMENT_FAILED
                    if profile.subscription_status == SubscriptionStatus.PAST_DUE.value
                    else ForfeitReason.SUBSCRIPTION_ENDED
                )
                result = await handler.end_subscription(profile_id, reason)
                logger.info(
                    "forfeit_sweep_profile_done",
                    profile_id=profile_id,
                    credits_forfeited=result.credits_forfeited,
                )
            except ProfileNotFoundError:
                logger.warning("forfeit_sweep_profile_missing", profile_id=profile_id)
            except Exception as e:
                failures += 1
                logger.error("forfeit_sweep_profile_failed", profile_id=profile_id, error=str(e))
    finally:
        await close_engines()

    logger.info("forfeit_sweep_finished", candidates=len(profile_ids), failures=failures)
    return failures


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Forfeit credits of subscriptions that have ended",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Nightly cron run
  python3 scripts/forfeit_ended_subscriptions.py

  # Show what would be forfeited
  python3 scripts/forfeit_ended_subscriptions.py --dry-run
        """,
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="List candidates without forfeiting anything"
    )
    parser.add_argument(
        "--warn-days", type=int, default=3, help="Log active subscriptions expiring within N days"
    )
    args = parser.parse_args()

    setup_logging()
    failures = asyncio.run(sweep(dry_run=args.dry_run, warn_days=args.warn_days))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
