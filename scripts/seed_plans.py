#!/usr/bin/env python3
"""
Plan catalog seeding script.

Creates the subscription database schema and inserts the Free plan plus the
paid plans. Plans that already exist (by name) are left untouched.

Usage:
    python scripts/seed_plans.py [--db-path PATH] [--plans-file FILE]
                                 [--pro-price-id ID] [--business-price-id ID]

Options:
    --db-path PATH          Path to SQLite database file (default: STORAGE_DB_PATH)
    --plans-file FILE       JSON list of plans to seed instead of the built-in catalog
    --pro-price-id ID       Paddle price id for the built-in Pro plan
    --business-price-id ID  Paddle price id for the built-in Business plan

This script is idempotent - safe to run multiple times.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from entitlements.config import get_settings
from entitlements.models.plan import BillingInterval, PlanCreate
from entitlements.storage.database import StorageError, SubscriptionDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def default_catalog(
    free_plan_name: str, pro_price_id: str | None, business_price_id: str | None
) -> list[PlanCreate]:
    """Built-in catalog: a limited Free plan and two paid tiers."""
    return [
        PlanCreate(
            name=free_plan_name,
            upload_limit_mb=25,
            transcription_mins=60,
            summarization_limit=5,
            doc_export_limit=3,
        ),
        PlanCreate(
            name="Pro",
            upload_limit_mb=200,
            transcription_mins=600,
            summarization_limit=100,
            doc_export_limit=None,
            billing_interval=BillingInterval.MONTH,
            price=12.0,
            paddle_price_id=pro_price_id,
            premium_templates=True,
        ),
        PlanCreate(
            name="Business",
            upload_limit_mb=1000,
            transcription_mins=None,
            summarization_limit=None,
            doc_export_limit=None,
            billing_interval=BillingInterval.YEAR,
            price=240.0,
            paddle_price_id=business_price_id,
            premium_templates=True,
            archive_access=True,
        ),
    ]


def load_plans_file(path: str) -> list[PlanCreate]:
    """Read a JSON list of plan objects."""
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a JSON list of plans")
    return [PlanCreate.model_validate(item) for item in raw]


async def seed_plans(db_path: str, plans: list[PlanCreate]) -> bool:
    """
    Seed the plan catalog.

    Args:
        db_path: Path to SQLite database file
        plans: Plans to create when missing

    Returns:
        bool: True if seeding succeeded
    """
    db = SubscriptionDatabase(db_path=db_path, plan_cache_ttl_seconds=0)
    try:
        await db.initialize()

        for plan_create in plans:
            existing = await db.get_plan_by_name(plan_create.name)
            if existing is not None:
                logger.info(f"Plan already exists, skipping: {plan_create.name}")
                continue

            plan = await db.create_plan(plan_create)
            logger.info(f"✓ Created plan {plan.name} ({plan.id})")
            if plan.is_paid and not plan.paddle_price_id:
                logger.warning(f"  {plan.name} has no Paddle price id - it cannot be purchased")

        for plan in await db.list_plans():
            logger.info(f"  {plan.name}: {plan.summary()}")

        logger.info("✓ Plan catalog seeded")
        return True

    except StorageError as e:
        logger.error(f"Seeding failed: {e}")
        return False
    finally:
        db.close()


def main() -> int:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Seed the subscription plan catalog")
    parser.add_argument("--db-path", default=settings.storage.db_path)
    parser.add_argument("--plans-file", default=None)
    parser.add_argument("--pro-price-id", default=None)
    parser.add_argument("--business-price-id", default=None)
    args = parser.parse_args()

    if args.plans_file:
        try:
            plans = load_plans_file(args.plans_file)
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Cannot read plans file: {e}")
            return 1
    else:
        plans = default_catalog(
            settings.entitlement.free_plan_name, args.pro_price_id, args.business_price_id
        )

    Path(args.db_path).parent.mkdir(parents=True, exist_ok=True)
    success = asyncio.run(seed_plans(args.db_path, plans))
    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
