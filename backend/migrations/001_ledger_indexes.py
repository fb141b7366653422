#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Revenue Ledger Collections

Creates:
1. ledger_entries, settlements, settlement_repairs, revenue_rules,
   audit_logs and migration_logs indexes
2. A default 40/60/0 revenue rule when no rule exists

Run: python migrations/001_ledger_indexes.py
"""

import asyncio
import os
import sys
from datetime import datetime, timezone

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient

from config import Settings
from ledger_core import AuditTrail, MotorDocumentStore, RevenueRuleService


async def run_migration():
    """Create ledger indexes and seed the default revenue rule."""

    settings = Settings.from_env()
    print(f"Connecting to: {settings.mongo_url}")
    print(f"Database: {settings.db_name}")

    client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
    db = client[settings.db_name]
    store = MotorDocumentStore(client, db)

    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        await store.ensure_indexes()
        print("✓ Ledger indexes created")

        audit = AuditTrail(store, environment=settings.app_env, version=settings.app_version)
        rules = RevenueRuleService(store, audit)
        seeded = None
        if not await rules.get_active_rules():
            seeded = await rules.create_default_rule()
            print(f"✓ Default revenue rule created: {seeded.id}")
        else:
            print("• Active revenue rule already exists")
        await audit.flush()

        await db.migrations.update_one(
            {"migration_id": "001_ledger_indexes"},
            {"$set": {
                "migration_id": "001_ledger_indexes",
                "applied_at": datetime.now(timezone.utc),
                "status": "success",
            }},
            upsert=True
        )
        print("\n✓ Migration record saved")

        return {
            "status": "success",
            "default_rule_id": seeded.id if seeded else None,
        }

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
