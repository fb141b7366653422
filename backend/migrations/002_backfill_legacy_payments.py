#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Legacy Payment Backfill

1. Assigns a party to users that predate parties
2. Creates ledger entries for every verified payment that has none
3. Safe to re-run: migrated payments are skipped

Ctrl+C stops between payments; completed payments stay migrated.

Run: python migrations/002_backfill_legacy_payments.py [--status]
"""

import asyncio
import os
import signal
import sys

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient

from config import Settings
from server import build_services, configure_logging
from ledger_core import MotorDocumentStore


async def run_migration(status_only: bool = False):
    settings = Settings.from_env()
    configure_logging(settings)
    print(f"Connecting to: {settings.mongo_url}")

    client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
    store = MotorDocumentStore(client, client[settings.db_name])
    await store.detect_transaction_support()

    services = build_services(store, settings)

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except NotImplementedError:
        pass

    await services.dispatcher.start()
    try:
        status = await services.migrations.get_migration_status()
        print(f"Payments needing migration: {status['payments_needing_migration']}")
        print(f"Users without party: {status['users_without_party']}")
        if status_only or status["is_fully_migrated"]:
            return status

        result = await services.migrations.run_full_migration(cancel_event)
        print("\n" + "="*50)
        print("MIGRATION COMPLETE: Legacy Payment Backfill")
        print("="*50)
        return result

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        await services.audit.flush()
        await services.dispatcher.stop()
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration(status_only="--status" in sys.argv))
    print(f"\nResult: {result}")
