from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
from datetime import datetime
from types import SimpleNamespace
from typing import Optional
import logging

from config import Settings
from ledger_routes import ledger_router
from ledger_core import (
    AccessControlGuard,
    AuditTrail,
    LedgerService,
    MigrationCoordinator,
    MotorDocumentStore,
    NotificationDispatcher,
    RevenueProcessor,
    RevenueRuleService,
    RevenueSplitCalculator,
    SettlementReminderScheduler,
    SettlementService,
    StoreNotifier,
    ValidationEngine
)

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_services(store, settings: Settings) -> SimpleNamespace:
    """Wire every ledger service around one store"""
    validator = ValidationEngine()
    access = AccessControlGuard()
    dispatcher = NotificationDispatcher(StoreNotifier(store))
    audit = AuditTrail(
        store,
        notifier=dispatcher,
        buffer_size=settings.audit_buffer_size,
        flush_interval=settings.audit_flush_interval_seconds,
        admin_user_ids=settings.admin_user_ids,
        environment=settings.app_env,
        version=settings.app_version,
    )
    ledger = LedgerService(store, audit, dispatcher, validator, access, admin_user_ids=settings.admin_user_ids)
    rules = RevenueRuleService(store, audit, dispatcher, validator, access, admin_user_ids=settings.admin_user_ids)
    calculator = RevenueSplitCalculator(validator)
    processor = RevenueProcessor(
        store, ledger, rules, audit, calculator,
        notifier=dispatcher,
        admin_user_ids=settings.admin_user_ids,
    )
    settlements = SettlementService(ledger, dispatcher)

    return SimpleNamespace(
        settings=settings,
        store=store,
        access=access,
        dispatcher=dispatcher,
        audit=audit,
        ledger=ledger,
        rules=rules,
        processor=processor,
        settlements=settlements,
        migrations=MigrationCoordinator(
            store, ledger, processor, rules, audit, calculator,
            item_delay=settings.migration_item_delay_seconds,
            batch_delay=settings.migration_batch_delay_seconds,
        ),
        reminders=SettlementReminderScheduler(
            settlements,
            interval_hours=settings.settlement_reminder_interval_hours,
            threshold=settings.settlement_reminder_threshold,
        ),
        migration_cancel=None,
    )


def create_app(settings: Optional[Settings] = None, store=None) -> FastAPI:
    """
    Build the API.

    Pass `store` to run against an existing store (tests pass an
    InMemoryDocumentStore); otherwise MongoDB is used.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        active_store = store
        if active_store is None:
            client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
            active_store = MotorDocumentStore(client, client[settings.db_name])
            await active_store.detect_transaction_support()
            await active_store.ensure_indexes()

        for name, service in vars(build_services(active_store, settings)).items():
            setattr(app.state, name, service)
        await app.state.dispatcher.start()
        await app.state.audit.start()
        await app.state.reminders.start()
        logger.info(f"[SERVER] Revenue ledger started ({settings.app_env}, v{settings.app_version})")
        try:
            yield
        finally:
            await app.state.reminders.stop()
            await app.state.audit.stop()
            await app.state.dispatcher.stop()
            if client is not None:
                client.close()
            logger.info("[SERVER] Revenue ledger stopped")

    app = FastAPI(
        title="Revenue Split Ledger",
        version=settings.app_version,
        description="Revenue splitting, party balances and settlements",
        lifespan=lifespan
    )

    api_router = APIRouter(prefix="/api")

    @api_router.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow(),
            "version": settings.app_version,
            "transactions": getattr(app.state.store, "supports_transactions", False),
        }

    app.include_router(api_router)
    app.include_router(ledger_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()
