"""
LEGACY PAYMENT MIGRATION

Backfills ledger entries for payments verified before the ledger existed.

1. A payment needs migration when it is verified, not revenue-processed and
   has no linked ledger entries
2. Migration reloads the payment and re-checks it, so running it twice never
   creates duplicate entries
3. Rule lookup falls back to persisting the default 40/60/0 rule
4. Entries are created through the normal revenue processing path
5. Per-payment failures are recorded in migration_logs and never abort a batch
6. Batches pause between items and stop early when the cancel event is set
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
import asyncio
import logging

from .audit_trail import AuditTrail
from .clock import Clock, utc_now
from .exceptions import LedgerError, NotFoundError
from .models import AuditEventType, Party, RevenueRule
from .revenue_processing import PAYMENTS_COLLECTION, RevenueProcessor
from .revenue_rules import RevenueRuleService
from .revenue_split import RevenueSplitCalculator

logger = logging.getLogger(__name__)

MIGRATION_VERSION = "1.0"
MIGRATION_USER = "system_migration"
MIGRATION_LOGS_COLLECTION = "migration_logs"
PROJECTS_COLLECTION = "projects"
USERS_COLLECTION = "users"

FALLBACK_RULE = {
    "id": "default-fallback",
    "rule_name": "Default Fallback Rule",
    "admin_percent": 40.0,
    "team_percent": 60.0,
    "vendor_percent": 0.0,
    "is_default": True,
    "is_active": True,
}

ESTIMATE_NOTE = "This is an estimated breakdown. Payment has not been processed with the ledger system."


@dataclass
class MigrationResult:
    success: bool
    payment_id: str
    skipped: bool = False
    reason: Optional[str] = None
    ledger_entries: int = 0
    revenue_rule_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    processed: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    results: List[MigrationResult] = field(default_factory=list)

    def record(self, result: MigrationResult):
        self.results.append(result)
        self.processed += 1
        if result.skipped:
            self.skipped += 1
        elif result.success:
            self.successful += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = True
        return data


def _role_to_party(role: Optional[str]) -> str:
    if role == "admin":
        return Party.ADMIN.value
    if role == "vendor":
        return Party.VENDOR.value
    return Party.TEAM.value


class MigrationCoordinator:

    def __init__(
        self,
        store,
        ledger,
        processor: RevenueProcessor,
        rules: RevenueRuleService,
        audit: AuditTrail,
        calculator: Optional[RevenueSplitCalculator] = None,
        clock: Clock = utc_now,
        item_delay: float = 0.1,
        batch_delay: float = 1.0
    ):
        self.store = store
        self.ledger = ledger
        self.processor = processor
        self.rules = rules
        self.audit = audit
        self.calculator = calculator or processor.calculator
        self.clock = clock
        self.item_delay = item_delay
        self.batch_delay = batch_delay

    # =========================================================================
    # DETECTION
    # =========================================================================

    @staticmethod
    def needs_migration(payment: Dict[str, Any]) -> bool:
        return (
            payment.get("verified") is True
            and not payment.get("revenue_processed")
            and not payment.get("ledger_entry_ids")
        )

    @staticmethod
    def is_payment_processed(payment: Dict[str, Any]) -> bool:
        return bool(payment.get("revenue_processed")) and bool(payment.get("ledger_entry_ids"))

    async def get_payments_needing_migration(self, batch_size: int = 50) -> List[Dict[str, Any]]:
        payments = await self.store.query(
            PAYMENTS_COLLECTION,
            where={"verified": True, "revenue_processed": {"$ne": True}},
            order_by=[("created_at", -1)],
            limit=batch_size,
        )
        return [p for p in payments if self.needs_migration(p)]

    # =========================================================================
    # PAYMENT MIGRATION
    # =========================================================================

    async def migrate_payment(self, payment: Dict[str, Any]) -> MigrationResult:
        payment_id = payment["id"]
        try:
            current = await self.store.get_by_id(PAYMENTS_COLLECTION, payment_id)
            if not self.needs_migration(current):
                return MigrationResult(True, payment_id, skipped=True, reason="Already migrated")
            if await self.ledger.get_entries_by_payment(payment_id):
                return MigrationResult(True, payment_id, skipped=True, reason="Ledger entries already exist")

            try:
                await self.store.get_by_id(PROJECTS_COLLECTION, current["project_id"])
            except NotFoundError:
                await self.log_migration({
                    "type": "payment_migration",
                    "payment_id": payment_id,
                    "project_id": current.get("project_id"),
                    "status": "failed",
                    "error": "Project not found",
                })
                return MigrationResult(False, payment_id, error="Project not found")

            rule, created_default = await self.processor.resolve_rule(current["project_id"])
            outcome = await self.processor.process_payment_revenue(payment_id, rule=rule, processed_by=MIGRATION_USER)
            if outcome.skip_reason:
                return MigrationResult(True, payment_id, skipped=True, reason=outcome.skip_reason)
            if not outcome.processed:
                raise LedgerError("No ledger entries could be created", {"errors": outcome.errors})

            await self.store.update(PAYMENTS_COLLECTION, payment_id, {
                "migrated_at": self.clock(),
                "migration_version": MIGRATION_VERSION,
            })
            await self.log_migration({
                "type": "payment_migration",
                "payment_id": payment_id,
                "project_id": current["project_id"],
                "revenue_rule_id": rule.id,
                "created_default_rule": created_default,
                "ledger_entry_ids": outcome.ledger_entry_ids,
                "amount": current.get("amount"),
                "currency": current.get("currency"),
                "status": "success",
            })
            await self.audit.log_event(
                AuditEventType.PAYMENT_MIGRATED,
                {
                    "payment_id": payment_id,
                    "ledger_entry_ids": outcome.ledger_entry_ids,
                    "revenue_rule_id": rule.id,
                    "migration_version": MIGRATION_VERSION,
                },
                resource_type="payment",
                resource_id=payment_id,
            )
            logger.info(f"[MIGRATION] Payment {payment_id} migrated: {len(outcome.ledger_entry_ids)} entries")
            return MigrationResult(
                True, payment_id,
                ledger_entries=len(outcome.ledger_entry_ids),
                revenue_rule_id=rule.id,
            )
        except Exception as e:
            logger.error(f"[MIGRATION] Payment {payment_id} failed: {str(e)}")
            await self.log_migration({
                "type": "payment_migration",
                "payment_id": payment_id,
                "project_id": payment.get("project_id"),
                "status": "failed",
                "error": str(e),
            })
            return MigrationResult(False, payment_id, error=str(e))

    async def migrate_payments_batch(
        self,
        batch_size: int = 10,
        cancel_event: Optional[asyncio.Event] = None
    ) -> BatchResult:
        batch = BatchResult()
        payments = await self.get_payments_needing_migration(batch_size)
        if not payments:
            logger.info("[MIGRATION] No payments need migration")
            return batch

        for index, payment in enumerate(payments):
            if cancel_event is not None and cancel_event.is_set():
                batch.cancelled = True
                logger.warning(f"[MIGRATION] Batch cancelled after {batch.processed} payment(s)")
                break
            batch.record(await self.migrate_payment(payment))
            if index < len(payments) - 1:
                await asyncio.sleep(self.item_delay)

        logger.info(
            f"[MIGRATION] Batch done: processed={batch.processed} successful={batch.successful} "
            f"skipped={batch.skipped} failed={batch.failed}"
        )
        return batch

    # =========================================================================
    # RULES & BREAKDOWNS
    # =========================================================================

    async def create_default_revenue_rule(self) -> RevenueRule:
        return await self.rules.create_default_rule(MIGRATION_USER)

    async def get_revenue_rule_with_fallback(self, project_id: Optional[str] = None) -> RevenueRule:
        """Never fails: the fallback rule is for estimates only and is not persisted"""
        try:
            return await self.rules.get_active_rule(project_id)
        except LedgerError as e:
            logger.warning(f"[MIGRATION] No revenue rule found ({e.message}), using default fallback")
            return RevenueRule(**FALLBACK_RULE)

    async def get_payment_revenue_breakdown(self, payment_id: str) -> Dict[str, Any]:
        payment = await self.store.get_by_id(PAYMENTS_COLLECTION, payment_id)

        if self.is_payment_processed(payment):
            entries = await self.ledger.get_entries_by_payment(payment_id)
            return {
                "processed": True,
                "estimated": False,
                "ledger_entries": [e.model_dump() for e in entries],
                "revenue_rule_id": payment.get("revenue_rule_id"),
                "processed_at": payment.get("revenue_processed_at"),
            }

        rule = await self.get_revenue_rule_with_fallback(payment.get("project_id"))
        split = self.calculator.calculate_split(payment.get("amount"), payment.get("currency") or "INR", rule)
        return {
            "processed": False,
            "estimated": True,
            "estimated_breakdown": split.value.model_dump() if split.ok else None,
            "errors": [e.to_dict() for e in split.errors],
            "revenue_rule": rule.model_dump(),
            "note": ESTIMATE_NOTE,
        }

    # =========================================================================
    # USERS
    # =========================================================================

    async def get_users_without_party(self) -> List[Dict[str, Any]]:
        users = await self.store.query(USERS_COLLECTION)
        return [u for u in users if not u.get("party")]

    async def migrate_user_party_associations(self) -> Dict[str, Any]:
        """Assign a party to users created before parties existed"""
        updated = 0
        try:
            for user in await self.get_users_without_party():
                await self.store.update(USERS_COLLECTION, user["id"], {
                    "party": _role_to_party(user.get("role")),
                    "migrated_at": self.clock(),
                })
                updated += 1
        except LedgerError as e:
            await self.log_migration({
                "type": "user_party_migration",
                "users_updated": updated,
                "status": "failed",
                "error": e.message,
            })
            raise

        await self.log_migration({"type": "user_party_migration", "users_updated": updated, "status": "success"})
        logger.info(f"[MIGRATION] Party assigned to {updated} user(s)")
        return {"success": True, "users_updated": updated}

    # =========================================================================
    # ORCHESTRATION
    # =========================================================================

    async def run_full_migration(
        self,
        cancel_event: Optional[asyncio.Event] = None,
        batch_size: int = 20
    ) -> Dict[str, Any]:
        started = self.clock()
        try:
            users = await self.migrate_user_party_associations()
            migrated = 0
            failed = 0
            batches = 0
            cancelled = False

            while True:
                batch = await self.migrate_payments_batch(batch_size, cancel_event)
                batches += 1 if batch.processed else 0
                migrated += batch.successful
                failed += batch.failed
                if batch.cancelled:
                    cancelled = True
                    break
                # Stop when a batch makes no progress
                if batch.processed == 0 or batch.successful == 0:
                    break
                logger.info(f"[MIGRATION] Batch {batches}: {batch.successful} payment(s) migrated")
                await asyncio.sleep(self.batch_delay)

            completed = self.clock()
            result = {
                "success": True,
                "duration_seconds": round((completed - started).total_seconds()),
                "users_migrated": users["users_updated"],
                "payments_migrated": migrated,
                "payments_failed": failed,
                "batches_processed": batches,
                "cancelled": cancelled,
                "completed_at": completed,
            }
        except LedgerError as e:
            await self.log_migration({"type": "full_migration", "status": "failed", "error": e.message})
            raise

        await self.log_migration({"type": "full_migration", **result, "status": "success"})
        return result

    async def get_migration_status(self) -> Dict[str, Any]:
        pending = await self.get_payments_needing_migration(1000)
        users = await self.get_users_without_party()
        logs = await self.get_migration_logs()
        return {
            "payments_needing_migration": len(pending),
            "users_without_party": len(users),
            "migration_logs": logs[:10],
            "last_migration": logs[0]["created_at"] if logs else None,
            "is_fully_migrated": not pending and not users,
        }

    async def log_migration(self, data: Dict[str, Any]):
        try:
            await self.store.create(MIGRATION_LOGS_COLLECTION, {**data, "logged_at": self.clock()})
        except LedgerError as e:
            # Logging must not break the migration itself
            logger.error(f"[MIGRATION] Could not write migration log: {e.message}")

    async def get_migration_logs(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.store.query(
            MIGRATION_LOGS_COLLECTION,
            order_by=[("created_at", -1)],
            limit=limit,
        )
