"""
Settlement planning, statistics and reminders on top of LedgerService.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
import asyncio
import logging

from .clock import Clock, ensure_utc, utc_now
from .exceptions import NotFoundError
from .financial_precision import signed_amount, to_decimal, to_float
from .ledger_service import ENTRIES_COLLECTION, SETTLEMENTS_COLLECTION, LedgerService
from .models import Actor, EntryStatus, Party
from .notifications import NotificationType
from .validation_engine import Result, ValidationErrorType, ValidationResult, currency_decimals

logger = logging.getLogger(__name__)


class SettlementService:

    def __init__(self, ledger: LedgerService, notifier=None, clock: Clock = utc_now):
        self.ledger = ledger
        self.store = ledger.store
        self.validator = ledger.validator
        self.notifier = notifier
        self.clock = clock

    def _require_party(self, party) -> Party:
        value = getattr(party, "value", party)
        Result.from_validation(self.validator.validate_field("party", value)).unwrap()
        return Party(value)

    async def validate_settlement_request(self, data: Dict[str, Any]) -> ValidationResult:
        """Pre-flight check of a settlement payload; nothing is written"""
        result = self.validator.validate_settlement(data)
        entry_ids = data.get("ledger_entry_ids") or []
        if not entry_ids:
            return result

        entries = []
        for entry_id in entry_ids:
            try:
                entries.append(await self.store.get_by_id(ENTRIES_COLLECTION, entry_id))
            except NotFoundError:
                result.add(ValidationErrorType.DATA_INTEGRITY_VIOLATION,
                           f"Ledger entry {entry_id} does not exist", "ledger_entry_ids", entry_id)

        party = getattr(data.get("party"), "value", data.get("party"))
        unusable = [e["id"] for e in entries if e["status"] != EntryStatus.PENDING.value or e["party"] != party]
        if unusable:
            result.add(
                ValidationErrorType.BUSINESS_RULE_VIOLATION,
                "Some selected entries are already settled or belong to a different party",
                "ledger_entry_ids", unusable
            )
        result.extend(self.validator.validate_currency_consistency(entries))
        return result

    async def get_recommended_settlements(self, party, actor: Optional[Actor] = None) -> List[Dict[str, Any]]:
        """Pending entries grouped by currency and project, largest total first"""
        party = self._require_party(party)
        entries = await self.ledger.get_pending_entries_for_settlement(party, actor=actor)

        groups: Dict[tuple, Dict[str, Any]] = {}
        for entry in entries:
            key = (entry.currency, entry.project_id)
            group = groups.setdefault(key, {
                "party": party.value,
                "currency": entry.currency,
                "project_id": entry.project_id,
                "ledger_entry_ids": [],
                "total": Decimal("0"),
            })
            group["ledger_entry_ids"].append(entry.id)
            group["total"] += signed_amount(entry.type.value, entry.amount)

        recommendations = []
        for group in groups.values():
            total = group.pop("total")
            recommendations.append({
                **group,
                "total_amount": to_float(total, currency_decimals(group["currency"])),
                "entry_count": len(group["ledger_entry_ids"]),
            })
        return sorted(recommendations, key=lambda r: r["total_amount"], reverse=True)

    async def get_settlement_history(self, party, limit: int = 10) -> List[Dict[str, Any]]:
        party = self._require_party(party)
        return await self.store.query(
            SETTLEMENTS_COLLECTION,
            where={"party": party.value},
            order_by=[("settlement_date", -1)],
            limit=limit,
        )

    async def get_settlement_stats(self, party=None) -> Dict[str, Any]:
        where = {"party": self._require_party(party).value} if party else None
        settlements = await self.store.query(SETTLEMENTS_COLLECTION, where=where)

        now = self.clock()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        stats = {"total_settlements": len(settlements), "settlements_this_month": 0, "by_currency": {}}

        totals: Dict[str, Dict[str, Any]] = {}
        for settlement in settlements:
            bucket = totals.setdefault(settlement["currency"], {
                "count": 0, "total": Decimal("0"), "this_month": Decimal("0")
            })
            amount = to_decimal(settlement["total_amount"])
            bucket["count"] += 1
            bucket["total"] += amount
            if ensure_utc(settlement["settlement_date"]) >= month_start:
                bucket["this_month"] += amount
                stats["settlements_this_month"] += 1

        for currency, bucket in totals.items():
            decimals = currency_decimals(currency)
            stats["by_currency"][currency] = {
                "settlements": bucket["count"],
                "total_amount": to_float(bucket["total"], decimals),
                "average_amount": to_float(bucket["total"] / bucket["count"], decimals),
                "amount_this_month": to_float(bucket["this_month"], decimals),
            }
        return stats

    async def get_pending_settlement_amounts(self) -> Dict[str, Dict[str, float]]:
        """Pending balance per party and currency"""
        stats = await self.ledger.get_ledger_stats()
        return {
            party: {currency: balance["total_pending"] for currency, balance in per_currency.items()}
            for party, per_currency in stats["party_balances"].items()
        }

    async def send_settlement_reminders(self, threshold: float = 1000) -> List[Dict[str, Any]]:
        reminders = []
        pending = await self.get_pending_settlement_amounts()
        for party, per_currency in pending.items():
            for currency, amount in per_currency.items():
                if amount < threshold:
                    continue
                reminder = {"party": party, "amount": amount, "currency": currency}
                reminders.append(reminder)
                if self.notifier is not None:
                    try:
                        await self.notifier.notify([party], NotificationType.SETTLEMENT_REMINDER, reminder)
                    except Exception as e:
                        logger.error(f"[SETTLEMENT] Reminder for {party} not enqueued: {str(e)}")
        logger.info(f"[SETTLEMENT] {len(reminders)} settlement reminder(s) sent")
        return reminders


class SettlementReminderScheduler:
    """Runs send_settlement_reminders on a fixed interval between start() and stop()"""

    def __init__(self, service: SettlementService, interval_hours: float = 24, threshold: float = 1000):
        self.service = service
        self.interval_seconds = interval_hours * 3600
        self.threshold = threshold
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"[SETTLEMENT] Reminder scheduler started (every {self.interval_seconds}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[SETTLEMENT] Reminder scheduler stopped")

    async def run_once(self) -> List[Dict[str, Any]]:
        self.runs += 1
        return await self.service.send_settlement_reminders(self.threshold)

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"[SETTLEMENT] Reminder run failed: {str(e)}")
