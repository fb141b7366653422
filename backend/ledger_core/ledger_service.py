"""
REVENUE LEDGER: LEDGER SERVICE

Owns every ledger entry and settlement mutation.

RULES:
1. Entries are never deleted; status moves pending -> cleared only
2. Manual entries (no payment_id) need CREATE_MANUAL_ENTRIES plus party access;
   entries from payment processing are trusted
3. Settlements only take pending entries of one party and one currency;
   total = signed sum rounded to the currency precision
4. Settlement + entry clearing run in one transaction when the store supports
   it; otherwise a repair journal record is kept open until every entry is
   cleared, and reconcile_settlements() finishes interrupted settlements
5. Denied access is audited immediately, then PermissionDeniedError is raised
6. Notifications are enqueued after the mutation commits
"""

from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging

from .access_control import AccessControlGuard
from .audit_trail import AuditTrail
from .clock import Clock, ensure_utc, parse_datetime, utc_now
from .exceptions import (
    BalanceCalculationError,
    LedgerError,
    NotFoundError,
    PermissionDeniedError,
    SettlementError,
)
from .financial_precision import (
    FinancialPrecisionError,
    round_financial,
    signed_amount,
    signed_total,
    to_decimal,
    to_float,
)
from .models import (
    Actor,
    AuditEventType,
    AuditLevel,
    EntryStatus,
    EntryType,
    LedgerEntry,
    Party,
    PartyBalance,
    Permission,
    RiskLevel,
    Settlement,
)
from .notifications import NotificationType
from .validation_engine import (
    Result,
    ValidationEngine,
    ValidationErrorType,
    ValidationIssue,
    currency_decimals,
)

logger = logging.getLogger(__name__)

ENTRIES_COLLECTION = "ledger_entries"
SETTLEMENTS_COLLECTION = "settlements"
REPAIRS_COLLECTION = "settlement_repairs"
PAYMENTS_COLLECTION = "payments"

ENTRY_FILTER_FIELDS = ("party", "status", "project_id", "currency", "type", "payment_id", "settlement_id")


class RepairStatus:
    OPEN = "open"
    CLOSED = "closed"


def _enum_value(value):
    return getattr(value, "value", value)


class LedgerService:

    def __init__(
        self,
        store,
        audit: AuditTrail,
        notifier=None,
        validator: Optional[ValidationEngine] = None,
        access: Optional[AccessControlGuard] = None,
        clock: Clock = utc_now,
        admin_user_ids: Optional[Iterable[str]] = None
    ):
        self.store = store
        self.audit = audit
        self.notifier = notifier
        self.validator = validator or ValidationEngine()
        self.access = access or AccessControlGuard()
        self.clock = clock
        self.admin_user_ids = list(admin_user_ids or [])

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _deny(self, actor: Optional[Actor], resource: str, action: str, message: str, **details):
        user_id = actor.id if actor else None
        logger.warning(f"[LEDGER] Denied {action} on {resource} for user {user_id}: {message}")
        await self.audit.log_unauthorized_access(resource, action, user_id, extra=details)
        raise PermissionDeniedError(message, {"resource": resource, "action": action, **details})

    async def _notify(self, targets: List[str], notification_type: str, metadata: Dict[str, Any]):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(targets, notification_type, metadata)
        except Exception as e:
            logger.error(f"[LEDGER] Could not enqueue {notification_type}: {str(e)}")

    async def _load_entries(
        self,
        where: Optional[Dict[str, Any]] = None,
        order_by=None
    ) -> List[Dict[str, Any]]:
        return await self.store.query(
            ENTRIES_COLLECTION,
            where=where,
            order_by=order_by or [("date", -1)],
        )

    def _require_actor(self, actor: Optional[Actor], action: str):
        if actor is None:
            raise PermissionDeniedError(f"{action} requires an authenticated actor")

    # =========================================================================
    # ENTRIES
    # =========================================================================

    async def create_entry(self, data: Dict[str, Any], actor: Optional[Actor] = None) -> Result[LedgerEntry]:
        data = {k: _enum_value(v) for k, v in data.items()}
        is_manual = not data.get("payment_id")

        if is_manual:
            self._require_actor(actor, "Manual ledger entry")
            if not self.access.has_permission(actor, Permission.CREATE_MANUAL_ENTRIES):
                await self._deny(actor, "ledger_entry", "create_manual",
                                 "Insufficient permissions to create manual ledger entries")
            if data.get("party") and not self.access.can_access_party(actor, data["party"]):
                await self._deny(actor, "ledger_entry", "create_manual",
                                 f"Cannot create entries for party: {data['party']}", party=data["party"])

        validation = self.validator.validate_ledger_entry(data)
        if data.get("status") and data["status"] != EntryStatus.PENDING.value:
            validation.add(
                ValidationErrorType.BUSINESS_RULE_VIOLATION,
                "Ledger entries are created in pending status",
                "status", data["status"]
            )
        if not validation.is_valid:
            return Result.from_validation(validation)

        currency = data["currency"].upper()
        doc = {
            "payment_id": data.get("payment_id") or None,
            "project_id": data["project_id"],
            "revenue_rule_id": data.get("revenue_rule_id"),
            "type": data["type"],
            "party": data["party"],
            "amount": to_float(data["amount"], currency_decimals(currency)),
            "currency": currency,
            "date": parse_datetime(data["date"]),
            "status": EntryStatus.PENDING.value,
            "remarks": data.get("remarks"),
            "settlement_id": None,
            "created_by": actor.id if actor else None,
        }
        stored = await self.store.create(ENTRIES_COLLECTION, doc)
        logger.info(
            f"[LEDGER] Entry {stored['id']} created: {stored['type']} {stored['amount']} "
            f"{stored['currency']} for {stored['party']}"
        )

        await self.audit.log_ledger_entry_operation("created", stored, actor.id if actor else None)
        await self._notify([stored["party"]], NotificationType.LEDGER_ENTRY_CREATED, {
            "entry_id": stored["id"],
            "project_id": stored["project_id"],
            "amount": stored["amount"],
            "currency": stored["currency"],
        })
        return Result.success(LedgerEntry(**stored))

    async def add_manual_entry(self, data: Dict[str, Any], actor: Actor) -> Result[LedgerEntry]:
        """Adjustment entry not linked to any payment or revenue rule"""
        result = await self.create_entry({
            **data,
            "payment_id": None,
            "revenue_rule_id": None,
            "remarks": data.get("remarks") or "Manual adjustment",
        }, actor)
        if result.ok:
            entry = result.value
            await self.audit.log_event(
                AuditEventType.MANUAL_LEDGER_ENTRY_CREATED,
                {
                    "entry_id": entry.id,
                    "party": entry.party.value,
                    "type": entry.type.value,
                    "amount": entry.amount,
                    "currency": entry.currency,
                    "remarks": entry.remarks,
                },
                user_id=actor.id,
                resource_type="ledger_entry",
                resource_id=entry.id,
                risk_level=RiskLevel.HIGH,
            )
        return result

    async def get_entry(self, entry_id: str, actor: Optional[Actor] = None) -> LedgerEntry:
        doc = await self.store.get_by_id(ENTRIES_COLLECTION, entry_id)
        if actor is not None and not (
            self.access.has_permission(actor, Permission.VIEW_ALL_LEDGER_ENTRIES)
            or self.access.can_access_resource(actor, "ledger_entry", doc)
        ):
            await self._deny(actor, "ledger_entry", "view", "Cannot view this ledger entry", entry_id=entry_id)
        return LedgerEntry(**doc)

    async def query_entries(self, filters: Optional[Dict[str, Any]] = None, actor: Optional[Actor] = None) -> List[LedgerEntry]:
        """
        Conjunctive filters on party, status, project_id, currency, type,
        payment_id and settlement_id, plus an inclusive start_date/end_date
        range. Newest first.
        """
        filters = filters or {}
        if actor is not None and not self.access.has_any_permission(
            actor, [Permission.VIEW_LEDGER_ENTRIES, Permission.VIEW_ALL_LEDGER_ENTRIES]
        ):
            await self._deny(actor, "ledger_entry", "view", "Insufficient permissions to view ledger entries")

        where = {
            key: _enum_value(filters[key])
            for key in ENTRY_FILTER_FIELDS
            if filters.get(key) is not None
        }
        if "currency" in where:
            where["currency"] = where["currency"].upper()
        docs = await self._load_entries(where)

        start = parse_datetime(filters.get("start_date"))
        end = parse_datetime(filters.get("end_date"))
        if start is not None or end is not None:
            # Mongo hands back naive datetimes unless the client is tz_aware
            dated = [(ensure_utc(d["date"]), d) for d in docs]
            docs = [
                d for date, d in dated
                if (start is None or date >= start) and (end is None or date <= end)
            ]

        if actor is not None:
            docs = self.access.filter_ledger_entries_by_permissions(actor, docs)
        if filters.get("limit"):
            docs = docs[:filters["limit"]]
        return [LedgerEntry(**d) for d in docs]

    async def get_entries_by_payment(self, payment_id: str, actor: Optional[Actor] = None) -> List[LedgerEntry]:
        return await self.query_entries({"payment_id": payment_id}, actor)

    async def get_pending_entries_for_settlement(
        self,
        party,
        currency: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> List[LedgerEntry]:
        filters = {"party": party, "status": EntryStatus.PENDING}
        if currency:
            filters["currency"] = currency
        entries = await self.query_entries(filters, actor)
        return sorted(entries, key=lambda e: e.date)

    async def update_status(self, entry_id: str, new_status, actor: Actor) -> Result[LedgerEntry]:
        try:
            status = EntryStatus(_enum_value(new_status))
        except ValueError:
            return Result.failure([ValidationIssue(
                ValidationErrorType.INVALID_FORMAT,
                f"Invalid status. Valid statuses: {', '.join(s.value for s in EntryStatus)}",
                "status", new_status
            )])

        if not self.access.has_permission(actor, Permission.EDIT_LEDGER_ENTRIES):
            await self._deny(actor, "ledger_entry", "update_status",
                             "Insufficient permissions to edit ledger entries", entry_id=entry_id)
        doc = await self.store.get_by_id(ENTRIES_COLLECTION, entry_id)
        if not self.access.can_access_party(actor, doc["party"]):
            await self._deny(actor, "ledger_entry", "update_status",
                             f"Cannot edit entries for party: {doc['party']}", entry_id=entry_id)

        old_status = doc["status"]
        if old_status == status.value:
            return Result.success(LedgerEntry(**doc))
        if old_status == EntryStatus.CLEARED.value:
            return Result.failure([ValidationIssue(
                ValidationErrorType.BUSINESS_RULE_VIOLATION,
                "Cleared ledger entries cannot change status",
                "status", status.value
            )])

        await self.store.update(ENTRIES_COLLECTION, entry_id, {"status": status.value})
        doc["status"] = status.value
        logger.info(f"[LEDGER] Entry {entry_id} status {old_status} -> {status.value} by {actor.id}")

        await self.audit.log_ledger_entry_operation(
            "status_changed", doc, actor.id,
            extra={"old_status": old_status, "new_status": status.value}
        )
        return Result.success(LedgerEntry(**await self.store.get_by_id(ENTRIES_COLLECTION, entry_id)))

    # =========================================================================
    # BALANCES & SUMMARIES
    # =========================================================================

    async def compute_balance(self, party, currency: Optional[str] = None, actor: Optional[Actor] = None) -> PartyBalance:
        party = Party(_enum_value(party))
        if actor is not None:
            allowed = self.access.has_permission(actor, Permission.VIEW_ALL_PARTY_BALANCES) or (
                self.access.has_permission(actor, Permission.VIEW_PARTY_BALANCES)
                and self.access.can_access_party(actor, party)
            )
            if not allowed:
                await self._deny(actor, "party_balance", "view",
                                 f"Cannot view balance for party: {party.value}", party=party.value)

        where: Dict[str, Any] = {"party": party.value}
        if currency:
            where["currency"] = currency.upper()
        entries = await self._load_entries(where)

        pending = Decimal("0")
        cleared = Decimal("0")
        try:
            currencies = {e["currency"] for e in entries}
            if len(currencies) > 1:
                raise BalanceCalculationError(
                    f"Entries for {party.value} span several currencies; pass a currency",
                    {"party": party.value, "currencies": sorted(currencies)}
                )
            for entry in entries:
                amount = signed_amount(entry["type"], entry["amount"])
                if entry["status"] == EntryStatus.CLEARED.value:
                    cleared += amount
                else:
                    pending += amount
        except (FinancialPrecisionError, KeyError, TypeError) as e:
            raise BalanceCalculationError(
                f"Balance calculation failed for {party.value}: {str(e)}",
                {"party": party.value}
            )

        balance = PartyBalance(
            party=party,
            currency=currency.upper() if currency else (next(iter(currencies)) if entries else None),
            total_pending=to_float(pending),
            total_cleared=to_float(cleared),
            net_balance=to_float(round_financial(pending) + round_financial(cleared)),
            last_updated=self.clock(),
        )
        await self.audit.log_event(
            AuditEventType.BALANCE_CALCULATION_PERFORMED,
            {"party": party.value, "currency": balance.currency, "net_balance": balance.net_balance},
            user_id=actor.id if actor else None,
            resource_type="party_balance",
            resource_id=party.value,
        )
        return balance

    async def get_project_ledger_summary(self, project_id: str, actor: Optional[Actor] = None) -> List[Dict[str, Any]]:
        """Per (party, currency) credit/debit totals for one project"""
        entries = await self._load_entries({"project_id": project_id})
        if actor is not None:
            entries = self.access.filter_ledger_entries_by_permissions(actor, entries)

        groups: Dict[tuple, Dict[str, Any]] = {}
        for entry in entries:
            key = (entry["party"], entry["currency"])
            group = groups.setdefault(key, {
                "party": entry["party"],
                "currency": entry["currency"],
                "total_credits": Decimal("0"),
                "total_debits": Decimal("0"),
                "pending_credits": Decimal("0"),
                "pending_debits": Decimal("0"),
                "cleared_credits": Decimal("0"),
                "cleared_debits": Decimal("0"),
            })
            amount = to_decimal(entry["amount"])
            side = "credits" if entry["type"] == EntryType.CREDIT.value else "debits"
            state = "pending" if entry["status"] == EntryStatus.PENDING.value else "cleared"
            group[f"total_{side}"] += amount
            group[f"{state}_{side}"] += amount

        summary = []
        for group in groups.values():
            decimals = currency_decimals(group["currency"])
            item = {
                "party": group["party"],
                "currency": group["currency"],
                "net_balance": to_float(group["total_credits"] - group["total_debits"], decimals),
                "pending_balance": to_float(group["pending_credits"] - group["pending_debits"], decimals),
                "cleared_balance": to_float(group["cleared_credits"] - group["cleared_debits"], decimals),
            }
            for field in ("total_credits", "total_debits", "pending_credits",
                          "pending_debits", "cleared_credits", "cleared_debits"):
                item[field] = to_float(group[field], decimals)
            summary.append(item)
        return sorted(summary, key=lambda s: (s["party"], s["currency"]))

    async def get_ledger_stats(self, actor: Optional[Actor] = None) -> Dict[str, Any]:
        if actor is not None and not self.access.can_view_financial_reports(actor):
            await self._deny(actor, "ledger_stats", "view", "Insufficient permissions to view financial reports")

        entries = await self._load_entries()
        stats = {
            "total_entries": len(entries),
            "pending_entries": sum(1 for e in entries if e["status"] == EntryStatus.PENDING.value),
            "cleared_entries": sum(1 for e in entries if e["status"] == EntryStatus.CLEARED.value),
            "credit_entries": sum(1 for e in entries if e["type"] == EntryType.CREDIT.value),
            "debit_entries": sum(1 for e in entries if e["type"] == EntryType.DEBIT.value),
            "party_balances": {},
        }

        balances: Dict[str, Dict[str, Dict[str, Decimal]]] = {}
        for entry in entries:
            per_currency = balances.setdefault(entry["party"], {}).setdefault(
                entry["currency"], {"pending": Decimal("0"), "cleared": Decimal("0")}
            )
            state = "cleared" if entry["status"] == EntryStatus.CLEARED.value else "pending"
            per_currency[state] += signed_amount(entry["type"], entry["amount"])

        for party in Party:
            stats["party_balances"][party.value] = {
                currency: {
                    "total_pending": to_float(totals["pending"]),
                    "total_cleared": to_float(totals["cleared"]),
                    "net_balance": to_float(totals["pending"] + totals["cleared"]),
                }
                for currency, totals in balances.get(party.value, {}).items()
            }
        return stats

    # =========================================================================
    # SETTLEMENTS
    # =========================================================================

    async def create_settlement(self, data: Dict[str, Any], actor: Actor) -> Result[Settlement]:
        data = {k: _enum_value(v) for k, v in data.items()}
        if isinstance(data.get("currency"), str):
            data["currency"] = data["currency"].upper()

        validation = self.validator.validate_settlement(data)
        if not validation.is_valid:
            return Result.from_validation(validation)

        party = data["party"]
        currency = data["currency"]
        entry_ids = list(data["ledger_entry_ids"])

        entries = await self.store.query(ENTRIES_COLLECTION, where={"id": {"$in": entry_ids}})
        found = {e["id"] for e in entries}
        missing = [entry_id for entry_id in entry_ids if entry_id not in found]
        if missing:
            raise NotFoundError(ENTRIES_COLLECTION, ", ".join(missing))

        try:
            self.access.validate_settlement_permissions(actor, entries)
        except PermissionDeniedError as e:
            await self._deny(actor, "settlement", "create", e.message, **e.details)
        if not self.access.can_perform_settlement(actor, party):
            await self._deny(actor, "settlement", "create", f"Cannot settle entries for party: {party}", party=party)

        not_pending = [e["id"] for e in entries if e["status"] != EntryStatus.PENDING.value]
        other_party = [e["id"] for e in entries if e["party"] != party]
        if not_pending or other_party:
            raise SettlementError(
                "Some ledger entries are not pending or belong to a different party",
                {"not_pending": not_pending, "party_mismatch": other_party}
            )
        currency_check = self.validator.validate_currency_consistency(entries)
        wrong_currency = [e["id"] for e in entries if e["currency"] != currency]
        if not currency_check.is_valid or wrong_currency:
            raise SettlementError(
                f"Ledger entries must all be in {currency}",
                {"currency_mismatch": wrong_currency}
            )

        decimals = currency_decimals(currency)
        total = round_financial(signed_total(entries), decimals)
        doc = {
            "party": party,
            "ledger_entry_ids": entry_ids,
            "total_amount": to_float(total, decimals),
            "currency": currency,
            "settlement_date": parse_datetime(data["settlement_date"]),
            "created_by": actor.id,
            "proof_urls": list(data.get("proof_urls") or []),
            "remarks": data.get("remarks"),
        }

        if self.store.supports_transactions:
            settlement = await self._settle_in_transaction(doc, actor)
        else:
            settlement = await self._settle_with_journal(doc, actor)

        logger.info(
            f"[SETTLEMENT] {settlement['id']} created for {party}: "
            f"{len(entry_ids)} entries, {settlement['total_amount']} {currency}"
        )
        await self.audit.log_settlement_operation("created", settlement, actor.id)
        await self._notify([party] + self.admin_user_ids, NotificationType.SETTLEMENT_COMPLETED, {
            "settlement_id": settlement["id"],
            "party": party,
            "total_amount": settlement["total_amount"],
            "currency": currency,
            "entry_count": len(entry_ids),
            "created_by": actor.id,
        })
        return Result.success(Settlement(**settlement))

    async def _settle_in_transaction(self, doc: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        try:
            async with self.store.transaction() as session:
                settlement = await self.store.create(SETTLEMENTS_COLLECTION, doc, session=session)
                for entry_id in doc["ledger_entry_ids"]:
                    await self.store.update(ENTRIES_COLLECTION, entry_id, {
                        "status": EntryStatus.CLEARED.value,
                        "settlement_id": settlement["id"],
                    }, session=session)
        except LedgerError as e:
            logger.error(f"[SETTLEMENT] Transaction for {doc['party']} rolled back: {e.message}")
            await self.audit.log_settlement_operation(
                "rejected", doc, actor.id,
                level=AuditLevel.CRITICAL, risk_level=RiskLevel.CRITICAL,
                extra={"error": e.message}
            )
            raise
        return settlement

    async def _settle_with_journal(self, doc: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        settlement = await self.store.create(SETTLEMENTS_COLLECTION, doc)
        repair = await self.store.create(REPAIRS_COLLECTION, {
            "settlement_id": settlement["id"],
            "ledger_entry_ids": doc["ledger_entry_ids"],
            "status": RepairStatus.OPEN,
            "attempts": 0,
            "last_error": None,
        })
        try:
            await self._apply_settlement_clearing(settlement)
        except LedgerError as e:
            logger.critical(
                f"[SETTLEMENT] {settlement['id']} partially applied, repair journal {repair['id']} left open: {e.message}"
            )
            await self.store.update(REPAIRS_COLLECTION, repair["id"], {"attempts": 1, "last_error": e.message})
            await self.audit.log_settlement_operation(
                "partially_applied", settlement, actor.id,
                level=AuditLevel.CRITICAL, risk_level=RiskLevel.CRITICAL,
                extra={"error": e.message, "repair_id": repair["id"]}
            )
            await self._notify(self.admin_user_ids, NotificationType.SETTLEMENT_REPAIR_REQUIRED, {
                "settlement_id": settlement["id"],
                "repair_id": repair["id"],
                "error": e.message,
            })
            raise
        await self.store.update(REPAIRS_COLLECTION, repair["id"], {
            "status": RepairStatus.CLOSED,
            "closed_at": self.clock(),
        })
        return settlement

    async def _apply_settlement_clearing(self, settlement: Dict[str, Any]) -> int:
        """Clear every referenced entry; entries already linked are skipped"""
        applied = 0
        for entry_id in settlement["ledger_entry_ids"]:
            entry = await self.store.get_by_id(ENTRIES_COLLECTION, entry_id)
            if entry.get("settlement_id") == settlement["id"] and entry["status"] == EntryStatus.CLEARED.value:
                continue
            await self.store.update(ENTRIES_COLLECTION, entry_id, {
                "status": EntryStatus.CLEARED.value,
                "settlement_id": settlement["id"],
            })
            applied += 1
        return applied

    async def reconcile_settlements(self, actor: Optional[Actor] = None) -> Dict[str, int]:
        """Finish settlements whose entry clearing was interrupted"""
        if actor is not None and not self.access.has_permission(actor, Permission.MANAGE_FINANCIAL_SETTINGS):
            await self._deny(actor, "settlement", "reconcile", "Insufficient permissions to reconcile settlements")

        repairs = await self.store.query(REPAIRS_COLLECTION, where={"status": RepairStatus.OPEN})
        outcome = {"checked": len(repairs), "repaired": 0, "failed": 0}
        for repair in repairs:
            try:
                settlement = await self.store.get_by_id(SETTLEMENTS_COLLECTION, repair["settlement_id"])
                applied = await self._apply_settlement_clearing(settlement)
            except LedgerError as e:
                outcome["failed"] += 1
                await self.store.update(REPAIRS_COLLECTION, repair["id"], {
                    "attempts": repair.get("attempts", 0) + 1,
                    "last_error": e.message,
                })
                logger.error(f"[SETTLEMENT] Repair {repair['id']} failed again: {e.message}")
                continue

            await self.store.update(REPAIRS_COLLECTION, repair["id"], {
                "status": RepairStatus.CLOSED,
                "closed_at": self.clock(),
            })
            outcome["repaired"] += 1
            await self.audit.log_settlement_operation(
                "reconciled", settlement, actor.id if actor else None,
                extra={"repair_id": repair["id"], "entries_cleared": applied}
            )
        logger.info(f"[SETTLEMENT] Reconciliation: {outcome}")
        return outcome

    async def get_settlements(self, party=None, actor: Optional[Actor] = None) -> List[Settlement]:
        if actor is not None and not self.access.has_any_permission(
            actor, [Permission.VIEW_SETTLEMENTS, Permission.VIEW_ALL_SETTLEMENTS]
        ):
            await self._deny(actor, "settlement", "view", "Insufficient permissions to view settlements")

        where = {"party": _enum_value(party)} if party else None
        docs = await self.store.query(SETTLEMENTS_COLLECTION, where=where, order_by=[("settlement_date", -1)])
        if actor is not None:
            docs = self.access.filter_settlements_by_permissions(actor, docs)
        return [Settlement(**d) for d in docs]

    async def get_settlement(self, settlement_id: str, actor: Optional[Actor] = None) -> Settlement:
        doc = await self.store.get_by_id(SETTLEMENTS_COLLECTION, settlement_id)
        if actor is not None and not (
            self.access.has_permission(actor, Permission.VIEW_ALL_SETTLEMENTS)
            or self.access.can_access_resource(actor, "settlement", doc)
        ):
            await self._deny(actor, "settlement", "view", "Cannot view this settlement", settlement_id=settlement_id)
        return Settlement(**doc)

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe_to_ledger_entries(
        self,
        callback: Callable[[Dict[str, Any]], Any],
        filters: Optional[Dict[str, Any]] = None
    ) -> Callable[[], None]:
        filters = filters or {}
        where = {
            key: _enum_value(filters[key])
            for key in ("party", "status", "project_id")
            if filters.get(key) is not None
        }
        return self.store.subscribe(ENTRIES_COLLECTION, where or None, callback)

    def subscribe_to_settlements(self, callback: Callable[[Dict[str, Any]], Any], party=None) -> Callable[[], None]:
        where = {"party": _enum_value(party)} if party else None
        return self.store.subscribe(SETTLEMENTS_COLLECTION, where, callback)

    # =========================================================================
    # DATA INTEGRITY
    # =========================================================================

    async def check_data_integrity(self, actor: Optional[Actor] = None) -> Dict[str, Any]:
        if actor is not None and not self.access.can_view_financial_reports(actor):
            await self._deny(actor, "ledger", "integrity_check", "Insufficient permissions to run integrity checks")

        entries = await self._load_entries()
        settlements = await self.store.query(SETTLEMENTS_COLLECTION)
        payments = await self.store.query(PAYMENTS_COLLECTION, where={"revenue_processed": True})
        report = self.validator.validate_data_integrity(entries, settlements, payments).to_dict()

        if not report["passed"]:
            logger.warning(f"[LEDGER] Data integrity check found {len(report['issues'])} issue(s)")
        await self.audit.log_data_integrity_check("comprehensive_check", report, actor.id if actor else None)
        return report
