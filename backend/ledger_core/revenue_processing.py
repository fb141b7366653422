"""
PAYMENT REVENUE PROCESSING

Turns a verified payment into pending credit entries, one per party with a
non-zero share.

1. Unverified or already-processed payments are skipped; a payment that
   already has ledger entries but lost its stamp is re-stamped, never re-split
2. Rule resolution falls back to persisting the default 40/60/0 rule
3. The payment is stamped with revenue_processed, the rule id and entry ids
4. handle_payment_verified() is the approval-side boundary: it never raises,
   so payment approval does not depend on revenue processing
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging

from .audit_trail import AuditTrail
from .clock import Clock, utc_now
from .exceptions import NotFoundError
from .models import AuditLevel, EntryStatus, EntryType, RevenueRule
from .notifications import NotificationType
from .revenue_rules import RevenueRuleService
from .revenue_split import RevenueSplitCalculator

logger = logging.getLogger(__name__)

PAYMENTS_COLLECTION = "payments"


class SkipReason:
    NOT_VERIFIED = "payment_not_verified"
    ALREADY_PROCESSED = "already_processed"


@dataclass
class ProcessingOutcome:
    """Result of processing one payment"""
    payment_id: str
    processed: bool
    skip_reason: Optional[str] = None
    revenue_rule_id: Optional[str] = None
    ledger_entry_ids: List[str] = field(default_factory=list)
    split: Dict[str, float] = field(default_factory=dict)
    created_default_rule: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return self.processed and bool(self.errors)


class RevenueProcessor:

    def __init__(
        self,
        store,
        ledger,
        rules: RevenueRuleService,
        audit: AuditTrail,
        calculator: Optional[RevenueSplitCalculator] = None,
        notifier=None,
        clock: Clock = utc_now,
        admin_user_ids: Optional[List[str]] = None
    ):
        self.store = store
        self.ledger = ledger
        self.rules = rules
        self.audit = audit
        self.calculator = calculator or RevenueSplitCalculator(ledger.validator)
        self.notifier = notifier
        self.clock = clock
        self.admin_user_ids = list(admin_user_ids or [])

    async def notify_administrators(self, subject: str, metadata: Dict[str, Any]):
        if self.notifier is None or not self.admin_user_ids:
            return
        try:
            await self.notifier.notify(self.admin_user_ids, NotificationType.REVENUE_PROCESSING_FAILED, {
                "subject": subject,
                **metadata,
            })
        except Exception as e:
            logger.error(f"[REVENUE] Failed to notify administrators: {str(e)}")

    async def resolve_rule(self, project_id: str) -> Tuple[RevenueRule, bool]:
        """Active rule for the project; persists the default rule when none exists"""
        try:
            return await self.rules.get_active_rule(project_id), False
        except NotFoundError:
            logger.warning(f"[REVENUE] No active revenue rule for project {project_id}, creating default rule")
            return await self.rules.create_default_rule(), True

    async def process_payment_revenue(
        self,
        payment_id: str,
        rule: Optional[RevenueRule] = None,
        processed_by: Optional[str] = None
    ) -> ProcessingOutcome:
        payment = await self.store.get_by_id(PAYMENTS_COLLECTION, payment_id)

        if not payment.get("verified"):
            logger.info(f"[REVENUE] Skipping payment {payment_id}: not verified")
            return ProcessingOutcome(payment_id, False, skip_reason=SkipReason.NOT_VERIFIED)
        if payment.get("revenue_processed"):
            logger.info(f"[REVENUE] Skipping payment {payment_id}: already processed")
            return ProcessingOutcome(payment_id, False, skip_reason=SkipReason.ALREADY_PROCESSED)

        existing = await self.ledger.get_entries_by_payment(payment_id)
        if existing:
            return await self._restamp(payment_id, existing)

        await self.audit.log_revenue_processing("started", payment, processed_by)

        created_default = False
        if rule is None:
            rule, created_default = await self.resolve_rule(payment["project_id"])

        currency = payment.get("currency") or "INR"
        split = self.calculator.calculate_split(payment["amount"], currency, rule)
        if not split.ok:
            await self.audit.log_revenue_processing(
                "failed", payment, processed_by,
                level=AuditLevel.ERROR,
                extra={"reason": "split_calculation_failed", "errors": [e.to_dict() for e in split.errors]}
            )
            split.unwrap()

        outcome = ProcessingOutcome(
            payment_id,
            processed=False,
            revenue_rule_id=rule.id,
            split={party: share.amount for party, share in split.value.shares().items()},
            created_default_rule=created_default,
        )

        entry_date = self.clock()
        for party, share in split.value.shares().items():
            if share.amount <= 0:
                continue
            result = await self.ledger.create_entry({
                "payment_id": payment_id,
                "project_id": payment["project_id"],
                "revenue_rule_id": rule.id,
                "type": EntryType.CREDIT.value,
                "party": party,
                "amount": share.amount,
                "currency": share.currency,
                "date": entry_date,
                "status": EntryStatus.PENDING.value,
            })
            if result.ok:
                outcome.ledger_entry_ids.append(result.value.id)
            else:
                outcome.errors.append({"party": party, "errors": [e.to_dict() for e in result.errors]})

        if outcome.errors:
            logger.error(f"[REVENUE] Ledger entry creation failed for payment {payment_id}: {outcome.errors}")
            await self.notify_administrators("Revenue Processing Partial Failure: Ledger Entry Creation", {
                "payment_id": payment_id,
                "created_entries": len(outcome.ledger_entry_ids),
                "errors": outcome.errors,
            })

        if not outcome.ledger_entry_ids:
            await self.audit.log_revenue_processing(
                "failed", payment, processed_by,
                level=AuditLevel.ERROR,
                extra={"reason": "no_ledger_entries_created", "errors": outcome.errors}
            )
            return outcome

        stamp = {
            "revenue_processed": True,
            "revenue_processed_at": entry_date,
            "revenue_rule_id": rule.id,
            "ledger_entry_ids": outcome.ledger_entry_ids,
        }
        await self.store.update(PAYMENTS_COLLECTION, payment_id, stamp)
        outcome.processed = True

        await self.audit.log_revenue_processing(
            "completed", {**payment, **stamp}, processed_by,
            level=AuditLevel.WARNING if outcome.partial else AuditLevel.INFO,
            extra={"split": outcome.split, "created_default_rule": created_default}
        )
        logger.info(
            f"[REVENUE] Payment {payment_id} processed: "
            f"{len(outcome.ledger_entry_ids)} ledger entries created"
        )
        return outcome

    async def _restamp(self, payment_id: str, entries) -> ProcessingOutcome:
        """Entries exist but the payment stamp was lost; stamp it from the entries"""
        entry_ids = [e.id for e in entries]
        rule_id = entries[0].revenue_rule_id
        logger.warning(
            f"[REVENUE] Payment {payment_id} already has {len(entry_ids)} ledger entries, restoring processed stamp"
        )
        await self.store.update(PAYMENTS_COLLECTION, payment_id, {
            "revenue_processed": True,
            "revenue_processed_at": min(e.date for e in entries),
            "revenue_rule_id": rule_id,
            "ledger_entry_ids": entry_ids,
        })
        return ProcessingOutcome(
            payment_id, False,
            skip_reason=SkipReason.ALREADY_PROCESSED,
            revenue_rule_id=rule_id,
            ledger_entry_ids=entry_ids,
        )

    async def handle_payment_verified(self, payment_id: str, approved_by: Optional[str] = None) -> Optional[ProcessingOutcome]:
        """
        Called once a payment reaches verified status.

        Revenue failures are logged and reported to administrators; they never
        propagate to the approval flow.
        """
        try:
            return await self.process_payment_revenue(payment_id, processed_by=approved_by)
        except Exception as e:
            logger.error(f"[REVENUE] Revenue processing failed for payment {payment_id}: {str(e)}")
            await self.notify_administrators("Revenue Processing Failed", {
                "payment_id": payment_id,
                "error": str(e),
                "error_type": getattr(e, "error_type", type(e).__name__),
            })
            return None
