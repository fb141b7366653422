"""
Tests for RevenueProcessor: verified payment -> pending credit entries.
"""
import pytest

from ledger_core import EntryStatus, PersistenceError, RevenueRule, ValidationErrorType, ValidationFailedError
from ledger_core.notifications import NotificationType
from ledger_core.revenue_processing import SkipReason
from ledger_core.validation_engine import Result, ValidationIssue


class TestProcessPaymentRevenue:

    @pytest.mark.asyncio
    async def test_creates_default_rule_and_entries(self, processor, ledger, rules, make_payment, store):
        payment = await make_payment(amount=1000.0)
        outcome = await processor.process_payment_revenue(payment["id"], processed_by="admin-1")

        assert outcome.processed
        assert outcome.created_default_rule
        assert outcome.split == {"admin": 400.0, "team": 600.0}

        entries = await ledger.get_entries_by_payment(payment["id"])
        assert sorted((e.party.value, e.amount) for e in entries) == [("admin", 400.0), ("team", 600.0)]
        assert all(e.status == EntryStatus.PENDING and e.revenue_rule_id == outcome.revenue_rule_id for e in entries)

        stamped = await store.get_by_id("payments", payment["id"])
        assert stamped["revenue_processed"] is True
        assert stamped["revenue_rule_id"] == outcome.revenue_rule_id
        assert sorted(stamped["ledger_entry_ids"]) == sorted(outcome.ledger_entry_ids)
        assert (await rules.get_active_rule()).rule_name == "Default Migration Rule"

    @pytest.mark.asyncio
    async def test_uses_existing_active_rule(self, processor, rules, admin_actor, make_payment):
        rule = (await rules.create_rule({
            "rule_name": "Three Way", "admin_percent": 10, "team_percent": 20, "vendor_percent": 70,
        }, admin_actor)).unwrap()
        payment = await make_payment(amount=250.0, currency="EUR")
        outcome = await processor.process_payment_revenue(payment["id"])

        assert not outcome.created_default_rule
        assert outcome.revenue_rule_id == rule.id
        assert outcome.split == {"admin": 25.0, "team": 50.0, "vendor": 175.0}
        assert len(outcome.ledger_entry_ids) == 3

    @pytest.mark.asyncio
    async def test_explicit_rule_wins(self, processor, make_payment):
        rule = RevenueRule(id="override", rule_name="Override", admin_percent=50, team_percent=50)
        payment = await make_payment(amount=10)
        outcome = await processor.process_payment_revenue(payment["id"], rule=rule)
        assert outcome.revenue_rule_id == "override"
        assert outcome.split["team"] == 5.0

    @pytest.mark.asyncio
    async def test_skips_unverified(self, processor, ledger, make_payment):
        payment = await make_payment(verified=False)
        outcome = await processor.process_payment_revenue(payment["id"])
        assert not outcome.processed
        assert outcome.skip_reason == SkipReason.NOT_VERIFIED
        assert await ledger.get_entries_by_payment(payment["id"]) == []

    @pytest.mark.asyncio
    async def test_second_run_is_skipped(self, processor, ledger, make_payment):
        payment = await make_payment()
        await processor.process_payment_revenue(payment["id"])
        outcome = await processor.process_payment_revenue(payment["id"])
        assert outcome.skip_reason == SkipReason.ALREADY_PROCESSED
        assert len(await ledger.get_entries_by_payment(payment["id"])) == 2

    @pytest.mark.asyncio
    async def test_zero_share_is_skipped(self, processor, ledger, make_payment):
        payment = await make_payment(amount=0.01)
        outcome = await processor.process_payment_revenue(payment["id"])
        assert outcome.split == {"admin": 0.0, "team": 0.01}
        entries = await ledger.get_entries_by_payment(payment["id"])
        assert [(e.party.value, e.amount) for e in entries] == [("team", 0.01)]

    @pytest.mark.asyncio
    async def test_missing_currency_defaults_to_inr(self, processor, ledger, make_payment):
        payment = await make_payment(amount=500, currency=None)
        await processor.process_payment_revenue(payment["id"])
        entries = await ledger.get_entries_by_payment(payment["id"])
        assert {e.currency for e in entries} == {"INR"}

    @pytest.mark.asyncio
    async def test_invalid_amount_raises_and_audits(self, processor, make_payment, audit):
        payment = await make_payment(amount=0)
        with pytest.raises(ValidationFailedError):
            await processor.process_payment_revenue(payment["id"])
        failed = [e for e in audit.pending_entries if e["event_type"] == "revenue_processing_failed"]
        assert failed[0]["details"]["reason"] == "split_calculation_failed"

    @pytest.mark.asyncio
    async def test_partial_entry_failure(self, processor, ledger, make_payment, notifier, monkeypatch):
        create_entry = ledger.create_entry

        async def vendor_locked(data, actor=None):
            if data["party"] == "vendor":
                return Result.failure([ValidationIssue(
                    ValidationErrorType.BUSINESS_RULE_VIOLATION, "vendor ledger locked", "party", "vendor"
                )])
            return await create_entry(data, actor)

        monkeypatch.setattr(ledger, "create_entry", vendor_locked)
        payment = await make_payment(amount=100)
        rule = RevenueRule(id="r", rule_name="Three Way", admin_percent=20, team_percent=30, vendor_percent=50)
        outcome = await processor.process_payment_revenue(payment["id"], rule=rule)

        assert outcome.processed and outcome.partial
        assert len(outcome.ledger_entry_ids) == 2
        assert outcome.errors[0]["party"] == "vendor"
        _, _, metadata = notifier.of_type(NotificationType.REVENUE_PROCESSING_FAILED)[0]
        assert metadata["created_entries"] == 2


class TestHandlePaymentVerified:

    @pytest.mark.asyncio
    async def test_success_returns_outcome(self, processor, make_payment):
        payment = await make_payment()
        outcome = await processor.handle_payment_verified(payment["id"], approved_by="admin-1")
        assert outcome.processed

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, processor, notifier):
        assert await processor.handle_payment_verified("missing-payment") is None
        targets, _, metadata = notifier.of_type(NotificationType.REVENUE_PROCESSING_FAILED)[0]
        assert targets == ["admin-1"]
        assert metadata["subject"] == "Revenue Processing Failed"
        assert metadata["error_type"] == "not_found"

    @pytest.mark.asyncio
    async def test_lost_stamp_is_restored_without_duplicate_entries(
        self, processor, ledger, make_payment, store, monkeypatch
    ):
        payment = await make_payment(amount=1000.0)
        update = store.update

        async def payments_down(collection, doc_id, patch, session=None):
            if collection == "payments":
                raise PersistenceError("connection reset")
            await update(collection, doc_id, patch, session)

        monkeypatch.setattr(store, "update", payments_down)
        assert await processor.handle_payment_verified(payment["id"]) is None
        first_run = await ledger.get_entries_by_payment(payment["id"])
        assert len(first_run) == 2
        assert (await store.get_by_id("payments", payment["id"]))["revenue_processed"] is False

        monkeypatch.setattr(store, "update", update)
        outcome = await processor.handle_payment_verified(payment["id"])
        assert outcome.skip_reason == SkipReason.ALREADY_PROCESSED
        assert sorted(outcome.ledger_entry_ids) == sorted(e.id for e in first_run)
        assert len(await ledger.get_entries_by_payment(payment["id"])) == 2

        stamped = await store.get_by_id("payments", payment["id"])
        assert stamped["revenue_processed"] is True
        assert sorted(stamped["ledger_entry_ids"]) == sorted(e.id for e in first_run)

    @pytest.mark.asyncio
    async def test_notification_failure_still_does_not_raise(self, processor, make_payment, notifier):
        payment = await make_payment(amount=-5)
        notifier.fail = True
        assert await processor.handle_payment_verified(payment["id"]) is None
