"""
Pytest configuration for revenue ledger tests.

Every service runs against InMemoryDocumentStore with a pinned clock.
"""
from datetime import datetime, timedelta, timezone

import pytest

from ledger_core import (
    AccessControlGuard,
    Actor,
    AuditTrail,
    InMemoryDocumentStore,
    LedgerService,
    MigrationCoordinator,
    NotFoundError,
    RevenueProcessor,
    RevenueRuleService,
    RevenueSplitCalculator,
    Role,
    SettlementService,
    ValidationEngine,
)

ADMIN_USER_IDS = ["admin-1"]


class FixedClock:
    """Clock that only moves when told to"""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that keeps every call; set `fail` to make delivery raise"""

    def __init__(self):
        self.calls = []
        self.fail = False

    async def notify(self, targets, notification_type, metadata):
        if self.fail:
            raise RuntimeError("notification backend down")
        self.calls.append((list(targets), notification_type, metadata))

    def of_type(self, notification_type):
        return [c for c in self.calls if c[1] == notification_type]


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store(clock):
    return InMemoryDocumentStore(clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def validator():
    return ValidationEngine()


@pytest.fixture
def access():
    return AccessControlGuard()


@pytest.fixture
def audit(store, notifier, clock):
    return AuditTrail(store, notifier=notifier, clock=clock, admin_user_ids=ADMIN_USER_IDS)


@pytest.fixture
def ledger(store, audit, notifier, validator, access, clock):
    return LedgerService(store, audit, notifier, validator, access, clock, admin_user_ids=ADMIN_USER_IDS)


@pytest.fixture
def rules(store, audit, notifier, validator, access, clock):
    return RevenueRuleService(store, audit, notifier, validator, access, clock, admin_user_ids=ADMIN_USER_IDS)


@pytest.fixture
def calculator(validator):
    return RevenueSplitCalculator(validator)


@pytest.fixture
def processor(store, ledger, rules, audit, calculator, notifier, clock):
    return RevenueProcessor(
        store, ledger, rules, audit, calculator,
        notifier=notifier, clock=clock, admin_user_ids=ADMIN_USER_IDS
    )


@pytest.fixture
def settlements(ledger, notifier, clock):
    return SettlementService(ledger, notifier, clock)


@pytest.fixture
def migrations(store, ledger, processor, rules, audit, calculator, clock):
    return MigrationCoordinator(
        store, ledger, processor, rules, audit, calculator,
        clock=clock, item_delay=0, batch_delay=0
    )


@pytest.fixture
def admin_actor():
    return Actor(id="admin-1", role=Role.ADMIN, party="admin")


@pytest.fixture
def manager_actor():
    return Actor(id="manager-1", role=Role.MANAGER)


@pytest.fixture
def member_actor():
    return Actor(id="member-1", role=Role.MEMBER, party="team")


@pytest.fixture
def vendor_member():
    return Actor(id="vendor-1", role=Role.MEMBER, party="vendor")


@pytest.fixture
def make_payment(store, clock):
    """Insert a payment (verified, unprocessed by default) and its project"""

    async def _make(amount=1000.0, currency="USD", project_id="project-1", **overrides):
        try:
            await store.get_by_id("projects", project_id)
        except NotFoundError:
            await store.create("projects", {"id": project_id, "name": f"Project {project_id}"})
        doc = {
            "project_id": project_id,
            "amount": amount,
            "currency": currency,
            "verified": True,
            "revenue_processed": False,
            "ledger_entry_ids": [],
        }
        doc.update(overrides)
        return await store.create("payments", doc)

    return _make


@pytest.fixture
def make_entry(ledger, clock):
    """Create a system (payment-linked) entry and return it"""

    async def _make(party="team", amount=100.0, currency="USD", type="credit",
                    project_id="project-1", payment_id="payment-x", **overrides):
        data = {
            "payment_id": payment_id,
            "project_id": project_id,
            "type": type,
            "party": party,
            "amount": amount,
            "currency": currency,
            "date": clock(),
        }
        data.update(overrides)
        result = await ledger.create_entry(data)
        assert result.ok, result.errors
        return result.value

    return _make
