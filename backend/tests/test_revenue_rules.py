"""
Tests for RevenueRuleService.
"""
import pytest

from ledger_core import NotFoundError, PermissionDeniedError, ValidationErrorType
from ledger_core.audit_trail import AUDIT_COLLECTION
from ledger_core.notifications import NotificationType


def _rule_data(name="Standard Split", admin=40, team=60, vendor=0, **overrides):
    data = {"rule_name": name, "admin_percent": admin, "team_percent": team, "vendor_percent": vendor}
    data.update(overrides)
    return data


class TestCreateRule:

    @pytest.mark.asyncio
    async def test_create_rule(self, rules, manager_actor, notifier, audit):
        rule = (await rules.create_rule(_rule_data(name="  Standard Split  "), manager_actor)).unwrap()
        assert rule.id
        assert rule.rule_name == "Standard Split"
        assert rule.created_by == "manager-1"
        assert rule.is_active and not rule.is_default

        assert notifier.of_type(NotificationType.REVENUE_RULE_MODIFIED)[0][2]["operation"] == "created"
        assert audit.pending_entries[-1]["event_type"] == "revenue_rule_created"

    @pytest.mark.asyncio
    async def test_percentages_must_sum_to_100(self, rules, admin_actor):
        result = await rules.create_rule(_rule_data(admin=40, team=50), admin_actor)
        assert not result.ok
        assert result.errors[0].type == ValidationErrorType.BUSINESS_RULE_VIOLATION

    @pytest.mark.asyncio
    async def test_single_default(self, rules, admin_actor):
        first = (await rules.create_rule(_rule_data(name="First", is_default=True), admin_actor)).unwrap()
        second = (await rules.create_rule(_rule_data(name="Second", is_default=True), admin_actor)).unwrap()
        assert not (await rules.get_rule(first.id)).is_default
        assert (await rules.get_rule(second.id)).is_default

    @pytest.mark.asyncio
    async def test_member_cannot_create(self, rules, member_actor, store):
        with pytest.raises(PermissionDeniedError):
            await rules.create_rule(_rule_data(), member_actor)
        denied = await store.query(AUDIT_COLLECTION, where={"event_type": "unauthorized_access_attempt"})
        assert denied[0]["details"]["resource"] == "revenue_rule"

    @pytest.mark.asyncio
    async def test_default_rule(self, rules):
        rule = await rules.create_default_rule()
        assert (rule.admin_percent, rule.team_percent, rule.vendor_percent) == (40.0, 60.0, 0.0)
        assert rule.is_default
        assert rule.created_by == "system_migration"


class TestUpdateRule:

    @pytest.mark.asyncio
    async def test_update_percentages(self, rules, manager_actor):
        rule = (await rules.create_rule(_rule_data(), manager_actor)).unwrap()
        updated = (await rules.update_rule(rule.id, {"admin_percent": 30, "team_percent": 70}, manager_actor)).unwrap()
        assert (updated.admin_percent, updated.team_percent) == (30, 70)

    @pytest.mark.asyncio
    async def test_update_validates_merged_rule(self, rules, manager_actor):
        rule = (await rules.create_rule(_rule_data(), manager_actor)).unwrap()
        result = await rules.update_rule(rule.id, {"admin_percent": 50}, manager_actor)
        assert not result.ok
        assert (await rules.get_rule(rule.id)).admin_percent == 40

    @pytest.mark.asyncio
    async def test_cannot_deactivate_default_via_update(self, rules, admin_actor):
        rule = (await rules.create_rule(_rule_data(is_default=True), admin_actor)).unwrap()
        result = await rules.update_rule(rule.id, {"is_active": False}, admin_actor)
        assert [e.field for e in result.errors] == ["is_active"]

    @pytest.mark.asyncio
    async def test_promoting_to_default_unsets_others(self, rules, admin_actor):
        first = (await rules.create_rule(_rule_data(name="First", is_default=True), admin_actor)).unwrap()
        second = (await rules.create_rule(_rule_data(name="Second"), admin_actor)).unwrap()
        await rules.update_rule(second.id, {"is_default": True}, admin_actor)
        assert not (await rules.get_rule(first.id)).is_default

    @pytest.mark.asyncio
    async def test_reactivation_is_audited_as_activated(self, rules, admin_actor, audit):
        rule = (await rules.create_rule(_rule_data(is_active=False), admin_actor)).unwrap()
        await rules.update_rule(rule.id, {"is_active": True}, admin_actor)
        assert audit.pending_entries[-1]["event_type"] == "revenue_rule_activated"

    @pytest.mark.asyncio
    async def test_missing_rule(self, rules, admin_actor):
        with pytest.raises(NotFoundError):
            await rules.update_rule("missing", {"rule_name": "Nope"}, admin_actor)


class TestDeactivateRule:

    @pytest.mark.asyncio
    async def test_soft_delete(self, rules, admin_actor, audit):
        rule = (await rules.create_rule(_rule_data(), admin_actor)).unwrap()
        deactivated = (await rules.deactivate_rule(rule.id, admin_actor)).unwrap()
        assert not deactivated.is_active
        assert (await rules.get_rule(rule.id)).is_active is False
        event = audit.pending_entries[-1]
        assert event["event_type"] == "revenue_rule_deleted"
        assert event["risk_level"] == "high"

    @pytest.mark.asyncio
    async def test_default_cannot_be_deleted(self, rules, admin_actor):
        rule = (await rules.create_rule(_rule_data(is_default=True), admin_actor)).unwrap()
        result = await rules.deactivate_rule(rule.id, admin_actor)
        assert not result.ok
        assert (await rules.get_rule(rule.id)).is_active

    @pytest.mark.asyncio
    async def test_manager_cannot_delete(self, rules, manager_actor):
        rule = (await rules.create_rule(_rule_data(), manager_actor)).unwrap()
        with pytest.raises(PermissionDeniedError):
            await rules.deactivate_rule(rule.id, manager_actor)


class TestRuleReads:

    @pytest.mark.asyncio
    async def test_active_rule_prefers_default(self, rules, admin_actor, clock):
        default = (await rules.create_rule(_rule_data(name="Default", is_default=True), admin_actor)).unwrap()
        clock.advance(minutes=1)
        await rules.create_rule(_rule_data(name="Newer"), admin_actor)
        assert (await rules.get_active_rule("project-1")).id == default.id

    @pytest.mark.asyncio
    async def test_active_rule_falls_back_to_newest(self, rules, admin_actor, clock):
        await rules.create_rule(_rule_data(name="Older"), admin_actor)
        clock.advance(minutes=1)
        newer = (await rules.create_rule(_rule_data(name="Newer"), admin_actor)).unwrap()
        assert (await rules.get_active_rule()).id == newer.id

    @pytest.mark.asyncio
    async def test_no_active_rule(self, rules, admin_actor):
        rule = (await rules.create_rule(_rule_data(), admin_actor)).unwrap()
        await rules.deactivate_rule(rule.id, admin_actor)
        with pytest.raises(NotFoundError):
            await rules.get_active_rule("project-1")

    @pytest.mark.asyncio
    async def test_search_and_stats(self, rules, admin_actor, clock):
        await rules.create_rule(_rule_data(name="Vendor Heavy", admin=10, team=20, vendor=70), admin_actor)
        clock.advance(minutes=1)
        standard = (await rules.create_rule(_rule_data(name="Standard", is_default=True), admin_actor)).unwrap()
        clock.advance(minutes=1)
        retired = (await rules.create_rule(_rule_data(name="Retired Vendor"), admin_actor)).unwrap()
        await rules.deactivate_rule(retired.id, admin_actor)

        assert [r.rule_name for r in await rules.search_rules("vendor")] == ["Retired Vendor", "Vendor Heavy"]
        assert [r.rule_name for r in await rules.search_rules("vendor", active_only=True)] == ["Vendor Heavy"]
        assert [r.id for r in await rules.get_active_rules()][0] == standard.id
        assert await rules.get_rule_stats() == {"total": 3, "active": 2, "inactive": 1, "has_default": True}

    @pytest.mark.asyncio
    async def test_list_requires_view_permission(self, rules, member_actor, manager_actor):
        with pytest.raises(PermissionDeniedError):
            await rules.list_rules(member_actor)
        assert await rules.list_rules(manager_actor) == []
