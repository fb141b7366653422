"""
Tests for ledger_core.access_control.
"""
import pytest

from ledger_core import Actor, Party, Permission, PermissionDeniedError, Role, has_permission
from ledger_core.access_control import ADMIN_PERMISSIONS, MANAGER_PERMISSIONS, MEMBER_PERMISSIONS


class TestRoleTable:

    def test_roles_are_nested(self):
        assert MEMBER_PERMISSIONS <= MANAGER_PERMISSIONS <= ADMIN_PERMISSIONS

    def test_member_permissions(self):
        assert MEMBER_PERMISSIONS == {
            Permission.VIEW_LEDGER_ENTRIES,
            Permission.VIEW_SETTLEMENTS,
            Permission.VIEW_PARTY_BALANCES,
        }

    def test_pure_has_permission(self):
        assert has_permission(Role.ADMIN, [], Permission.MANAGE_AUDIT_LOGS)
        assert not has_permission(Role.MEMBER, [], Permission.CREATE_SETTLEMENTS)
        assert has_permission(Role.MEMBER, [Permission.CREATE_SETTLEMENTS], Permission.CREATE_SETTLEMENTS)

    def test_explicit_permissions_extend_role(self, access):
        actor = Actor(id="m", role=Role.MEMBER, permissions={Permission.EXPORT_FINANCIAL_DATA})
        assert access.can_export_financial_data(actor)
        assert Permission.EXPORT_FINANCIAL_DATA in access.get_user_permissions(actor)
        assert Permission.VIEW_LEDGER_ENTRIES in access.get_user_permissions(actor)

    def test_any_and_all(self, access, member_actor):
        assert access.has_any_permission(member_actor, [Permission.CREATE_SETTLEMENTS, Permission.VIEW_SETTLEMENTS])
        assert not access.has_all_permissions(member_actor, [Permission.CREATE_SETTLEMENTS, Permission.VIEW_SETTLEMENTS])


class TestPartyReachability:

    def test_accessible_parties(self, access, admin_actor, manager_actor, member_actor, vendor_member):
        assert access.get_accessible_parties(admin_actor) == [Party.ADMIN, Party.TEAM, Party.VENDOR]
        assert access.get_accessible_parties(manager_actor) == [Party.ADMIN, Party.TEAM]
        assert access.get_accessible_parties(member_actor) == [Party.TEAM]
        assert access.get_accessible_parties(vendor_member) == [Party.VENDOR]

    def test_member_without_party_defaults_to_team(self, access):
        assert access.get_accessible_parties(Actor(id="x", role=Role.MEMBER)) == [Party.TEAM]

    def test_can_access_party_accepts_strings(self, access, manager_actor):
        assert access.can_access_party(manager_actor, "team")
        assert not access.can_access_party(manager_actor, Party.VENDOR)
        assert not access.can_access_party(manager_actor, None)

    def test_can_perform_settlement(self, access, admin_actor, manager_actor, member_actor):
        assert access.can_perform_settlement(admin_actor, "vendor")
        assert access.can_perform_settlement(manager_actor, "team")
        assert not access.can_perform_settlement(manager_actor, "vendor")
        assert not access.can_perform_settlement(member_actor, "team")


class TestSettlementPermissions:

    def test_names_every_unreachable_party(self, access, manager_actor):
        entries = [{"party": "team"}, {"party": "vendor"}, {"party": "vendor"}]
        with pytest.raises(PermissionDeniedError) as exc:
            access.validate_settlement_permissions(manager_actor, entries)
        assert exc.value.details["parties"] == ["vendor"]
        assert "vendor" in exc.value.message

    def test_requires_create_permission(self, access, member_actor):
        with pytest.raises(PermissionDeniedError):
            access.validate_settlement_permissions(member_actor, [{"party": "team"}])

    def test_admin_reaches_everything(self, access, admin_actor):
        assert access.validate_settlement_permissions(admin_actor, [{"party": p.value} for p in Party])


class TestReadFilters:

    ENTRIES = [{"id": "1", "party": "admin"}, {"id": "2", "party": "team"}, {"id": "3", "party": "vendor"}]

    def test_view_all_lifts_filter(self, access, manager_actor):
        assert len(access.filter_ledger_entries_by_permissions(manager_actor, self.ENTRIES)) == 3

    def test_member_sees_own_party(self, access, vendor_member):
        visible = access.filter_ledger_entries_by_permissions(vendor_member, self.ENTRIES)
        assert [e["id"] for e in visible] == ["3"]

    def test_settlement_filter(self, access, member_actor):
        visible = access.filter_settlements_by_permissions(member_actor, self.ENTRIES)
        assert [s["id"] for s in visible] == ["2"]

    def test_resource_access(self, access, member_actor, manager_actor):
        assert access.can_access_resource(member_actor, "ledger_entry", {"party": "team"})
        assert not access.can_access_resource(member_actor, "settlement", {"party": "admin"})
        assert not access.can_access_resource(member_actor, "revenue_rule")
        assert access.can_access_resource(manager_actor, "revenue_rule")
        assert not access.can_access_resource(manager_actor, "unknown")

    def test_convenience_checks(self, access, member_actor, manager_actor):
        assert not access.can_manage_revenue_rules(member_actor)
        assert access.can_manage_revenue_rules(manager_actor)
        assert access.can_view_financial_reports(manager_actor)
        assert not access.can_view_financial_reports(member_actor)
