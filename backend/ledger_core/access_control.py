"""
REVENUE LEDGER: ACCESS CONTROL

RULES:
1. Role table is static: admin ⊇ manager ⊇ member
2. Effective permissions = role permissions ∪ explicit actor permissions
3. Party reachability: admin -> all parties, manager -> admin + team,
   member -> own party (team when unset)
4. VIEW_ALL_* permissions lift the party-reachability filter on reads
"""

from typing import Iterable, List, Dict, Any, FrozenSet, Set, Optional, Union
import logging

from .exceptions import PermissionDeniedError
from .models import Actor, Party, Permission, Role

logger = logging.getLogger(__name__)


MEMBER_PERMISSIONS = frozenset({
    Permission.VIEW_LEDGER_ENTRIES,
    Permission.VIEW_SETTLEMENTS,
    Permission.VIEW_PARTY_BALANCES,
})

MANAGER_PERMISSIONS = MEMBER_PERMISSIONS | frozenset({
    Permission.VIEW_REVENUE_RULES,
    Permission.CREATE_REVENUE_RULES,
    Permission.EDIT_REVENUE_RULES,
    Permission.VIEW_ALL_LEDGER_ENTRIES,
    Permission.CREATE_MANUAL_ENTRIES,
    Permission.VIEW_ALL_SETTLEMENTS,
    Permission.CREATE_SETTLEMENTS,
    Permission.VIEW_FINANCIAL_REPORTS,
    Permission.EXPORT_FINANCIAL_DATA,
    Permission.VIEW_ALL_PARTY_BALANCES,
})

ADMIN_PERMISSIONS = frozenset(Permission)

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: ADMIN_PERMISSIONS,
    Role.MANAGER: MANAGER_PERMISSIONS,
    Role.MEMBER: MEMBER_PERMISSIONS,
}

ROLE_PARTIES: Dict[Role, List[Party]] = {
    Role.ADMIN: [Party.ADMIN, Party.TEAM, Party.VENDOR],
    Role.MANAGER: [Party.ADMIN, Party.TEAM],
}

# Resource type -> (read permission, party-scoped)
RESOURCE_PERMISSIONS = {
    "ledger_entry": (Permission.VIEW_LEDGER_ENTRIES, True),
    "settlement": (Permission.VIEW_SETTLEMENTS, True),
    "revenue_rule": (Permission.VIEW_REVENUE_RULES, False),
}


def has_permission(role: Role, explicit: Iterable[Permission], permission: Permission) -> bool:
    """Pure check: permission granted by the role table or explicitly"""
    return permission in ROLE_PERMISSIONS.get(role, frozenset()) or permission in set(explicit or ())


def _party_value(party: Union[Party, str, None]) -> Optional[str]:
    if isinstance(party, Party):
        return party.value
    return party


class AccessControlGuard:
    """Role/party authorization checks for ledger operations"""

    # =========================================================================
    # PERMISSIONS
    # =========================================================================

    @staticmethod
    def get_user_permissions(actor: Actor) -> Set[Permission]:
        return set(ROLE_PERMISSIONS.get(actor.role, frozenset())) | set(actor.permissions)

    @staticmethod
    def has_permission(actor: Actor, permission: Permission) -> bool:
        return has_permission(actor.role, actor.permissions, permission)

    def has_any_permission(self, actor: Actor, permissions: Iterable[Permission]) -> bool:
        return any(self.has_permission(actor, p) for p in permissions)

    def has_all_permissions(self, actor: Actor, permissions: Iterable[Permission]) -> bool:
        return all(self.has_permission(actor, p) for p in permissions)

    # =========================================================================
    # PARTY REACHABILITY
    # =========================================================================

    @staticmethod
    def get_accessible_parties(actor: Actor) -> List[Party]:
        if actor.role in ROLE_PARTIES:
            return list(ROLE_PARTIES[actor.role])
        return [actor.party or Party.TEAM]

    def can_access_party(self, actor: Actor, party: Union[Party, str, None]) -> bool:
        value = _party_value(party)
        return any(p.value == value for p in self.get_accessible_parties(actor))

    def can_perform_settlement(self, actor: Actor, party: Union[Party, str]) -> bool:
        return self.has_permission(actor, Permission.CREATE_SETTLEMENTS) and self.can_access_party(actor, party)

    def validate_settlement_permissions(self, actor: Actor, entries: Iterable[Dict[str, Any]]) -> bool:
        """Raise PermissionDeniedError naming every party the actor cannot reach"""
        if not self.has_permission(actor, Permission.CREATE_SETTLEMENTS):
            raise PermissionDeniedError(
                "Insufficient permissions to create settlements",
                {"user_id": actor.id, "permission": Permission.CREATE_SETTLEMENTS.value}
            )

        unreachable: List[str] = []
        for entry in entries:
            party = _party_value(entry.get("party"))
            if party not in unreachable and not self.can_access_party(actor, party):
                unreachable.append(party)

        if unreachable:
            raise PermissionDeniedError(
                f"Cannot settle entries for parties: {', '.join(unreachable)}",
                {"user_id": actor.id, "parties": unreachable}
            )
        return True

    # =========================================================================
    # READ FILTERS
    # =========================================================================

    def _filter_by_party(self, actor: Actor, items: Iterable[Dict[str, Any]], view_all: Permission):
        items = list(items)
        if self.has_permission(actor, view_all):
            return items
        allowed = {p.value for p in self.get_accessible_parties(actor)}
        return [item for item in items if _party_value(item.get("party")) in allowed]

    def filter_ledger_entries_by_permissions(self, actor: Actor, entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self._filter_by_party(actor, entries, Permission.VIEW_ALL_LEDGER_ENTRIES)

    def filter_settlements_by_permissions(self, actor: Actor, settlements: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self._filter_by_party(actor, settlements, Permission.VIEW_ALL_SETTLEMENTS)

    # =========================================================================
    # CONVENIENCE CHECKS
    # =========================================================================

    def can_access_resource(self, actor: Actor, resource_type: str, resource: Optional[Dict[str, Any]] = None) -> bool:
        if resource_type not in RESOURCE_PERMISSIONS:
            return False
        permission, party_scoped = RESOURCE_PERMISSIONS[resource_type]
        if not party_scoped:
            return self.has_permission(actor, permission)
        return self.has_permission(actor, permission) and self.can_access_party(actor, (resource or {}).get("party"))

    def can_manage_revenue_rules(self, actor: Actor) -> bool:
        return self.has_any_permission(actor, [
            Permission.CREATE_REVENUE_RULES,
            Permission.EDIT_REVENUE_RULES,
            Permission.DELETE_REVENUE_RULES,
        ])

    def can_view_financial_reports(self, actor: Actor) -> bool:
        return self.has_permission(actor, Permission.VIEW_FINANCIAL_REPORTS)

    def can_export_financial_data(self, actor: Actor) -> bool:
        return self.has_permission(actor, Permission.EXPORT_FINANCIAL_DATA)
