"""
Revenue rule management.

Rules are never removed: deactivation is a soft delete, and the default
rule cannot be deactivated. At most one rule carries is_default=True.
"""

from typing import Any, Dict, List, Optional
import logging

from .access_control import AccessControlGuard
from .audit_trail import AuditTrail
from .clock import Clock, utc_now
from .exceptions import NotFoundError, PermissionDeniedError
from .models import Actor, Permission, RevenueRule
from .notifications import NotificationType
from .validation_engine import Result, ValidationEngine, ValidationErrorType, ValidationIssue

logger = logging.getLogger(__name__)

RULES_COLLECTION = "revenue_rules"

DEFAULT_RULE = {
    "rule_name": "Default Migration Rule",
    "admin_percent": 40.0,
    "team_percent": 60.0,
    "vendor_percent": 0.0,
}

EDITABLE_FIELDS = ("rule_name", "admin_percent", "team_percent", "vendor_percent", "is_default", "is_active")


class RevenueRuleService:

    def __init__(
        self,
        store,
        audit: AuditTrail,
        notifier=None,
        validator: Optional[ValidationEngine] = None,
        access: Optional[AccessControlGuard] = None,
        clock: Clock = utc_now,
        admin_user_ids: Optional[List[str]] = None
    ):
        self.store = store
        self.audit = audit
        self.notifier = notifier
        self.validator = validator or ValidationEngine()
        self.access = access or AccessControlGuard()
        self.clock = clock
        self.admin_user_ids = list(admin_user_ids or [])

    async def _require(self, actor: Optional[Actor], permission: Permission, action: str):
        if actor is None or self.access.has_permission(actor, permission):
            return
        await self.audit.log_unauthorized_access("revenue_rule", action, actor.id)
        raise PermissionDeniedError(
            f"Insufficient permissions to {action} revenue rules",
            {"permission": permission.value}
        )

    async def _notify_modified(self, rule: Dict[str, Any], operation: str, user_id: Optional[str]):
        if self.notifier is None or not self.admin_user_ids:
            return
        try:
            await self.notifier.notify(self.admin_user_ids, NotificationType.REVENUE_RULE_MODIFIED, {
                "rule_id": rule["id"],
                "rule_name": rule.get("rule_name"),
                "operation": operation,
                "modified_by": user_id,
            })
        except Exception as e:
            logger.error(f"[RULES] Could not enqueue rule notification: {str(e)}")

    async def _unset_other_defaults(self, exclude_rule_id: Optional[str] = None):
        for rule in await self.store.query(RULES_COLLECTION, where={"is_default": True}):
            if rule["id"] != exclude_rule_id:
                await self.store.update(RULES_COLLECTION, rule["id"], {"is_default": False})
                logger.info(f"[RULES] Rule {rule['id']} is no longer the default")

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def create_rule(self, data: Dict[str, Any], actor: Optional[Actor] = None) -> Result[RevenueRule]:
        await self._require(actor, Permission.CREATE_REVENUE_RULES, "create")

        rule = {
            "rule_name": data.get("rule_name"),
            "admin_percent": data.get("admin_percent"),
            "team_percent": data.get("team_percent"),
            "vendor_percent": data.get("vendor_percent", 0) or 0,
            "is_default": data.get("is_default", False),
            "is_active": data.get("is_active", True),
        }
        validation = self.validator.validate_revenue_rule(rule)
        if not validation.is_valid:
            return Result.from_validation(validation)

        rule["rule_name"] = rule["rule_name"].strip()
        rule["created_by"] = data.get("created_by") or (actor.id if actor else None)
        if rule["is_default"]:
            await self._unset_other_defaults()

        stored = await self.store.create(RULES_COLLECTION, rule)
        logger.info(f"[RULES] Created rule {stored['id']} ({stored['rule_name']})")

        await self.audit.log_revenue_rule_operation("created", stored, rule["created_by"])
        await self._notify_modified(stored, "created", rule["created_by"])
        return Result.success(RevenueRule(**stored))

    async def update_rule(self, rule_id: str, updates: Dict[str, Any], actor: Optional[Actor] = None) -> Result[RevenueRule]:
        await self._require(actor, Permission.EDIT_REVENUE_RULES, "edit")
        current = await self.store.get_by_id(RULES_COLLECTION, rule_id)

        patch = {k: updates[k] for k in EDITABLE_FIELDS if k in updates}
        merged = {**current, **patch}
        validation = self.validator.validate_revenue_rule(merged)
        if current.get("is_default") and patch.get("is_active") is False:
            validation.add(
                ValidationErrorType.BUSINESS_RULE_VIOLATION,
                "Cannot deactivate the default revenue rule",
                "is_active", False
            )
        if not validation.is_valid:
            return Result.from_validation(validation)

        if "rule_name" in patch:
            patch["rule_name"] = patch["rule_name"].strip()
        if patch.get("is_default"):
            await self._unset_other_defaults(rule_id)

        await self.store.update(RULES_COLLECTION, rule_id, patch)
        stored = await self.store.get_by_id(RULES_COLLECTION, rule_id)
        user_id = actor.id if actor else None

        operation = "updated"
        if "is_active" in patch and patch["is_active"] != current.get("is_active"):
            operation = "activated" if patch["is_active"] else "deactivated"
        await self.audit.log_revenue_rule_operation(operation, stored, user_id)
        await self._notify_modified(stored, operation, user_id)
        return Result.success(RevenueRule(**stored))

    async def deactivate_rule(self, rule_id: str, actor: Optional[Actor] = None) -> Result[RevenueRule]:
        """Soft delete: the rule stays referenced by existing entries"""
        await self._require(actor, Permission.DELETE_REVENUE_RULES, "delete")
        rule = await self.store.get_by_id(RULES_COLLECTION, rule_id)
        if rule.get("is_default"):
            return Result.failure([ValidationIssue(
                ValidationErrorType.BUSINESS_RULE_VIOLATION,
                "Cannot delete the default revenue rule",
                "rule_id", rule_id
            )])

        await self.store.update(RULES_COLLECTION, rule_id, {"is_active": False})
        rule["is_active"] = False
        user_id = actor.id if actor else None
        await self.audit.log_revenue_rule_operation("deleted", rule, user_id)
        await self._notify_modified(rule, "deleted", user_id)
        return Result.success(RevenueRule(**rule))

    async def create_default_rule(self, created_by: str = "system_migration") -> RevenueRule:
        result = await self.create_rule({
            **DEFAULT_RULE,
            "is_default": True,
            "is_active": True,
            "created_by": created_by,
        })
        return result.unwrap()

    # =========================================================================
    # READS
    # =========================================================================

    async def get_rule(self, rule_id: str) -> RevenueRule:
        return RevenueRule(**await self.store.get_by_id(RULES_COLLECTION, rule_id))

    async def list_rules(self, actor: Optional[Actor] = None) -> List[RevenueRule]:
        await self._require(actor, Permission.VIEW_REVENUE_RULES, "view")
        docs = await self.store.query(RULES_COLLECTION, order_by=[("created_at", -1)])
        return [RevenueRule(**d) for d in docs]

    async def get_active_rules(self) -> List[RevenueRule]:
        docs = await self.store.query(RULES_COLLECTION, where={"is_active": True}, order_by=[("created_at", -1)])
        return [RevenueRule(**d) for d in docs]

    async def get_active_rule(self, project_id: Optional[str] = None) -> RevenueRule:
        """
        Active default rule, else the newest active rule.

        Rules are global for now; project_id is accepted so callers do not
        change once project-specific rules exist.
        """
        defaults = await self.store.query(
            RULES_COLLECTION,
            where={"is_default": True, "is_active": True},
            limit=1,
        )
        if defaults:
            return RevenueRule(**defaults[0])
        active = await self.get_active_rules()
        if active:
            return active[0]
        raise NotFoundError(RULES_COLLECTION, f"active rule for project {project_id}" if project_id else "active rule")

    async def search_rules(self, term: Optional[str] = None, active_only: bool = False) -> List[RevenueRule]:
        docs = await self.store.query(RULES_COLLECTION, order_by=[("created_at", -1)])
        if active_only:
            docs = [d for d in docs if d.get("is_active")]
        if term:
            docs = [d for d in docs if term.lower() in d["rule_name"].lower()]
        return [RevenueRule(**d) for d in docs]

    async def get_rule_stats(self) -> Dict[str, Any]:
        rules = await self.store.query(RULES_COLLECTION)
        return {
            "total": len(rules),
            "active": sum(1 for r in rules if r.get("is_active")),
            "inactive": sum(1 for r in rules if not r.get("is_active")),
            "has_default": any(r.get("is_default") and r.get("is_active") for r in rules),
        }
