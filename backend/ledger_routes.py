"""
REVENUE LEDGER API ROUTES

Thin HTTP layer over the ledger services built in server.py.

- Validation failures (failed Result) -> 422 with the issue list
- PermissionDeniedError -> 403, NotFoundError -> 404
- SettlementError -> 409
- BalanceCalculationError -> 500, PersistenceError -> 503
"""

from fastapi import APIRouter, HTTPException, Request, status, Depends
from fastapi.responses import PlainTextResponse
from datetime import datetime
from typing import Optional, Dict, Any, List
import asyncio
import logging

from auth import get_current_actor
from models import (
    ManualEntryCreate, EntryStatusUpdate, SettlementCreate,
    RevenueRuleCreate, RevenueRuleUpdate, MigrationBatchRequest
)
from ledger_core import (
    Actor,
    Permission,
    Result,
    LedgerError,
    ValidationFailedError,
    PermissionDeniedError,
    NotFoundError,
    SettlementError,
    BalanceCalculationError,
    PersistenceError,
    AuditLogEntry
)

logger = logging.getLogger(__name__)

ledger_router = APIRouter(prefix="/api/ledger", tags=["Revenue Ledger"])

ERROR_STATUS = [
    (ValidationFailedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (SettlementError, status.HTTP_409_CONFLICT),
    (BalanceCalculationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_error(error: LedgerError) -> HTTPException:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(error, error_class):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    if status_code >= 500:
        logger.error(f"[API] {error.error_type}: {error.message}")
    return HTTPException(
        status_code=status_code,
        detail={"error": error.error_type, "message": error.message, "details": error.details}
    )


def unwrap(result: Result):
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "validation_failed", "errors": [e.to_dict() for e in result.errors]}
        )
    return result.value


async def require_permission(request: Request, actor: Actor, permission: Permission, resource: str):
    if request.app.state.access.has_permission(actor, permission):
        return
    await request.app.state.audit.log_unauthorized_access(resource, permission.value, actor.id)
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=f"Permission required: {permission.value}"
    )


# ============================================
# LEDGER ENTRIES
# ============================================

@ledger_router.get("/entries")
async def list_entries(
    request: Request,
    party: Optional[str] = None,
    entry_status: Optional[str] = None,
    project_id: Optional[str] = None,
    currency: Optional[str] = None,
    type: Optional[str] = None,
    payment_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: Optional[int] = None,
    actor: Actor = Depends(get_current_actor)
):
    """Ledger entries visible to the caller, newest first"""
    filters = {
        "party": party,
        "status": entry_status,
        "project_id": project_id,
        "currency": currency,
        "type": type,
        "payment_id": payment_id,
        "start_date": start_date,
        "end_date": end_date,
        "limit": limit,
    }
    try:
        return await request.app.state.ledger.query_entries(filters, actor)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.get("/entries/{entry_id}")
async def get_entry(entry_id: str, request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        return await request.app.state.ledger.get_entry(entry_id, actor)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.post("/entries/manual", status_code=status.HTTP_201_CREATED)
async def create_manual_entry(
    entry_data: ManualEntryCreate,
    request: Request,
    actor: Actor = Depends(get_current_actor)
):
    """Manual adjustment entry; always created pending"""
    try:
        result = await request.app.state.ledger.add_manual_entry(entry_data.model_dump(), actor)
    except LedgerError as e:
        raise to_http_error(e)
    return unwrap(result)


@ledger_router.patch("/entries/{entry_id}/status")
async def update_entry_status(
    entry_id: str,
    update: EntryStatusUpdate,
    request: Request,
    actor: Actor = Depends(get_current_actor)
):
    try:
        result = await request.app.state.ledger.update_status(entry_id, update.status, actor)
    except LedgerError as e:
        raise to_http_error(e)
    return unwrap(result)


# ============================================
# BALANCES & SUMMARIES
# ============================================

@ledger_router.get("/balances/{party}")
async def get_party_balance(
    party: str,
    request: Request,
    currency: Optional[str] = None,
    actor: Actor = Depends(get_current_actor)
):
    try:
        return await request.app.state.ledger.compute_balance(party, currency, actor)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid party: {party}"
        )
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.get("/projects/{project_id}/summary")
async def get_project_summary(project_id: str, request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        return await request.app.state.ledger.get_project_ledger_summary(project_id, actor)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.get("/stats")
async def get_ledger_stats(request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        return await request.app.state.ledger.get_ledger_stats(actor)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.get("/integrity")
async def run_integrity_check(request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        return await request.app.state.ledger.check_data_integrity(actor)
    except LedgerError as e:
        raise to_http_error(e)


# ============================================
# SETTLEMENTS
# ============================================

@ledger_router.post("/settlements", status_code=status.HTTP_201_CREATED)
async def create_settlement(
    settlement_data: SettlementCreate,
    request: Request,
    actor: Actor = Depends(get_current_actor)
):
    """
    Settle pending entries of one party and one currency.

    Every referenced entry is cleared and linked to the new settlement.
    """
    try:
        result = await request.app.state.ledger.create_settlement(settlement_data.model_dump(), actor)
    except LedgerError as e:
        raise to_http_error(e)
    return unwrap(result)


@ledger_router.get("/settlements")
async def list_settlements(
    request: Request,
    party: Optional[str] = None,
    actor: Actor = Depends(get_current_actor)
):
    try:
        return await request.app.state.ledger.get_settlements(party, actor)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.get("/settlements/{settlement_id}")
async def get_settlement(settlement_id: str, request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        return await request.app.state.ledger.get_settlement(settlement_id, actor)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.post("/settlements/reconcile")
async def reconcile_settlements(request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        return await request.app.state.ledger.reconcile_settlements(actor)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.get("/settlement-recommendations/{party}")
async def get_settlement_recommendations(party: str, request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        return await request.app.state.settlements.get_recommended_settlements(party, actor)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.get("/settlement-stats")
async def get_settlement_stats(
    request: Request,
    party: Optional[str] = None,
    actor: Actor = Depends(get_current_actor)
):
    await require_permission(request, actor, Permission.VIEW_FINANCIAL_REPORTS, "settlement_stats")
    try:
        return await request.app.state.settlements.get_settlement_stats(party)
    except LedgerError as e:
        raise to_http_error(e)


# ============================================
# REVENUE RULES
# ============================================

@ledger_router.get("/rules")
async def list_rules(request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        return await request.app.state.rules.list_rules(actor)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.get("/rules/active")
async def get_active_rule(request: Request, project_id: Optional[str] = None, actor: Actor = Depends(get_current_actor)):
    await require_permission(request, actor, Permission.VIEW_REVENUE_RULES, "revenue_rule")
    try:
        return await request.app.state.rules.get_active_rule(project_id)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.post("/rules", status_code=status.HTTP_201_CREATED)
async def create_rule(rule_data: RevenueRuleCreate, request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        result = await request.app.state.rules.create_rule(rule_data.model_dump(), actor)
    except LedgerError as e:
        raise to_http_error(e)
    return unwrap(result)


@ledger_router.patch("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    rule_data: RevenueRuleUpdate,
    request: Request,
    actor: Actor = Depends(get_current_actor)
):
    try:
        result = await request.app.state.rules.update_rule(rule_id, rule_data.model_dump(exclude_none=True), actor)
    except LedgerError as e:
        raise to_http_error(e)
    return unwrap(result)


@ledger_router.delete("/rules/{rule_id}")
async def deactivate_rule(rule_id: str, request: Request, actor: Actor = Depends(get_current_actor)):
    """Soft delete: the rule is deactivated, never removed"""
    try:
        result = await request.app.state.rules.deactivate_rule(rule_id, actor)
    except LedgerError as e:
        raise to_http_error(e)
    return unwrap(result)


# ============================================
# PAYMENTS & MIGRATION
# ============================================

@ledger_router.post("/payments/{payment_id}/verified")
async def payment_verified(payment_id: str, request: Request, actor: Actor = Depends(get_current_actor)):
    """Hook for the payment approval flow; never fails the approval"""
    await require_permission(request, actor, Permission.CREATE_SETTLEMENTS, "payment")
    outcome = await request.app.state.processor.handle_payment_verified(payment_id, actor.id)
    if outcome is None:
        return {"processed": False, "error": "Revenue processing failed; administrators were notified"}
    return {
        "processed": outcome.processed,
        "skip_reason": outcome.skip_reason,
        "revenue_rule_id": outcome.revenue_rule_id,
        "ledger_entry_ids": outcome.ledger_entry_ids,
        "split": outcome.split,
        "errors": outcome.errors,
    }


@ledger_router.get("/payments/{payment_id}/breakdown")
async def get_payment_breakdown(payment_id: str, request: Request, actor: Actor = Depends(get_current_actor)):
    await require_permission(request, actor, Permission.VIEW_LEDGER_ENTRIES, "payment")
    try:
        return await request.app.state.migrations.get_payment_revenue_breakdown(payment_id)
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.get("/migrations/status")
async def get_migration_status(request: Request, actor: Actor = Depends(get_current_actor)):
    await require_permission(request, actor, Permission.MANAGE_FINANCIAL_SETTINGS, "migration")
    try:
        return await request.app.state.migrations.get_migration_status()
    except LedgerError as e:
        raise to_http_error(e)


@ledger_router.post("/migrations/batch")
async def run_migration_batch(
    batch: MigrationBatchRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor)
):
    await require_permission(request, actor, Permission.MANAGE_FINANCIAL_SETTINGS, "migration")
    try:
        result = await request.app.state.migrations.migrate_payments_batch(batch.batch_size)
    except LedgerError as e:
        raise to_http_error(e)
    return result.to_dict()


@ledger_router.post("/migrations/run")
async def run_full_migration(request: Request, actor: Actor = Depends(get_current_actor)):
    await require_permission(request, actor, Permission.MANAGE_FINANCIAL_SETTINGS, "migration")
    cancel_event = asyncio.Event()
    request.app.state.migration_cancel = cancel_event
    try:
        return await request.app.state.migrations.run_full_migration(cancel_event)
    except LedgerError as e:
        raise to_http_error(e)
    finally:
        request.app.state.migration_cancel = None


@ledger_router.post("/migrations/cancel")
async def cancel_migration(request: Request, actor: Actor = Depends(get_current_actor)):
    await require_permission(request, actor, Permission.MANAGE_FINANCIAL_SETTINGS, "migration")
    cancel_event = getattr(request.app.state, "migration_cancel", None)
    if cancel_event is None:
        return {"cancelled": False, "message": "No migration is running"}
    cancel_event.set()
    return {"cancelled": True}


# ============================================
# AUDIT
# ============================================

@ledger_router.get("/audit/logs", response_model=List[AuditLogEntry])
async def list_audit_logs(
    request: Request,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    resource_type: Optional[str] = None,
    limit: int = 100,
    actor: Actor = Depends(get_current_actor)
):
    await require_permission(request, actor, Permission.MANAGE_AUDIT_LOGS, "audit_log")
    audit = request.app.state.audit
    await audit.flush()
    return await audit.get_audit_logs({
        "user_id": user_id,
        "event_type": event_type,
        "resource_type": resource_type,
        "limit": limit,
    })


@ledger_router.get("/audit/compliance-report")
async def get_compliance_report(
    start: datetime,
    end: datetime,
    request: Request,
    actor: Actor = Depends(get_current_actor)
):
    await require_permission(request, actor, Permission.MANAGE_AUDIT_LOGS, "audit_log")
    audit = request.app.state.audit
    report = await audit.generate_compliance_report(start, end)
    await audit.log_event(
        "financial_report_generated",
        {"report": "compliance", "start": start.isoformat(), "end": end.isoformat()},
        user_id=actor.id,
        resource_type="audit_log",
    )
    return report


@ledger_router.get("/audit/export")
async def export_audit_logs(
    request: Request,
    fmt: str = "json",
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    actor: Actor = Depends(get_current_actor)
):
    await require_permission(request, actor, Permission.EXPORT_FINANCIAL_DATA, "audit_log")
    if fmt not in ("json", "csv"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="fmt must be json or csv"
        )
    audit = request.app.state.audit
    filters: Dict[str, Any] = {"user_id": user_id, "event_type": event_type}
    content = await audit.export_audit_logs(filters, fmt)
    await audit.log_event(
        "financial_data_exported",
        {"format": fmt, "filters": {k: v for k, v in filters.items() if v}},
        user_id=actor.id,
        resource_type="audit_log",
    )
    media_type = "text/csv" if fmt == "csv" else "application/json"
    return PlainTextResponse(content, media_type=media_type)


@ledger_router.get("/audit/suspicious/{user_id}")
async def check_suspicious_activity(user_id: str, request: Request, actor: Actor = Depends(get_current_actor)):
    await require_permission(request, actor, Permission.MANAGE_AUDIT_LOGS, "audit_log")
    patterns = await request.app.state.audit.detect_suspicious_activity(user_id)
    return {"user_id": user_id, "suspicious": bool(patterns), "patterns": patterns}
