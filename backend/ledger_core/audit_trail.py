"""
REVENUE LEDGER: AUDIT TRAIL

Append-only audit logging for financial operations.

1. Critical events (critical level, critical risk, or immediate=True) are
   persisted synchronously and never sit in the buffer
2. Everything else is buffered and flushed at capacity or on a timer
3. Flushes are serialized; entries from a failed flush go back to the head
   of the buffer
4. Critical-risk events also raise an administrator notification
5. Financial resources can never be logged as DELETED
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
import asyncio
import csv
import io
import json
import time
import uuid
import logging

from .clock import Clock, ensure_utc, utc_now
from .exceptions import PermissionDeniedError, PersistenceError
from .models import AuditEventType, AuditLevel, RiskLevel
from .notifications import NotificationType

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "audit_logs"

# ARCHITECTURAL GUARD: resources that are never deleted
FINANCIAL_RESOURCE_TYPES = [
    "ledger_entry",
    "settlement",
    "payment",
    "audit_log",
]

RAPID_OPERATION_THRESHOLD = 50
RAPID_OPERATION_HIGH_SEVERITY = 100
FAILED_ATTEMPT_THRESHOLD = 10
FAILED_ATTEMPT_HIGH_SEVERITY = 20

FAILED_ACCESS_EVENTS = {
    AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT.value,
    AuditEventType.PERMISSION_DENIED.value,
}

REPORT_SECURITY_EVENTS = {
    AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT.value,
    AuditEventType.SUSPICIOUS_ACTIVITY.value,
}

CSV_HEADERS = [
    "timestamp", "event_type", "level", "risk_level", "user_id",
    "resource_type", "resource_id", "session_id", "details",
]


def _value(enum_or_str) -> Optional[str]:
    return getattr(enum_or_str, "value", enum_or_str)


class AuditTrail:
    """Buffered, append-only audit log with compliance reporting"""

    def __init__(
        self,
        store,
        notifier=None,
        clock: Clock = utc_now,
        buffer_size: int = 100,
        flush_interval: float = 30.0,
        admin_user_ids: Optional[Iterable[str]] = None,
        environment: str = "development",
        version: str = "1.0.0"
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.buffer_size = buffer_size
        self.flush_interval = flush_interval
        self.admin_user_ids = list(admin_user_ids or [])
        self.environment = environment
        self.version = version
        self.session_id = f"audit_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

        self._buffer: List[Dict[str, Any]] = []
        self._flush_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None

    @property
    def pending_entries(self) -> List[Dict[str, Any]]:
        return list(self._buffer)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self):
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = asyncio.create_task(self._periodic_flush())
        logger.info(f"[AUDIT] Periodic flush started (every {self.flush_interval}s)")

    async def stop(self):
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()
        logger.info("[AUDIT] Periodic flush stopped")

    async def _periodic_flush(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"[AUDIT] Periodic flush failed: {str(e)}")

    async def flush(self) -> int:
        """Persist buffered entries; returns how many were written"""
        async with self._flush_lock:
            if not self._buffer:
                return 0
            entries = self._buffer
            self._buffer = []
            written = 0
            try:
                for entry in entries:
                    await self.store.create(AUDIT_COLLECTION, entry)
                    written += 1
            except PersistenceError as e:
                self._buffer[0:0] = entries[written:]
                logger.error(f"[AUDIT] Flush failed after {written}/{len(entries)} entries: {e.message}")
            return written

    # =========================================================================
    # CORE LOGGING
    # =========================================================================

    def enforce_financial_delete_guard(self, resource_type: Optional[str], operation: Optional[str]):
        """
        ARCHITECTURAL GUARD: Financial records are never deleted.

        Raises PermissionDeniedError when asked to record a DELETE on a
        financial resource.
        """
        if operation and str(operation).upper() in ("DELETE", "DELETED") and resource_type in FINANCIAL_RESOURCE_TYPES:
            raise PermissionDeniedError(
                f"ARCHITECTURAL GUARD: Cannot DELETE {resource_type}. Financial records are immutable.",
                {"resource_type": resource_type}
            )

    async def log_event(
        self,
        event_type,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        level: AuditLevel = AuditLevel.INFO,
        risk_level: RiskLevel = RiskLevel.LOW,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        immediate: bool = False
    ) -> Dict[str, Any]:
        details = dict(details or {})
        self.enforce_financial_delete_guard(resource_type, details.get("operation"))

        entry = {
            "event_type": _value(event_type),
            "level": _value(level),
            "risk_level": _value(risk_level),
            "user_id": user_id,
            "session_id": self.session_id,
            "timestamp": self.clock(),
            "details": details,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "metadata": {
                **(metadata or {}),
                "environment": self.environment,
                "version": self.version,
            },
        }

        is_critical = (
            immediate
            or entry["level"] == AuditLevel.CRITICAL.value
            or entry["risk_level"] == RiskLevel.CRITICAL.value
        )
        if is_critical:
            await self._persist_immediately(entry)
        else:
            self._buffer.append(entry)
            if len(self._buffer) >= self.buffer_size:
                await self.flush()

        if entry["risk_level"] == RiskLevel.CRITICAL.value:
            await self._notify_admins(entry)

        logger.debug(f"[AUDIT] {entry['level'].upper()}: {entry['event_type']}")
        return entry

    async def _persist_immediately(self, entry: Dict[str, Any]):
        try:
            stored = await self.store.create(AUDIT_COLLECTION, entry)
            entry["id"] = stored.get("id")
        except PersistenceError as e:
            # Audit failures must not mask the operation being audited
            logger.critical(f"[AUDIT] Failed to persist critical entry {entry['event_type']}: {e.message}")

    async def _notify_admins(self, entry: Dict[str, Any]):
        if self.notifier is None or not self.admin_user_ids:
            return
        try:
            await self.notifier.notify(self.admin_user_ids, NotificationType.CRITICAL_AUDIT_EVENT, {
                "event_type": entry["event_type"],
                "user_id": entry["user_id"],
                "resource_type": entry["resource_type"],
                "resource_id": entry["resource_id"],
                "timestamp": entry["timestamp"].isoformat(),
            })
        except Exception as e:
            logger.error(f"[AUDIT] Admin notification failed: {str(e)}")

    # =========================================================================
    # SPECIALIZED LOGGERS
    # =========================================================================

    async def log_revenue_rule_operation(self, operation: str, rule: Dict[str, Any], user_id: Optional[str], **options):
        operation = operation.lower()
        details = {
            "operation": operation,
            "rule_id": rule.get("id"),
            "rule_name": rule.get("rule_name"),
            "admin_percent": rule.get("admin_percent"),
            "team_percent": rule.get("team_percent"),
            "vendor_percent": rule.get("vendor_percent"),
            "is_default": rule.get("is_default"),
            "is_active": rule.get("is_active"),
        }
        return await self.log_event(
            AuditEventType(f"revenue_rule_{operation}"),
            details,
            user_id=user_id,
            resource_type="revenue_rule",
            resource_id=rule.get("id"),
            risk_level=RiskLevel.HIGH if operation == "deleted" else RiskLevel.MEDIUM,
            **options
        )

    async def log_ledger_entry_operation(self, operation: str, entry: Dict[str, Any], user_id: Optional[str], **options):
        operation = operation.lower()
        is_manual = entry.get("payment_id") is None
        details = {
            "operation": operation,
            "entry_id": entry.get("id"),
            "party": _value(entry.get("party")),
            "type": _value(entry.get("type")),
            "amount": entry.get("amount"),
            "currency": entry.get("currency"),
            "status": _value(entry.get("status")),
            "payment_id": entry.get("payment_id"),
            "project_id": entry.get("project_id"),
            "manual": is_manual,
        }
        details.update(options.pop("extra", {}))
        return await self.log_event(
            AuditEventType(f"ledger_entry_{operation}"),
            details,
            user_id=user_id,
            resource_type="ledger_entry",
            resource_id=entry.get("id"),
            risk_level=RiskLevel.HIGH if is_manual else RiskLevel.MEDIUM,
            **options
        )

    async def log_settlement_operation(self, operation: str, settlement: Dict[str, Any], user_id: Optional[str], **options):
        operation = operation.lower()
        details = {
            "operation": operation,
            "settlement_id": settlement.get("id"),
            "party": _value(settlement.get("party")),
            "total_amount": settlement.get("total_amount"),
            "currency": settlement.get("currency"),
            "entry_count": len(settlement.get("ledger_entry_ids") or []),
            "has_proof": bool(settlement.get("proof_urls")),
        }
        details.update(options.pop("extra", {}))
        return await self.log_event(
            AuditEventType(f"settlement_{operation}"),
            details,
            user_id=user_id,
            resource_type="settlement",
            resource_id=settlement.get("id"),
            risk_level=options.pop("risk_level", RiskLevel.HIGH),
            **options
        )

    async def log_revenue_processing(self, operation: str, payment: Dict[str, Any], user_id: Optional[str], **options):
        operation = operation.lower()
        details = {
            "operation": operation,
            "payment_id": payment.get("id"),
            "project_id": payment.get("project_id"),
            "amount": payment.get("amount"),
            "currency": payment.get("currency"),
            "revenue_rule_id": payment.get("revenue_rule_id"),
            "ledger_entry_ids": payment.get("ledger_entry_ids"),
        }
        details.update(options.pop("extra", {}))
        return await self.log_event(
            AuditEventType(f"revenue_processing_{operation}"),
            details,
            user_id=user_id,
            resource_type="payment",
            resource_id=payment.get("id"),
            risk_level=RiskLevel.MEDIUM,
            **options
        )

    async def log_security_event(
        self,
        event_type,
        details: Dict[str, Any],
        user_id: Optional[str],
        level: AuditLevel = AuditLevel.WARNING,
        risk_level: RiskLevel = RiskLevel.HIGH,
        **options
    ):
        return await self.log_event(
            event_type,
            details,
            user_id=user_id,
            level=level,
            risk_level=risk_level,
            immediate=True,
            **options
        )

    async def log_unauthorized_access(self, resource: str, action: str, user_id: Optional[str], **options):
        details = {
            "resource": resource,
            "action": action,
            "attempted_by": user_id,
            "attempted_at": self.clock().isoformat(),
        }
        details.update(options.pop("extra", {}))
        return await self.log_security_event(
            AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
            details,
            user_id,
            level=AuditLevel.ERROR,
            risk_level=RiskLevel.CRITICAL,
            **options
        )

    async def log_data_integrity_check(self, check_type: str, results: Dict[str, Any], user_id: Optional[str]):
        passed = bool(results.get("passed"))
        return await self.log_event(
            AuditEventType.DATA_INTEGRITY_CHECK,
            {
                "check_type": check_type,
                "passed": passed,
                "issues": results.get("issues", []),
                "checks": results.get("checks", []),
            },
            user_id=user_id,
            level=AuditLevel.INFO if passed else AuditLevel.WARNING,
            risk_level=RiskLevel.LOW if passed else RiskLevel.MEDIUM,
        )

    # =========================================================================
    # QUERIES & REPORTING
    # =========================================================================

    async def get_audit_logs(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Persisted audit entries, newest first. Buffered entries are not included."""
        filters = filters or {}
        where: Dict[str, Any] = {}
        for key in ("user_id", "event_type", "level", "risk_level", "resource_type", "resource_id"):
            if filters.get(key):
                where[key] = _value(filters[key])

        time_range = {}
        if filters.get("start"):
            time_range["$gte"] = ensure_utc(filters["start"])
        if filters.get("end"):
            time_range["$lte"] = ensure_utc(filters["end"])
        if time_range:
            where["timestamp"] = time_range

        return await self.store.query(
            AUDIT_COLLECTION,
            where=where,
            order_by=[("timestamp", -1)],
            limit=filters.get("limit"),
        )

    async def generate_compliance_report(
        self,
        start: datetime,
        end: datetime,
        filters: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        await self.flush()
        logs = await self.get_audit_logs({**(filters or {}), "start": start, "end": end})

        report = {
            "period": {"start": start, "end": end},
            "total_events": len(logs),
            "events_by_type": {},
            "events_by_level": {},
            "events_by_risk": {},
            "security_events": [],
            "high_risk_events": [],
            "failed_operations": [],
            "user_activity": {},
            "compliance_score": 0.0,
        }

        for log in logs:
            event_type = log["event_type"]
            report["events_by_type"][event_type] = report["events_by_type"].get(event_type, 0) + 1
            report["events_by_level"][log["level"]] = report["events_by_level"].get(log["level"], 0) + 1
            report["events_by_risk"][log["risk_level"]] = report["events_by_risk"].get(log["risk_level"], 0) + 1

            if event_type in REPORT_SECURITY_EVENTS:
                report["security_events"].append(log)
            if log["risk_level"] in (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value):
                report["high_risk_events"].append(log)
            if log["level"] == AuditLevel.ERROR.value or "failed" in event_type:
                report["failed_operations"].append(log)
            if log.get("user_id"):
                report["user_activity"][log["user_id"]] = report["user_activity"].get(log["user_id"], 0) + 1

        risk_events = len(report["high_risk_events"]) + len(report["security_events"])
        score = 100 - 100 * risk_events / max(len(logs), 1)
        report["compliance_score"] = round(max(0.0, min(100.0, score)), 2)

        logger.info(
            f"[AUDIT] Compliance report {start.isoformat()}..{end.isoformat()}: "
            f"{len(logs)} events, score={report['compliance_score']}"
        )
        return report

    async def detect_suspicious_activity(self, user_id: str, window_seconds: float = 3600) -> List[Dict[str, Any]]:
        await self.flush()
        end = self.clock()
        logs = await self.get_audit_logs({
            "user_id": user_id,
            "start": end - timedelta(seconds=window_seconds),
            "end": end,
        })

        patterns: List[Dict[str, Any]] = []
        counts: Dict[str, int] = {}
        for log in logs:
            counts[log["event_type"]] = counts.get(log["event_type"], 0) + 1

        for event_type, count in counts.items():
            if count > RAPID_OPERATION_THRESHOLD:
                patterns.append({
                    "type": "rapid_operations",
                    "event_type": event_type,
                    "count": count,
                    "severity": "high" if count > RAPID_OPERATION_HIGH_SEVERITY else "medium",
                })

        failed = sum(1 for log in logs if log["event_type"] in FAILED_ACCESS_EVENTS)
        if failed > FAILED_ATTEMPT_THRESHOLD:
            patterns.append({
                "type": "multiple_failed_attempts",
                "count": failed,
                "severity": "high" if failed > FAILED_ATTEMPT_HIGH_SEVERITY else "medium",
            })

        if patterns:
            logger.warning(f"[AUDIT] Suspicious activity for user {user_id}: {len(patterns)} pattern(s)")
            await self.log_security_event(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                {"patterns": patterns, "user_id": user_id, "window_seconds": window_seconds},
                user_id,
                level=AuditLevel.CRITICAL,
                risk_level=RiskLevel.CRITICAL,
            )
        return patterns

    async def export_audit_logs(self, filters: Optional[Dict[str, Any]] = None, fmt: str = "json") -> str:
        await self.flush()
        logs = await self.get_audit_logs(filters)

        if fmt == "csv":
            if not logs:
                return ""
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=CSV_HEADERS, extrasaction="ignore")
            writer.writeheader()
            for log in logs:
                row = {h: log.get(h) if log.get(h) is not None else "" for h in CSV_HEADERS}
                row["timestamp"] = log["timestamp"].isoformat() if isinstance(log.get("timestamp"), datetime) else row["timestamp"]
                row["details"] = json.dumps(log.get("details") or {}, default=str)
                writer.writerow(row)
            return buffer.getvalue()

        if fmt != "json":
            raise ValueError(f"Unsupported export format: {fmt}")
        return json.dumps(logs, default=str, indent=2)
