from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Set
from datetime import datetime
from enum import Enum


# ============================================
# ENUMERATIONS
# ============================================
class Party(str, Enum):
    ADMIN = "admin"
    TEAM = "team"
    VENDOR = "vendor"


class EntryType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class EntryStatus(str, Enum):
    PENDING = "pending"
    CLEARED = "cleared"


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    MEMBER = "member"


class Permission(str, Enum):
    # Revenue Rules
    VIEW_REVENUE_RULES = "view_revenue_rules"
    CREATE_REVENUE_RULES = "create_revenue_rules"
    EDIT_REVENUE_RULES = "edit_revenue_rules"
    DELETE_REVENUE_RULES = "delete_revenue_rules"

    # Ledger Entries
    VIEW_LEDGER_ENTRIES = "view_ledger_entries"
    VIEW_ALL_LEDGER_ENTRIES = "view_all_ledger_entries"
    CREATE_MANUAL_ENTRIES = "create_manual_entries"
    EDIT_LEDGER_ENTRIES = "edit_ledger_entries"

    # Settlements
    VIEW_SETTLEMENTS = "view_settlements"
    CREATE_SETTLEMENTS = "create_settlements"
    APPROVE_SETTLEMENTS = "approve_settlements"
    VIEW_ALL_SETTLEMENTS = "view_all_settlements"

    # Financial Data
    VIEW_FINANCIAL_REPORTS = "view_financial_reports"
    EXPORT_FINANCIAL_DATA = "export_financial_data"
    VIEW_PARTY_BALANCES = "view_party_balances"
    VIEW_ALL_PARTY_BALANCES = "view_all_party_balances"

    # Administrative
    MANAGE_AUDIT_LOGS = "manage_audit_logs"
    MANAGE_FINANCIAL_SETTINGS = "manage_financial_settings"


class AuditLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEventType(str, Enum):
    # Revenue Rules
    REVENUE_RULE_CREATED = "revenue_rule_created"
    REVENUE_RULE_UPDATED = "revenue_rule_updated"
    REVENUE_RULE_DELETED = "revenue_rule_deleted"
    REVENUE_RULE_ACTIVATED = "revenue_rule_activated"
    REVENUE_RULE_DEACTIVATED = "revenue_rule_deactivated"

    # Ledger Entries
    LEDGER_ENTRY_CREATED = "ledger_entry_created"
    LEDGER_ENTRY_UPDATED = "ledger_entry_updated"
    LEDGER_ENTRY_STATUS_CHANGED = "ledger_entry_status_changed"
    MANUAL_LEDGER_ENTRY_CREATED = "manual_ledger_entry_created"

    # Settlements
    SETTLEMENT_CREATED = "settlement_created"
    SETTLEMENT_APPROVED = "settlement_approved"
    SETTLEMENT_REJECTED = "settlement_rejected"
    SETTLEMENT_PARTIALLY_APPLIED = "settlement_partially_applied"
    SETTLEMENT_RECONCILED = "settlement_reconciled"

    # Revenue Processing
    REVENUE_PROCESSING_STARTED = "revenue_processing_started"
    REVENUE_PROCESSING_COMPLETED = "revenue_processing_completed"
    REVENUE_PROCESSING_FAILED = "revenue_processing_failed"

    # Financial Operations
    BALANCE_CALCULATION_PERFORMED = "balance_calculation_performed"
    FINANCIAL_REPORT_GENERATED = "financial_report_generated"
    FINANCIAL_DATA_EXPORTED = "financial_data_exported"

    # Security Events
    UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"
    PERMISSION_DENIED = "permission_denied"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"

    # System Events
    DATA_INTEGRITY_CHECK = "data_integrity_check"
    PAYMENT_MIGRATED = "payment_migrated"
    SYSTEM_MAINTENANCE = "system_maintenance"


SECURITY_EVENT_TYPES = {
    AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT.value,
    AuditEventType.PERMISSION_DENIED.value,
    AuditEventType.SUSPICIOUS_ACTIVITY.value,
}


# ============================================
# ACTOR (supplied by the identity collaborator)
# ============================================
class Actor(BaseModel):
    id: str
    role: Role
    party: Optional[Party] = None
    permissions: Set[Permission] = Field(default_factory=set)


# ============================================
# REVENUE RULE
# ============================================
class RevenueRule(BaseModel):
    id: Optional[str] = None
    rule_name: str
    admin_percent: float
    team_percent: float
    vendor_percent: float = 0.0
    is_default: bool = False
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================
# LEDGER ENTRY
# ============================================
class LedgerEntry(BaseModel):
    id: Optional[str] = None
    payment_id: Optional[str] = None  # None for manual entries
    project_id: str
    revenue_rule_id: Optional[str] = None
    type: EntryType
    party: Party
    amount: float
    currency: str
    date: datetime
    status: EntryStatus = EntryStatus.PENDING
    remarks: Optional[str] = None
    settlement_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_manual(self) -> bool:
        return self.payment_id is None


# ============================================
# SETTLEMENT
# ============================================
class Settlement(BaseModel):
    id: Optional[str] = None
    party: Party
    ledger_entry_ids: List[str]
    total_amount: float
    currency: str
    settlement_date: datetime
    created_by: Optional[str] = None
    proof_urls: List[str] = Field(default_factory=list)
    remarks: Optional[str] = None
    created_at: Optional[datetime] = None


# ============================================
# AUDIT LOG
# ============================================
class AuditLogEntry(BaseModel):
    id: Optional[str] = None
    event_type: str
    level: AuditLevel = AuditLevel.INFO
    risk_level: RiskLevel = RiskLevel.LOW
    user_id: Optional[str] = None  # None = system
    session_id: str
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================
# DERIVED VIEWS
# ============================================
class SplitShare(BaseModel):
    amount: float
    currency: str


class RevenueSplit(BaseModel):
    admin: SplitShare
    team: SplitShare
    vendor: Optional[SplitShare] = None

    def shares(self) -> Dict[str, SplitShare]:
        result = {Party.ADMIN.value: self.admin, Party.TEAM.value: self.team}
        if self.vendor is not None:
            result[Party.VENDOR.value] = self.vendor
        return result


class PartyBalance(BaseModel):
    party: Party
    currency: Optional[str] = None
    total_pending: float = 0.0
    total_cleared: float = 0.0
    net_balance: float = 0.0
    last_updated: Optional[datetime] = None
