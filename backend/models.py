from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from ledger_core.models import EntryStatus, EntryType, Party

# ============================================
# LEDGER ENTRY REQUESTS
# ============================================
class ManualEntryCreate(BaseModel):
    project_id: str
    type: EntryType
    party: Party
    amount: float
    currency: str
    date: datetime = Field(default_factory=lambda: datetime.utcnow())
    remarks: Optional[str] = None

class EntryStatusUpdate(BaseModel):
    status: EntryStatus

# ============================================
# SETTLEMENT REQUESTS
# ============================================
class SettlementCreate(BaseModel):
    party: Party
    ledger_entry_ids: List[str]
    currency: str
    settlement_date: datetime = Field(default_factory=lambda: datetime.utcnow())
    proof_urls: List[str] = []
    remarks: Optional[str] = None

# ============================================
# REVENUE RULE REQUESTS
# ============================================
class RevenueRuleCreate(BaseModel):
    rule_name: str
    admin_percent: float
    team_percent: float
    vendor_percent: float = 0.0
    is_default: bool = False
    is_active: bool = True

class RevenueRuleUpdate(BaseModel):
    rule_name: Optional[str] = None
    admin_percent: Optional[float] = None
    team_percent: Optional[float] = None
    vendor_percent: Optional[float] = None
    is_default: Optional[bool] = None
    is_active: Optional[bool] = None

# ============================================
# MIGRATION REQUESTS
# ============================================
class MigrationBatchRequest(BaseModel):
    batch_size: int = Field(default=10, ge=1, le=500)
