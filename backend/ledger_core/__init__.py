"""
Revenue-Split Ledger Core
"""
from .exceptions import (
    LedgerError,
    ValidationFailedError,
    PermissionDeniedError,
    NotFoundError,
    SettlementError,
    BalanceCalculationError,
    PersistenceError
)

from .models import (
    Party,
    EntryType,
    EntryStatus,
    Role,
    Permission,
    AuditLevel,
    RiskLevel,
    AuditEventType,
    Actor,
    RevenueRule,
    LedgerEntry,
    Settlement,
    AuditLogEntry,
    RevenueSplit,
    PartyBalance
)

from .document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    MotorDocumentStore
)

from .validation_engine import (
    ValidationEngine,
    ValidationErrorType,
    ValidationIssue,
    ValidationResult,
    Result,
    SUPPORTED_CURRENCIES
)

from .access_control import (
    AccessControlGuard,
    has_permission
)

from .revenue_split import RevenueSplitCalculator

from .notifications import (
    NotificationType,
    StoreNotifier,
    NotificationDispatcher
)

from .audit_trail import AuditTrail

from .ledger_service import LedgerService

from .revenue_rules import RevenueRuleService

from .revenue_processing import (
    RevenueProcessor,
    ProcessingOutcome
)

from .settlement_service import (
    SettlementService,
    SettlementReminderScheduler
)

from .migration_coordinator import (
    MigrationCoordinator,
    MigrationResult,
    BatchResult
)

__all__ = [
    # Errors
    'LedgerError',
    'ValidationFailedError',
    'PermissionDeniedError',
    'NotFoundError',
    'SettlementError',
    'BalanceCalculationError',
    'PersistenceError',
    # Entities
    'Party',
    'EntryType',
    'EntryStatus',
    'Role',
    'Permission',
    'AuditLevel',
    'RiskLevel',
    'AuditEventType',
    'Actor',
    'RevenueRule',
    'LedgerEntry',
    'Settlement',
    'AuditLogEntry',
    'RevenueSplit',
    'PartyBalance',
    # Storage
    'DocumentStore',
    'InMemoryDocumentStore',
    'MotorDocumentStore',
    # Validation
    'ValidationEngine',
    'ValidationErrorType',
    'ValidationIssue',
    'ValidationResult',
    'Result',
    'SUPPORTED_CURRENCIES',
    # Access Control
    'AccessControlGuard',
    'has_permission',
    # Services
    'RevenueSplitCalculator',
    'NotificationType',
    'StoreNotifier',
    'NotificationDispatcher',
    'AuditTrail',
    'LedgerService',
    'RevenueRuleService',
    'RevenueProcessor',
    'ProcessingOutcome',
    'SettlementService',
    'SettlementReminderScheduler',
    'MigrationCoordinator',
    'MigrationResult',
    'BatchResult',
]
