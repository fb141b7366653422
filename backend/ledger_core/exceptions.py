"""
Ledger error taxonomy.

Validation problems are returned as values (see validation_engine.Result);
everything here is raised and propagated to the caller.
"""

from typing import List, Optional, Dict, Any


class LedgerError(Exception):
    """Base class for ledger errors"""

    error_type = "ledger_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationFailedError(LedgerError):
    """Raised only when a failed validation Result is unwrapped"""

    error_type = "validation_error"

    def __init__(self, errors: List[Any], message: Optional[str] = None):
        self.errors = list(errors)
        summary = "; ".join(getattr(e, "message", str(e)) for e in self.errors)
        super().__init__(message or f"Validation failed: {summary}", {"errors": self.errors})


class PermissionDeniedError(LedgerError):
    """Raised when an actor is not allowed to perform an operation"""

    error_type = "permission_denied"


class NotFoundError(LedgerError):
    """Raised when a referenced document does not exist"""

    error_type = "not_found"

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(
            f"{collection} document not found: {doc_id}",
            {"collection": collection, "id": doc_id}
        )


class SettlementError(LedgerError):
    """Raised when entries cannot be settled together"""

    error_type = "settlement_error"


class BalanceCalculationError(LedgerError):
    """Raised when balance aggregation hits malformed entries"""

    error_type = "balance_calculation_error"


class PersistenceError(LedgerError):
    """Raised when the document store is unavailable or rejects a write"""

    error_type = "persistence_error"
