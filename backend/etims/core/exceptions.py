"""Exception types for the eTIMS integration."""

from typing import Any, Dict, Optional


class FiscalError(Exception):
    """Base class for fiscal integration errors."""


class FiscalConfigurationError(FiscalError):
    """Raised when the tenant identity or endpoint table is incomplete.

    Fatal: never retried.
    """


class FiscalValidationError(FiscalError):
    """Raised when a payload fails local checks before transmission."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.field = field
        self.details = details or {}
        super().__init__(message)


class LedgerStateError(FiscalError):
    """Raised on an illegal ledger status transition."""

    def __init__(self, entry_id: int, current: str, requested: str):
        self.entry_id = entry_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Ledger entry {entry_id}: cannot move from '{current}' to '{requested}'"
        )


class LedgerEntryNotFound(FiscalError):
    """Raised when a ledger entry id does not exist."""

    def __init__(self, entry_id: int):
        self.entry_id = entry_id
        super().__init__(f"Ledger entry {entry_id} not found")
