from __future__ import annotations

from typing import Any, Optional


class InvoiceSyncError(RuntimeError):
    """Base class for failures raised while posting invoices to the ledger.

    ``batch_fatal`` errors abort the whole batch before (or instead of) processing
    invoices; all others are recorded against the invoice that raised them.
    """

    batch_fatal = False


class ConfigurationError(InvoiceSyncError):
    batch_fatal = True


class TokenRefreshError(InvoiceSyncError):
    batch_fatal = True


class TaxMismatchError(InvoiceSyncError):
    def __init__(self, mismatches: list[dict[str, Any]]):
        self.mismatches = mismatches
        super().__init__("Sales tax does not match for company")


class CatalogResolutionError(InvoiceSyncError):
    def __init__(self, entity: str, name: str, message: Optional[str] = None):
        self.entity = entity
        self.name = name
        super().__init__(message or f"{entity} '{name}' not found in QuickBooks")


class RemoteSubmissionError(InvoiceSyncError):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)
