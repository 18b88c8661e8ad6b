from __future__ import annotations

import logging

from fastapi import HTTPException, status

from invoice_bridge.services.errors import (
    CatalogResolutionError,
    ConfigurationError,
    InvoiceSyncError,
)

logger = logging.getLogger("invoice_bridge.api.errors")


def to_http_exception(exc: InvoiceSyncError) -> HTTPException:
    """Map a batch-level sync failure onto the response the caller sees."""
    if isinstance(exc, (ConfigurationError, CatalogResolutionError)):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        # Token refresh and ledger failures are upstream problems.
        status_code = status.HTTP_502_BAD_GATEWAY
    logger.error(
        "sync_request_failed",
        extra={
            "error_code": type(exc).__name__,
            "error_message": str(exc),
            "status": status_code,
        },
    )
    detail: str | dict[str, str] = str(exc)
    body = getattr(exc, "body", None)
    if body:
        detail = {"error": type(exc).__name__, "message": str(exc), "qbo_error": body}
    return HTTPException(status_code=status_code, detail=detail)
