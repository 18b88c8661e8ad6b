from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_bridge.api.errors import to_http_exception
from invoice_bridge.core import logging as logging_utils
from invoice_bridge.db.session import get_session
from invoice_bridge.schemas.invoice import InvoiceBatchRequest, InvoiceBatchResponse
from invoice_bridge.services.errors import InvoiceSyncError
from invoice_bridge.services.reconciliation import InvoiceReconciliationEngine, get_reconciliation_engine


router = APIRouter(prefix="/invoices", tags=["invoices"])
logger = logging.getLogger("invoice_bridge.api.invoices")


@router.post(
    "/batch",
    response_model=InvoiceBatchResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
async def submit_invoice_batch(
    payload: InvoiceBatchRequest,
    session: AsyncSession = Depends(get_session),
    engine: InvoiceReconciliationEngine = Depends(get_reconciliation_engine),
) -> InvoiceBatchResponse:
    logging_utils.set_request_context(company_code=payload.company_config_code)
    logger.info(
        "invoice_batch_received",
        extra={
            "company_code": payload.company_config_code,
            "invoice_count": len(payload.invoices),
        },
    )
    try:
        return await engine.process_batch(session, payload.company_config_code, payload.invoices)
    except InvoiceSyncError as exc:
        raise to_http_exception(exc) from exc
