from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_bridge.api.errors import to_http_exception
from invoice_bridge.core import logging as logging_utils
from invoice_bridge.db import repo
from invoice_bridge.db.session import get_session
from invoice_bridge.schemas.invoice import CatalogBootstrapResponse, CredentialRefreshResponse
from invoice_bridge.services.catalog import CatalogResolver
from invoice_bridge.services.errors import ConfigurationError, InvoiceSyncError, RemoteSubmissionError
from invoice_bridge.services.line_items import TaxContext
from invoice_bridge.services.qbo_client import QuickBooksApiError
from invoice_bridge.services.token_manager import TokenLifecycleManager, get_token_manager


router = APIRouter(prefix="/ledger", tags=["ledger"])
logger = logging.getLogger("invoice_bridge.api.ledger")


@router.post("/catalog/{company_config_code}/bootstrap", response_model=CatalogBootstrapResponse)
async def bootstrap_catalog(
    company_config_code: str,
    session: AsyncSession = Depends(get_session),
    token_manager: TokenLifecycleManager = Depends(get_token_manager),
) -> CatalogBootstrapResponse:
    logging_utils.set_request_context(company_code=company_config_code)
    try:
        config = await repo.get_company_config(session, company_config_code)
        if config is None:
            raise ConfigurationError(f"Company config '{company_config_code}' not found")
        tax_agency_name = config.tax_agency_name
        ledger = await token_manager.open_session(session)
        logging_utils.set_request_context(realm_id=ledger.realm_id)
        qbo_service = token_manager.qbo_service
        resolver = CatalogResolver(
            qbo_service,
            ledger,
            settings=token_manager.settings,
            tax_agency_name=tax_agency_name,
        )
        try:
            company_info = await qbo_service.fetch_company_info(ledger)
            tax_context = TaxContext.from_company_info(company_info, token_manager.settings)
            items, tax_codes = await resolver.bootstrap(per_line_tax=tax_context.per_line_tax)
        except QuickBooksApiError as exc:
            raise RemoteSubmissionError(str(exc), status_code=exc.status_code, body=exc.body) from exc
    except InvoiceSyncError as exc:
        raise to_http_exception(exc) from exc

    logger.info(
        "catalog_bootstrapped",
        extra={
            "company_code": company_config_code,
            "realm_id": ledger.realm_id,
            "items": sorted(items),
            "tax_codes": sorted(tax_codes),
        },
    )
    return CatalogBootstrapResponse(
        company_config_code=company_config_code,
        realm_id=ledger.realm_id,
        items=items,
        tax_codes=tax_codes,
    )


@router.post("/credentials/refresh", response_model=CredentialRefreshResponse)
async def refresh_credentials(
    session: AsyncSession = Depends(get_session),
    token_manager: TokenLifecycleManager = Depends(get_token_manager),
) -> CredentialRefreshResponse:
    try:
        credential = await token_manager.rotate(session)
    except InvoiceSyncError as exc:
        raise to_http_exception(exc) from exc
    return CredentialRefreshResponse(
        realm_id=credential.realm_id,
        environment=credential.environment,
        access_expires_at=credential.access_expires_at,
        refresh_counter=credential.refresh_counter,
    )
