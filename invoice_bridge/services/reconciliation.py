from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_bridge.core.config import Settings, get_settings
from invoice_bridge.core.logging import (
    clear_work_order_context,
    log_invoice_attempt_finished,
    log_invoice_attempt_started,
    set_request_context,
)
from invoice_bridge.db import repo
from invoice_bridge.db.models import CompanyConfig, InvoiceStatus
from invoice_bridge.schemas.invoice import InvoiceBatchResponse, InvoiceRequest, InvoiceResult
from invoice_bridge.services import tax_validator
from invoice_bridge.services.catalog import CatalogResolver
from invoice_bridge.services.customers import CustomerResolver, build_address
from invoice_bridge.services.errors import (
    CatalogResolutionError,
    ConfigurationError,
    InvoiceSyncError,
    RemoteSubmissionError,
    TaxMismatchError,
)
from invoice_bridge.services.line_items import LineItemBuilder, LineItemResult, TaxContext
from invoice_bridge.services.qbo_client import LedgerSession, QuickBooksApiError, QuickBooksService
from invoice_bridge.services.token_manager import TokenLifecycleManager, get_token_manager

DOC_NUMBER_MAX_LENGTH = 21


class ReconciliationState(str, Enum):
    TAX_BLOCKED = "TAX_BLOCKED"
    FIRST_SUBMISSION = "FIRST_SUBMISSION"
    RESUBMISSION_WITH_KNOWN_PRIOR = "RESUBMISSION_WITH_KNOWN_PRIOR"
    RESUBMISSION_WITH_UNRESOLVED_PRIOR = "RESUBMISSION_WITH_UNRESOLVED_PRIOR"
    AMBIGUOUS_PRIOR = "AMBIGUOUS_PRIOR"


STATUS_BY_STATE: dict[ReconciliationState, str] = {
    ReconciliationState.TAX_BLOCKED: InvoiceStatus.FAILURE,
    ReconciliationState.FIRST_SUBMISSION: InvoiceStatus.CREATED,
    ReconciliationState.RESUBMISSION_WITH_KNOWN_PRIOR: InvoiceStatus.UPDATED,
    ReconciliationState.RESUBMISSION_WITH_UNRESOLVED_PRIOR: InvoiceStatus.OLD_INVOICE_NOT_FOUND,
    ReconciliationState.AMBIGUOUS_PRIOR: InvoiceStatus.DUPLICATE_OLD_INVOICES_FOUND,
}


def needs_remote_lookup(prior_invoice_id: Optional[str], caller_prior_id: Optional[str]) -> bool:
    return not prior_invoice_id and bool(caller_prior_id)


def decide_state(
    *,
    tax_blocked: bool,
    prior_invoice_id: Optional[str],
    caller_prior_id: Optional[str],
    remote_lookup_found: bool,
) -> ReconciliationState:
    """Classify one submission attempt.

    The local record's invoice id wins over the caller's, since it is the last
    invoice this service itself confirmed for the work order.
    """
    if tax_blocked:
        return ReconciliationState.TAX_BLOCKED
    if prior_invoice_id:
        return ReconciliationState.RESUBMISSION_WITH_KNOWN_PRIOR
    if not caller_prior_id:
        return ReconciliationState.FIRST_SUBMISSION
    if remote_lookup_found:
        return ReconciliationState.AMBIGUOUS_PRIOR
    return ReconciliationState.RESUBMISSION_WITH_UNRESOLVED_PRIOR


class KeyedLocks:
    """In-process asyncio locks keyed by work order, dropped once nobody holds or waits."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], list[Any]] = {}

    @asynccontextmanager
    async def hold(self, key: tuple[str, str]) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = [asyncio.Lock(), 0]
            self._entries[key] = entry
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


work_order_locks = KeyedLocks()


@dataclass(frozen=True)
class CompanySnapshot:
    """Plain copy of the company config; ORM rows expire on every per-invoice rollback."""

    code: str
    terms: str
    tax_agency_name: str
    keep_invoice_number: bool

    @classmethod
    def from_config(cls, config: CompanyConfig) -> "CompanySnapshot":
        return cls(
            code=config.code,
            terms=config.terms or "",
            tax_agency_name=config.tax_agency_name or "",
            keep_invoice_number=bool(config.keep_invoice_number),
        )


@dataclass
class _BatchContext:
    ledger: LedgerSession
    company: CompanySnapshot
    resolver: CatalogResolver
    term_id: str
    tax_rates: list[dict[str, Any]]


class InvoiceReconciliationEngine:
    SUCCESS_MESSAGES = {
        InvoiceStatus.CREATED: "Invoice created successfully.",
        InvoiceStatus.UPDATED: "Invoice updated successfully.",
        InvoiceStatus.OLD_INVOICE_NOT_FOUND: "Invoice created; previous invoice not found in QuickBooks.",
        InvoiceStatus.DUPLICATE_OLD_INVOICES_FOUND: "Invoice created; previous invoice left in QuickBooks for review.",
    }
    FAILURE_MESSAGE = "Failed to create invoice in QuickBooks."

    def __init__(
        self,
        qbo_service: QuickBooksService | None = None,
        token_manager: TokenLifecycleManager | None = None,
        *,
        settings: Settings | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.qbo_service = qbo_service or QuickBooksService(self.settings)
        self.token_manager = token_manager or TokenLifecycleManager(self.qbo_service, self.settings)
        self.locks = locks or work_order_locks
        self.logger = logging.getLogger("invoice_bridge.services.reconciliation")

    async def process_batch(
        self,
        session: AsyncSession,
        company_config_code: str,
        invoices: Sequence[InvoiceRequest],
    ) -> InvoiceBatchResponse:
        set_request_context(company_code=company_config_code)
        batch = await self._prepare_batch(session, company_config_code)
        results: list[InvoiceResult] = []
        for invoice in invoices:
            results.append(await self._process_invoice(session, batch, invoice))
        self.logger.info(
            "invoice_batch_processed",
            extra={
                "company_code": company_config_code,
                "realm_id": batch.ledger.realm_id,
                "invoice_count": len(results),
                "failure_count": sum(1 for result in results if result.status == InvoiceStatus.FAILURE),
            },
        )
        return InvoiceBatchResponse(company_config_code=company_config_code, invoices=results)

    async def _prepare_batch(self, session: AsyncSession, company_config_code: str) -> _BatchContext:
        config = await repo.get_company_config(session, company_config_code)
        if config is None:
            raise ConfigurationError(f"Company config '{company_config_code}' not found")
        company = CompanySnapshot.from_config(config)
        if not company.terms:
            raise ConfigurationError(f"Company config '{company.code}' has no payment terms")
        if not company.tax_agency_name:
            raise ConfigurationError(f"Company config '{company.code}' has no tax agency")

        ledger = await self.token_manager.open_session(session)
        set_request_context(realm_id=ledger.realm_id)
        resolver = CatalogResolver(
            self.qbo_service,
            ledger,
            settings=self.settings,
            tax_agency_name=company.tax_agency_name,
        )
        try:
            term_id = await resolver.resolve_term_id(company.terms)
            await resolver.resolve_tax_agency_id()
            rates = await self.qbo_service.find_tax_rates(ledger)
        except CatalogResolutionError as exc:
            raise ConfigurationError(str(exc)) from exc
        except QuickBooksApiError as exc:
            raise RemoteSubmissionError(
                f"Failed to load company tax setup from QuickBooks: {exc}",
                status_code=exc.status_code,
                body=exc.body,
            ) from exc
        return _BatchContext(
            ledger=ledger,
            company=company,
            resolver=resolver,
            term_id=term_id,
            tax_rates=tax_validator.active_tax_rates(rates),
        )

    async def _process_invoice(
        self,
        session: AsyncSession,
        batch: _BatchContext,
        invoice: InvoiceRequest,
    ) -> InvoiceResult:
        async with self.locks.hold((invoice.work_order_id, batch.company.code)):
            set_request_context(work_order_id=invoice.work_order_id)
            try:
                return await self._attempt(session, batch, invoice)
            finally:
                clear_work_order_context()

    async def _attempt(
        self,
        session: AsyncSession,
        batch: _BatchContext,
        invoice: InvoiceRequest,
    ) -> InvoiceResult:
        start = perf_counter()
        log_invoice_attempt_started(
            company_code=batch.company.code,
            realm_id=batch.ledger.realm_id,
            work_order_id=invoice.work_order_id,
            prior_invoice_id=invoice.prior_invoice_id,
            payload=invoice.model_dump(mode="json", by_alias=True),
        )
        state: Optional[ReconciliationState] = None
        try:
            mismatches = tax_validator.validate(invoice, batch.tax_rates)
            if mismatches:
                state = ReconciliationState.TAX_BLOCKED
                raise TaxMismatchError(
                    [mismatch.model_dump(by_alias=True, exclude_none=True) for mismatch in mismatches]
                )

            record = await repo.find_prior_record(
                session,
                work_order_id=invoice.work_order_id,
                company_config_code=batch.company.code,
            )
            local_prior_id = record.invoice_id if record is not None else None
            remote_found = False
            if needs_remote_lookup(local_prior_id, invoice.prior_invoice_id):
                remote_found = (
                    await self.qbo_service.find_invoice(batch.ledger, invoice.prior_invoice_id)
                ) is not None
            state = decide_state(
                tax_blocked=False,
                prior_invoice_id=local_prior_id,
                caller_prior_id=invoice.prior_invoice_id,
                remote_lookup_found=remote_found,
            )

            company_info = await self.qbo_service.fetch_company_info(batch.ledger)
            tax_context = TaxContext.from_company_info(company_info, self.settings)
            customer = await CustomerResolver(self.qbo_service, batch.ledger).resolve_or_create(invoice.to)
            line_result = await LineItemBuilder(batch.resolver).build(invoice, tax_context)
            payload = self.build_invoice_payload(invoice, batch, customer, line_result)

            if state is ReconciliationState.RESUBMISSION_WITH_KNOWN_PRIOR:
                await self._delete_prior_invoice(batch.ledger, local_prior_id)
            created = await self.qbo_service.create_invoice(batch.ledger, payload)

            status = STATUS_BY_STATE[state]
            invoice_id = str(created["Id"])
            doc_number = created.get("DocNumber")
            await repo.upsert_success(
                session,
                work_order_id=invoice.work_order_id,
                company_config_code=batch.company.code,
                invoice_id=invoice_id,
                doc_number=doc_number,
                status=status,
                invoice_date=invoice.invoice_date,
            )
            await session.commit()
        except TaxMismatchError as exc:
            return await self._record_failure(
                session, batch, invoice, state, exc, start, tax_details=exc.mismatches
            )
        except InvoiceSyncError as exc:
            if exc.batch_fatal:
                raise
            return await self._record_failure(session, batch, invoice, state, exc, start)
        except QuickBooksApiError as exc:
            error = RemoteSubmissionError(str(exc), status_code=exc.status_code, body=exc.body)
            return await self._record_failure(session, batch, invoice, state, error, start)
        except httpx.HTTPError as exc:
            error = RemoteSubmissionError(f"QuickBooks transport error: {exc}")
            return await self._record_failure(session, batch, invoice, state, error, start)
        except Exception as exc:
            # Anything outside the taxonomy still fails only this work order.
            self.logger.exception(
                "invoice_attempt_crashed",
                extra={"work_order_id": invoice.work_order_id, "error_code": type(exc).__name__},
            )
            error = InvoiceSyncError(f"Unexpected error while processing invoice: {exc}")
            return await self._record_failure(session, batch, invoice, state, error, start)

        log_invoice_attempt_finished(
            company_code=batch.company.code,
            realm_id=batch.ledger.realm_id,
            work_order_id=invoice.work_order_id,
            prior_invoice_id=local_prior_id or invoice.prior_invoice_id,
            state=state.value,
            status=status,
            invoice_id=invoice_id,
            doc_number=doc_number,
            latency_ms=(perf_counter() - start) * 1000,
        )
        return InvoiceResult(
            work_order_id=invoice.work_order_id,
            status=status,
            message=self.SUCCESS_MESSAGES[status],
            invoice_id=invoice_id,
            doc_number=doc_number,
        )

    def build_invoice_payload(
        self,
        invoice: InvoiceRequest,
        batch: _BatchContext,
        customer: dict[str, Any],
        line_result: LineItemResult,
    ) -> dict[str, Any]:
        customer_ref: dict[str, str] = {"value": str(customer["Id"])}
        if customer.get("DisplayName"):
            customer_ref["name"] = str(customer["DisplayName"])
        payload: dict[str, Any] = {
            "CustomerRef": customer_ref,
            "TxnDate": invoice.invoice_date.isoformat(),
            "DueDate": (invoice.due_date or invoice.invoice_date).isoformat(),
            "SalesTermRef": {"value": batch.term_id},
            "PrivateNote": f"Work order {invoice.work_order_id}",
            "Line": line_result.lines,
        }
        bill_addr = build_address(invoice.to.address)
        if bill_addr:
            payload["BillAddr"] = bill_addr
        if invoice.to.email:
            payload["BillEmail"] = {"Address": invoice.to.email}
        if batch.company.keep_invoice_number:
            doc_number = invoice.invoice_number or invoice.work_order_id
            payload["DocNumber"] = doc_number[:DOC_NUMBER_MAX_LENGTH]
        if invoice.po_number:
            payload["CustomerMemo"] = {"value": f"PO Number: {invoice.po_number}"}
        if line_result.txn_tax_detail:
            payload["TxnTaxDetail"] = line_result.txn_tax_detail
        return payload

    async def _delete_prior_invoice(self, ledger: LedgerSession, invoice_id: str) -> None:
        # The ledger has no atomic replace; a stale invoice left behind is cleaned up by hand.
        try:
            existing = await self.qbo_service.find_invoice(ledger, invoice_id)
            if existing is None:
                self.logger.warning(
                    "prior_invoice_missing",
                    extra={"invoice_id": invoice_id, "realm_id": ledger.realm_id},
                )
                return
            await self.qbo_service.delete_invoice(
                ledger,
                invoice_id=invoice_id,
                sync_token=str(existing.get("SyncToken", "0")),
            )
        except (QuickBooksApiError, httpx.HTTPError) as exc:
            self.logger.warning(
                "prior_invoice_delete_failed",
                extra={
                    "invoice_id": invoice_id,
                    "realm_id": ledger.realm_id,
                    "error": str(exc),
                },
            )
            return
        self.logger.info(
            "prior_invoice_deleted",
            extra={"invoice_id": invoice_id, "realm_id": ledger.realm_id},
        )

    async def _record_failure(
        self,
        session: AsyncSession,
        batch: _BatchContext,
        invoice: InvoiceRequest,
        state: Optional[ReconciliationState],
        exc: InvoiceSyncError,
        start: float,
        *,
        tax_details: Optional[list[dict[str, Any]]] = None,
    ) -> InvoiceResult:
        await session.rollback()
        await repo.upsert_failure(
            session,
            work_order_id=invoice.work_order_id,
            company_config_code=batch.company.code,
            error_message=str(exc),
            invoice_date=invoice.invoice_date,
            tax_details=tax_details,
        )
        await session.commit()

        body = getattr(exc, "body", None)
        log_invoice_attempt_finished(
            company_code=batch.company.code,
            realm_id=batch.ledger.realm_id,
            work_order_id=invoice.work_order_id,
            prior_invoice_id=invoice.prior_invoice_id,
            state=state.value if state is not None else None,
            status=InvoiceStatus.FAILURE,
            latency_ms=(perf_counter() - start) * 1000,
            error_code=type(exc).__name__,
            error_message=str(exc),
            qbo_error_details=body,
        )
        is_tax_failure = isinstance(exc, TaxMismatchError)
        return InvoiceResult(
            work_order_id=invoice.work_order_id,
            status=InvoiceStatus.FAILURE,
            message=str(exc) if is_tax_failure else self.FAILURE_MESSAGE,
            error_message=None if is_tax_failure else str(exc),
            tax_details=tax_details,
        )


def get_reconciliation_engine() -> InvoiceReconciliationEngine:
    token_manager = get_token_manager()
    return InvoiceReconciliationEngine(
        token_manager.qbo_service,
        token_manager,
        settings=token_manager.settings,
    )
