from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from invoice_bridge.schemas.invoice import DeclaredTax, InvoiceRequest, TaxMismatch
from invoice_bridge.utils.money import format_rate

LABOR_TAX_NAME = "Labor Tax"

logger = logging.getLogger("invoice_bridge.services.tax")


def active_tax_rates(rates: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return [rate for rate in rates if rate.get("Active") is True]


def has_separate_labor_tax(invoice: InvoiceRequest) -> bool:
    """Labor is taxed apart from parts, at a declared rate or with a declared amount."""
    if invoice.labor_tax_same_as_part is not False:
        return False
    percentage = invoice.labor_tax_percentage
    return bool(percentage and percentage > 0) or bool(invoice.labor_tax)


def effective_taxes(invoice: InvoiceRequest) -> list[DeclaredTax]:
    taxes = list(invoice.parts_tax)
    if has_separate_labor_tax(invoice):
        # An amount declared without a rate is checked as 0 %.
        taxes.append(
            DeclaredTax(
                name=LABOR_TAX_NAME,
                code=LABOR_TAX_NAME,
                tax=invoice.labor_tax_percentage or 0.0,
                taxAmount=invoice.labor_tax,
            )
        )
    return taxes


def validate(invoice: InvoiceRequest, active_rates: Iterable[dict[str, Any]]) -> list[TaxMismatch]:
    """Compare the invoice's declared taxes with the ledger's active tax rates by name.

    Rates are compared at two decimals, the precision the ledger reports them with.
    """
    by_name: dict[str, dict[str, Any]] = {}
    for rate in active_rates:
        name = rate.get("Name")
        if name and name not in by_name:
            by_name[name] = rate

    mismatches: list[TaxMismatch] = []
    for declared in effective_taxes(invoice):
        declared_rate = format_rate(declared.tax)
        ledger_rate: Optional[dict[str, Any]] = by_name.get(declared.name)
        if ledger_rate is None:
            mismatches.append(
                TaxMismatch(
                    name=declared.name,
                    code=declared.code,
                    tax=declared_rate,
                    description=f"{declared.code or declared.name} not found in QuickBooks.",
                )
            )
            continue
        observed_rate = format_rate(ledger_rate.get("RateValue", 0))
        if observed_rate != declared_rate:
            mismatches.append(
                TaxMismatch(
                    name=declared.name,
                    code=declared.code,
                    tax=declared_rate,
                    tax_in_qb=observed_rate,
                    description="Tax rate mismatch between work order and QuickBooks.",
                )
            )

    if mismatches:
        logger.info(
            "tax_validation_failed",
            extra={
                "work_order_id": invoice.work_order_id,
                "mismatch_count": len(mismatches),
                "names": [mismatch.name for mismatch in mismatches],
            },
        )
    return mismatches
