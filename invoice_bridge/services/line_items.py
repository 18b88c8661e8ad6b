from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from invoice_bridge.core.config import Settings
from invoice_bridge.schemas.invoice import InvoiceRequest
from invoice_bridge.services.catalog import (
    DISPOSAL_FEE_ITEM,
    LABOR_TAX_ITEM,
    LABORS_ITEM,
    MISC_CHARGES_ITEM,
    PARTS_ITEM,
    ZERO_RATE_NON_TAX_CODE,
    ZERO_RATE_TAX_CODE,
    CatalogResolver,
)
from invoice_bridge.services.tax_validator import has_separate_labor_tax
from invoice_bridge.utils.money import to_amount, to_ledger_number

FLAT_TAXABLE = "TAX"
FLAT_NON_TAXABLE = "NON"


@dataclass(frozen=True)
class TaxContext:
    """How one invoice addresses tax, fixed from a single company-info lookup."""

    country: Optional[str]
    per_line_tax: bool

    @classmethod
    def from_company_info(cls, company_info: dict[str, Any], settings: Settings) -> "TaxContext":
        country = company_info.get("Country") or (company_info.get("CompanyAddr") or {}).get("Country")
        countries = {code.upper() for code in settings.tax_code_countries}
        return cls(country=country, per_line_tax=bool(country) and country.upper() in countries)


@dataclass
class LineItemResult:
    lines: list[dict[str, Any]] = field(default_factory=list)
    txn_tax_detail: Optional[dict[str, Any]] = None


class LineItemBuilder:
    def __init__(self, resolver: CatalogResolver) -> None:
        self.resolver = resolver

    async def build(self, invoice: InvoiceRequest, tax_context: TaxContext) -> LineItemResult:
        result = LineItemResult()
        for group in invoice.lines:
            for part in group.parts:
                result.lines.append(
                    await self._sales_line(
                        PARTS_ITEM,
                        tax_context,
                        amount=part.total_amount,
                        qty=part.quantity,
                        unit_price=part.selling_price,
                        description=part.name,
                        taxable=True,
                        tax_code=part.tax_code,
                    )
                )
            for labor in group.labors:
                result.lines.append(
                    await self._sales_line(
                        LABORS_ITEM,
                        tax_context,
                        amount=labor.total_amount,
                        qty=labor.hours,
                        unit_price=self._labor_rate(labor.rate, labor.hours, labor.total_amount),
                        description=labor.name,
                        taxable=True,
                        tax_code=labor.tax_code,
                    )
                )
            for charge in group.misc_charges:
                result.lines.append(
                    await self._sales_line(
                        MISC_CHARGES_ITEM,
                        tax_context,
                        amount=charge.total_amount,
                        qty=Decimal("1"),
                        unit_price=charge.amount if charge.amount is not None else charge.total_amount,
                        description=charge.name,
                        taxable=True,
                        tax_code=charge.tax_code,
                    )
                )
            for fee in group.disposal_fees:
                result.lines.append(
                    await self._sales_line(
                        DISPOSAL_FEE_ITEM,
                        tax_context,
                        amount=fee.total_amount,
                        qty=Decimal("1"),
                        unit_price=fee.amount if fee.amount is not None else fee.total_amount,
                        description=fee.name,
                        taxable=False,
                    )
                )

        if has_separate_labor_tax(invoice) and invoice.labor_tax:
            result.lines.append(
                await self._sales_line(
                    LABOR_TAX_ITEM,
                    tax_context,
                    amount=invoice.labor_tax,
                    qty=Decimal("1"),
                    unit_price=invoice.labor_tax,
                    description=LABOR_TAX_ITEM,
                    taxable=False,
                )
            )

        discount = invoice.discount_percentage
        if discount is not None and math.isfinite(discount) and discount > 0:
            result.lines.append(self._discount_line(discount, invoice.discount_amount))

        if not tax_context.per_line_tax:
            result.txn_tax_detail = await self._txn_tax_detail(invoice)
        return result

    async def _sales_line(
        self,
        item_name: str,
        tax_context: TaxContext,
        *,
        amount: Decimal,
        qty: Decimal,
        unit_price: Decimal,
        description: Optional[str],
        taxable: bool,
        tax_code: Optional[str] = None,
    ) -> dict[str, Any]:
        item_id = await self.resolver.ensure_structural_item(
            item_name,
            per_line_tax=tax_context.per_line_tax,
        )
        detail: dict[str, Any] = {
            "ItemRef": {"value": item_id, "name": item_name},
            "Qty": to_ledger_number(qty),
            "UnitPrice": to_ledger_number(unit_price),
            "TaxCodeRef": {"value": await self._tax_code_ref(tax_context, taxable, tax_code)},
        }
        line: dict[str, Any] = {
            "DetailType": "SalesItemLineDetail",
            "Amount": to_ledger_number(to_amount(amount)),
            "SalesItemLineDetail": detail,
        }
        if description:
            line["Description"] = description
        return line

    async def _tax_code_ref(
        self,
        tax_context: TaxContext,
        taxable: bool,
        tax_code: Optional[str],
    ) -> str:
        if not tax_context.per_line_tax:
            return FLAT_TAXABLE if taxable else FLAT_NON_TAXABLE
        if not taxable:
            return await self.resolver.resolve_tax_code_id(ZERO_RATE_NON_TAX_CODE)
        return await self.resolver.resolve_tax_code_id(tax_code or ZERO_RATE_TAX_CODE)

    async def _txn_tax_detail(self, invoice: InvoiceRequest) -> Optional[dict[str, Any]]:
        if not invoice.parts_tax:
            return None
        first = invoice.parts_tax[0]
        total_tax = sum(
            (tax.tax_amount for tax in invoice.parts_tax if tax.tax_amount is not None),
            Decimal("0"),
        )
        return {
            "TxnTaxCodeRef": {"value": await self.resolver.resolve_tax_code_id(first.code or first.name)},
            "TotalTax": to_ledger_number(to_amount(total_tax)),
        }

    def _discount_line(self, percent: float, amount: Optional[Decimal]) -> dict[str, Any]:
        line: dict[str, Any] = {
            "DetailType": "DiscountLineDetail",
            "DiscountLineDetail": {
                "PercentBased": True,
                "DiscountPercent": percent,
            },
        }
        if amount is not None:
            line["Amount"] = to_ledger_number(to_amount(amount))
        return line

    def _labor_rate(self, rate: Optional[Decimal], hours: Decimal, total: Decimal) -> Decimal:
        if rate is not None:
            return rate
        if hours:
            return to_amount(total / hours)
        return total
