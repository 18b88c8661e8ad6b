from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field


class _CallerModel(BaseModel):
    """Accepts the work-order system's camelCase keys as well as field names."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PartyAddress(_CallerModel):
    line1: Optional[str] = Field(default=None, max_length=500)
    line2: Optional[str] = Field(default=None, max_length=500)
    city: Optional[str] = Field(default=None, max_length=255)
    state: Optional[str] = Field(default=None, max_length=255)
    zipcode: Optional[str] = Field(
        default=None,
        max_length=30,
        validation_alias=AliasChoices("zipcode", "postalCode", "postal_code"),
    )
    country: Optional[str] = Field(default=None, max_length=255)


class BilledParty(_CallerModel):
    name: str = Field(min_length=1, max_length=500)
    email: Optional[EmailStr] = None
    mobile_phone: Optional[str] = Field(default=None, alias="mobilePhone", max_length=30)
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    address: Optional[PartyAddress] = None


class PartLine(_CallerModel):
    name: str = Field(min_length=1)
    quantity: Decimal
    selling_price: Decimal = Field(alias="sellingPrice")
    total_amount: Decimal = Field(alias="totalAmount")
    tax_code: Optional[str] = Field(default=None, alias="taxCode")


class LaborLine(_CallerModel):
    name: Optional[str] = None
    hours: Decimal = Decimal("1")
    rate: Optional[Decimal] = None
    total_amount: Decimal = Field(alias="totalAmount")
    tax_code: Optional[str] = Field(default=None, alias="taxCode")


class ChargeLine(_CallerModel):
    name: Optional[str] = None
    amount: Optional[Decimal] = None
    total_amount: Decimal = Field(alias="totalAmount")
    tax_code: Optional[str] = Field(default=None, alias="taxCode")


class InvoiceLineGroup(_CallerModel):
    parts: list[PartLine] = Field(default_factory=list)
    labors: list[LaborLine] = Field(
        default_factory=list,
        validation_alias=AliasChoices("labors", "labor", "labours"),
    )
    misc_charges: list[ChargeLine] = Field(
        default_factory=list,
        validation_alias=AliasChoices("miscCharges", "misc_charges"),
    )
    disposal_fees: list[ChargeLine] = Field(
        default_factory=list,
        validation_alias=AliasChoices("disposalFees", "disposalTaxes", "disposal_fees"),
    )


class DeclaredTax(_CallerModel):
    name: str = Field(min_length=1)
    code: Optional[str] = None
    tax: float = Field(allow_inf_nan=False, description="Declared rate in percent, e.g. 5.0 for 5 %.")
    tax_amount: Optional[Decimal] = Field(default=None, alias="taxAmount")


class InvoiceRequest(_CallerModel):
    work_order_id: str = Field(alias="workOrderId", min_length=1, max_length=128)
    to: BilledParty
    lines: list[InvoiceLineGroup] = Field(min_length=1)
    parts_tax: list[DeclaredTax] = Field(default_factory=list, alias="partsTax")
    labor_tax_same_as_part: bool = Field(default=True, alias="laborTaxSameAsPart")
    labor_tax_percentage: Optional[float] = Field(
        default=None,
        alias="laborTaxPercentage",
        allow_inf_nan=False,
    )
    labor_tax: Optional[Decimal] = Field(default=None, alias="laborTax")
    discount_percentage: Optional[float] = Field(
        default=None,
        alias="discountPercentage",
        allow_inf_nan=False,
    )
    discount_amount: Optional[Decimal] = Field(default=None, alias="discountAmount")
    invoice_date: date = Field(alias="invoiceDate")
    due_date: Optional[date] = Field(default=None, alias="dueDate")
    invoice_number: Optional[str] = Field(default=None, alias="invoiceNumber", max_length=21)
    po_number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("poNumber", "PONumber", "po_number"),
    )
    final_total: Decimal = Field(alias="finalTotal")
    prior_invoice_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("qbInvoiceId", "priorInvoiceId", "prior_invoice_id"),
    )


class InvoiceBatchRequest(_CallerModel):
    company_config_code: str = Field(alias="qbCompanyConfigCode", min_length=1, max_length=64)
    invoices: list[InvoiceRequest] = Field(alias="invoiceList", min_length=1)


class TaxMismatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    code: Optional[str] = None
    tax: str
    tax_in_qb: Optional[str] = Field(default=None, alias="taxInQB")
    description: str


class InvoiceResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    work_order_id: str = Field(alias="workOrderId")
    status: str
    message: str
    invoice_id: Optional[str] = Field(default=None, alias="invoiceId")
    doc_number: Optional[str] = Field(default=None, alias="docNumber")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    tax_details: Optional[list[TaxMismatch]] = Field(default=None, alias="taxDetails")


class InvoiceBatchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = "Invoices processed"
    company_config_code: str = Field(alias="qbCompanyConfigCode")
    invoices: list[InvoiceResult] = Field(default_factory=list, alias="invoicesResponse")


class CatalogBootstrapResponse(BaseModel):
    company_config_code: str
    realm_id: str
    items: dict[str, str]
    tax_codes: dict[str, str]


class CredentialRefreshResponse(BaseModel):
    realm_id: str
    environment: str
    access_expires_at: Optional[datetime]
    refresh_counter: int
