from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Optional

from invoice_bridge.core.config import Settings
from invoice_bridge.core.logging import realm_id_ctx, request_id_ctx
from invoice_bridge.services.errors import CatalogResolutionError
from invoice_bridge.services.qbo_client import LedgerSession, QuickBooksApiError, QuickBooksService

ZERO_RATE_TAX_CODE = "FX"
ZERO_RATE_NON_TAX_CODE = "FXN"
ZERO_RATE_TAX_CODES = (ZERO_RATE_TAX_CODE, ZERO_RATE_NON_TAX_CODE)

SERVICE_INCOME_ACCOUNT = "Service Income"
PARTS_AND_MATERIALS_ACCOUNT = "Parts and Materials"

PARTS_ITEM = "Parts"
LABORS_ITEM = "Labors"
MISC_CHARGES_ITEM = "Miscellaneous Charges"
DISPOSAL_FEE_ITEM = "Disposal Fee"
LABOR_TAX_ITEM = "Labor Tax"


@dataclass(frozen=True)
class IncomeAccount:
    name: str
    account_sub_type: str
    account_type: str = "Income"


@dataclass(frozen=True)
class StructuralItem:
    name: str
    income_account: IncomeAccount
    taxable: bool

    @property
    def tax_code(self) -> str:
        return ZERO_RATE_TAX_CODE if self.taxable else ZERO_RATE_NON_TAX_CODE


_SERVICE_INCOME = IncomeAccount(SERVICE_INCOME_ACCOUNT, "ServiceFeeIncome")
_PARTS_INCOME = IncomeAccount(PARTS_AND_MATERIALS_ACCOUNT, "SalesOfProductIncome")

STRUCTURAL_ITEMS: dict[str, StructuralItem] = {
    item.name: item
    for item in (
        StructuralItem(PARTS_ITEM, _PARTS_INCOME, taxable=True),
        StructuralItem(LABORS_ITEM, _SERVICE_INCOME, taxable=True),
        StructuralItem(MISC_CHARGES_ITEM, _SERVICE_INCOME, taxable=True),
        StructuralItem(DISPOSAL_FEE_ITEM, _SERVICE_INCOME, taxable=False),
        StructuralItem(LABOR_TAX_ITEM, _SERVICE_INCOME, taxable=False),
    )
}


class CatalogResolver:
    """Resolves catalog names to ledger ids for one batch.

    Every creation follows a lookup miss. When the ledger rejects a creation as a
    duplicate name (another writer won the race) the name is looked up again.
    """

    def __init__(
        self,
        qbo_service: QuickBooksService,
        ledger: LedgerSession,
        *,
        settings: Settings | None = None,
        tax_agency_name: Optional[str] = None,
    ) -> None:
        self.qbo_service = qbo_service
        self.ledger = ledger
        self.settings = settings or qbo_service.settings
        self.tax_agency_name = tax_agency_name
        self.logger = qbo_service.logger
        self._cache: dict[str, dict[str, str]] = defaultdict(dict)

    async def resolve_item_id(self, name: str) -> str:
        item_id = await self._find_id("Item", name, name_field="Name")
        if item_id is None:
            raise CatalogResolutionError("Item", name)
        return item_id

    async def resolve_term_id(self, name: str) -> str:
        term_id = await self._find_id("Term", name, name_field="Name")
        if term_id is None:
            raise CatalogResolutionError("Term", name)
        return term_id

    async def resolve_tax_agency_id(self, name: Optional[str] = None) -> str:
        name = name or self.tax_agency_name
        if not name:
            raise CatalogResolutionError("TaxAgency", "", "No tax agency configured for company")
        agency_id = await self._find_id("TaxAgency", name, name_field="DisplayName")
        if agency_id is None:
            raise CatalogResolutionError("TaxAgency", name)
        return agency_id

    async def resolve_tax_code_id(self, name: str) -> str:
        tax_code_id = await self._find_id("TaxCode", name, name_field="Name")
        if tax_code_id is not None:
            return tax_code_id
        if name not in ZERO_RATE_TAX_CODES:
            raise CatalogResolutionError("TaxCode", name)
        return await self._create_zero_rate_tax_code(name)

    async def resolve_account_id(
        self,
        name: str,
        *,
        account_type: str = "Income",
        account_sub_type: Optional[str] = None,
    ) -> str:
        account_id = await self._find_id("Account", name, name_field="Name")
        if account_id is not None:
            return account_id
        payload: dict[str, Any] = {"Name": name, "AccountType": account_type}
        if account_sub_type:
            payload["AccountSubType"] = account_sub_type
        return await self._create("Account", "account", name, payload, name_field="Name")

    async def ensure_root_category(self) -> str:
        name = self.settings.catalog_root_category
        category_id = await self._find_id("Item", name, name_field="Name")
        if category_id is not None:
            return category_id
        return await self._create(
            "Item",
            "item",
            name,
            {"Name": name, "Type": "Category"},
            name_field="Name",
        )

    async def ensure_structural_item(self, name: str, *, per_line_tax: bool = True) -> str:
        item_id = await self._find_id("Item", name, name_field="Name")
        if item_id is not None:
            return item_id
        spec = STRUCTURAL_ITEMS.get(name)
        if spec is None:
            raise CatalogResolutionError("Item", name)

        parent_id = await self.ensure_root_category()
        account_id = await self.resolve_account_id(
            spec.income_account.name,
            account_type=spec.income_account.account_type,
            account_sub_type=spec.income_account.account_sub_type,
        )
        payload: dict[str, Any] = {
            "Name": spec.name,
            "Type": "Service",
            "SubItem": True,
            "ParentRef": {"value": parent_id},
            "IncomeAccountRef": {"value": account_id},
        }
        if per_line_tax:
            payload["SalesTaxCodeRef"] = {"value": await self.resolve_tax_code_id(spec.tax_code)}
        else:
            payload["Taxable"] = spec.taxable
        return await self._create("Item", "item", name, payload, name_field="Name")

    async def bootstrap(self, *, per_line_tax: bool) -> tuple[dict[str, str], dict[str, str]]:
        tax_codes: dict[str, str] = {}
        if per_line_tax:
            for code in ZERO_RATE_TAX_CODES:
                tax_codes[code] = await self.resolve_tax_code_id(code)
        items = {
            name: await self.ensure_structural_item(name, per_line_tax=per_line_tax)
            for name in STRUCTURAL_ITEMS
        }
        return items, tax_codes

    async def _create_zero_rate_tax_code(self, name: str) -> str:
        agency_id = await self.resolve_tax_agency_id()
        payload = {
            "TaxCode": name,
            "TaxRateDetails": [
                {
                    "TaxRateName": name,
                    "RateValue": "0",
                    "TaxAgencyId": agency_id,
                    "TaxApplicableOn": "Sales",
                }
            ],
        }
        try:
            data = await self.qbo_service.create_tax_code(self.ledger, payload)
        except QuickBooksApiError as exc:
            return await self._recover_duplicate(exc, "TaxCode", name, name_field="Name")
        tax_code_id = data.get("TaxCodeId")
        if tax_code_id is None:
            raise CatalogResolutionError("TaxCode", name, "QuickBooks returned no id for tax code")
        self._log_created("TaxCode", name, str(tax_code_id))
        self._cache["TaxCode"][name] = str(tax_code_id)
        return str(tax_code_id)

    async def _create(
        self,
        entity: str,
        resource: str,
        name: str,
        payload: dict[str, Any],
        *,
        name_field: str,
    ) -> str:
        try:
            data = await self.qbo_service.post(
                self.ledger,
                entity=entity,
                resource=resource,
                payload=payload,
            )
        except QuickBooksApiError as exc:
            return await self._recover_duplicate(exc, entity, name, name_field=name_field)
        record = data.get(entity) or {}
        if record.get("Id") is None:
            raise CatalogResolutionError(entity, name, f"QuickBooks returned no id for {entity} '{name}'")
        created_id = str(record["Id"])
        self._log_created(entity, name, created_id)
        self._cache[entity][name] = created_id
        return created_id

    async def _recover_duplicate(
        self,
        exc: QuickBooksApiError,
        entity: str,
        name: str,
        *,
        name_field: str,
    ) -> str:
        if exc.status_code != 400 or exc.fault_code != QuickBooksService.DUPLICATE_NAME_FAULT:
            raise exc
        self.logger.warning(
            "catalog_duplicate_detected",
            extra={
                "entity": entity,
                "catalog_name": name,
                "request_id": request_id_ctx.get(),
                "realm_id": realm_id_ctx.get() or self.ledger.realm_id,
            },
        )
        self._cache[entity].pop(name, None)
        existing_id = await self._find_id(entity, name, name_field=name_field)
        if existing_id is None:
            raise exc
        return existing_id

    async def _find_id(self, entity: str, name: str, *, name_field: str) -> Optional[str]:
        cached = self._cache[entity].get(name)
        if cached is not None:
            return cached
        records = await self.qbo_service.query(
            self.ledger,
            entity=entity,
            select_sql=f"select * from {entity} where {name_field} = '{self._escape(name)}'",
            startposition=1,
            maxresults=1,
        )
        if not records or records[0].get("Id") is None:
            return None
        found_id = str(records[0]["Id"])
        self._cache[entity][name] = found_id
        return found_id

    def _log_created(self, entity: str, name: str, created_id: str) -> None:
        self.logger.info(
            "catalog_entry_created",
            extra={
                "entity": entity,
                "catalog_name": name,
                "id": created_id,
                "request_id": request_id_ctx.get(),
                "realm_id": self.ledger.realm_id,
            },
        )

    def _escape(self, value: str) -> str:
        return value.replace("'", "''")
