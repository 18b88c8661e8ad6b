from __future__ import annotations

import asyncio
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import pytest
from cryptography.fernet import Fernet

os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode("utf-8"))
os.environ.setdefault("QBO_CLIENT_ID", "client-id")
os.environ.setdefault("QBO_CLIENT_SECRET", "client-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("RETRY_MAX_ATTEMPTS", "1")

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402

from invoice_bridge.core.config import Settings, get_settings  # noqa: E402
from invoice_bridge.core.security import seal_refresh_token  # noqa: E402
from invoice_bridge.db.models import CompanyConfig, LedgerConnection  # noqa: E402
from invoice_bridge.db.session import build_session_factory, create_schema  # noqa: E402
from invoice_bridge.schemas.invoice import InvoiceRequest  # noqa: E402
from invoice_bridge.services.qbo_client import (  # noqa: E402
    LedgerSession,
    QuickBooksApiError,
    QuickBooksService,
    TokenBundle,
)

T = TypeVar("T")

_WHERE = re.compile(r"where\s+(\w+)\s*=\s*'((?:[^']|'')*)'", re.IGNORECASE)
_FROM = re.compile(r"from\s+(\w+)", re.IGNORECASE)


class FakeLedger(QuickBooksService):
    """In-memory QuickBooks company that records every call made against it."""

    def __init__(self, settings: Settings, *, country: str = "CA") -> None:
        super().__init__(settings)
        self.records: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, str, Any]] = []
        self.company_info: dict[str, Any] = {"CompanyName": "Fleet Shop", "Country": country}
        self.failing_work_orders: set[str] = set()
        self.failing_deletes = False
        self.refresh_error: Optional[Exception] = None
        self.refresh_delay = 0.0
        self._next_id = 100

    def seed(self, entity: str, **record: Any) -> dict[str, Any]:
        record.setdefault("Id", self._new_id())
        self.records.setdefault(entity, []).append(record)
        return record

    def id_of(self, entity: str, name: str, field: str = "Name") -> Optional[str]:
        for record in self.records.get(entity, []):
            if record.get(field) == name:
                return str(record["Id"])
        return None

    def calls_of(self, kind: str, entity: Optional[str] = None) -> list[tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] == kind and (entity is None or call[1] == entity)]

    async def refresh_tokens(self, *, refresh_token: str, realm_id: str) -> TokenBundle:
        self.calls.append(("refresh", "OAuth", refresh_token))
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        now = datetime.now(timezone.utc)
        return TokenBundle(
            access_token=f"access-{len(self.calls_of('refresh'))}",
            refresh_token=f"refresh-{len(self.calls_of('refresh'))}",
            access_expires_at=now + timedelta(hours=1),
            refresh_expires_at=now + timedelta(days=100),
            token_type="bearer",
        )

    async def query(
        self,
        ledger: LedgerSession,
        *,
        entity: str,
        select_sql: str,
        startposition: int | None = None,
        maxresults: int | None = None,
    ) -> list[dict[str, Any]]:
        entity_name = _FROM.search(select_sql).group(1)
        match = _WHERE.search(select_sql)
        self.calls.append(("query", entity_name, match.group(2) if match else None))
        records = list(self.records.get(entity_name, []))
        if match:
            field, value = match.group(1), match.group(2).replace("''", "'")
            records = [record for record in records if str(record.get(field)) == value]
        if maxresults:
            records = records[:maxresults]
        return [dict(record) for record in records]

    async def post(
        self,
        ledger: LedgerSession,
        *,
        entity: str,
        resource: str,
        payload: dict[str, Any],
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        if params and params.get("operation") == "delete":
            self.calls.append(("delete", entity, payload["Id"]))
            if self.failing_deletes:
                raise QuickBooksApiError("QBO POST error for Invoice: 500", status_code=500, body="{}")
            self.records[entity] = [
                record for record in self.records.get(entity, []) if record["Id"] != payload["Id"]
            ]
            return {entity: {"Id": payload["Id"], "status": "Deleted"}}

        if resource == "taxservice/taxcode":
            self.calls.append(("create", "TaxCode", payload["TaxCode"]))
            record = self.seed("TaxCode", Name=payload["TaxCode"])
            return {"TaxCode": payload["TaxCode"], "TaxCodeId": record["Id"]}

        name = payload.get("Name") or payload.get("DisplayName") or payload.get("PrivateNote")
        self.calls.append(("create", entity, name))
        if entity == "Invoice":
            work_order = payload.get("PrivateNote", "").replace("Work order ", "")
            if work_order in self.failing_work_orders:
                raise QuickBooksApiError(
                    "QBO POST error for Invoice: 400 Business Validation Error",
                    status_code=400,
                    body='{"Fault": {"Error": [{"Message": "Business Validation Error", "code": "6000"}]}}',
                )
            record = self.seed(
                entity,
                SyncToken="0",
                DocNumber=payload.get("DocNumber") or str(1000 + len(self.calls_of("create", "Invoice"))),
                **{key: value for key, value in payload.items() if key != "DocNumber"},
            )
        else:
            record = self.seed(entity, **payload)
        return {entity: dict(record)}

    async def fetch_company_info(self, ledger: LedgerSession) -> dict[str, Any]:
        self.calls.append(("companyinfo", "CompanyInfo", ledger.realm_id))
        return dict(self.company_info)

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)


@pytest.fixture()
def settings() -> Settings:
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture()
def fake_ledger(settings: Settings) -> FakeLedger:
    ledger = FakeLedger(settings)
    seed_standard_catalog(ledger)
    return ledger


@pytest.fixture()
def ledger_session() -> LedgerSession:
    return LedgerSession(
        realm_id="9130-realm",
        access_token="access-token",
        environment="sandbox",
        minor_version="65",
    )


@pytest.fixture()
def run_db() -> Callable[[Callable[[AsyncSession], Awaitable[T]]], T]:
    """Run a coroutine against a fresh in-memory database inside one event loop."""

    def _run(scenario: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _runner() -> T:
            engine = create_async_engine("sqlite+aiosqlite://")
            await create_schema(engine)
            factory = build_session_factory(engine)
            try:
                async with factory() as session:
                    return await scenario(session)
            finally:
                await engine.dispose()

        return asyncio.run(_runner())

    return _run


def seed_standard_catalog(ledger: FakeLedger) -> None:
    ledger.seed("Term", Name="Net 30")
    ledger.seed("TaxAgency", DisplayName="Canada Revenue Agency")
    ledger.seed("TaxRate", Name="ST", RateValue=5, Active=True)
    ledger.seed("TaxRate", Name="Old GST", RateValue=7, Active=False)
    ledger.seed("TaxCode", Name="ST")


async def seed_connection(
    session: AsyncSession,
    settings: Settings,
    *,
    expires_in: timedelta = timedelta(hours=1),
    access_token: Optional[str] = "access-token",
) -> LedgerConnection:
    credential = LedgerConnection(
        realm_id="9130-realm",
        environment="sandbox",
        refresh_token_enc=seal_refresh_token(settings.fernet_key, "refresh-0"),
        access_token=access_token,
        access_expires_at=datetime.now(timezone.utc) + expires_in,
        minor_version="65",
        refresh_counter=0,
    )
    session.add(credential)
    await session.commit()
    return credential


async def seed_company(
    session: AsyncSession,
    *,
    code: str = "ACME",
    terms: Optional[str] = "Net 30",
    tax_agency_name: Optional[str] = "Canada Revenue Agency",
    keep_invoice_number: bool = False,
) -> CompanyConfig:
    config = CompanyConfig(
        code=code,
        name="Acme Fleet",
        terms=terms,
        tax_agency_name=tax_agency_name,
        keep_invoice_number=keep_invoice_number,
    )
    session.add(config)
    await session.commit()
    return config


def make_invoice(
    work_order_id: str = "WO-1",
    *,
    tax_rate: float = 5.0,
    prior_invoice_id: Optional[str] = None,
    **overrides: Any,
) -> InvoiceRequest:
    data: dict[str, Any] = {
        "workOrderId": work_order_id,
        "to": {
            "name": "Jane Fleet",
            "email": "jane@example.com",
            "mobilePhone": "555-0100",
            "firstName": "Jane",
            "address": {
                "line1": "1 Main St",
                "city": "Toronto",
                "state": "ON",
                "zipcode": "M5V 1A1",
                "country": "CA",
            },
        },
        "lines": [
            {
                "parts": [
                    {
                        "name": "Brake pad",
                        "quantity": 2,
                        "sellingPrice": 10.00,
                        "totalAmount": 20.00,
                        "taxCode": "ST",
                    }
                ]
            }
        ],
        "partsTax": [{"name": "ST", "code": "ST", "tax": tax_rate, "taxAmount": 1.00}],
        "invoiceDate": "2026-10-01",
        "finalTotal": 21.00,
    }
    if prior_invoice_id is not None:
        data["qbInvoiceId"] = prior_invoice_id
    data.update(overrides)
    return InvoiceRequest.model_validate(data)
