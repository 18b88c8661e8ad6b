from __future__ import annotations

from datetime import datetime, timezone

import pytest
from conftest import FakeLedger, seed_standard_catalog
from fastapi.testclient import TestClient

from invoice_bridge.db import repo
from invoice_bridge.db.models import CompanyConfig, InvoiceStatus, LedgerConnection
from invoice_bridge.db.session import get_session
from invoice_bridge.main import create_app
from invoice_bridge.schemas.invoice import InvoiceBatchResponse, InvoiceResult
from invoice_bridge.services.errors import ConfigurationError, RemoteSubmissionError, TokenRefreshError
from invoice_bridge.services.qbo_client import LedgerSession
from invoice_bridge.services.reconciliation import get_reconciliation_engine
from invoice_bridge.services.token_manager import get_token_manager

HEADERS = {"X-API-Key": "test-api-key"}

BATCH = {
    "qbCompanyConfigCode": "ACME",
    "invoiceList": [
        {
            "workOrderId": "WO-1",
            "to": {"name": "Jane Fleet"},
            "lines": [{"parts": [{"name": "Filter", "quantity": 1, "sellingPrice": 12, "totalAmount": 12}]}],
            "invoiceDate": "2026-10-01",
            "finalTotal": 12,
        }
    ],
}


class StubEngine:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    async def process_batch(self, session, company_config_code, invoices):
        self.calls.append((company_config_code, [invoice.work_order_id for invoice in invoices]))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


async def _no_session():
    yield None


def _provide(value):
    def dependency():
        return value

    return dependency


@pytest.fixture()
def make_client(settings):
    def _make(**overrides) -> TestClient:
        app = create_app()
        app.dependency_overrides[get_session] = _no_session
        targets = {"engine": get_reconciliation_engine, "tokens": get_token_manager}
        for dependency, value in overrides.items():
            app.dependency_overrides[targets[dependency]] = _provide(value)
        return TestClient(app)

    return _make


def test_health_is_public(make_client):
    response = make_client().get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_batch_requires_api_key(make_client):
    response = make_client(engine=StubEngine(None)).post("/invoices/batch", json=BATCH)

    assert response.status_code == 401
    body = response.json()
    assert body["message"] == "Invalid or missing API key"
    assert body["correlation_id"] == response.headers["X-Request-Id"]


def test_batch_returns_per_invoice_results(make_client):
    engine = StubEngine(
        InvoiceBatchResponse(
            company_config_code="ACME",
            invoices=[
                InvoiceResult(
                    work_order_id="WO-1",
                    status=InvoiceStatus.CREATED,
                    message="Invoice created successfully.",
                    invoice_id="145",
                    doc_number="1001",
                )
            ],
        )
    )

    response = make_client(engine=engine).post("/invoices/batch", json=BATCH, headers=HEADERS)

    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Invoices processed"
    assert body["qbCompanyConfigCode"] == "ACME"
    assert body["invoicesResponse"][0]["invoiceId"] == "145"
    assert engine.calls == [("ACME", ["WO-1"])]


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (ConfigurationError("Company config 'ACME' not found"), 422),
        (TokenRefreshError("invalid_grant"), 502),
        (RemoteSubmissionError("Failed to load company tax setup", status_code=503, body="down"), 502),
    ],
)
def test_batch_level_errors_map_to_http(make_client, error, status_code):
    response = make_client(engine=StubEngine(error)).post("/invoices/batch", json=BATCH, headers=HEADERS)

    assert response.status_code == status_code
    body = response.json()
    assert set(body) == {"code", "message", "details", "correlation_id"}
    assert body["code"] == status_code


def test_invalid_batch_is_a_validation_error(make_client):
    response = make_client(engine=StubEngine(None)).post(
        "/invoices/batch",
        json={"qbCompanyConfigCode": "ACME"},
        headers=HEADERS,
    )

    assert response.status_code == 422
    assert response.json()["message"] == "Validation error"


class StubTokens:
    def __init__(self, settings, qbo_service=None):
        self.settings = settings
        self.qbo_service = qbo_service

    async def rotate(self, session):
        return LedgerConnection(
            realm_id="9130-realm",
            environment="sandbox",
            refresh_token_enc="sealed",
            access_token="fresh",
            access_expires_at=datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc),
            refresh_counter=4,
        )

    async def open_session(self, session):
        return LedgerSession(realm_id="9130-realm", access_token="t", environment="sandbox", minor_version="65")


def test_credentials_refresh_endpoint(make_client, settings):
    response = make_client(tokens=StubTokens(settings)).post("/ledger/credentials/refresh", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["realm_id"] == "9130-realm"
    assert body["refresh_counter"] == 4


def test_catalog_bootstrap_endpoint(make_client, settings, monkeypatch):
    ledger = FakeLedger(settings)
    seed_standard_catalog(ledger)

    async def fake_config(session, code):
        return CompanyConfig(code=code, terms="Net 30", tax_agency_name="Canada Revenue Agency")

    monkeypatch.setattr(repo, "get_company_config", fake_config)

    response = make_client(tokens=StubTokens(settings, ledger)).post(
        "/ledger/catalog/ACME/bootstrap",
        headers=HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body["items"]) == {"Parts", "Labors", "Miscellaneous Charges", "Disposal Fee", "Labor Tax"}
    assert set(body["tax_codes"]) == {"FX", "FXN"}


def test_catalog_bootstrap_unknown_company(make_client, settings, monkeypatch):
    async def no_config(session, code):
        return None

    monkeypatch.setattr(repo, "get_company_config", no_config)

    response = make_client(tokens=StubTokens(settings, FakeLedger(settings))).post(
        "/ledger/catalog/NOPE/bootstrap",
        headers=HEADERS,
    )

    assert response.status_code == 422
    assert "NOPE" in response.json()["message"]
