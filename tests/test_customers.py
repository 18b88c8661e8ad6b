from __future__ import annotations

import asyncio

from conftest import FakeLedger

from invoice_bridge.schemas.invoice import BilledParty
from invoice_bridge.services.customers import CustomerResolver, build_address
from invoice_bridge.services.qbo_client import QuickBooksApiError


def _party(**overrides) -> BilledParty:
    data = {
        "name": "O'Reilly Towing",
        "email": "dispatch@oreilly-towing.com",
        "mobilePhone": "555-0199",
        "address": {"line1": "9 Dock Rd", "city": "Halifax", "state": "NS", "postalCode": "B3H 1A1", "country": "CA"},
    }
    data.update(overrides)
    return BilledParty.model_validate(data)


def test_existing_customer_is_reused(fake_ledger, ledger_session):
    existing = fake_ledger.seed("Customer", DisplayName="O'Reilly Towing")
    resolver = CustomerResolver(fake_ledger, ledger_session)

    customer = asyncio.run(resolver.resolve_or_create(_party()))

    assert customer["Id"] == existing["Id"]
    assert fake_ledger.calls_of("create", "Customer") == []


def test_missing_customer_is_created_with_contact_details(fake_ledger, ledger_session):
    resolver = CustomerResolver(fake_ledger, ledger_session)

    customer = asyncio.run(resolver.resolve_or_create(_party()))

    assert customer["DisplayName"] == "O'Reilly Towing"
    assert customer["GivenName"] == ""
    assert customer["FamilyName"] == ""
    assert customer["PrimaryEmailAddr"] == {"Address": "dispatch@oreilly-towing.com"}
    assert customer["PrimaryPhone"] == {"FreeFormNumber": "555-0199"}
    assert customer["BillAddr"]["PostalCode"] == "B3H 1A1"
    assert customer["BillAddr"]["CountrySubDivisionCode"] == "NS"


def test_lookup_is_repeated_for_every_invoice(fake_ledger, ledger_session):
    resolver = CustomerResolver(fake_ledger, ledger_session)

    async def scenario():
        await resolver.resolve_or_create(_party())
        await resolver.resolve_or_create(_party())

    asyncio.run(scenario())

    assert len(fake_ledger.calls_of("query", "Customer")) == 2
    assert len(fake_ledger.calls_of("create", "Customer")) == 1


def test_duplicate_name_on_create_returns_live_customer(settings, ledger_session):
    class RacingLedger(FakeLedger):
        async def post(self, ledger, *, entity, resource, payload, params=None):
            self.seed("Customer", DisplayName=payload["DisplayName"])
            raise QuickBooksApiError(
                "QBO POST error for Customer: 400",
                status_code=400,
                body='{"Fault": {"Error": [{"code": "6240"}]}}',
            )

    ledger = RacingLedger(settings)

    customer = asyncio.run(CustomerResolver(ledger, ledger_session).resolve_or_create(_party()))

    assert customer["Id"] == ledger.id_of("Customer", "O'Reilly Towing", "DisplayName")


def test_build_address_drops_empty_fields():
    assert build_address(None) is None
    assert build_address(_party(address={"city": "Halifax"}).address) == {"City": "Halifax"}
    assert build_address(_party(address={}).address) is None
