from __future__ import annotations

import logging
from typing import Any, Optional

from invoice_bridge.schemas.invoice import BilledParty, PartyAddress
from invoice_bridge.services.qbo_client import LedgerSession, QuickBooksApiError, QuickBooksService

logger = logging.getLogger("invoice_bridge.services.customers")


def build_address(address: Optional[PartyAddress]) -> Optional[dict[str, Any]]:
    if address is None:
        return None
    fields = {
        "Line1": address.line1,
        "Line2": address.line2,
        "City": address.city,
        "CountrySubDivisionCode": address.state,
        "PostalCode": address.zipcode,
        "Country": address.country,
    }
    payload = {key: value for key, value in fields.items() if value}
    return payload or None


class CustomerResolver:
    """Finds the billed party by exact display name, creating it on a miss.

    Lookups are never cached: customers can be created or renamed between invoices.
    """

    def __init__(self, qbo_service: QuickBooksService, ledger: LedgerSession) -> None:
        self.qbo_service = qbo_service
        self.ledger = ledger

    async def resolve_or_create(self, party: BilledParty) -> dict[str, Any]:
        existing = await self.find(party.name)
        if existing is not None:
            return existing
        return await self.create(party)

    async def find(self, display_name: str) -> Optional[dict[str, Any]]:
        escaped = display_name.replace("'", "''")
        records = await self.qbo_service.query(
            self.ledger,
            entity="Customer",
            select_sql=f"select * from Customer where DisplayName = '{escaped}'",
            startposition=1,
            maxresults=1,
        )
        return records[0] if records else None

    async def create(self, party: BilledParty) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "DisplayName": party.name,
            "GivenName": party.first_name or "",
            "FamilyName": party.last_name or "",
        }
        if party.email:
            payload["PrimaryEmailAddr"] = {"Address": party.email}
        if party.mobile_phone:
            payload["PrimaryPhone"] = {"FreeFormNumber": party.mobile_phone}
        address = build_address(party.address)
        if address:
            payload["BillAddr"] = address

        try:
            data = await self.qbo_service.post(
                self.ledger,
                entity="Customer",
                resource="customer",
                payload=payload,
            )
        except QuickBooksApiError as exc:
            if exc.status_code == 400 and exc.fault_code == QuickBooksService.DUPLICATE_NAME_FAULT:
                # Created concurrently (or inactive under the same name); take the live record.
                existing = await self.find(party.name)
                if existing is not None:
                    return existing
            raise
        created = data.get("Customer")
        if not created or created.get("Id") is None:
            raise QuickBooksApiError(f"QuickBooks returned no customer for '{party.name}'")
        logger.info(
            "customer_created",
            extra={"customer_id": str(created["Id"]), "realm_id": self.ledger.realm_id},
        )
        return created
