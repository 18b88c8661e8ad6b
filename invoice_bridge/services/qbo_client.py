from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from time import perf_counter
from typing import Any, Optional

import httpx

from invoice_bridge.core.config import Settings, get_settings
from invoice_bridge.core.http import (
    get_async_client,
    request_once,
    request_with_retry_and_backoff,
)


class QuickBooksOAuthError(RuntimeError):
    pass


class QuickBooksApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @property
    def fault_code(self) -> Optional[str]:
        if not self.body:
            return None
        try:
            payload = json.loads(self.body)
        except json.JSONDecodeError:
            return None
        fault = payload.get("Fault") or payload.get("fault") or {}
        errors = fault.get("Error") or fault.get("error") or []
        if isinstance(errors, dict):
            errors = [errors]
        for error in errors:
            code = error.get("code")
            if code:
                return str(code)
        return None


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: Optional[datetime]
    token_type: str


@dataclass(frozen=True)
class LedgerSession:
    """Authorized handle for one batch; never mutated once issued."""

    realm_id: str
    access_token: str
    environment: str
    minor_version: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QuickBooksService:
    TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com"
    PROD_API_BASE = "https://quickbooks.api.intuit.com"
    DUPLICATE_NAME_FAULT = "6240"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport
        self.logger = logging.getLogger("invoice_bridge.services.qbo")

    async def refresh_tokens(self, *, refresh_token: str, realm_id: str) -> TokenBundle:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        try:
            async with get_async_client(self.settings, transport=self.transport) as client:
                response = await request_once(
                    client,
                    "POST",
                    self.TOKEN_URL,
                    data=data,
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            raise QuickBooksOAuthError(f"Token endpoint unreachable: {exc}") from exc
        if response.status_code >= 400:
            self.logger.error(
                "oauth_token_error",
                extra={
                    "status": response.status_code,
                    "body": response.text,
                    "realm_id": realm_id,
                },
            )
            raise QuickBooksOAuthError(
                f"Failed to refresh tokens from Intuit (status {response.status_code}): {response.text}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise QuickBooksOAuthError("Token endpoint answered with a non-JSON body") from exc
        return self._parse_token_response(payload, realm_id)

    async def query(
        self,
        ledger: LedgerSession,
        *,
        entity: str,
        select_sql: str,
        startposition: int | None = None,
        maxresults: int | None = None,
    ) -> list[dict[str, Any]]:
        statement = select_sql.strip()
        if startposition:
            statement = f"{statement} STARTPOSITION {startposition}"
        if maxresults:
            statement = f"{statement} MAXRESULTS {maxresults}"
        payload = await self._send(
            ledger,
            method="GET",
            entity=entity,
            url=self._build_entity_url(ledger, "query"),
            params={"query": statement, "minorversion": ledger.minor_version},
        )
        records = (payload.get("QueryResponse") or {}).get(entity) or []
        if isinstance(records, dict):
            records = [records]
        return records

    async def post(
        self,
        ledger: LedgerSession,
        *,
        entity: str,
        resource: str,
        payload: dict[str, Any],
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        query_params = {"minorversion": ledger.minor_version}
        if params:
            query_params.update(params)
        return await self._send(
            ledger,
            method="POST",
            entity=entity,
            url=self._build_entity_url(ledger, resource),
            params=query_params,
            json=payload,
        )

    async def fetch_company_info(self, ledger: LedgerSession) -> dict[str, Any]:
        payload = await self._send(
            ledger,
            method="GET",
            entity="CompanyInfo",
            url=self._build_entity_url(ledger, f"companyinfo/{ledger.realm_id}"),
            params={"minorversion": ledger.minor_version},
        )
        return payload.get("CompanyInfo") or {}

    async def find_tax_rates(self, ledger: LedgerSession) -> list[dict[str, Any]]:
        return await self.query(
            ledger,
            entity="TaxRate",
            select_sql="select * from TaxRate",
            startposition=1,
            maxresults=1000,
        )

    async def find_invoice(self, ledger: LedgerSession, invoice_id: str) -> Optional[dict[str, Any]]:
        records = await self.query(
            ledger,
            entity="Invoice",
            select_sql=f"select * from Invoice where Id = '{self._escape(invoice_id)}'",
            startposition=1,
            maxresults=1,
        )
        return records[0] if records else None

    async def create_invoice(self, ledger: LedgerSession, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self.post(ledger, entity="Invoice", resource="invoice", payload=payload)
        invoice = data.get("Invoice")
        if not invoice or invoice.get("Id") is None:
            raise QuickBooksApiError("QuickBooks returned no invoice for the create request")
        return invoice

    async def delete_invoice(
        self,
        ledger: LedgerSession,
        *,
        invoice_id: str,
        sync_token: str,
    ) -> dict[str, Any]:
        return await self.post(
            ledger,
            entity="Invoice",
            resource="invoice",
            payload={"Id": invoice_id, "SyncToken": sync_token},
            params={"operation": "delete"},
        )

    async def create_tax_code(self, ledger: LedgerSession, payload: dict[str, Any]) -> dict[str, Any]:
        # The tax service answers with a bare TaxService object, not an entity envelope.
        return await self.post(
            ledger,
            entity="TaxService",
            resource="taxservice/taxcode",
            payload=payload,
        )

    async def _send(
        self,
        ledger: LedgerSession,
        *,
        method: str,
        entity: str,
        url: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {ledger.access_token}",
            "Accept": "application/json",
        }
        if method != "GET":
            headers["Content-Type"] = "application/json"
        start = perf_counter()
        try:
            async with get_async_client(self.settings, transport=self.transport) as client:
                if method == "GET":
                    response = await request_with_retry_and_backoff(
                        client,
                        method,
                        url,
                        headers=headers,
                        settings=self.settings,
                        **kwargs,
                    )
                else:
                    response = await request_once(client, method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            self.logger.error(
                "qbo_transport_failed",
                extra={
                    "entity": entity,
                    "method": method,
                    "realm_id": ledger.realm_id,
                    "error": str(exc),
                },
            )
            raise QuickBooksApiError(f"QBO transport error for {entity}: {exc}") from exc
        latency_ms = (perf_counter() - start) * 1000

        if response.status_code >= 400:
            body = response.text
            self.logger.error(
                "qbo_request_failed",
                extra={
                    "entity": entity,
                    "method": method,
                    "status": response.status_code,
                    "body": body,
                    "realm_id": ledger.realm_id,
                    "latency_ms": round(latency_ms, 2),
                },
            )
            raise QuickBooksApiError(
                f"QBO {method} error for {entity}: {response.status_code} {body}",
                status_code=response.status_code,
                body=body,
            )

        self.logger.debug(
            "qbo_request_completed",
            extra={
                "entity": entity,
                "method": method,
                "status": response.status_code,
                "realm_id": ledger.realm_id,
                "latency_ms": round(latency_ms, 2),
            },
        )
        try:
            return response.json()
        except ValueError as exc:
            raise QuickBooksApiError(
                f"QBO {method} response for {entity} is not JSON",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    def _build_entity_url(self, ledger: LedgerSession, resource: str) -> str:
        base = (
            self.SANDBOX_API_BASE
            if ledger.environment == "sandbox"
            else self.PROD_API_BASE
        )
        return f"{base}/v3/company/{ledger.realm_id}/{resource}"

    def _parse_token_response(self, payload: dict, realm_id: str) -> TokenBundle:
        now = _now()
        try:
            access_expires_in = int(payload["expires_in"])
            access_token = payload["access_token"]
            refresh_token = payload["refresh_token"]
        except (KeyError, TypeError, ValueError) as exc:
            raise QuickBooksOAuthError("Incomplete token response") from exc
        refresh_expires_in = payload.get("x_refresh_token_expires_in")

        bundle = TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=now + timedelta(seconds=access_expires_in),
            refresh_expires_at=(
                now + timedelta(seconds=int(refresh_expires_in))
                if refresh_expires_in
                else None
            ),
            token_type=payload.get("token_type", "Bearer"),
        )
        self.logger.info(
            "token_bundle_parsed",
            extra={
                "realm_id": realm_id,
                "access_expires_at": bundle.access_expires_at.isoformat(),
            },
        )
        return bundle

    def _basic_auth_header(self) -> str:
        credentials = f"{self.settings.qbo_client_id}:{self.settings.qbo_client_secret}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"

    def _escape(self, value: str) -> str:
        return value.replace("'", "''")
