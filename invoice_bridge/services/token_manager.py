from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from invoice_bridge.core.config import Settings, get_settings
from invoice_bridge.core.security import mask_secret, open_refresh_token, seal_refresh_token
from invoice_bridge.db import repo
from invoice_bridge.db.models import LedgerConnection
from invoice_bridge.services.errors import ConfigurationError, TokenRefreshError
from invoice_bridge.services.qbo_client import (
    LedgerSession,
    QuickBooksOAuthError,
    QuickBooksService,
    TokenBundle,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timezone-aware columns back naive.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenLifecycleManager:
    """Keeps the stored ledger credential usable and issues per-batch sessions.

    Refreshes for the same connection are single-flight: concurrent callers await the
    one in-flight token request instead of spending the refresh token twice, which
    Intuit would answer by invalidating the loser's grant.
    """

    def __init__(self, qbo_service: QuickBooksService, settings: Settings | None = None):
        self.qbo_service = qbo_service
        self.settings = settings or qbo_service.settings
        self.logger = logging.getLogger("invoice_bridge.services.tokens")
        self._inflight: dict[str, asyncio.Future[TokenBundle]] = {}

    @property
    def refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self.settings.token_refresh_buffer_seconds)

    def needs_refresh(self, credential: LedgerConnection, *, now: Optional[datetime] = None) -> bool:
        if not credential.access_token or credential.access_expires_at is None:
            return True
        now = now or _now()
        return _as_utc(credential.access_expires_at) - now <= self.refresh_buffer

    async def ensure_valid_token(
        self,
        session: AsyncSession,
        credential: LedgerConnection,
        *,
        now: Optional[datetime] = None,
    ) -> LedgerConnection:
        if not self.needs_refresh(credential, now=now):
            return credential
        return await self._refresh(session, credential, force=False)

    async def rotate(
        self,
        session: AsyncSession,
        *,
        realm_id: Optional[str] = None,
    ) -> LedgerConnection:
        credential = await self._load(session, realm_id=realm_id)
        return await self._refresh(session, credential, force=True)

    async def open_session(
        self,
        session: AsyncSession,
        *,
        realm_id: Optional[str] = None,
    ) -> LedgerSession:
        credential = await self._load(session, realm_id=realm_id)
        credential = await self.ensure_valid_token(session, credential)
        return self.issue_session(credential)

    async def _load(self, session: AsyncSession, *, realm_id: Optional[str]) -> LedgerConnection:
        credential = await repo.load_credential(session, realm_id=realm_id)
        if credential is None:
            raise ConfigurationError("No QuickBooks connection has been authorized")
        return credential

    def issue_session(self, credential: LedgerConnection) -> LedgerSession:
        if not credential.access_token:
            raise TokenRefreshError("Missing access token after refresh")
        return LedgerSession(
            realm_id=credential.realm_id,
            access_token=credential.access_token,
            environment=credential.environment,
            minor_version=credential.minor_version or self.settings.qbo_minor_version,
        )

    async def _refresh(
        self,
        session: AsyncSession,
        credential: LedgerConnection,
        *,
        force: bool,
    ) -> LedgerConnection:
        try:
            bundle = await self._request_bundle(credential)
        except TokenRefreshError:
            credential.last_error_at = _now()
            await session.commit()
            raise
        # Only assign once the remote call has succeeded so a failure leaves no partial write.
        credential.access_token = bundle.access_token
        credential.access_expires_at = bundle.access_expires_at
        if bundle.refresh_expires_at is not None:
            credential.refresh_expires_at = bundle.refresh_expires_at
        credential.refresh_token_enc = seal_refresh_token(self.settings.fernet_key, bundle.refresh_token)
        credential.refresh_counter = (credential.refresh_counter or 0) + 1
        await repo.save_credential(session, credential)
        await session.commit()
        self.logger.info(
            "credential_refreshed",
            extra={
                "realm_id": credential.realm_id,
                "environment": credential.environment,
                "access_token": mask_secret(bundle.access_token),
                "access_expires_at": bundle.access_expires_at.isoformat(),
                "force": force,
            },
        )
        return credential

    async def _request_bundle(self, credential: LedgerConnection) -> TokenBundle:
        key = f"{credential.environment}:{credential.realm_id}"
        future = self._inflight.get(key)
        if future is None:
            try:
                refresh_token = open_refresh_token(self.settings.fernet_key, credential.refresh_token_enc)
            except ValueError as exc:
                raise TokenRefreshError(str(exc)) from exc
            future = asyncio.ensure_future(
                self.qbo_service.refresh_tokens(
                    refresh_token=refresh_token,
                    realm_id=credential.realm_id,
                )
            )
            self._inflight[key] = future
            future.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            self.logger.info(
                "credential_refresh_joined",
                extra={"realm_id": credential.realm_id, "environment": credential.environment},
            )
        try:
            return await asyncio.shield(future)
        except QuickBooksOAuthError as exc:
            self.logger.error(
                "credential_refresh_failed",
                extra={
                    "realm_id": credential.realm_id,
                    "environment": credential.environment,
                    "error": str(exc),
                },
            )
            raise TokenRefreshError(str(exc)) from exc


@lru_cache(maxsize=1)
def get_token_manager() -> TokenLifecycleManager:
    settings = get_settings()
    return TokenLifecycleManager(QuickBooksService(settings), settings)
