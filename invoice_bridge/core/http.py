from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from invoice_bridge.core.config import Settings, get_settings

RETRYABLE_STATUSES = frozenset({429})

logger = logging.getLogger("invoice_bridge.http")


class TransientLedgerResponse(Exception):
    """Raised inside the retry loop for a throttled or failing ledger response."""

    def __init__(self, response: httpx.Response, retry_after: Optional[float] = None):
        self.response = response
        self.retry_after = retry_after
        super().__init__(f"Transient ledger response: {response.status_code}")


def is_transient(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUSES or 500 <= status_code < 600


def retry_after_seconds(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return max(float(header), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)


def backoff_seconds(settings: Settings, retry_state: RetryCallState) -> float:
    # Honour the server's Retry-After, capped; otherwise 1s, 2s, 4s... up to the cap.
    if retry_state.outcome is not None and retry_state.outcome.failed:
        exc = retry_state.outcome.exception()
        if isinstance(exc, TransientLedgerResponse) and exc.retry_after is not None:
            return min(exc.retry_after, settings.retry_max_wait_seconds)
    return min(settings.retry_max_wait_seconds, 2 ** (retry_state.attempt_number - 1))


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
    logger.warning(
        "ledger_request_retry",
        extra={
            "attempt": retry_state.attempt_number,
            "status": getattr(getattr(exc, "response", None), "status_code", None),
            "wait_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
        },
    )


def get_async_client(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    settings = settings or get_settings()
    return httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds), transport=transport)


async def request_once(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Send a mutation exactly once; a retried create could post a second invoice."""
    return await client.request(method, url, **kwargs)


async def request_with_retry_and_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    settings: Settings | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send an idempotent read, retrying 429 and 5xx answers.

    The last transient response is returned rather than raised once attempts run
    out, so callers map it to an API error like any other failure.
    """
    settings = settings or get_settings()
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(settings.retry_max_attempts, 1)),
            retry=retry_if_exception_type(TransientLedgerResponse),
            wait=lambda retry_state: backoff_seconds(settings, retry_state),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                response = await client.request(method, url, **kwargs)
                if is_transient(response.status_code):
                    raise TransientLedgerResponse(response, retry_after_seconds(response))
                return response
    except TransientLedgerResponse as exc:
        return exc.response
    raise RuntimeError("retry loop exited without a response")
