from __future__ import annotations

import logging
import logging.config
from contextvars import ContextVar
from typing import Any, Optional, Union

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
company_code_ctx: ContextVar[Optional[str]] = ContextVar("company_code", default=None)
realm_id_ctx: ContextVar[Optional[str]] = ContextVar("realm_id", default=None)
work_order_id_ctx: ContextVar[Optional[str]] = ContextVar("work_order_id", default=None)

_CONTEXT_FIELDS: tuple[tuple[str, ContextVar[Optional[str]]], ...] = (
    ("request_id", request_id_ctx),
    ("company_code", company_code_ctx),
    ("realm_id", realm_id_ctx),
    ("work_order_id", work_order_id_ctx),
)

# Substrings of payload keys whose values never reach the log stream.
SENSITIVE_KEY_PARTS = frozenset(
    {
        "authorization",
        "token",
        "secret",
        "password",
        "email",
        "phone",
        "addr",
    }
)
REDACTED = "***redacted***"


class RequestContextFilter(logging.Filter):
    """Stamps the batch and work-order context onto every record.

    Values passed explicitly through ``extra=`` are left alone.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, ctx in _CONTEXT_FIELDS:
            if getattr(record, attr, None) is None:
                setattr(record, attr, ctx.get())
        return True


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"invoice_context": {"()": RequestContextFilter}},
            "formatters": {
                "json": {
                    "()": jsonlogger.JsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "level": level,
                    "formatter": "json",
                    "filters": ["invoice_context"],
                }
            },
            "loggers": {
                # httpx logs every request URL at INFO, query text included.
                "httpx": {"level": logging.WARNING},
            },
            "root": {"handlers": ["stdout"], "level": level},
        }
    )


def set_request_context(
    request_id: Optional[str] = None,
    company_code: Optional[str] = None,
    realm_id: Optional[str] = None,
    work_order_id: Optional[str] = None,
) -> None:
    values = {
        "request_id": request_id,
        "company_code": company_code,
        "realm_id": realm_id,
        "work_order_id": work_order_id,
    }
    for attr, ctx in _CONTEXT_FIELDS:
        if values[attr] is not None:
            ctx.set(values[attr])


def clear_work_order_context() -> None:
    work_order_id_ctx.set(None)


def clear_request_context() -> None:
    for _, ctx in _CONTEXT_FIELDS:
        ctx.set(None)


def sanitize_payload(payload: Any) -> Any:
    """Copy of ``payload`` with credentials and customer contact details masked."""
    if isinstance(payload, dict):
        sanitized: dict[str, Any] = {}
        for key, val in payload.items():
            if any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS):
                sanitized[key] = "" if val is None else REDACTED
            else:
                sanitized[key] = sanitize_payload(val)
        return sanitized
    if isinstance(payload, list):
        return [sanitize_payload(item) for item in payload]
    return payload


def _base_invoice_log_extra(
    *,
    event: str,
    company_code: Optional[str],
    realm_id: Optional[str],
    work_order_id: Optional[str],
    prior_invoice_id: Optional[str],
    state: Optional[str],
    payload: Any = None,
) -> dict[str, Any]:
    return {
        "event": event,
        "request_id": request_id_ctx.get(),
        "company_code": company_code,
        "realm_id": realm_id,
        "work_order_id": work_order_id,
        "prior_invoice_id": prior_invoice_id,
        "state": state,
        "payload": payload,
    }


def log_invoice_attempt_started(
    *,
    company_code: Optional[str],
    realm_id: Optional[str],
    work_order_id: Optional[str],
    prior_invoice_id: Optional[str],
    payload: Any,
) -> None:
    logger = logging.getLogger("invoice_bridge.invoice")
    logger.info(
        "invoice_attempt_started",
        extra=_base_invoice_log_extra(
            event="invoice_attempt_started",
            company_code=company_code,
            realm_id=realm_id,
            work_order_id=work_order_id,
            prior_invoice_id=prior_invoice_id,
            state=None,
            payload=sanitize_payload(payload),
        ),
    )


def log_invoice_attempt_finished(
    *,
    company_code: Optional[str],
    realm_id: Optional[str],
    work_order_id: Optional[str],
    prior_invoice_id: Optional[str],
    state: Optional[str],
    status: str,
    invoice_id: Optional[str] = None,
    doc_number: Optional[str] = None,
    latency_ms: Optional[float] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    qbo_error_details: Optional[str] = None,
) -> None:
    logger = logging.getLogger("invoice_bridge.invoice")
    logger.info(
        "invoice_attempt_finished",
        extra={
            **_base_invoice_log_extra(
                event="invoice_attempt_finished",
                company_code=company_code,
                realm_id=realm_id,
                work_order_id=work_order_id,
                prior_invoice_id=prior_invoice_id,
                state=state,
            ),
            "status": status,
            "invoice_id": invoice_id,
            "doc_number": doc_number,
            "latency_ms": None if latency_ms is None else round(latency_ms, 2),
            "error_code": error_code,
            "error_message": error_message,
            "qbo_error_details": qbo_error_details,
        },
    )
