from __future__ import annotations

import logging

from invoice_bridge.core.logging import (
    REDACTED,
    RequestContextFilter,
    clear_request_context,
    sanitize_payload,
    set_request_context,
)


def test_sanitize_masks_contact_details_and_keeps_business_fields():
    payload = {
        "CustomerRef": {"value": "12"},
        "BillEmail": {"Address": "fleet@example.com"},
        "Line": [{"Amount": 20.0, "Description": "Filter"}],
        "access_token": None,
    }

    sanitized = sanitize_payload(payload)

    assert sanitized["CustomerRef"] == {"value": "12"}
    assert sanitized["BillEmail"] == REDACTED
    assert sanitized["Line"] == [{"Amount": 20.0, "Description": "Filter"}]
    assert sanitized["access_token"] == ""
    assert payload["BillEmail"] == {"Address": "fleet@example.com"}


def test_context_filter_prefers_explicit_extra():
    set_request_context(request_id="req-1", company_code="ACME", realm_id="ambient-realm")
    try:
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "msg", None, None)
        record.realm_id = "explicit-realm"

        assert RequestContextFilter().filter(record)

        assert record.request_id == "req-1"
        assert record.company_code == "ACME"
        assert record.realm_id == "explicit-realm"
        assert record.work_order_id is None
    finally:
        clear_request_context()
