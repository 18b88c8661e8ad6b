from __future__ import annotations

from datetime import date

from conftest import seed_company

from invoice_bridge.db import repo
from invoice_bridge.db.models import InvoiceStatus


def test_get_company_config_by_code(run_db):
    async def scenario(session):
        await seed_company(session, code="ACME", keep_invoice_number=True)
        return await repo.get_company_config(session, "ACME"), await repo.get_company_config(session, "NOPE")

    config, missing = run_db(scenario)

    assert config.terms == "Net 30"
    assert config.keep_invoice_number is True
    assert missing is None


def test_upsert_success_then_failure_keeps_one_record(run_db):
    async def scenario(session):
        await repo.upsert_success(
            session,
            work_order_id="WO-1",
            company_config_code="ACME",
            invoice_id="145",
            doc_number="1001",
            status=InvoiceStatus.CREATED,
            invoice_date=date(2026, 10, 1),
        )
        await session.commit()
        failed = await repo.upsert_failure(
            session,
            work_order_id="WO-1",
            company_config_code="ACME",
            error_message="QBO POST error for Invoice: 400",
            invoice_date=date(2026, 10, 2),
            tax_details=[{"name": "ST", "tax": "5.00 %", "description": "missing"}],
        )
        await session.commit()
        return failed

    record = run_db(scenario)

    assert record.status == InvoiceStatus.FAILURE
    assert record.invoice_id == "145"
    assert record.doc_number == "1001"
    assert record.invoice_date == date(2026, 10, 2)
    assert record.error_message == "QBO POST error for Invoice: 400"
    assert record.tax_details[0]["name"] == "ST"


def test_success_clears_previous_failure(run_db):
    async def scenario(session):
        first = await repo.upsert_failure(
            session,
            work_order_id="WO-9",
            company_config_code="ACME",
            error_message="boom",
            invoice_date=None,
            tax_details=[{"name": "ST"}],
        )
        first_id = first.id
        await session.commit()
        updated = await repo.upsert_success(
            session,
            work_order_id="WO-9",
            company_config_code="ACME",
            invoice_id="200",
            doc_number=None,
            status=InvoiceStatus.UPDATED,
            invoice_date=date(2026, 10, 3),
        )
        await session.commit()
        return first_id, updated

    first_id, record = run_db(scenario)

    assert record.id == first_id
    assert record.status == InvoiceStatus.UPDATED
    assert record.error_message == ""
    assert record.tax_details is None


def test_records_are_scoped_by_company(run_db):
    async def scenario(session):
        for code in ("ACME", "GLOBEX"):
            await repo.upsert_success(
                session,
                work_order_id="WO-1",
                company_config_code=code,
                invoice_id=f"{code}-1",
                doc_number=None,
                status=InvoiceStatus.CREATED,
                invoice_date=None,
            )
        await session.commit()
        return await repo.find_prior_record(session, work_order_id="WO-1", company_config_code="GLOBEX")

    record = run_db(scenario)

    assert record.invoice_id == "GLOBEX-1"
