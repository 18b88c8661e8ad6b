from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_bridge.db.models import CompanyConfig, InvoiceRecord, InvoiceStatus, LedgerConnection


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def get_company_config(session: AsyncSession, code: str) -> Optional[CompanyConfig]:
    result = await session.execute(
        select(CompanyConfig).where(CompanyConfig.code == code)
    )
    return result.scalar_one_or_none()


async def load_credential(
    session: AsyncSession,
    *,
    realm_id: Optional[str] = None,
) -> Optional[LedgerConnection]:
    stmt = select(LedgerConnection)
    if realm_id:
        stmt = stmt.where(LedgerConnection.realm_id == realm_id)
    stmt = stmt.order_by(LedgerConnection.updated_at.desc()).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def save_credential(session: AsyncSession, credential: LedgerConnection) -> LedgerConnection:
    session.add(credential)
    await session.flush()
    await session.refresh(credential)
    return credential


async def find_prior_record(
    session: AsyncSession,
    *,
    work_order_id: str,
    company_config_code: str,
) -> Optional[InvoiceRecord]:
    result = await session.execute(
        select(InvoiceRecord).where(
            InvoiceRecord.work_order_id == work_order_id,
            InvoiceRecord.company_config_code == company_config_code,
        )
    )
    return result.scalar_one_or_none()


async def upsert_success(
    session: AsyncSession,
    *,
    work_order_id: str,
    company_config_code: str,
    invoice_id: str,
    doc_number: Optional[str],
    status: str,
    invoice_date: Optional[date],
) -> InvoiceRecord:
    return await _upsert(
        session,
        work_order_id=work_order_id,
        company_config_code=company_config_code,
        values={
            "invoice_id": invoice_id,
            "doc_number": doc_number,
            "status": status,
            "invoice_date": invoice_date,
            "error_message": "",
            "tax_details": None,
        },
    )


async def upsert_failure(
    session: AsyncSession,
    *,
    work_order_id: str,
    company_config_code: str,
    error_message: str,
    invoice_date: Optional[date],
    tax_details: Optional[list[dict[str, Any]]] = None,
) -> InvoiceRecord:
    # invoice_id and doc_number are left alone so the next attempt can still replace
    # whatever invoice was last confirmed for this work order.
    return await _upsert(
        session,
        work_order_id=work_order_id,
        company_config_code=company_config_code,
        values={
            "status": InvoiceStatus.FAILURE,
            "invoice_date": invoice_date,
            "error_message": error_message,
            "tax_details": tax_details,
        },
    )


async def _upsert(
    session: AsyncSession,
    *,
    work_order_id: str,
    company_config_code: str,
    values: dict[str, Any],
) -> InvoiceRecord:
    record = await find_prior_record(
        session,
        work_order_id=work_order_id,
        company_config_code=company_config_code,
    )
    if record is None:
        record = InvoiceRecord(
            work_order_id=work_order_id,
            company_config_code=company_config_code,
            processed_at=_now(),
            **values,
        )
        session.add(record)
        try:
            await session.flush()
        except IntegrityError:
            # Another writer inserted the same key first; fall through to an update.
            await session.rollback()
            record = await find_prior_record(
                session,
                work_order_id=work_order_id,
                company_config_code=company_config_code,
            )
            if record is None:
                raise
        else:
            await session.refresh(record)
            return record

    for field, value in values.items():
        setattr(record, field, value)
    record.processed_at = _now()
    await session.flush()
    await session.refresh(record)
    return record
