from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import CHAR, TypeDecorator


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Base(DeclarativeBase):
    """Shared base class for ORM models."""

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


class InvoiceStatus:
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    OLD_INVOICE_NOT_FOUND = "OLD INVOICE NOT FOUND"
    DUPLICATE_OLD_INVOICES_FOUND = "DUPLICATE OLD INVOICES FOUND"
    FAILURE = "FAILURE"


INVOICE_STATUSES = (
    InvoiceStatus.CREATED,
    InvoiceStatus.UPDATED,
    InvoiceStatus.OLD_INVOICE_NOT_FOUND,
    InvoiceStatus.DUPLICATE_OLD_INVOICES_FOUND,
    InvoiceStatus.FAILURE,
)


class LedgerConnection(Base):
    __tablename__ = "ledger_connections"
    __table_args__ = (
        UniqueConstraint("realm_id", "environment", name="uq_ledger_realm_environment"),
        Index("ix_ledger_connections_realm_id", "realm_id"),
    )

    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    environment: Mapped[str] = mapped_column(
        Enum("sandbox", "prod", name="environment_enum", native_enum=False),
        default="sandbox",
        nullable=False,
    )
    refresh_token_enc: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    access_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refresh_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    minor_version: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    refresh_counter: Mapped[int] = mapped_column(default=0, nullable=False)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class CompanyConfig(Base):
    __tablename__ = "company_configs"
    __table_args__ = (UniqueConstraint("code", name="uq_company_config_code"),)

    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    terms: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    keep_invoice_number: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tax_agency_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class InvoiceRecord(Base):
    __tablename__ = "invoice_records"
    __table_args__ = (
        UniqueConstraint(
            "work_order_id",
            "company_config_code",
            name="uq_invoice_record_work_order_company",
        ),
        Index("ix_invoice_records_invoice_id", "invoice_id"),
    )

    work_order_id: Mapped[str] = mapped_column(String(128), nullable=False)
    company_config_code: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    doc_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        Enum(*INVOICE_STATUSES, name="invoice_status_enum", native_enum=False),
        default=InvoiceStatus.FAILURE,
        nullable=False,
    )
    invoice_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    tax_details: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
