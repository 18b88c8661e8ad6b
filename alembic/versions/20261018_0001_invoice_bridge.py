"""Ledger connections, company configs and invoice records

Revision ID: 20261018_0001
Revises: 
Create Date: 2026-10-18 09:30:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


environment_enum = sa.Enum(
    "sandbox",
    "prod",
    name="environment_enum",
    native_enum=False,
)

invoice_status_enum = sa.Enum(
    "CREATED",
    "UPDATED",
    "OLD INVOICE NOT FOUND",
    "DUPLICATE OLD INVOICES FOUND",
    "FAILURE",
    name="invoice_status_enum",
    native_enum=False,
)


def _guid_type(bind) -> sa.types.TypeEngine:
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(length=36)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    guid = _guid_type(op.get_bind())

    op.create_table(
        "ledger_connections",
        sa.Column("id", guid, nullable=False),
        sa.Column("realm_id", sa.String(length=64), nullable=False),
        sa.Column("environment", environment_enum, nullable=False, server_default="sandbox"),
        sa.Column("refresh_token_enc", sa.String(), nullable=False),
        sa.Column("access_token", sa.String(), nullable=True),
        sa.Column("access_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("minor_version", sa.String(length=16), nullable=True),
        sa.Column("refresh_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("realm_id", "environment", name="uq_ledger_realm_environment"),
    )
    op.create_index("ix_ledger_connections_realm_id", "ledger_connections", ["realm_id"])

    op.create_table(
        "company_configs",
        sa.Column("id", guid, nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("terms", sa.String(length=255), nullable=True),
        sa.Column("keep_invoice_number", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tax_agency_name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_company_config_code"),
    )

    op.create_table(
        "invoice_records",
        sa.Column("id", guid, nullable=False),
        sa.Column("work_order_id", sa.String(length=128), nullable=False),
        sa.Column("company_config_code", sa.String(length=64), nullable=False),
        sa.Column("invoice_id", sa.String(length=64), nullable=True),
        sa.Column("doc_number", sa.String(length=64), nullable=True),
        sa.Column("status", invoice_status_enum, nullable=False, server_default="FAILURE"),
        sa.Column("invoice_date", sa.Date(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False, server_default=""),
        sa.Column("tax_details", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "work_order_id",
            "company_config_code",
            name="uq_invoice_record_work_order_company",
        ),
    )
    op.create_index("ix_invoice_records_invoice_id", "invoice_records", ["invoice_id"])


def downgrade() -> None:
    op.drop_index("ix_invoice_records_invoice_id", table_name="invoice_records")
    op.drop_table("invoice_records")
    op.drop_table("company_configs")
    op.drop_index("ix_ledger_connections_realm_id", table_name="ledger_connections")
    op.drop_table("ledger_connections")
