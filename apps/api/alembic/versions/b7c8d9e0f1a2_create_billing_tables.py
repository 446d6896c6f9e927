"""create billing tables

Revision ID: b7c8d9e0f1a2
Revises:
Create Date: 2026-03-02 09:00:00.000000

This migration:
1. Creates the enum types used by the billing tables
2. Creates enrollments and payment_infos (owned by the portal, read by jobs)
3. Creates invoices, payment_months, nfse_invoices and finance_audit_logs

invoices is created BEFORE payment_months so the invoice_id foreign key
can be declared inline.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "b7c8d9e0f1a2"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


ENUMS = {
    "enrollment_status": ("ACTIVE", "INACTIVE", "CANCELLED"),
    "payment_status": ("EM_ABERTO", "PAGO", "ATRASADO", "CANCELADO"),
    "invoice_status": ("OPEN", "PAID", "CANCELLED"),
    "nfse_status": ("pending", "autorizado", "erro"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Create billing enums and tables."""
    for name in ENUMS:
        _enum(name).create(op.get_bind(), checkfirst=True)

    op.create_table(
        "enrollments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("cpf", sa.String(length=14), nullable=True),
        sa.Column("status", _enum("enrollment_status"), nullable=False),
        sa.Column("monthly_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("due_day", sa.Integer(), nullable=True),
        sa.Column("inactive_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_enrollments_status", "enrollments", ["status"], unique=False)

    op.create_table(
        "payment_infos",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("enrollment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("due_day", sa.Integer(), nullable=True),
        sa.Column("monthly_amount", sa.Numeric(10, 2), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("enrollment_id"),
    )

    op.create_table(
        "invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("enrollment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("cora_invoice_id", sa.String(length=100), nullable=False),
        sa.Column("code", sa.String(length=100), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", _enum("invoice_status"), nullable=False),
        sa.Column("digitable_line", sa.String(length=100), nullable=True),
        sa.Column("boleto_url", sa.String(length=500), nullable=True),
        sa.Column("pix_copy_paste", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("cora_invoice_id"),
        sa.UniqueConstraint(
            "enrollment_id", "year", "month", name="uq_invoices_enrollment_period"
        ),
    )
    op.create_index("ix_invoices_status", "invoices", ["status"], unique=False)

    op.create_table(
        "payment_months",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("enrollment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "payment_status",
            _enum("payment_status"),
            server_default="EM_ABERTO",
            nullable=False,
        ),
        sa.Column("due_day", sa.Integer(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invoice_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("overdue_notice_sent_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"], ondelete="SET NULL"),
        sa.UniqueConstraint(
            "enrollment_id", "year", "month", name="uq_payment_months_enrollment_period"
        ),
    )
    op.create_index("ix_payment_months_status", "payment_months", ["payment_status"], unique=False)
    op.create_index("ix_payment_months_period", "payment_months", ["year", "month"], unique=False)

    op.create_table(
        "nfse_invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("enrollment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("focus_ref", sa.String(length=120), nullable=False),
        sa.Column("status", _enum("nfse_status"), nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("number", sa.String(length=50), nullable=True),
        sa.Column("verification_code", sa.String(length=50), nullable=True),
        sa.Column("pdf_url", sa.String(length=500), nullable=True),
        sa.Column("xml_url", sa.String(length=500), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("focus_ref"),
    )
    op.create_index("ix_nfse_invoices_status", "nfse_invoices", ["status"], unique=False)
    op.create_index(
        "ix_nfse_invoices_enrollment_period",
        "nfse_invoices",
        ["enrollment_id", "year", "month"],
        unique=False,
    )

    # At most one live authorized NFSe per enrollment and month
    op.execute(
        """
        CREATE UNIQUE INDEX ix_nfse_invoices_unique_authorized
        ON nfse_invoices (enrollment_id, year, month)
        WHERE status = 'autorizado' AND cancelled_at IS NULL
        """
    )

    op.create_table(
        "finance_audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("old_value", postgresql.JSON(), nullable=True),
        sa.Column("new_value", postgresql.JSON(), nullable=True),
        sa.Column("performed_by", sa.String(length=100), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_finance_audit_logs_entity",
        "finance_audit_logs",
        ["entity_type", "entity_id"],
        unique=False,
    )


def downgrade() -> None:
    """Drop billing tables and enums."""
    op.drop_index("ix_finance_audit_logs_entity", table_name="finance_audit_logs")
    op.drop_table("finance_audit_logs")

    op.execute("DROP INDEX IF EXISTS ix_nfse_invoices_unique_authorized")
    op.drop_index("ix_nfse_invoices_enrollment_period", table_name="nfse_invoices")
    op.drop_index("ix_nfse_invoices_status", table_name="nfse_invoices")
    op.drop_table("nfse_invoices")

    op.drop_index("ix_payment_months_period", table_name="payment_months")
    op.drop_index("ix_payment_months_status", table_name="payment_months")
    op.drop_table("payment_months")

    op.drop_index("ix_invoices_status", table_name="invoices")
    op.drop_table("invoices")

    op.drop_table("payment_infos")

    op.drop_index("ix_enrollments_status", table_name="enrollments")
    op.drop_table("enrollments")

    for name in reversed(list(ENUMS)):
        postgresql.ENUM(*ENUMS[name], name=name).drop(op.get_bind(), checkfirst=True)
