"""
Billing Models

Database models for enrollments, monthly payment records, boletos (Cora
invoices), municipal tax invoices (NFSe) and the finance audit log.

Enrollment and PaymentInfo are owned by the school portal; the billing jobs
only read them. PaymentMonth, Invoice, NfseInvoice and FinanceAuditLog are
written by the jobs.
"""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class EnrollmentStatus(str, enum.Enum):
    """Status of a student enrollment."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    """Payment state of one billing month."""

    EM_ABERTO = "EM_ABERTO"  # open
    PAGO = "PAGO"  # paid
    ATRASADO = "ATRASADO"  # overdue
    CANCELADO = "CANCELADO"  # cancelled


class InvoiceStatus(str, enum.Enum):
    """Status of a boleto issued through Cora."""

    OPEN = "OPEN"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class NfseStatus(str, enum.Enum):
    """Local status of a municipal tax invoice."""

    PENDING = "pending"
    AUTORIZADO = "autorizado"
    ERRO = "erro"


class Enrollment(Base):
    """A student's enrollment: the anchor of all billing records."""

    __tablename__ = "enrollments"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cpf: Mapped[str | None] = mapped_column(String(14), nullable=True)

    status: Mapped[EnrollmentStatus] = mapped_column(
        Enum(EnrollmentStatus, name="enrollment_status", values_callable=_enum_values),
        nullable=False,
        default=EnrollmentStatus.ACTIVE,
    )

    # Per-enrollment overrides of PaymentInfo
    monthly_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    due_day: Mapped[int | None] = mapped_column(Integer, nullable=True)

    inactive_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    payment_info: Mapped["PaymentInfo | None"] = relationship(
        "PaymentInfo", back_populates="enrollment", uselist=False, lazy="selectin"
    )

    __table_args__ = (Index("ix_enrollments_status", "status"),)


class PaymentInfo(Base):
    """Default billing data for an enrollment."""

    __tablename__ = "payment_infos"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    due_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    monthly_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    enrollment: Mapped["Enrollment"] = relationship("Enrollment", back_populates="payment_info")


class PaymentMonth(Base):
    """
    Payment record for one (enrollment, year, month).

    PAGO and CANCELADO are terminal. The reminder and overdue notice
    timestamps make the notification job idempotent.
    """

    __tablename__ = "payment_months"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", values_callable=_enum_values),
        nullable=False,
        default=PaymentStatus.EM_ABERTO,
    )
    due_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Notification tracking
    reminder_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    overdue_notice_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    enrollment: Mapped["Enrollment"] = relationship("Enrollment", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("enrollment_id", "year", "month", name="uq_payment_months_enrollment_period"),
        Index("ix_payment_months_status", "payment_status"),
        Index("ix_payment_months_period", "year", "month"),
    )


class Invoice(Base):
    """A boleto / PIX charge created at Cora. Amounts are integer cents."""

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)

    cora_invoice_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, name="invoice_status", values_callable=_enum_values),
        nullable=False,
        default=InvoiceStatus.OPEN,
    )

    digitable_line: Mapped[str | None] = mapped_column(String(100), nullable=True)
    boleto_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    pix_copy_paste: Mapped[str | None] = mapped_column(Text, nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("enrollment_id", "year", "month", name="uq_invoices_enrollment_period"),
        Index("ix_invoices_status", "status"),
    )


class NfseInvoice(Base):
    """
    A municipal service tax invoice issued through Focus NFe.

    At most one non-cancelled ``autorizado`` row may exist per
    (enrollment, year, month).
    """

    __tablename__ = "nfse_invoices"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    focus_ref: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    status: Mapped[NfseStatus] = mapped_column(
        Enum(NfseStatus, name="nfse_status", values_callable=_enum_values),
        nullable=False,
        default=NfseStatus.PENDING,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Filled in when authorized
    number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    verification_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pdf_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    xml_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    enrollment: Mapped["Enrollment"] = relationship("Enrollment", lazy="selectin")

    __table_args__ = (
        Index("ix_nfse_invoices_status", "status"),
        Index("ix_nfse_invoices_enrollment_period", "enrollment_id", "year", "month"),
    )


class FinanceAuditLog(Base):
    """Append-only record of every billing state change."""

    __tablename__ = "finance_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    old_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    performed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_finance_audit_logs_entity", "entity_type", "entity_id"),)
