"""
Billing Repository

Database operations for payment months, boletos, NFSe records and the
finance audit log.

Design Principles:
- Only database operations, no gateway calls
- Status changes are validated against the transition tables below
- Job writes are conditional (``WHERE status = <expected>``) so a re-run or a
  concurrent run cannot apply the same transition twice
- Timezone-aware datetime handling (UTC)
"""

import enum
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Enrollment,
    EnrollmentStatus,
    FinanceAuditLog,
    Invoice,
    InvoiceStatus,
    NfseInvoice,
    NfseStatus,
    PaymentMonth,
    PaymentStatus,
)

# ============================================
# Status Transition Tables
# ============================================

VALID_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.EM_ABERTO: {
        PaymentStatus.ATRASADO,  # Due date passed
        PaymentStatus.PAGO,  # Payment confirmed
        PaymentStatus.CANCELADO,
    },
    PaymentStatus.ATRASADO: {
        PaymentStatus.PAGO,  # Late payment confirmed
        PaymentStatus.CANCELADO,
    },
    # Terminal states
    PaymentStatus.PAGO: set(),
    PaymentStatus.CANCELADO: set(),
}

VALID_INVOICE_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.OPEN: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}

VALID_NFSE_TRANSITIONS: dict[NfseStatus, set[NfseStatus]] = {
    NfseStatus.PENDING: {NfseStatus.AUTORIZADO, NfseStatus.ERRO},
    NfseStatus.ERRO: {
        NfseStatus.PENDING,  # Resubmitted, processing
        NfseStatus.ERRO,  # Resubmission rejected again
        NfseStatus.AUTORIZADO,  # Resubmission authorized immediately
    },
    NfseStatus.AUTORIZADO: set(),
}


class InvalidStatusTransitionError(ValueError):
    """Raised when an invalid status transition is attempted."""

    def __init__(
        self,
        entity: str,
        current_status: enum.Enum,
        new_status: enum.Enum,
        valid_transitions: set,
    ):
        self.entity = entity
        self.current_status = current_status
        self.new_status = new_status
        super().__init__(
            f"Invalid {entity} status transition: {current_status.value} -> {new_status.value}. "
            f"Valid transitions: {sorted(s.value for s in valid_transitions)}"
        )


def validate_transition(
    table: dict[Any, set[Any]],
    entity: str,
    current_status: enum.Enum,
    new_status: enum.Enum,
) -> None:
    """
    Check a status change against a transition table.

    Re-setting the current status is accepted for non-terminal states.
    Terminal states reject every write.

    Raises:
        InvalidStatusTransitionError: If the change is not allowed
    """
    valid_transitions = table.get(current_status, set())
    if new_status == current_status and not valid_transitions:
        raise InvalidStatusTransitionError(entity, current_status, new_status, valid_transitions)
    if new_status != current_status and new_status not in valid_transitions:
        raise InvalidStatusTransitionError(entity, current_status, new_status, valid_transitions)


# ============================================
# Enrollment Queries
# ============================================


async def get_active_enrollments(db: AsyncSession) -> list[Enrollment]:
    """Get all ACTIVE enrollments (PaymentInfo is eager-loaded)."""
    result = await db.execute(
        select(Enrollment)
        .where(Enrollment.status == EnrollmentStatus.ACTIVE)
        .order_by(Enrollment.created_at)
    )
    return list(result.scalars().all())


async def get_enrollment(db: AsyncSession, id: UUID) -> Enrollment | None:
    return await db.get(Enrollment, id)


async def deactivate_enrollment(db: AsyncSession, id: UUID) -> bool:
    """
    Set an ACTIVE enrollment to INACTIVE.

    Returns:
        True if this call performed the change
    """
    result = await db.execute(
        update(Enrollment)
        .where(Enrollment.id == id, Enrollment.status == EnrollmentStatus.ACTIVE)
        .values(status=EnrollmentStatus.INACTIVE, inactive_at=datetime.now(UTC))
    )
    await db.commit()
    return result.rowcount == 1


# ============================================
# PaymentMonth Repository
# ============================================


async def get_payment_month(
    db: AsyncSession, enrollment_id: UUID, year: int, month: int
) -> PaymentMonth | None:
    result = await db.execute(
        select(PaymentMonth).where(
            PaymentMonth.enrollment_id == enrollment_id,
            PaymentMonth.year == year,
            PaymentMonth.month == month,
        )
    )
    return result.scalar_one_or_none()


async def get_or_create_payment_month(
    db: AsyncSession, enrollment_id: UUID, year: int, month: int
) -> PaymentMonth:
    """
    Return the payment month for the key, creating it as EM_ABERTO if missing.

    Uses INSERT ... ON CONFLICT DO NOTHING on the unique key, so two
    concurrent runs end up with the same row.
    """
    await db.execute(
        insert(PaymentMonth)
        .values(
            enrollment_id=enrollment_id,
            year=year,
            month=month,
            payment_status=PaymentStatus.EM_ABERTO,
        )
        .on_conflict_do_nothing(index_elements=["enrollment_id", "year", "month"])
    )
    await db.commit()

    payment_month = await get_payment_month(db, enrollment_id, year, month)
    if payment_month is None:
        raise ValueError(f"Payment month {enrollment_id} {year}-{month:02d} could not be created")
    return payment_month


async def get_open_payment_months_until(
    db: AsyncSession, year: int, month: int
) -> list[PaymentMonth]:
    """
    Get EM_ABERTO payment months for the given billing month and earlier.

    The caller decides which of them are past due; the due day is resolved
    through the enrollment and cannot be filtered on in SQL.
    """
    result = await db.execute(
        select(PaymentMonth).where(
            PaymentMonth.payment_status == PaymentStatus.EM_ABERTO,
            or_(
                PaymentMonth.year < year,
                and_(PaymentMonth.year == year, PaymentMonth.month <= month),
            ),
        )
    )
    return list(result.scalars().all())


async def mark_payment_month_overdue(db: AsyncSession, id: UUID) -> bool:
    """
    Flip a payment month from EM_ABERTO to ATRASADO.

    The update only matches rows still in EM_ABERTO, so running it twice
    (or racing another run) changes nothing the second time.

    Returns:
        True if this call performed the transition
    """
    validate_transition(
        VALID_PAYMENT_TRANSITIONS, "payment month", PaymentStatus.EM_ABERTO, PaymentStatus.ATRASADO
    )
    result = await db.execute(
        update(PaymentMonth)
        .where(
            PaymentMonth.id == id,
            PaymentMonth.payment_status == PaymentStatus.EM_ABERTO,
        )
        .values(payment_status=PaymentStatus.ATRASADO)
    )
    await db.commit()
    return result.rowcount == 1


async def link_invoice(db: AsyncSession, payment_month_id: UUID, invoice_id: UUID) -> bool:
    """Attach an invoice to a payment month that has none yet."""
    result = await db.execute(
        update(PaymentMonth)
        .where(PaymentMonth.id == payment_month_id, PaymentMonth.invoice_id.is_(None))
        .values(invoice_id=invoice_id)
    )
    await db.commit()
    return result.rowcount == 1


async def get_reminder_candidates(db: AsyncSession) -> list[PaymentMonth]:
    """Get EM_ABERTO payment months that have not had a reminder yet."""
    result = await db.execute(
        select(PaymentMonth).where(
            PaymentMonth.payment_status == PaymentStatus.EM_ABERTO,
            PaymentMonth.reminder_sent_at.is_(None),
        )
    )
    return list(result.scalars().all())


async def get_overdue_notice_candidates(db: AsyncSession) -> list[PaymentMonth]:
    """Get ATRASADO payment months that have not had an overdue notice yet."""
    result = await db.execute(
        select(PaymentMonth).where(
            PaymentMonth.payment_status == PaymentStatus.ATRASADO,
            PaymentMonth.overdue_notice_sent_at.is_(None),
        )
    )
    return list(result.scalars().all())


async def get_overdue_payment_months(db: AsyncSession) -> list[PaymentMonth]:
    """Get every ATRASADO payment month, notified or not."""
    result = await db.execute(
        select(PaymentMonth).where(PaymentMonth.payment_status == PaymentStatus.ATRASADO)
    )
    return list(result.scalars().all())


async def mark_reminder_sent(db: AsyncSession, id: UUID) -> bool:
    result = await db.execute(
        update(PaymentMonth)
        .where(PaymentMonth.id == id, PaymentMonth.reminder_sent_at.is_(None))
        .values(reminder_sent_at=datetime.now(UTC))
    )
    await db.commit()
    return result.rowcount == 1


async def mark_overdue_notice_sent(db: AsyncSession, id: UUID) -> bool:
    result = await db.execute(
        update(PaymentMonth)
        .where(PaymentMonth.id == id, PaymentMonth.overdue_notice_sent_at.is_(None))
        .values(overdue_notice_sent_at=datetime.now(UTC))
    )
    await db.commit()
    return result.rowcount == 1


# ============================================
# Invoice Repository
# ============================================


async def get_invoice(db: AsyncSession, id: UUID) -> Invoice | None:
    return await db.get(Invoice, id)


async def get_invoice_for_period(
    db: AsyncSession, enrollment_id: UUID, year: int, month: int
) -> Invoice | None:
    result = await db.execute(
        select(Invoice).where(
            Invoice.enrollment_id == enrollment_id,
            Invoice.year == year,
            Invoice.month == month,
        )
    )
    return result.scalar_one_or_none()


async def create_invoice(
    db: AsyncSession,
    enrollment_id: UUID,
    year: int,
    month: int,
    cora_invoice_id: str,
    code: str,
    amount: int,
    due_date: date,
    digitable_line: str | None = None,
    boleto_url: str | None = None,
    pix_copy_paste: str | None = None,
) -> Invoice:
    """Persist a boleto returned by Cora. ``amount`` is in cents."""
    invoice = Invoice(
        enrollment_id=enrollment_id,
        year=year,
        month=month,
        cora_invoice_id=cora_invoice_id,
        code=code,
        amount=amount,
        due_date=due_date,
        status=InvoiceStatus.OPEN,
        digitable_line=digitable_line,
        boleto_url=boleto_url,
        pix_copy_paste=pix_copy_paste,
    )

    db.add(invoice)
    await db.commit()
    await db.refresh(invoice)

    return invoice


async def update_invoice_status(
    db: AsyncSession,
    invoice: Invoice,
    status: InvoiceStatus,
    **kwargs,
) -> Invoice:
    """
    Update an invoice status and optional fields.

    Raises:
        InvalidStatusTransitionError: If the status change is not allowed
    """
    validate_transition(VALID_INVOICE_TRANSITIONS, "invoice", invoice.status, status)

    invoice.status = status
    for key, value in kwargs.items():
        if hasattr(invoice, key):
            setattr(invoice, key, value)

    await db.commit()
    await db.refresh(invoice)

    return invoice


# ============================================
# NfseInvoice Repository
# ============================================


async def get_nfse_retry_candidates(
    db: AsyncSession, max_retries: int, updated_before: datetime
) -> list[NfseInvoice]:
    """
    Get failed NFSe records eligible for another submission.

    Finds records that:
    1. Are in ``erro`` and not cancelled
    2. Have been retried fewer than ``max_retries`` times
    3. Were last touched before ``updated_before`` (cooldown)
    """
    result = await db.execute(
        select(NfseInvoice).where(
            NfseInvoice.status == NfseStatus.ERRO,
            NfseInvoice.cancelled_at.is_(None),
            NfseInvoice.retry_count < max_retries,
            NfseInvoice.updated_at < updated_before,
        )
    )
    return list(result.scalars().all())


async def get_pending_nfse(db: AsyncSession, created_before: datetime) -> list[NfseInvoice]:
    """Get NFSe records still processing that were created before the cutoff."""
    result = await db.execute(
        select(NfseInvoice).where(
            NfseInvoice.status == NfseStatus.PENDING,
            NfseInvoice.cancelled_at.is_(None),
            NfseInvoice.created_at < created_before,
        )
    )
    return list(result.scalars().all())


async def has_authorized_nfse(
    db: AsyncSession,
    enrollment_id: UUID,
    year: int,
    month: int,
    exclude_id: UUID | None = None,
) -> bool:
    """True if a non-cancelled authorized NFSe already exists for the period."""
    conditions = [
        NfseInvoice.enrollment_id == enrollment_id,
        NfseInvoice.year == year,
        NfseInvoice.month == month,
        NfseInvoice.status == NfseStatus.AUTORIZADO,
        NfseInvoice.cancelled_at.is_(None),
    ]
    if exclude_id is not None:
        conditions.append(NfseInvoice.id != exclude_id)

    result = await db.execute(select(exists().where(*conditions)))
    return bool(result.scalar())


async def update_nfse(
    db: AsyncSession,
    id: UUID,
    status: NfseStatus,
    **kwargs,
) -> NfseInvoice:
    """
    Update an NFSe record status and optional fields.

    Args:
        db: Database session
        id: NfseInvoice UUID
        status: New status to set
        **kwargs: Additional fields to update (e.g. number, pdf_url)

    Returns:
        Updated NfseInvoice

    Raises:
        ValueError: If the record is not found
        InvalidStatusTransitionError: If the status change is not allowed
    """
    nfse = await db.get(NfseInvoice, id)
    if not nfse:
        raise ValueError(f"NFSe record {id} not found")

    validate_transition(VALID_NFSE_TRANSITIONS, "nfse", nfse.status, status)

    nfse.status = status
    for key, value in kwargs.items():
        if hasattr(nfse, key):
            setattr(nfse, key, value)

    await db.commit()
    await db.refresh(nfse)

    return nfse


async def record_nfse_failure(db: AsyncSession, id: UUID, error_message: str) -> None:
    """Store a submission failure without changing the status."""
    await db.execute(
        update(NfseInvoice)
        .where(NfseInvoice.id == id)
        .values(
            error_message=error_message,
            retry_count=NfseInvoice.retry_count + 1,
        )
    )
    await db.commit()


# ============================================
# Finance Audit Log
# ============================================


def _jsonable(value: dict[str, Any] | None) -> dict[str, Any] | None:
    if value is None:
        return None
    clean = {}
    for key, item in value.items():
        if isinstance(item, enum.Enum):
            item = item.value
        elif isinstance(item, (UUID, date, datetime, Decimal)):
            item = str(item)
        clean[key] = item
    return clean


async def log_finance_action(
    db: AsyncSession,
    entity_type: str,
    entity_id: UUID | str,
    action: str,
    performed_by: str,
    old_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
) -> FinanceAuditLog:
    """Append an entry to the finance audit log."""
    entry = FinanceAuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        old_value=_jsonable(old_value),
        new_value=_jsonable(new_value),
        performed_by=performed_by,
    )

    db.add(entry)
    await db.commit()

    return entry
