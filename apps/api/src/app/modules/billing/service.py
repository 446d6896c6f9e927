"""
Billing Service Layer

Business logic for monthly boletos. Orchestrates the repository, the Cora
gateway and the finance audit log.

This module implements:
1. Monthly invoice generation:
   - Ensure the payment month exists (EM_ABERTO)
   - Skip closed months, linked months and months not yet inside the
     issuing window
   - A month whose due day has passed gets a boleto due the following month
   - Re-link a boleto that exists locally but lost its link instead of
     issuing a second one
   - Create the boleto at Cora with an idempotency key derived from
     (enrollment, year, month)

2. Invoice cancellation:
   - Paid boletos cannot be cancelled
   - Cancelling an already cancelled boleto is a no-op
"""

import logging
from datetime import UTC, date, datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.cora import CoraAPIError, CoraClient, CoraInvoiceRequest
from app.core.email import MONTH_NAMES
from app.modules.billing import repository
from app.modules.billing.helpers import (
    CLOSED_PAYMENT_STATUSES,
    boleto_due_date,
    invoice_code,
    is_valid_cpf,
    payment_month_due_date,
    resolve_monthly_amount,
    to_cents,
)
from app.modules.billing.models import Enrollment, Invoice, InvoiceStatus

logger = logging.getLogger(__name__)


class BillingServiceError(Exception):
    """Base exception for billing service errors."""

    def __init__(self, message: str, error_code: str, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


class InvoiceNotFoundError(BillingServiceError):
    """Raised when an invoice is not found."""

    def __init__(self, invoice_id: UUID | None = None):
        message = f"Invoice {invoice_id} not found" if invoice_id else "Invoice not found"
        super().__init__(
            message=message,
            error_code="INVOICE_NOT_FOUND",
            status_code=404,
        )


class InvoiceAlreadyPaidError(BillingServiceError):
    """Raised when trying to cancel a paid invoice."""

    def __init__(self, invoice_id: UUID):
        super().__init__(
            message=f"Invoice {invoice_id} is already paid and cannot be cancelled",
            error_code="INVOICE_ALREADY_PAID",
            status_code=409,
        )


class MissingBillingDataError(BillingServiceError):
    """Raised when an enrollment lacks data required by a gateway."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="MISSING_BILLING_DATA",
            status_code=422,
        )


class NotificationDeliveryError(BillingServiceError):
    """Raised when a payment notification email could not be sent."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="NOTIFICATION_NOT_SENT",
            status_code=502,
        )


class GatewayError(BillingServiceError):
    """Raised when an external gateway call fails."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="GATEWAY_ERROR",
            status_code=502,
        )


async def generate_monthly_invoice(
    db: AsyncSession,
    enrollment: Enrollment,
    year: int,
    month: int,
    today: date,
    cora: CoraClient,
    performed_by: str = "CRON_GENERATE_INVOICES",
) -> str:
    """
    Issue the boleto of one enrollment for one billing month.

    Args:
        db: Database session
        enrollment: ACTIVE enrollment (PaymentInfo loaded)
        year: Billing year
        month: Billing month (1-12)
        today: Current date in the billing time zone
        cora: Cora gateway client
        performed_by: Audit log actor

    Returns:
        Outcome label: "created", "relinked" or a "skipped_*" reason

    Raises:
        MissingBillingDataError: CPF or email missing or invalid
        GatewayError: Cora rejected the request
    """
    amount = resolve_monthly_amount(enrollment)
    if amount is None:
        return "skipped_no_amount"

    payment_month = await repository.get_or_create_payment_month(db, enrollment.id, year, month)

    if payment_month.payment_status in CLOSED_PAYMENT_STATUSES:
        return "skipped_closed"
    if payment_month.invoice_id is not None:
        return "skipped_already_invoiced"

    due_date = payment_month_due_date(payment_month, enrollment)
    days_until_due = (due_date - today).days
    if days_until_due > settings.invoice_days_before_due:
        return "skipped_not_due_yet"
    # Issued after the due day: the boleto falls due next month instead
    due_date = boleto_due_date(due_date, today)

    # A boleto issued earlier whose link was lost: attach it again
    existing = await repository.get_invoice_for_period(db, enrollment.id, year, month)
    if existing is not None:
        if existing.status == InvoiceStatus.CANCELLED:
            return "skipped_cancelled_invoice"
        await repository.link_invoice(db, payment_month.id, existing.id)
        await repository.log_finance_action(
            db,
            entity_type="PAYMENT_MONTH",
            entity_id=payment_month.id,
            action="INVOICE_RELINKED",
            performed_by=performed_by,
            new_value={"invoice_id": existing.id, "year": year, "month": month},
        )
        logger.info(f"Re-linked invoice {existing.id} to enrollment {enrollment.id} {year}-{month:02d}")
        return "relinked"

    if not is_valid_cpf(enrollment.cpf):
        raise MissingBillingDataError(f"Invalid CPF for {enrollment.name}")
    if not enrollment.email or not enrollment.email.strip():
        raise MissingBillingDataError(f"Missing email for {enrollment.name}")

    code = invoice_code(enrollment.id, year, month)
    request = CoraInvoiceRequest(
        code=code,
        customer_name=enrollment.name,
        customer_document=enrollment.cpf,
        customer_email=enrollment.email.strip(),
        service_name=f"Mensalidade {MONTH_NAMES[month - 1]} {year} - {settings.school_name}",
        amount_cents=to_cents(amount),
        due_date=due_date,
        fine_percent=settings.cora_fine_percent,
        interest_percent=settings.cora_interest_percent,
    )

    try:
        cora_invoice = await cora.create_invoice(request)
    except CoraAPIError as e:
        raise GatewayError(f"Cora rejected invoice {code}: {e.message}") from e

    invoice = await repository.create_invoice(
        db,
        enrollment_id=enrollment.id,
        year=year,
        month=month,
        cora_invoice_id=cora_invoice.id,
        code=code,
        amount=request.amount_cents,
        due_date=due_date,
        digitable_line=cora_invoice.digitable_line,
        boleto_url=cora_invoice.boleto_url,
        pix_copy_paste=cora_invoice.pix_copy_paste,
    )
    await repository.link_invoice(db, payment_month.id, invoice.id)

    await repository.log_finance_action(
        db,
        entity_type="INVOICE",
        entity_id=invoice.id,
        action="INVOICE_GENERATED",
        performed_by=performed_by,
        new_value={
            "enrollment_id": enrollment.id,
            "year": year,
            "month": month,
            "amount": request.amount_cents,
            "due_date": due_date,
            "cora_invoice_id": cora_invoice.id,
        },
    )

    logger.info(f"Generated invoice {invoice.id} for enrollment {enrollment.id} {year}-{month:02d}")
    return "created"


async def cancel_invoice(
    db: AsyncSession,
    invoice_id: UUID,
    performed_by: str,
    cora: CoraClient,
) -> Invoice:
    """
    Cancel a boleto at Cora and locally.

    Args:
        db: Database session
        invoice_id: Local invoice UUID
        performed_by: Audit log actor (admin id)
        cora: Cora gateway client

    Returns:
        The cancelled invoice (unchanged if it was already cancelled)

    Raises:
        InvoiceNotFoundError: Unknown invoice
        InvoiceAlreadyPaidError: The invoice is PAID
        GatewayError: Cora refused the cancellation
    """
    invoice = await repository.get_invoice(db, invoice_id)
    if not invoice:
        raise InvoiceNotFoundError(invoice_id)

    if invoice.status == InvoiceStatus.PAID:
        raise InvoiceAlreadyPaidError(invoice_id)
    if invoice.status == InvoiceStatus.CANCELLED:
        logger.info(f"Invoice {invoice_id} already cancelled, nothing to do")
        return invoice

    try:
        await cora.cancel_invoice(invoice.cora_invoice_id)
    except CoraAPIError as e:
        raise GatewayError(f"Cora refused to cancel invoice {invoice_id}: {e.message}") from e

    old_status = invoice.status
    invoice = await repository.update_invoice_status(
        db,
        invoice,
        InvoiceStatus.CANCELLED,
        cancelled_at=datetime.now(UTC),
    )

    await repository.log_finance_action(
        db,
        entity_type="INVOICE",
        entity_id=invoice.id,
        action="INVOICE_CANCELLED",
        performed_by=performed_by,
        old_value={"status": old_status},
        new_value={"status": InvoiceStatus.CANCELLED},
    )

    logger.info(f"Invoice {invoice_id} cancelled by {performed_by}")
    return invoice
