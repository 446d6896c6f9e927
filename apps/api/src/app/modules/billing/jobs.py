"""
Billing Background Jobs

Scheduled tasks for the monthly billing cycle:
1. Generate boletos for the current month (daily)
2. Mark open payment months as overdue (daily)
3. Resubmit failed NFSe (daily)
4. Poll pending NFSe at Focus NFe (every 5 minutes)
5. Send payment reminders and overdue notices, deactivate long-overdue
   enrollments (daily)

Design Principles:
- Jobs are idempotent (safe to run multiple times, and concurrently)
- Every run re-reads state from the database; nothing is cached between runs
- Jobs handle their own database sessions, one per processed record
- A failing record is logged and reported in the result, the job moves on
- Gateway features that are not configured turn the job into a no-op

Schedule (UTC, BRT = UTC-3):
- mark-overdue            0 8 * * *
- generate-invoices       0 10 * * *
- nfse-retry              0 10 * * *
- payment-notifications   0 12 * * *
- nfse-status             */5 * * * *

Jobs can also be triggered manually via the /cron endpoints.
"""

import logging
from datetime import UTC, date, datetime, timedelta
from uuid import UUID

from app.core.config import settings
from app.core.cora import CoraClient, get_cora_client, is_cora_configured
from app.core.database import async_session_maker
from app.core.email import (
    send_enrollment_deactivated,
    send_payment_overdue_notice,
    send_payment_reminder,
)
from app.core.nfse import (
    STATUS_AUTHORIZED,
    STATUS_CANCELLED,
    STATUS_ERROR,
    STATUS_PENDING,
    FocusNfeClient,
    NfseAPIError,
    get_nfse_client,
    is_nfse_enabled,
)
from app.core.scheduler import JobDefinition, SchedulerHandle
from app.modules.billing import repository, service
from app.modules.billing.helpers import (
    billing_today,
    build_nfse_payload,
    generate_nfse_ref,
    is_due_within,
    is_payment_month_overdue,
    is_valid_cpf,
    payment_month_due_date,
    resolve_monthly_amount,
    run_batch,
)
from app.modules.billing.models import (
    Enrollment,
    EnrollmentStatus,
    NfseInvoice,
    NfseStatus,
    PaymentMonth,
    PaymentStatus,
)
from app.modules.billing.schemas import JobRunResult

logger = logging.getLogger(__name__)

# Job names: scheduler ids, endpoint paths and result labels
JOB_GENERATE_INVOICES = "generate-invoices"
JOB_MARK_OVERDUE = "mark-overdue"
JOB_NFSE_RETRY = "nfse-retry"
JOB_NFSE_STATUS = "nfse-status"
JOB_PAYMENT_NOTIFICATIONS = "payment-notifications"

NOTIFICATION_REMINDER = "reminder"
NOTIFICATION_OVERDUE = "overdue"
NOTIFICATION_DEACTIVATION = "deactivation"

_NFSE_LOCAL_STATUS = {
    STATUS_PENDING: NfseStatus.PENDING,
    STATUS_AUTHORIZED: NfseStatus.AUTORIZADO,
    STATUS_ERROR: NfseStatus.ERRO,
}


# ============================================
# Generate Invoices
# ============================================


async def _process_generate_invoice(enrollment: Enrollment, cora: CoraClient) -> str:
    today = billing_today()
    async with async_session_maker() as db:
        return await service.generate_monthly_invoice(
            db,
            enrollment,
            year=today.year,
            month=today.month,
            today=today,
            cora=cora,
        )


async def run_generate_invoices() -> JobRunResult:
    """
    Issue the current month's boleto for every ACTIVE enrollment.

    Runs daily. A boleto is issued once the due date is at most
    ``invoice_days_before_due`` days away; months already linked to a boleto
    are skipped, so repeated runs issue nothing new.

    Returns:
        Job result with per-enrollment errors
    """
    result = JobRunResult(job=JOB_GENERATE_INVOICES)

    if not is_cora_configured():
        logger.info("Cora not configured, skipping invoice generation")
        result.message = "Cora integration not configured"
        return result

    cora = get_cora_client()

    async with async_session_maker() as db:
        enrollments = await repository.get_active_enrollments(db)

    logger.info(f"Found {len(enrollments)} active enrollments for invoice generation")

    await run_batch(
        enrollments,
        lambda enrollment: _process_generate_invoice(enrollment, cora),
        result,
        batch_size=settings.invoice_batch_size,
        delay_seconds=settings.invoice_batch_delay_seconds,
    )

    logger.info(
        f"Invoice generation completed: {result.processed} processed, "
        f"{result.skipped} skipped, {len(result.errors)} errors"
    )
    return result


# ============================================
# Mark Overdue
# ============================================


async def _process_mark_overdue(payment_month: PaymentMonth) -> str:
    async with async_session_maker() as db:
        changed = await repository.mark_payment_month_overdue(db, payment_month.id)
        if not changed:
            # Paid or already flipped since it was selected
            return "skipped_status_changed"

        await repository.log_finance_action(
            db,
            entity_type="PAYMENT_MONTH",
            entity_id=payment_month.id,
            action="OVERDUE_MARKED",
            performed_by="CRON_MARK_OVERDUE",
            old_value={"payment_status": PaymentStatus.EM_ABERTO},
            new_value={
                "payment_status": PaymentStatus.ATRASADO,
                "enrollment_id": payment_month.enrollment_id,
                "year": payment_month.year,
                "month": payment_month.month,
            },
        )

    logger.info(
        f"Marked payment month {payment_month.year}-{payment_month.month:02d} "
        f"of enrollment {payment_month.enrollment_id} as overdue"
    )
    return "marked_overdue"


async def run_mark_overdue() -> JobRunResult:
    """
    Flip open payment months whose due date has passed to ATRASADO.

    A month with due day 10 is still open on the 10th and becomes overdue
    on the 11th (billing time zone, plus ``overdue_tolerance_days``).
    """
    result = JobRunResult(job=JOB_MARK_OVERDUE)
    today = billing_today()

    async with async_session_maker() as db:
        candidates = await repository.get_open_payment_months_until(db, today.year, today.month)

    overdue = [
        payment_month
        for payment_month in candidates
        if is_payment_month_overdue(
            payment_month,
            payment_month.enrollment,
            today,
            tolerance_days=settings.overdue_tolerance_days,
        )
    ]

    logger.info(f"Found {len(overdue)} overdue payment months out of {len(candidates)} open")

    await run_batch(overdue, _process_mark_overdue, result)

    logger.info(f"Mark overdue completed: {result.processed} marked, {len(result.errors)} errors")
    return result


# ============================================
# NFSe Retry
# ============================================


async def _process_nfse_retry(nfse: NfseInvoice, client: FocusNfeClient) -> str:
    async with async_session_maker() as db:
        if await repository.has_authorized_nfse(
            db, nfse.enrollment_id, nfse.year, nfse.month, exclude_id=nfse.id
        ):
            logger.info(
                f"NFSe {nfse.id} not resubmitted: an authorized NFSe already exists "
                f"for enrollment {nfse.enrollment_id} {nfse.year}-{nfse.month:02d}"
            )
            return "skipped_duplicate"

        enrollment = nfse.enrollment
        amount = resolve_monthly_amount(enrollment) if enrollment else None
        if enrollment is None or not is_valid_cpf(enrollment.cpf) or amount is None:
            # Counts toward nfse_max_retries
            message = f"NFSe {nfse.id}: enrollment has no valid CPF or monthly amount"
            await repository.record_nfse_failure(db, nfse.id, message)
            raise service.MissingBillingDataError(message)

        new_ref = generate_nfse_ref(nfse.enrollment_id, nfse.year, nfse.month)
        payload = build_nfse_payload(
            student_name=enrollment.name,
            cpf=enrollment.cpf,
            amount=amount,
            year=nfse.year,
            month=nfse.month,
            email=enrollment.email,
        )

        try:
            response = await client.submit(new_ref, payload)
        except NfseAPIError as e:
            await repository.record_nfse_failure(
                db, nfse.id, f"Resubmission failed: {e.message}"
            )
            raise service.GatewayError(f"Focus NFe rejected resubmission: {e.message}") from e

        new_status = _NFSE_LOCAL_STATUS.get(response.normalized_status, NfseStatus.ERRO)
        await repository.update_nfse(
            db,
            nfse.id,
            new_status,
            focus_ref=new_ref,
            amount=amount,
            retry_count=nfse.retry_count + 1,
            number=response.numero,
            verification_code=response.codigo_verificacao,
            pdf_url=response.url,
            xml_url=response.caminho_xml_nota_fiscal,
            error_message=response.error_message,
        )

        await repository.log_finance_action(
            db,
            entity_type="NFSE",
            entity_id=nfse.id,
            action="NFSE_RESUBMITTED",
            performed_by="CRON_NFSE_RETRY",
            old_value={"status": nfse.status, "focus_ref": nfse.focus_ref},
            new_value={"status": new_status, "focus_ref": new_ref},
        )

    if new_status == NfseStatus.ERRO:
        return "failed_again"
    return "resubmitted"


async def run_nfse_retry() -> JobRunResult:
    """
    Resubmit NFSe records that failed authorization.

    Each attempt uses a new Focus reference. A record is never resubmitted
    when its period already has an authorized, non-cancelled NFSe.
    """
    result = JobRunResult(job=JOB_NFSE_RETRY)

    if not is_nfse_enabled():
        logger.info("NFSe disabled, skipping retry")
        result.message = "NFSe disabled"
        return result

    client = get_nfse_client()
    cooldown_cutoff = datetime.now(UTC) - timedelta(minutes=settings.nfse_retry_cooldown_minutes)

    async with async_session_maker() as db:
        candidates = await repository.get_nfse_retry_candidates(
            db, settings.nfse_max_retries, cooldown_cutoff
        )

    logger.info(f"Found {len(candidates)} failed NFSe eligible for retry")

    await run_batch(candidates, lambda nfse: _process_nfse_retry(nfse, client), result)

    logger.info(
        f"NFSe retry completed: {result.processed} resubmitted, "
        f"{result.skipped} skipped, {len(result.errors)} errors"
    )
    return result


# ============================================
# NFSe Status
# ============================================


async def _process_nfse_status(nfse: NfseInvoice, client: FocusNfeClient) -> str:
    try:
        response = await client.consult(nfse.focus_ref)
    except NfseAPIError as e:
        raise service.GatewayError(f"Focus NFe status query failed: {e.message}") from e

    status = response.normalized_status
    if status == STATUS_PENDING:
        return "still_pending"

    async with async_session_maker() as db:
        if status == STATUS_AUTHORIZED:
            await repository.update_nfse(
                db,
                nfse.id,
                NfseStatus.AUTORIZADO,
                number=response.numero,
                verification_code=response.codigo_verificacao,
                pdf_url=response.url,
                xml_url=response.caminho_xml_nota_fiscal,
                error_message=None,
            )
            logger.info(f"NFSe {nfse.focus_ref} authorized, number {response.numero}")
            return "authorized"

        if status == STATUS_CANCELLED:
            await repository.update_nfse(
                db,
                nfse.id,
                NfseStatus.PENDING,
                cancelled_at=datetime.now(UTC),
                error_message="Cancelled at Focus NFe",
            )
            logger.warning(f"NFSe {nfse.focus_ref} reported as cancelled by Focus NFe")
            return "cancelled"

        await repository.update_nfse(
            db,
            nfse.id,
            NfseStatus.ERRO,
            error_message=response.error_message or "Authorization failed",
        )
        logger.warning(f"NFSe {nfse.focus_ref} rejected: {response.error_message}")
        return "failed"


async def run_nfse_status() -> JobRunResult:
    """
    Poll Focus NFe for NFSe records still processing.

    Only records older than ``nfse_status_min_age_minutes`` are polled.
    Counts: authorized, failed, still_pending.
    """
    result = JobRunResult(job=JOB_NFSE_STATUS)

    if not is_nfse_enabled():
        result.message = "NFSe disabled"
        return result

    client = get_nfse_client()
    created_before = datetime.now(UTC) - timedelta(minutes=settings.nfse_status_min_age_minutes)

    async with async_session_maker() as db:
        pending = await repository.get_pending_nfse(db, created_before)

    for key in ("authorized", "failed", "still_pending"):
        result.counts.setdefault(key, 0)

    await run_batch(pending, lambda nfse: _process_nfse_status(nfse, client), result)

    logger.info(
        f"NFSe status completed: {result.counts['authorized']} authorized, "
        f"{result.counts['failed']} failed, {result.counts['still_pending']} still pending"
    )
    return result


# ============================================
# Payment Notifications
# ============================================


async def _process_payment_notification(item: tuple[str, PaymentMonth]) -> str:
    kind, payment_month = item
    enrollment = payment_month.enrollment

    email = (enrollment.email or "").strip()
    if not email:
        return "skipped_no_email"

    due_date = payment_month_due_date(payment_month, enrollment)
    amount = resolve_monthly_amount(enrollment)

    async with async_session_maker() as db:
        boleto_url = None
        if payment_month.invoice_id is not None:
            invoice = await repository.get_invoice(db, payment_month.invoice_id)
            boleto_url = invoice.boleto_url if invoice else None

        send = send_payment_reminder if kind == NOTIFICATION_REMINDER else send_payment_overdue_notice
        sent = await send(
            to_email=email,
            student_name=enrollment.name,
            year=payment_month.year,
            month=payment_month.month,
            due_date=due_date,
            amount=amount,
            boleto_url=boleto_url,
        )

        # Stamp only after a successful send so failures are retried next run
        if not sent:
            raise service.NotificationDeliveryError(f"Failed to send {kind} email to {email}")

        if kind == NOTIFICATION_REMINDER:
            await repository.mark_reminder_sent(db, payment_month.id)
            return "reminders_sent"

        await repository.mark_overdue_notice_sent(db, payment_month.id)
        return "overdue_notices_sent"


async def _process_deactivation(payment_month: PaymentMonth, today: date) -> str:
    enrollment = payment_month.enrollment
    days_overdue = (today - payment_month_due_date(payment_month, enrollment)).days

    async with async_session_maker() as db:
        changed = await repository.deactivate_enrollment(db, enrollment.id)
        if not changed:
            # Deactivated or reactivated by someone else since it was selected
            return "skipped_status_changed"

        await repository.log_finance_action(
            db,
            entity_type="ENROLLMENT",
            entity_id=enrollment.id,
            action="AUTO_DEACTIVATED_OVERDUE",
            performed_by="CRON_PAYMENT_NOTIFICATIONS",
            old_value={"status": EnrollmentStatus.ACTIVE},
            new_value={
                "status": EnrollmentStatus.INACTIVE,
                "days_overdue": days_overdue,
                "year": payment_month.year,
                "month": payment_month.month,
            },
        )

    logger.warning(
        f"Enrollment {enrollment.id} deactivated: {payment_month.year}-{payment_month.month:02d} "
        f"overdue for {days_overdue} days"
    )

    email = (enrollment.email or "").strip()
    if email:
        sent = await send_enrollment_deactivated(
            to_email=email,
            student_name=enrollment.name,
            year=payment_month.year,
            month=payment_month.month,
            days_overdue=days_overdue,
        )
        if not sent:
            raise service.NotificationDeliveryError(f"Failed to send deactivation email to {email}")

    return "deactivated"


def _select_deactivations(
    overdue_months: list[PaymentMonth], today: date, threshold_days: int
) -> list[PaymentMonth]:
    """
    Pick, per ACTIVE enrollment, its oldest ATRASADO month overdue longer
    than ``threshold_days``.
    """
    selected: dict[UUID, PaymentMonth] = {}
    for payment_month in overdue_months:
        enrollment = payment_month.enrollment
        if enrollment.status != EnrollmentStatus.ACTIVE:
            continue
        due = payment_month_due_date(payment_month, enrollment)
        if (today - due).days <= threshold_days:
            continue
        current = selected.get(enrollment.id)
        if current is None or due < payment_month_due_date(current, enrollment):
            selected[enrollment.id] = payment_month
    return list(selected.values())


async def _process_notification_item(item: tuple[str, PaymentMonth], today: date) -> str:
    kind, payment_month = item
    if kind == NOTIFICATION_DEACTIVATION:
        return await _process_deactivation(payment_month, today)
    return await _process_payment_notification(item)


async def run_payment_notifications() -> JobRunResult:
    """
    Send payment reminders and overdue notices.

    Reminders go to open months due within ``notification_lookahead_days``;
    overdue notices go to every ATRASADO month. Each is sent once per month.

    Enrollments with a month overdue longer than ``overdue_deactivation_days``
    are set INACTIVE instead, with an audit entry and a suspension email.
    """
    result = JobRunResult(job=JOB_PAYMENT_NOTIFICATIONS)
    today = billing_today()
    threshold = settings.overdue_deactivation_days

    async with async_session_maker() as db:
        reminder_candidates = await repository.get_reminder_candidates(db)
        overdue_candidates = await repository.get_overdue_notice_candidates(db)
        deactivations = (
            _select_deactivations(
                await repository.get_overdue_payment_months(db), today, threshold
            )
            if threshold > 0
            else []
        )

    deactivating = {payment_month.enrollment_id for payment_month in deactivations}

    items: list[tuple[str, PaymentMonth]] = [
        (NOTIFICATION_REMINDER, payment_month)
        for payment_month in reminder_candidates
        if payment_month.enrollment.status == EnrollmentStatus.ACTIVE
        and payment_month.enrollment_id not in deactivating
        and is_due_within(
            payment_month_due_date(payment_month, payment_month.enrollment),
            today,
            settings.notification_lookahead_days,
        )
    ]
    items += [
        (NOTIFICATION_OVERDUE, payment_month)
        for payment_month in overdue_candidates
        if payment_month.enrollment.status == EnrollmentStatus.ACTIVE
        and payment_month.enrollment_id not in deactivating
    ]
    items += [(NOTIFICATION_DEACTIVATION, payment_month) for payment_month in deactivations]

    logger.info(f"Found {len(items)} payment notifications to send")

    await run_batch(
        items,
        lambda item: _process_notification_item(item, today),
        result,
        item_id=lambda item: item[1].id,
        batch_size=settings.notification_batch_size,
        delay_seconds=settings.notification_batch_delay_seconds,
    )

    logger.info(
        f"Payment notifications completed: {result.processed} sent, "
        f"{result.skipped} skipped, {len(result.errors)} errors"
    )
    return result


# ============================================
# Job Registration
# ============================================


def get_billing_jobs() -> list[JobDefinition]:
    """Return the billing job definitions with their configured schedules."""
    return [
        JobDefinition(
            JOB_MARK_OVERDUE,
            settings.cron_mark_overdue,
            run_mark_overdue,
            "Failed to mark overdue payments",
        ),
        JobDefinition(
            JOB_GENERATE_INVOICES,
            settings.cron_generate_invoices,
            run_generate_invoices,
            "Failed to generate invoices",
        ),
        JobDefinition(
            JOB_NFSE_RETRY,
            settings.cron_nfse_retry,
            run_nfse_retry,
            "Failed to retry NFSe",
        ),
        JobDefinition(
            JOB_PAYMENT_NOTIFICATIONS,
            settings.cron_payment_notifications,
            run_payment_notifications,
            "Failed to send payment notifications",
        ),
        JobDefinition(
            JOB_NFSE_STATUS,
            settings.cron_nfse_status,
            run_nfse_status,
            "Failed to update NFSe status",
        ),
    ]


def get_billing_job(name: str) -> JobDefinition | None:
    for job in get_billing_jobs():
        if job.name == name:
            return job
    return None


def register_billing_jobs(handle: SchedulerHandle) -> int:
    """
    Register all billing jobs with the scheduler.

    Safe to call more than once: the handle ignores a second initialization.

    Returns:
        Number of jobs registered by this call
    """
    count = handle.init_scheduler(get_billing_jobs())
    logger.info(f"Billing jobs registered: {count}")
    return count
