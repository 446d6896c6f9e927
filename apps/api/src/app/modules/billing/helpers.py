"""
Billing Shared Helpers

Date arithmetic, selection predicates, payload builders and the batch runner
shared by service.py and jobs.py. Everything here is free of database access
so it can be tested directly.
"""

import asyncio
import calendar
import logging
import re
import time
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar
from uuid import UUID
from zoneinfo import ZoneInfo

from app.core.config import settings
from app.core.email import MONTH_NAMES
from app.modules.billing.models import Enrollment, PaymentMonth, PaymentStatus
from app.modules.billing.schemas import JobRunResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Payment statuses that never change again
CLOSED_PAYMENT_STATUSES = frozenset({PaymentStatus.PAGO, PaymentStatus.CANCELADO})


def _valid_day(day: int | None) -> int | None:
    if day is None or day < 1 or day > 31:
        return None
    return day


def billing_today(now: datetime | None = None) -> date:
    """Return today's date in the billing time zone."""
    now = now or datetime.now(UTC)
    return now.astimezone(ZoneInfo(settings.billing_timezone)).date()


def due_date_for(year: int, month: int, due_day: int) -> date:
    """
    Compute the due date of a billing month.

    The day is clamped to the last day of the month, so day 31 in February
    becomes the 28th (or 29th).
    """
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(due_day, last_day))


def boleto_due_date(due: date, today: date) -> date:
    """
    Due date to print on a boleto issued today.

    When the month's due date has already passed, the boleto is issued
    for the same day of the following month (clamped like ``due_date_for``).
    """
    day = due.day
    year, month = due.year, due.month
    while due < today:
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        due = due_date_for(year, month, day)
    return due


def effective_due_day(
    enrollment: Enrollment,
    payment_month: PaymentMonth | None = None,
    default: int | None = None,
) -> int:
    """
    Resolve the due day of a billing month.

    Falls back from the payment month's own override to the enrollment,
    then to its PaymentInfo, then to the configured default (10).
    """
    candidates = [
        payment_month.due_day if payment_month is not None else None,
        enrollment.due_day,
        enrollment.payment_info.due_day if enrollment.payment_info else None,
    ]
    for day in candidates:
        if _valid_day(day) is not None:
            return day
    return default if default is not None else settings.default_due_day


def resolve_monthly_amount(enrollment: Enrollment) -> Decimal | None:
    """
    Resolve the monthly fee of an enrollment.

    Returns:
        The amount, or None when neither the enrollment nor its PaymentInfo
        carries a positive value
    """
    for amount in (
        enrollment.monthly_amount,
        enrollment.payment_info.monthly_amount if enrollment.payment_info else None,
    ):
        if amount is not None and Decimal(amount) > 0:
            return Decimal(amount)
    return None


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def payment_month_due_date(payment_month: PaymentMonth, enrollment: Enrollment) -> date:
    return due_date_for(
        payment_month.year,
        payment_month.month,
        effective_due_day(enrollment, payment_month),
    )


def is_payment_month_overdue(
    payment_month: PaymentMonth,
    enrollment: Enrollment,
    today: date,
    tolerance_days: int = 0,
) -> bool:
    """
    Decide whether an open payment month has become overdue.

    A month is overdue once ``today`` is strictly after its due date plus the
    tolerance. Only EM_ABERTO rows qualify; PAGO and CANCELADO never do.

    Args:
        payment_month: The payment record
        enrollment: Its enrollment (for due day fallback)
        today: Current date in the billing time zone
        tolerance_days: Grace days after the due date

    Returns:
        True if the row should be flipped to ATRASADO
    """
    if payment_month.payment_status != PaymentStatus.EM_ABERTO:
        return False
    due = payment_month_due_date(payment_month, enrollment)
    return today > due + timedelta(days=tolerance_days)


def is_due_within(due: date, today: date, days: int) -> bool:
    """True when ``due`` falls in the closed window [today, today + days]."""
    return today <= due <= today + timedelta(days=days)


def invoice_code(enrollment_id: UUID | str, year: int, month: int) -> str:
    """Stable code for a monthly boleto, also used as the Cora idempotency key."""
    return f"{enrollment_id}-{year}-{month}"


def only_digits(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def is_valid_cpf(cpf: str | None) -> bool:
    """Validate a CPF number including its two check digits."""
    digits = only_digits(cpf)
    if len(digits) != 11 or digits == digits[0] * 11:
        return False

    for position in (9, 10):
        total = sum(int(digits[i]) * (position + 1 - i) for i in range(position))
        check = (total * 10) % 11 % 10
        if check != int(digits[position]):
            return False
    return True


def generate_nfse_ref(
    enrollment_id: UUID | str,
    year: int,
    month: int,
    prefix: str | None = None,
) -> str:
    """
    Generate a fresh Focus NFe reference.

    Every submission needs a reference Focus has never seen, so the current
    time in milliseconds is appended.
    """
    prefix = prefix or settings.nfse_ref_prefix
    timestamp = int(time.time() * 1000)
    return f"{prefix}-{enrollment_id}-{year}-{month:02d}-{timestamp}"


def build_nfse_payload(
    student_name: str,
    cpf: str,
    amount: Decimal,
    year: int,
    month: int,
    email: str | None = None,
    issue_date: date | None = None,
) -> dict[str, Any]:
    """
    Build the Focus NFe (ABRASF) payload for one month of classes.

    Args:
        student_name: Service taker name
        cpf: Service taker CPF, any formatting
        amount: Service value in reais
        year: Billing year
        month: Billing month (1-12)
        email: Optional taker email
        issue_date: Issue date, defaults to today in the billing time zone

    Returns:
        The JSON body for POST /v2/nfse
    """
    reference = f"{MONTH_NAMES[month - 1]}/{year}"
    description = (
        f"Combo de aulas de idioma.\nPagamento referente ao mês de {reference}.\n"
        f"Aluno {student_name}."
    )

    taker: dict[str, Any] = {"razao_social": student_name}
    cpf_digits = only_digits(cpf)
    if len(cpf_digits) == 11:
        taker["cpf"] = cpf_digits
    if email:
        taker["email"] = email

    return {
        "data_emissao": (issue_date or billing_today()).isoformat(),
        "natureza_operacao": "1",
        "regime_especial_tributacao": "6",
        "optante_simples_nacional": True,
        "incentivador_cultural": False,
        "prestador": {
            "cnpj": only_digits(settings.nfse_provider_cnpj),
            "inscricao_municipal": settings.nfse_provider_municipal_registration,
            "codigo_municipio": settings.nfse_provider_city_code,
        },
        "tomador": taker,
        "servico": {
            "aliquota": 0,
            "discriminacao": description,
            "iss_retido": False,
            "item_lista_servico": settings.nfse_service_item,
            "codigo_cnae": settings.nfse_cnae_code,
            "valor_servicos": float(amount),
            "codigo_municipio": settings.nfse_provider_city_code,
        },
    }


def _default_item_id(item: Any) -> object:
    return getattr(item, "id", item)


async def run_batch(
    items: Iterable[T],
    process: Callable[[T], Awaitable[str]],
    result: JobRunResult,
    item_id: Callable[[T], object] = _default_item_id,
    batch_size: int | None = None,
    delay_seconds: float = 0.0,
) -> JobRunResult:
    """
    Run ``process`` over every item, isolating failures.

    ``process`` returns an outcome label. Labels starting with "skipped" count
    as skipped, anything else as processed; every label is tallied in
    ``result.counts``. An exception is logged and recorded in ``result.errors``
    and the loop moves on to the next item.

    Args:
        items: Candidates selected by the job
        process: Async per-item handler
        result: Result object to fill in
        item_id: Extracts the id reported in errors
        batch_size: Pause after every ``batch_size`` items
        delay_seconds: Length of that pause

    Returns:
        The same ``result``
    """
    for index, item in enumerate(items):
        if batch_size and delay_seconds and index > 0 and index % batch_size == 0:
            await asyncio.sleep(delay_seconds)

        record_id = item_id(item)
        try:
            outcome = await process(item)
        except Exception as e:
            logger.error(f"{result.job}: failed to process {record_id}: {e}", exc_info=True)
            result.add_error(record_id, str(e) or e.__class__.__name__)
            continue

        if outcome.startswith("skipped"):
            result.skipped += 1
        else:
            result.processed += 1
        result.bump(outcome)

    return result
