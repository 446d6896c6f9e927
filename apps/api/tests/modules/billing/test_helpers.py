"""
Unit tests for billing helpers.

These tests cover:
- Due date computation and due day / amount fallbacks
- Overdue selection boundary and closed statuses
- Billing time zone
- CPF validation, invoice codes, NFSe refs and payloads
- Batch runner failure isolation and throttling
"""

import re
from datetime import UTC, date, datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from app.modules.billing.helpers import (
    billing_today,
    boleto_due_date,
    build_nfse_payload,
    due_date_for,
    effective_due_day,
    generate_nfse_ref,
    invoice_code,
    is_due_within,
    is_payment_month_overdue,
    is_valid_cpf,
    resolve_monthly_amount,
    run_batch,
    to_cents,
)
from app.modules.billing.models import PaymentStatus
from app.modules.billing.schemas import JobRunResult


class TestDueDate:
    """Tests for due date computation."""

    def test_due_date_regular_day(self):
        assert due_date_for(2026, 3, 10) == date(2026, 3, 10)

    def test_due_date_clamped_to_end_of_february(self):
        assert due_date_for(2026, 2, 31) == date(2026, 2, 28)

    def test_due_date_clamped_in_leap_year(self):
        assert due_date_for(2028, 2, 30) == date(2028, 2, 29)

    def test_due_date_clamped_in_30_day_month(self):
        assert due_date_for(2026, 4, 31) == date(2026, 4, 30)


class TestBoletoDueDate:
    """Tests for the due date printed on a newly issued boleto."""

    def test_future_due_date_is_kept(self):
        assert boleto_due_date(date(2026, 3, 10), date(2026, 3, 1)) == date(2026, 3, 10)

    def test_due_today_is_kept(self):
        assert boleto_due_date(date(2026, 3, 10), date(2026, 3, 10)) == date(2026, 3, 10)

    def test_passed_due_date_rolls_to_next_month(self):
        assert boleto_due_date(date(2026, 3, 5), date(2026, 3, 6)) == date(2026, 4, 5)

    def test_rolls_across_year_end(self):
        assert boleto_due_date(date(2026, 12, 5), date(2026, 12, 20)) == date(2027, 1, 5)

    def test_rolled_date_is_clamped(self):
        assert boleto_due_date(date(2026, 1, 31), date(2026, 2, 2)) == date(2026, 2, 28)


class TestEffectiveDueDay:
    """Tests for the due day fallback chain."""

    def test_payment_month_override_wins(self, make_enrollment, make_payment_month):
        enrollment = make_enrollment(due_day=10)
        payment_month = make_payment_month(enrollment, due_day=20)
        assert effective_due_day(enrollment, payment_month) == 20

    def test_falls_back_to_enrollment(self, make_enrollment, make_payment_month):
        enrollment = make_enrollment(due_day=15)
        payment_month = make_payment_month(enrollment)
        assert effective_due_day(enrollment, payment_month) == 15

    def test_falls_back_to_payment_info(self, make_enrollment, make_payment_info):
        enrollment = make_enrollment(due_day=None, payment_info=make_payment_info(due_day=5))
        assert effective_due_day(enrollment) == 5

    def test_falls_back_to_default(self, make_enrollment):
        enrollment = make_enrollment(due_day=None)
        assert effective_due_day(enrollment) == 10

    def test_out_of_range_day_is_ignored(self, make_enrollment, make_payment_info):
        enrollment = make_enrollment(due_day=42, payment_info=make_payment_info(due_day=7))
        assert effective_due_day(enrollment) == 7


class TestResolveMonthlyAmount:
    """Tests for the monthly amount fallback."""

    def test_enrollment_amount(self, make_enrollment):
        enrollment = make_enrollment(monthly_amount=Decimal("300.00"))
        assert resolve_monthly_amount(enrollment) == Decimal("300.00")

    def test_payment_info_amount(self, make_enrollment, make_payment_info):
        enrollment = make_enrollment(
            monthly_amount=None,
            payment_info=make_payment_info(monthly_amount=Decimal("250.50")),
        )
        assert resolve_monthly_amount(enrollment) == Decimal("250.50")

    def test_zero_amount_is_not_determinable(self, make_enrollment):
        enrollment = make_enrollment(monthly_amount=Decimal("0"))
        assert resolve_monthly_amount(enrollment) is None

    def test_missing_amount(self, make_enrollment):
        enrollment = make_enrollment(monthly_amount=None)
        assert resolve_monthly_amount(enrollment) is None

    def test_to_cents_rounds_half_up(self):
        assert to_cents(Decimal("450.00")) == 45000
        assert to_cents(Decimal("10.005")) == 1001


class TestIsPaymentMonthOverdue:
    """Tests for the overdue selection predicate."""

    def test_not_overdue_on_due_date(self, make_enrollment, make_payment_month):
        """Due day 10: still open on March 10."""
        payment_month = make_payment_month(make_enrollment(due_day=10))
        assert not is_payment_month_overdue(
            payment_month, payment_month.enrollment, date(2026, 3, 10)
        )

    def test_overdue_day_after_due_date(self, make_enrollment, make_payment_month):
        """Due day 10: overdue on March 11."""
        payment_month = make_payment_month(make_enrollment(due_day=10))
        assert is_payment_month_overdue(payment_month, payment_month.enrollment, date(2026, 3, 11))

    def test_tolerance_days_delay_overdue(self, make_enrollment, make_payment_month):
        payment_month = make_payment_month(make_enrollment(due_day=10))
        assert not is_payment_month_overdue(
            payment_month, payment_month.enrollment, date(2026, 3, 13), tolerance_days=3
        )
        assert is_payment_month_overdue(
            payment_month, payment_month.enrollment, date(2026, 3, 14), tolerance_days=3
        )

    @pytest.mark.parametrize(
        "status",
        [PaymentStatus.PAGO, PaymentStatus.CANCELADO, PaymentStatus.ATRASADO],
    )
    def test_non_open_months_never_selected(self, make_enrollment, make_payment_month, status):
        payment_month = make_payment_month(make_enrollment(due_day=10), payment_status=status)
        assert not is_payment_month_overdue(
            payment_month, payment_month.enrollment, date(2026, 12, 31)
        )

    def test_previous_month_is_overdue(self, make_enrollment, make_payment_month):
        payment_month = make_payment_month(make_enrollment(due_day=28), month=2)
        assert is_payment_month_overdue(payment_month, payment_month.enrollment, date(2026, 3, 1))


class TestBillingToday:
    """Tests for the billing time zone (America/Sao_Paulo, UTC-3)."""

    def test_before_local_midnight(self):
        assert billing_today(datetime(2026, 3, 11, 2, 59, tzinfo=UTC)) == date(2026, 3, 10)

    def test_after_local_midnight(self):
        assert billing_today(datetime(2026, 3, 11, 3, 0, tzinfo=UTC)) == date(2026, 3, 11)


class TestIsDueWithin:
    def test_window_is_inclusive(self):
        today = date(2026, 3, 1)
        assert is_due_within(date(2026, 3, 1), today, 10)
        assert is_due_within(date(2026, 3, 11), today, 10)

    def test_outside_window(self):
        today = date(2026, 3, 1)
        assert not is_due_within(date(2026, 3, 12), today, 10)
        assert not is_due_within(date(2026, 2, 28), today, 10)


class TestCpf:
    def test_valid_cpf(self):
        assert is_valid_cpf("529.982.247-25")
        assert is_valid_cpf("52998224725")

    def test_wrong_check_digit(self):
        assert not is_valid_cpf("529.982.247-24")

    def test_repeated_digits(self):
        assert not is_valid_cpf("111.111.111-11")

    def test_missing(self):
        assert not is_valid_cpf(None)
        assert not is_valid_cpf("")


class TestCodesAndPayloads:
    def test_invoice_code(self):
        assert invoice_code("abc", 2026, 3) == "abc-2026-3"

    def test_nfse_ref_format(self):
        ref = generate_nfse_ref("abc", 2026, 3, prefix="school")
        assert re.fullmatch(r"school-abc-2026-03-\d{13}", ref)

    def test_nfse_refs_are_unique_over_time(self):
        with patch("app.modules.billing.helpers.time.time", side_effect=[1.0, 2.0]):
            first = generate_nfse_ref("abc", 2026, 3, prefix="school")
            second = generate_nfse_ref("abc", 2026, 3, prefix="school")
        assert first != second

    def test_nfse_payload(self):
        payload = build_nfse_payload(
            student_name="Ana Souza",
            cpf="529.982.247-25",
            amount=Decimal("450.00"),
            year=2026,
            month=3,
            email="ana@example.com",
            issue_date=date(2026, 3, 5),
        )

        assert payload["data_emissao"] == "2026-03-05"
        assert payload["tomador"] == {
            "razao_social": "Ana Souza",
            "cpf": "52998224725",
            "email": "ana@example.com",
        }
        assert payload["servico"]["valor_servicos"] == 450.0
        assert payload["servico"]["item_lista_servico"] == "0802"
        assert "Março/2026" in payload["servico"]["discriminacao"]


class TestRunBatch:
    """Tests for the batch runner."""

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self):
        """A failing item is recorded and the following items still run."""
        items = [SimpleNamespace(id="e1"), SimpleNamespace(id="e2"), SimpleNamespace(id="e3")]
        seen = []

        async def process(item):
            seen.append(item.id)
            if item.id == "e2":
                raise RuntimeError("gateway down")
            return "created"

        result = await run_batch(items, process, JobRunResult(job="test"))

        assert seen == ["e1", "e2", "e3"]
        assert result.processed == 2
        assert [error.id for error in result.errors] == ["e2"]
        assert result.errors[0].reason == "gateway down"
        assert result.counts == {"created": 2}

    @pytest.mark.asyncio
    async def test_skipped_outcomes(self):
        items = [SimpleNamespace(id=1), SimpleNamespace(id=2)]
        outcomes = iter(["skipped_no_amount", "created"])

        async def process(item):
            return next(outcomes)

        result = await run_batch(items, process, JobRunResult(job="test"))

        assert result.processed == 1
        assert result.skipped == 1
        assert result.counts == {"skipped_no_amount": 1, "created": 1}

    @pytest.mark.asyncio
    async def test_throttles_between_batches(self):
        items = [SimpleNamespace(id=i) for i in range(5)]

        async def process(item):
            return "sent"

        with patch("app.modules.billing.helpers.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await run_batch(
                items, process, JobRunResult(job="test"), batch_size=2, delay_seconds=1.5
            )

        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.5)
