"""
Unit tests for the billing repository layer.

These tests focus on the status transition tables and on the conditional
writes the jobs rely on for idempotence.
"""

from datetime import UTC, datetime
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from app.modules.billing import repository
from app.modules.billing.models import EnrollmentStatus, InvoiceStatus, NfseStatus, PaymentStatus
from app.modules.billing.repository import (
    VALID_INVOICE_TRANSITIONS,
    VALID_NFSE_TRANSITIONS,
    VALID_PAYMENT_TRANSITIONS,
    InvalidStatusTransitionError,
    validate_transition,
)


class TestStatusTransitions:
    """Tests for the status transition tables."""

    def test_open_payment_can_become_overdue(self):
        valid = VALID_PAYMENT_TRANSITIONS[PaymentStatus.EM_ABERTO]
        assert PaymentStatus.ATRASADO in valid
        assert PaymentStatus.PAGO in valid

    def test_overdue_payment_never_reopens(self):
        assert PaymentStatus.EM_ABERTO not in VALID_PAYMENT_TRANSITIONS[PaymentStatus.ATRASADO]

    def test_terminal_states_have_no_transitions(self):
        assert VALID_PAYMENT_TRANSITIONS[PaymentStatus.PAGO] == set()
        assert VALID_PAYMENT_TRANSITIONS[PaymentStatus.CANCELADO] == set()
        assert VALID_INVOICE_TRANSITIONS[InvoiceStatus.PAID] == set()
        assert VALID_INVOICE_TRANSITIONS[InvoiceStatus.CANCELLED] == set()
        assert VALID_NFSE_TRANSITIONS[NfseStatus.AUTORIZADO] == set()

    def test_all_statuses_are_in_transition_maps(self):
        for status in PaymentStatus:
            assert status in VALID_PAYMENT_TRANSITIONS
        for status in InvoiceStatus:
            assert status in VALID_INVOICE_TRANSITIONS
        for status in NfseStatus:
            assert status in VALID_NFSE_TRANSITIONS


class TestValidateTransition:
    """Tests for validate_transition."""

    def test_allowed_transition(self):
        validate_transition(
            VALID_PAYMENT_TRANSITIONS, "payment month", PaymentStatus.EM_ABERTO, PaymentStatus.PAGO
        )

    def test_rejected_transition(self):
        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            validate_transition(
                VALID_PAYMENT_TRANSITIONS,
                "payment month",
                PaymentStatus.ATRASADO,
                PaymentStatus.EM_ABERTO,
            )

        message = str(exc_info.value)
        assert "ATRASADO" in message
        assert "EM_ABERTO" in message

    def test_terminal_state_rejects_rewrite(self):
        with pytest.raises(InvalidStatusTransitionError):
            validate_transition(
                VALID_NFSE_TRANSITIONS, "nfse", NfseStatus.AUTORIZADO, NfseStatus.AUTORIZADO
            )

    def test_failed_nfse_can_fail_again(self):
        validate_transition(VALID_NFSE_TRANSITIONS, "nfse", NfseStatus.ERRO, NfseStatus.ERRO)

    def test_error_is_a_value_error(self):
        assert issubclass(InvalidStatusTransitionError, ValueError)


class TestConditionalWrites:
    """Tests for the conditional updates used by the jobs."""

    @pytest.mark.asyncio
    async def test_mark_overdue_reports_transition(self, mock_db):
        mock_db.execute.return_value = MagicMock(rowcount=1)

        assert await repository.mark_payment_month_overdue(mock_db, uuid4()) is True
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mark_overdue_is_noop_when_already_changed(self, mock_db):
        mock_db.execute.return_value = MagicMock(rowcount=0)

        assert await repository.mark_payment_month_overdue(mock_db, uuid4()) is False

    @pytest.mark.asyncio
    async def test_link_invoice_only_once(self, mock_db):
        mock_db.execute.return_value = MagicMock(rowcount=0)

        assert await repository.link_invoice(mock_db, uuid4(), uuid4()) is False

    @pytest.mark.asyncio
    async def test_mark_reminder_sent(self, mock_db):
        mock_db.execute.return_value = MagicMock(rowcount=1)

        assert await repository.mark_reminder_sent(mock_db, uuid4()) is True


def _compiled(mock_db):
    statement = mock_db.execute.await_args[0][0]
    compiled = statement.compile(dialect=postgresql.dialect())
    return str(compiled), compiled.params


class TestNfseQueries:
    """Tests for the NFSe predicates the retry job relies on."""

    @pytest.mark.asyncio
    async def test_has_authorized_nfse_predicate(self, mock_db):
        enrollment_id, exclude_id = uuid4(), uuid4()
        mock_db.execute.return_value = MagicMock(scalar=MagicMock(return_value=True))

        found = await repository.has_authorized_nfse(
            mock_db, enrollment_id, 2026, 3, exclude_id=exclude_id
        )

        assert found is True
        sql, params = _compiled(mock_db)
        assert "EXISTS" in sql
        assert "nfse_invoices.enrollment_id =" in sql
        assert "nfse_invoices.year =" in sql
        assert "nfse_invoices.month =" in sql
        assert "nfse_invoices.status =" in sql
        assert "nfse_invoices.cancelled_at IS NULL" in sql
        assert "nfse_invoices.id !=" in sql

        values = list(params.values())
        assert enrollment_id in values
        assert exclude_id in values
        assert NfseStatus.AUTORIZADO in values
        assert 2026 in values and 3 in values

    @pytest.mark.asyncio
    async def test_has_authorized_nfse_without_exclusion(self, mock_db):
        mock_db.execute.return_value = MagicMock(scalar=MagicMock(return_value=False))

        assert await repository.has_authorized_nfse(mock_db, uuid4(), 2026, 3) is False

        sql, _ = _compiled(mock_db)
        assert "nfse_invoices.id !=" not in sql

    @pytest.mark.asyncio
    async def test_record_nfse_failure_counts_the_attempt(self, mock_db):
        nfse_id = uuid4()

        await repository.record_nfse_failure(mock_db, nfse_id, "Resubmission failed: timeout")

        sql, params = _compiled(mock_db)
        assert sql.startswith("UPDATE nfse_invoices")
        assert "retry_count=(nfse_invoices.retry_count +" in sql
        assert "status" not in sql.split("WHERE")[0]
        assert params["error_message"] == "Resubmission failed: timeout"
        assert nfse_id in params.values()
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_candidates_respect_ceiling(self, mock_db):
        mock_db.execute.return_value = MagicMock()

        await repository.get_nfse_retry_candidates(mock_db, 5, datetime(2026, 3, 1, tzinfo=UTC))

        sql, params = _compiled(mock_db)
        assert "nfse_invoices.retry_count <" in sql
        assert "nfse_invoices.updated_at <" in sql
        assert 5 in params.values()


class TestUpdateNfse:
    """Tests for update_nfse."""

    @pytest.mark.asyncio
    async def test_not_found(self, mock_db):
        mock_db.get.return_value = None

        with pytest.raises(ValueError, match="not found"):
            await repository.update_nfse(mock_db, uuid4(), NfseStatus.AUTORIZADO)

    @pytest.mark.asyncio
    async def test_authorized_record_is_never_rewritten(self, mock_db, make_nfse):
        mock_db.get.return_value = make_nfse(status=NfseStatus.AUTORIZADO)

        with pytest.raises(InvalidStatusTransitionError):
            await repository.update_nfse(mock_db, uuid4(), NfseStatus.ERRO)

        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sets_status_and_fields(self, mock_db, make_nfse):
        nfse = make_nfse(status=NfseStatus.PENDING)
        mock_db.get.return_value = nfse

        updated = await repository.update_nfse(
            mock_db, nfse.id, NfseStatus.AUTORIZADO, number="123", unknown_field="ignored"
        )

        assert updated.status == NfseStatus.AUTORIZADO
        assert updated.number == "123"
        assert not hasattr(updated, "unknown_field")
        mock_db.commit.assert_awaited_once()


class TestFinanceAuditLog:
    @pytest.mark.asyncio
    async def test_values_are_serialized(self, mock_db):
        entity_id = uuid4()

        entry = await repository.log_finance_action(
            mock_db,
            entity_type="payment_month",
            entity_id=entity_id,
            action="OVERDUE_MARKED",
            performed_by="CRON_MARK_OVERDUE",
            old_value={"payment_status": PaymentStatus.EM_ABERTO},
            new_value={"payment_status": PaymentStatus.ATRASADO, "invoice_id": entity_id},
        )

        assert entry.entity_id == str(entity_id)
        assert entry.old_value == {"payment_status": "EM_ABERTO"}
        assert entry.new_value == {"payment_status": "ATRASADO", "invoice_id": str(entity_id)}
        mock_db.add.assert_called_once_with(entry)
        mock_db.commit.assert_awaited_once()


class TestEnrollmentDeactivation:
    @pytest.mark.asyncio
    async def test_only_active_enrollment_is_deactivated(self, mock_db):
        enrollment_id = uuid4()
        mock_db.execute.return_value = MagicMock(rowcount=1)

        assert await repository.deactivate_enrollment(mock_db, enrollment_id) is True

        sql, params = _compiled(mock_db)
        assert sql.startswith("UPDATE enrollments SET")
        assert "enrollments.status =" in sql.split("WHERE")[1]
        assert "inactive_at" in sql
        assert EnrollmentStatus.ACTIVE in params.values()
        assert EnrollmentStatus.INACTIVE in params.values()
        assert enrollment_id in params.values()

    @pytest.mark.asyncio
    async def test_second_deactivation_is_noop(self, mock_db):
        mock_db.execute.return_value = MagicMock(rowcount=0)

        assert await repository.deactivate_enrollment(mock_db, uuid4()) is False
