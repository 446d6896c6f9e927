"""
Fixtures for billing tests.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from app.modules.billing.models import (
    Enrollment,
    EnrollmentStatus,
    NfseInvoice,
    NfseStatus,
    PaymentInfo,
    PaymentMonth,
    PaymentStatus,
)

VALID_CPF = "529.982.247-25"


@pytest.fixture
def mock_db():
    """Create a mock database session."""
    db = AsyncMock()
    db.commit = AsyncMock()
    db.refresh = AsyncMock()
    db.get = AsyncMock()
    db.execute = AsyncMock()
    db.add = MagicMock()
    return db


@pytest.fixture
def session_maker(mock_db):
    """Patch the jobs' session factory so every session is ``mock_db``."""
    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=mock_db)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    maker = MagicMock(return_value=session_cm)

    with patch("app.modules.billing.jobs.async_session_maker", maker):
        yield maker


@pytest.fixture
def make_enrollment():
    """Factory for enrollments with valid billing data."""

    def _make(**overrides) -> Enrollment:
        data = {
            "id": uuid4(),
            "name": "Ana Souza",
            "email": "ana@example.com",
            "cpf": VALID_CPF,
            "status": EnrollmentStatus.ACTIVE,
            "monthly_amount": Decimal("450.00"),
            "due_day": 10,
            "payment_info": None,
        }
        data.update(overrides)
        return Enrollment(**data)

    return _make


@pytest.fixture
def make_payment_info():
    def _make(enrollment_id=None, due_day=None, monthly_amount=None) -> PaymentInfo:
        return PaymentInfo(
            id=uuid4(),
            enrollment_id=enrollment_id or uuid4(),
            due_day=due_day,
            monthly_amount=monthly_amount,
        )

    return _make


@pytest.fixture
def make_payment_month(make_enrollment):
    """Factory for payment months linked to an enrollment."""

    def _make(enrollment: Enrollment | None = None, **overrides) -> PaymentMonth:
        enrollment = enrollment or make_enrollment()
        data = {
            "id": uuid4(),
            "enrollment_id": enrollment.id,
            "enrollment": enrollment,
            "year": 2026,
            "month": 3,
            "payment_status": PaymentStatus.EM_ABERTO,
            "due_day": None,
            "invoice_id": None,
            "reminder_sent_at": None,
            "overdue_notice_sent_at": None,
        }
        data.update(overrides)
        return PaymentMonth(**data)

    return _make


@pytest.fixture
def make_nfse(make_enrollment):
    """Factory for NFSe records."""

    def _make(enrollment: Enrollment | None = None, **overrides) -> NfseInvoice:
        enrollment = enrollment or make_enrollment()
        data = {
            "id": uuid4(),
            "enrollment_id": enrollment.id,
            "enrollment": enrollment,
            "year": 2026,
            "month": 3,
            "amount": Decimal("450.00"),
            "focus_ref": f"school-{enrollment.id}-2026-03-1700000000000",
            "status": NfseStatus.ERRO,
            "retry_count": 0,
            "cancelled_at": None,
        }
        data.update(overrides)
        return NfseInvoice(**data)

    return _make
