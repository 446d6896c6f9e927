"""
Tests for the manual job trigger endpoints.

Tests cover:
- Authentication (401) and authorization (403)
- Successful runs over GET and POST
- Fixed failure message when a job raises
- Per-admin rate limit (429)
"""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core import auth
from app.core.auth import NOT_AUTHORIZED, AdminUser, AuthResult, require_admin
from app.core.config import Settings
from app.modules.billing.router import router
from app.modules.billing.schemas import JobRunResult

ADMIN = AdminUser(id=uuid4(), email="admin@school.dev", role="ADMIN")


@pytest.fixture
def app():
    application = FastAPI()
    application.include_router(router, prefix="/api/v1/cron")
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def as_admin(app):
    app.dependency_overrides[require_admin] = lambda: AuthResult(authorized=True, user=ADMIN)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def allow_rate_limit():
    with patch(
        "app.modules.billing.router.check_rate_limit",
        new_callable=AsyncMock,
        return_value=True,
    ) as check:
        yield check


class TestAuthorization:
    def test_missing_session_is_401(self, client):
        response = client.post("/api/v1/cron/mark-overdue")

        assert response.status_code == 401
        body = response.json()
        assert body["ok"] is False
        assert body["message"].startswith("Not authenticated")

    def test_invalid_token_is_401(self, client):
        response = client.get(
            "/api/v1/cron/mark-overdue", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    def test_dev_token_rejected_with_default_settings(self, client, monkeypatch):
        monkeypatch.delenv("PYTHON_ENV", raising=False)
        defaults = Settings(_env_file=None)

        with patch("app.core.auth.settings", defaults):
            dev_mode = auth._is_dev_mode_safe()
            with patch("app.core.auth._DEVELOPMENT_MODE", dev_mode):
                response = client.post(
                    "/api/v1/cron/mark-overdue", headers={"Authorization": "Bearer dev-token"}
                )

        assert defaults.python_env == "production"
        assert dev_mode is False
        assert response.status_code == 401

    def test_non_admin_is_403(self, app, client):
        app.dependency_overrides[require_admin] = lambda: AuthResult(
            authorized=False,
            user=AdminUser(id=uuid4(), email="teacher@school.dev", role="TEACHER"),
            message=f"{NOT_AUTHORIZED}: admin access required",
        )

        response = client.post("/api/v1/cron/mark-overdue")

        app.dependency_overrides.clear()
        assert response.status_code == 403
        assert response.json()["ok"] is False


class TestTrigger:
    @pytest.mark.parametrize("method", ["GET", "POST"])
    def test_runs_job(self, client, as_admin, allow_rate_limit, method):
        result = JobRunResult(job="mark-overdue", processed=2, counts={"marked_overdue": 2})

        with patch(
            "app.modules.billing.jobs.run_mark_overdue",
            new_callable=AsyncMock,
            return_value=result,
        ) as run:
            response = client.request(method, "/api/v1/cron/mark-overdue")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["job"] == "mark-overdue"
        assert body["processed"] == 2
        assert body["errors"] == []
        run.assert_awaited_once()

    def test_every_job_has_an_endpoint(self, client, as_admin, allow_rate_limit):
        paths = [
            ("generate-invoices", "run_generate_invoices"),
            ("mark-overdue", "run_mark_overdue"),
            ("nfse-retry", "run_nfse_retry"),
            ("nfse-status", "run_nfse_status"),
            ("payment-notifications", "run_payment_notifications"),
        ]

        for path, func in paths:
            with patch(
                f"app.modules.billing.jobs.{func}",
                new_callable=AsyncMock,
                return_value=JobRunResult(job=path),
            ):
                response = client.post(f"/api/v1/cron/{path}")

            assert response.status_code == 200, path
            assert response.json()["job"] == path

    def test_job_failure_returns_fixed_message(self, client, as_admin, allow_rate_limit):
        with patch(
            "app.modules.billing.jobs.run_generate_invoices",
            new_callable=AsyncMock,
            side_effect=RuntimeError("connection refused to 10.0.0.5"),
        ):
            response = client.post("/api/v1/cron/generate-invoices")

        assert response.status_code == 500
        assert response.json() == {"ok": False, "message": "Failed to generate invoices"}

    def test_rate_limit_exceeded(self, client, as_admin, allow_rate_limit):
        allow_rate_limit.return_value = False

        with patch("app.modules.billing.jobs.run_nfse_status", new_callable=AsyncMock) as run:
            response = client.post("/api/v1/cron/nfse-status")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json()["error"] == "RATE_LIMIT_EXCEEDED"
        run.assert_not_awaited()

    def test_rate_limit_key_is_per_admin_and_job(self, client, as_admin, allow_rate_limit):
        with patch(
            "app.modules.billing.jobs.run_nfse_retry",
            new_callable=AsyncMock,
            return_value=JobRunResult(job="nfse-retry"),
        ):
            client.post("/api/v1/cron/nfse-retry")

        key, limit, window = allow_rate_limit.call_args[0]
        assert key == f"cron:nfse-retry:{ADMIN.id}"
        assert (limit, window) == (10, 60)
