"""
Unit tests for the background job scheduler.

Tests cover:
- Idempotent initialization
- Malformed cron expressions
- Failure containment in scheduled fires
"""

from unittest.mock import AsyncMock

import pytest

from app.core.scheduler import JobDefinition, SchedulerConfig, SchedulerHandle, _run_job_safely
from app.modules.billing.jobs import get_billing_jobs, register_billing_jobs


async def _noop():
    return None


class TestInitScheduler:
    """Tests for SchedulerHandle.init_scheduler."""

    @pytest.mark.asyncio
    async def test_second_call_registers_nothing(self):
        handle = SchedulerHandle()
        try:
            assert handle.init_scheduler(get_billing_jobs()) == 5
            assert handle.init_scheduler(get_billing_jobs()) == 0

            assert handle.running
            job_ids = sorted(job["job_id"] for job in handle.list_jobs())
            assert job_ids == [
                "generate-invoices",
                "mark-overdue",
                "nfse-retry",
                "nfse-status",
                "payment-notifications",
            ]
        finally:
            handle.stop()

    @pytest.mark.asyncio
    async def test_jobs_have_next_run_time(self):
        handle = SchedulerHandle()
        try:
            handle.init_scheduler(get_billing_jobs())

            for job in handle.list_jobs():
                assert job["next_run_time"] is not None
        finally:
            handle.stop()

    @pytest.mark.asyncio
    async def test_duplicate_name_is_armed_once(self):
        handle = SchedulerHandle()
        try:
            handle.init_scheduler(
                [
                    JobDefinition("mark-overdue", "0 8 * * *", _noop),
                    JobDefinition("mark-overdue", "0 9 * * *", _noop),
                ]
            )

            assert len(handle.list_jobs()) == 1
            assert handle.get_job_definition("mark-overdue").cron == "0 9 * * *"
        finally:
            handle.stop()

    def test_invalid_cron_is_skipped(self):
        handle = SchedulerHandle()
        broken = JobDefinition("broken", "not a cron", _noop)

        assert handle.init_scheduler([*get_billing_jobs()[:4], broken], start=False) == 4
        assert "broken" not in {job["job_id"] for job in handle.list_jobs()}
        assert handle.get_job_definition("broken") is None

    def test_register_without_starting(self):
        handle = SchedulerHandle()

        assert handle.init_scheduler(get_billing_jobs(), start=False) == 5
        assert handle.initialized
        assert not handle.running

    def test_stop_allows_reinitialization(self):
        handle = SchedulerHandle()
        handle.init_scheduler(get_billing_jobs(), start=False)
        handle.stop()

        assert handle.initialized is False
        assert handle.init_scheduler(get_billing_jobs(), start=False) == 5

    @pytest.mark.asyncio
    async def test_register_billing_jobs(self):
        handle = SchedulerHandle()
        try:
            assert register_billing_jobs(handle) == 5
            assert register_billing_jobs(handle) == 0
        finally:
            handle.stop()


class TestRunJobSafely:
    """Tests for _run_job_safely."""

    @pytest.mark.asyncio
    async def test_exception_is_contained(self):
        job = JobDefinition("boom", "* * * * *", AsyncMock(side_effect=RuntimeError("db down")))

        assert await _run_job_safely(job) is None
        job.func.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_result_is_returned(self):
        job = JobDefinition("ok", "* * * * *", AsyncMock(return_value={"ok": True}))

        assert await _run_job_safely(job) == {"ok": True}


class TestSchedulerHandleConstruction:
    def test_handles_can_be_created_repeatedly(self):
        first = SchedulerHandle()
        second = SchedulerHandle()

        assert first.init_scheduler(get_billing_jobs(), start=False) == 5
        assert second.init_scheduler(get_billing_jobs(), start=False) == 5

    def test_executor_config_is_not_shared(self):
        assert SchedulerConfig.executors() is not SchedulerConfig.executors()
        assert SchedulerConfig.job_defaults()["max_instances"] == SchedulerConfig.JOB_MAX_INSTANCES
