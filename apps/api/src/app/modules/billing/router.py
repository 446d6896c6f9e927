"""
Billing Manual Trigger Router

Admin endpoints that run a billing job immediately, outside its schedule.

Endpoints (GET and POST behave the same):
- /cron/generate-invoices
- /cron/mark-overdue
- /cron/nfse-retry
- /cron/nfse-status
- /cron/payment-notifications

Responses:
- 200 {"ok": true, ...job result}
- 401 no or invalid session, 403 not an admin
- 429 more than 10 manual runs of a job per minute by the same admin
- 500 {"ok": false, "message": <fixed text per job>} if the job raises
"""

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from app.core.auth import NOT_AUTHORIZED, AdminUser, AuthResult, is_unauthenticated, require_admin
from app.core.config import settings
from app.core.rate_limit import RateLimitExceeded, check_rate_limit
from app.modules.billing import jobs
from app.modules.billing.schemas import CronErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter()


async def _check_trigger_rate_limit(admin: AdminUser, job_name: str) -> None:
    """
    Check the manual trigger rate limit for an admin and job.

    Raises:
        RateLimitExceeded: If the limit is exceeded
    """
    limit = settings.manual_trigger_rate_limit
    window_seconds = settings.manual_trigger_rate_window_seconds

    allowed = await check_rate_limit(f"cron:{job_name}:{admin.id}", limit, window_seconds)
    if not allowed:
        logger.warning(
            f"Rate limit exceeded for admin {admin.id} on job '{job_name}': "
            f"{limit}/{window_seconds}s"
        )
        raise RateLimitExceeded(limit, window_seconds)


async def _trigger(job_name: str, auth: AuthResult) -> JSONResponse:
    if not auth.authorized:
        status_code = (
            status.HTTP_401_UNAUTHORIZED if is_unauthenticated(auth) else status.HTTP_403_FORBIDDEN
        )
        body = CronErrorResponse(message=auth.message or NOT_AUTHORIZED)
        return JSONResponse(status_code=status_code, content=body.model_dump())

    job = jobs.get_billing_job(job_name)
    if job is None:
        body = CronErrorResponse(message=f"Unknown job: {job_name}")
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=body.model_dump())

    try:
        await _check_trigger_rate_limit(auth.user, job_name)
    except RateLimitExceeded as e:
        return JSONResponse(status_code=e.status_code, content=e.detail, headers=e.headers)

    logger.info(f"Manual trigger of job {job_name} by admin {auth.user.id}")

    try:
        result = await job.func()
    except Exception as e:
        logger.error(f"Manual run of job {job_name} failed: {e}", exc_info=True)
        body = CronErrorResponse(message=job.failure_message)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump()
        )

    return JSONResponse(content={**result.model_dump(mode="json"), "ok": True})


@router.api_route("/generate-invoices", methods=["GET", "POST"], summary="Run Generate Invoices")
async def trigger_generate_invoices(auth: AuthResult = Depends(require_admin)) -> JSONResponse:
    """Issue this month's boletos now."""
    return await _trigger(jobs.JOB_GENERATE_INVOICES, auth)


@router.api_route("/mark-overdue", methods=["GET", "POST"], summary="Run Mark Overdue")
async def trigger_mark_overdue(auth: AuthResult = Depends(require_admin)) -> JSONResponse:
    """Flip past-due open payment months to ATRASADO now."""
    return await _trigger(jobs.JOB_MARK_OVERDUE, auth)


@router.api_route("/nfse-retry", methods=["GET", "POST"], summary="Run NFSe Retry")
async def trigger_nfse_retry(auth: AuthResult = Depends(require_admin)) -> JSONResponse:
    """Resubmit failed NFSe now."""
    return await _trigger(jobs.JOB_NFSE_RETRY, auth)


@router.api_route("/nfse-status", methods=["GET", "POST"], summary="Run NFSe Status")
async def trigger_nfse_status(auth: AuthResult = Depends(require_admin)) -> JSONResponse:
    """Poll Focus NFe for pending NFSe now."""
    return await _trigger(jobs.JOB_NFSE_STATUS, auth)


@router.api_route(
    "/payment-notifications", methods=["GET", "POST"], summary="Run Payment Notifications"
)
async def trigger_payment_notifications(auth: AuthResult = Depends(require_admin)) -> JSONResponse:
    """Send due reminders and overdue notices now."""
    return await _trigger(jobs.JOB_PAYMENT_NOTIFICATIONS, auth)
