"""
Billing Module

Monthly billing cycle of the language school:
1. Boleto / PIX generation through Cora
2. Overdue detection for open payment months
3. Municipal tax invoices (NFSe) through Focus NFe: retry and status polling
4. Payment reminders and overdue notices by email

API Endpoints (admin only, GET or POST):
- /cron/generate-invoices
- /cron/mark-overdue
- /cron/nfse-retry
- /cron/nfse-status
- /cron/payment-notifications

Background Jobs (via APScheduler, UTC):
- mark-overdue: daily at 08:00
- generate-invoices: daily at 10:00
- nfse-retry: daily at 10:00
- payment-notifications: daily at 12:00
- nfse-status: every 5 minutes
"""

from .jobs import register_billing_jobs
from .router import router

__all__ = ["router", "register_billing_jobs"]
