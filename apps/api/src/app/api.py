from fastapi import APIRouter

from app.modules.billing import router as billing_router

api_router = APIRouter()

api_router.include_router(billing_router, prefix="/cron", tags=["Billing Jobs"])
