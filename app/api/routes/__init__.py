"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.payments import router as payments_router
from app.api.routes.janitor import router as janitor_router
from app.api.routes.admin_payments import router as admin_payments_router
from app.api.webhooks.payments import router as payment_webhook_router

router = APIRouter()

router.include_router(payments_router, prefix="/payments", tags=["payments"])
router.include_router(payment_webhook_router, prefix="/payments", tags=["webhooks"])
router.include_router(janitor_router, prefix="/internal", tags=["internal"])
router.include_router(admin_payments_router, prefix="/internal", tags=["internal"])
