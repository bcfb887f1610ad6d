"""
Domain Services
"""
from app.domain.services.inventory_service import InventoryService
from app.domain.services.restock_service import RestockService
from app.domain.services.payment_state_service import PaymentStateService
from app.domain.services.payment_attempt_service import PaymentAttemptService
from app.domain.services.attempt_lifecycle_service import AttemptLifecycleService
from app.domain.services.event_claim_service import EventClaimService
from app.domain.services.rate_limit_service import RateLimitService
from app.domain.services.webhook_apply_service import WebhookApplyService
from app.domain.services.webhook_ingestion_service import WebhookIngestionService
from app.domain.services.restock_sweep_service import RestockSweepService
from app.domain.services.janitor_service import JanitorService

__all__ = [
    "InventoryService",
    "RestockService",
    "PaymentStateService",
    "PaymentAttemptService",
    "AttemptLifecycleService",
    "EventClaimService",
    "RateLimitService",
    "WebhookApplyService",
    "WebhookIngestionService",
    "RestockSweepService",
    "JanitorService",
]
