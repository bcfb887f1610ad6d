"""
Database Models
"""
from app.db.models.product import Product
from app.db.models.order import Order, OrderItem
from app.db.models.payment_attempt import PaymentAttempt
from app.db.models.inventory_move import InventoryMove
from app.db.models.webhook_event import PaymentWebhookEvent
from app.db.models.api_rate_limit import ApiRateLimit
from app.db.models.psp_operation import PaymentCancel, PaymentRefund

__all__ = [
    "Product",
    "Order",
    "OrderItem",
    "PaymentAttempt",
    "InventoryMove",
    "PaymentWebhookEvent",
    "ApiRateLimit",
    "PaymentRefund",
    "PaymentCancel",
]
