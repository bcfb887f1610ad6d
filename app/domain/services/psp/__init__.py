"""
Payment Provider Abstraction Layer

שכבת הפשטה לספק התשלומים: יצירה/ביטול חשבוניות ואימות חתימות webhook.
"""
from app.domain.services.psp.base_provider import BasePaymentGateway, CreatedInvoice, InvoiceStatus
from app.domain.services.psp.key_provider import (
    VerificationKeyProvider,
    StaticKeyProvider,
    CachedRemoteKeyProvider,
)
from app.domain.services.psp.provider_factory import get_payment_gateway, get_key_provider
from app.domain.services.psp.signature import verify_signature

__all__ = [
    "BasePaymentGateway",
    "CreatedInvoice",
    "InvoiceStatus",
    "VerificationKeyProvider",
    "StaticKeyProvider",
    "CachedRemoteKeyProvider",
    "get_payment_gateway",
    "get_key_provider",
    "verify_signature",
]
