"""
Provider Factory — יצירת ספק התשלומים וספק מפתח האימות לפי הגדרות.

נקודות גישה:
- get_payment_gateway() — לקוח ה-invoice API (משותף לתהליך)
- get_key_provider() — ספק המפתח לאימות webhooks
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_psp_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.psp.base_provider import BasePaymentGateway
from app.domain.services.psp.key_provider import CachedRemoteKeyProvider, VerificationKeyProvider

logger = get_logger(__name__)

_gateway: BasePaymentGateway | None = None
_key_provider: VerificationKeyProvider | None = None
_lock = threading.Lock()


def get_payment_gateway() -> BasePaymentGateway:
    global _gateway
    if _gateway is None:
        with _lock:
            if _gateway is None:
                from app.domain.services.psp.monobank_provider import MonobankProvider

                _gateway = MonobankProvider(circuit_breaker=get_psp_circuit_breaker())
                logger.info("ספק תשלומים אותחל", extra_data={"provider": _gateway.provider_name})
    return _gateway


def get_key_provider() -> VerificationKeyProvider:
    global _key_provider
    if _key_provider is None:
        gateway = get_payment_gateway()
        with _lock:
            if _key_provider is None:
                _key_provider = CachedRemoteKeyProvider(gateway)
    return _key_provider


def set_payment_gateway(gateway: BasePaymentGateway | None) -> None:
    """החלפת הספק — לשימוש בבדיקות בלבד."""
    global _gateway
    with _lock:
        _gateway = gateway


def set_key_provider(provider: VerificationKeyProvider | None) -> None:
    """החלפת ספק המפתח — לשימוש בבדיקות בלבד."""
    global _key_provider
    with _lock:
        _key_provider = provider


def reset_providers() -> None:
    """איפוס ספקים — לשימוש בבדיקות בלבד."""
    global _gateway, _key_provider
    with _lock:
        _gateway = None
        _key_provider = None
