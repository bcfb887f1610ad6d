"""
Verification Key Provider — מפתח האימות של חתימות ה-webhook.

ספק המפתח מוזרק לאימות החתימה (ולא singleton גלובלי) וחושף refresh()
מפורש. המימוש המוגדר לייצור:
1. PSP_PUBLIC_KEY מההגדרות, אם הוגדר;
2. אחרת — מטמון Redis;
3. אחרת — GET /api/merchant/pubkey, נרמול ל-PEM ושמירה במטמון.
"""
from __future__ import annotations

import base64
import binascii
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

from app.core.config import settings
from app.core.logging import get_logger, log_payment_event, PaymentLogCode
from app.core.redis_client import PSP_PUBKEY_CACHE_KEY, cache_get, cache_set
from app.domain.services.psp.base_provider import BasePaymentGateway

logger = get_logger(__name__)

_PEM_HEADER = "-----BEGIN PUBLIC KEY-----"
_PEM_FOOTER = "-----END PUBLIC KEY-----"
_WHITESPACE_RE = re.compile(r"\s+")


class KeyUnavailableError(Exception):
    """לא ניתן לטעון מפתח אימות"""


def normalize_public_key_pem(raw: str) -> str:
    """
    נרמול מפתח ל-PEM.

    מקבל PEM מלא, base64 של PEM (כך מונובנק מחזירה), או base64 גולמי
    של DER — שמחולק לשורות של 64 תווים בין כותרות PEM.
    """
    value = raw.strip()
    if _PEM_HEADER in value:
        return value

    stripped = _WHITESPACE_RE.sub("", value)
    try:
        decoded = base64.b64decode(stripped, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if _PEM_HEADER.encode() in decoded:
        return decoded.decode("ascii").strip()

    chunks = [stripped[i:i + 64] for i in range(0, len(stripped), 64)]
    return "\n".join([_PEM_HEADER, *chunks, _PEM_FOOTER])


class VerificationKeyProvider(ABC):
    """ממשק לספק מפתח: get() מהמטמון, refresh() טעינה מחדש מהמקור."""

    @abstractmethod
    async def get(self) -> str:
        """מפתח PEM נוכחי. Raises: KeyUnavailableError."""

    @abstractmethod
    async def refresh(self) -> str:
        """טעינה מחדש מהמקור (בלי מטמון). Raises: KeyUnavailableError."""


class StaticKeyProvider(VerificationKeyProvider):
    """מפתח קבוע — להגדרה מקומית ולבדיקות."""

    def __init__(self, pem: str) -> None:
        self._pem = normalize_public_key_pem(pem)

    async def get(self) -> str:
        return self._pem

    async def refresh(self) -> str:
        return self._pem


class CachedRemoteKeyProvider(VerificationKeyProvider):
    """מפתח מהגדרות / Redis / ה-API של הספק."""

    def __init__(
        self,
        gateway: BasePaymentGateway,
        *,
        configured_key: Optional[str] = None,
        cache_ttl_seconds: Optional[int] = None,
    ) -> None:
        self._gateway = gateway
        self._configured_key = configured_key if configured_key is not None else settings.PSP_PUBLIC_KEY
        self._cache_ttl = cache_ttl_seconds or settings.PSP_KEY_CACHE_TTL_SECONDS

    async def get(self) -> str:
        if self._configured_key:
            return normalize_public_key_pem(self._configured_key)
        cached = await cache_get(PSP_PUBKEY_CACHE_KEY)
        if cached:
            return cached
        return await self.refresh()

    async def refresh(self) -> str:
        if self._configured_key:
            return normalize_public_key_pem(self._configured_key)
        if not settings.PAYMENTS_ENABLED or not settings.PSP_TOKEN:
            raise KeyUnavailableError("PSP public key unavailable")
        try:
            raw = await self._gateway.fetch_public_key()
        except Exception as exc:
            raise KeyUnavailableError("PSP public key fetch failed") from exc

        pem = normalize_public_key_pem(raw)
        await cache_set(PSP_PUBKEY_CACHE_KEY, pem, self._cache_ttl)
        log_payment_event(logger, logging.INFO, PaymentLogCode.PUBKEY_REFRESHED, {"provider": "monobank", "ttlSeconds": self._cache_ttl})
        return pem
