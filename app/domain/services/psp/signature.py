"""
אימות חתימת webhook (X-Sign) — ECDSA-SHA256 על הבתים הגולמיים של הגוף.

לכל היותר שתי בדיקות קריפטוגרפיות ושתי טעינות מפתח לקריאה:
מפתח מהמטמון, ואם נכשל — refresh() אחד ובדיקה נוספת.
"""
from __future__ import annotations

import base64
import binascii
from typing import Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from app.core.logging import get_logger
from app.domain.services.psp.key_provider import KeyUnavailableError, VerificationKeyProvider

logger = get_logger(__name__)


def verify_with_key(raw_body: bytes, signature_b64: str, public_key_pem: str) -> bool:
    """בדיקה קריפטוגרפית אחת. כל קלט לא תקין (חתימה, מפתח) → False."""
    try:
        signature = base64.b64decode(signature_b64.strip(), validate=True)
        public_key = load_pem_public_key(public_key_pem.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError, UnsupportedAlgorithm):
        return False

    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        return False
    try:
        public_key.verify(signature, raw_body, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


async def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    key_provider: VerificationKeyProvider,
) -> bool:
    """
    אימות חתימת webhook.

    Args:
        raw_body: גוף הבקשה כפי שהתקבל — לפני פענוח JSON
        signature_header: ערך X-Sign (base64)
        key_provider: ספק המפתח המוזרק

    Returns:
        True רק אם החתימה תקפה מול המפתח הנוכחי או המרוענן
    """
    if not signature_header:
        return False

    try:
        key = await key_provider.get()
    except KeyUnavailableError:
        logger.warning("Webhook verification key unavailable")
        return False

    if verify_with_key(raw_body, signature_header, key):
        return True

    # ייתכן שהספק סובב מפתח — refresh אחד בלבד
    try:
        refreshed = await key_provider.refresh()
    except KeyUnavailableError:
        logger.warning("Webhook verification key refresh failed")
        return False

    return verify_with_key(raw_body, signature_header, refreshed)
