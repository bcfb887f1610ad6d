"""
Rate Limit Service - מונה fixed-window משותף ב-DB

המונה משותף לכל ה-replicas: upsert בודד עם ON CONFLICT ... DO UPDATE
... WHERE (החלון פג או count < limit) RETURNING. אם לא חזרה שורה —
הבקשה חסומה עד סוף החלון.
"""
import base64
import hashlib
import ipaddress
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

from sqlalchemy import case, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.compat import dialect_insert, utcnow
from app.db.models.api_rate_limit import ApiRateLimit

logger = get_logger(__name__)

_SAFE_SUBJECT_RE = re.compile(r"[^a-zA-Z0-9._-]+")
_MAX_SUBJECT_LEN = 64


@dataclass(frozen=True)
class RateLimitDecision:
    ok: bool
    retry_after_seconds: int = 0
    remaining: Optional[int] = None


def _hash_subject(value: str, prefix: str) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return prefix + base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")[:16]


def _ip_version(value: str) -> Optional[int]:
    try:
        return ipaddress.ip_address(value).version
    except ValueError:
        return None


def normalize_rate_limit_subject(subject: str) -> str:
    """IPv4 כמו שהוא; IPv6 → ip6_<hash> (בלי ':' במפתח); אחרת תווים בטוחים בלבד."""
    trimmed = (subject or "").strip()
    if not trimmed:
        return "anon"

    version = _ip_version(trimmed)
    if version == 4:
        return trimmed
    if version == 6:
        return _hash_subject(trimmed, "ip6_")

    sanitized = _SAFE_SUBJECT_RE.sub("_", trimmed).strip("_")
    if not sanitized:
        return "anon"
    if len(sanitized) > _MAX_SUBJECT_LEN:
        return _hash_subject(trimmed, "h_")
    return sanitized


def _client_ip(client_host: Optional[str], headers: Mapping[str, str]) -> Optional[str]:
    if settings.TRUST_FORWARDED_HEADERS:
        real_ip = (headers.get("x-real-ip") or "").strip()
        if real_ip and _ip_version(real_ip):
            return real_ip
        for part in (headers.get("x-forwarded-for") or "").split(","):
            candidate = part.strip()
            if candidate and _ip_version(candidate):
                return candidate

    if client_host and _ip_version(client_host):
        return client_host
    return None


def derive_rate_limit_subject(client_host: Optional[str], headers: Mapping[str, str]) -> str:
    """
    נושא ה-rate limit לפי מקור הרשת.

    ללא IP מזוהה — hash של user-agent + accept-language.
    """
    ip = _client_ip(client_host, headers)
    if ip:
        return normalize_rate_limit_subject(ip)

    user_agent = (headers.get("user-agent") or "").strip()
    accept_language = (headers.get("accept-language") or "").strip()
    return _hash_subject(f"{user_agent}|{accept_language}", "ua_")


class RateLimitService:
    """DB-backed fixed-window limiter"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def enforce_rate_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        """
        ספירת בקשה בחלון הנוכחי.

        Args:
            key: prefix + subject (למשל webhook:invalid_sig:1.2.3.4)
            limit: מקסימום בקשות בחלון (0 = ללא הגבלה)
            window_seconds: אורך החלון

        Returns:
            RateLimitDecision — ok=False עם retry_after_seconds (מינימום 1)
        """
        limit = max(0, int(limit))
        window_seconds = max(1, int(window_seconds))

        if settings.RATE_LIMIT_DISABLED or not key or limit <= 0:
            return RateLimitDecision(ok=True)

        now = utcnow()
        cutoff = now - timedelta(seconds=window_seconds)
        table = ApiRateLimit.__table__
        expired = table.c.window_started_at <= cutoff

        insert_stmt = dialect_insert(self.db, table).values(
            key=key, count=1, window_started_at=now, updated_at=now
        )
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=[table.c.key],
            set_={
                "count": case((expired, 1), else_=table.c.count + 1),
                "window_started_at": case((expired, now), else_=table.c.window_started_at),
                "updated_at": now,
            },
            where=or_(expired, table.c.count < limit),
        ).returning(table.c.window_started_at, table.c.count)

        result = await self.db.execute(stmt)
        row = result.mappings().first()
        if row is not None:
            await self.db.commit()
            return RateLimitDecision(ok=True, remaining=max(0, limit - int(row["count"])))

        current = await self.db.execute(
            select(ApiRateLimit.window_started_at).where(ApiRateLimit.key == key)
        )
        started_at: Optional[datetime] = current.scalar_one_or_none() or now
        await self.db.commit()

        window_end = started_at + timedelta(seconds=window_seconds)
        retry_after = max(1, math.ceil((window_end - utcnow()).total_seconds()))
        return RateLimitDecision(ok=False, retry_after_seconds=retry_after)
