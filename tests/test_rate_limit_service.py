"""
בדיקות ל-RateLimitService (fixed window ב-DB) ולגזירת נושא ה-rate limit.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from app.core.config import settings
from app.db.cas import compare_and_swap
from app.db.compat import utcnow
from app.db.models.api_rate_limit import ApiRateLimit
from app.domain.services.rate_limit_service import (
    RateLimitService,
    derive_rate_limit_subject,
    normalize_rate_limit_subject,
)


class TestEnforceRateLimit:

    @pytest.mark.unit
    async def test_allows_up_to_limit_then_blocks(self, db_session):
        service = RateLimitService(db_session)

        decisions = [await service.enforce_rate_limit("webhook:test:1.2.3.4", 3, 60) for _ in range(4)]

        assert [d.ok for d in decisions] == [True, True, True, False]
        assert decisions[0].remaining == 2
        assert decisions[3].retry_after_seconds >= 1
        assert decisions[3].retry_after_seconds <= 60

    @pytest.mark.unit
    async def test_keys_are_independent(self, db_session):
        service = RateLimitService(db_session)

        assert (await service.enforce_rate_limit("k:a", 1, 60)).ok
        assert not (await service.enforce_rate_limit("k:a", 1, 60)).ok
        assert (await service.enforce_rate_limit("k:b", 1, 60)).ok

    @pytest.mark.unit
    async def test_expired_window_resets_count(self, db_session):
        service = RateLimitService(db_session)
        await service.enforce_rate_limit("k:reset", 1, 60)
        assert not (await service.enforce_rate_limit("k:reset", 1, 60)).ok

        await compare_and_swap(
            db_session,
            ApiRateLimit,
            [ApiRateLimit.key == "k:reset"],
            {"window_started_at": utcnow() - timedelta(seconds=120)},
        )
        await db_session.commit()

        decision = await service.enforce_rate_limit("k:reset", 1, 60)
        assert decision.ok

    @pytest.mark.unit
    async def test_disabled_or_zero_limit_always_ok(self, db_session):
        service = RateLimitService(db_session)
        assert (await service.enforce_rate_limit("k:zero", 0, 60)).ok

        with patch.object(settings, "RATE_LIMIT_DISABLED", True):
            for _ in range(3):
                assert (await service.enforce_rate_limit("k:off", 1, 60)).ok


class TestSubjects:

    @pytest.mark.unit
    def test_ipv4_kept(self):
        assert normalize_rate_limit_subject(" 10.0.0.1 ") == "10.0.0.1"

    @pytest.mark.unit
    def test_ipv6_hashed_without_colons(self):
        subject = normalize_rate_limit_subject("2001:db8::1")
        assert subject.startswith("ip6_")
        assert ":" not in subject

    @pytest.mark.unit
    def test_unsafe_chars_replaced(self):
        assert normalize_rate_limit_subject("a b/c") == "a_b_c"
        assert normalize_rate_limit_subject("") == "anon"

    @pytest.mark.unit
    def test_forwarded_headers_ignored_by_default(self):
        headers = {"x-forwarded-for": "9.9.9.9"}
        assert derive_rate_limit_subject("10.0.0.1", headers) == "10.0.0.1"

    @pytest.mark.unit
    def test_forwarded_headers_trusted_when_configured(self):
        headers = {"x-forwarded-for": "bogus, 9.9.9.9", "x-real-ip": ""}
        with patch.object(settings, "TRUST_FORWARDED_HEADERS", True):
            assert derive_rate_limit_subject("10.0.0.1", headers) == "9.9.9.9"

    @pytest.mark.unit
    def test_no_ip_falls_back_to_user_agent_hash(self):
        subject = derive_rate_limit_subject(None, {"user-agent": "curl/8", "accept-language": "en"})
        assert subject.startswith("ua_")
        assert subject == derive_rate_limit_subject("testclient", {"user-agent": "curl/8", "accept-language": "en"})
