"""
בדיקות ל-EventClaimService — lease על אירועי webhook.
"""
import asyncio
import hashlib
from datetime import timedelta

import pytest

from app.db.cas import fetch_fresh
from app.db.compat import new_id, utcnow
from app.db.models.webhook_event import AppliedResult, PaymentWebhookEvent
from app.domain.services.event_claim_service import EventClaimService


class TestClaimNext:

    @pytest.mark.unit
    async def test_claims_oldest_by_provider_time(self, db_session, event_factory):
        now = utcnow()
        newer = await event_factory("inv_a", provider_modified_at=now - timedelta(minutes=1))
        older = await event_factory("inv_b", provider_modified_at=now - timedelta(minutes=5))
        untimed = await event_factory("inv_c", provider_modified_at=None, received_minutes_ago=30)

        service = EventClaimService(db_session)
        claimed = [await service.claim_next("w1") for _ in range(3)]

        assert [e.id for e in claimed] == [older.id, newer.id, untimed.id]
        assert all(e.claimed_by == "w1" for e in claimed)
        assert await service.claim_next("w1") is None

    @pytest.mark.unit
    async def test_live_lease_not_reclaimed(self, db_session, event_factory):
        await event_factory()
        service = EventClaimService(db_session)

        first = await service.claim_next("w1")
        second = await service.claim_next("w2")

        assert first is not None
        assert second is None

    @pytest.mark.unit
    async def test_expired_lease_reclaimed(self, db_session, event_factory):
        event = await event_factory(claimed_by="crashed", claim_expires_at=utcnow() - timedelta(seconds=1))

        claimed = await EventClaimService(db_session).claim_next("w2")

        assert claimed is not None
        assert claimed.id == event.id
        assert claimed.claimed_by == "w2"
        assert claimed.claim_expires_at > utcnow()

    @pytest.mark.unit
    async def test_applied_events_never_claimed(self, db_session, event_factory):
        await event_factory(applied_result=AppliedResult.APPLIED)

        assert await EventClaimService(db_session).claim_next("w1") is None


class TestClaimEvent:

    @pytest.mark.unit
    async def test_claim_specific_event_once(self, db_session, event_factory):
        event = await event_factory()
        service = EventClaimService(db_session, ttl_seconds=30)

        claimed = await service.claim_event(event.id, "inline")
        again = await service.claim_event(event.id, "other")

        assert claimed is not None
        assert claimed.claimed_by == "inline"
        assert again is None

    @pytest.mark.unit
    async def test_missing_event(self, db_session):
        assert await EventClaimService(db_session).claim_event("missing", "w1") is None


class TestConcurrentClaim:
    """שני workers על חיבורים נפרדים — בדיוק אחד זוכה באירוע"""

    @pytest.mark.unit
    async def test_single_winner_across_sessions(self, concurrent_sessions):
        event_key = hashlib.sha256(b"race").hexdigest()
        async with concurrent_sessions() as seed:
            seed.add(
                PaymentWebhookEvent(
                    id=new_id(),
                    provider="monobank",
                    event_key=event_key,
                    raw_sha256=event_key,
                    invoice_id="inv_race",
                    status="success",
                    raw_payload={"invoiceId": "inv_race", "status": "success"},
                    received_at=utcnow(),
                )
            )
            await seed.commit()

        async def claim(worker_id: str):
            async with concurrent_sessions() as session:
                return await EventClaimService(session).claim_next(worker_id)

        results = await asyncio.gather(claim("w1"), claim("w2"))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        async with concurrent_sessions() as check:
            stored = await fetch_fresh(check, PaymentWebhookEvent, winners[0].id)
            assert stored.claimed_by == winners[0].claimed_by
