"""
Celery Tasks — עבודות רקע של התשלומים

- consumer לאירועי webhook שמורים (WEBHOOK_MODE=store)
- restock sweeps
- janitor jobs

כל task מריץ async def _process() בתוך run_async, עם session חדש
ו-correlation id משלו. תקלות תשתית עולות ל-Celery (הריצה הבאה תנסה שוב).
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Optional

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id
from app.db.compat import new_id
from app.db.database import get_task_session
from app.domain.services.event_claim_service import EventClaimService
from app.domain.services.janitor_service import APPLIED_RESULTS, JanitorService
from app.domain.services.restock_sweep_service import RestockSweepService
from app.domain.services.webhook_apply_service import WebhookApplyService

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Redis singleton מחובר ל-loop הנוכחי — נסגר לפני סגירת ה-loop
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def consume_stored_events(db, worker_id: str, batch_size: int) -> dict[str, int]:
    """
    תפיסה והחלה של עד batch_size אירועים שמורים, אחד אחרי השני.

    אירוע שנכשל נשאר עם claim — אחרי שה-TTL פג הוא נתפס שוב.
    """
    stats = {"processed": 0, "applied": 0, "noop": 0, "failed": 0}
    claims = EventClaimService(db)
    applier = WebhookApplyService(db, worker_id=worker_id)

    for _ in range(batch_size):
        event = await claims.claim_next(worker_id)
        if event is None:
            break
        event_id = event.id
        stats["processed"] += 1
        try:
            outcome = await applier.apply_event(event)
        except Exception:
            await db.rollback()
            stats["failed"] += 1
            logger.error(
                "Stored webhook event apply failed",
                extra_data={"event_id": event_id, "worker_id": worker_id},
                exc_info=True,
            )
            continue
        stats["applied" if outcome.applied_result in APPLIED_RESULTS else "noop"] += 1

    return stats


@celery_app.task(name="app.workers.tasks.process_stored_webhook_events")
def process_stored_webhook_events(batch_size: Optional[int] = None) -> dict[str, int]:
    """Claim consumer לאירועים שנשמרו ב-WEBHOOK_MODE=store"""
    if settings.WEBHOOK_MODE != "store":
        return {"processed": 0, "applied": 0, "noop": 0, "failed": 0}

    async def _process():
        async with get_task_session() as db:
            return await consume_stored_events(
                db,
                worker_id=f"consumer-{new_id()[:8]}",
                batch_size=batch_size or settings.WEBHOOK_CLAIM_BATCH_SIZE,
            )

    result = run_async(_process())
    if result["processed"]:
        logger.info("Stored webhook events processed", extra_data=result)
    return result


def _run_sweep(name: str, **kwargs: Any) -> dict[str, int]:
    async def _process():
        async with get_task_session() as db:
            return await getattr(RestockSweepService(db), name)(**kwargs)

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.restock_stale_pending_orders")
def restock_stale_pending_orders(**kwargs: Any) -> dict[str, int]:
    return _run_sweep("restock_stale_pending_orders", **kwargs)


@celery_app.task(name="app.workers.tasks.restock_stuck_reserving_orders")
def restock_stuck_reserving_orders(**kwargs: Any) -> dict[str, int]:
    return _run_sweep("restock_stuck_reserving_orders", **kwargs)


@celery_app.task(name="app.workers.tasks.restock_stale_no_payment_orders")
def restock_stale_no_payment_orders(**kwargs: Any) -> dict[str, int]:
    return _run_sweep("restock_stale_no_payment_orders", **kwargs)


@celery_app.task(name="app.workers.tasks.run_janitor_job")
def run_janitor_job(job: str, dry_run: bool = False, limit: Optional[int] = None) -> dict[str, Any]:
    """
    הרצת janitor job מתוך beat.

    job3 מתוזמן רק דרך ה-consumer; הרצה ידנית שלו במצב שאינו store
    מחזירה JanitorModeError.
    """

    async def _process():
        async with get_task_session() as db:
            return await JanitorService(db).run(job, dry_run=dry_run, limit=limit)

    return run_async(_process())
