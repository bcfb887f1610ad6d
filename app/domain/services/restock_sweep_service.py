"""
Restock Sweep Service - החזרת מלאי להזמנות שנתקעו

שלושה sweeps, כל אחד עם claim באצווה על ה-sweep lease של ההזמנה
(UPDATE מותנה אחד ל-batch). הזמנה שנמצאת תחת lease חי של worker אחר
מדולגת. כל הזמנה שנתפסה עוברת restock_order(already_claimed=True,
reason=stale). לכל ריצה תקציב זמן; מה שלא הספיק נתפס בריצה הבאה אחרי
שה-lease פג.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger, log_payment_event, PaymentLogCode
from app.db.cas import claim_batch
from app.db.compat import utcnow, new_id
from app.db.models.order import Order, InventoryStatus, PaymentProvider, PaymentStatus
from app.db.models.payment_attempt import OPEN_ATTEMPT_STATUSES, PaymentAttempt
from app.domain.services.restock_service import RestockReason, RestockService

logger = get_logger(__name__)

MIN_OLDER_THAN_MINUTES = 10
MAX_OLDER_THAN_MINUTES = 60 * 24 * 7
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 100
MIN_CLAIM_TTL_MINUTES = 1
MAX_CLAIM_TTL_MINUTES = 60
MAX_TIME_BUDGET_SECONDS = 25.0

STUCK_RESERVING_FAILURE_CODE = "STUCK_RESERVING_TIMEOUT"
STUCK_RESERVING_FAILURE_MESSAGE = "Order timed out while reserving inventory."


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = default
    return max(low, min(high, number))


@dataclass(frozen=True)
class SweepOptions:
    older_than_minutes: int
    batch_size: int
    claim_ttl_minutes: int
    time_budget_seconds: float
    worker_id: str
    dry_run: bool = False

    @classmethod
    def build(
        cls,
        *,
        default_older_than: int,
        default_worker_id: str,
        older_than_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
        claim_ttl_minutes: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        worker_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> "SweepOptions":
        older = older_than_minutes if older_than_minutes is not None else default_older_than
        batch = batch_size if batch_size is not None else settings.RESTOCK_BATCH_SIZE
        ttl = claim_ttl_minutes if claim_ttl_minutes is not None else settings.RESTOCK_CLAIM_TTL_MINUTES
        budget = time_budget_seconds if time_budget_seconds is not None else settings.RESTOCK_TIME_BUDGET_SECONDS
        return cls(
            older_than_minutes=int(_clamp(older, MIN_OLDER_THAN_MINUTES, MAX_OLDER_THAN_MINUTES, default_older_than)),
            batch_size=int(_clamp(batch, MIN_BATCH_SIZE, MAX_BATCH_SIZE, settings.RESTOCK_BATCH_SIZE)),
            claim_ttl_minutes=int(_clamp(ttl, MIN_CLAIM_TTL_MINUTES, MAX_CLAIM_TTL_MINUTES, 5)),
            time_budget_seconds=_clamp(budget, 0.0, MAX_TIME_BUDGET_SECONDS, settings.RESTOCK_TIME_BUDGET_SECONDS),
            worker_id=(worker_id or "").strip()[:64] or default_worker_id,
            dry_run=dry_run,
        )


def _lease_free(now):
    return or_(Order.sweep_claim_expires_at.is_(None), Order.sweep_claim_expires_at < now)


def _not_restocked() -> list:
    return [Order.stock_restored.is_(False), Order.restocked_at.is_(None)]


def _has_open_attempt():
    return exists().where(
        and_(
            PaymentAttempt.order_id == Order.id,
            PaymentAttempt.status.in_(OPEN_ATTEMPT_STATUSES),
        )
    )


class RestockSweepService:
    """Batch-claimed restock sweeps over stale orders"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.restock = RestockService(db)

    async def _count(self, conditions: Sequence[Any]) -> int:
        result = await self.db.execute(select(func.count()).select_from(Order).where(*conditions))
        return int(result.scalar_one())

    async def _run(
        self,
        job: str,
        options: SweepOptions,
        conditions: Callable[[Any], list],
        claim_values: Optional[dict[str, Any]] = None,
    ) -> dict[str, int]:
        stats = {"processed": 0, "applied": 0, "noop": 0, "failed": 0}
        cutoff_now = utcnow()
        cutoff = cutoff_now - timedelta(minutes=options.older_than_minutes)

        if options.dry_run:
            stats["processed"] = await self._count([*conditions(cutoff), _lease_free(cutoff_now)])
            return stats

        run_id = new_id()
        deadline = time.monotonic() + options.time_budget_seconds

        while time.monotonic() < deadline:
            now = utcnow()
            eligible = [*conditions(cutoff), _lease_free(now)]
            values = {
                "sweep_claimed_at": now,
                "sweep_claim_expires_at": now + timedelta(minutes=options.claim_ttl_minutes),
                "sweep_run_id": run_id,
                "sweep_claimed_by": options.worker_id,
                "updated_at": now,
                **(claim_values or {}),
            }
            claimed = await claim_batch(
                self.db,
                Order,
                eligible=eligible,
                order_by=[Order.created_at.asc()],
                limit=options.batch_size,
                values=values,
            )
            await self.db.commit()
            if not claimed:
                break

            for row in claimed:
                if time.monotonic() >= deadline:
                    break
                order_id = row["id"]
                stats["processed"] += 1
                try:
                    restocked = await self.restock.restock_order(
                        order_id,
                        reason=RestockReason.STALE,
                        already_claimed=True,
                        worker_id=options.worker_id,
                    )
                except Exception:
                    await self.db.rollback()
                    stats["failed"] += 1
                    log_payment_event(
                        logger,
                        logging.ERROR,
                        PaymentLogCode.RESTOCK_FAILED,
                        {"job": job, "orderId": order_id, "runId": run_id, "workerId": options.worker_id},
                        exc_info=True,
                    )
                    continue
                stats["applied" if restocked else "noop"] += 1

        log_payment_event(
            logger,
            logging.INFO,
            PaymentLogCode.JANITOR_RUN,
            {"job": job, "runId": run_id, "workerId": options.worker_id, **stats},
        )
        return stats

    async def restock_stale_pending_orders(self, **kwargs) -> dict[str, int]:
        """
        הזמנות של ספק חיצוני שממתינות לתשלום מעבר לסף (ברירת מחדל 60 דק').

        הזמנה עם ניסיון פתוח (creating/active) מדולגת — ה-janitor מיישב
        אותה מול הספק.
        """
        options = SweepOptions.build(
            default_older_than=settings.RESTOCK_STALE_PENDING_MINUTES,
            default_worker_id="restock-sweep",
            **kwargs,
        )

        def conditions(cutoff) -> list:
            return [
                Order.payment_provider != PaymentProvider.NONE,
                Order.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.REQUIRES_PAYMENT]),
                Order.inventory_status != InventoryStatus.RELEASED,
                *_not_restocked(),
                Order.created_at < cutoff,
                ~_has_open_attempt(),
            ]

        return await self._run("restock_stale_pending_orders", options, conditions)

    async def restock_stuck_reserving_orders(self, **kwargs) -> dict[str, int]:
        """הזמנות שנתקעו ב-reserving / release_pending (ברירת מחדל 15 דק')."""
        options = SweepOptions.build(
            default_older_than=settings.RESTOCK_STUCK_RESERVING_MINUTES,
            default_worker_id="restock-stuck-reserving-sweep",
            **kwargs,
        )

        def conditions(cutoff) -> list:
            return [
                Order.payment_provider != PaymentProvider.NONE,
                Order.payment_status.in_(
                    [
                        PaymentStatus.PENDING,
                        PaymentStatus.REQUIRES_PAYMENT,
                        PaymentStatus.FAILED,
                        PaymentStatus.REFUNDED,
                    ]
                ),
                Order.inventory_status.in_([InventoryStatus.RESERVING, InventoryStatus.RELEASE_PENDING]),
                *_not_restocked(),
                Order.created_at < cutoff,
            ]

        return await self._run(
            "restock_stuck_reserving_orders",
            options,
            conditions,
            claim_values={
                "failure_code": func.coalesce(Order.failure_code, STUCK_RESERVING_FAILURE_CODE),
                "failure_message": func.coalesce(Order.failure_message, STUCK_RESERVING_FAILURE_MESSAGE),
            },
        )

    async def restock_stale_no_payment_orders(self, **kwargs) -> dict[str, int]:
        """הזמנות ללא ספק תשלום שלא הושלמו (ברירת מחדל 30 דק')."""
        options = SweepOptions.build(
            default_older_than=settings.RESTOCK_STALE_NO_PAYMENT_MINUTES,
            default_worker_id="restock-nopay-sweep",
            **kwargs,
        )

        def conditions(cutoff) -> list:
            return [
                Order.payment_provider == PaymentProvider.NONE,
                Order.inventory_status.in_(
                    [InventoryStatus.NONE, InventoryStatus.RESERVING, InventoryStatus.RELEASE_PENDING]
                ),
                *_not_restocked(),
                Order.created_at < cutoff,
            ]

        return await self._run("restock_stale_no_payment_orders", options, conditions)
