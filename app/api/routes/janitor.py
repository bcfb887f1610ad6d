"""
Internal Janitor Endpoints — הרצה ידנית של עבודות יישוב ו-restock sweeps.

מוגן ב-X-Admin-API-Key. כל job מחזיר {processed, applied, noop, failed};
job4 מוסיף report. dryRun=true סופר מועמדים בלבד.
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.janitor_service import JANITOR_JOBS, JanitorService
from app.domain.services.restock_sweep_service import RestockSweepService

logger = get_logger(__name__)

router = APIRouter()

SWEEP_JOBS = (
    "restock_stale_pending_orders",
    "restock_stuck_reserving_orders",
    "restock_stale_no_payment_orders",
)


@router.post(
    "/janitor/{job}",
    summary="הרצת janitor job",
    description=f"jobs: {', '.join(JANITOR_JOBS + SWEEP_JOBS)}",
)
async def run_janitor_job(
    job: str,
    dry_run: bool = Query(False, alias="dryRun"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    older_than_minutes: Optional[int] = Query(None, alias="olderThanMinutes"),
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    if job in JANITOR_JOBS:
        # JanitorModeError (409) מטופל ע"י ה-handler הגלובלי
        result = await JanitorService(db).run(job, dry_run=dry_run, limit=limit)
    elif job in SWEEP_JOBS:
        sweeps = RestockSweepService(db)
        result = await getattr(sweeps, job)(
            dry_run=dry_run,
            batch_size=limit,
            older_than_minutes=older_than_minutes,
        )
    else:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown janitor job: {job}")

    return {"job": job, "dryRun": dry_run, **result}
