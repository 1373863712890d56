from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from isp_billing.core.api_docs import error_responses
from isp_billing.core.deps import get_db
from isp_billing.models.payment import WorkerLock
from isp_billing.schemas.payment import WorkerStatsOut
from isp_billing.services.payment_worker import PAYMENT_WORKER_LOCK, get_statistics

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get(
    "/worker/stats",
    response_model=WorkerStatsOut,
    summary="Payment intent counts per state",
    responses=error_responses(500),
)
def worker_stats(db: Session = Depends(get_db)):
    lock = db.get(WorkerLock, PAYMENT_WORKER_LOCK)
    return WorkerStatsOut(
        **get_statistics(db),
        lock_holder=lock.locked_by if lock is not None else None,
        lock_contended_ticks=lock.contended_ticks if lock is not None else 0,
    )
