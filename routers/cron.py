import structlog
from fastapi import APIRouter, Depends, HTTPException

from config import get_settings
from dependencies import get_dispatcher, get_job_locks
from schemas import DispatchSummary
from security import verify_cron_secret
from services.dispatchers import JOB_MESSAGE_TYPES, CronDispatcher
from services.job_locks import JobLockService

router = APIRouter(prefix="/cron", dependencies=[Depends(verify_cron_secret)])
logger = structlog.get_logger("cron")


@router.get("/{kind}", response_model=DispatchSummary)
async def run_cron(
    kind: str,
    locks: JobLockService = Depends(get_job_locks),
    dispatcher: CronDispatcher = Depends(get_dispatcher),
):
    if kind not in JOB_MESSAGE_TYPES:
        raise HTTPException(status_code=404, detail=f"Unknown cron job: {kind}")

    lock_name = f"cron:{kind}"
    holder = await locks.claim(lock_name, get_settings().CRON_LOCK_TTL_SECONDS)
    if holder is None:
        raise HTTPException(status_code=409, detail=f"{kind} is already running")

    try:
        counts = await dispatcher.run(kind)
    finally:
        await locks.release(lock_name, holder)

    return DispatchSummary(**counts.as_dict())
