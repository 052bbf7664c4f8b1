from datetime import timedelta

import pytest
from sqlalchemy import update

from models import JobLock, utcnow
from services.job_locks import JobLockService


@pytest.mark.asyncio
async def test_second_claim_is_refused_until_release(db):
    locks = JobLockService(db)

    holder = await locks.claim("cron:birthday", ttl_seconds=60)
    assert holder is not None
    assert await locks.claim("cron:birthday", ttl_seconds=60) is None

    await locks.release("cron:birthday", holder)
    assert await locks.claim("cron:birthday", ttl_seconds=60) is not None


@pytest.mark.asyncio
async def test_locks_are_per_job(db):
    locks = JobLockService(db)

    assert await locks.claim("cron:birthday", ttl_seconds=60)
    assert await locks.claim("cron:lapse", ttl_seconds=60)


@pytest.mark.asyncio
async def test_expired_claim_can_be_taken_over(db, session_factory):
    locks = JobLockService(db)
    await locks.claim("cron:billing", ttl_seconds=60, holder="crashed-run")

    async with session_factory() as session:
        await session.execute(
            update(JobLock)
            .where(JobLock.name == "cron:billing")
            .values(locked_until=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

    assert await locks.claim("cron:billing", ttl_seconds=60, holder="next-run") == "next-run"


@pytest.mark.asyncio
async def test_release_by_stale_holder_is_a_noop(db):
    locks = JobLockService(db)
    await locks.claim("cron:lapse", ttl_seconds=60, holder="current")

    await locks.release("cron:lapse", "someone-else")

    assert await locks.claim("cron:lapse", ttl_seconds=60) is None
