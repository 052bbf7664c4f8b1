"""
Single-flight claims for automated jobs.

At most one cron dispatcher of a given kind may run at a time. The claim is
a single conditional statement against `job_locks`, so it holds across
processes; an expired claim (crashed run) can be taken over.
"""

import uuid
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy import or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models import JobLock, utcnow

logger = structlog.get_logger("job_locks")

locks = JobLock.__table__


class JobLockService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def claim(self, name: str, ttl_seconds: int, holder: Optional[str] = None) -> Optional[str]:
        """Returns the holder token when the claim succeeded, None otherwise."""
        holder = holder or uuid.uuid4().hex
        now = utcnow()
        until = now + timedelta(seconds=ttl_seconds)

        insert = pg_insert if self.db.bind.dialect.name == "postgresql" else sqlite_insert
        created = await self.db.execute(
            insert(locks)
            .values(name=name, holder=holder, locked_until=until)
            .on_conflict_do_nothing(index_elements=["name"])
        )
        if created.rowcount:
            await self.db.commit()
            logger.info("Job claimed", job=name)
            return holder

        taken = await self.db.execute(
            update(locks)
            .where(locks.c.name == name)
            .where(or_(locks.c.locked_until.is_(None), locks.c.locked_until < now))
            .values(holder=holder, locked_until=until)
        )
        await self.db.commit()

        if taken.rowcount:
            logger.info("Job claimed", job=name)
            return holder

        logger.warning("Job already in flight", job=name)
        return None

    async def release(self, name: str, holder: str) -> None:
        await self.db.execute(
            update(locks)
            .where(locks.c.name == name, locks.c.holder == holder)
            .values(holder=None, locked_until=None)
        )
        await self.db.commit()
