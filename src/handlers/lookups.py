"""Read-only lookups the reconciliation run is seeded with."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.ci_test import Test
from src.models.job import Job
from src.models.triage import Triage


async def load_test_cache(db: AsyncSession) -> dict[str, Test]:
    result = await db.execute(select(Test))
    return {test.name: test for test in result.scalars().all()}


async def load_job_cache(db: AsyncSession) -> dict[str, Job]:
    result = await db.execute(select(Job))
    return {job.name: job for job in result.scalars().all()}


async def list_triages(db: AsyncSession) -> list[Triage]:
    result = await db.execute(select(Triage).order_by(Triage.id))
    return list(result.scalars().all())
