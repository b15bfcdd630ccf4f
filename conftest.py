"""Shared test configuration — must be loaded before src modules."""

import os

# Override database URL before any src modules are imported.
os.environ["SIGSYNC_DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SIGSYNC_BIGQUERY_PROJECT"] = ""
os.environ["SIGSYNC_PROMETHEUS_PUSHGATEWAY"] = ""

import pytest
from src.database import engine, Base
from src.models import ci_test, job, ticket, triage  # noqa: F401


@pytest.fixture(autouse=True)
async def _reset_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
