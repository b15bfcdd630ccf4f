"""Runs one data refresh cycle: ticket reconciliation, then view refresh.

Views are derived from the base tables, so they are only refreshed after the
ticket sync has finished. A fatal ticket sync failure skips the refresh.
"""

from __future__ import annotations

import logging
from contextlib import suppress

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.clients.warehouse import WarehouseClient
from src.config import settings
from src.handlers.bug_loader import BugLoader
from src.handlers.lookups import list_triages, load_job_cache, load_test_cache
from src.handlers.matview_refresh import MatviewRefreshResult, refresh_materialized_views
from src.schemas.refresh import RefreshResponse

logger = logging.getLogger(__name__)


def supports_matviews(db: AsyncSession) -> bool:
    return db.get_bind().dialect.name == "postgresql"


async def load_bugs(db: AsyncSession, warehouse) -> tuple[int, list[str]]:
    """Reconcile tickets from ``warehouse``; returns (tickets synced, errors)."""
    test_cache = await load_test_cache(db)
    job_cache = await load_job_cache(db)
    triages = await list_triages(db)
    loader = BugLoader(db, warehouse)
    errors = await loader.load(test_cache, job_cache, triages)
    return loader.synced, errors


async def handle_refresh(
    db: AsyncSession,
    session_factory: async_sessionmaker | None,
    only_if_empty: bool = False,
) -> RefreshResponse:
    errors: list[str] = []
    tickets_synced = 0

    if settings.bigquery_project:
        try:
            warehouse = WarehouseClient()
            tickets_synced, bug_errors = await load_bugs(db, warehouse)
            errors.extend(f"bugs: {err}" for err in bug_errors)
            await warehouse.close()
        except Exception as exc:
            logger.error("Ticket reconciliation failed: %s", exc)
            await db.rollback()
            with suppress(Exception):
                await warehouse.close()  # type: ignore[possibly-undefined]
            return RefreshResponse(status="failed", errors=[*errors, f"bugs: {exc}"])
    else:
        logger.info("Warehouse not configured — skipping ticket reconciliation")

    if supports_matviews(db):
        matviews = await refresh_materialized_views(session_factory, only_if_empty=only_if_empty)
    else:
        logger.info(
            "Skipping materialized view refresh: %s has no materialized views",
            db.get_bind().dialect.name,
        )
        matviews = MatviewRefreshResult()
    errors.extend(f"matview: {view} could not be refreshed" for view in sorted(matviews.failed))

    if errors:
        logger.warning("%d errors were encountered during refresh", len(errors))
        for err in errors:
            logger.error(err)

    return RefreshResponse(
        status="partial" if errors else "processed",
        tickets_synced=tickets_synced,
        matviews=matviews.summary(),
        errors=errors,
    )
