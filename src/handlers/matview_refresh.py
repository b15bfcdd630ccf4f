"""Refreshes the PostgreSQL materialized views backing the reports.

Views are handed to a small pool of workers over a queue. Each view is first
refreshed ``CONCURRENTLY`` so readers are not blocked; when that fails (the
view was never populated, or lacks the unique index it needs) the worker falls
back to a plain refresh, which locks reads of that one view.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from contextlib import suppress
from dataclasses import dataclass, field

import httpx
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.clients.pushgateway import PushgatewayClient, render_gauges
from src.config import settings
from src.schemas.refresh import MatviewRefreshSummary

logger = logging.getLogger(__name__)

MATVIEW_REFRESH_METRIC = "sigsync_matview_refresh_millis"
ALL_MATVIEWS_REFRESH_METRIC = "sigsync_all_matviews_refresh_millis"
PUSHGATEWAY_JOB = "ci-signal-sync-matviews"

_VIEW_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@dataclass
class MatviewRefreshResult:
    refreshed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    view_elapsed_ms: dict[str, float] = field(default_factory=dict)
    elapsed_ms: float = 0.0

    def summary(self) -> MatviewRefreshSummary:
        return MatviewRefreshSummary(
            refreshed=sorted(self.refreshed),
            skipped=sorted(self.skipped),
            failed=sorted(self.failed),
            elapsed_ms=round(self.elapsed_ms, 1),
        )


async def _count_rows(session: AsyncSession, view: str) -> int:
    result = await session.execute(text(f"SELECT COUNT(*) FROM {view}"))
    return int(result.scalar_one())


async def _refresh_view(session: AsyncSession, view: str, concurrently: bool) -> None:
    mode = "CONCURRENTLY " if concurrently else ""
    await session.execute(text(f"REFRESH MATERIALIZED VIEW {mode}{view}"))
    await session.commit()


async def _refresh_one(
    session_factory: async_sessionmaker,
    view: str,
    only_if_empty: bool,
    result: MatviewRefreshResult,
) -> None:
    start = time.perf_counter()
    async with session_factory() as session:
        if only_if_empty:
            try:
                count = await _count_rows(session, view)
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("Could not count rows of %s, refreshing anyway: %s", view, exc)
            else:
                if count > 0:
                    logger.info("Skipping refresh of %s as it appears to be populated", view)
                    result.skipped.append(view)
                    return

        logger.info("Refreshing materialized view %s", view)
        try:
            await _refresh_view(session, view, concurrently=True)
            how = "concurrently"
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning(
                "Error refreshing %s concurrently, falling back to regular refresh: %s", view, exc
            )
            await _refresh_view(session, view, concurrently=False)
            how = "with read lock"

    elapsed_ms = (time.perf_counter() - start) * 1000
    result.refreshed.append(view)
    result.view_elapsed_ms[view] = elapsed_ms
    logger.info("Refreshed materialized view %s %s in %.0fms", view, how, elapsed_ms)


async def _refresh_worker(
    session_factory: async_sessionmaker,
    only_if_empty: bool,
    queue: asyncio.Queue,
    result: MatviewRefreshResult,
) -> None:
    while True:
        view = await queue.get()
        if view is None:
            return
        # A broken view must not stop this worker from draining the queue.
        try:
            await _refresh_one(session_factory, view, only_if_empty, result)
        except Exception as exc:
            logger.error("Error refreshing materialized view %s: %s", view, exc)
            result.failed.append(view)


async def push_refresh_metrics(result: MatviewRefreshResult, pushgateway_url: str) -> None:
    """Best-effort push of refresh timings; failures are only logged."""
    body = render_gauges(
        {
            MATVIEW_REFRESH_METRIC: [
                ({"view": view}, round(ms, 3)) for view, ms in sorted(result.view_elapsed_ms.items())
            ],
            ALL_MATVIEWS_REFRESH_METRIC: [({}, round(result.elapsed_ms, 3))],
        },
        {
            MATVIEW_REFRESH_METRIC: "Milliseconds to refresh one materialized view",
            ALL_MATVIEWS_REFRESH_METRIC: "Milliseconds to refresh all materialized views",
        },
    )
    logger.info("Pushing metrics to prometheus gateway")
    try:
        pusher = PushgatewayClient(pushgateway_url, PUSHGATEWAY_JOB)
        await pusher.push(body)
        await pusher.close()
    except (httpx.HTTPError, RuntimeError) as exc:
        logger.error("Could not push to prometheus pushgateway: %s", exc)
        with suppress(Exception):
            await pusher.close()  # type: ignore[possibly-undefined]


async def refresh_materialized_views(
    session_factory: async_sessionmaker | None,
    views: list[str] | None = None,
    only_if_empty: bool = False,
    pushgateway_url: str | None = None,
) -> MatviewRefreshResult:
    """Refresh ``views`` with a fixed pool of workers and wait for all of them.

    ``only_if_empty`` is used at startup to populate views that have never
    been refreshed without redoing the ones that already hold data.
    """
    result = MatviewRefreshResult()
    if session_factory is None:
        logger.info("Skipping materialized view refresh as no database is configured")
        return result

    views = list(settings.matviews if views is None else views)
    for view in views:
        if not _VIEW_NAME.match(view):
            raise ValueError(f"invalid materialized view name: {view!r}")

    logger.info("Refreshing %d materialized views", len(views))
    start = time.perf_counter()

    queue: asyncio.Queue = asyncio.Queue()
    workers = [
        asyncio.create_task(_refresh_worker(session_factory, only_if_empty, queue, result))
        for _ in range(max(1, settings.matview_workers))
    ]
    for view in views:
        await queue.put(view)
    # One sentinel per worker closes the queue.
    for _ in workers:
        await queue.put(None)
    await asyncio.gather(*workers)

    result.elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "Refreshed all materialized views in %.0fms (%d refreshed, %d skipped, %d failed)",
        result.elapsed_ms,
        len(result.refreshed),
        len(result.skipped),
        len(result.failed),
    )

    pushgateway_url = settings.prometheus_pushgateway if pushgateway_url is None else pushgateway_url
    if pushgateway_url:
        await push_refresh_metrics(result, pushgateway_url)
    return result
