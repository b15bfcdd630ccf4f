"""Request-level entry point for job artifact scans."""

from __future__ import annotations

import logging
from contextlib import suppress

from sqlalchemy.ext.asyncio import AsyncSession

from src.clients.blob_store import BlobStoreClient
from src.handlers.content_matchers import ContentMatcher, RegexLineMatcher
from src.handlers.job_artifacts import JobArtifactQuery
from src.schemas.artifacts import JobArtifactsResponse

logger = logging.getLogger(__name__)


def build_line_matcher(
    text_contains: str = "",
    text_regex: str = "",
    before_context: int = 0,
    after_context: int = 0,
    max_matches: int = 10,
) -> ContentMatcher | None:
    """Return a line matcher for the request, or None to list files only."""
    if not text_contains and not text_regex:
        return None
    return RegexLineMatcher(
        pattern=text_regex or None,
        contains=text_contains or None,
        before_context=before_context,
        after_context=after_context,
        max_matches=max_matches,
    )


async def handle_job_artifacts(
    db: AsyncSession,
    job_run_ids: list[int],
    path_glob: str = "",
    matcher: ContentMatcher | None = None,
) -> JobArtifactsResponse:
    blob_store = BlobStoreClient()
    try:
        query = JobArtifactQuery(db, blob_store, path_glob=path_glob, matcher=matcher)
        response = await query.query_job_runs(job_run_ids)
    finally:
        with suppress(Exception):
            await blob_store.close()
    logger.info(
        "Scanned artifacts of %d job runs (%d errors)", len(response.job_runs), len(response.errors)
    )
    return response
