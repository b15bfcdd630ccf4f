"""Job artifact routes for ci-signal-sync."""

import re

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.handlers.artifact_scan import build_line_matcher, handle_job_artifacts
from src.schemas.artifacts import JobArtifactsResponse

router = APIRouter(tags=["jobs"])


def _parse_job_run_ids(raw: str) -> list[int]:
    try:
        ids = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid job run ids: {raw}")
    if not ids:
        raise HTTPException(status_code=400, detail="at least one job run id is required")
    return ids


@router.get("/jobs/artifacts", response_model=JobArtifactsResponse)
async def job_artifacts(
    prow_job_runs: str = Query(..., description="Comma separated job run IDs"),
    path_glob: str = "",
    text_contains: str = "",
    text_regex: str = "",
    before_context: int = Query(0, ge=0, le=50),
    after_context: int = Query(0, ge=0, le=50),
    max_matches: int = Query(10, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> JobArtifactsResponse:
    """List each job run's artifacts matching ``path_glob`` and scan their lines.

    Without ``text_contains`` or ``text_regex`` only the artifact URLs are returned.
    """
    job_run_ids = _parse_job_run_ids(prow_job_runs)
    if text_contains and text_regex:
        raise HTTPException(status_code=400, detail="use only one of text_contains or text_regex")
    try:
        matcher = build_line_matcher(
            text_contains, text_regex, before_context, after_context, max_matches
        )
    except re.error as exc:
        raise HTTPException(status_code=400, detail=f"invalid text_regex: {exc}")
    return await handle_job_artifacts(db, job_run_ids, path_glob, matcher)
