"""Refresh routes for ci-signal-sync."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import async_session, get_db
from src.handlers.refresh import handle_refresh
from src.schemas.refresh import RefreshResponse

router = APIRouter(tags=["refresh"])


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    only_if_empty: bool = False,
    db: AsyncSession = Depends(get_db),
) -> RefreshResponse:
    """Reconcile Jira tickets from the warehouse, then refresh materialized views.

    A non-empty ``errors`` list means the data may be partially stale.
    """
    return await handle_refresh(db, async_session, only_if_empty=only_if_empty)
