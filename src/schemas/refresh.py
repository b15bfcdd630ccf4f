"""Pydantic models for the refresh cycle."""

from pydantic import BaseModel, Field


class MatviewRefreshSummary(BaseModel):
    refreshed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    elapsed_ms: float = 0.0


class RefreshResponse(BaseModel):
    status: str
    tickets_synced: int = 0
    matviews: MatviewRefreshSummary = Field(default_factory=MatviewRefreshSummary)
    errors: list[str] = Field(default_factory=list)
