"""Pydantic models for job artifact scan results."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class JobRunArtifact(BaseModel):
    job_run_id: str
    artifact_url: str
    matched_content: Optional[Any] = None
    error: Optional[str] = None


class JobRun(BaseModel):
    id: str
    job_name: str = ""
    url: str = ""
    artifact_list_truncated: bool = False
    artifacts: list[JobRunArtifact] = Field(default_factory=list)
    error: Optional[str] = None


class JobArtifactsResponse(BaseModel):
    job_runs: list[JobRun] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
