"""Pydantic models for ticket rows read from the warehouse."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WarehouseTicketRow(BaseModel):
    """One row of the ticket mapping queries.

    A ticket appears once per matched test/job name and once per comment, so
    the same ``jira_id`` is expected to repeat.
    """

    model_config = ConfigDict(extra="ignore")

    key: str = ""
    jira_id: Optional[str] = None
    summary: str = ""
    status: str = ""
    link_name: str = ""
    last_changed_time: Optional[datetime] = None
    affects_versions: list[str] = Field(default_factory=list)
    fix_versions: list[str] = Field(default_factory=list)
    target_versions: list[str] = Field(default_factory=list)
    components: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)

    @field_validator("key", "summary", "status", "link_name", mode="before")
    @classmethod
    def _none_to_empty(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator(
        "affects_versions", "fix_versions", "target_versions", "components", "labels",
        mode="before",
    )
    @classmethod
    def _none_to_list(cls, value: object) -> object:
        return [] if value is None else value

    @field_validator("jira_id", mode="before")
    @classmethod
    def _id_to_str(cls, value: object) -> object:
        if value is None:
            return None
        return str(value).strip()
