"""CI job definitions and their runs."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from src.database import Base


class Job(Base):
    __tablename__ = "prow_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False, index=True)


class JobRun(Base):
    __tablename__ = "prow_job_runs"

    id = Column(Integer, primary_key=True, autoincrement=False)
    job_id = Column(Integer, ForeignKey("prow_jobs.id", ondelete="CASCADE"), nullable=False)
    # Artifact location, e.g. https://prow.ci.openshift.org/view/gs/<bucket root>/logs/<job>/<run id>
    url = Column(String, nullable=False, default="")
    timestamp = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    job = relationship(Job, lazy="joined")
