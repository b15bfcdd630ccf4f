"""Jira tickets mirrored from the analytics warehouse.

The Jira numeric issue ID is the primary key; no local ID is minted.
"""

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, String, Table, Text
from sqlalchemy.orm import relationship

from src.database import Base

ticket_tests = Table(
    "ticket_tests",
    Base.metadata,
    Column("ticket_id", BigInteger, ForeignKey("tickets.id", ondelete="CASCADE"), primary_key=True),
    Column("test_id", ForeignKey("tests.id", ondelete="CASCADE"), primary_key=True),
)

ticket_jobs = Table(
    "ticket_jobs",
    Base.metadata,
    Column("ticket_id", BigInteger, ForeignKey("tickets.id", ondelete="CASCADE"), primary_key=True),
    Column("job_id", ForeignKey("prow_jobs.id", ondelete="CASCADE"), primary_key=True),
)

# Authoritative ticket IDs of the sync currently in flight.
ticket_sync_ids = Table(
    "ticket_sync_ids",
    Base.metadata,
    Column("ticket_id", BigInteger, primary_key=True, autoincrement=False),
)


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    key = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="")
    summary = Column(Text, nullable=False, default="")
    last_change_time = Column(DateTime(timezone=True), nullable=True)
    affects_versions = Column(JSON, nullable=False, default=list)
    fix_versions = Column(JSON, nullable=False, default=list)
    target_versions = Column(JSON, nullable=False, default=list)
    components = Column(JSON, nullable=False, default=list)
    labels = Column(JSON, nullable=False, default=list)
    url = Column(String, nullable=False, index=True)

    tests = relationship("Test", secondary=ticket_tests, lazy="selectin", order_by="Test.id")
    jobs = relationship("Job", secondary=ticket_jobs, lazy="selectin", order_by="Job.id")
