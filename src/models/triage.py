"""Curated links between a detected regression and a Jira ticket."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text

from src.database import Base


class Triage(Base):
    __tablename__ = "triages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    ticket_id = Column(BigInteger, ForeignKey("tickets.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
