"""
SQLAlchemy model for call records written by the telephony ingestion pipeline.

The billing core only reads this table.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from callbilling.shared.database import Base


class CallRecord(Base):
    """A call row as produced by the webhook / sync ingestion."""

    __tablename__ = "calls"

    call_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    agent_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    duration_sec: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    call_status: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    recording_url: Mapped[str | None] = mapped_column(
        String(2048),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<CallRecord(call_id={self.call_id}, user_id={self.user_id}, status={self.call_status})>"
