"""
Processed analytics results.

One row per user per processing pass. The payload column holds the patterns,
insights and anomalies of that pass as JSON; the query API never reads this
table, it is the durable side copy.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ProcessedResultRecord(Base):
    """Durable copy of one user's processing pass."""

    __tablename__ = "analytics_processed_results"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    event_count: Mapped[int] = mapped_column(Integer, default=0)
    pattern_count: Mapped[int] = mapped_column(Integer, default=0)
    insight_count: Mapped[int] = mapped_column(Integer, default=0)
    anomaly_count: Mapped[int] = mapped_column(Integer, default=0)

    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (Index("idx_processed_results_user_time", "user_id", "processed_at"),)

    def __repr__(self) -> str:
        return f"<ProcessedResultRecord user={self.user_id} at={self.processed_at}>"
