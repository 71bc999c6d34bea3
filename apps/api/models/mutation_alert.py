"""MutationAlert model for drift detector output."""

import uuid

from sqlalchemy import Column, DateTime, Float, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class MutationAlert(Base):
    """Immutable drift alert written once per detector run."""

    __tablename__ = "mutation_alerts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    alert_type = Column(String, nullable=False, index=True)
    mutation_source = Column(String, nullable=True, index=True)
    severity = Column(String, nullable=False, index=True)
    metric_name = Column(String, nullable=False)
    baseline_value = Column(Float, nullable=False)
    current_value = Column(Float, nullable=False)
    change_pct = Column(Float, nullable=False)
    threshold_pct = Column(Float, nullable=False)
    sample_size = Column(Integer, nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
