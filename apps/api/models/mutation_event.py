"""MutationEvent model for emitted variants and their settled outcomes."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class MutationEvent(Base):
    """Append-only provenance row; outcome fields transition once from pending."""

    __tablename__ = "mutation_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    creative_id = Column(String, nullable=False, index=True)
    campaign_id = Column(String, nullable=True, index=True)
    platform = Column(String, nullable=False, index=True)
    base_style_cluster = Column(String, nullable=False)
    mutation_key = Column(String, nullable=False)
    mutations = Column(JSON, nullable=False)
    mutation_source = Column(String, nullable=False, index=True)
    mutation_score = Column(Float, nullable=False, default=0.0)
    rank_before = Column(Integer, nullable=True)
    rank_after = Column(Integer, nullable=True)
    outcome_metrics = Column(JSON, nullable=True)
    outcome_class = Column(String, nullable=False, default="pending", index=True)
    applied = Column(Boolean, nullable=False, default=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="mutation_events")
