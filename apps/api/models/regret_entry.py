"""RegretEntry model for the append-only regret ledger."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class RegretEntry(Base):
    """Immutable negative outcome. Effective severity is derived by decay at read time."""

    __tablename__ = "regret_memory"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    creative_id = Column(String, nullable=True, index=True)
    tier = Column(Integer, nullable=False)
    severity = Column(Float, nullable=False)
    style_cluster = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)
    context_json = Column(JSON, nullable=True)
    outcome_type = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="regrets")
