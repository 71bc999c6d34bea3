"""CreatorGenome model for per-user learned mutation state."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreatorGenome(Base):
    """Learned platform/style preferences; written only by outcome aggregation."""

    __tablename__ = "creator_genomes"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    genome_confidence = Column(Float, nullable=False, default=0.0)
    platform_success = Column(JSON, nullable=False, default=dict)
    style_clusters = Column(JSON, nullable=False, default=dict)
    baseline_risk_appetite = Column(Float, nullable=False, default=0.5)
    contextual_risk_modifier = Column(Float, nullable=False, default=0.0)
    total_creatives = Column(Integer, nullable=False, default=0)
    profitable_creatives = Column(Integer, nullable=False, default=0)
    intra_genome_entropy = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="genome")
