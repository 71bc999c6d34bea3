"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Campaign owner whose creatives the engine mutates."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    genome = relationship("CreatorGenome", back_populates="user", uselist=False, cascade="all, delete-orphan")
    regrets = relationship("RegretEntry", back_populates="user", cascade="all, delete-orphan")
    mutation_events = relationship("MutationEvent", back_populates="user", cascade="all, delete-orphan")
