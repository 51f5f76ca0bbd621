"""SQLAlchemy database models for the orchestration engine."""

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint
from .database import Base


class WorkflowDefinitionModel(Base):
    """One stored version of a workflow definition."""
    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True)
    version = Column(String, primary_key=True)
    name = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    is_latest = Column(Boolean, nullable=False, default=True)
    definition = Column(JSON, nullable=False)  # Complete definition, JSON mode dump
    saved_seq = Column(Integer, nullable=False, default=0)


class WorkflowInstanceModel(Base):
    """Instance state without its history."""
    __tablename__ = "workflow_instances"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    workflow_version = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    state = Column(JSON, nullable=False)
    error = Column(Text)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))


class HistoryEntryModel(Base):
    """Insert-only history rows."""
    __tablename__ = "workflow_history"
    __table_args__ = (
        UniqueConstraint("instance_id", "sequence", name="uq_history_instance_sequence"),
        Index("ix_history_instance", "instance_id"),
    )

    id = Column(String, primary_key=True)
    instance_id = Column(String, ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    step_id = Column(String, nullable=False)
    action = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Float)
    entry = Column(JSON, nullable=False)
