from sqlalchemy import Column, Integer, Float, DateTime, Text, String, Index, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests and local runs)
JSONType = JSON().with_variant(JSONB, "postgresql")


class SessionTemplateRecord(Base):
    """A catalog template. The full template is kept as a JSON document."""
    __tablename__ = "session_template"

    id = Column(String, primary_key=True)
    session_type = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    difficulty = Column(Text, nullable=False)
    estimated_duration = Column(Integer, nullable=False)
    payload = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_session_template_session_type", "session_type"),
    )


class OptimizationRecordLog(Base):
    """Append-only log of optimization records, one row per refinement."""
    __tablename__ = "optimization_record_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False)
    template_id = Column(String, nullable=False)
    method = Column(Text, nullable=False)  # 'genetic' | 'surrogate' | 'feedback'
    improvement = Column(Float, nullable=False)
    parameters = Column(JSONType, nullable=False, default=dict)
    feedback = Column(JSONType, nullable=False, default=dict)
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_optimization_record_log_session_id", "session_id"),
    )


class GenerationLogRecord(Base):
    """What a completed generation produced; used to resolve later outcomes."""
    __tablename__ = "generation_log"

    session_id = Column(String, primary_key=True)
    user_id = Column(Text, nullable=False)
    session_type = Column(Text, nullable=False)
    template_id = Column(String, nullable=False)
    duration = Column(Integer, nullable=False)
    phase_count = Column(Integer, nullable=False)
    difficulty = Column(Text, nullable=False)
    predicted_success = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_generation_log_user_type", "user_id", "session_type"),
    )


class LearningEntryRecord(Base):
    """Append-only learning log. entry_id is a content hash, so replays collide."""
    __tablename__ = "learning_entry"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String, nullable=False)
    session_id = Column(String, nullable=False)
    user_id = Column(Text, nullable=False)
    session_type = Column(Text, nullable=False)
    success_score = Column(Float, nullable=False)
    payload = Column(JSONType, nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("entry_id", name="uq_learning_entry_entry_id"),
        Index("ix_learning_entry_user_type", "user_id", "session_type"),
    )


class LearningStateRecord(Base):
    """The one row of learned weights. revision guards concurrent folds."""
    __tablename__ = "learning_state"

    SINGLETON_ID = 1

    id = Column(Integer, primary_key=True, autoincrement=False)
    revision = Column(Integer, nullable=False)
    folded_entries = Column(Integer, nullable=False, default=0)
    model_weights = Column(JSONType, nullable=False)
    model_bias = Column(Float, nullable=False)
    fitness_weights = Column(JSONType, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
