"""
CaseCompass Database Models
SQLAlchemy ORM models for all entities.

All datetime columns use DateTime(timezone=True) for proper UTC handling.
Use utc_now() from app.core.utc for all timestamp defaults.
"""

import uuid
from datetime import date, datetime
from typing import Optional
from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.core.utc import utc_now


# Type alias for timezone-aware DateTime columns
DateTimeTZ = DateTime(timezone=True)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Users & Sessions
# =============================================================================

class User(Base):
    """A person using CaseCompass to manage their own matter."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)

    sessions: Mapped[list["AuthSession"]] = relationship(back_populates="user", cascade="all, delete-orphan")


class AuthSession(Base):
    """
    Server-side session. Only the SHA-256 hash of the bearer token is stored,
    so a leaked database does not leak usable tokens.
    """
    __tablename__ = "auth_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTimeTZ)
    last_activity: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False)

    user: Mapped["User"] = relationship(back_populates="sessions")


# =============================================================================
# Evidence Files & Chunks
# =============================================================================

class EvidenceFile(Base):
    """
    An uploaded evidence file.
    status: uploaded -> processing -> processed | failed
    """
    __tablename__ = "evidence_files"
    __table_args__ = (UniqueConstraint("user_id", "storage_path", name="uq_evidence_user_path"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)

    name: Mapped[str] = mapped_column(String(255))
    storage_path: Mapped[str] = mapped_column(String(500))
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sha256: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="uploaded", index=True)

    # Classification
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # set by the user
    auto_category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # set by the categorizer
    tags: Mapped[list] = mapped_column(JSON, default=list)
    meta: Mapped[dict] = mapped_column(JSON, default=dict)

    # Memory processing
    file_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    section_summaries: Mapped[list] = mapped_column(JSON, default=list)
    exhibit_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)

    chunks: Mapped[list["Chunk"]] = relationship(
        back_populates="file", cascade="all, delete-orphan", order_by="Chunk.seq"
    )


class Chunk(Base):
    """A slice of extracted text from an evidence file, in reading order."""
    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    file_id: Mapped[str] = mapped_column(String(36), ForeignKey("evidence_files.id", ondelete="CASCADE"), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    text: Mapped[str] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column(JSON, default=dict)  # page, source
    embedding: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)

    file: Mapped["EvidenceFile"] = relationship(back_populates="chunks")


# =============================================================================
# Timeline
# =============================================================================

class TimelineEvent(Base):
    """A dated event extracted from evidence (or entered by the user)."""
    __tablename__ = "timeline_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    file_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("evidence_files.id", ondelete="CASCADE"), nullable=True, index=True
    )
    chunk_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("chunks.id", ondelete="SET NULL"), nullable=True
    )

    event_date: Mapped[date] = mapped_column(Date, index=True)
    event_time: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)  # HH:MM
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(30), default="other")
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)


# =============================================================================
# Legal Analysis
# =============================================================================

class EvidenceAnalysis(Base):
    """One AI analysis pass over an evidence file (legal_relevance, case_strength, ...)."""
    __tablename__ = "evidence_analyses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    file_id: Mapped[str] = mapped_column(String(36), ForeignKey("evidence_files.id", ondelete="CASCADE"), index=True)

    analysis_type: Mapped[str] = mapped_column(String(40))
    content: Mapped[str] = mapped_column(Text)
    legal_concepts: Mapped[list] = mapped_column(JSON, default=list)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    relevant_citations: Mapped[list] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, index=True)


class LegalSection(Base):
    """
    A section of NSW legislation or guidance.
    user_id is NULL for the shared library, set for a user's personal notes.
    """
    __tablename__ = "legal_sections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True
    )
    jurisdiction: Mapped[str] = mapped_column(String(20), default="NSW", index=True)
    act_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    section_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    title: Mapped[str] = mapped_column(String(255))
    content: Mapped[str] = mapped_column(Text)
    citation_format: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    legal_concepts: Mapped[list] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)


class EvidenceLegalConnection(Base):
    """Link between an evidence file and a legal section it bears on."""
    __tablename__ = "evidence_legal_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    evidence_file_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("evidence_files.id", ondelete="CASCADE"), index=True
    )
    legal_section_id: Mapped[str] = mapped_column(String(36), ForeignKey("legal_sections.id", ondelete="CASCADE"))

    connection_type: Mapped[str] = mapped_column(String(20))  # supports, contradicts, explains, precedent, requirement
    relevance_score: Mapped[float] = mapped_column(Float)
    explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)


class LegalSearchCache(Base):
    """Cached legal search results keyed by a hash of query, type and jurisdiction."""
    __tablename__ = "legal_search_cache"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    query_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    query_text: Mapped[str] = mapped_column(Text)
    search_type: Mapped[str] = mapped_column(String(20))
    results: Mapped[list] = mapped_column(JSON, default=list)
    hit_count: Mapped[int] = mapped_column(Integer, default=0)
    last_accessed: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)


# =============================================================================
# Case Memory & Planning
# =============================================================================

class CaseMemory(Base):
    """
    One row per user aggregating everything the assistant knows about the case.
    Written by several pipelines; always upserted by user_id.
    """
    __tablename__ = "case_memory"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True)

    primary_goal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    goal_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    goal_established_at: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)
    active_case_plan_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    evidence_index: Mapped[list] = mapped_column(JSON, default=list)
    case_strength_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    case_strength_reasons: Mapped[dict] = mapped_column(JSON, default=dict)

    thread_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timeline_summary: Mapped[list] = mapped_column(JSON, default=list)
    parties: Mapped[list] = mapped_column(JSON, default=list)
    issues: Mapped[list] = mapped_column(JSON, default=list)
    facts: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    last_activity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)


class CasePlan(Base):
    """An ordered milestone plan toward the user's primary goal."""
    __tablename__ = "case_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)

    primary_goal: Mapped[str] = mapped_column(Text)
    case_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    milestones: Mapped[list] = mapped_column(JSON, default=list)
    current_milestone_index: Mapped[int] = mapped_column(Integer, default=0)
    overall_progress_percentage: Mapped[int] = mapped_column(Integer, default=0)
    urgency_level: Mapped[str] = mapped_column(String(20), default="normal")

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)

    progress: Mapped[list["MilestoneProgress"]] = relationship(
        back_populates="case_plan", cascade="all, delete-orphan", order_by="MilestoneProgress.milestone_index"
    )


class MilestoneProgress(Base):
    """Progress against one milestone of a case plan."""
    __tablename__ = "milestone_progress"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    case_plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("case_plans.id", ondelete="CASCADE"), index=True)
    milestone_index: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default="not_started")  # not_started, in_progress, complete
    completion_percentage: Mapped[int] = mapped_column(Integer, default=0)
    evidence_collected: Mapped[list] = mapped_column(JSON, default=list)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)

    case_plan: Mapped["CasePlan"] = relationship(back_populates="progress")


# =============================================================================
# Continuous Case Analysis
# =============================================================================

class LegalStrategy(Base):
    """
    Running legal strategy, one row per user. case_strength_overall is a
    0-1 figure moved by each continuous analysis.
    """
    __tablename__ = "legal_strategy"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True)

    case_strength_overall: Mapped[float] = mapped_column(Float, default=0.0)
    strengths: Mapped[list] = mapped_column(JSON, default=list)
    weaknesses: Mapped[list] = mapped_column(JSON, default=list)
    evidence_gaps: Mapped[list] = mapped_column(JSON, default=list)
    opposing_arguments: Mapped[list] = mapped_column(JSON, default=list)
    next_steps: Mapped[list] = mapped_column(JSON, default=list)
    legal_elements_status: Mapped[dict] = mapped_column(JSON, default=dict)

    updated_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)


class CasePattern(Base):
    """A behaviour pattern found across the evidence (e.g. escalating monitoring)."""
    __tablename__ = "case_patterns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)

    pattern_type: Mapped[str] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text)
    pattern_strength: Mapped[float] = mapped_column(Float, default=0.5)
    evidence_files: Mapped[list] = mapped_column(JSON, default=list)
    legal_significance: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)


class EvidenceRelationship(Base):
    """How one evidence file bears on another (supports, contradicts, ...)."""
    __tablename__ = "evidence_relationships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    source_file_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("evidence_files.id", ondelete="CASCADE"), index=True
    )
    target_file_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("evidence_files.id", ondelete="CASCADE"), index=True
    )

    relationship_type: Mapped[str] = mapped_column(String(30))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.8)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)


class CaseAnalysisHistory(Base):
    """Audit row for each continuous analysis: the strategy before and after."""
    __tablename__ = "case_analysis_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    trigger_file_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("evidence_files.id", ondelete="SET NULL"), nullable=True
    )

    analysis_type: Mapped[str] = mapped_column(String(40))
    previous_state: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_state: Mapped[dict] = mapped_column(JSON, default=dict)
    key_insights: Mapped[list] = mapped_column(JSON, default=list)
    case_strength_change: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, index=True)


# =============================================================================
# Assistant Messages
# =============================================================================

class Message(Base):
    """A chat message between the user and the legal assistant."""
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(20))  # user, assistant
    content: Mapped[str] = mapped_column(Text)
    citations: Mapped[list] = mapped_column(JSON, default=list)
    meta: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, index=True)


class ConversationAnalysis(Base):
    """Latest AI summary of the user's conversation with the assistant."""
    __tablename__ = "conversation_analysis"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True)

    analysis_data: Mapped[dict] = mapped_column(JSON, default=dict)
    conversation_length: Mapped[int] = mapped_column(Integer, default=0)

    analyzed_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)
