"""
CallCoach Database Setup
Relational models for users, scripts, objections, calls and their analysis
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import (
    Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, create_engine,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


engine = None
SessionLocal: Optional[Callable[[], Session]] = None
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC, the way every timestamp column is stored"""
    return datetime.utcnow()


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Account resolved from a bearer token"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, index=True)
    api_token = Column(String(255), unique=True, index=True)
    created_at = Column(DateTime, default=utcnow)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    organization_id = Column(String(36), index=True, nullable=True)
    full_name = Column(String(200), nullable=True)
    role = Column(String(20), default="SELLER")  # SELLER, MANAGER, ADMIN


class Script(Base):
    __tablename__ = "scripts"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(String(36), index=True, nullable=True)
    name = Column(String(200))

    # Coach persona
    coach_personality = Column(Text, nullable=True)
    coach_tone = Column(String(100), nullable=True)
    intervention_level = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow)


class ScriptStep(Base):
    __tablename__ = "script_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    script_id = Column(String(36), ForeignKey("scripts.id"), index=True)
    step_order = Column(Integer)
    name = Column(String(200))
    description = Column(Text, nullable=True)
    key_questions_json = Column(Text, nullable=True)  # JSON list
    transition_criteria = Column(Text, nullable=True)
    estimated_duration = Column(Integer, default=60)  # seconds

    __table_args__ = (
        Index("idx_script_step_order", "script_id", "step_order"),
    )


class Objection(Base):
    """Catalog objection of a script (reference data)"""
    __tablename__ = "objections"

    id = Column(String(36), primary_key=True, default=new_id)
    script_id = Column(String(36), ForeignKey("scripts.id"), index=True)
    trigger_phrases_json = Column(Text)  # JSON list
    suggested_response = Column(Text, nullable=True)
    mental_trigger = Column(String(100), nullable=True)
    coaching_tip = Column(Text, nullable=True)


class Call(Base):
    """Durable record of a call. Transcript snapshot is written at the end."""
    __tablename__ = "calls"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True)
    organization_id = Column(String(36), index=True, nullable=True)
    script_id = Column(String(36), ForeignKey("scripts.id"), index=True)

    platform = Column(String(30), default="OTHER")  # GOOGLE_MEET, ZOOM, TEAMS, OTHER
    external_id = Column(String(255), nullable=True, index=True)
    lead_name = Column(String(200), nullable=True)

    status = Column(String(20), default="ACTIVE", index=True)  # ACTIVE, COMPLETED
    current_step = Column(Integer, default=1)
    transcript_json = Column(Text, nullable=True)

    started_at = Column(DateTime, default=utcnow, index=True)
    ended_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_call_user_status_started", "user_id", "status", "started_at"),
    )


class CallSummary(Base):
    """Post-call analysis"""
    __tablename__ = "call_summaries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    call_id = Column(String(36), ForeignKey("calls.id"), index=True)

    script_adherence_score = Column(Float, nullable=True)
    strengths_json = Column(Text, nullable=True)
    improvements_json = Column(Text, nullable=True)
    objections_faced_json = Column(Text, nullable=True)
    buying_signals_json = Column(Text, nullable=True)
    lead_sentiment = Column(String(20), nullable=True)
    result = Column(String(20), nullable=True)  # CONVERTED, FOLLOW_UP, LOST, UNKNOWN
    ai_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)


class ObjectionSuccessMetric(Base):
    """How often an objection showed up in converted vs lost calls of a script"""
    __tablename__ = "objection_success_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    objection_id = Column(String(36), ForeignKey("objections.id"), index=True)
    script_id = Column(String(36), ForeignKey("scripts.id"), index=True)

    usage_count = Column(Integer, default=0)
    converted_count = Column(Integer, default=0)
    lost_count = Column(Integer, default=0)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("objection_id", "script_id", name="uq_objection_script_metric"),
    )

    @property
    def success_rate(self) -> Optional[float]:
        decided = (self.converted_count or 0) + (self.lost_count or 0)
        if not decided:
            return None
        return (self.converted_count or 0) / decided


# ============ ENGINE / SESSIONS ============

def configure_database(database_url: str):
    """Create the process engine + session factory. Empty URL leaves the DB unconfigured."""
    global engine, SessionLocal

    if not database_url:
        engine, SessionLocal = None, None
        return None

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if ":memory:" in database_url else None,
        )
    else:
        engine = create_engine(database_url, pool_pre_ping=True, pool_size=5, max_overflow=10)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def init_db() -> bool:
    """Initialize database tables"""
    if engine is None:
        return False
    Base.metadata.create_all(bind=engine)
    return True


@contextmanager
def session_scope(factory: Callable[[], Session]):
    """Unit of work: commit on success, rollback on error, always close"""
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def get_db():
    """Get database session with automatic cleanup"""
    if not SessionLocal:
        raise RuntimeError("Database not configured")
    with session_scope(SessionLocal) as db:
        yield db


def is_db_configured() -> bool:
    """Check if database is properly configured"""
    return engine is not None and SessionLocal is not None
