import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from sqlalchemy import Column, DateTime, JSON, Index, UniqueConstraint, text
from sqlalchemy.types import TypeDecorator
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import SQLModel, Field

UNVERIFIED = "unverified"
VERIFIED = "verified"

INTERVIEW_PENDING = "pending"
INTERVIEW_VIDEO_READY = "video_ready"

REPORT_PENDING = "pending"
REPORT_PARTIAL = "partial"
REPORT_COMPLETE = "complete"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    # aware UTC in Python; SQLite stores it naive and hands it back naive
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def dialect_insert(session, model):
    """INSERT supporting ON CONFLICT for the bound database."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"upserts are not supported on {name}")


class Role(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    title: str
    description: str = ""
    rubric: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    kb_document_id: Optional[str] = None
    token: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Candidate(SQLModel, table=True):
    __table_args__ = (
        Index(
            "uq_candidate_role_email",
            "role_id",
            "email",
            unique=True,
            sqlite_where=text("duplicate_of IS NULL"),
            postgresql_where=text("duplicate_of IS NULL"),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    role_id: str = Field(index=True)
    first_name: str
    last_name: str
    name: str
    email: str = Field(index=True)
    phone: Optional[str] = None
    verification_state: str = UNVERIFIED
    verified_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    resume_key: Optional[str] = None
    resume_mime: Optional[str] = None
    duplicate_of: Optional[str] = None
    analysis_summary: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class OneTimeToken(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    email: str = Field(index=True)
    role_id: str
    code: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    expires_at: datetime = Field(sa_type=UTCDateTime)
    consumed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class Interview(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("candidate_id", "role_id", name="uq_interview_candidate_role"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    candidate_id: str = Field(index=True)
    role_id: str
    conversation_id: Optional[str] = Field(default=None, index=True)
    video_url: Optional[str] = None
    recording_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    status: str = INTERVIEW_PENDING
    scheduling_started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    transcript_key: Optional[str] = None
    analysis_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Report(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("candidate_id", "role_id", name="uq_report_candidate_role"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    candidate_id: str = Field(index=True)
    role_id: str
    resume_score: Optional[float] = None
    resume_breakdown: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    interview_score: Optional[float] = None
    interview_breakdown: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    interview_summary: Optional[str] = None
    overall_score: Optional[int] = None
    status: str = REPORT_PENDING
    pdf_key: Optional[str] = None
    rendered_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
