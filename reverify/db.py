"""
Database module for the re-verification service.

SQLAlchemy tables for subjects, enrolled credentials, the verification
ledger and review cases. Uniqueness and single-transition rules are enforced
by constraints and conditional UPDATEs here, not by read-then-write in the
callers.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubjectRow(Base):
    __tablename__ = "subjects"
    id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    standing = Column(String(16), nullable=False, default="PENDING")
    next_due_at = Column(DateTime(timezone=True), nullable=True)
    reference_image_ref = Column(Text, nullable=True)


class CredentialRow(Base):
    __tablename__ = "credentials"
    __table_args__ = (UniqueConstraint("subject_id", "modality", name="uq_credentials_subject_modality"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(64), nullable=False, index=True)
    modality = Column(String(32), nullable=False)
    credential_id = Column(LargeBinary, nullable=False, unique=True)
    public_key = Column(LargeBinary, nullable=False)
    sign_count = Column(Integer, nullable=False, default=0)
    transports = Column(String(255), nullable=False, default="")
    enrolled_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class VerificationAttemptRow(Base):
    __tablename__ = "verification_attempts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(64), nullable=False, index=True)
    method = Column(String(32), nullable=False)
    modality = Column(String(32), nullable=True)
    outcome = Column(String(16), nullable=False)
    similarity_score = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    next_due_at = Column(DateTime(timezone=True), nullable=True)


class ReviewCaseRow(Base):
    __tablename__ = "review_cases"
    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(64), nullable=False, index=True)
    artifact_ref = Column(Text, nullable=True)
    reason = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="PENDING", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    decided_by = Column(String(64), nullable=True)


def make_engine(database_url: str):
    """
    Create an engine for DATABASE_URL.

    SQLite file databases get WAL mode (several workers share the file);
    ":memory:" uses a single shared connection so all sessions see one DB.
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True, future=True)

    if url.database in (None, "", ":memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )

    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, connect_args={"check_same_thread": False}, future=True)

    @event.listens_for(engine, "connect")
    def _pragmas(dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()

    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def init_db(engine) -> None:
    """Create tables. Safe to call multiple times."""
    Base.metadata.create_all(engine)


@contextmanager
def session_scope(session_factory):
    """
    Context manager for one unit of work.
    Commits on success, rolls back on failure.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
