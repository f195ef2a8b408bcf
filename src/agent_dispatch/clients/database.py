"""SQLite database client for Agent Dispatch."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from agent_dispatch import constants
from agent_dispatch.models.enums import SessionMode, SessionStatus, StreamType
from agent_dispatch.utils.ids import generate_id, utcnow
from agent_dispatch.utils.pathing import ensure_runtime_directories

LOG = logging.getLogger(__name__)


class BaseModel(DeclarativeBase):
    """Declarative base class for SQLAlchemy models."""


def _value_enum(enum_cls):
    return Enum(enum_cls, values_callable=lambda members: [m.value for m in members])


def _build_engine(echo: bool = False):
    engine = create_engine(
        f"sqlite:///{constants.DB_FILE}",
        echo=echo,
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        # pysqlite's implicit BEGIN is replaced by the "begin" hook below.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA busy_timeout = 30000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        # Take the write lock up front so read-check-write units are serialized.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


ENGINE = _build_engine()
SESSION_FACTORY = sessionmaker(bind=ENGINE, autoflush=False, expire_on_commit=False, future=True)


class NamedAgentConfig(BaseModel):
    """A saved, user-named (provider, model) pair."""

    __tablename__ = "named_agents"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=generate_id)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AgentRoleDefault(BaseModel):
    """Provider default for an agent role at global or project scope."""

    __tablename__ = "agent_role_defaults"
    __table_args__ = (UniqueConstraint("role", "scope", name="uq_agent_role_defaults_role_scope"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=generate_id)
    role: Mapped[str] = mapped_column(String, nullable=False)
    scope: Mapped[str] = mapped_column(String, nullable=False)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    # Plain column: a deleted named agent leaves the reference dangling on purpose.
    named_agent_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class AgentSession(BaseModel):
    """One invocation of a provider against an epic or story."""

    __tablename__ = "agent_sessions"
    __table_args__ = (
        Index("ix_agent_sessions_project_status", "project_id", "status"),
        Index("ix_agent_sessions_epic_status", "epic_id", "status"),
        Index("ix_agent_sessions_story_status", "story_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=generate_id)
    project_id: Mapped[str] = mapped_column(String, nullable=False)
    epic_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    story_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[SessionStatus] = mapped_column(
        _value_enum(SessionStatus), nullable=False, default=SessionStatus.QUEUED
    )
    mode: Mapped[SessionMode] = mapped_column(
        _value_enum(SessionMode), nullable=False, default=SessionMode.CODE
    )
    provider: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    named_agent_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    agent_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    branch_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    worktree_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    provider_session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_non_empty_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    chunks: Mapped[list["AgentSessionChunk"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", passive_deletes=True
    )


class AgentSessionChunk(BaseModel):
    """Append-only fragment of streamed session output."""

    __tablename__ = "agent_session_chunks"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_agent_session_chunks_sequence"),
        UniqueConstraint(
            "session_id", "stream_type", "chunk_key", name="uq_agent_session_chunks_stream_key"
        ),
        Index("ix_agent_session_chunks_stream_sequence", "session_id", "stream_type", "sequence"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=generate_id)
    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("agent_sessions.id", ondelete="CASCADE"), nullable=False
    )
    stream_type: Mapped[StreamType] = mapped_column(_value_enum(StreamType), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    session: Mapped["AgentSession"] = relationship(back_populates="chunks")


class AgentSessionSequence(BaseModel):
    """Per-session counter backing chunk sequence assignment."""

    __tablename__ = "agent_session_sequences"

    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("agent_sessions.id", ondelete="CASCADE"), primary_key=True
    )
    next_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


def seed_default_named_agent(db: Session) -> NamedAgentConfig:
    """Ensure the reserved fallback named agent exists, looked up by name."""
    existing = db.execute(
        select(NamedAgentConfig).where(
            func.lower(NamedAgentConfig.name) == constants.SEEDED_AGENT_NAME.lower()
        )
    ).scalar_one_or_none()
    if existing:
        return existing

    agent = NamedAgentConfig(
        name=constants.SEEDED_AGENT_NAME,
        provider=constants.SEEDED_AGENT_PROVIDER,
        model=constants.SEEDED_AGENT_MODEL,
    )
    db.add(agent)
    db.flush()
    LOG.info("Seeded default named agent %s (%s)", agent.name, agent.id)
    return agent


def init_db(echo: bool = False, seed: bool = True) -> None:
    """Create tables if they do not exist and seed the fallback named agent."""
    global ENGINE, SESSION_FACTORY
    ensure_runtime_directories()
    ENGINE.dispose()
    ENGINE = _build_engine(echo=echo)
    SESSION_FACTORY = sessionmaker(
        bind=ENGINE,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    BaseModel.metadata.create_all(bind=ENGINE)
    if seed:
        with session_scope() as db:
            seed_default_named_agent(db)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session = SESSION_FACTORY()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
