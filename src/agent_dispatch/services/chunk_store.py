"""Append-only storage for streamed session output."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from agent_dispatch.clients.database import (
    AgentSession as SessionORM,
    AgentSessionChunk as ChunkORM,
    AgentSessionSequence as SequenceORM,
    session_scope,
)
from agent_dispatch.models.chunk import AppendChunkResult, SessionChunk
from agent_dispatch.models.enums import StreamType
from agent_dispatch.services.errors import SessionNotFoundError
from agent_dispatch.utils.ids import utcnow
from agent_dispatch.utils.output_normalizer import extract_last_non_empty_line

LOG = logging.getLogger(__name__)

DISPLAY_STREAMS = frozenset({StreamType.OUTPUT, StreamType.RESPONSE})


def next_sequence(db: Session, session_id: str) -> int:
    """Atomically claim the next sequence number for ``session_id``.

    The counter row stores the value the *next* caller will receive, so a
    missing row means this caller gets 1.
    """
    now = utcnow()
    stmt = sqlite_insert(SequenceORM).values(session_id=session_id, next_sequence=2, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=[SequenceORM.session_id],
        set_={
            "next_sequence": SequenceORM.next_sequence + 1,
            "updated_at": stmt.excluded.updated_at,
        },
    ).returning(SequenceORM.next_sequence)
    return db.execute(stmt).scalar_one() - 1


class SessionChunkStore:
    """Persists chunks with a per-session sequence shared across stream types."""

    def append_chunk(
        self,
        session_id: str,
        stream_type: StreamType,
        content: str,
        chunk_key: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> AppendChunkResult:
        stream_type = StreamType(stream_type)
        with session_scope() as db:
            if chunk_key is not None:
                existing = (
                    db.query(ChunkORM)
                    .filter(
                        ChunkORM.session_id == session_id,
                        ChunkORM.stream_type == stream_type,
                        ChunkORM.chunk_key == chunk_key,
                    )
                    .one_or_none()
                )
                if existing is not None:
                    return AppendChunkResult(
                        inserted=False,
                        chunk=SessionChunk.model_validate(existing, from_attributes=True),
                    )

            session = db.get(SessionORM, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)

            chunk = ChunkORM(
                session_id=session_id,
                stream_type=stream_type,
                sequence=next_sequence(db, session_id),
                chunk_key=chunk_key,
                content=content,
                created_at=created_at or utcnow(),
            )
            db.add(chunk)

            if stream_type in DISPLAY_STREAMS:
                last_line = extract_last_non_empty_line(content)
                if last_line:
                    session.last_non_empty_text = last_line

            db.flush()
            db.refresh(chunk)
            return AppendChunkResult(
                inserted=True, chunk=SessionChunk.model_validate(chunk, from_attributes=True)
            )

    def list_chunks(self, session_id: str, stream_type: StreamType) -> List[SessionChunk]:
        with session_scope() as db:
            chunks = (
                db.query(ChunkORM)
                .filter(ChunkORM.session_id == session_id, ChunkORM.stream_type == StreamType(stream_type))
                .order_by(ChunkORM.sequence.asc())
                .all()
            )
            return [SessionChunk.model_validate(chunk, from_attributes=True) for chunk in chunks]

    def count_chunks(self, session_id: str, stream_type: Optional[StreamType] = None) -> int:
        with session_scope() as db:
            query = db.query(func.count(ChunkORM.id)).filter(ChunkORM.session_id == session_id)
            if stream_type is not None:
                query = query.filter(ChunkORM.stream_type == StreamType(stream_type))
            return query.scalar() or 0

    def latest_text(self, session_id: str, stream_type: StreamType) -> Optional[str]:
        """Content of the newest non-blank chunk on ``stream_type``."""
        with session_scope() as db:
            chunks = (
                db.query(ChunkORM.content)
                .filter(ChunkORM.session_id == session_id, ChunkORM.stream_type == StreamType(stream_type))
                .order_by(ChunkORM.sequence.desc())
                .all()
            )
        for (content,) in chunks:
            if content and content.strip():
                return content
        return None
