"""Session chunk models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from agent_dispatch.models.enums import StreamType


class SessionChunk(BaseModel):
    """One persisted fragment of a session's output."""

    id: str
    session_id: str
    stream_type: StreamType
    sequence: int
    chunk_key: Optional[str] = None
    content: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AppendChunkResult(BaseModel):
    inserted: bool
    chunk: SessionChunk
