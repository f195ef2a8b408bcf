"""Recovery for sessions and cached fields left behind by a restart."""

from __future__ import annotations

import logging
from typing import List, Optional

from agent_dispatch.clients.database import (
    AgentSession as SessionORM,
    AgentSessionChunk as ChunkORM,
    session_scope,
)
from agent_dispatch.models.enums import ACTIVE_STATUSES, SessionStatus, StreamType
from agent_dispatch.models.session import TerminalResult
from agent_dispatch.services.errors import InvalidTransitionError
from agent_dispatch.services.lifecycle import mark_terminal
from agent_dispatch.services.process_manager import ProcessManager
from agent_dispatch.utils.output_normalizer import extract_last_non_empty_line

LOG = logging.getLogger(__name__)

ORPHANED_SESSION_MESSAGE = "Dispatcher restarted while the session was active."


class CleanupService:
    """Fails orphaned sessions and backfills ``last_non_empty_text``."""

    def __init__(self, processes: ProcessManager) -> None:
        self.processes = processes

    def fail_orphaned_sessions(self) -> List[str]:
        """Mark queued/running sessions without a live process as failed."""
        with session_scope() as db:
            candidates = [
                row[0]
                for row in db.query(SessionORM.id)
                .filter(SessionORM.status.in_(list(ACTIVE_STATUSES)))
                .all()
            ]

        failed: List[str] = []
        for session_id in candidates:
            if self.processes.is_running(session_id):
                continue
            try:
                mark_terminal(
                    session_id,
                    TerminalResult(status=SessionStatus.FAILED, error=ORPHANED_SESSION_MESSAGE),
                )
            except InvalidTransitionError:
                LOG.info("Session %s finished before it could be failed", session_id)
                continue
            failed.append(session_id)

        if failed:
            LOG.warning("Failed %d orphaned session(s): %s", len(failed), ", ".join(failed))
        return failed

    def backfill_last_non_empty_text(
        self, project_id: Optional[str] = None, limit: int = 200
    ) -> int:
        """Fill missing ``last_non_empty_text`` from the newest display chunk."""
        updated = 0
        with session_scope() as db:
            query = db.query(SessionORM).filter(SessionORM.last_non_empty_text.is_(None))
            if project_id:
                query = query.filter(SessionORM.project_id == project_id)
            sessions = query.order_by(SessionORM.created_at.desc()).limit(limit).all()

            for session in sessions:
                contents = (
                    db.query(ChunkORM.content)
                    .filter(
                        ChunkORM.session_id == session.id,
                        ChunkORM.stream_type.in_([StreamType.OUTPUT, StreamType.RESPONSE]),
                    )
                    .order_by(ChunkORM.sequence.desc())
                    .all()
                )
                for (content,) in contents:
                    line = extract_last_non_empty_line(content)
                    if line:
                        session.last_non_empty_text = line
                        updated += 1
                        break

        LOG.info("Backfilled last_non_empty_text on %d session(s)", updated)
        return updated
