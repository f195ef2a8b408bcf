"""Runs agents against epics and stories."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from agent_dispatch import constants
from agent_dispatch.clients.database import AgentSession as SessionORM, session_scope
from agent_dispatch.clients.git import GitClient
from agent_dispatch.models.enums import ACTIVE_STATUSES, AgentRole, SessionStatus, StreamType
from agent_dispatch.models.session import (
    AgentSession,
    LaunchRequest,
    SessionOutput,
    SessionTarget,
    StoryLaunchRequest,
    TerminalResult,
)
from agent_dispatch.providers.base import DispatchOptions, ProviderChunk, ProviderInitializationError, ProviderResult
from agent_dispatch.providers.manager import ProviderManager
from agent_dispatch.services.agent_resolver import AgentResolver
from agent_dispatch.services.chunk_store import SessionChunkStore
from agent_dispatch.services.concurrency import insert_session_with_guard
from agent_dispatch.services.errors import InvalidTransitionError, SessionNotFoundError
from agent_dispatch.services.lifecycle import mark_cancelled, mark_running, mark_terminal
from agent_dispatch.services.process_manager import ProcessManager
from agent_dispatch.services.review_verdict import KeywordVerdictClassifier, VerdictClassifier

LOG = logging.getLogger(__name__)


class AgentDispatchService:
    """Resolve, guard, create, start, finish and cancel agent sessions."""

    def __init__(
        self,
        resolver: Optional[AgentResolver] = None,
        chunks: Optional[SessionChunkStore] = None,
        processes: Optional[ProcessManager] = None,
        providers: Optional[ProviderManager] = None,
        git: Optional[GitClient] = None,
        verdicts: Optional[VerdictClassifier] = None,
    ) -> None:
        self.resolver = resolver or AgentResolver()
        self.chunks = chunks or SessionChunkStore()
        self.processes = processes or ProcessManager()
        self.providers = providers or ProviderManager()
        self.git = git or GitClient()
        self.verdicts = verdicts or KeywordVerdictClassifier()

    def launch_for_epic(self, project_id: str, epic_id: str, request: LaunchRequest) -> AgentSession:
        return self.launch(SessionTarget.for_epic(project_id, epic_id), request)

    def launch_for_story(
        self, project_id: str, story_id: str, request: StoryLaunchRequest
    ) -> AgentSession:
        target = SessionTarget.for_story(project_id, story_id, epic_id=request.epic_id)
        return self.launch(target, request)

    def launch(self, target: SessionTarget, request: LaunchRequest) -> AgentSession:
        """Create a session for ``target`` and start its provider process.

        Raises ``TargetBusyError`` when another session holds the target and
        ``ProviderInitializationError`` when the process cannot be started; in
        the latter case the session is recorded as failed.
        """
        resolved = self.resolver.resolve(request.role, target.project_id, request.named_agent_id)
        provider = self.providers.get_provider(resolved.provider)
        provider_session_id = self.validate_resume(request.resume_session_id, target, resolved.provider)

        branch_name = worktree_path = None
        cwd = request.cwd
        if request.repo_path and target.epic_id:
            worktree = self.git.create_worktree(
                request.repo_path, target.epic_id, request.epic_title or target.epic_id
            )
            branch_name, worktree_path = worktree.branch_name, worktree.worktree_path
            cwd = worktree.worktree_path

        session = insert_session_with_guard(
            target,
            role=AgentRole(request.role).value,
            mode=request.mode,
            provider=resolved.provider,
            model=resolved.model,
            named_agent_id=resolved.named_agent_id,
            agent_name=resolved.name,
            prompt=request.prompt,
            branch_name=branch_name,
            worktree_path=worktree_path,
        )
        LOG.info(
            "Queued session %s (%s via %s, source=%s)",
            session.id,
            session.role,
            resolved.provider,
            resolved.source.value,
        )

        options = DispatchOptions(
            mode=request.mode,
            prompt=request.prompt,
            cwd=cwd,
            model=resolved.model,
            provider_session_id=provider_session_id,
            resume_session=provider_session_id is not None,
        )
        try:
            self.processes.start(
                session.id,
                options,
                provider,
                on_chunk=self._record_chunk,
                on_spawn=lambda _info: mark_running(session.id),
                on_exit=self._finish,
            )
        except ProviderInitializationError as exc:
            mark_terminal(session.id, TerminalResult(status=SessionStatus.FAILED, error=str(exc)))
            raise

        return self.get_session(session.id) or session

    def validate_resume(
        self, resume_session_id: Optional[str], target: SessionTarget, provider: str
    ) -> Optional[str]:
        """Provider session id to resume, or None when the previous session does not qualify."""
        if not resume_session_id:
            return None
        with session_scope() as db:
            previous = db.get(SessionORM, resume_session_id)
            if previous is None or not previous.provider_session_id:
                return None
            if previous.epic_id != target.epic_id or previous.provider != provider:
                return None
            if target.story_id and previous.story_id != target.story_id:
                return None
            return previous.provider_session_id

    def cancel(self, session_id: str) -> AgentSession:
        """Cancel a queued or running session, then signal its process."""
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not session.status.is_active:
            raise InvalidTransitionError(
                session_id, session.status.value, SessionStatus.CANCELLED.value
            )

        cancelled = mark_cancelled(session_id)
        if not self.processes.kill(session_id):
            LOG.info("Session %s had no live process to signal", session_id)
        return cancelled

    async def wait_for_terminal(
        self,
        session_id: str,
        poll_interval: float = constants.SESSION_POLL_INTERVAL,
        timeout: Optional[float] = None,
    ) -> AgentSession:
        """Poll until the session is terminal.

        Cancelling the awaiting task stops only the wait; the process and its
        terminal transition are unaffected.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            session = self.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status.is_terminal:
                return session
            if deadline is not None and loop.time() >= deadline:
                raise asyncio.TimeoutError(f"Session {session_id} is still {session.status.value}")
            await asyncio.sleep(poll_interval)

    def session_output(self, session_id: str) -> SessionOutput:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        content = self.chunks.latest_text(session_id, StreamType.RESPONSE) or ""
        if not content and session.status == SessionStatus.FAILED:
            content = session.error or ""

        verdict = None
        if content and _is_review_role(session.role):
            verdict = self.verdicts.classify(content).value

        return SessionOutput(
            session_id=session_id,
            status=session.status,
            content=content,
            last_non_empty_text=session.last_non_empty_text,
            verdict=verdict,
        )

    def get_session(self, session_id: str) -> Optional[AgentSession]:
        with session_scope() as db:
            session = db.get(SessionORM, session_id)
            if not session:
                return None
            return AgentSession.model_validate(session, from_attributes=True)

    def list_sessions(
        self, project_id: str, status: Optional[SessionStatus] = None
    ) -> List[AgentSession]:
        with session_scope() as db:
            query = db.query(SessionORM).filter(SessionORM.project_id == project_id)
            if status is not None:
                query = query.filter(SessionORM.status == status)
            sessions = query.order_by(SessionORM.created_at.desc()).all()
            return [AgentSession.model_validate(obj, from_attributes=True) for obj in sessions]

    def list_active(self, project_id: str) -> List[AgentSession]:
        with session_scope() as db:
            sessions = (
                db.query(SessionORM)
                .filter(
                    SessionORM.project_id == project_id,
                    SessionORM.status.in_(list(ACTIVE_STATUSES)),
                )
                .order_by(SessionORM.created_at.desc())
                .all()
            )
            return [AgentSession.model_validate(obj, from_attributes=True) for obj in sessions]

    def _record_chunk(self, session_id: str, chunk: ProviderChunk) -> None:
        self.chunks.append_chunk(session_id, chunk.stream_type, chunk.text, chunk_key=chunk.chunk_key)

    def _finish(self, session_id: str, result: ProviderResult) -> None:
        try:
            mark_terminal(session_id, result, provider_session_id=result.provider_session_id)
        except InvalidTransitionError:
            LOG.warning("Dropping late completion for session %s", session_id, exc_info=True)


def _is_review_role(role: str) -> bool:
    try:
        return AgentRole(role).is_review
    except ValueError:
        return False
