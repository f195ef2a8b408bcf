from __future__ import annotations

from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from agent_dispatch import constants
from agent_dispatch.clients.database import init_db
from agent_dispatch.clients.git import GitError
from agent_dispatch.models.agent_config import (
    NamedAgent,
    NamedAgentCreateRequest,
    NamedAgentUpdateRequest,
    ResolvedAgent,
    RoleDefault,
    RoleDefaultRequest,
    RoleProvider,
)
from agent_dispatch.models.chunk import SessionChunk
from agent_dispatch.models.enums import AgentRole, SessionStatus, StreamType
from agent_dispatch.models.session import (
    AgentSession,
    LaunchRequest,
    SessionOutput,
    StoryLaunchRequest,
)
from agent_dispatch.providers.base import ProviderInitializationError
from agent_dispatch.providers.manager import ProviderManager, UnknownProviderError
from agent_dispatch.services.agent_config_service import AgentConfigService
from agent_dispatch.services.agent_resolver import AgentResolver
from agent_dispatch.services.chunk_store import SessionChunkStore
from agent_dispatch.services.cleanup_service import CleanupService
from agent_dispatch.services.dispatch_service import AgentDispatchService
from agent_dispatch.services.errors import (
    InvalidTransitionError,
    NamedAgentError,
    SessionNotFoundError,
    TargetBusyError,
)
from agent_dispatch.services.process_manager import ProcessManager
from agent_dispatch.utils.logging import setup_logging
from agent_dispatch.utils.pathing import ensure_runtime_directories


app = FastAPI(title="Agent Dispatch API", version="0.1.0")


def _require_service(name: str):
    service = getattr(app.state, name, None)
    if service is None:
        raise RuntimeError(f"Service '{name}' not initialised.")
    return service


def get_dispatch_service() -> AgentDispatchService:
    return _require_service("dispatch_service")


def get_agent_config_service() -> AgentConfigService:
    return _require_service("agent_config_service")


def get_agent_resolver() -> AgentResolver:
    return _require_service("agent_resolver")


def get_chunk_store() -> SessionChunkStore:
    return _require_service("chunk_store")


@app.on_event("startup")
async def startup_event() -> None:
    setup_logging()
    ensure_runtime_directories()
    init_db()
    process_manager = ProcessManager()
    resolver = AgentResolver()
    chunk_store = SessionChunkStore()
    dispatch_service = AgentDispatchService(
        resolver=resolver,
        chunks=chunk_store,
        processes=process_manager,
        providers=ProviderManager(),
    )
    cleanup_service = CleanupService(process_manager)
    cleanup_service.fail_orphaned_sessions()
    cleanup_service.backfill_last_non_empty_text()

    app.state.process_manager = process_manager
    app.state.agent_resolver = resolver
    app.state.chunk_store = chunk_store
    app.state.agent_config_service = AgentConfigService()
    app.state.dispatch_service = dispatch_service
    app.state.cleanup_service = cleanup_service


@app.on_event("shutdown")
async def shutdown_event() -> None:
    process_manager = getattr(app.state, "process_manager", None)
    if process_manager is None:
        return
    for session_id in process_manager.running_session_ids():
        process_manager.kill(session_id)


@app.exception_handler(TargetBusyError)
async def target_busy_handler(_request: Request, exc: TargetBusyError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=exc.to_payload())


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(_request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=exc.to_payload())


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(_request: Request, exc: SessionNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND, content={"error": str(exc), "code": exc.code}
    )


@app.exception_handler(NamedAgentError)
async def named_agent_handler(_request: Request, exc: NamedAgentError) -> JSONResponse:
    code = status.HTTP_404_NOT_FOUND if exc.not_found else status.HTTP_400_BAD_REQUEST
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.get("/health")
async def health() -> dict[str, str]:
    """Lightweight health probe."""
    return {"status": "ok"}


@app.get("/named-agents", response_model=List[NamedAgent])
async def list_named_agents(
    configs: AgentConfigService = Depends(get_agent_config_service),
) -> List[NamedAgent]:
    return configs.list_named_agents()


@app.post("/named-agents", response_model=NamedAgent, status_code=status.HTTP_201_CREATED)
async def create_named_agent(
    payload: NamedAgentCreateRequest,
    configs: AgentConfigService = Depends(get_agent_config_service),
) -> NamedAgent:
    return configs.create_named_agent(payload.name, payload.provider, payload.model)


@app.get("/named-agents/{agent_id}", response_model=NamedAgent)
async def get_named_agent(
    agent_id: str,
    configs: AgentConfigService = Depends(get_agent_config_service),
) -> NamedAgent:
    agent = configs.get_named_agent(agent_id)
    if not agent:
        raise HTTPException(status_code=404, detail="Named agent not found.")
    return agent


@app.patch("/named-agents/{agent_id}", response_model=NamedAgent)
async def update_named_agent(
    agent_id: str,
    payload: NamedAgentUpdateRequest,
    configs: AgentConfigService = Depends(get_agent_config_service),
) -> NamedAgent:
    return configs.update_named_agent(
        agent_id, name=payload.name, provider=payload.provider, model=payload.model
    )


@app.delete("/named-agents/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_named_agent(
    agent_id: str,
    configs: AgentConfigService = Depends(get_agent_config_service),
) -> None:
    if not configs.delete_named_agent(agent_id):
        raise HTTPException(status_code=404, detail="Named agent not found.")


@app.get("/agent-roles", response_model=List[RoleProvider])
async def list_role_providers(
    project_id: Optional[str] = None,
    configs: AgentConfigService = Depends(get_agent_config_service),
) -> List[RoleProvider]:
    return configs.list_role_providers(project_id)


@app.put("/agent-roles/{role}/default", response_model=RoleDefault)
async def set_role_default(
    role: AgentRole,
    payload: RoleDefaultRequest,
    scope: str = constants.GLOBAL_SCOPE,
    configs: AgentConfigService = Depends(get_agent_config_service),
) -> RoleDefault:
    return configs.set_role_default(
        role, payload.provider, scope=scope, named_agent_id=payload.named_agent_id
    )


@app.delete("/agent-roles/{role}/default", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role_default(
    role: AgentRole,
    scope: str = constants.GLOBAL_SCOPE,
    configs: AgentConfigService = Depends(get_agent_config_service),
) -> None:
    if not configs.delete_role_default(role, scope):
        raise HTTPException(status_code=404, detail="Role default not found.")


@app.get("/agent-roles/{role}/resolve", response_model=ResolvedAgent)
async def resolve_agent(
    role: AgentRole,
    project_id: Optional[str] = None,
    named_agent_id: Optional[str] = None,
    resolver: AgentResolver = Depends(get_agent_resolver),
) -> ResolvedAgent:
    return resolver.resolve(role, project_id=project_id, named_agent_id=named_agent_id)


@app.post(
    "/projects/{project_id}/epics/{epic_id}/sessions",
    response_model=AgentSession,
    status_code=status.HTTP_201_CREATED,
)
async def launch_epic_session(
    project_id: str,
    epic_id: str,
    payload: LaunchRequest,
    dispatch: AgentDispatchService = Depends(get_dispatch_service),
) -> AgentSession:
    try:
        return dispatch.launch_for_epic(project_id, epic_id, payload)
    except (ProviderInitializationError, UnknownProviderError, GitError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post(
    "/projects/{project_id}/stories/{story_id}/sessions",
    response_model=AgentSession,
    status_code=status.HTTP_201_CREATED,
)
async def launch_story_session(
    project_id: str,
    story_id: str,
    payload: StoryLaunchRequest,
    dispatch: AgentDispatchService = Depends(get_dispatch_service),
) -> AgentSession:
    try:
        return dispatch.launch_for_story(project_id, story_id, payload)
    except (ProviderInitializationError, UnknownProviderError, GitError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/projects/{project_id}/sessions", response_model=List[AgentSession])
async def list_project_sessions(
    project_id: str,
    status_filter: Optional[SessionStatus] = None,
    dispatch: AgentDispatchService = Depends(get_dispatch_service),
) -> List[AgentSession]:
    return dispatch.list_sessions(project_id, status_filter)


@app.get("/projects/{project_id}/sessions/active", response_model=List[AgentSession])
async def list_active_sessions(
    project_id: str,
    dispatch: AgentDispatchService = Depends(get_dispatch_service),
) -> List[AgentSession]:
    return dispatch.list_active(project_id)


@app.get("/sessions/{session_id}", response_model=AgentSession)
async def get_session(
    session_id: str,
    dispatch: AgentDispatchService = Depends(get_dispatch_service),
) -> AgentSession:
    session = dispatch.get_session(session_id)
    if not session:
        raise SessionNotFoundError(session_id)
    return session


@app.delete("/sessions/{session_id}", response_model=AgentSession)
async def cancel_session(
    session_id: str,
    dispatch: AgentDispatchService = Depends(get_dispatch_service),
) -> AgentSession:
    return dispatch.cancel(session_id)


@app.get("/sessions/{session_id}/chunks", response_model=List[SessionChunk])
async def list_session_chunks(
    session_id: str,
    stream_type: StreamType = StreamType.OUTPUT,
    chunks: SessionChunkStore = Depends(get_chunk_store),
) -> List[SessionChunk]:
    return chunks.list_chunks(session_id, stream_type)


@app.get("/sessions/{session_id}/output", response_model=SessionOutput)
async def get_session_output(
    session_id: str,
    dispatch: AgentDispatchService = Depends(get_dispatch_service),
) -> SessionOutput:
    return dispatch.session_output(session_id)
