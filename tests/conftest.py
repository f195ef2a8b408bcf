import sys
import textwrap
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List

import pytest
from fastapi.testclient import TestClient

from agent_dispatch import constants
from agent_dispatch.api import main as api_main
from agent_dispatch.clients import database
from agent_dispatch.clients.git import Worktree, epic_branch_name
from agent_dispatch.providers.base import BaseProvider, DispatchOptions
from agent_dispatch.providers.manager import ProviderManager
from agent_dispatch.services.agent_config_service import AgentConfigService
from agent_dispatch.services.agent_resolver import AgentResolver
from agent_dispatch.services.chunk_store import SessionChunkStore
from agent_dispatch.services.dispatch_service import AgentDispatchService
from agent_dispatch.services.process_manager import ProcessManager

SUCCESS_SCRIPT = textwrap.dedent(
    """
    import json, sys
    prompt = sys.stdin.read().strip()
    print(json.dumps({"type": "system", "subtype": "init", "session_id": "prov-123"}))
    print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "working on " + prompt}]}}))
    print(json.dumps({"type": "result", "subtype": "success", "result": "done: " + prompt, "session_id": "prov-123"}))
    """
)

FAILURE_SCRIPT = textwrap.dedent(
    """
    import sys
    sys.stdin.read()
    sys.stderr.write("boom\\n")
    sys.exit(3)
    """
)

SLEEP_SCRIPT = textwrap.dedent(
    """
    import sys, time
    sys.stdin.read()
    print("started", flush=True)
    time.sleep(30)
    """
)


class ScriptProvider(BaseProvider):
    """Provider that runs a Python snippet instead of a real agent CLI."""

    name = "claude-code"
    binary = sys.executable
    script = SUCCESS_SCRIPT

    def __init__(self) -> None:
        self.commands: List[DispatchOptions] = []

    def build_command(self, options: DispatchOptions) -> List[str]:
        self.commands.append(options)
        return [self.binary, "-c", self.script]


def script_provider(script: str, binary: str = sys.executable):
    return type("CustomScriptProvider", (ScriptProvider,), {"script": script, "binary": binary})


class FakeGitClient:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.calls = []

    def create_worktree(self, repo_path: str, epic_id: str, epic_title: str) -> Worktree:
        self.calls.append((repo_path, epic_id, epic_title))
        branch = epic_branch_name(epic_id, epic_title)
        path = self.root / branch.replace("/", "-")
        path.mkdir(parents=True, exist_ok=True)
        return Worktree(worktree_path=str(path), branch_name=branch)


@pytest.fixture(autouse=True)
def temp_runtime_dirs(tmp_path, monkeypatch):
    """Redirect runtime directories and database into a temp location."""
    home = tmp_path / "runtime" / "home"
    mapping = {
        "HOME_DIR": home,
        "LOG_DIR": home / "logs",
        "DB_DIR": home / "db",
        "DB_FILE": home / "db" / "dispatch.db",
        "PRESET_DIR": home / "presets",
    }

    for name, path in mapping.items():
        monkeypatch.setattr(constants, name, path)

    database.init_db()
    yield


@pytest.fixture
def provider_manager() -> ProviderManager:
    return ProviderManager(
        registry={
            "claude-code": ScriptProvider,
            "codex": ScriptProvider,
            "gemini-cli": ScriptProvider,
        }
    )


@pytest.fixture
def process_manager() -> ProcessManager:
    return ProcessManager()


@pytest.fixture
def chunk_store() -> SessionChunkStore:
    return SessionChunkStore()


@pytest.fixture
def config_service() -> AgentConfigService:
    return AgentConfigService()


@pytest.fixture
def resolver() -> AgentResolver:
    return AgentResolver()


@pytest.fixture
def fake_git(tmp_path) -> FakeGitClient:
    return FakeGitClient(tmp_path / "worktrees")


@pytest.fixture
def dispatch_service(resolver, chunk_store, process_manager, provider_manager, fake_git):
    service = AgentDispatchService(
        resolver=resolver,
        chunks=chunk_store,
        processes=process_manager,
        providers=provider_manager,
        git=fake_git,
    )
    yield service
    for session_id in process_manager.running_session_ids():
        process_manager.kill(session_id)
        process_manager.join(session_id, timeout=10)


@pytest.fixture
def api_client(dispatch_service, config_service, resolver, chunk_store, process_manager):
    app = api_main.app

    overrides = {
        api_main.get_dispatch_service: lambda: dispatch_service,
        api_main.get_agent_config_service: lambda: config_service,
        api_main.get_agent_resolver: lambda: resolver,
        api_main.get_chunk_store: lambda: chunk_store,
    }

    state_attrs = {
        "dispatch_service": dispatch_service,
        "agent_config_service": config_service,
        "agent_resolver": resolver,
        "chunk_store": chunk_store,
        "process_manager": process_manager,
    }

    original_state = {name: getattr(app.state, name, None) for name in state_attrs}
    for name, value in state_attrs.items():
        setattr(app.state, name, value)

    original_overrides = app.dependency_overrides.copy()
    original_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def noop_lifespan(_app):
        yield

    app.router.lifespan_context = noop_lifespan
    app.dependency_overrides.update(overrides)

    with TestClient(app) as client:
        yield client

    app.dependency_overrides = original_overrides
    app.router.lifespan_context = original_lifespan

    for name, value in original_state.items():
        if value is None:
            try:
                delattr(app.state, name)
            except AttributeError:
                pass
        else:
            setattr(app.state, name, value)
