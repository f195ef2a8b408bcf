from __future__ import annotations

import json
from typing import Any, Dict, Optional

import click
import httpx
import uvicorn

from agent_dispatch import constants
from agent_dispatch.cli import formatters
from agent_dispatch.clients.database import init_db
from agent_dispatch.models.enums import AgentRole, ProviderType, SessionMode, StreamType
from agent_dispatch.services.errors import AGENT_ALREADY_RUNNING_CODE, NamedAgentError
from agent_dispatch.utils import agent_presets
from agent_dispatch.utils.logging import setup_logging
from agent_dispatch.utils.pathing import ensure_runtime_directories

API_BASE = f"http://{constants.SERVER_HOST}:{constants.SERVER_PORT}"

ROLE_CHOICES = click.Choice([role.value for role in AgentRole])
PROVIDER_CHOICES = click.Choice([provider.value for provider in ProviderType])


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("code") == AGENT_ALREADY_RUNNING_CODE:
        return formatters.busy_message(payload)
    return f"API error {response.status_code}: {response.text}"


def _request(method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
    url = f"{API_BASE}{path}"
    with httpx.Client(timeout=60) as client:
        response = client.request(method, url, json=payload)
    if response.status_code >= 400:
        raise click.ClickException(_error_message(response))
    if response.content:
        return response.json()
    return None


@click.group(help="Agent Dispatch command-line interface.")
def cli() -> None:
    """Root command for Agent Dispatch."""
    setup_logging()


@cli.command()
def init() -> None:
    """Initialize local directories and database."""
    ensure_runtime_directories()
    init_db()
    click.echo("Agent Dispatch environment initialized.")


@cli.command()
@click.option("--host", default=constants.SERVER_HOST, show_default=True)
@click.option("--port", default=constants.SERVER_PORT, show_default=True, type=int)
def serve(host: str, port: int) -> None:
    """Run the dispatch API server."""
    uvicorn.run("agent_dispatch.api.main:app", host=host, port=port)


@cli.command("agents")
def list_agents() -> None:
    """List named agents."""
    result = _request("GET", "/named-agents")
    click.echo(formatters.named_agents_table(result))


@cli.command("agent-add")
@click.option("--name", required=True, help="Display name, unique case-insensitively.")
@click.option("--provider", type=PROVIDER_CHOICES, required=True)
@click.option("--model", required=True, help="Provider model identifier.")
def add_agent(name: str, provider: str, model: str) -> None:
    """Create a named agent."""
    result = _request("POST", "/named-agents", {"name": name, "provider": provider, "model": model})
    click.echo(json.dumps(result, indent=2))


@cli.command("agent-remove")
@click.argument("agent_id")
def remove_agent(agent_id: str) -> None:
    """Delete a named agent. Role defaults pointing at it keep their provider."""
    _request("DELETE", f"/named-agents/{agent_id}")
    click.echo("Named agent removed.")


@cli.command("role-default")
@click.argument("role", type=ROLE_CHOICES)
@click.option("--provider", type=PROVIDER_CHOICES, help="Provider to use for the role.")
@click.option("--named-agent", "named_agent_id", help="Named agent ID to pin for the role.")
@click.option("--scope", default=constants.GLOBAL_SCOPE, show_default=True, help="'global' or a project ID.")
@click.option("--clear", is_flag=True, help="Remove the default instead of setting it.")
def role_default(
    role: str, provider: Optional[str], named_agent_id: Optional[str], scope: str, clear: bool
) -> None:
    """Set or clear the provider default for a role."""
    if clear:
        _request("DELETE", f"/agent-roles/{role}/default?scope={scope}")
        click.echo("Role default removed.")
        return
    if not provider:
        raise click.ClickException("--provider is required unless --clear is given.")
    payload = {"provider": provider, "named_agent_id": named_agent_id}
    result = _request("PUT", f"/agent-roles/{role}/default?scope={scope}", payload)
    click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("role", type=ROLE_CHOICES)
@click.option("--project", "project_id", help="Project whose defaults apply.")
@click.option("--named-agent", "named_agent_id", help="Explicit named agent ID.")
def resolve(role: str, project_id: Optional[str], named_agent_id: Optional[str]) -> None:
    """Show which provider and model would run a role."""
    params = []
    if project_id:
        params.append(f"project_id={project_id}")
    if named_agent_id:
        params.append(f"named_agent_id={named_agent_id}")
    suffix = f"?{'&'.join(params)}" if params else ""
    result = _request("GET", f"/agent-roles/{role}/resolve{suffix}")
    click.echo(json.dumps(result, indent=2))


def _launch_payload(
    prompt: str,
    role: str,
    mode: str,
    named_agent_id: Optional[str],
    resume: Optional[str],
    repo: Optional[str],
    title: Optional[str],
    cwd: Optional[str],
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"prompt": prompt, "role": role, "mode": mode}
    optional = {
        "named_agent_id": named_agent_id,
        "resume_session_id": resume,
        "repo_path": repo,
        "epic_title": title,
        "cwd": cwd,
    }
    payload.update({key: value for key, value in optional.items() if value})
    return payload


def _launch_options(func):
    options = [
        click.option("--prompt", prompt=True, help="Instructions for the agent."),
        click.option("--role", type=ROLE_CHOICES, default=AgentRole.BUILD.value, show_default=True),
        click.option(
            "--mode",
            type=click.Choice([mode.value for mode in SessionMode]),
            default=SessionMode.CODE.value,
            show_default=True,
        ),
        click.option("--named-agent", "named_agent_id", help="Explicit named agent ID."),
        click.option("--resume", help="Previous session ID to resume."),
        click.option("--repo", help="Repository path; the agent runs in a per-epic worktree."),
        click.option("--title", help="Epic title used for the worktree branch name."),
        click.option("--cwd", help="Working directory when no repository is given."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@cli.command("build-epic")
@click.argument("project_id")
@click.argument("epic_id")
@_launch_options
def build_epic(project_id: str, epic_id: str, **options: Any) -> None:
    """Run an agent against an epic."""
    payload = _launch_payload(**options)
    result = _request("POST", f"/projects/{project_id}/epics/{epic_id}/sessions", payload)
    click.echo(json.dumps(result, indent=2))


@cli.command("build-story")
@click.argument("project_id")
@click.argument("story_id")
@click.option("--epic", "epic_id", help="Owning epic ID.")
@_launch_options
def build_story(project_id: str, story_id: str, epic_id: Optional[str], **options: Any) -> None:
    """Run an agent against a user story."""
    payload = _launch_payload(**options)
    if epic_id:
        payload["epic_id"] = epic_id
    result = _request("POST", f"/projects/{project_id}/stories/{story_id}/sessions", payload)
    click.echo(json.dumps(result, indent=2))


@cli.command("sessions")
@click.argument("project_id")
@click.option("--active", is_flag=True, help="Only queued or running sessions.")
def list_sessions(project_id: str, active: bool) -> None:
    """List sessions for a project."""
    path = f"/projects/{project_id}/sessions/active" if active else f"/projects/{project_id}/sessions"
    result = _request("GET", path)
    click.echo(formatters.sessions_table(result))


@cli.command()
@click.argument("session_id")
@click.option("--output", "with_output", is_flag=True, help="Print the normalized final output.")
def show(session_id: str, with_output: bool) -> None:
    """Show one session."""
    if with_output:
        result = _request("GET", f"/sessions/{session_id}/output")
        click.echo(result["content"])
        if result.get("verdict"):
            click.echo(f"\nverdict: {result['verdict']}")
        return
    result = _request("GET", f"/sessions/{session_id}")
    click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("session_id")
@click.option(
    "--stream",
    type=click.Choice([stream.value for stream in StreamType]),
    default=StreamType.OUTPUT.value,
    show_default=True,
)
def chunks(session_id: str, stream: str) -> None:
    """Print a session's stored chunks for one stream."""
    result = _request("GET", f"/sessions/{session_id}/chunks?stream_type={stream}")
    for chunk in result:
        click.echo(f"[{chunk['sequence']}] {chunk['content'].rstrip()}")


@cli.command()
@click.argument("session_id")
def cancel(session_id: str) -> None:
    """Cancel a queued or running session."""
    result = _request("DELETE", f"/sessions/{session_id}")
    click.echo(f"Session {result['id']} {result['status']}.")


@cli.group()
def presets() -> None:
    """Named-agent preset files."""


@presets.command("import")
@click.argument("path")
def import_preset(path: str) -> None:
    """Create or update a named agent from a markdown preset."""
    init_db()
    try:
        agent, created = agent_presets.import_preset(path)
    except (agent_presets.AgentPresetError, NamedAgentError) as exc:
        raise click.ClickException(str(exc)) from exc
    verb = "Created" if created else "Updated"
    click.echo(f"{verb} named agent {agent.name} ({agent.provider}/{agent.model}).")


@presets.command("list")
def list_presets() -> None:
    """List presets stored in the runtime preset directory."""
    try:
        found = agent_presets.list_presets()
    except agent_presets.AgentPresetError as exc:
        raise click.ClickException(str(exc)) from exc
    rows = [[p.name, p.provider, p.model, p.description or ""] for p in found]
    click.echo(formatters.table(["NAME", "PROVIDER", "MODEL", "DESCRIPTION"], rows))


if __name__ == "__main__":
    cli()
