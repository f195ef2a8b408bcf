import asyncio

from agent_dispatch.api import main as api_main

from conftest import SLEEP_SCRIPT, script_provider


def _wait(dispatch_service, process_manager, session_id):
    asyncio.run(dispatch_service.wait_for_terminal(session_id, poll_interval=0.05, timeout=15))
    process_manager.join(session_id, timeout=10)


def test_health(api_client):
    response = api_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_named_agent_crud(api_client):
    listed = api_client.get("/named-agents").json()
    assert [agent["name"] for agent in listed] == ["Claude Code"]

    created = api_client.post(
        "/named-agents", json={"name": "Codex", "provider": "codex", "model": "gpt-5-codex"}
    )
    assert created.status_code == 201
    agent_id = created.json()["id"]

    duplicate = api_client.post(
        "/named-agents", json={"name": "codex", "provider": "codex", "model": "gpt-5"}
    )
    assert duplicate.status_code == 400

    patched = api_client.patch(f"/named-agents/{agent_id}", json={"model": "gpt-5"})
    assert patched.json()["model"] == "gpt-5"

    assert api_client.delete(f"/named-agents/{agent_id}").status_code == 204
    assert api_client.get(f"/named-agents/{agent_id}").status_code == 404
    assert api_client.patch(f"/named-agents/{agent_id}", json={"model": "x"}).status_code == 404


def test_role_defaults_and_resolution(api_client):
    response = api_client.put(
        "/agent-roles/review_code/default", params={"scope": "proj"}, json={"provider": "gemini-cli"}
    )
    assert response.status_code == 200
    assert response.json()["scope"] == "proj"

    resolved = api_client.get("/agent-roles/review_code/resolve", params={"project_id": "proj"}).json()
    assert resolved == {
        "provider": "gemini-cli",
        "model": None,
        "named_agent_id": None,
        "name": None,
        "source": "project",
    }

    roles = {row["role"]: row for row in api_client.get("/agent-roles", params={"project_id": "proj"}).json()}
    assert roles["review_code"]["source"] == "project"
    assert roles["build"]["source"] == "fallback"

    assert api_client.delete("/agent-roles/review_code/default", params={"scope": "proj"}).status_code == 204
    assert api_client.delete("/agent-roles/review_code/default", params={"scope": "proj"}).status_code == 404
    seeded = api_client.get("/agent-roles/review_code/resolve").json()
    assert seeded["source"] == "seeded"


def test_unknown_role_is_rejected(api_client):
    assert api_client.get("/agent-roles/wizard/resolve").status_code == 422


def test_epic_session_flow(api_client, dispatch_service, process_manager):
    response = api_client.post(
        "/projects/proj/epics/epic-1/sessions", json={"prompt": "build it", "role": "build"}
    )
    assert response.status_code == 201
    session = response.json()
    assert session["project_id"] == "proj"
    assert session["epic_id"] == "epic-1"

    _wait(dispatch_service, process_manager, session["id"])

    detail = api_client.get(f"/sessions/{session['id']}").json()
    assert detail["status"] == "completed"
    assert detail["last_non_empty_text"] == "done: build it"

    raw = api_client.get(f"/sessions/{session['id']}/chunks", params={"stream_type": "raw"}).json()
    assert [chunk["sequence"] for chunk in raw] == [1, 2, 3]

    output = api_client.get(f"/sessions/{session['id']}/output").json()
    assert output["content"] == "done: build it"

    listed = api_client.get("/projects/proj/sessions", params={"status_filter": "completed"}).json()
    assert [item["id"] for item in listed] == [session["id"]]

    cancel = api_client.delete(f"/sessions/{session['id']}")
    assert cancel.status_code == 409
    assert cancel.json()["code"] == "INVALID_SESSION_TRANSITION"


def test_busy_epic_returns_conflict_payload(api_client, provider_manager):
    provider_manager.register("claude-code", script_provider(SLEEP_SCRIPT))

    first = api_client.post("/projects/proj/epics/epic-1/sessions", json={"prompt": "one"})
    assert first.status_code == 201
    first_id = first.json()["id"]

    second = api_client.post(
        "/projects/proj/stories/story-9/sessions", json={"prompt": "two", "epic_id": "epic-1"}
    )
    assert second.status_code == 409
    payload = second.json()
    assert payload["code"] == "AGENT_ALREADY_RUNNING"
    assert payload["data"]["active_session_id"] == first_id
    assert payload["data"]["active_session"]["status"] == "running"

    active = api_client.get("/projects/proj/sessions/active").json()
    assert [item["id"] for item in active] == [first_id]

    cancelled = api_client.delete(f"/sessions/{first_id}")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"


def test_launch_with_missing_binary_is_bad_request(api_client, provider_manager):
    provider_manager.register("claude-code", script_provider(SLEEP_SCRIPT, "agent-dispatch-missing"))

    response = api_client.post("/projects/proj/epics/epic-1/sessions", json={"prompt": "x"})

    assert response.status_code == 400
    failed = api_client.get("/projects/proj/sessions", params={"status_filter": "failed"}).json()
    assert len(failed) == 1


def test_unknown_session_returns_404(api_client):
    response = api_client.get("/sessions/missing")
    assert response.status_code == 404
    assert response.json()["code"] == "SESSION_NOT_FOUND"
    assert api_client.get("/sessions/missing/output").status_code == 404
    assert api_client.delete("/sessions/missing").status_code == 404


def test_shutdown_terminates_running_sessions(api_client, provider_manager, process_manager):
    provider_manager.register("claude-code", script_provider(SLEEP_SCRIPT))
    launched = api_client.post("/projects/proj/epics/epic-1/sessions", json={"prompt": "x"})
    session_id = launched.json()["id"]
    assert process_manager.is_running(session_id)

    asyncio.run(api_main.shutdown_event())

    assert process_manager.join(session_id, timeout=10)
    assert not process_manager.is_running(session_id)
    assert process_manager.running_session_ids() == []
    assert process_manager.get_status(session_id).result.error == "Process terminated"
