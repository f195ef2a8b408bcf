import json

import pytest

from agent_dispatch.models.enums import SessionMode
from agent_dispatch.providers.base import DispatchOptions, ProviderInitializationError
from agent_dispatch.providers.claude_code import ClaudeCodeProvider
from agent_dispatch.providers.codex import CodexProvider
from agent_dispatch.providers.gemini_cli import GeminiCliProvider
from agent_dispatch.providers.manager import ProviderManager, UnknownProviderError


def test_claude_code_command_for_plan_and_resume():
    provider = ClaudeCodeProvider()

    plan = provider.build_command(DispatchOptions(mode=SessionMode.PLAN, prompt="p", model="sonnet"))
    assert plan[:3] == ["claude", "--permission-mode", "plan"]
    assert plan[-3:] == ["--print", "--model", "sonnet"]
    assert "--resume" not in plan

    resumed = provider.build_command(
        DispatchOptions(prompt="p", provider_session_id="abc", resume_session=True)
    )
    assert "bypassPermissions" in resumed
    assert resumed[resumed.index("--resume") + 1] == "abc"


def test_claude_code_parses_assistant_lines():
    provider = ClaudeCodeProvider()
    line = json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}})

    assert provider.parse_output_line(line) == "hi"
    assert provider.parse_output_line(json.dumps({"type": "system"})) is None
    assert provider.parse_output_line("not json") is None


def test_claude_code_error_result_fails_session():
    provider = ClaudeCodeProvider()
    stdout = json.dumps(
        {"type": "result", "subtype": "success", "is_error": True, "result": "Credit balance too low"}
    )

    result = provider.finalize(stdout, "", 0, 1.0)

    assert result.success is False
    assert result.error == "Credit balance too low"


def test_codex_command_variants():
    provider = CodexProvider()

    code = provider.build_command(DispatchOptions(prompt="p", model="gpt-5"))
    assert code == [
        "codex",
        "exec",
        "--dangerously-bypass-approvals-and-sandbox",
        "--skip-git-repo-check",
        "--color",
        "never",
        "-m",
        "gpt-5",
        "-",
    ]

    plan = provider.build_command(DispatchOptions(mode=SessionMode.PLAN, prompt="p"))
    assert plan[2:4] == ["-s", "read-only"]

    resumed = provider.build_command(
        DispatchOptions(prompt="p", provider_session_id="s-1", resume_session=True)
    )
    assert resumed[:4] == ["codex", "exec", "resume", "s-1"]
    assert "--color" not in resumed


def test_codex_reads_session_id_from_stderr():
    provider = CodexProvider()
    stderr = "OpenAI Codex\nsession id: 0199a-bc12\nworkdir: /tmp\n"

    result = provider.finalize("All done.\n", stderr, 0, 2.0)

    assert result.success is True
    assert result.result == "All done."
    assert result.provider_session_id == "0199a-bc12"


def test_gemini_command():
    provider = GeminiCliProvider()

    command = provider.build_command(
        DispatchOptions(prompt="p", model="gemini-2.5-pro", provider_session_id="g1", resume_session=True)
    )

    assert command == ["gemini", "--resume", "g1", "--output-format", "json", "-y", "-m", "gemini-2.5-pro"]


def test_nonzero_exit_prefers_stderr_then_content():
    provider = GeminiCliProvider()

    assert provider.finalize("", "quota exceeded\n", 1, 0.1).error == "quota exceeded"
    assert provider.finalize('{"response": "partial"}', "", 1, 0.1).error == "partial"
    assert provider.finalize("", "", 2, 0.1).error == "gemini-cli exited with code 2"


def test_missing_binary_raises_initialization_error():
    provider = CodexProvider()
    provider.binary = "agent-dispatch-no-such-codex"

    with pytest.raises(ProviderInitializationError):
        provider.spawn(DispatchOptions(prompt="p"))


def test_provider_manager_registry():
    manager = ProviderManager()

    assert isinstance(manager.get_provider("codex"), CodexProvider)
    assert manager.get_provider("codex") is not manager.get_provider("codex")
    assert set(manager.available_providers()) == {"claude-code", "codex", "gemini-cli"}

    with pytest.raises(UnknownProviderError):
        manager.get_provider("cursor")
