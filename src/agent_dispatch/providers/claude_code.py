"""Claude Code provider integration."""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from agent_dispatch.models.enums import SessionMode
from agent_dispatch.providers.base import BaseProvider, DispatchOptions, ProviderResult
from agent_dispatch.utils.output_normalizer import extract_block_text, is_result_envelope

LOG = logging.getLogger(__name__)


class ClaudeCodeProvider(BaseProvider):
    """Runs ``claude --print`` with streaming JSON output."""

    name = "claude-code"
    binary = "claude"

    def build_command(self, options: DispatchOptions) -> List[str]:
        permission_mode = "plan" if options.mode == SessionMode.PLAN else "bypassPermissions"
        command = [
            self.binary,
            "--permission-mode",
            permission_mode,
            "--output-format",
            "stream-json",
            "--verbose",
        ]

        if options.provider_session_id and options.resume_session:
            command.extend(["--resume", options.provider_session_id])
        elif options.provider_session_id:
            command.extend(["--session-id", options.provider_session_id])

        command.append("--print")

        if options.model:
            command.extend(["--model", options.model])
        return command

    def parse_output_line(self, line: str) -> Optional[str]:
        event = _parse_event(line)
        if not event or event.get("type") != "assistant":
            return None
        message = event.get("message")
        if not isinstance(message, dict):
            return None
        return extract_block_text(message) or None

    def finalize(
        self, stdout: str, stderr: str, exit_code: Optional[int], duration: float
    ) -> ProviderResult:
        result = super().finalize(stdout, stderr, exit_code, duration)
        envelope = _last_result_event(stdout)
        if result.success and envelope and envelope.get("is_error"):
            LOG.info("Claude Code reported an error result (subtype=%s)", envelope.get("subtype"))
            return result.model_copy(
                update={"success": False, "error": result.result or "Claude Code reported an error."}
            )
        return result


def _parse_event(line: str) -> Optional[dict]:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        event = json.loads(stripped)
    except ValueError:
        return None
    return event if isinstance(event, dict) else None


def _last_result_event(stdout: str) -> Optional[dict]:
    for line in reversed(stdout.splitlines()):
        event = _parse_event(line)
        if is_result_envelope(event):
            return event
    return None
