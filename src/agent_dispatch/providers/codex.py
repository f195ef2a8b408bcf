"""OpenAI Codex provider integration."""

from __future__ import annotations

import re
from typing import List, Optional

from agent_dispatch.models.enums import SessionMode
from agent_dispatch.providers.base import BaseProvider, DispatchOptions
from agent_dispatch.utils.output_normalizer import extract_provider_session_id

SESSION_ID_PATTERN = re.compile(r"session id:\s*([0-9a-zA-Z-]+)", re.IGNORECASE)
READ_PROMPT_FROM_STDIN = "-"


class CodexProvider(BaseProvider):
    """Runs ``codex exec`` non-interactively."""

    name = "codex"
    binary = "codex"

    def build_command(self, options: DispatchOptions) -> List[str]:
        command = [self.binary, "exec"]

        if options.provider_session_id and options.resume_session:
            # ``exec resume`` accepts only a subset of the exec flags.
            command.extend(["resume", options.provider_session_id])
            if options.mode == SessionMode.CODE:
                command.append("--dangerously-bypass-approvals-and-sandbox")
            command.append("--skip-git-repo-check")
        else:
            if options.mode == SessionMode.CODE:
                command.append("--dangerously-bypass-approvals-and-sandbox")
            else:
                command.extend(["-s", "read-only"])
            command.append("--skip-git-repo-check")
            command.extend(["--color", "never"])

        if options.model:
            command.extend(["-m", options.model])
        command.append(READ_PROMPT_FROM_STDIN)
        return command

    def extract_session_id(self, stdout: str, stderr: str) -> Optional[str]:
        found = extract_provider_session_id(stdout)
        if found:
            return found
        # The banner with the session id goes to stderr.
        match = SESSION_ID_PATTERN.search(stderr) or SESSION_ID_PATTERN.search(stdout)
        return match.group(1) if match else None
