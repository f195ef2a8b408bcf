"""Gemini CLI provider integration."""

from __future__ import annotations

from typing import List

from agent_dispatch.models.enums import SessionMode
from agent_dispatch.providers.base import BaseProvider, DispatchOptions


class GeminiCliProvider(BaseProvider):
    """Runs ``gemini`` headless with JSON output; the prompt arrives on stdin."""

    name = "gemini-cli"
    binary = "gemini"

    def build_command(self, options: DispatchOptions) -> List[str]:
        command = [self.binary]
        if options.provider_session_id and options.resume_session:
            command.extend(["--resume", options.provider_session_id])
        command.extend(["--output-format", "json"])
        if options.mode == SessionMode.CODE:
            command.append("-y")
        if options.model:
            command.extend(["-m", options.model])
        return command
