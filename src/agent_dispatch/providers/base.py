"""Provider base classes."""

from __future__ import annotations

import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel

from agent_dispatch.models.enums import SessionMode, StreamType
from agent_dispatch.utils.output_normalizer import extract_provider_session_id, normalize


class ProviderInitializationError(RuntimeError):
    """Raised when a provider cannot start."""


class DispatchOptions(BaseModel):
    """What a provider process is asked to do."""

    mode: SessionMode = SessionMode.CODE
    prompt: str
    cwd: Optional[str] = None
    model: Optional[str] = None
    provider_session_id: Optional[str] = None
    resume_session: bool = False


class ProviderChunk(BaseModel):
    stream_type: StreamType
    text: str
    chunk_key: Optional[str] = None


class ProviderResult(BaseModel):
    """Outcome of one provider process."""

    success: bool
    result: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0
    exit_code: Optional[int] = None
    provider_session_id: Optional[str] = None


class BaseProvider(ABC):
    """Abstract interface for CLI providers run as child processes."""

    name: str = ""
    binary: str = ""

    @abstractmethod
    def build_command(self, options: DispatchOptions) -> List[str]:
        """Return argv for the provider. The prompt is sent on stdin."""

    def parse_output_line(self, line: str) -> Optional[str]:
        """Return progress text carried by one stdout line, if any."""
        return None

    def extract_session_id(self, stdout: str, stderr: str) -> Optional[str]:
        return extract_provider_session_id(stdout)

    def finalize(
        self, stdout: str, stderr: str, exit_code: Optional[int], duration: float
    ) -> ProviderResult:
        """Build the result for a finished process."""
        content = normalize(stdout).content
        session_id = self.extract_session_id(stdout, stderr)
        if exit_code == 0:
            return ProviderResult(
                success=True,
                result=content,
                duration=duration,
                exit_code=exit_code,
                provider_session_id=session_id,
            )

        error = stderr.strip() or content or f"{self.name} exited with code {exit_code}"
        return ProviderResult(
            success=False,
            result=content or None,
            error=error,
            duration=duration,
            exit_code=exit_code,
            provider_session_id=session_id,
        )

    def environment(self) -> dict:
        env = os.environ.copy()
        env.setdefault("NO_COLOR", "1")
        return env

    def spawn(self, options: DispatchOptions) -> subprocess.Popen:
        """Start the provider process with piped standard streams."""
        self.ensure_binary_exists(self.binary)
        command = self.build_command(options)
        try:
            return subprocess.Popen(
                command,
                cwd=options.cwd or None,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=self.environment(),
            )
        except OSError as exc:
            raise ProviderInitializationError(f"Failed to start {self.name}: {exc}") from exc

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    @staticmethod
    def ensure_binary_exists(binary: str) -> None:
        if shutil.which(binary) is None:
            raise ProviderInitializationError(
                f"Required binary '{binary}' not found on PATH. Install it before launching the provider."
            )
