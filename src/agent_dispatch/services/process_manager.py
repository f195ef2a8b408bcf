"""Tracks provider child processes and streams their output."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections import OrderedDict
from datetime import datetime
from typing import IO, Callable, Dict, List, Optional

from pydantic import BaseModel

from agent_dispatch.models.enums import SessionStatus, StreamType
from agent_dispatch.providers.base import (
    BaseProvider,
    DispatchOptions,
    ProviderChunk,
    ProviderResult,
)
from agent_dispatch.utils.ids import utcnow

LOG = logging.getLogger(__name__)

RESPONSE_CHUNK_KEY = "response:final"
FINISHED_HISTORY_LIMIT = 200
TERMINATED_MESSAGE = "Process terminated"

ChunkCallback = Callable[[str, ProviderChunk], None]
SpawnCallback = Callable[["SessionInfo"], None]
ExitCallback = Callable[[str, ProviderResult], None]


class SessionInfo(BaseModel):
    session_id: str
    provider: str
    pid: Optional[int] = None
    status: SessionStatus = SessionStatus.RUNNING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    result: Optional[ProviderResult] = None


class _TrackedProcess:
    def __init__(self, info: SessionInfo, process: subprocess.Popen) -> None:
        self.info = info
        self.process = process
        self.thread: Optional[threading.Thread] = None
        self.terminated = False


class ProcessManager:
    """Starts providers, feeds stdin, collects stdout/stderr on worker threads."""

    def __init__(self, history_limit: int = FINISHED_HISTORY_LIMIT) -> None:
        self._lock = threading.Lock()
        self._processes: Dict[str, _TrackedProcess] = {}
        self._finished: "OrderedDict[str, SessionInfo]" = OrderedDict()
        self._history_limit = history_limit

    def start(
        self,
        session_id: str,
        options: DispatchOptions,
        provider: BaseProvider,
        on_chunk: Optional[ChunkCallback] = None,
        on_spawn: Optional[SpawnCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> SessionInfo:
        """Spawn ``provider`` for ``session_id``.

        ``on_spawn`` runs synchronously once the process exists and before the
        watcher thread starts, so it always precedes ``on_exit``. If it raises
        the process is killed and the error propagates.
        """
        with self._lock:
            tracked = self._processes.get(session_id)
            if tracked and tracked.process.poll() is None:
                raise RuntimeError(f"Session {session_id} already has a running process")

        process = provider.spawn(options)
        info = SessionInfo(
            session_id=session_id, provider=provider.name, pid=process.pid, started_at=utcnow()
        )
        tracked = _TrackedProcess(info, process)
        with self._lock:
            self._processes[session_id] = tracked
        LOG.info("Started %s for session %s (pid %s)", provider.name, session_id, process.pid)

        if on_spawn:
            try:
                on_spawn(info)
            except Exception:
                process.kill()
                process.wait()
                with self._lock:
                    self._processes.pop(session_id, None)
                raise

        tracked.thread = threading.Thread(
            target=self._watch,
            args=(tracked, options.prompt, provider, on_chunk, on_exit),
            name=f"dispatch-{session_id[:8]}",
            daemon=True,
        )
        tracked.thread.start()
        return info

    def get_status(self, session_id: str) -> Optional[SessionInfo]:
        """Live or recently finished process info; older runs live only in the database."""
        with self._lock:
            tracked = self._processes.get(session_id)
            if tracked:
                return tracked.info.model_copy()
            finished = self._finished.get(session_id)
            return finished.model_copy() if finished else None

    def kill(self, session_id: str) -> bool:
        """Send SIGTERM to the session's process. True when a live process was signalled."""
        with self._lock:
            tracked = self._processes.get(session_id)
        if tracked is None or tracked.process.poll() is not None:
            return False
        try:
            tracked.terminated = True
            tracked.process.terminate()
        except OSError:
            LOG.warning("Failed to terminate session %s", session_id, exc_info=True)
            return False
        LOG.info("Sent SIGTERM to session %s (pid %s)", session_id, tracked.process.pid)
        return True

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            tracked = self._processes.get(session_id)
        return tracked is not None and tracked.process.poll() is None

    def running_session_ids(self) -> List[str]:
        with self._lock:
            return [sid for sid, tracked in self._processes.items() if tracked.process.poll() is None]

    def join(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the watcher for ``session_id`` has delivered ``on_exit``."""
        with self._lock:
            tracked = self._processes.get(session_id)
        if tracked is None or tracked.thread is None:
            return True
        tracked.thread.join(timeout)
        return not tracked.thread.is_alive()

    def _watch(
        self,
        tracked: _TrackedProcess,
        prompt: str,
        provider: BaseProvider,
        on_chunk: Optional[ChunkCallback],
        on_exit: Optional[ExitCallback],
    ) -> None:
        session_id = tracked.info.session_id
        process = tracked.process
        started = time.monotonic()
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        try:
            readers = [
                threading.Thread(
                    target=self._pump,
                    args=(session_id, process.stdout, "stdout", stdout_lines, provider, on_chunk),
                    daemon=True,
                ),
                threading.Thread(
                    target=self._pump,
                    args=(session_id, process.stderr, "stderr", stderr_lines, None, on_chunk),
                    daemon=True,
                ),
            ]
            for reader in readers:
                reader.start()

            self._send_prompt(session_id, process, prompt)

            for reader in readers:
                reader.join()
            exit_code = process.wait()

            result = provider.finalize(
                "".join(stdout_lines), "".join(stderr_lines), exit_code, time.monotonic() - started
            )
            if tracked.terminated:
                result = result.model_copy(update={"success": False, "error": TERMINATED_MESSAGE})
        except Exception as exc:
            LOG.exception("Watcher for session %s failed", session_id)
            result = ProviderResult(
                success=False, error=str(exc), duration=time.monotonic() - started
            )

        if result.result:
            self._emit(
                session_id,
                on_chunk,
                ProviderChunk(
                    stream_type=StreamType.RESPONSE, text=result.result, chunk_key=RESPONSE_CHUNK_KEY
                ),
            )

        with self._lock:
            tracked.info.status = SessionStatus.COMPLETED if result.success else SessionStatus.FAILED
            tracked.info.ended_at = utcnow()
            tracked.info.result = result
        LOG.info(
            "Session %s process exited (success=%s, exit_code=%s)",
            session_id,
            result.success,
            result.exit_code,
        )

        if on_exit:
            try:
                on_exit(session_id, result)
            except Exception:
                LOG.exception("Exit handler failed for session %s", session_id)

        self._retire(tracked)

    def _retire(self, tracked: _TrackedProcess) -> None:
        session_id = tracked.info.session_id
        with self._lock:
            if self._processes.get(session_id) is tracked:
                del self._processes[session_id]
            self._finished[session_id] = tracked.info
            self._finished.move_to_end(session_id)
            while len(self._finished) > self._history_limit:
                self._finished.popitem(last=False)

    @staticmethod
    def _send_prompt(session_id: str, process: subprocess.Popen, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt)
            process.stdin.close()
        except BrokenPipeError:
            LOG.warning("Session %s closed stdin before the prompt was written", session_id)

    def _pump(
        self,
        session_id: str,
        stream: Optional[IO[str]],
        name: str,
        sink: List[str],
        provider: Optional[BaseProvider],
        on_chunk: Optional[ChunkCallback],
    ) -> None:
        if stream is None:
            return
        with stream:
            for index, line in enumerate(stream, start=1):
                sink.append(line)
                self._emit(
                    session_id,
                    on_chunk,
                    ProviderChunk(stream_type=StreamType.RAW, text=line, chunk_key=f"{name}:{index}"),
                )
                if provider is None:
                    continue
                progress = provider.parse_output_line(line)
                if progress:
                    self._emit(
                        session_id,
                        on_chunk,
                        ProviderChunk(
                            stream_type=StreamType.OUTPUT, text=progress, chunk_key=f"output:{index}"
                        ),
                    )

    @staticmethod
    def _emit(session_id: str, on_chunk: Optional[ChunkCallback], chunk: ProviderChunk) -> None:
        if on_chunk is None:
            return
        try:
            on_chunk(session_id, chunk)
        except Exception:
            LOG.warning("Failed to persist %s chunk for session %s", chunk.stream_type.value, session_id, exc_info=True)
