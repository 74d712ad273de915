"""
Claude Process Supervisor - runs the Claude CLI for one exchange.

The CLI is reached through a wrapper script invoked as:

    <wrapper> <working dir> --print --verbose --output-format stream-json
              [--resume <uuid>] [options...] <prompt>

Stdout carries one JSON record per line. Every parsed record is appended
to an accumulator and the whole accumulator is written to the session file,
so the file always holds a complete snapshot of the exchange so far.

The pid of the running process is kept in a TTL cache shared across
processes, which lets a separate caller stop the conversation.
"""

import asyncio
import logging
import os
import signal
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from convoy.claude.parser import extract_session_id, extract_text_content, is_uuid, parse_line
from convoy.config import ConvoyConfig
from convoy.exceptions import ProcessFailureError, SessionLockError
from convoy.logging import ProcessLogEntry, now_iso, process_logger
from convoy.persistence.cache import CacheStore
from convoy.sessions.store import SessionStore

logger = logging.getLogger(__name__)

# Stream-json lines can carry whole file contents
STREAM_LIMIT = 32 * 1024 * 1024

# on_output(event, data) with event one of "session_id", "response", "error"
OutputCallback = Callable[[str, Any], None]


@dataclass
class ProcessRequest:
    """One invocation of the Claude CLI."""

    prompt: str
    working_directory: str | None = None
    session_id: str | None = None
    options: list[str] = field(default_factory=list)
    session_file: str | None = None
    conversation_id: int | None = None


@dataclass
class ProcessResult:
    """Outcome of a finished Claude CLI run."""

    success: bool
    session_id: str | None
    session_file: str | None
    responses: list[dict[str, Any]] = field(default_factory=list)
    exit_code: int | None = None
    stderr: str = ""
    malformed_lines: int = 0

    @property
    def response_count(self) -> int:
        return len(self.responses)


class ProcessTable:
    """Conversation id -> pid of its running Claude process."""

    def __init__(self, cache: CacheStore, ttl: float = 3600):
        self.cache = cache
        self.ttl = ttl

    @staticmethod
    def key(conversation_id: int) -> str:
        return f"claude_process_{conversation_id}"

    def remember(self, conversation_id: int, pid: int) -> None:
        self.cache.put(self.key(conversation_id), pid, self.ttl)

    def lookup(self, conversation_id: int) -> int | None:
        return self.cache.get(self.key(conversation_id))

    def forget(self, conversation_id: int) -> None:
        self.cache.forget(self.key(conversation_id))


def _is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _signal(pid: int, sig: int) -> None:
    """Signal the process group of pid, or pid alone if it shares ours."""
    try:
        pgid = os.getpgid(pid)
        if pgid != os.getpgid(0):
            os.killpg(pgid, sig)
            return
    except (ProcessLookupError, PermissionError):
        pass
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        pass


class ProcessSupervisor:
    """
    Spawns the Claude CLI and streams its output into the session store.

    Args:
        config: Convoy configuration (wrapper, env, grace period)
        sessions: Session store receiving snapshots
        processes: Process table for stop requests
    """

    def __init__(self, config: ConvoyConfig, sessions: SessionStore, processes: ProcessTable):
        self.config = config
        self.sessions = sessions
        self.processes = processes

    def build_command(
        self,
        working_directory: str | None,
        session_id: str | None,
        options: list[str],
        prompt: str,
    ) -> list[str]:
        """Build the wrapper argv. ``--resume`` is only passed a real UUID."""
        cmd = [
            self.config.wrapper,
            working_directory or str(self.config.app_root),
            "--print",
            "--verbose",
            "--output-format",
            "stream-json",
        ]
        if is_uuid(session_id):
            cmd.extend(["--resume", session_id])  # type: ignore[list-item]
        cmd.extend(options)
        cmd.append(prompt)
        return cmd

    async def _save(
        self,
        request: ProcessRequest,
        session_id: str | None,
        responses: list[dict[str, Any]],
        is_complete: bool,
    ) -> None:
        if not request.session_file:
            return
        await asyncio.to_thread(
            self.sessions.save_exchange,
            request.session_file,
            request.prompt,
            list(responses),
            is_complete,
            request.session_id,
            session_id,
            request.working_directory,
        )

    async def run(
        self,
        request: ProcessRequest,
        on_output: OutputCallback | None = None,
    ) -> ProcessResult:
        """
        Run the CLI to completion. There is no timeout.

        Raises:
            ProcessFailureError: If the wrapper cannot be started
            SessionLockError: If the final session save cannot take the lock
        """

        def emit(event: str, data: Any) -> None:
            if on_output is not None:
                on_output(event, data)

        cmd = self.build_command(
            request.working_directory, request.session_id, request.options, request.prompt
        )
        entry = ProcessLogEntry(
            timestamp=now_iso(),
            execution_id=str(uuid.uuid4()),
            conversation_id=request.conversation_id,
            command=cmd,
            working_directory=request.working_directory or "",
            session_file=request.session_file or "",
            resume_session_id=request.session_id,
        )
        start = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.config.process_env(),
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            entry.error = str(e)
            entry.duration_ms = int((time.monotonic() - start) * 1000)
            process_logger.error(entry.to_json())
            raise ProcessFailureError(f"Failed to start Claude CLI: {e}")

        entry.pid = process.pid
        if request.conversation_id is not None:
            self.processes.remember(request.conversation_id, process.pid)
        logger.info(f"Started Claude process {process.pid} for conversation {request.conversation_id}")

        responses: list[dict[str, Any]] = []
        stderr_lines: list[str] = []
        extracted = request.session_id
        malformed = 0

        async def read_stderr() -> None:
            assert process.stderr is not None
            async for raw in process.stderr:
                text = raw.decode(errors="replace").rstrip()
                if text:
                    stderr_lines.append(text)
                    emit("error", text)

        stderr_task = asyncio.create_task(read_stderr())

        try:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode(errors="replace").strip()
                if not line:
                    continue

                record = parse_line(line)
                if record is None:
                    malformed += 1
                    logger.warning(f"Skipping malformed Claude output line: {line[:200]}")
                    continue

                responses.append(record)

                if not extracted:
                    extracted = extract_session_id(record)
                    if extracted:
                        emit("session_id", extracted)

                try:
                    await self._save(request, extracted, responses, False)
                except SessionLockError as e:
                    logger.warning(f"Skipped intermediate session snapshot: {e}")

                emit(
                    "response",
                    {
                        "session_file": request.session_file,
                        "response_count": len(responses),
                        "content": extract_text_content(responses),
                    },
                )

            await stderr_task
            exit_code = await process.wait()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            if process.returncode is None:
                _signal(process.pid, signal.SIGKILL)
                await process.wait()
            if request.conversation_id is not None:
                self.processes.forget(request.conversation_id)

        if not responses:
            logger.warning(
                f"No responses from Claude process {process.pid} (exit code {exit_code})"
            )
        await self._save(request, extracted, responses, bool(responses))

        result = ProcessResult(
            success=exit_code == 0,
            session_id=extracted,
            session_file=request.session_file,
            responses=responses,
            exit_code=exit_code,
            stderr="\n".join(stderr_lines),
            malformed_lines=malformed,
        )

        entry.exit_code = exit_code
        entry.success = result.success
        entry.session_id = extracted
        entry.response_count = result.response_count
        entry.malformed_lines = malformed
        entry.stderr = result.stderr[-2000:]
        entry.duration_ms = int((time.monotonic() - start) * 1000)
        if result.success:
            process_logger.info(entry.to_json())
        else:
            process_logger.warning(entry.to_json())

        return result

    def terminate(self, conversation_id: int) -> bool:
        """
        Stop the Claude process serving a conversation.

        Sends SIGTERM, waits the grace period, then SIGKILL if needed. The
        table entry is always forgotten. Never raises.

        Returns:
            True if a pid was on record
        """
        pid = self.processes.lookup(conversation_id)
        if not pid:
            logger.warning(f"No process found to terminate for conversation {conversation_id}")
            return False

        try:
            if _is_alive(pid):
                _signal(pid, signal.SIGTERM)
                time.sleep(self.config.terminate_grace)
                if _is_alive(pid):
                    _signal(pid, signal.SIGKILL)
                logger.info(f"Terminated Claude process {pid} for conversation {conversation_id}")
        except OSError as e:
            logger.error(f"Failed to terminate Claude process {pid}: {e}")
            return False
        finally:
            self.processes.forget(conversation_id)

        return True
