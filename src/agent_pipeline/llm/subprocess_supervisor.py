"""Subprocess stream supervisor.

Spawns an external agent command, feeds it the prompt on stdin, and turns its
stdout into either a sequence of parsed JSON values (line-delimited protocol)
or one captured text block (plain-text protocol). Two watchdogs bound the run:
a startup window from spawn to the first activity and an idle window between
activity events. Any stderr data counts as activity but is never parsed.
"""

import asyncio
import codecs
import json
import logging
import os
import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from .base import CancellationHandle
from .messages import CanonicalMessage, ErrorMessage, new_session_id, text_output_to_messages
from ..errors.exceptions import (
    ExecutionCancelledError,
    IdleTimeoutError,
    MissingOutputError,
    ProcessExitError,
    SpawnError,
    StartupTimeoutError,
)
from ..utils.process_utils import force_kill

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class OutputProtocol(str, Enum):
    """How the command's stdout is interpreted."""
    JSONL = "stream_json"
    TEXT = "text"


@dataclass
class SubprocessSpec:
    """Everything needed to spawn and supervise one command."""
    command: Sequence[str]
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    idle_timeout: Optional[float] = 300.0
    startup_timeout: Optional[float] = None  # None = same as idle_timeout
    cancellation: Optional[CancellationHandle] = None
    extra_env_removals: List[str] = field(default_factory=list)

    @property
    def effective_startup_timeout(self) -> Optional[float]:
        if self.startup_timeout is None:
            return self.idle_timeout
        return self.startup_timeout

    def stdin_payload(self) -> bytes:
        parts = []
        if self.system_prompt:
            parts.append(f"System: {self.system_prompt}\n\n")
        if self.prompt is not None:
            parts.append(self.prompt + "\n")
        return "".join(parts).encode()


class _SupervisedRun:
    """One spawned process plus its reader tasks and watchdog state."""

    def __init__(self, spec: SubprocessSpec):
        self.spec = spec
        self.stderr_chunks: List[str] = []
        self.returncode: Optional[int] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: List[asyncio.Task] = []
        self._started_at = 0.0
        self._last_activity: Optional[float] = None

    @property
    def stderr_text(self) -> str:
        return "".join(self.stderr_chunks)

    @property
    def signal_name(self) -> Optional[str]:
        if self.returncode is not None and self.returncode < 0:
            try:
                return signal.Signals(-self.returncode).name
            except ValueError:
                return None
        return None

    def _touch(self) -> None:
        self._last_activity = asyncio.get_running_loop().time()

    def _time_remaining(self) -> Optional[float]:
        now = asyncio.get_running_loop().time()
        if self._last_activity is None:
            limit = self.spec.effective_startup_timeout
            since = self._started_at
        else:
            limit = self.spec.idle_timeout
            since = self._last_activity
        if not limit or limit <= 0:
            return None
        return limit - (now - since)

    def _build_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        if self.spec.env:
            env.update(self.spec.env)
        for key in self.spec.extra_env_removals:
            env.pop(key, None)
        return env

    def _on_cancel(self) -> None:
        if self._process is not None:
            force_kill(self._process)
        self._queue.put_nowait(("cancel", None))

    def _raise_if_cancelled(self) -> None:
        cancellation = self.spec.cancellation
        if cancellation is not None and cancellation.cancelled:
            if self._process is not None:
                force_kill(self._process)
            logger.info(f"Subprocess cancelled: {cancellation.reason or 'no reason given'}")
            raise ExecutionCancelledError()

    def _raise_timeout(self) -> None:
        if self._process is not None:
            force_kill(self._process)
        if self._last_activity is None:
            timeout = self.spec.effective_startup_timeout
            logger.warning(f"No output within startup window ({timeout:g}s), process killed")
            raise StartupTimeoutError(timeout)
        logger.warning(f"No activity within idle window ({self.spec.idle_timeout:g}s), process killed")
        raise IdleTimeoutError(self.spec.idle_timeout)

    async def _feed_stdin(self, stdin: asyncio.StreamWriter) -> None:
        payload = self.spec.stdin_payload()
        try:
            if payload:
                stdin.write(payload)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"stdin closed by process before prompt was written: {e}")
        finally:
            stdin.close()

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        buffer = b""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self._touch()
            buffer += chunk
            while b"\n" in buffer:
                line_bytes, buffer = buffer.split(b"\n", 1)
                self._queue.put_nowait(("line", line_bytes.decode(errors="replace")))
        if buffer:
            self._queue.put_nowait(("line", buffer.decode(errors="replace")))
        self._queue.put_nowait(("stdout_closed", None))

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        # Multi-byte characters may straddle read boundaries
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self._touch()
            decoded = decoder.decode(chunk)
            self.stderr_chunks.append(decoded)
            logger.debug(f"stderr: {decoded.strip()[:200]}")
        self.stderr_chunks.append(decoder.decode(b"", final=True))
        self._queue.put_nowait(("stderr_closed", None))

    async def _wait_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        self._queue.put_nowait(("exit", returncode))

    async def _spawn(self) -> asyncio.subprocess.Process:
        command = list(self.spec.command)
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.spec.cwd,
                env=self._build_env(),
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to spawn {command[0] if command else '<empty>'}: {e}")
            raise SpawnError(command[0] if command else "", str(e)) from e

    async def lines(self) -> AsyncIterator[str]:
        """Yield stdout lines in arrival order until the process is done."""
        self._raise_if_cancelled()

        loop = asyncio.get_running_loop()
        self._started_at = loop.time()
        process = await self._spawn()
        self._process = process
        logger.debug(f"Spawned pid {process.pid}: {self.spec.command[0]}")

        cancellation = self.spec.cancellation
        if cancellation is not None:
            cancellation.add_callback(self._on_cancel)

        self._tasks = [
            asyncio.create_task(self._feed_stdin(process.stdin)),
            asyncio.create_task(self._read_stdout(process.stdout)),
            asyncio.create_task(self._read_stderr(process.stderr)),
            asyncio.create_task(self._wait_exit(process)),
        ]

        pending = {"stdout_closed", "stderr_closed", "exit"}
        try:
            while pending:
                self._raise_if_cancelled()
                remaining = self._time_remaining()
                if remaining is not None and remaining <= 0:
                    self._raise_timeout()
                try:
                    kind, value = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    # stderr may have moved the deadline; re-evaluate
                    continue

                self._raise_if_cancelled()
                if kind == "line":
                    yield value
                elif kind == "exit":
                    self.returncode = value
                    pending.discard(kind)
                elif kind in pending:
                    pending.discard(kind)
        finally:
            if cancellation is not None:
                cancellation.remove_callback(self._on_cancel)
            await self._shutdown(process)

    async def _shutdown(self, process: asyncio.subprocess.Process) -> None:
        force_kill(process)
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if process.returncode is None:
            await process.wait()
        if self.returncode is None:
            self.returncode = process.returncode

    def raise_for_exit(self) -> None:
        if self.returncode:
            logger.error(
                f"Process exited with code {self.returncode}: {self.stderr_text.strip()[:500]}"
            )
            raise ProcessExitError(self.returncode, self.stderr_text, self.signal_name)


class SubprocessStreamSupervisor:
    """Runs external commands under startup/idle watchdogs and cancellation."""

    async def stream_jsonl(self, spec: SubprocessSpec) -> AsyncIterator[Any]:
        """
        Yield one parsed JSON value per stdout line, in order.

        Blank and undecodable lines are skipped. Exit code 0 with no lines
        yields nothing.

        Raises:
            SpawnError: command could not be started
            StartupTimeoutError / IdleTimeoutError: watchdog fired
            ExecutionCancelledError: cancellation handle fired
            ProcessExitError: non-zero exit
        """
        run = _SupervisedRun(spec)
        async for line in run.lines():
            stripped = line.strip()
            if not stripped:
                continue
            try:
                value = json.loads(stripped)
            except (json.JSONDecodeError, ValueError):
                logger.debug(f"Skipping undecodable JSONL line: {stripped[:200]}")
                continue
            yield value
        run.raise_for_exit()

    async def run_text(
        self,
        spec: SubprocessSpec,
        session_id: Optional[str] = None,
    ) -> List[CanonicalMessage]:
        """
        Capture all stdout and convert it to canonical messages at exit.

        Exit 0 with output gives one assistant and one result message.
        Otherwise a single error message carries stderr, or a missing-output
        description when there was no stderr either.
        """
        session_id = session_id or new_session_id()
        run = _SupervisedRun(spec)
        stdout_lines = [line async for line in run.lines()]
        stdout = "\n".join(stdout_lines)
        logger.info(f"Process exited with code {run.returncode} (session: {session_id})")

        if run.returncode == 0 and stdout.strip():
            return text_output_to_messages(stdout, session_id)
        if run.stderr_text.strip():
            return [ErrorMessage(error=run.stderr_text.strip(), session_id=session_id)]
        return [ErrorMessage(error=str(MissingOutputError(run.returncode)), session_id=session_id)]
