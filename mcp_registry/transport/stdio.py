"""Process-pipe transport.

Launches a capability server as a child process and exchanges line-delimited
JSON-RPC messages over its stdin/stdout.  Stderr is captured for diagnostics
only.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from collections import deque
from typing import Any

from mcp_registry.core.errors import TransportError
from mcp_registry.models.schemas import ServerConfig
from mcp_registry.transport.base import CloseHandler, MessageHandler, Transport

logger = logging.getLogger(__name__)

# Large results (e.g. base64 payloads) arrive as single lines.
STREAM_LIMIT = 16 * 1024 * 1024
TERMINATE_TIMEOUT = 5.0
STDERR_TAIL_LINES = 50


class ProcessTransport(Transport):
    """Transport over the standard pipes of one child process.

    Args:
        config: Server definition providing command, args, and env overrides.
    """

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._closing = False
        self._on_message: MessageHandler | None = None
        self._on_close: CloseHandler | None = None
        self.stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    @property
    def is_alive(self) -> bool:
        return (
            not self._closing
            and self._process is not None
            and self._process.returncode is None
            and self._process.stdin is not None
            and not self._process.stdin.is_closing()
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(self, on_message: MessageHandler, on_close: CloseHandler) -> None:
        """Spawn the server process and start the stdout/stderr readers.

        Raises:
            TransportError: If the process cannot be spawned.
        """
        if self._process is not None:
            raise TransportError(self.config.name, "transport already started")

        self._on_message = on_message
        self._on_close = on_close
        env = {**os.environ, **self.config.env}

        logger.info("Starting server %s: %s %s", self.config.name, self.config.command, " ".join(self.config.args))
        try:
            process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise TransportError(self.config.name, f"failed to spawn '{self.config.command}': {exc}") from exc

        if process.stdout is None or process.stderr is None:
            process.kill()
            await process.wait()
            raise TransportError(self.config.name, "child process has no output pipes")

        self._process = process
        logger.info("Server %s started (pid=%d)", self.config.name, process.pid)
        self._reader_task = asyncio.create_task(
            self._read_stdout(process, process.stdout), name=f"{self.config.name}-stdout"
        )
        self._stderr_task = asyncio.create_task(self._read_stderr(process.stderr), name=f"{self.config.name}-stderr")

    async def send(self, message: dict[str, Any]) -> None:
        """Write *message* as one JSON line. Writes are serialized."""
        if not self.is_alive:
            raise TransportError(self.config.name, "no live process")

        data = (json.dumps(message) + "\n").encode("utf-8")
        async with self._write_lock:
            process = self._process
            if process is None or process.stdin is None:
                raise TransportError(self.config.name, "no live process")
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise TransportError(self.config.name, f"write failed: {exc}") from exc
        logger.debug("Sent %s to %s (id=%s)", message.get("method"), self.config.name, message.get("id"))

    async def close(self) -> None:
        """Terminate the process, escalating to kill if it does not exit."""
        self._closing = True
        process, self._process = self._process, None

        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT)
            except TimeoutError:
                logger.warning("Server %s did not terminate, killing", self.config.name)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reader_task = None
        self._stderr_task = None
        logger.info("Transport for %s closed", self.config.name)

    # ── Readers ──────────────────────────────────────────────────────

    async def _read_stdout(self, process: asyncio.subprocess.Process, stdout: asyncio.StreamReader) -> None:
        try:
            while True:
                try:
                    line = await stdout.readline()
                except ValueError as exc:
                    # readline() has already discarded the oversized chunk.
                    logger.warning("Dropping oversized line from %s: %s", self.config.name, exc)
                    continue
                if not line:
                    break
                self._dispatch_line(line)
        finally:
            if not self._closing:
                await self._notify_exit(process)

    def _dispatch_line(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning("Dropping malformed line from %s: %s (%.200s)", self.config.name, exc, text)
            return
        if not isinstance(message, dict):
            logger.warning("Dropping non-object message from %s: %.200s", self.config.name, text)
            return
        if self._on_message is not None:
            self._on_message(message)

    async def _read_stderr(self, stderr: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            self.stderr_tail.append(text)
            logger.debug("[%s stderr] %s", self.config.name, text)

    async def _notify_exit(self, process: asyncio.subprocess.Process) -> None:
        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT)
        except TimeoutError:
            # Stdout closed but the process lingers; stop it so it cannot be half-alive.
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            returncode = await process.wait()

        if self._closing:
            return
        self._closing = True
        self._process = None
        logger.info(
            "Server %s exited with code %s%s",
            self.config.name,
            returncode,
            f"; stderr tail: {self.stderr_tail[-1]}" if self.stderr_tail else "",
        )
        if self._on_close is not None:
            self._on_close(returncode)
