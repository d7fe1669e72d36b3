"""Subprocess transport: a plugin running as a child process.

The plugin reads one JSON envelope per line on stdin and writes one per
line on stdout. Anything it writes on stderr is logged.
"""

import asyncio
import os
from typing import Awaitable, Callable, Dict, Optional, Sequence

from ..core.logger import get_logger
from ..protocol.errors import TransportClosed
from .base import PluginTransport

logger = get_logger(__name__)

DEFAULT_READ_LIMIT = 10 * 1024 * 1024  # 10MB


class SubprocessTransport(PluginTransport):
    """Transport owning a plugin process and its stdio pipes."""

    def __init__(
        self,
        origin: str,
        command: Sequence[str],
        on_message: Callable[[str, str], Awaitable[None]],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        read_limit: int = DEFAULT_READ_LIMIT,
    ):
        """Initialize subprocess transport.

        Args:
            origin: Origin of the plugin, usually ``stdio://<title>``
            command: Program and arguments to run
            on_message: Called with ``(origin, line)`` for each stdout line,
                typically ``broker.on_message``
            cwd: Working directory of the process
            env: Extra environment variables
            read_limit: Longest accepted stdout line in bytes
        """
        super().__init__(origin)
        if not command:
            raise ValueError("Subprocess transport needs a command")
        self.command = list(command)
        self.on_message = on_message
        self.cwd = cwd
        self.env = env
        self.read_limit = read_limit

        self.process: Optional[asyncio.subprocess.Process] = None
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

        self.disconnect_callback: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def is_open(self) -> bool:
        return (
            super().is_open
            and self.process is not None
            and self.process.returncode is None
        )

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    async def start(self) -> None:
        """Start the plugin process."""
        if self.process is not None and self.process.returncode is None:
            logger.warning("Plugin process already running", origin=self.origin, pid=self.pid)
            return

        env = None
        if self.env:
            env = {**os.environ, **self.env}

        logger.info("Starting plugin process", origin=self.origin, command=self.command[0])
        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
            limit=self.read_limit,
        )
        self._closed = False
        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        logger.info("Plugin process started", origin=self.origin, pid=self.process.pid)

    async def _read_stdout(self) -> None:
        """Feed stdout lines to the broker until the process ends."""
        try:
            while True:
                try:
                    line = await self.process.stdout.readline()
                except ValueError:
                    # Line longer than read_limit; the stream cannot resync
                    logger.warning("Oversized line from plugin, closing", origin=self.origin)
                    break
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if text:
                    await self.on_message(self.origin, text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Plugin output reader error", origin=self.origin, error=str(e), exc_info=True)
        finally:
            logger.info("Plugin output closed", origin=self.origin)
            if self.disconnect_callback:
                await self.disconnect_callback()

    async def _read_stderr(self) -> None:
        """Log whatever the plugin writes on stderr."""
        try:
            while True:
                line = await self.process.stderr.readline()
                if not line:
                    break
                logger.info(
                    f"[Plugin:{self.origin}] {line.decode('utf-8', errors='replace').rstrip()}"
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Plugin stderr reader stopped", origin=self.origin, error=str(e))

    async def _deliver(self, payload: str) -> None:
        if not self.is_open or self.process.stdin is None:
            raise TransportClosed(f"plugin process for {self.origin} is not running")
        async with self._write_lock:
            try:
                self.process.stdin.write(payload.encode("utf-8") + b"\n")
                await self.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportClosed(f"plugin process for {self.origin} went away") from e

    async def close(self, timeout: float = 3.0) -> None:
        """Terminate the process and stop the readers."""
        await super().close()

        process = self.process
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=timeout)
                    logger.info("Plugin process terminated gracefully", origin=self.origin)
                except asyncio.TimeoutError:
                    logger.warning("Plugin process didn't terminate, killing it", origin=self.origin)
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                logger.debug("Plugin process already terminated", origin=self.origin)

        for task in (self._stdout_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._stdout_task = None
        self._stderr_task = None
