"""Interactive and non-interactive command execution inside a container.

One exec runs through: create -> attach -> (tty) initial resize -> concurrent
stdin pump, output pump and resize forwarding -> inspect exit code.

Interactive mode is selected when the caller's stdin is a terminal. The local
terminal is put into raw mode for the duration of the exec and restored on
every exit path. Non-interactive mode demultiplexes the remote stdout and
stderr into separate local streams.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import select
import signal
import sys
import termios
import threading
import tty
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import BinaryIO

from iso_env.config import HELPER_MOUNT
from iso_env.engine.protocol import STDERR, ExecStream, ResourceClient
from iso_env.errors import ConfigurationError, EngineError, ExecCancelledError

logger = logging.getLogger(__name__)

_TERM_ALIASES = {"xterm-ghostty": "xterm-256color"}

# Exit codes can lag the end of the output stream by a few milliseconds
_INSPECT_ATTEMPTS = 20
_INSPECT_DELAY = 0.05

_OUTPUT_DRAIN_TIMEOUT = 2.0
_STDIN_JOIN_TIMEOUT = 1.0


def wrap_command(command: list[str]) -> list[str]:
    """Run the command through the in-container supervisor (hooks, readiness, user)."""
    return [HELPER_MOUNT, "run", "--", *command]


def normalize_term(term: str | None) -> str | None:
    if not term:
        return None
    return _TERM_ALIASES.get(term, term)


def parse_env_overrides(pairs: list[str] | None) -> dict[str, str]:
    """Parse KEY=VALUE strings. Later duplicates win.

    Raises:
        ConfigurationError: If an entry has no "=" or an empty key.
    """
    result: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"Invalid environment override {pair!r}, expected KEY=VALUE")
        result[key] = value
    return result


def build_exec_env(
    fixed: Mapping[str, str],
    project: Mapping[str, str] | None = None,
    overrides: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Merge exec environment layers, later wins: fixed < project < overrides."""
    env = dict(fixed)
    env.update(project or {})
    env.update(overrides or {})
    return env


def fixed_exec_env(
    workdir: str,
    session: str,
    uid: int,
    gid: int,
    term: str | None,
    interactive: bool,
    services: str = "",
) -> dict[str, str]:
    """Variables every exec receives. TERM is only passed to interactive execs."""
    env = {
        "ISO_WORKDIR": workdir,
        "ISO_SESSION": session,
        "ISO_UID": str(uid),
        "ISO_GID": str(gid),
    }
    if services:
        env["ISO_SERVICES"] = services
    if interactive and (normalized := normalize_term(term)):
        env["TERM"] = normalized
    return env


@dataclass
class ExecRequest:
    """One command to run in a running container."""

    container_id: str
    command: list[str]
    environment: dict[str, str] = field(default_factory=dict)
    workdir: str | None = None
    tty: bool | None = None  # None: detect from stdin


@contextlib.contextmanager
def raw_terminal(fd: int) -> Iterator[None]:
    """Put a terminal into raw mode and always restore the saved attributes."""
    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def stdin_is_tty(stream: BinaryIO) -> bool:
    try:
        return os.isatty(stream.fileno())
    except (OSError, ValueError):
        return False


class ExecProxy:
    """Proxies one process's stdio to an exec inside a container."""

    def __init__(
        self,
        client: ResourceClient,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self._client = client
        self._stdin = stdin if stdin is not None else sys.stdin.buffer
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._stderr = stderr if stderr is not None else sys.stderr.buffer

    def is_interactive(self, request: ExecRequest) -> bool:
        if request.tty is not None:
            return request.tty
        return stdin_is_tty(self._stdin)

    async def run(self, request: ExecRequest, cancel: asyncio.Event | None = None) -> int:
        """Run the request and return the remote exit code.

        Raises:
            ExecCancelledError: If cancel is set before the output ends.
            EngineError: If the exec cannot be created, attached or inspected.
        """
        interactive = self.is_interactive(request)
        exec_id = await asyncio.to_thread(
            self._client.exec_create,
            request.container_id,
            request.command,
            request.environment,
            request.workdir,
            interactive,
        )
        stream = await asyncio.to_thread(self._client.exec_attach, exec_id, interactive)
        logger.debug(f"Attached to exec {exec_id[:12]} (tty={interactive})")

        try:
            if interactive:
                with raw_terminal(self._stdin.fileno()):
                    await self._proxy(exec_id, stream, interactive, cancel)
            else:
                await self._proxy(exec_id, stream, interactive, cancel)
        finally:
            stream.close()

        return await self._exit_code(exec_id)

    async def _proxy(
        self,
        exec_id: str,
        stream: ExecStream,
        interactive: bool,
        cancel: asyncio.Event | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        resize_installed = False
        if interactive:
            await asyncio.to_thread(self._resize, exec_id)
            try:
                loop.add_signal_handler(signal.SIGWINCH, self._on_winch, loop, exec_id)
                resize_installed = True
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug(f"Terminal resize forwarding unavailable: {e}")

        stop_read, stop_write = os.pipe()
        stdin_pump = threading.Thread(
            target=self._pump_stdin,
            args=(stream, stop_read),
            name=f"exec-stdin-{exec_id[:12]}",
            daemon=True,
        )
        stdin_pump.start()
        output = asyncio.ensure_future(asyncio.to_thread(self._pump_output, stream))

        try:
            if cancel is None:
                await output
                return
            cancelled = asyncio.ensure_future(cancel.wait())
            try:
                done, _ = await asyncio.wait({output, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                cancelled.cancel()
            if output not in done:
                # Shutting the socket down ends the reader blocked in frames()
                stream.close()
                await self._collect(output)
                raise ExecCancelledError(exec_id)
            output.result()
        except OSError as e:
            raise EngineError("read exec output", exec_id, e) from e
        finally:
            if resize_installed:
                loop.remove_signal_handler(signal.SIGWINCH)
            # Wake the stdin reader so a later exec in this process gets every keystroke
            os.write(stop_write, b"\0")
            await asyncio.to_thread(stdin_pump.join, _STDIN_JOIN_TIMEOUT)
            os.close(stop_write)
            if stdin_pump.is_alive():
                logger.debug("stdin forwarding still blocked after exec ended")
            else:
                os.close(stop_read)

    async def _collect(self, output: asyncio.Future[None]) -> None:
        done, _ = await asyncio.wait({output}, timeout=_OUTPUT_DRAIN_TIMEOUT)
        if not done:
            logger.warning("Exec output reader did not stop after cancellation")
            return
        if (error := output.exception()) is not None:
            logger.debug(f"Exec output reader ended with {error!r} after cancellation")

    def _on_winch(self, loop: asyncio.AbstractEventLoop, exec_id: str) -> None:
        loop.run_in_executor(None, self._resize, exec_id)

    def _resize(self, exec_id: str) -> None:
        try:
            size = os.get_terminal_size(self._stdin.fileno())
        except OSError as e:
            logger.debug(f"Cannot read terminal size: {e}")
            return
        try:
            self._client.exec_resize(exec_id, height=size.lines, width=size.columns)
        except EngineError as e:
            logger.warning(f"Failed to resize terminal: {e}")

    def _pump_stdin(self, stream: ExecStream, stop_fd: int) -> None:
        try:
            fd = self._stdin.fileno()
            while True:
                ready, _, _ = select.select([fd, stop_fd], [], [])
                if stop_fd in ready:
                    return
                data = os.read(fd, 4096)
                if not data:
                    break
                stream.send(data)
        except (OSError, ValueError) as e:
            logger.debug(f"stdin forwarding stopped: {e}")
            return
        # EOF on local stdin becomes EOF for the remote process
        stream.close_write()

    def _pump_output(self, stream: ExecStream) -> None:
        for stream_id, data in stream.frames():
            target = self._stderr if stream_id == STDERR else self._stdout
            target.write(data)
            target.flush()

    async def _exit_code(self, exec_id: str) -> int:
        for _ in range(_INSPECT_ATTEMPTS):
            code = await asyncio.to_thread(self._client.exec_inspect, exec_id)
            if code is not None:
                return code
            await asyncio.sleep(_INSPECT_DELAY)
        raise EngineError("inspect exec", exec_id, "exit code not available")
