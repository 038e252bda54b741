"""In-container supervisor.

Mounted read-only at /iso inside every container and used in two ways:

    /iso init            PID 1 of the container: reaps zombies until SIGTERM/SIGINT
    /iso run -- CMD...   waits for services, runs hooks around CMD, exits with CMD's code

Environment:
    ISO_WORKDIR   project mount point, hooks live in $ISO_WORKDIR/.iso/
    ISO_SERVICES  comma-separated "host:port" list to wait for
    ISO_UID/GID   host user to run CMD as when the supervisor runs as root
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import socket
import subprocess
import sys
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from iso_env.config import DEFAULT_WORKDIR, DESCRIPTOR_DIR, RuntimeSettings
from iso_env.errors import ConfigurationError, IsoError, ReadinessTimeoutError
from iso_env.logging_config import configure_logging

logger = logging.getLogger(__name__)

READINESS_ATTEMPTS = 30
READINESS_DELAY = 1.0
CONNECT_TIMEOUT = 1.0

PRE_RUN_HOOK = "pre-run.sh"
POST_RUN_HOOK = "post-run.sh"


def parse_services(spec: str) -> list[tuple[str, int]]:
    """Parse "host:port,host:port".

    Raises:
        ConfigurationError: If an entry is not host:port.
    """
    targets = []
    for entry in filter(None, (e.strip() for e in spec.split(","))):
        host, sep, port = entry.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ConfigurationError(f"Invalid service spec {entry!r}, expected service:port")
        targets.append((host, int(port)))
    return targets


def wait_for_services(
    spec: str,
    attempts: int = READINESS_ATTEMPTS,
    delay: float = READINESS_DELAY,
    connect_timeout: float = CONNECT_TIMEOUT,
) -> None:
    """Block until every service accepts TCP connections.

    Raises:
        ReadinessTimeoutError: If a service is still unreachable after all attempts.
    """
    for host, port in parse_services(spec):
        logger.debug(f"Waiting for service {host}:{port}")
        for attempt in range(1, attempts + 1):
            try:
                with socket.create_connection((host, port), timeout=connect_timeout):
                    logger.debug(f"Service {host} ready")
                    break
            except OSError as e:
                if attempt == attempts:
                    raise ReadinessTimeoutError(host, attempts) from e
                time.sleep(delay)


def _run_hook(path: Path) -> int:
    return subprocess.run(["bash", str(path)], check=False).returncode


def _user_kwargs(environ: Mapping[str, str]) -> dict[str, Any]:
    """Drop to the host user's ids, only possible when running as root."""
    if os.geteuid() != 0:
        return {}
    uid, gid = environ.get("ISO_UID"), environ.get("ISO_GID")
    if not uid or not uid.isdigit() or uid == "0":
        return {}
    kwargs: dict[str, Any] = {"user": int(uid)}
    if gid and gid.isdigit():
        kwargs["group"] = int(gid)
        kwargs["extra_groups"] = []
    return kwargs


def run_with_hooks(command: list[str], environ: Mapping[str, str] | None = None) -> int:
    """Wait for services, run pre-hook, command and post-hook. Returns CMD's exit code.

    A failing pre-hook aborts with its own exit code; a failing post-hook is
    only logged.
    """
    if not command:
        raise ConfigurationError("No command specified")
    env = os.environ if environ is None else environ

    if services := env.get("ISO_SERVICES"):
        wait_for_services(services)

    hooks = Path(env.get("ISO_WORKDIR") or DEFAULT_WORKDIR) / DESCRIPTOR_DIR

    pre = hooks / PRE_RUN_HOOK
    if pre.is_file():
        code = _run_hook(pre)
        if code != 0:
            logger.error(f"{PRE_RUN_HOOK} exited with code {code}")
            return code

    try:
        code = subprocess.run(command, check=False, **_user_kwargs(env)).returncode
    except FileNotFoundError:
        logger.error(f"Command not found: {command[0]}")
        code = 127

    post = hooks / POST_RUN_HOOK
    if post.is_file():
        try:
            post_code = _run_hook(post)
        except OSError as e:
            logger.warning(f"Failed to execute {POST_RUN_HOOK}: {e}")
        else:
            if post_code != 0:
                logger.warning(f"{POST_RUN_HOOK} exited with code {post_code}")

    return code


def reap_zombies() -> int:
    """Collect every exited child without blocking. Returns how many were reaped."""
    reaped = 0
    while True:
        try:
            pid, _ = os.waitpid(-1, os.WNOHANG)
        except ChildProcessError:
            return reaped
        if pid == 0:
            return reaped
        reaped += 1


def run_init(poll_interval: float = 1.0, stop: threading.Event | None = None) -> None:
    """Container init loop: reap on SIGCHLD and every poll_interval, exit on SIGTERM/SIGINT."""
    stop = stop or threading.Event()

    def _exit(signum: int, _frame: object) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, exiting")
        stop.set()

    previous = {
        signal.SIGTERM: signal.signal(signal.SIGTERM, _exit),
        signal.SIGINT: signal.signal(signal.SIGINT, _exit),
        signal.SIGCHLD: signal.signal(signal.SIGCHLD, lambda _signum, _frame: reap_zombies()),
    }

    logger.info("Init process started, waiting for signals")
    try:
        while not stop.wait(poll_interval):
            reap_zombies()
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iso",
        description="In-container supervisor for iso-env sessions",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Run as the container's init process")

    run = subparsers.add_parser("run", help="Run a command with readiness wait and hooks")
    run.add_argument("argv", nargs=argparse.REMAINDER, help="Command to run, after --")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the supervisor."""
    configure_logging(debug=RuntimeSettings.from_env().debug)
    args = create_parser().parse_args(argv)

    if args.command == "init":
        run_init()
        sys.exit(0)

    command = args.argv
    if command and command[0] == "--":
        command = command[1:]
    try:
        sys.exit(run_with_hooks(command))
    except IsoError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
