#!/usr/bin/env python3
"""
Delegation to the service's own entrypoint, plus the liveness marker port.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from typing import Callable, Mapping, Optional, Sequence

from .config_constants import MARKER_HOST
from .errors import LaunchError
from .prober import check_tcp


logger = logging.getLogger(__name__)


def build_argv(command: Sequence[str], args: Sequence[str]) -> list[str]:
    """Target entrypoint followed by the forwarded arguments, unmodified."""
    if not command:
        raise LaunchError("No launch command configured")
    return [*command, *args]


def launch(
    command: Sequence[str],
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    execvpe: Callable[[str, list[str], dict], None] = os.execvpe,
) -> None:
    """
    Replace the current process with ``command`` + ``args``.

    This is a real exec: the service inherits our PID and receives signals
    from the container runtime directly. On success this never returns.
    ``env`` (default: the current environment) becomes the service's
    environment, so defaults applied during validation are visible to it.
    """
    argv = build_argv(command, args)
    logger.debug(f"Exec: {argv}")
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        execvpe(argv[0], argv, dict(os.environ if env is None else env))
    except OSError as e:
        raise LaunchError(f"Failed to exec {argv[0]}: {e}") from e


def hold_marker_port(port: int, host: str = MARKER_HOST) -> bool:
    """
    Make sure something listens on host:port so dependants can probe it.

    Returns False when the port was already bound (nothing started), True
    when a detached ``nppseq-marker`` process was spawned.
    """
    ok, _ = check_tcp(host, port, timeout=1.0)
    if ok:
        logger.debug(f"Marker port {host}:{port} already listening")
        return False

    cmd = [sys.executable, "-m", "nppseq.marker", "--host", host, "--port", str(port)]
    logger.debug(f"Spawning marker listener: {' '.join(cmd)}")
    try:
        subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
        )
    except OSError as e:
        raise LaunchError(f"Failed to start marker listener on port {port}: {e}") from e
    return True
