#!/usr/bin/env python3
"""
Liveness marker listener.

Binds a TCP port and accepts (then immediately closes) connections forever.
Other containers wait on this port to know post-start work has finished.
"""

from __future__ import annotations

import argparse
import logging
import signal
import socket
import sys
from typing import Optional

from .config_constants import DEFAULT_MARKER_PORT, MARKER_HOST


logger = logging.getLogger(__name__)


def serve(host: str, port: int, max_connections: Optional[int] = None) -> None:
    """Accept connections on host:port; stop after ``max_connections`` if given."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind((host, port))
        server.listen()
        logger.info(f"Marker listening on {host}:{port}")

        served = 0
        while max_connections is None or served < max_connections:
            conn, _ = server.accept()
            conn.close()
            served += 1


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Hold a TCP port open as a liveness marker')
    parser.add_argument('--host', default=MARKER_HOST, help=f'Bind address (default: {MARKER_HOST})')
    parser.add_argument('--port', type=int, default=DEFAULT_MARKER_PORT,
                        help=f'Port to bind (default: {DEFAULT_MARKER_PORT})')
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
    try:
        serve(args.host, args.port)
    except OSError as e:
        print(f"[ERROR] Cannot hold marker port {args.host}:{args.port}: {e}", file=sys.stderr, flush=True)
        return 1
    except KeyboardInterrupt:
        return 0
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
