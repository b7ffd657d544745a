#!/usr/bin/env python3
"""
Container health check.

Invoked periodically by the orchestrator (``HEALTHCHECK CMD nppseq-health ...``).
Healthy means the service's configuration test passes and every listed port
is bound on localhost.
"""

from __future__ import annotations

import argparse
import os
import shlex
import subprocess
import sys
from typing import Optional, Sequence

from .config_constants import MARKER_HOST
from .prober import CheckResult, check_tcp


HEALTH_TIMEOUT = float(os.getenv('NPP_HEALTH_TIMEOUT', '10'))


def check_config_test(command: Sequence[str], timeout: float = HEALTH_TIMEOUT) -> CheckResult:
    """Run a configuration test command such as ``php-fpm -t``."""
    try:
        result = subprocess.run(list(command), capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        return False, f"{command[0]} not found"
    except subprocess.TimeoutExpired:
        return False, f"{' '.join(command)} timed out after {timeout:g}s"

    if result.returncode != 0:
        details = (result.stderr or result.stdout or "").strip().splitlines()
        return False, details[-1] if details else f"{' '.join(command)} exited {result.returncode}"
    return True, f"{' '.join(command)} passed"


def run_health_check(
    config_test: Optional[Sequence[str]],
    ports: Sequence[int],
    host: str = MARKER_HOST,
) -> tuple[bool, dict]:
    """Run all checks; returns overall status and per-check results."""
    checks: dict = {}

    if config_test:
        ok, msg = check_config_test(config_test)
        checks["config"] = {"status": "ok" if ok else "failed", "detail": msg}

    for port in ports:
        ok, msg = check_tcp(host, port)
        checks[f"port_{port}"] = {"status": "ok" if ok else "failed", "detail": msg}

    failures = [name for name, result in checks.items() if result["status"] == "failed"]
    return not failures, checks


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Container health check: config test + bound listener ports',
        epilog='Example: %(prog)s --config-test "php-fpm -t" --port 9001',
    )
    parser.add_argument(
        '--config-test',
        type=shlex.split,
        default=None,
        metavar='CMD',
        help='Configuration test command (e.g. "php-fpm -t" or "nginx -t")'
    )
    parser.add_argument(
        '--port',
        dest='ports',
        type=int,
        action='append',
        default=[],
        metavar='PORT',
        help='Port that must be bound on localhost (repeatable)'
    )
    parser.add_argument(
        '--host',
        default=MARKER_HOST,
        help=f'Host to probe ports on (default: {MARKER_HOST})'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Print each check result'
    )
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)
    if not args.config_test and not args.ports:
        print("[ERROR] Nothing to check: pass --config-test and/or --port", file=sys.stderr, flush=True)
        return 1

    healthy, checks = run_health_check(args.config_test, args.ports, host=args.host)
    if args.verbose or not healthy:
        for name, result in checks.items():
            print(f"[{result['status'].upper()}] {name}: {result['detail']}", flush=True)
    return 0 if healthy else 1


if __name__ == '__main__':
    raise SystemExit(main())
