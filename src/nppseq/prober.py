#!/usr/bin/env python3
"""
Readiness probing for container dependencies.

A dependency is ready when its check returns ``(True, message)``. Probing
uses a fixed retry budget and a fixed interval; the worst-case wait is
(max_attempts - 1) x interval. Restart backoff is left to the orchestrator.
"""

from __future__ import annotations

import enum
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import mysql.connector
import requests

from .config_constants import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MYSQL_PORT,
)
from .console import CYAN, Console
from .errors import ConfigurationError


logger = logging.getLogger(__name__)

CheckResult = tuple[bool, str]
CheckFunc = Callable[[], CheckResult]


class ProbeResult(enum.Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-count, fixed-interval retry budget."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    interval: float = DEFAULT_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(f"retries must be >= 1, got {self.max_attempts}")
        if self.interval < 0:
            raise ConfigurationError(f"interval must be >= 0, got {self.interval}")

    @property
    def worst_case_seconds(self) -> float:
        return (self.max_attempts - 1) * self.interval


@dataclass(frozen=True)
class Dependency:
    name: str
    check: CheckFunc
    policy: RetryPolicy = field(default_factory=RetryPolicy)


def parse_endpoint(endpoint: str, default_port: int) -> tuple[str, int]:
    """
    Split ``host[:port]`` into host and port.

    Raises:
        ConfigurationError: Empty host, non-numeric port or extra colons.
    """
    parts = endpoint.strip().split(":")
    if not parts[0]:
        raise ConfigurationError(f"Endpoint has no host: {endpoint!r}")
    if len(parts) == 1:
        return parts[0], default_port
    if len(parts) == 2 and parts[1].isdigit():
        return parts[0], int(parts[1])
    raise ConfigurationError(f"Unknown endpoint format: {endpoint!r}")


def check_tcp(host: str, port: int, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> CheckResult:
    """Check if a TCP connection to host:port can be established."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True, f"{host}:{port} accepts connections"
    except OSError as e:
        return False, f"{host}:{port} not reachable ({e})"


def check_mysql(
    host: str,
    port: int,
    user: str,
    password: str,
    database: str,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> CheckResult:
    """Check if the database authenticates and answers ``SELECT 1``."""
    try:
        cnx = mysql.connector.connect(
            host=host,
            port=port,
            user=user,
            password=password,
            database=database,
            connection_timeout=max(1, int(timeout)),
        )
    except mysql.connector.Error as err:
        return False, f"MySQL error {err.errno}"

    try:
        cursor = cnx.cursor()
        cursor.execute("SELECT 1")
        cursor.fetchall()
        cursor.close()
        return True, f"{database}@{host}:{port} answered SELECT 1"
    except mysql.connector.Error as err:
        return False, f"MySQL query failed (error {err.errno})"
    finally:
        cnx.close()


def check_http(url: str, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> CheckResult:
    """Check if an HTTP endpoint answers with a non-error status."""
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        return False, f"{url} not reachable ({e.__class__.__name__})"
    if response.status_code >= 400:
        return False, f"{url} returned HTTP {response.status_code}"
    return True, f"{url} returned HTTP {response.status_code}"


def tcp_dependency(name: str, host: str, port: int, policy: RetryPolicy) -> Dependency:
    return Dependency(name, lambda: check_tcp(host, port), policy)


def mysql_dependency(
    name: str,
    endpoint: str,
    user: str,
    password: str,
    database: str,
    policy: RetryPolicy,
) -> Dependency:
    host, port = parse_endpoint(endpoint, DEFAULT_MYSQL_PORT)
    return Dependency(name, lambda: check_mysql(host, port, user, password, database), policy)


def http_dependency(name: str, url: str, policy: RetryPolicy) -> Dependency:
    return Dependency(name, lambda: check_http(url), policy)


def wait_until_ready(
    dependency: Dependency,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
    console: Optional[Console] = None,
) -> ProbeResult:
    """
    Poll a dependency until it is ready or the retry budget is exhausted.

    The check always runs before the sleep, so a dependency that is already
    up costs no waiting. A check that raises counts as a failed attempt.

    Args:
        dependency: What to wait for.
        policy: Overrides ``dependency.policy`` (tests inject small values).
        sleep: Blocking sleep function.
        console: Optional console for operator-visible progress lines.

    Returns:
        ProbeResult.READY after the first successful attempt,
        ProbeResult.TIMED_OUT after ``max_attempts`` failed attempts.
    """
    policy = policy or dependency.policy
    logger.debug(
        f"Waiting for {dependency.name}: {policy.max_attempts} attempt(s), {policy.interval:g}s interval "
        f"(worst case {policy.worst_case_seconds:g}s)"
    )

    for attempt in range(1, policy.max_attempts + 1):
        try:
            ok, msg = dependency.check()
        except Exception as e:
            ok, msg = False, f"error checking readiness: {e}"

        if ok:
            logger.debug(f"  [{attempt}/{policy.max_attempts}] {msg}")
            if console:
                console.success(f"The {console.hl(dependency.name)} is ready! Proceeding...")
            return ProbeResult.READY

        logger.debug(f"  [{attempt}/{policy.max_attempts}] {msg}")
        if attempt == policy.max_attempts:
            break

        if console:
            console.warn(
                f"Waiting for {console.hl(dependency.name, CYAN)} to become available... "
                f"({attempt}/{policy.max_attempts})"
            )
        sleep(policy.interval)

    return ProbeResult.TIMED_OUT
