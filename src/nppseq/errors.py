#!/usr/bin/env python3
"""
Fatal error types raised by the sequencer stages.

Each stage either returns normally or raises one of these; ``engine.main``
turns them into a labelled fatal line and exit status 1.
"""

from __future__ import annotations


class SequencerError(RuntimeError):
    """Base class for fatal sequencer failures."""

    label = "Sequencer failure"


class ConfigurationError(SequencerError):
    """Required configuration is missing, empty or malformed. Never retried."""

    label = "Configuration error"


class DependencyTimeoutError(SequencerError):
    """A dependency did not become ready within its retry budget."""

    label = "Dependency timeout"

    def __init__(self, dependency: str, attempts: int, interval: float) -> None:
        self.dependency = dependency
        self.attempts = attempts
        self.interval = interval
        super().__init__(
            f"{dependency} is not responding after {attempts} attempt(s) "
            f"({interval:g}s interval)"
        )


class ReconciliationError(SequencerError):
    """Ownership, permission or account reconciliation failed."""

    label = "Reconciliation error"


class LaunchError(SequencerError):
    """The delegated entrypoint could not be executed."""

    label = "Launch error"


class PluginUpdateError(SequencerError):
    """Fetching or installing a plugin release failed. Never fatal for startup."""

    label = "Plugin update error"
