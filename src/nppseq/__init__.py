"""
NPP provisioning sequencer.

Runs container entrypoint profiles through one pipeline:
validate environment -> wait for dependencies -> reconcile state -> exec service.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version


def _installed_version() -> str:
    try:
        return version("nppseq")
    except PackageNotFoundError:
        return "0.0.0.dev0"


__version__ = _installed_version()
