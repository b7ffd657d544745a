#!/usr/bin/env python3
"""
Environment validation and placeholder expansion.

Nothing in this module touches the network or the filesystem: validation
always runs before any other stage so a misconfigured container fails
without side effects.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from .errors import ConfigurationError


logger = logging.getLogger(__name__)

ENV_VAR_PATTERN = re.compile(r"\$(\w+)|\$\{([^}]+)\}")


@dataclass(frozen=True)
class RequiredVariable:
    name: str
    default: Optional[str] = None

    @property
    def has_default(self) -> bool:
        return self.default is not None


def build_required_variables(required: Iterable[str], defaults: Mapping[str, Any]) -> list[RequiredVariable]:
    """
    Merge the ``[env]`` required list with ``[env.defaults]``.

    Defaulted names that are not listed as required are still validated:
    a default is only ever declared for a value the service needs.
    """
    variables: list[RequiredVariable] = []
    seen: set[str] = set()

    for name in required:
        default = defaults.get(name)
        variables.append(RequiredVariable(name, None if default is None else str(default)))
        seen.add(name)

    for name, default in defaults.items():
        if name not in seen:
            variables.append(RequiredVariable(name, str(default)))

    return variables


def validate_environment(
    required: Iterable[RequiredVariable],
    environ: Mapping[str, str],
) -> dict[str, str]:
    """
    Return the environment with defaults applied, or raise ConfigurationError.

    Defaults fill keys that are unset *or empty* (shell ``:=`` semantics).
    Every missing key is named in the error, in declaration order.
    """
    resolved = dict(environ)
    missing: list[str] = []

    for variable in required:
        value = resolved.get(variable.name)
        if value is None or value == "":
            if variable.has_default:
                resolved[variable.name] = variable.default
                logger.debug(f"  Default applied: {variable.name}={variable.default}")
                continue
            missing.append(variable.name)

    if missing:
        raise ConfigurationError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return resolved


def expand_placeholders(raw_text: str, environ: Mapping[str, str], source: str) -> str:
    """
    Expand $VAR / ${VAR} from the validated environment; fail-fast on missing values.
    """
    missing: set[str] = set()

    def _replace(match: re.Match) -> str:
        var_name = match.group(1) or match.group(2)
        value = environ.get(var_name)
        if value is None or value == "":
            missing.add(var_name)
            return match.group(0)
        return value

    expanded = ENV_VAR_PATTERN.sub(_replace, raw_text)

    if missing:
        raise ConfigurationError(
            f"Missing environment values referenced by {source}: {', '.join(sorted(missing))}"
        )

    return expanded


def expand_tree(value: Any, environ: Mapping[str, str], source: str) -> Any:
    """Apply ``expand_placeholders`` to every string inside nested dicts/lists."""
    if isinstance(value, str):
        return expand_placeholders(value, environ, source)
    if isinstance(value, dict):
        return {key: expand_tree(item, environ, f"{source}.{key}") for key, item in value.items()}
    if isinstance(value, list):
        return [expand_tree(item, environ, f"{source}[{index}]") for index, item in enumerate(value)]
    return value


def require_int(value: Any, field: str) -> int:
    """Convert a profile value to int, raising ConfigurationError with the field name."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{field} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{field} must be an integer, got {value!r}") from e
