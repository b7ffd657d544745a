#!/usr/bin/env python3
"""
Profile and runtime constants for the NPP sequencer.

CRITICAL: This is the SINGLE SOURCE OF TRUTH for profile filenames, built-in
profile names and sequencer environment variables. Modules import from here
instead of hardcoding strings.

Naming Convention:
- <name>.toml     = Static profile (placeholders resolved from the environment)
- <name>.toml.j2  = Jinja2 profile template (rendered before TOML parsing)
"""

# ============================================================================
# Profile files (CANONICAL - DO NOT HARDCODE)
# ============================================================================

PROFILE_SUFFIX = '.toml'
PROFILE_TEMPLATE_SUFFIX = '.toml.j2'

# Package sub-directories holding built-in data files
PROFILES_PACKAGE_DIR = 'profiles'
TEMPLATES_PACKAGE_DIR = 'templates'

# Built-in profiles, one per original container entrypoint
BUILTIN_PROFILES = (
    'wordpress',
    'nginx',
    'mysql',
    'phpmyadmin',
    'wp-post',
)

# ============================================================================
# Sequencer environment variables
# ============================================================================

ENV_PROFILE = 'NPP_PROFILE'
ENV_LOG_LEVEL = 'NPP_LOG_LEVEL'
ENV_NO_COLOR = 'NO_COLOR'
ENV_SKIP_PLUGIN_UPDATE = 'NPP_SKIP_PLUGIN_UPDATE'

# ============================================================================
# Defaults
# ============================================================================

DEFAULT_LOG_LEVEL = 'INFO'
DEFAULT_TAG = 'NPP'

# Readiness probing
DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_CONNECT_TIMEOUT = 3.0
DEFAULT_MYSQL_PORT = 3306

# Reconciliation: "others" get no access at all
OTHERS_MASK = 0o007

# Liveness marker listener
MARKER_HOST = '127.0.0.1'
DEFAULT_MARKER_PORT = 9999

# Plugin self-update
PLUGIN_BRANCH_PREFIX = 'v'
PLUGIN_TEXT_SUFFIXES = ('.php', '.js', '.css', '.txt', '.md', '.json', '.html', '.pot', '.po', '.svg')


def profile_filenames(name: str) -> list[str]:
    """
    Candidate filenames for a profile name, template first.

    Examples:
        >>> profile_filenames('nginx')
        ['nginx.toml.j2', 'nginx.toml']
    """
    return [f"{name}{PROFILE_TEMPLATE_SUFFIX}", f"{name}{PROFILE_SUFFIX}"]


def is_profile_template(filename: str) -> bool:
    """Return True when the profile must be rendered with Jinja2 first."""
    return filename.endswith(PROFILE_TEMPLATE_SUFFIX)


def is_truthy(value: str | None) -> bool:
    """Interpret an environment toggle ("1", "true", "yes", "on")."""
    return str(value or '').strip().lower() in {'1', 'true', 'yes', 'on'}
