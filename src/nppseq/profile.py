#!/usr/bin/env python3
"""
Entrypoint profile loading.

A profile describes one container entrypoint declaratively:

    [service]       name, console tag
    [env]           required variable names; [env.defaults] for defaults
    [[users]]       system users to ensure (name, uid, gid)
    [[memberships]] supplementary group memberships to ensure
    [[dependencies]] readiness probes (kind = tcp | mysql | http)
    [[ownership]]   subtrees to re-own (path, owner, group, best_effort)
    [[permissions]] subtrees where "others" must have no access
    [plugin]        optional plugin self-update
    [marker]        optional liveness marker port
    [banner]        optional Jinja2 banner template
    [launch]        command to exec (trailing CLI args are appended)

Loading happens in two phases. ``load_profile_document`` only parses (and
renders ``*.toml.j2`` templates); ``resolve_profile`` runs after environment
validation and turns ``$VAR`` placeholders into concrete typed targets.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Mapping, Optional

from .config_constants import (
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TAG,
    OTHERS_MASK,
    PROFILES_PACKAGE_DIR,
    TEMPLATES_PACKAGE_DIR,
    is_profile_template,
    profile_filenames,
)
from .errors import ConfigurationError
from .plugin_update import PluginSettings
from .prober import (
    Dependency,
    RetryPolicy,
    http_dependency,
    mysql_dependency,
    tcp_dependency,
)
from .reconciler import (
    GroupMembership,
    OwnershipTarget,
    PermissionTarget,
    SystemUser,
    resolve_gid,
    resolve_uid,
)
from .validator import (
    RequiredVariable,
    build_required_variables,
    expand_tree,
    require_int,
)


logger = logging.getLogger(__name__)

SECRET_KEY_MARKERS = ('password', 'secret', 'token')


@dataclass
class ProfileDocument:
    """Parsed, not yet resolved profile."""

    source: str
    data: dict

    @property
    def name(self) -> str:
        return str(self.data.get('service', {}).get('name') or Path(self.source).name.split('.')[0])

    @property
    def tag(self) -> str:
        return str(self.data.get('service', {}).get('tag') or DEFAULT_TAG)

    @property
    def required_variables(self) -> list[RequiredVariable]:
        env_section = self.data.get('env', {})
        required = env_section.get('required', [])
        defaults = env_section.get('defaults', {})
        if not isinstance(required, list) or not isinstance(defaults, dict):
            raise ConfigurationError(f"[env] in {self.source} must hold a 'required' list and a 'defaults' table")
        return build_required_variables([str(name) for name in required], defaults)


@dataclass
class Profile:
    """Fully resolved profile: every placeholder expanded, every value typed."""

    name: str
    tag: str
    users: list[SystemUser] = field(default_factory=list)
    memberships: list[GroupMembership] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    ownership: list[OwnershipTarget] = field(default_factory=list)
    permissions: list[PermissionTarget] = field(default_factory=list)
    plugin: Optional[PluginSettings] = None
    marker_port: Optional[int] = None
    banner: Optional[str] = None
    launch: list[str] = field(default_factory=list)
    resolved: dict = field(default_factory=dict)


def parse_toml_string(toml_text: str, source: str) -> dict:
    """
    Parse TOML from a string with fail-fast error context.
    """
    try:
        return tomllib.loads(toml_text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Failed to parse profile {source}: {e}") from e


def render_jinja2_text(template_text: str, context: dict, source: str) -> str:
    """Render Jinja2 text; undefined variables are errors."""
    from jinja2 import StrictUndefined, Template, TemplateError

    try:
        return Template(template_text, undefined=StrictUndefined, keep_trailing_newline=True).render(**context)
    except TemplateError as e:
        raise ConfigurationError(f"Failed to render template {source}: {e}") from e


def locate_profile(reference: str) -> tuple[str, str]:
    """
    Find a profile by path or built-in name.

    Returns:
        (source description, file name) - the file name decides whether the
        text is rendered with Jinja2.
    """
    candidate = Path(reference)
    if candidate.is_file():
        return str(candidate), candidate.name

    package_dir = resources.files('nppseq').joinpath(PROFILES_PACKAGE_DIR)
    for filename in profile_filenames(reference):
        if package_dir.joinpath(filename).is_file():
            return f"builtin:{filename}", filename

    raise ConfigurationError(f"Profile not found: {reference} (neither a file nor a built-in profile)")


def _read_profile_text(source: str, filename: str) -> str:
    if source.startswith("builtin:"):
        return resources.files('nppseq').joinpath(PROFILES_PACKAGE_DIR, filename).read_text(encoding='utf-8')
    return Path(source).read_text(encoding='utf-8')


def load_profile_document(reference: str, environ: Mapping[str, str]) -> ProfileDocument:
    """
    Phase 1: read a profile and parse it. ``*.toml.j2`` profiles are rendered
    with ``env`` (the raw process environment) in the template context.
    """
    source, filename = locate_profile(reference)
    text = _read_profile_text(source, filename)

    if is_profile_template(filename):
        logger.debug(f"Rendering profile template: {source}")
        text = render_jinja2_text(text, {"env": dict(environ)}, source)

    data = parse_toml_string(text, source)
    if not isinstance(data.get('service'), dict):
        raise ConfigurationError(f"Profile {source} has no [service] table")

    logger.debug(f"Loaded profile {source}: sections={list(data.keys())}")
    return ProfileDocument(source=source, data=data)


def _policy(entry: dict, field_name: str) -> RetryPolicy:
    retries = require_int(entry.get('retries', DEFAULT_MAX_ATTEMPTS), f"{field_name}.retries")
    try:
        interval = float(entry.get('interval', DEFAULT_INTERVAL_SECONDS))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{field_name}.interval must be a number") from e
    return RetryPolicy(max_attempts=retries, interval=interval)


def _require(entry: dict, key: str, field_name: str) -> Any:
    value = entry.get(key)
    if value is None or value == "":
        raise ConfigurationError(f"{field_name}.{key} is required")
    return value


def build_dependency(entry: dict, field_name: str) -> Dependency:
    kind = entry.get('kind', 'tcp')
    name = str(entry.get('name') or field_name)
    policy = _policy(entry, field_name)

    if kind == 'tcp':
        host = str(_require(entry, 'host', field_name))
        port = require_int(_require(entry, 'port', field_name), f"{field_name}.port")
        return tcp_dependency(name, host, port, policy)
    if kind == 'mysql':
        return mysql_dependency(
            name,
            str(_require(entry, 'endpoint', field_name)),
            str(_require(entry, 'user', field_name)),
            str(entry.get('password', '')),
            str(_require(entry, 'database', field_name)),
            policy,
        )
    if kind == 'http':
        return http_dependency(name, str(_require(entry, 'url', field_name)), policy)

    raise ConfigurationError(f"{field_name}.kind must be tcp, mysql or http (got {kind!r})")


def _entries(data: dict, key: str) -> list[dict]:
    entries = data.get(key, [])
    if not isinstance(entries, list) or not all(isinstance(entry, dict) for entry in entries):
        raise ConfigurationError(f"[[{key}]] must be an array of tables")
    return entries


def resolve_profile(document: ProfileDocument, environ: Mapping[str, str]) -> Profile:
    """
    Phase 2: expand placeholders from the validated environment and build
    typed targets. Raises ConfigurationError; performs no side effects.
    """
    data = {key: value for key, value in document.data.items() if key != 'env'}
    resolved = expand_tree(data, environ, document.name)

    profile = Profile(name=document.name, tag=document.tag, resolved=resolved)

    for index, entry in enumerate(_entries(resolved, 'users')):
        field_name = f"users[{index}]"
        profile.users.append(SystemUser(
            name=str(_require(entry, 'name', field_name)),
            uid=require_int(_require(entry, 'uid', field_name), f"{field_name}.uid"),
            gid=require_int(_require(entry, 'gid', field_name), f"{field_name}.gid"),
            **{key: str(entry[key]) for key in ('comment', 'shell') if key in entry},
        ))

    for index, entry in enumerate(_entries(resolved, 'memberships')):
        field_name = f"memberships[{index}]"
        profile.memberships.append(GroupMembership(
            user=str(_require(entry, 'user', field_name)),
            group=str(_require(entry, 'group', field_name)),
        ))

    for index, entry in enumerate(_entries(resolved, 'dependencies')):
        profile.dependencies.append(build_dependency(entry, f"dependencies[{index}]"))

    for index, entry in enumerate(_entries(resolved, 'ownership')):
        field_name = f"ownership[{index}]"
        best_effort = bool(entry.get('best_effort', False))
        for path in _paths(entry, field_name):
            profile.ownership.append(OwnershipTarget(
                path=path,
                uid=resolve_uid(_require(entry, 'owner', field_name)),
                gid=resolve_gid(_require(entry, 'group', field_name)),
                best_effort=best_effort,
            ))

    for index, entry in enumerate(_entries(resolved, 'permissions')):
        field_name = f"permissions[{index}]"
        others_mask = entry.get('others_mask', OTHERS_MASK)
        if isinstance(others_mask, str):
            others_mask = int(others_mask, 8)
        for path in _paths(entry, field_name):
            profile.permissions.append(PermissionTarget(
                path=path,
                others_mask=others_mask,
                best_effort=bool(entry.get('best_effort', False)),
            ))

    plugin = resolved.get('plugin')
    if isinstance(plugin, dict) and plugin.get('enabled', True):
        profile.plugin = PluginSettings(
            path=Path(str(_require(plugin, 'path', 'plugin'))),
            main_file=str(_require(plugin, 'main_file', 'plugin')),
            repository=str(_require(plugin, 'repository', 'plugin')),
            uid=require_int(plugin['uid'], 'plugin.uid') if 'uid' in plugin else None,
            gid=require_int(plugin['gid'], 'plugin.gid') if 'gid' in plugin else None,
        )

    marker = resolved.get('marker')
    if isinstance(marker, dict) and 'port' in marker:
        profile.marker_port = require_int(marker['port'], 'marker.port')

    banner = resolved.get('banner')
    if isinstance(banner, dict) and banner.get('template'):
        profile.banner = str(banner['template'])

    command = resolved.get('launch', {}).get('command', [])
    if isinstance(command, str):
        command = [command]
    profile.launch = [str(part) for part in command]

    return profile


def _paths(entry: dict, field_name: str) -> list[Path]:
    paths = entry.get('paths')
    if paths is None:
        paths = [_require(entry, 'path', field_name)]
    if not isinstance(paths, list) or not paths:
        raise ConfigurationError(f"{field_name}.paths must be a non-empty list")
    return [Path(str(path)) for path in paths]


def render_banner(template: str, environ: Mapping[str, str], color: bool) -> str:
    """Render a banner template (built-in name or file path) with env + color codes."""
    from . import console

    candidate = Path(template)
    if candidate.is_file():
        text, source = candidate.read_text(encoding='utf-8'), str(candidate)
    else:
        resource = resources.files('nppseq').joinpath(TEMPLATES_PACKAGE_DIR, template)
        if not resource.is_file():
            raise ConfigurationError(f"Banner template not found: {template}")
        text, source = resource.read_text(encoding='utf-8'), f"builtin:{template}"

    codes = {
        name: (getattr(console, name) if color else '')
        for name in ('RESET', 'BOLD', 'GREEN', 'YELLOW', 'RED', 'CYAN', 'LIGHT_CYAN')
    }
    return render_jinja2_text(text, {"env": dict(environ), "c": codes}, source)


def redact(value: Any, key: str = '') -> Any:
    """Copy of a resolved profile with secret-looking values masked."""
    if isinstance(value, dict):
        return {k: redact(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(item, key) for item in value]
    if any(marker in key.lower() for marker in SECRET_KEY_MARKERS) and value:
        return '***'
    return value


def write_resolved_profile(output_path: Path, profile: Profile) -> None:
    """
    Write the resolved profile as TOML using tomli_w (secrets masked).
    """
    import tomli_w

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'wb') as f:
        tomli_w.dump(redact(profile.resolved), f)
