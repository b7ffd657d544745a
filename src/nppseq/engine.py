#!/usr/bin/env python3
"""
NPP sequencer engine.

Runs one entrypoint profile through a fixed pipeline:

1. Validate environment (fail before touching the network)
2. Wait for dependencies (bounded retries)
3. Reconcile local state (users, memberships, ownership, permissions)
4. Optional post-start work (plugin update, liveness marker, banner)
5. Exec the service's own entrypoint with the forwarded arguments

Any stage failure is fatal: one labelled FATAL line, exit status 1, and the
service is never started.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Callable, Mapping, Optional

from . import __version__
from .config_constants import (
    BUILTIN_PROFILES,
    DEFAULT_LOG_LEVEL,
    DEFAULT_TAG,
    ENV_LOG_LEVEL,
    ENV_PROFILE,
    ENV_SKIP_PLUGIN_UPDATE,
    is_truthy,
)
from .console import Console, color_enabled, configure_logging
from .errors import ConfigurationError, DependencyTimeoutError, ReconciliationError, SequencerError
from .launcher import build_argv, hold_marker_port, launch
from .plugin_update import check_and_update
from .prober import ProbeResult, wait_until_ready
from .profile import (
    Profile,
    load_profile_document,
    redact,
    render_banner,
    resolve_profile,
    write_resolved_profile,
)
from .reconciler import (
    Outcome,
    ensure_group_membership,
    ensure_ownership,
    ensure_permissions,
    ensure_system_user,
)
from .validator import validate_environment


logger = logging.getLogger(__name__)

# Options that consume the following token as their value
VALUE_OPTIONS = ('-p', '--profile', '--render-toml', '--log-level')


def split_forwarded(argv: list[str]) -> tuple[list[str], list[str]]:
    """
    Split argv into sequencer options and the forwarded command.

    Examples:
        >>> split_forwarded(['-p', 'x', 'php', '--', 'y'])
        (['-p', 'x'], ['php', '--', 'y'])
        >>> split_forwarded(['-p', 'x', '--', '-F'])
        (['-p', 'x'], ['-F'])
    """
    index = 0
    while index < len(argv):
        token = argv[index]
        if token == '--':
            return argv[:index], argv[index + 1:]
        if token in VALUE_OPTIONS:
            index += 2
        elif token.startswith('-') and token != '-':
            index += 1
        else:
            return argv[:index], argv[index:]
    return argv, []


def parse_arguments(argv: Optional[list] = None, environ: Optional[Mapping[str, str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments for the sequencer.

    The forwarded command starts after a leading ``--`` or at the first
    positional argument. Everything from there on, including any later
    ``--``, is passed to the service entrypoint verbatim.
    """
    env = os.environ if environ is None else environ
    argv, forwarded = split_forwarded(list(sys.argv[1:] if argv is None else argv))

    parser = argparse.ArgumentParser(
        prog='nppseq',
        usage='%(prog)s [options] [--] [COMMAND [ARG ...]]',
        description='NPP provisioning sequencer: validate, wait, reconcile, exec',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f'''
Built-in profiles: {', '.join(BUILTIN_PROFILES)}

Examples:
  # Container entrypoint (Dockerfile)
  ENTRYPOINT ["nppseq", "-p", "nginx", "--"]
  CMD ["nginx", "-g", "daemon off;"]

  # Show what a profile resolves to without side effects
  %(prog)s -p wordpress --dry-run --print-context

  # Write the resolved profile for inspection
  %(prog)s -p wp-post --render-toml /tmp/wp-post.resolved.toml
        '''
    )

    parser.add_argument(
        '-p', '--profile',
        default=env.get(ENV_PROFILE),
        metavar='PROFILE',
        help=f'Built-in profile name or path to a profile file (default: ${ENV_PROFILE})'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate and resolve only; no probes, no changes, no exec'
    )

    parser.add_argument(
        '--print-context',
        action='store_true',
        help='Print the resolved profile as JSON (secrets masked)'
    )

    parser.add_argument(
        '--render-toml',
        type=Path,
        default=None,
        metavar='PATH',
        help='Write the resolved profile as TOML to PATH and exit'
    )

    parser.add_argument(
        '--skip-plugin-update',
        action='store_true',
        default=is_truthy(env.get(ENV_SKIP_PLUGIN_UPDATE)),
        help=f'Skip the plugin self-update stage (default: ${ENV_SKIP_PLUGIN_UPDATE})'
    )

    parser.add_argument(
        '--log-level',
        default=env.get(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL),
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        type=str.upper,
        help=f'Diagnostic log level on stderr (default: ${ENV_LOG_LEVEL} or {DEFAULT_LOG_LEVEL})'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    args = parser.parse_args(argv)
    args.command = forwarded
    return args


def _announce(outcome: Outcome, console: Console, changed: str, unchanged: str) -> None:
    if outcome.changed:
        console.success(changed)
    else:
        console.info(unchanged)


def ensure_users(profile: Profile, console: Console) -> None:
    for user in profile.users:
        console.info(f"Checking system user {console.hl(user.name)} (UID {user.uid}, GID {user.gid})...")
        outcome = ensure_system_user(user.name, user.uid, user.gid, user.comment, user.shell)
        _announce(
            outcome, console,
            f"System user {console.hl(user.name)} is created! Proceeding...",
            f"System user {console.hl(user.name)} already exists! Skipping...",
        )

    for membership in profile.memberships:
        outcome = ensure_group_membership(membership.user, membership.group)
        _announce(
            outcome, console,
            f"User {console.hl(membership.user)} added to group {console.hl(membership.group)}.",
            f"User {console.hl(membership.user)} is already in group {console.hl(membership.group)}.",
        )


def apply_ownership(profile: Profile, console: Console) -> None:
    """
    Ownership first, permissions second. Best-effort targets (config
    directories owned by root) only warn on failure; everything else is fatal.
    """
    for target in profile.ownership:
        try:
            outcome = ensure_ownership(target.path, target.uid, target.gid)
        except ReconciliationError as e:
            if not target.best_effort:
                raise
            console.warn(f"Failed to fix ownership of {console.hl(target.path)}: {e}")
            continue
        _announce(
            outcome, console,
            f"Ownership of {console.hl(target.path)} set to {target.uid}:{target.gid}.",
            f"Ownership of {console.hl(target.path)} is already properly set.",
        )

    for target in profile.permissions:
        try:
            outcome = ensure_permissions(target.path, target.others_mask)
        except ReconciliationError as e:
            if not target.best_effort:
                raise
            console.warn(f"Failed to fix permissions of {console.hl(target.path)}: {e}")
            continue
        _announce(
            outcome, console,
            f"Permissions of {console.hl(target.path)} isolated from other users.",
            f"Permissions of {console.hl(target.path)} are already properly set.",
        )


def wait_for_dependencies(profile: Profile, console: Console, sleep: Callable[[float], None]) -> None:
    for dependency in profile.dependencies:
        result = wait_until_ready(dependency, sleep=sleep, console=console)
        if result is ProbeResult.TIMED_OUT:
            raise DependencyTimeoutError(
                dependency.name,
                dependency.policy.max_attempts,
                dependency.policy.interval,
            )


def describe_plan(profile: Profile, args: list[str], console: Console) -> None:
    """Dry-run output: every stage the profile would run, in order."""
    for dependency in profile.dependencies:
        console.info(
            f"Would wait for {console.hl(dependency.name)} "
            f"({dependency.policy.max_attempts} x {dependency.policy.interval:g}s)"
        )
    for user in profile.users:
        console.info(f"Would ensure system user {console.hl(user.name)} (UID {user.uid}, GID {user.gid})")
    for membership in profile.memberships:
        console.info(f"Would ensure {console.hl(membership.user)} is in group {console.hl(membership.group)}")
    for target in profile.ownership:
        console.info(f"Would own {console.hl(target.path)} as {target.uid}:{target.gid}")
    for target in profile.permissions:
        console.info(f"Would remove access for others under {console.hl(target.path)}")
    if profile.plugin:
        console.info(f"Would check plugin {console.hl(profile.plugin.path)} for updates")
    if profile.marker_port:
        console.info(f"Would hold marker port {console.hl(profile.marker_port)}")
    if profile.launch:
        console.info(f"Would exec: {console.hl(' '.join(build_argv(profile.launch, args)))}")


def main_execution(
    profile_ref: Optional[str],
    args: Optional[list] = None,
    environ: Optional[Mapping[str, str]] = None,
    dry_run: bool = False,
    print_context: bool = False,
    render_toml: Optional[Path] = None,
    skip_plugin_update: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    execvpe: Callable[[str, list[str], dict], None] = os.execvpe,
    stream=None,
) -> dict:
    """
    Main execution pipeline for one profile.

    With the real ``execvpe`` a successful run never returns: the process
    becomes the service. Tests inject ``execvpe`` and ``sleep``.
    """
    environ = dict(os.environ if environ is None else environ)
    args = list(args or [])
    color = color_enabled(stream, environ)
    console = Console(DEFAULT_TAG, color=color, stream=stream)

    result = {
        'status': 'success',
        'dry_run': dry_run
    }

    try:
        if not profile_ref:
            raise ConfigurationError(f"No profile given (use --profile or set {ENV_PROFILE})")

        document = load_profile_document(profile_ref, environ)
        console = Console(document.tag, color=color, stream=stream)
        result['profile'] = document.name
        logger.info(f"Profile: {document.source}")

        console.info(f"Preparing environment before starting the {console.hl(document.name)} service...")
        config = validate_environment(document.required_variables, environ)
        profile = resolve_profile(document, config)

        if render_toml:
            write_resolved_profile(render_toml, profile)
            console.success(f"Rendered profile written to {console.hl(render_toml)}")
            return result

        if print_context:
            print(json.dumps(redact(profile.resolved), indent=2, default=str), file=stream or sys.stdout, flush=True)

        if dry_run:
            describe_plan(profile, args, console)
            result['argv'] = build_argv(profile.launch, args) if profile.launch else []
            return result

        wait_for_dependencies(profile, console, sleep)
        ensure_users(profile, console)
        apply_ownership(profile, console)

        if profile.plugin:
            if skip_plugin_update:
                console.info("Plugin update skipped.")
            else:
                check_and_update(profile.plugin, console)

        if profile.marker_port:
            if hold_marker_port(profile.marker_port):
                console.success(f"Marker port {console.hl(profile.marker_port)} is listening.")
            else:
                console.info(f"Marker port {console.hl(profile.marker_port)} is already listening.")

        if profile.banner:
            print(render_banner(profile.banner, config, color), file=stream or sys.stdout, flush=True)

        if not profile.launch:
            console.success("All post-start operations completed!")
            return result

        argv = build_argv(profile.launch, args)
        console.success(f"Starting {console.hl(' '.join(argv))}")
        result['argv'] = argv
        launch(profile.launch, args, env=config, execvpe=execvpe)

    except SequencerError as e:
        result['status'] = 'error'
        result['message'] = str(e)
        console.fatal(f"{e.label}: {e}")
        logger.debug("Stage failure", exc_info=True)

    return result


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)
    configure_logging(args.log_level)

    result = main_execution(
        profile_ref=args.profile,
        args=args.command,
        dry_run=args.dry_run,
        print_context=args.print_context,
        render_toml=args.render_toml,
        skip_plugin_update=args.skip_plugin_update,
    )

    if result.get('status') == 'success':
        return 0
    return 1


if __name__ == '__main__':
    raise SystemExit(main())
