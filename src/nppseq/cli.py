#!/usr/bin/env python3
"""
Console script entry points.

``nppseq`` runs a profile through the engine. ``nppseq-plugin-check`` runs
only the plugin update stage, for operators who want to refresh the plugin
without restarting the container.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from .config_constants import DEFAULT_LOG_LEVEL, DEFAULT_TAG
from .console import Console, color_enabled, configure_logging
from .plugin_update import PluginSettings, check_and_update


def main(argv: Optional[list] = None) -> int:
    from .engine import main as engine_main

    try:
        return engine_main(argv)
    except KeyboardInterrupt:
        print("\n[WARN] Interrupted", file=sys.stderr, flush=True)
        return 130


def parse_plugin_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='nppseq-plugin-check',
        description='Update a plugin from its latest v<version> release branch',
    )
    parser.add_argument('--path', type=Path, required=True, help='Installed plugin directory')
    parser.add_argument('--main-file', required=True, help='Plugin main file (relative to --path)')
    parser.add_argument('--repository', required=True, help='Git repository URL')
    parser.add_argument('--uid', type=int, default=None, help='Owner UID applied after an update')
    parser.add_argument('--gid', type=int, default=None, help='Owner GID applied after an update')
    parser.add_argument(
        '--commit-overrides-newer',
        action='store_true',
        help='Update on a commit mismatch even when the installed version is newer'
    )
    parser.add_argument('--log-level', default=DEFAULT_LOG_LEVEL, type=str.upper,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return parser.parse_args(argv)


def plugin_check_main(argv: Optional[list] = None) -> int:
    """Exit 0 whether or not an update happened; the check itself never fails the caller."""
    args = parse_plugin_arguments(argv)
    configure_logging(args.log_level)

    settings = PluginSettings(
        path=args.path,
        main_file=args.main_file,
        repository=args.repository,
        uid=args.uid,
        gid=args.gid,
    )
    console = Console(DEFAULT_TAG, color=color_enabled())
    check_and_update(settings, console, commit_overrides_newer=args.commit_overrides_newer)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
