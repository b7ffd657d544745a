#!/usr/bin/env python3
"""
Plugin self-update from release branches.

Releases are published as branches named ``v<version>`` on the plugin's git
repository. The installed plugin records its version and the commit it was
built from in its main file header::

    * Version: 2.1.0
    * Commit: 4f2a9c1

``needs_update`` is a pure decision function; fetching and swapping the
plugin directory live in ``update_plugin``. Failures here never stop the
container: the previously installed plugin keeps running.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .config_constants import PLUGIN_BRANCH_PREFIX, PLUGIN_TEXT_SUFFIXES
from .console import Console
from .errors import PluginUpdateError, ReconciliationError, SequencerError
from .reconciler import ensure_ownership, ensure_permissions


logger = logging.getLogger(__name__)

VERSION_HEADER = re.compile(r"^(?P<prefix>[ \t/*#@]*Version:[ \t]*)(?P<value>\S+)[ \t]*$", re.MULTILINE)
COMMIT_HEADER = re.compile(r"^(?P<prefix>[ \t/*#@]*Commit:[ \t]*)(?P<value>\S+)[ \t]*$", re.MULTILINE)

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class Release:
    version: str
    commit: str
    branch: str


@dataclass(frozen=True)
class PluginHeader:
    version: Optional[str]
    commit: Optional[str]


@dataclass(frozen=True)
class PluginSettings:
    path: Path
    main_file: str
    repository: str
    uid: Optional[int] = None
    gid: Optional[int] = None


def _version_key(version: str) -> tuple:
    # Natural ordering like `sort -V`: numeric chunks compare as numbers.
    key = []
    for chunk in re.findall(r"\d+|[A-Za-z]+", version):
        if chunk.isdigit():
            key.append((1, int(chunk), ""))
        else:
            key.append((0, 0, chunk))
    return tuple(key)


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 as ``left`` sorts before, equal to or after ``right``."""
    left_key, right_key = _version_key(left), _version_key(right)
    if left_key == right_key:
        return 0
    return -1 if left_key < right_key else 1


def needs_update(
    installed_version: Optional[str],
    installed_commit: Optional[str],
    latest_version: str,
    latest_commit: str,
    *,
    commit_overrides_newer: bool = False,
) -> bool:
    """
    Decide whether the installed plugin must be replaced by the latest release.

    - Nothing installed (no version) -> update.
    - Installed older than latest -> update.
    - Installed newer than latest -> no update, unless
      ``commit_overrides_newer`` is set, in which case a differing commit
      still forces one (version and commit checked as independent ORs).
    - Same version -> update only when the recorded commit differs.
    """
    if not installed_version:
        return True

    order = compare_versions(installed_version, latest_version)
    commit_differs = (installed_commit or "") != latest_commit

    if order < 0:
        return True
    if order > 0:
        return commit_overrides_newer and commit_differs
    return commit_differs


def _git(args: list[str], runner: Runner, timeout: int = 60) -> str:
    cmd = ["git", *args]
    logger.debug(f"  Running: {' '.join(cmd)}")
    try:
        result = runner(cmd, capture_output=True, text=True, timeout=timeout, check=True)
    except FileNotFoundError as e:
        raise PluginUpdateError("git is not installed") from e
    except subprocess.TimeoutExpired as e:
        raise PluginUpdateError(f"git {args[0]} timed out after {timeout}s") from e
    except subprocess.CalledProcessError as e:
        details = (e.stderr or "").strip() or f"exit {e.returncode}"
        raise PluginUpdateError(f"git {args[0]} failed: {details}") from e
    return result.stdout


def parse_release_refs(ls_remote_output: str) -> list[Release]:
    """Parse ``git ls-remote --heads`` output into releases named ``v<version>``."""
    releases = []
    for line in ls_remote_output.splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        commit, ref = parts
        branch = ref.removeprefix("refs/heads/")
        if not branch.startswith(PLUGIN_BRANCH_PREFIX):
            continue
        version = branch[len(PLUGIN_BRANCH_PREFIX):]
        if not version[:1].isdigit():
            continue
        releases.append(Release(version=version, commit=commit, branch=branch))
    return releases


def latest_release(repository: str, runner: Runner = subprocess.run) -> Release:
    """Find the highest ``v<version>`` branch on the remote."""
    output = _git(["ls-remote", "--heads", repository, f"refs/heads/{PLUGIN_BRANCH_PREFIX}*"], runner)
    releases = parse_release_refs(output)
    if not releases:
        raise PluginUpdateError(f"No release branches found on {repository}")
    return max(releases, key=lambda release: _version_key(release.version))


def read_plugin_header(main_file: Path) -> PluginHeader:
    """Read Version/Commit markers; missing file or markers yield None values."""
    if not main_file.exists():
        return PluginHeader(version=None, commit=None)

    text = main_file.read_text(encoding="utf-8", errors="replace")
    version = VERSION_HEADER.search(text)
    commit = COMMIT_HEADER.search(text)
    return PluginHeader(
        version=version.group("value") if version else None,
        commit=commit.group("value") if commit else None,
    )


def write_plugin_header(main_file: Path, version: str, commit: str) -> None:
    """
    Rewrite the Version marker and set (or add, after Version) the Commit marker.

    Bytes that are not valid UTF-8 (Latin-1 author names) survive unchanged.
    """
    text = main_file.read_text(encoding="utf-8", errors="surrogateescape")

    version_match = VERSION_HEADER.search(text)
    if not version_match:
        raise PluginUpdateError(f"No Version header in {main_file}")

    text = VERSION_HEADER.sub(lambda m: f"{m.group('prefix')}{version}", text, count=1)

    if COMMIT_HEADER.search(text):
        text = COMMIT_HEADER.sub(lambda m: f"{m.group('prefix')}{commit}", text, count=1)
    else:
        version_match = VERSION_HEADER.search(text)
        prefix = version_match.group("prefix").replace("Version:", "Commit:")
        insert_at = version_match.end()
        text = f"{text[:insert_at]}\n{prefix}{commit}{text[insert_at:]}"

    main_file.write_text(text, encoding="utf-8", errors="surrogateescape")


def normalize_line_endings(root: Path) -> int:
    """Convert CRLF to LF in text files under ``root``; returns files changed."""
    changed = 0
    for path in root.rglob("*"):
        if not path.is_file() or path.is_symlink() or path.suffix.lower() not in PLUGIN_TEXT_SUFFIXES:
            continue
        data = path.read_bytes()
        if b"\r\n" in data:
            path.write_bytes(data.replace(b"\r\n", b"\n"))
            changed += 1
    return changed


def update_plugin(settings: PluginSettings, release: Release, runner: Runner = subprocess.run) -> None:
    """
    Install ``release`` into ``settings.path``.

    The release is cloned into a staging directory next to the target so the
    final swap is a same-filesystem rename; the installed copy is only
    replaced once the staged copy is complete, and is moved back if the swap
    fails. Failures up to and including the swap raise PluginUpdateError.

    Once installed, the new tree gets the configured owner and loses all
    access for "others", matching the reconciled web root. Failures there
    raise ReconciliationError: the new release is already in place.
    """
    target = settings.path
    target.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=".npp-update-", dir=target.parent))
    checkout = staging / "checkout"

    try:
        _git(["clone", "--quiet", "--depth", "1", "--branch", release.branch, settings.repository, str(checkout)], runner, timeout=300)
        shutil.rmtree(checkout / ".git", ignore_errors=True)

        converted = normalize_line_endings(checkout)
        logger.debug(f"  Normalized line endings in {converted} file(s)")

        main_file = checkout / settings.main_file
        if not main_file.exists():
            raise PluginUpdateError(f"Release {release.branch} has no {settings.main_file}")
        write_plugin_header(main_file, release.version, release.commit)

        previous = staging / "previous"
        if target.exists():
            os.rename(target, previous)
        try:
            os.rename(checkout, target)
        except OSError:
            if previous.exists():
                os.rename(previous, target)
            raise
    except (OSError, UnicodeError) as e:
        raise PluginUpdateError(f"Failed to install {release.branch} into {target}: {e}") from e
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    if settings.uid is not None and settings.gid is not None:
        ensure_ownership(target, settings.uid, settings.gid)
    ensure_permissions(target)


def check_and_update(
    settings: PluginSettings,
    console: Console,
    runner: Runner = subprocess.run,
    commit_overrides_newer: bool = False,
) -> bool:
    """
    Update the plugin when a newer release exists. Returns True if it was replaced.

    Every failure is reported as a warning. Fetch or install failures keep the
    previously installed plugin; an ownership or permission failure after the
    swap still counts as an update.
    """
    try:
        installed = read_plugin_header(settings.path / settings.main_file)
        release = latest_release(settings.repository, runner)
    except (SequencerError, OSError) as e:
        console.warn(f"Plugin update check skipped: {e}")
        return False

    logger.debug(
        f"Plugin installed={installed.version}@{installed.commit} latest={release.version}@{release.commit}"
    )

    if not needs_update(
        installed.version,
        installed.commit,
        release.version,
        release.commit,
        commit_overrides_newer=commit_overrides_newer,
    ):
        console.info(f"Plugin {console.hl(settings.path.name)} is up to date ({installed.version}). Skipping...")
        return False

    console.info(
        f"Updating plugin {console.hl(settings.path.name)} "
        f"{installed.version or '(not installed)'} -> {release.version} ({release.commit[:7]})"
    )
    try:
        update_plugin(settings, release, runner)
    except ReconciliationError as e:
        console.warn(
            f"Plugin {console.hl(settings.path.name)} updated to {release.version}, "
            f"but fixing its ownership/permissions failed: {e}"
        )
        return True
    except (SequencerError, OSError) as e:
        console.warn(f"Plugin update failed, keeping installed version: {e}")
        return False

    console.success(f"Plugin {console.hl(settings.path.name)} updated to {release.version}! Proceeding...")
    return True
