#!/usr/bin/env python3
"""
Idempotent reconciliation of accounts, ownership and permissions.

Every ``ensure_*`` function inspects first and writes only when the observed
state differs from the desired one, so re-running a converged container
start performs no writes at all. Ownership and permission corrections are
all-or-nothing: one divergent entry re-applies the desired state to the
whole subtree, like ``chown -R`` / ``chmod -R``.
"""

from __future__ import annotations

import enum
import grp
import logging
import os
import pwd
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .config_constants import OTHERS_MASK
from .errors import ReconciliationError


logger = logging.getLogger(__name__)

USER_COMMENT = "Isolated PHP Process owner"
USER_SHELL = "/bin/bash"
USER_HOME = "/nonexistent"


class Outcome(enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    RECONCILED = "reconciled"
    UNCHANGED = "unchanged"

    @property
    def changed(self) -> bool:
        return self in (Outcome.CREATED, Outcome.RECONCILED)


@dataclass(frozen=True)
class SystemUser:
    name: str
    uid: int
    gid: int
    comment: str = USER_COMMENT
    shell: str = USER_SHELL


@dataclass(frozen=True)
class GroupMembership:
    user: str
    group: str


@dataclass(frozen=True)
class OwnershipTarget:
    path: Path
    uid: int
    gid: int
    best_effort: bool = False


@dataclass(frozen=True)
class PermissionTarget:
    path: Path
    others_mask: int = OTHERS_MASK
    best_effort: bool = False


def _run(cmd: list[str]) -> None:
    logger.debug(f"  Running: {' '.join(cmd)}")
    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise ReconciliationError(f"Command not found: {cmd[0]}") from e
    except subprocess.CalledProcessError as e:
        details = (e.stderr or e.stdout or "").strip() or f"exit {e.returncode}"
        raise ReconciliationError(f"{' '.join(cmd)} failed: {details}") from e


def resolve_uid(value: str | int) -> int:
    """Resolve a numeric UID or a user name."""
    if isinstance(value, int) or str(value).isdigit():
        return int(value)
    try:
        return pwd.getpwnam(str(value)).pw_uid
    except KeyError as e:
        raise ReconciliationError(f"Unknown user: {value}") from e


def resolve_gid(value: str | int) -> int:
    """Resolve a numeric GID or a group name."""
    if isinstance(value, int) or str(value).isdigit():
        return int(value)
    try:
        return grp.getgrnam(str(value)).gr_gid
    except KeyError as e:
        raise ReconciliationError(f"Unknown group: {value}") from e


def ensure_system_user(
    name: str,
    uid: int,
    gid: int,
    comment: str = USER_COMMENT,
    shell: str = USER_SHELL,
) -> Outcome:
    """
    Create a user/group pair with fixed IDs unless the user already exists.

    Existence of an account called ``name`` is enough to skip creation: the
    IDs of an existing account are never compared or modified. A group that
    already exists under ``name`` is reused instead of re-created.
    """
    try:
        existing = pwd.getpwnam(name)
    except KeyError:
        existing = None

    if existing is not None:
        logger.debug(f"  User {name} exists (uid={existing.pw_uid}, gid={existing.pw_gid})")
        return Outcome.ALREADY_EXISTS

    try:
        grp.getgrnam(name)
        group_exists = True
    except KeyError:
        group_exists = False

    if not group_exists:
        _run(["groupadd", "--gid", str(gid), name])

    _run([
        "useradd",
        "--gid", name,
        "--no-create-home",
        "--home", USER_HOME,
        "--comment", comment,
        "--shell", shell,
        "--uid", str(uid),
        name,
    ])
    return Outcome.CREATED


def ensure_group_membership(user: str, group: str) -> Outcome:
    """Add ``user`` to ``group`` as a supplementary member unless already a member."""
    try:
        account = pwd.getpwnam(user)
    except KeyError as e:
        raise ReconciliationError(f"Unknown user: {user}") from e
    try:
        group_entry = grp.getgrnam(group)
    except KeyError as e:
        raise ReconciliationError(f"Unknown group: {group}") from e

    if user in group_entry.gr_mem or account.pw_gid == group_entry.gr_gid:
        return Outcome.UNCHANGED

    _run(["usermod", "-aG", group, user])
    return Outcome.RECONCILED


def _raise(error: OSError) -> None:
    raise error


def iter_tree(root: Path) -> Iterator[Path]:
    """Yield ``root`` and every entry below it without following symlinks."""
    yield root
    if root.is_symlink() or not root.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        for name in dirnames + filenames:
            yield Path(dirpath) / name


def _require_path(path: Path) -> None:
    if not os.path.lexists(path):
        raise ReconciliationError(f"Path does not exist: {path}")


def ownership_diverges(path: Path, uid: int, gid: int) -> bool:
    """Return True if any entry under ``path`` is not owned by uid:gid."""
    for entry in iter_tree(path):
        info = os.lstat(entry)
        if info.st_uid != uid or info.st_gid != gid:
            logger.debug(f"  Ownership differs: {entry} ({info.st_uid}:{info.st_gid})")
            return True
    return False


def ensure_ownership(path: Path | str, uid: int, gid: int) -> Outcome:
    """
    Re-own the whole subtree when any entry has a different owner or group.

    Symlinks are re-owned themselves (``lchown``); their targets are left alone.
    """
    path = Path(path)
    _require_path(path)

    try:
        if not ownership_diverges(path, uid, gid):
            return Outcome.UNCHANGED

        for entry in iter_tree(path):
            os.lchown(entry, uid, gid)
    except OSError as e:
        raise ReconciliationError(f"Failed to set ownership of {path} to {uid}:{gid}: {e}") from e

    return Outcome.RECONCILED


def isolated_mode(mode: int) -> int:
    """
    Mode bits for ``u=rwX,g=rX,o=`` applied to an entry with ``mode``.

    ``X`` grants execute to directories and to files that already have an
    execute bit. Setgid on directories is preserved.
    """
    is_dir = stat.S_ISDIR(mode)
    executable = is_dir or bool(mode & 0o111)

    new_mode = 0o640
    if executable:
        new_mode |= 0o110
    if is_dir:
        new_mode |= mode & stat.S_ISGID
    return new_mode


def permissions_diverge(path: Path, others_mask: int = OTHERS_MASK) -> bool:
    """Return True if any non-symlink entry grants a bit in ``others_mask``."""
    for entry in iter_tree(path):
        info = os.lstat(entry)
        if stat.S_ISLNK(info.st_mode):
            continue
        if info.st_mode & others_mask:
            logger.debug(f"  Permissions differ: {entry} ({oct(stat.S_IMODE(info.st_mode))})")
            return True
    return False


def ensure_permissions(path: Path | str, others_mask: int = OTHERS_MASK) -> Outcome:
    """
    Remove all access for "others" across the subtree when any entry grants it.

    The correction applies ``u=rwX,g=rX,o=`` to every non-symlink entry.
    """
    path = Path(path)
    _require_path(path)

    try:
        if not permissions_diverge(path, others_mask):
            return Outcome.UNCHANGED

        for entry in iter_tree(path):
            info = os.lstat(entry)
            if stat.S_ISLNK(info.st_mode):
                continue
            os.chmod(entry, isolated_mode(info.st_mode))
    except OSError as e:
        raise ReconciliationError(f"Failed to restrict permissions of {path}: {e}") from e

    return Outcome.RECONCILED
