#!/usr/bin/env python3
"""
Reconciler tests: account creation, ownership and permission isolation.

Filesystem tests use the current user's own uid/gid so they run unprivileged.
"""

import os
from pathlib import Path
import stat
import subprocess
import sys
from types import SimpleNamespace
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from nppseq.errors import ReconciliationError  # noqa: E402
from nppseq.reconciler import (  # noqa: E402
    Outcome,
    ensure_group_membership,
    ensure_ownership,
    ensure_permissions,
    ensure_system_user,
    isolated_mode,
    iter_tree,
    resolve_gid,
    resolve_uid,
)


@pytest.fixture
def web_root(tmp_path):
    root = tmp_path / "www"
    (root / "wp-content" / "plugins").mkdir(parents=True)
    (root / "index.php").write_text("<?php\n")
    (root / "wp-content" / "plugins" / "hello.php").write_text("<?php\n")
    script = root / "wp-cron.sh"
    script.write_text("#!/bin/sh\n")

    for entry in iter_tree(root):
        os.chmod(entry, 0o755 if entry.is_dir() else 0o644)
    os.chmod(script, 0o755)
    return root


def _mode(path: Path) -> int:
    return stat.S_IMODE(os.lstat(path).st_mode) & 0o777


class TestEnsureOwnership:
    def test_converged_tree_performs_no_writes(self, web_root):
        with patch("nppseq.reconciler.os.lchown") as mock_lchown:
            outcome = ensure_ownership(web_root, os.getuid(), os.getgid())

        assert outcome is Outcome.UNCHANGED
        mock_lchown.assert_not_called()

    def test_divergent_tree_is_reowned_entirely(self, web_root):
        entries = list(iter_tree(web_root))

        with patch("nppseq.reconciler.os.lchown") as mock_lchown:
            outcome = ensure_ownership(web_root, os.getuid() + 1, os.getgid())

        assert outcome is Outcome.RECONCILED
        assert mock_lchown.call_count == len(entries)

    def test_missing_path(self, tmp_path):
        with pytest.raises(ReconciliationError, match="does not exist"):
            ensure_ownership(tmp_path / "absent", 0, 0)

    def test_oserror_is_wrapped(self, web_root):
        with patch("nppseq.reconciler.os.lchown", side_effect=PermissionError("denied")):
            with pytest.raises(ReconciliationError, match="Failed to set ownership"):
                ensure_ownership(web_root, os.getuid() + 1, os.getgid())


class TestEnsurePermissions:
    def test_others_access_is_removed(self, web_root):
        outcome = ensure_permissions(web_root)

        assert outcome is Outcome.RECONCILED
        assert _mode(web_root) == 0o750
        assert _mode(web_root / "index.php") == 0o640
        assert _mode(web_root / "wp-cron.sh") == 0o750
        assert all(not (os.lstat(entry).st_mode & 0o007) for entry in iter_tree(web_root))

    def test_second_run_performs_no_writes(self, web_root):
        ensure_permissions(web_root)

        with patch("nppseq.reconciler.os.chmod") as mock_chmod:
            outcome = ensure_permissions(web_root)

        assert outcome is Outcome.UNCHANGED
        mock_chmod.assert_not_called()

    def test_symlinks_are_ignored(self, tmp_path):
        root = tmp_path / "www"
        root.mkdir(mode=0o750)
        os.chmod(root, 0o750)
        (root / "link").symlink_to("/etc/hostname")

        assert ensure_permissions(root) is Outcome.UNCHANGED

    def test_isolated_mode(self):
        assert isolated_mode(stat.S_IFREG | 0o666) == 0o640
        assert isolated_mode(stat.S_IFREG | 0o700) == 0o750
        assert isolated_mode(stat.S_IFDIR | 0o777) == 0o750
        assert isolated_mode(stat.S_IFDIR | stat.S_ISGID | 0o775) == stat.S_ISGID | 0o750


class TestEnsureSystemUser:
    def test_existing_user_is_left_alone(self):
        account = SimpleNamespace(pw_uid=1, pw_gid=1)
        with patch("nppseq.reconciler.pwd.getpwnam", return_value=account), \
                patch("nppseq.reconciler.subprocess.run") as mock_run:
            outcome = ensure_system_user("npp", 18978, 18978)

        assert outcome is Outcome.ALREADY_EXISTS
        mock_run.assert_not_called()

    def test_creates_group_and_user(self):
        with patch("nppseq.reconciler.pwd.getpwnam", side_effect=KeyError("npp")), \
                patch("nppseq.reconciler.grp.getgrnam", side_effect=KeyError("npp")), \
                patch("nppseq.reconciler.subprocess.run") as mock_run:
            outcome = ensure_system_user("npp", 18978, 18979)

        assert outcome is Outcome.CREATED
        groupadd, useradd = (call.args[0] for call in mock_run.call_args_list)
        assert groupadd == ["groupadd", "--gid", "18979", "npp"]
        assert useradd[0] == "useradd"
        assert useradd[useradd.index("--uid") + 1] == "18978"
        assert useradd[-1] == "npp"

    def test_existing_group_is_reused(self):
        with patch("nppseq.reconciler.pwd.getpwnam", side_effect=KeyError("npp")), \
                patch("nppseq.reconciler.grp.getgrnam", return_value=SimpleNamespace(gr_gid=18978)), \
                patch("nppseq.reconciler.subprocess.run") as mock_run:
            ensure_system_user("npp", 18978, 18978)

        assert mock_run.call_count == 1
        assert mock_run.call_args.args[0][0] == "useradd"

    def test_command_failure(self):
        error = subprocess.CalledProcessError(4, ["useradd"], stderr="useradd: UID 18978 is not unique")
        with patch("nppseq.reconciler.pwd.getpwnam", side_effect=KeyError("npp")), \
                patch("nppseq.reconciler.grp.getgrnam", return_value=SimpleNamespace(gr_gid=18978)), \
                patch("nppseq.reconciler.subprocess.run", side_effect=error):
            with pytest.raises(ReconciliationError, match="not unique"):
                ensure_system_user("npp", 18978, 18978)


class TestEnsureGroupMembership:
    def test_member_already(self):
        with patch("nppseq.reconciler.pwd.getpwnam", return_value=SimpleNamespace(pw_gid=101)), \
                patch("nppseq.reconciler.grp.getgrnam",
                      return_value=SimpleNamespace(gr_gid=18978, gr_mem=["nginx"])), \
                patch("nppseq.reconciler.subprocess.run") as mock_run:
            outcome = ensure_group_membership("nginx", "npp")

        assert outcome is Outcome.UNCHANGED
        mock_run.assert_not_called()

    def test_adds_supplementary_group(self):
        with patch("nppseq.reconciler.pwd.getpwnam", return_value=SimpleNamespace(pw_gid=101)), \
                patch("nppseq.reconciler.grp.getgrnam", return_value=SimpleNamespace(gr_gid=18978, gr_mem=[])), \
                patch("nppseq.reconciler.subprocess.run") as mock_run:
            outcome = ensure_group_membership("nginx", "npp")

        assert outcome is Outcome.RECONCILED
        assert mock_run.call_args.args[0] == ["usermod", "-aG", "npp", "nginx"]

    def test_unknown_user(self):
        with patch("nppseq.reconciler.pwd.getpwnam", side_effect=KeyError("ghost")):
            with pytest.raises(ReconciliationError, match="Unknown user"):
                ensure_group_membership("ghost", "npp")


class TestResolveIds:
    def test_numeric(self):
        assert resolve_uid("18978") == 18978
        assert resolve_gid(0) == 0

    def test_names(self):
        assert resolve_uid("root") == 0
        assert resolve_gid("root") == 0

    def test_unknown_name(self):
        with pytest.raises(ReconciliationError):
            resolve_uid("no-such-user-npp")
