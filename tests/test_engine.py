#!/usr/bin/env python3
"""
Sequencer engine tests: stage ordering, fatal handling and exec hand-off.
"""

import io
import json
import os
from pathlib import Path
import socket
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from nppseq.engine import main, main_execution, parse_arguments, split_forwarded  # noqa: E402


WORDPRESS_ENV = {
    "NPP_UID": "18978",
    "NPP_GID": "18978",
    "NPP_USER": "npp",
    "WORDPRESS_DB_PASSWORD": "s3cret",
}


@pytest.fixture
def listener():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
        server.bind(("127.0.0.1", 0))
        server.listen()
        yield server.getsockname()[1]


@pytest.fixture
def closed_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


def _write_profile(tmp_path, port, extra=""):
    web_root = tmp_path / "www"
    web_root.mkdir(exist_ok=True)
    profile_file = tmp_path / "fpm.toml"
    profile_file.write_text(f"""
[service]
name = "fpm"
tag = "NPP-TEST"

[env]
required = ["APP_ROOT", "APP_DB_PASSWORD"]

[env.defaults]
APP_MODE = "production"

[[dependencies]]
name = "upstream"
kind = "tcp"
host = "127.0.0.1"
port = {port}
retries = 2
interval = 0

[[ownership]]
path = "${{APP_ROOT}}"
owner = {os.getuid()}
group = {os.getgid()}
{extra}
[launch]
command = ["/usr/local/bin/docker-entrypoint.sh"]
""")
    return profile_file, {"APP_ROOT": str(web_root), "APP_DB_PASSWORD": "s3cret"}


class TestParseArguments:
    def test_defaults(self):
        args = parse_arguments([], environ={})

        assert args.profile is None
        assert args.dry_run is False
        assert args.print_context is False
        assert args.render_toml is None
        assert args.skip_plugin_update is False
        assert args.log_level == "INFO"
        assert args.command == []

    def test_environment_defaults(self):
        environ = {"NPP_PROFILE": "nginx", "NPP_SKIP_PLUGIN_UPDATE": "1", "NPP_LOG_LEVEL": "debug"}

        args = parse_arguments([], environ=environ)

        assert args.profile == "nginx"
        assert args.skip_plugin_update is True
        assert args.log_level == "DEBUG"

    def test_arguments_after_double_dash_are_forwarded_verbatim(self):
        args = parse_arguments(["-p", "nginx", "--", "nginx", "-g", "daemon off;"], environ={})

        assert args.profile == "nginx"
        assert args.command == ["nginx", "-g", "daemon off;"]

    def test_positional_command_without_double_dash(self):
        args = parse_arguments(["-p", "wordpress", "php-fpm", "-F"], environ={})

        assert args.command == ["php-fpm", "-F"]

    def test_later_double_dash_belongs_to_command(self):
        args = parse_arguments(["-p", "wordpress", "php", "--", "-y"], environ={})

        assert args.profile == "wordpress"
        assert args.command == ["php", "--", "-y"]

    def test_only_leading_double_dash_is_consumed(self):
        args = parse_arguments(["-p", "wordpress", "--", "php", "--", "-y"], environ={})

        assert args.command == ["php", "--", "-y"]

    def test_option_values_are_not_taken_as_command(self):
        args = parse_arguments(["--profile=nginx", "--log-level", "debug", "nginx", "-g", "daemon off;"], environ={})

        assert args.profile == "nginx"
        assert args.log_level == "DEBUG"
        assert args.command == ["nginx", "-g", "daemon off;"]

    def test_split_forwarded(self):
        assert split_forwarded(["-p", "x", "--dry-run"]) == (["-p", "x", "--dry-run"], [])
        assert split_forwarded(["--render-toml", "out.toml", "--", "-F"]) == (["--render-toml", "out.toml"], ["-F"])

    def test_render_toml_path(self):
        args = parse_arguments(["--render-toml", "/tmp/out.toml"], environ={})

        assert args.render_toml == Path("/tmp/out.toml")


class TestValidationFailsFirst:
    def test_missing_db_host_exits_before_any_connection(self):
        stream = io.StringIO()
        execvpe = MagicMock()

        with patch("socket.create_connection") as mock_connect, \
                patch("nppseq.prober.mysql.connector.connect") as mock_mysql:
            result = main_execution("wordpress", ["php-fpm"], environ=WORDPRESS_ENV, execvpe=execvpe, stream=stream)

        assert result["status"] == "error"
        mock_connect.assert_not_called()
        mock_mysql.assert_not_called()
        execvpe.assert_not_called()
        assert stream.getvalue().splitlines()[-1] == (
            "NPP-WP-FATAL: Configuration error: Missing required environment variable(s): WORDPRESS_DB_HOST"
        )

    def test_no_profile(self):
        stream = io.StringIO()

        result = main_execution(None, environ={}, stream=stream)

        assert result["status"] == "error"
        assert stream.getvalue().startswith("NPP-FATAL: Configuration error: No profile given")


class TestFullSequence:
    def test_ready_dependency_leads_to_single_exec(self, tmp_path, listener):
        profile_file, env = _write_profile(tmp_path, listener)
        execvpe = MagicMock()
        sleeps = []

        result = main_execution(
            str(profile_file), ["php-fpm", "-F"], environ=env,
            sleep=sleeps.append, execvpe=execvpe, stream=io.StringIO(),
        )

        assert result["status"] == "success"
        assert sleeps == []
        execvpe.assert_called_once()
        file, argv, exec_env = execvpe.call_args.args
        assert file == "/usr/local/bin/docker-entrypoint.sh"
        assert argv == ["/usr/local/bin/docker-entrypoint.sh", "php-fpm", "-F"]
        assert exec_env["APP_MODE"] == "production"

    def test_dependency_timeout_is_fatal(self, tmp_path, closed_port):
        profile_file, env = _write_profile(tmp_path, closed_port)
        stream = io.StringIO()
        execvpe = MagicMock()
        sleeps = []

        result = main_execution(
            str(profile_file), [], environ=env, sleep=sleeps.append, execvpe=execvpe, stream=stream,
        )

        assert result["status"] == "error"
        assert sleeps == [0]
        execvpe.assert_not_called()
        assert stream.getvalue().splitlines()[-1] == (
            "NPP-TEST-FATAL: Dependency timeout: upstream is not responding after 2 attempt(s) (0s interval)"
        )

    def test_required_ownership_failure_is_fatal(self, tmp_path, listener):
        profile_file, env = _write_profile(tmp_path, listener)
        env["APP_ROOT"] = str(tmp_path / "missing")
        execvpe = MagicMock()

        result = main_execution(str(profile_file), [], environ=env, execvpe=execvpe, stream=io.StringIO())

        assert result["status"] == "error"
        assert "does not exist" in result["message"]
        execvpe.assert_not_called()

    def test_best_effort_ownership_failure_only_warns(self, tmp_path, listener):
        extra = f'\n[[ownership]]\npath = "{tmp_path / "etc-missing"}"\nowner = "root"\ngroup = "root"\nbest_effort = true\n'
        profile_file, env = _write_profile(tmp_path, listener, extra)
        stream = io.StringIO()
        execvpe = MagicMock()

        result = main_execution(str(profile_file), [], environ=env, execvpe=execvpe, stream=stream)

        assert result["status"] == "success"
        assert "NPP-TEST: Failed to fix ownership of" in stream.getvalue()
        execvpe.assert_called_once()

    def test_exec_failure_is_fatal(self, tmp_path, listener):
        profile_file, env = _write_profile(tmp_path, listener)
        execvpe = MagicMock(side_effect=FileNotFoundError(2, "No such file or directory"))

        result = main_execution(str(profile_file), [], environ=env, execvpe=execvpe, stream=io.StringIO())

        assert result["status"] == "error"
        assert "Failed to exec" in result["message"]


class TestInspectionModes:
    def test_dry_run_has_no_side_effects(self, tmp_path, closed_port):
        profile_file, env = _write_profile(tmp_path, closed_port)
        execvpe = MagicMock()

        with patch("nppseq.engine.ensure_ownership") as mock_ownership:
            result = main_execution(
                str(profile_file), ["php-fpm"], environ=env, dry_run=True, execvpe=execvpe, stream=io.StringIO(),
            )

        assert result["status"] == "success"
        assert result["argv"] == ["/usr/local/bin/docker-entrypoint.sh", "php-fpm"]
        mock_ownership.assert_not_called()
        execvpe.assert_not_called()

    def test_print_context_masks_secrets(self, tmp_path, closed_port):
        profile_file, env = _write_profile(tmp_path, closed_port)
        profile_file.write_text(profile_file.read_text().replace(
            'retries = 2', 'retries = 2\npassword = "${APP_DB_PASSWORD}"'
        ))
        stream = io.StringIO()

        main_execution(str(profile_file), [], environ=env, dry_run=True, print_context=True, stream=stream)

        output = stream.getvalue()
        context = json.loads(output[output.index("{"):output.rindex("}") + 1])
        assert context["dependencies"][0]["password"] == "***"
        assert "s3cret" not in output

    def test_render_toml_writes_and_stops(self, tmp_path, closed_port):
        profile_file, env = _write_profile(tmp_path, closed_port)
        output = tmp_path / "rendered.toml"
        execvpe = MagicMock()

        result = main_execution(
            str(profile_file), [], environ=env, render_toml=output, execvpe=execvpe, stream=io.StringIO(),
        )

        assert result["status"] == "success"
        assert output.exists()
        execvpe.assert_not_called()


class TestMain:
    def test_exit_status_on_missing_profile(self, monkeypatch, tmp_path):
        monkeypatch.delenv("NPP_PROFILE", raising=False)

        assert main(["-p", str(tmp_path / "absent.toml")]) == 1

    def test_exit_status_on_dry_run(self, monkeypatch, tmp_path, closed_port):
        profile_file, env = _write_profile(tmp_path, closed_port)
        for key, value in env.items():
            monkeypatch.setenv(key, value)

        assert main(["-p", str(profile_file), "--dry-run"]) == 0
