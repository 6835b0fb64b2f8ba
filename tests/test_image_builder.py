from __future__ import annotations

import contextlib
import io
import subprocess
import tempfile
import unittest
import warnings
from pathlib import Path
from unittest.mock import patch

import click
from click.testing import CliRunner

import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import mojo_image.cli as image_cli
import mojo_image.config as image_config


BUILDER_ENV_KEYS = ("AUTH_KEY", "BUILDKIT", "CE", "DOCKERFILE", "EXTRA_CAP", "MOJO_VER", "ORG", "NO_CACHE", "PULL")
CLEAN_ENV = {key: None for key in BUILDER_ENV_KEYS}


class ImageBuildConfigTests(unittest.TestCase):
    def test_defaults_when_nothing_is_set(self) -> None:
        config = image_config.resolve_config(environ={}, env_file_values={})
        self.assertEqual(config.container_engine, "docker")
        self.assertTrue(config.buildkit)
        self.assertEqual(config.extra_cap, "")
        self.assertEqual(config.image_tag, "modular/mojo:latest")

    def test_env_file_overrides_process_environment(self) -> None:
        config = image_config.resolve_config(
            environ={"MOJO_VER": "0.5.0", "ORG": "acme"},
            env_file_values={"MOJO_VER": "0.6.1"},
        )
        self.assertEqual(config.image_tag, "acme/mojo:0.6.1")

    def test_flags_override_env_file(self) -> None:
        config = image_config.resolve_config(
            environ={},
            env_file_values={"AUTH_KEY": "from-file", "MOJO_VER": "0.6.1", "CE": "docker"},
            auth_key="from-flag",
            mojo_version="0.7.0",
            use_podman=True,
        )
        self.assertEqual(config.auth_key, "from-flag")
        self.assertEqual(config.mojo_version, "0.7.0")
        self.assertEqual(config.container_engine, "podman")
        self.assertEqual(config.extra_cap, "--cap-add SYS_PTRACE")

    def test_blank_boolean_values_keep_defaults(self) -> None:
        config = image_config.resolve_config(
            environ={"BUILDKIT": "", "NO_CACHE": "  "},
            env_file_values={"PULL": ""},
        )
        self.assertTrue(config.buildkit)
        self.assertFalse(config.no_cache)
        self.assertFalse(config.pull)

    def test_buildkit_can_be_disabled_from_environment(self) -> None:
        config = image_config.resolve_config(environ={"BUILDKIT": "0"}, env_file_values={})
        self.assertFalse(config.buildkit)

    def test_invalid_boolean_is_rejected(self) -> None:
        with self.assertRaises(image_cli.click.ClickException):
            image_config.resolve_config(environ={"BUILDKIT": "maybe"}, env_file_values={})

    def test_empty_mojo_version_flag_is_rejected(self) -> None:
        with self.assertRaises(image_cli.click.ClickException):
            image_config.resolve_config(environ={}, env_file_values={}, mojo_version="  ")

    def test_parse_env_text_handles_comments_export_and_quotes(self) -> None:
        values = image_config.parse_env_text(
            "\n".join(
                [
                    "# local overrides",
                    "",
                    "export AUTH_KEY='abc 123'",
                    'ORG="acme"',
                    "MOJO_VER = 0.7.0",
                    "not an assignment",
                ]
            )
        )
        self.assertEqual(values, {"AUTH_KEY": "abc 123", "ORG": "acme", "MOJO_VER": "0.7.0"})

    def test_load_env_file_missing_returns_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(image_config.load_env_file(Path(tmp) / ".env"), {})


class BuildArgumentTests(unittest.TestCase):
    def test_arm_hosts_add_cross_platform_flag(self) -> None:
        config = image_config.ImageBuildConfig()
        for machine in ("aarch64", "arm64"):
            args = image_cli.build_arguments(config, machine)
            index = args.index("--platform")
            self.assertEqual(args[index + 1], "linux/amd64")

    def test_other_hosts_omit_platform_flag(self) -> None:
        config = image_config.ImageBuildConfig()
        for machine in ("x86_64", "amd64", "armv7l", ""):
            self.assertNotIn("--platform", image_cli.build_arguments(config, machine))

    def test_arguments_end_with_image_tag(self) -> None:
        config = image_config.ImageBuildConfig(auth_key="secret", mojo_version="0.7.0", no_cache=True, pull=True)
        args = image_cli.build_arguments(config, "x86_64")
        self.assertEqual(args[:2], ["--file", "docker/Dockerfile"])
        self.assertIn("AUTH_KEY=secret", args)
        self.assertIn("--no-cache", args)
        self.assertIn("--pull", args)
        self.assertEqual(args[-2:], ["-t", "modular/mojo:0.7.0"])

    def test_build_command_uses_buildx_when_buildkit_enabled(self) -> None:
        cmd = image_cli.build_command(image_config.ImageBuildConfig(), "x86_64")
        self.assertEqual(cmd[:4], ["docker", "buildx", "build", "--load"])
        self.assertEqual(cmd[-1], ".")

    def test_build_command_uses_plain_build_without_buildkit(self) -> None:
        cmd = image_cli.build_command(image_config.ImageBuildConfig(buildkit=False), "x86_64")
        self.assertEqual(cmd[:2], ["docker", "build"])
        self.assertNotIn("buildx", cmd)
        self.assertNotIn("--load", cmd)

    def test_redact_command_hides_auth_key(self) -> None:
        redacted = image_cli.redact_command(["docker", "--build-arg", "AUTH_KEY=secret", "--build-arg", "AUTH_KEY="])
        self.assertEqual(redacted, ["docker", "--build-arg", "AUTH_KEY=***", "--build-arg", "AUTH_KEY="])


class ImageBuilderCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = CliRunner()
        self.commands: list[list[str]] = []

    def _fake_run(self, cmd, cwd=None) -> None:
        self.commands.append(list(cmd))

    def _invoke(self, args: list[str], *, machine: str = "x86_64", env: dict[str, str | None] | None = None):
        merged_env = dict(CLEAN_ENV)
        if env:
            merged_env.update(env)
        with patch("mojo_image.cli.platform.machine", return_value=machine), patch(
            "mojo_image.cli.shutil.which", return_value="/usr/bin/engine"
        ), patch("mojo_image.cli._run", side_effect=self._fake_run):
            return self.runner.invoke(image_cli.main, args, env=merged_env)

    def test_podman_scenario_builds_expected_command(self) -> None:
        with self.runner.isolated_filesystem():
            result = self._invoke(["--mojo-version", "0.7.0", "--use-podman"])

        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertEqual(len(self.commands), 1)
        cmd = self.commands[0]
        self.assertEqual(cmd[:2], ["podman", "buildx"])
        cap_index = cmd.index("--cap-add")
        self.assertEqual(cmd[cap_index + 1], "SYS_PTRACE")
        self.assertEqual(cmd[-3:], ["-t", "modular/mojo:0.7.0", "."])

    def test_default_engine_without_podman_flag(self) -> None:
        with self.runner.isolated_filesystem():
            result = self._invoke([])

        self.assertEqual(result.exit_code, 0, msg=result.output)
        cmd = self.commands[0]
        self.assertEqual(cmd[0], "docker")
        self.assertNotIn("--cap-add", cmd)

    def test_arm_host_adds_platform_flag(self) -> None:
        with self.runner.isolated_filesystem():
            result = self._invoke([], machine="arm64")

        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertIn("--platform", self.commands[0])

    def test_env_file_in_working_directory_is_applied(self) -> None:
        with self.runner.isolated_filesystem():
            Path(".env").write_text("AUTH_KEY=file-key\nMOJO_VER=0.6.0\nBUILDKIT=0\n", encoding="utf-8")
            result = self._invoke([], env={"MOJO_VER": "0.1.0"})

        self.assertEqual(result.exit_code, 0, msg=result.output)
        cmd = self.commands[0]
        self.assertEqual(cmd[:2], ["docker", "build"])
        self.assertIn("AUTH_KEY=file-key", cmd)
        self.assertEqual(cmd[-3:], ["-t", "modular/mojo:0.6.0", "."])

    def test_auth_key_flag_is_passed_as_build_arg(self) -> None:
        with self.runner.isolated_filesystem():
            result = self._invoke(["--auth-key", "abc123"])

        self.assertEqual(result.exit_code, 0, msg=result.output)
        cmd = self.commands[0]
        index = cmd.index("AUTH_KEY=abc123")
        self.assertEqual(cmd[index - 1], "--build-arg")

    def test_help_exits_zero(self) -> None:
        for flag in ("--help", "-h"):
            result = self._invoke([flag])
            self.assertEqual(result.exit_code, 0, msg=result.output)
            self.assertIn("--use-podman", result.output)
        self.assertEqual(self.commands, [])

    def test_unknown_flag_prints_usage_and_exits_one(self) -> None:
        result = self._invoke(["--bogus"])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Usage:", result.output)
        self.assertIn("--bogus", result.output)
        self.assertEqual(self.commands, [])

    def test_usage_error_writes_to_stderr_without_deprecation_warnings(self) -> None:
        error = image_cli.UnknownFlagError("No such option: --bogus", ctx=click.Context(image_cli.main))
        stderr = io.StringIO()
        with warnings.catch_warnings(), contextlib.redirect_stderr(stderr):
            warnings.simplefilter("error", DeprecationWarning)
            error.show()

        self.assertIn("Usage:", stderr.getvalue())
        self.assertIn("Error: No such option: --bogus", stderr.getvalue())

    def test_positional_argument_is_rejected(self) -> None:
        result = self._invoke(["extra"])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Usage:", result.output)

    def test_dry_run_prints_redacted_command(self) -> None:
        with self.runner.isolated_filesystem():
            result = self._invoke(["--dry-run", "--auth-key", "secret"])

        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertIn("docker buildx build --load", result.output)
        self.assertIn("AUTH_KEY=***", result.output)
        self.assertNotIn("secret", result.output)
        self.assertEqual(self.commands, [])

    def test_missing_engine_is_reported(self) -> None:
        with self.runner.isolated_filesystem(), patch("mojo_image.cli.shutil.which", return_value=None):
            result = self.runner.invoke(image_cli.main, ["--use-podman"], env=CLEAN_ENV)

        self.assertEqual(result.exit_code, 1)
        self.assertIn("podman command not found in PATH", result.output)

    def test_engine_exit_status_is_propagated(self) -> None:
        failure = subprocess.CalledProcessError(3, ["docker"])
        with self.runner.isolated_filesystem(), patch("mojo_image.cli.shutil.which", return_value="/usr/bin/docker"), patch(
            "mojo_image.cli.subprocess.run", side_effect=failure
        ):
            result = self.runner.invoke(image_cli.main, ["--auth-key", "secret"], env=CLEAN_ENV)

        self.assertEqual(result.exit_code, 3)
        self.assertIn("Command failed with exit code 3", result.output)
        self.assertNotIn("secret", result.output)


if __name__ == "__main__":
    unittest.main()
