from __future__ import annotations

import os
import platform
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Iterable

import click

from mojo_image.config import DEFAULT_ENV_FILE_NAME, LOGGER, ImageBuildConfig, load_env_file, resolve_config
from mojo_logging import LOG_LEVEL_CHOICES, configure_logging


ARM_MACHINES = {"aarch64", "arm64"}
CROSS_PLATFORM = "linux/amd64"


class UnknownFlagError(click.UsageError):
    exit_code = 1

    def show(self, file=None) -> None:
        if self.ctx is not None:
            click.echo(self.ctx.get_help(), file=file, err=True)
        click.echo(f"Error: {self.format_message()}", file=file, err=True)


class CommandFailedError(click.ClickException):
    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ImageBuilderCommand(click.Command):
    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        try:
            return super().parse_args(ctx, args)
        except UnknownFlagError:
            raise
        except click.UsageError as exc:
            raise UnknownFlagError(exc.format_message(), ctx=ctx) from exc


def build_arguments(config: ImageBuildConfig, machine: str) -> list[str]:
    args = [
        "--file",
        config.dockerfile,
        "--build-arg",
        f"AUTH_KEY={config.auth_key}",
        "--build-arg",
        f"MOJO_VERSION={config.mojo_version}",
    ]
    if str(machine).strip().lower() in ARM_MACHINES:
        args.extend(["--platform", CROSS_PLATFORM])
    args.extend(shlex.split(config.extra_cap))
    if config.no_cache:
        args.append("--no-cache")
    if config.pull:
        args.append("--pull")
    args.extend(["-t", config.image_tag])
    return args


def build_command(config: ImageBuildConfig, machine: str, context: str = ".") -> list[str]:
    if config.buildkit:
        engine_cmd = [config.container_engine, "buildx", "build", "--load"]
    else:
        engine_cmd = [config.container_engine, "build"]
    return [*engine_cmd, *build_arguments(config, machine), context]


def redact_command(cmd: Iterable[str]) -> list[str]:
    redacted: list[str] = []
    for part in cmd:
        key, sep, value = str(part).partition("=")
        if sep and key == "AUTH_KEY" and value:
            part = f"{key}=***"
        redacted.append(part)
    return redacted


def _run(cmd: Iterable[str], cwd: Path | None = None) -> None:
    cmd = list(cmd)
    try:
        subprocess.run(cmd, cwd=str(cwd) if cwd else None, check=True)
    except subprocess.CalledProcessError as exc:
        raise CommandFailedError(
            f"Command failed with exit code {exc.returncode}: {' '.join(redact_command(cmd))}",
            exc.returncode,
        ) from exc


@click.command(
    cls=ImageBuilderCommand,
    help="Build the Mojo development image with docker or podman.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--auth-key", default=None, help="Modular auth key passed to the image build (AUTH_KEY)")
@click.option("--use-podman", is_flag=True, default=False, help="Build with podman and add SYS_PTRACE for debugging")
@click.option("--mojo-version", default=None, help="Version used in the image tag (MOJO_VER)")
@click.option("--no-cache", is_flag=True, default=False, help="Do not use the build cache (NO_CACHE)")
@click.option("--pull", is_flag=True, default=False, help="Always pull newer base images (PULL)")
@click.option(
    "--env-file",
    default=DEFAULT_ENV_FILE_NAME,
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Optional KEY=VALUE file overriding the environment defaults",
)
@click.option("--dry-run", is_flag=True, default=False, help="Print the build command without running it")
@click.option("--log-level", default="info", show_default=True, type=click.Choice(LOG_LEVEL_CHOICES))
def main(
    auth_key: str | None,
    use_podman: bool,
    mojo_version: str | None,
    no_cache: bool,
    pull: bool,
    env_file: Path,
    dry_run: bool,
    log_level: str,
) -> None:
    configure_logging(LOGGER, log_level)
    context_dir = Path.cwd()
    env_file_path = env_file if env_file.is_absolute() else context_dir / env_file

    config = resolve_config(
        environ=os.environ,
        env_file_values=load_env_file(env_file_path),
        auth_key=auth_key,
        use_podman=use_podman,
        mojo_version=mojo_version,
        no_cache=no_cache,
        pull=pull,
    )
    if not config.auth_key:
        LOGGER.warning("AUTH_KEY is empty; 'modular auth' will fail inside the image build.")

    machine = platform.machine()
    cmd = build_command(config, machine, ".")
    LOGGER.debug("Host machine=%s engine=%s buildkit=%s", machine, config.container_engine, config.buildkit)

    if dry_run:
        click.echo(shlex.join(redact_command(cmd)))
        return

    if shutil.which(config.container_engine) is None:
        raise click.ClickException(f"{config.container_engine} command not found in PATH")

    click.echo(f"Building image '{config.image_tag}' from {config.dockerfile} with {config.container_engine}")
    _run(cmd, cwd=context_dir)


if __name__ == "__main__":
    main()
