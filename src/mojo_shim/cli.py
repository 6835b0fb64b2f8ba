from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Mapping, NoReturn

import click

from mojo_logging import configure_logging
from mojo_shim.resolver import LOGGER, ResolvedEnvironment, resolve_active_environment


DEFAULT_BINARY = "mojo"
DEFAULT_SUBCOMMAND = "repl"
BINARY_ENV = "MOJO_SHIM_BINARY"
LOG_LEVEL_ENV = "MOJO_SHIM_LOG_LEVEL"
RAW_ARGS_META_KEY = "mojo_shim.raw_args"
COMMAND_NOT_FOUND_EXIT_CODE = 127


class BinaryNotFoundError(click.ClickException):
    exit_code = COMMAND_NOT_FOUND_EXIT_CODE


class PassthroughCommand(click.Command):
    """Keeps the argument vector exactly as received, ``--`` included."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        ctx.meta[RAW_ARGS_META_KEY] = list(args)
        return super().parse_args(ctx, args)


def build_invocation(args: Iterable[str], binary: str = DEFAULT_BINARY) -> list[str]:
    forwarded = [str(arg) for arg in args]
    if not forwarded:
        return [binary, DEFAULT_SUBCOMMAND]
    return [binary, *forwarded]


def invoke(
    args: Iterable[str],
    *,
    resolution: ResolvedEnvironment,
    cwd: Path,
    binary: str = DEFAULT_BINARY,
    environ: Mapping[str, str] | None = None,
) -> NoReturn:
    command = build_invocation(args, binary)
    env = dict(os.environ if environ is None else environ)
    env.update(resolution.as_env())

    os.chdir(cwd)
    LOGGER.debug("Executing %s in %s (library=%r)", command, cwd, resolution.library_path)
    try:
        os.execvpe(command[0], command, env)
    except FileNotFoundError as exc:
        raise BinaryNotFoundError(f"{command[0]}: command not found") from exc
    except PermissionError as exc:
        raise click.ClickException(f"{command[0]}: permission denied") from exc


@click.command(
    cls=PassthroughCommand,
    help="Run mojo with MOJO_PYTHON_LIBRARY pointed at the active asdf Python.",
    add_help_option=False,
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("mojo_args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def main(ctx: click.Context, mojo_args: tuple[str, ...]) -> None:
    configure_logging(LOGGER, os.environ.get(LOG_LEVEL_ENV, ""), default="warning")
    forwarded = ctx.meta.get(RAW_ARGS_META_KEY, list(mojo_args))
    cwd = Path.cwd()
    binary = os.environ.get(BINARY_ENV, "").strip() or DEFAULT_BINARY
    resolution = resolve_active_environment()
    invoke(forwarded, resolution=resolution, cwd=cwd, binary=binary)


if __name__ == "__main__":
    main()
