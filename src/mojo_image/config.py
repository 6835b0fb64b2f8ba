from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

import click


LOGGER = logging.getLogger("mojo_image")
LOGGER.addHandler(logging.NullHandler())

DEFAULT_AUTH_KEY = ""
DEFAULT_BUILDKIT = True
DEFAULT_CONTAINER_ENGINE = "docker"
DEFAULT_DOCKERFILE = "docker/Dockerfile"
DEFAULT_EXTRA_CAP = ""
DEFAULT_MOJO_VERSION = "latest"
DEFAULT_ORG = "modular"
DEFAULT_ENV_FILE_NAME = ".env"
PODMAN_ENGINE = "podman"
PODMAN_EXTRA_CAP = "--cap-add SYS_PTRACE"

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}

_ENV_LINE_PATTERN = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*?)\s*$")


@dataclass(frozen=True)
class ImageBuildConfig:
    """Settings for one image build.

    Each field maps to an environment variable of the same meaning:

    - ``auth_key`` (``AUTH_KEY``): Modular auth key passed as a build arg.
    - ``buildkit`` (``BUILDKIT``): build with ``buildx build --load``.
    - ``container_engine`` (``CE``): ``docker`` or ``podman``.
    - ``dockerfile`` (``DOCKERFILE``): path handed to ``--file``.
    - ``extra_cap`` (``EXTRA_CAP``): extra capability flags, whitespace separated.
    - ``mojo_version`` (``MOJO_VER``): image tag version.
    - ``org`` (``ORG``): image namespace.
    - ``no_cache`` (``NO_CACHE``) and ``pull`` (``PULL``): forwarded build flags.
    """

    auth_key: str = DEFAULT_AUTH_KEY
    buildkit: bool = DEFAULT_BUILDKIT
    container_engine: str = DEFAULT_CONTAINER_ENGINE
    dockerfile: str = DEFAULT_DOCKERFILE
    extra_cap: str = DEFAULT_EXTRA_CAP
    mojo_version: str = DEFAULT_MOJO_VERSION
    org: str = DEFAULT_ORG
    no_cache: bool = False
    pull: bool = False

    @property
    def image_tag(self) -> str:
        return f"{self.org}/mojo:{self.mojo_version}"


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def parse_env_text(text: str, *, source: str = "<env>") -> dict[str, str]:
    values: dict[str, str] = {}
    for line_number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _ENV_LINE_PATTERN.match(line)
        if not match:
            LOGGER.warning("Ignoring malformed line %d in %s: %r", line_number, source, line)
            continue
        key, raw_value = match.groups()
        values[key] = _strip_quotes(raw_value)
    return values


def load_env_file(path: Path) -> dict[str, str]:
    if not path.is_file():
        LOGGER.debug("No env file at %s", path)
        return {}
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeError) as exc:
        raise click.ClickException(f"Unable to read env file {path}: {exc}") from exc
    values = parse_env_text(text, source=str(path))
    LOGGER.debug("Loaded %d value(s) from %s", len(values), path)
    return values


def _parse_bool(raw_value: str, *, name: str, default: bool) -> bool:
    normalized = str(raw_value).strip().lower()
    if not normalized:
        return default
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise click.ClickException(f"Invalid {name}: {raw_value!r} (expected one of 1/0, true/false, yes/no, on/off)")


def config_from_env(environ: Mapping[str, str]) -> ImageBuildConfig:
    config = ImageBuildConfig()
    return replace(
        config,
        auth_key=environ.get("AUTH_KEY", config.auth_key),
        buildkit=_parse_bool(environ.get("BUILDKIT", ""), name="BUILDKIT", default=config.buildkit),
        container_engine=environ.get("CE") or config.container_engine,
        dockerfile=environ.get("DOCKERFILE") or config.dockerfile,
        extra_cap=environ.get("EXTRA_CAP", config.extra_cap),
        mojo_version=environ.get("MOJO_VER") or config.mojo_version,
        org=environ.get("ORG") or config.org,
        no_cache=_parse_bool(environ.get("NO_CACHE", ""), name="NO_CACHE", default=config.no_cache),
        pull=_parse_bool(environ.get("PULL", ""), name="PULL", default=config.pull),
    )


def resolve_config(
    *,
    environ: Mapping[str, str],
    env_file_values: Mapping[str, str],
    auth_key: str | None = None,
    use_podman: bool = False,
    mojo_version: str | None = None,
    no_cache: bool = False,
    pull: bool = False,
) -> ImageBuildConfig:
    """Layer hardcoded defaults, the process environment, the env file and flags."""
    merged = dict(environ)
    merged.update(env_file_values)
    config = config_from_env(merged)

    if auth_key is not None:
        config = replace(config, auth_key=auth_key)
    if use_podman:
        config = replace(config, container_engine=PODMAN_ENGINE, extra_cap=PODMAN_EXTRA_CAP)
    if mojo_version is not None:
        if not mojo_version.strip():
            raise click.ClickException("--mojo-version must not be empty")
        config = replace(config, mojo_version=mojo_version.strip())
    if no_cache:
        config = replace(config, no_cache=True)
    if pull:
        config = replace(config, pull=True)
    return config
