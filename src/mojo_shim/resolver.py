from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import click


LOGGER = logging.getLogger("mojo_shim")
LOGGER.addHandler(logging.NullHandler())

VERSION_MANAGER_COMMAND = "asdf"
DEFAULT_RUNTIME = "python"
SYSTEM_VERSION = "system"
DEFAULT_HOME_ROOT = Path("/home")
HOME_ROOT_ENV = "MOJO_SHIM_HOME_ROOT"
PYTHON_LIBRARY_ENV = "MOJO_PYTHON_LIBRARY"
PYTHON_LIBRARY_GLOB = "libpython*.so*"


@dataclass(frozen=True)
class ResolvedEnvironment:
    """Outcome of resolving the Python library Mojo should load.

    ``library_path`` is ``None`` when the active runtime is the system one,
    ``""`` when no library file was found, and an absolute path otherwise.
    """

    user: str
    version: str
    library_path: str | None

    @property
    def is_system(self) -> bool:
        return self.library_path is None

    def as_env(self) -> dict[str, str]:
        if self.library_path is None:
            return {}
        return {PYTHON_LIBRARY_ENV: self.library_path}


def current_user(environ: Mapping[str, str] | None = None) -> str:
    source = os.environ if environ is None else environ
    try:
        login_name = os.getlogin()
    except OSError:
        login_name = ""
    if login_name:
        return login_name

    try:
        import pwd

        return pwd.getpwuid(os.geteuid()).pw_name
    except (ImportError, KeyError):
        pass

    fallback = str(source.get("USER") or source.get("LOGNAME") or "").strip()
    if not fallback:
        raise click.ClickException("Unable to determine the invoking user name.")
    return fallback


def _parse_version_manager_output(output: str, runtime: str) -> str | None:
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        if fields[0] == runtime:
            return fields[1]
    # Older releases print just the version when queried for a single runtime.
    fields = output.split()
    if len(fields) == 1:
        return fields[0]
    return None


def current_runtime_version(runtime: str = DEFAULT_RUNTIME) -> str:
    if shutil.which(VERSION_MANAGER_COMMAND) is None:
        raise click.ClickException(f"{VERSION_MANAGER_COMMAND} command not found in PATH")

    cmd = [VERSION_MANAGER_COMMAND, "current", runtime]
    result = subprocess.run(cmd, check=False, text=True, capture_output=True)
    if result.returncode != 0:
        detail = result.stderr.strip() or result.stdout.strip()
        raise click.ClickException(
            f"Command failed with exit code {result.returncode}: {' '.join(cmd)}"
            + (f" ({detail})" if detail else "")
        )

    version = _parse_version_manager_output(result.stdout, runtime)
    if not version:
        raise click.ClickException(
            f"Unable to parse {runtime} version from {VERSION_MANAGER_COMMAND} output: {result.stdout.strip()!r}"
        )
    LOGGER.debug("Active %s version: %s", runtime, version)
    return version


def runtime_install_dir(*, home_root: Path, user: str, version: str, runtime: str = DEFAULT_RUNTIME) -> Path:
    return home_root / user / ".asdf" / "installs" / runtime / version


def find_python_library(install_dir: Path) -> str:
    """Return the lexicographically smallest ``libpython`` under ``install_dir/lib``.

    An empty string means nothing matched; callers pass it through unchanged.
    """
    lib_dir = install_dir / "lib"
    try:
        candidates = sorted(str(path.absolute()) for path in lib_dir.glob(PYTHON_LIBRARY_GLOB) if path.is_file())
    except OSError as exc:
        LOGGER.debug("Unable to scan %s: %s", lib_dir, exc)
        return ""
    if len(candidates) > 1:
        LOGGER.debug("Multiple Python libraries under %s, using %s", lib_dir, candidates[0])
    return candidates[0] if candidates else ""


def resolve_environment(*, user: str, version: str, home_root: Path = DEFAULT_HOME_ROOT) -> ResolvedEnvironment:
    if version == SYSTEM_VERSION:
        return ResolvedEnvironment(user=user, version=version, library_path=None)

    install_dir = runtime_install_dir(home_root=home_root, user=user, version=version)
    library_path = find_python_library(install_dir)
    if not library_path:
        LOGGER.warning("No Python shared library found under %s; %s will be empty.", install_dir, PYTHON_LIBRARY_ENV)
    return ResolvedEnvironment(user=user, version=version, library_path=library_path)


def resolve_active_environment(environ: Mapping[str, str] | None = None) -> ResolvedEnvironment:
    source = os.environ if environ is None else environ
    home_root_raw = str(source.get(HOME_ROOT_ENV, "")).strip()
    home_root = Path(home_root_raw).expanduser() if home_root_raw else DEFAULT_HOME_ROOT
    return resolve_environment(
        user=current_user(source),
        version=current_runtime_version(),
        home_root=home_root,
    )
