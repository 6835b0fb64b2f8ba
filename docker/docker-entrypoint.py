#!/usr/bin/env python3

from __future__ import annotations

import os
import subprocess
from pathlib import Path
import sys


DEFAULT_COMMAND = ["sleep", "infinity"]
JUPYTER_PORT = "8888"


def _run(command: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=check, text=True, capture_output=True)


def _run_success(command: list[str]) -> bool:
    result = _run(command, check=False)
    return result.returncode == 0


def _ensure_path_owner(path: Path, uid: int, gid: int) -> None:
    try:
        os.chown(path, uid, gid)
    except OSError:
        pass


def _ensure_runtime_home_paths(local_home: str, local_uid: int, local_gid: int) -> None:
    home_path = Path(local_home)
    for path in (home_path, home_path / ".cache", home_path / ".jupyter", home_path / "notebooks"):
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError:
            continue
        _ensure_path_owner(path, local_uid, local_gid)


def _jupyter_command() -> list[str]:
    return [
        "jupyter",
        "lab",
        "--ip=0.0.0.0",
        f"--port={JUPYTER_PORT}",
        "--ServerApp.token=",
        "--ServerApp.password=",
        "--no-browser",
    ]


def _container_command(argv: list[str]) -> list[str]:
    if argv:
        return list(argv)
    if os.environ.get("JUPYTER", "").strip().lower() in {"1", "true", "yes", "on"}:
        return _jupyter_command()
    return list(DEFAULT_COMMAND)


def _ensure_group(local_group: str, local_gid: int) -> None:
    if _run_success(["getent", "group", str(local_gid)]):
        return
    if _run_success(["getent", "group", local_group]):
        _run(["groupmod", "--gid", str(local_gid), local_group])
    else:
        _run(["groupadd", "--gid", str(local_gid), local_group])


def _ensure_user(local_user: str, local_uid: int, local_gid: int, local_home: str) -> None:
    if not _run_success(["id", "-u", local_user]):
        home_flag = "--no-create-home" if Path(local_home).exists() else "--create-home"
        _run(
            [
                "useradd",
                "--uid",
                str(local_uid),
                "--gid",
                str(local_gid),
                "--home-dir",
                local_home,
                home_flag,
                "--shell",
                "/bin/bash",
                local_user,
            ]
        )
        return

    current_uid = int(_run(["id", "-u", local_user], check=False).stdout.strip())
    if current_uid != local_uid:
        _run(["usermod", "--uid", str(local_uid), local_user])
    current_gid = int(_run(["id", "-g", local_user], check=False).stdout.strip())
    if current_gid != local_gid:
        _run(["usermod", "--gid", str(local_gid), local_user])


def _grant_sudo(local_user: str) -> None:
    if not _run_success(["which", "sudo"]):
        return
    if not _run_success(["getent", "group", "sudo"]):
        _run(["groupadd", "--system", "sudo"])
    _run(["usermod", "--append", "--groups", "sudo", local_user])
    sudoers_file = Path(f"/etc/sudoers.d/90-{local_user}")
    sudoers_file.write_text(f"{local_user} ALL=(ALL:ALL) NOPASSWD:ALL\n")
    sudoers_file.chmod(0o440)


def _parse_id(name: str, default: str) -> int:
    raw_value = os.environ.get(name, default).strip()
    if not raw_value.isdigit():
        raise RuntimeError(f"{name} must be a non-negative integer, got {raw_value!r}.")
    return int(raw_value)


def _ensure_user_and_exec() -> None:
    local_user = os.environ.get("LOCAL_USER", "mojo")
    local_group = os.environ.get("LOCAL_GROUP", local_user)
    local_uid = _parse_id("LOCAL_UID", "1000")
    local_gid = _parse_id("LOCAL_GID", "1000")
    local_home = os.environ.get("LOCAL_HOME", f"/home/{local_user}")
    local_umask = os.environ.get("LOCAL_UMASK", "0022")

    if local_umask and len(local_umask) in (3, 4) and local_umask.isdigit():
        os.umask(int(local_umask, 8))

    command = _container_command(sys.argv[1:])

    if os.geteuid() != 0:
        os.execvp(command[0], command)

    _ensure_group(local_group, local_gid)
    _ensure_user(local_user, local_uid, local_gid, local_home)
    _grant_sudo(local_user)
    _ensure_runtime_home_paths(local_home, local_uid, local_gid)

    os.execvp("gosu", ["gosu", local_user, *command])


if __name__ == "__main__":
    _ensure_user_and_exec()
