from __future__ import annotations

import json
import os
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence


TIME_FORMAT = "%Y%m%dT%H%M%SZ"
TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def utc_timestamp() -> str:
    return datetime.now(tz=timezone.utc).strftime(TIME_FORMAT)


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def remove_path(path: Path) -> bool:
    """Delete a file, symlink or directory tree. Returns False if nothing was there."""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def copy_or_replace_dir(src: Path, dst: Path) -> None:
    if dst.exists() or dst.is_symlink():
        remove_path(dst)
    shutil.copytree(src, dst)


@dataclass
class CommandResult:
    cmd: list[str]
    cwd: str | None
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def detail(self) -> str:
        return (self.stderr or self.stdout or f"exit code {self.exit_code}").strip()


class CommandRunner(Protocol):
    def __call__(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout_sec: float | None = None,
    ) -> CommandResult: ...


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout_sec: float | None = None,
) -> CommandResult:
    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    cmd = list(cmd)
    cwd_str = str(cwd) if cwd else None
    try:
        completed = subprocess.run(
            cmd,
            cwd=cwd_str,
            env=process_env,
            capture_output=True,
            text=True,
            timeout=timeout_sec,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(cmd=cmd, cwd=cwd_str, exit_code=TIMEOUT_EXIT_CODE, stdout="", stderr="timeout")
    except OSError as exc:
        return CommandResult(
            cmd=cmd,
            cwd=cwd_str,
            exit_code=NOT_FOUND_EXIT_CODE,
            stdout="",
            stderr=f"failed to start {cmd[0]}: {exc}",
        )
    return CommandResult(
        cmd=cmd,
        cwd=cwd_str,
        exit_code=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )
