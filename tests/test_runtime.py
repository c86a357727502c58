from __future__ import annotations

import sys
from pathlib import Path

import pytest

from build_hook.runtime import NOT_FOUND_EXIT_CODE, TIMEOUT_EXIT_CODE, remove_path, run_command


def test_run_command_captures_streams_and_exit_code(tmp_path: Path) -> None:
    script = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"
    result = run_command([sys.executable, "-c", script], cwd=tmp_path)
    assert result.exit_code == 3
    assert not result.ok
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"
    assert result.cwd == str(tmp_path)
    assert result.detail() == "err"


def test_run_command_overlays_environment() -> None:
    script = "import os; print(os.environ['BUILD_HOOK_TEST_VALUE'], bool(os.environ.get('PATH')))"
    result = run_command([sys.executable, "-c", script], env={"BUILD_HOOK_TEST_VALUE": "yes"})
    assert result.ok
    assert result.stdout.strip() == "yes True"


def test_missing_program_is_reported_not_raised() -> None:
    result = run_command(["definitely-not-a-real-binary-for-build-hook"])
    assert result.exit_code == NOT_FOUND_EXIT_CODE
    assert "definitely-not-a-real-binary-for-build-hook" in result.stderr


def test_timeout_is_reported_not_raised() -> None:
    result = run_command([sys.executable, "-c", "import time; time.sleep(10)"], timeout_sec=0.5)
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.stderr == "timeout"


@pytest.mark.parametrize("kind", ["dir", "file", "symlink", "missing"])
def test_remove_path_handles_every_kind(tmp_path: Path, kind: str) -> None:
    target = tmp_path / "target"
    if kind == "dir":
        (target / "nested").mkdir(parents=True)
        (target / "nested" / "file.txt").write_text("x", encoding="utf-8")
    elif kind == "file":
        target.write_text("x", encoding="utf-8")
    elif kind == "symlink":
        real = tmp_path / "real"
        real.mkdir()
        target.symlink_to(real)

    removed = remove_path(target)

    assert removed is (kind != "missing")
    assert not target.exists() and not target.is_symlink()
    if kind == "symlink":
        assert (tmp_path / "real").is_dir()
