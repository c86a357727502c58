from __future__ import annotations

from pathlib import Path

import pytest

from build_hook import images
from build_hook.config import ImageConfig
from build_hook.errors import ImageBuildError
from build_hook.images import build_all, buildx_command, plan_images
from tests.utils.fakes import FakeRunner, fail_when, tagged


def _workspace(tmp_path: Path, *dockerfiles: str) -> Path:
    workspace = tmp_path / "api"
    workspace.mkdir()
    for rel in dockerfiles:
        path = workspace / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("FROM scratch\n", encoding="utf-8")
    return workspace


def _plan(workspace: Path, names: list[str]):
    configs = [ImageConfig(repository=f"acme/{name}", location=f"{name}/Dockerfile", tag="latest") for name in names]
    return plan_images(configs, "registry.example.com", workspace)


def test_plan_images_derives_tag_dockerfile_and_context(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    configs = [
        ImageConfig(repository="acme/web", location="docker/web/Dockerfile", tag="v2"),
        ImageConfig(repository="acme/root", location="Dockerfile", tag="latest"),
    ]

    planned = plan_images(configs, "registry.example.com", workspace)

    assert planned[0].tag == "registry.example.com/acme/web:v2"
    assert planned[0].dockerfile_path == workspace.resolve() / "docker" / "web" / "Dockerfile"
    assert planned[0].context_dir == workspace.resolve() / "docker" / "web"
    assert planned[1].context_dir == workspace.resolve()
    assert planned[0].dockerfile_path.is_absolute()


def test_buildx_command_forces_rebuild_and_push(tmp_path: Path) -> None:
    image = _plan(_workspace(tmp_path), ["web"])[0]
    cmd = buildx_command(image, "builder")
    assert cmd[:5] == ["docker", "buildx", "build", "--builder", "builder"]
    assert "--no-cache" in cmd and "--push" in cmd
    assert cmd[cmd.index("-t") + 1] == "registry.example.com/acme/web:latest"
    assert cmd[cmd.index("--file") + 1] == str(image.dockerfile_path)
    assert cmd[-1] == str(image.context_dir)


def test_all_images_built_in_order_then_workspace_removed(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path, "web/Dockerfile", "worker/Dockerfile", "cron/Dockerfile")
    runner = FakeRunner(responders=[lambda cmd: (0, "pushed\n", "")])

    build_all(_plan(workspace, ["web", "worker", "cron"]), workspace, slug="api", builder_name="builder", runner=runner)

    built = [cmd[cmd.index("-t") + 1] for cmd in runner.commands("docker", "buildx", "build")]
    assert built == [
        "registry.example.com/acme/web:latest",
        "registry.example.com/acme/worker:latest",
        "registry.example.com/acme/cron:latest",
    ]
    assert not workspace.exists()


@pytest.mark.parametrize(("failing", "expected_calls"), [(1, 1), (2, 2), (3, 3)])
def test_sequence_stops_at_first_failure(tmp_path: Path, failing: int, expected_calls: int) -> None:
    names = ["a", "b", "c"]
    workspace = _workspace(tmp_path, *(f"{name}/Dockerfile" for name in names))
    failing_tag = f"registry.example.com/acme/{names[failing - 1]}:latest"
    runner = FakeRunner(responders=[fail_when(tagged(failing_tag), stderr="push denied")])

    with pytest.raises(ImageBuildError) as excinfo:
        build_all(_plan(workspace, names), workspace, slug="api", builder_name="builder", runner=runner)

    assert len(runner.commands("docker", "buildx", "build")) == expected_calls
    assert excinfo.value.failed_index == failing - 1
    assert excinfo.value.tag == failing_tag
    assert "exit code: 1" in str(excinfo.value)
    assert not workspace.exists()


def test_missing_dockerfile_fails_before_any_build(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path, "worker/Dockerfile")
    runner = FakeRunner()

    with pytest.raises(ImageBuildError) as excinfo:
        build_all(_plan(workspace, ["web", "worker"]), workspace, slug="api", builder_name="builder", runner=runner)

    assert runner.calls == []
    assert excinfo.value.failed_index is None
    assert "Dockerfile for registry.example.com/acme/web:latest not found" in str(excinfo.value)
    assert not workspace.exists()


def test_dockerfile_that_is_a_directory_fails_precondition(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    (workspace / "web" / "Dockerfile").mkdir(parents=True)
    runner = FakeRunner()

    with pytest.raises(ImageBuildError, match="not found"):
        build_all(_plan(workspace, ["web"]), workspace, slug="api", builder_name="builder", runner=runner)
    assert runner.calls == []


def test_cleanup_failure_does_not_fail_successful_sequence(tmp_path: Path, monkeypatch, caplog) -> None:
    workspace = _workspace(tmp_path, "web/Dockerfile")
    removals: list[Path] = []

    def broken_remove(path: Path) -> bool:
        removals.append(path)
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(images, "remove_path", broken_remove)

    build_all(_plan(workspace, ["web"]), workspace, slug="api", builder_name="builder", runner=FakeRunner())

    assert removals == [workspace]
    assert "Failed to remove temporary repository directory" in caplog.text


def test_build_output_logging_levels(tmp_path: Path, caplog) -> None:
    workspace = _workspace(tmp_path, "a/Dockerfile", "b/Dockerfile")
    failing = "registry.example.com/acme/b:latest"
    runner = FakeRunner(
        responders=[
            lambda cmd: (1, "step 1/2\n", "denied: push not allowed\n") if failing in cmd else (0, "ok build\n", "progress\n"),
        ]
    )
    caplog.set_level("DEBUG", logger="build_hook.images")

    with pytest.raises(ImageBuildError):
        build_all(_plan(workspace, ["a", "b"]), workspace, slug="api", builder_name="builder", runner=runner)

    warnings = [record.getMessage() for record in caplog.records if record.levelname == "WARNING"]
    debugs = [record.getMessage() for record in caplog.records if record.levelname == "DEBUG"]
    assert any("ok build" in message for message in debugs)
    assert warnings == [f"Build stderr for {failing}: denied: push not allowed"]


def test_builds_use_builder_environment(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path, "web/Dockerfile")
    runner = FakeRunner()
    build_all(
        _plan(workspace, ["web"]),
        workspace,
        slug="api",
        builder_name="builder",
        runner=runner,
        env={"KUBECONFIG": "/tmp/kubeconfig"},
    )
    assert runner.calls[0].env == {"KUBECONFIG": "/tmp/kubeconfig"}
