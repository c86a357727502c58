from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from build_hook.config import ImageConfig
from build_hook.errors import ImageBuildError
from build_hook.runtime import CommandRunner, remove_path, run_command


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildImage:
    tag: str
    dockerfile_path: Path
    context_dir: Path


def plan_images(images: Sequence[ImageConfig], registry: str, workspace: Path) -> list[BuildImage]:
    workspace = workspace.resolve()
    planned: list[BuildImage] = []
    for image in images:
        dockerfile_path = workspace / image.location
        planned.append(
            BuildImage(
                tag=f"{registry}/{image.repository}:{image.tag}",
                dockerfile_path=dockerfile_path,
                context_dir=dockerfile_path.parent,
            )
        )
    return planned


def buildx_command(image: BuildImage, builder_name: str) -> list[str]:
    return [
        "docker",
        "buildx",
        "build",
        "--builder",
        builder_name,
        "--no-cache",
        "--push",
        "-t",
        image.tag,
        "--file",
        str(image.dockerfile_path),
        str(image.context_dir),
    ]


def cleanup_workspace(workspace: Path) -> None:
    try:
        remove_path(workspace)
    except OSError as exc:
        logger.warning("Failed to remove temporary repository directory %s: %s", workspace, exc)


def _check_dockerfiles(images: Sequence[BuildImage], slug: str) -> None:
    if not images:
        raise ImageBuildError(slug, "no images to build")
    for image in images:
        if not image.dockerfile_path.is_file():
            raise ImageBuildError(
                slug,
                f"Dockerfile for {image.tag} not found at {image.dockerfile_path}",
                tag=image.tag,
            )


def _build_one(
    image: BuildImage,
    index: int,
    *,
    slug: str,
    runner: CommandRunner,
    builder_name: str,
    timeout_sec: float | None,
    env: Mapping[str, str] | None,
) -> None:
    logger.info("[%s] building %s using %s", slug, image.tag, image.dockerfile_path)
    result = runner(buildx_command(image, builder_name), cwd=image.context_dir, env=env, timeout_sec=timeout_sec)

    if result.stdout.strip():
        logger.debug("Build stdout for %s: %s", image.tag, result.stdout.rstrip())
    if not result.ok and result.stderr.strip():
        logger.warning("Build stderr for %s: %s", image.tag, result.stderr.rstrip())

    if not result.ok:
        raise ImageBuildError(
            slug,
            f"Build failed for {image.tag} with exit code: {result.exit_code}",
            failed_index=index,
            tag=image.tag,
        )
    logger.info("[%s] successfully built and pushed image: %s", slug, image.tag)


def build_all(
    images: Sequence[BuildImage],
    workspace: Path,
    *,
    slug: str,
    builder_name: str,
    runner: CommandRunner = run_command,
    timeout_sec: float | None = None,
    env: Mapping[str, str] | None = None,
) -> None:
    """Build and push ``images`` in order, stopping at the first failure.

    Every Dockerfile is checked before the first build starts. The workspace is
    removed exactly once when the sequence ends, whatever the outcome; a failed
    removal is only logged.
    """
    try:
        _check_dockerfiles(images, slug)
        for index, image in enumerate(images):
            _build_one(
                image,
                index,
                slug=slug,
                runner=runner,
                builder_name=builder_name,
                timeout_sec=timeout_sec,
                env=env,
            )
    finally:
        cleanup_workspace(workspace)
