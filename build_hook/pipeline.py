"""Pipeline coordinator: fetch -> build/push -> rollout restart.

A run advances ``locked -> fetching -> building -> restarting -> done`` and
drops to ``failed`` at the first stage that does not fully succeed. The build
permit is released when the run ends, whatever happened.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from build_hook.builder import BuilderManager
from build_hook.config import HookConfig, ProjectConfig
from build_hook.errors import BuilderNotReadyError, StageError
from build_hook.gate import Permit
from build_hook.images import build_all, plan_images
from build_hook.restart import restart_all
from build_hook.runtime import CommandRunner, copy_or_replace_dir, run_command, utc_now_iso, utc_timestamp, write_json
from build_hook.source import SourceFetcher, fetch_source


logger = logging.getLogger(__name__)


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    LOCKED = "locked"
    FETCHING = "fetching"
    BUILDING = "building"
    RESTARTING = "restarting"
    DONE = "done"
    FAILED = "failed"
    REJECTED = "rejected"


_STAGE_NAMES = {
    PipelineState.LOCKED: "builder",
    PipelineState.FETCHING: "fetch",
    PipelineState.BUILDING: "build",
    PipelineState.RESTARTING: "restart",
}


@dataclass
class PipelineResult:
    slug: str
    state: PipelineState = PipelineState.IDLE
    states: list[PipelineState] = field(default_factory=list)
    failed_stage: Optional[str] = None
    detail: Optional[str] = None
    started_at: str = field(default_factory=utc_now_iso)
    ended_at: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.states.append(state)

    def as_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "status": self.state.value,
            "states": [state.value for state in self.states],
            "failed_stage": self.failed_stage,
            "detail": self.detail,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


class BuildPipeline:
    def __init__(
        self,
        config: HookConfig,
        builder: BuilderManager,
        *,
        github_token: str = "",
        runner: CommandRunner = run_command,
        fetcher: SourceFetcher = fetch_source,
    ) -> None:
        self.config = config
        self.builder = builder
        self._github_token = github_token
        self._runner = runner
        self._fetcher = fetcher

    @property
    def _timeout_sec(self) -> float | None:
        return self.config.app.command_timeout_sec

    def _fetch(self, project: ProjectConfig, workspace: Path) -> None:
        self._fetcher(project.code, self._github_token, workspace, slug=project.slug)

    def _build(self, project: ProjectConfig, workspace: Path) -> None:
        images = plan_images(project.image, self.config.app.registry, workspace)
        build_all(
            images,
            workspace,
            slug=project.slug,
            builder_name=self.builder.name,
            runner=self._runner,
            timeout_sec=self._timeout_sec,
            env=self.builder.env,
        )

    def _restart(self, project: ProjectConfig) -> None:
        restart_all(
            project.deployments.namespace,
            project.deployments.resources,
            slug=project.slug,
            runner=self._runner,
            timeout_sec=self._timeout_sec,
            env=self.builder.env,
        )

    def run(self, project: ProjectConfig, permit: Permit) -> PipelineResult:
        """Run every stage for ``project`` while holding ``permit``; always releases it."""
        result = PipelineResult(slug=project.slug)
        workspace = self.config.workspace_for(project.slug)
        try:
            result.advance(PipelineState.LOCKED)
            self.builder.require_ready()

            result.advance(PipelineState.FETCHING)
            self._fetch(project, workspace)

            result.advance(PipelineState.BUILDING)
            self._build(project, workspace)

            result.advance(PipelineState.RESTARTING)
            self._restart(project)

            result.advance(PipelineState.DONE)
            logger.info("[%s] build finished; rollout restart issued", project.slug)
        except StageError as exc:
            self._fail(result, exc.stage, exc.message)
        except BuilderNotReadyError as exc:
            self._fail(result, "builder", f"Builder is not ready: {exc}")
        except Exception as exc:
            logger.exception("[%s] unexpected error while %s", project.slug, result.state.value)
            self._fail(result, _STAGE_NAMES.get(result.state, result.state.value), f"unexpected error: {exc}")
        finally:
            result.ended_at = utc_now_iso()
            try:
                self._record(result)
            finally:
                # last action of every run
                permit.release()
        return result

    def _fail(self, result: PipelineResult, stage: str, detail: str) -> None:
        result.failed_stage = stage
        result.detail = detail
        logger.error("[%s] %s stage failed: %s", result.slug, stage, detail)
        result.advance(PipelineState.FAILED)

    def _record(self, result: PipelineResult) -> None:
        runs_dir = self.config.app.runs_dir
        if runs_dir is None:
            return
        project_dir = runs_dir / result.slug
        run_dir = project_dir / utc_timestamp()
        try:
            write_json(run_dir / "summary.json", result.as_dict())
            copy_or_replace_dir(run_dir, project_dir / "latest")
        except OSError as exc:
            logger.warning("[%s] could not write run record under %s: %s", result.slug, project_dir, exc)
