from __future__ import annotations

import enum
import logging
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Mapping, Optional

from build_hook.builder import BuilderManager
from build_hook.config import ProjectConfig
from build_hook.errors import UnknownProjectError
from build_hook.gate import BuildLockRegistry
from build_hook.pipeline import BuildPipeline, PipelineResult, PipelineState


logger = logging.getLogger(__name__)


class TriggerStatus(str, enum.Enum):
    STARTED = "started"
    NOT_FOUND = "not_found"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass
class TriggerOutcome:
    status: TriggerStatus
    slug: str
    message: str
    future: Optional[Future] = None

    @property
    def state(self) -> PipelineState:
        """`locked` once a run owns the permit, `rejected` for every refusal."""
        if self.status is TriggerStatus.STARTED:
            return PipelineState.LOCKED
        return PipelineState.REJECTED


class BuildDispatcher:
    """Turns a trigger into a gated pipeline run on the worker pool."""

    def __init__(
        self,
        projects: Mapping[str, ProjectConfig],
        locks: BuildLockRegistry,
        pipeline: BuildPipeline,
        builder: BuilderManager,
        executor: Executor,
    ) -> None:
        self.projects = dict(projects)
        self.locks = locks
        self.pipeline = pipeline
        self.builder = builder
        self.executor = executor

    def trigger(self, slug: str) -> TriggerOutcome:
        project = self.projects.get(slug)
        if project is None:
            logger.warning("No configuration found for project `%s`, skipping...", slug)
            return TriggerOutcome(TriggerStatus.NOT_FOUND, slug, f"No configuration found for project `{slug}`")

        status = self.builder.status
        if not status.ready:
            reason = status.reason or f"builder is {status.state.value}"
            logger.warning("Rejecting build for project `%s`: builder not ready (%s)", slug, reason)
            return TriggerOutcome(TriggerStatus.UNAVAILABLE, slug, f"Builder is not ready: {reason}")

        try:
            permit = self.locks.try_acquire(slug)
        except UnknownProjectError:
            logger.error("No build lock configured for project `%s`", slug)
            return TriggerOutcome(TriggerStatus.ERROR, slug, f"Build lock missing for project `{slug}`")
        if permit is None:
            logger.warning("Build already in progress for project `%s`", slug)
            return TriggerOutcome(TriggerStatus.BUSY, slug, f"Build already in progress for project `{slug}`")

        try:
            future = self.executor.submit(self.pipeline.run, project, permit)
        except RuntimeError as exc:
            # executor already shut down
            permit.release()
            logger.error("Could not dispatch build for project `%s`: %s", slug, exc)
            return TriggerOutcome(TriggerStatus.UNAVAILABLE, slug, f"Build worker unavailable: {exc}")

        future.add_done_callback(lambda done: _log_crash(slug, done))
        logger.info("Build started for project `%s`", slug)
        return TriggerOutcome(
            TriggerStatus.STARTED,
            slug,
            "Build started; rollout restart will run after build completes",
            future=future,
        )


def _log_crash(slug: str, future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Build worker for project `%s` crashed: %s", slug, exc, exc_info=exc)


def run_foreground(dispatcher: BuildDispatcher, slug: str) -> tuple[TriggerOutcome, Optional[PipelineResult]]:
    """Trigger a build and wait for it; used by the CLI."""
    outcome = dispatcher.trigger(slug)
    if outcome.future is None:
        return outcome, None
    return outcome, outcome.future.result()
