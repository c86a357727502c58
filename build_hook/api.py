"""HTTP surface: health check plus one authenticated trigger route per project."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from build_hook.auth import RequestContext, require_user
from build_hook.builder import BuilderManager
from build_hook.config import HookConfig
from build_hook.dispatch import BuildDispatcher, TriggerStatus
from build_hook.gate import BuildLockRegistry
from build_hook.pipeline import BuildPipeline
from build_hook.runtime import CommandRunner, run_command
from build_hook.settings import Settings
from build_hook.source import SourceFetcher, fetch_source


logger = logging.getLogger(__name__)

_STATUS_CODES = {
    TriggerStatus.STARTED: status.HTTP_200_OK,
    TriggerStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    TriggerStatus.BUSY: status.HTTP_409_CONFLICT,
    TriggerStatus.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    TriggerStatus.ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def create_app(
    config: HookConfig,
    settings: Settings,
    *,
    runner: CommandRunner = run_command,
    fetcher: SourceFetcher = fetch_source,
    builder: Optional[BuilderManager] = None,
    executor: Optional[ThreadPoolExecutor] = None,
    bootstrap_builder: bool = True,
) -> FastAPI:
    builder = builder or BuilderManager(
        config.app.builder,
        runner=runner,
        timeout_sec=config.app.command_timeout_sec,
    )
    executor = executor or ThreadPoolExecutor(
        max_workers=max(len(config.projects), 1) + 1,
        thread_name_prefix="build-hook",
    )
    projects = config.projects_by_slug()
    pipeline = BuildPipeline(
        config,
        builder,
        github_token=settings.github_token,
        runner=runner,
        fetcher=fetcher,
    )
    dispatcher = BuildDispatcher(
        projects,
        BuildLockRegistry.from_slugs(projects),
        pipeline,
        builder,
        executor,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.bearer_tokens:
            logger.warning("BEARER_TOKENS is empty; every build trigger will be rejected")
        logger.info("build-hook serving %d project(s): %s", len(projects), ", ".join(sorted(projects)))
        if bootstrap_builder:
            builder.start_background(executor)
        yield
        logger.info("Shutting down; waiting for running builds")
        await asyncio.get_running_loop().run_in_executor(None, executor.shutdown)

    app = FastAPI(title="build-hook", lifespan=lifespan)
    app.state.config = config
    app.state.settings = settings
    app.state.builder = builder
    app.state.dispatcher = dispatcher

    @app.exception_handler(HTTPException)
    async def plain_text_errors(request: Request, exc: HTTPException) -> PlainTextResponse:
        return PlainTextResponse(f"{exc.detail}\n", status_code=exc.status_code, headers=exc.headers)

    @app.get("/health")
    def health() -> dict[str, object]:
        return {"status": "ok", "builder": builder.status.as_dict()}

    @app.post("/{slug}", response_class=PlainTextResponse)
    def trigger(slug: str, context: RequestContext = Depends(require_user)) -> PlainTextResponse:
        logger.info(
            "Received build hook for project `%s` (request %s, token %s)",
            slug,
            context.request_id,
            context.user.fingerprint,
        )
        outcome = dispatcher.trigger(slug)
        return PlainTextResponse(f"{outcome.message}\n", status_code=_STATUS_CODES[outcome.status])

    return app
