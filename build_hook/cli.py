from __future__ import annotations

import argparse
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor

from build_hook.builder import BuilderManager
from build_hook.config import HookConfig, describe_config, load_config
from build_hook.dispatch import BuildDispatcher, TriggerStatus, run_foreground
from build_hook.errors import ConfigError
from build_hook.gate import BuildLockRegistry
from build_hook.pipeline import BuildPipeline
from build_hook.settings import Settings


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
EXIT_CONFIG = 2

logger = logging.getLogger("build_hook")


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr, force=True)


def _load(args: argparse.Namespace, settings: Settings) -> HookConfig:
    return load_config(args.config or settings.config_path)


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from build_hook.api import create_app

    config = _load(args, settings)
    app = create_app(config, settings)
    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("Server starting on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower(), log_config=None)
    return 0


def cmd_check_config(args: argparse.Namespace, settings: Settings) -> int:
    config = _load(args, settings)
    if args.json:
        print(json.dumps(config.model_dump(mode="json"), indent=2, sort_keys=True))
    else:
        print(describe_config(config))
    return 0


def _builder(config: HookConfig) -> BuilderManager:
    return BuilderManager(config.app.builder, timeout_sec=config.app.command_timeout_sec)


def _pipeline(config: HookConfig, builder: BuilderManager, settings: Settings) -> BuildPipeline:
    return BuildPipeline(config, builder, github_token=settings.github_token)


def cmd_ensure_builder(args: argparse.Namespace, settings: Settings) -> int:
    config = _load(args, settings)
    status = _builder(config).ensure_ready()
    if args.json:
        print(json.dumps(status.as_dict(), indent=2, sort_keys=True))
    return 0 if status.ready else 1


def cmd_build(args: argparse.Namespace, settings: Settings) -> int:
    config = _load(args, settings)
    builder = _builder(config)
    if not builder.ensure_ready().ready:
        return 1

    projects = config.projects_by_slug()
    pipeline = _pipeline(config, builder, settings)
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="build-hook") as executor:
        dispatcher = BuildDispatcher(projects, BuildLockRegistry.from_slugs(projects), pipeline, builder, executor)
        outcome, result = run_foreground(dispatcher, args.slug)

    if result is None:
        logger.error("%s", outcome.message)
        return 2 if outcome.status is TriggerStatus.NOT_FOUND else 1
    if args.json:
        print(json.dumps(result.as_dict(), indent=2, sort_keys=True))
    return 0 if result.ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="build-hook",
        description="Webhook-triggered image build and rollout restart service",
    )
    parser.add_argument("--config", default=None, help="Path to config.toml (default: $BUILD_HOOK_CONFIG or config.toml)")
    parser.add_argument("--log-level", default=None, help="Logging level (default: $BUILD_HOOK_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: $BUILD_HOOK_HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default: $BUILD_HOOK_PORT or 5000)")
    serve_parser.set_defaults(func=cmd_serve)

    check_parser = subparsers.add_parser("check-config", help="Validate the configuration and print a summary")
    check_parser.add_argument("--json", action="store_true", help="Print the parsed configuration as JSON")
    check_parser.set_defaults(func=cmd_check_config)

    builder_parser = subparsers.add_parser("ensure-builder", help="Create or select the buildx builder once")
    builder_parser.add_argument("--json", action="store_true", help="Print the builder status as JSON")
    builder_parser.set_defaults(func=cmd_ensure_builder)

    build_parser_ = subparsers.add_parser("build", help="Run one project's pipeline in the foreground")
    build_parser_.add_argument("slug", help="Project slug from the configuration")
    build_parser_.add_argument("--json", action="store_true", help="Print the pipeline result as JSON")
    build_parser_.set_defaults(func=cmd_build)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = Settings.from_environment()
    except ConfigError as exc:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid environment: %s", exc)
        return EXIT_CONFIG
    args.log_level = (args.log_level or settings.log_level).upper()
    configure_logging(args.log_level)

    try:
        return args.func(args, settings)
    except ConfigError as exc:
        logger.error("Could not load config: %s", exc)
        return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
