from __future__ import annotations


class BuildHookError(RuntimeError):
    """Base class for every error raised by build-hook."""


class ConfigError(BuildHookError):
    """Raised when the configuration file cannot be read, parsed or validated."""


class UnknownProjectError(BuildHookError):
    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f"No build lock configured for project `{slug}`")


class BuilderNotReadyError(BuildHookError):
    def __init__(self, state: str, reason: str | None = None) -> None:
        self.state = state
        self.reason = reason
        detail = reason or f"builder is {state}"
        super().__init__(detail)


class StageError(BuildHookError):
    """A pipeline stage failed. Carries the project slug and stage name."""

    stage = "unknown"

    def __init__(self, slug: str, message: str) -> None:
        self.slug = slug
        self.message = message
        super().__init__(f"[{slug}] {self.stage} failed: {message}")


class FetchError(StageError):
    stage = "fetch"


class ImageBuildError(StageError):
    stage = "build"

    def __init__(self, slug: str, message: str, *, failed_index: int | None = None, tag: str | None = None) -> None:
        self.failed_index = failed_index
        self.tag = tag
        super().__init__(slug, message)


class RestartError(StageError):
    stage = "restart"

    def __init__(self, slug: str, failures: list[tuple[str, str]]) -> None:
        self.failures = list(failures)
        names = ", ".join(resource for resource, _ in self.failures)
        super().__init__(slug, f"{len(self.failures)} resource(s) failed to restart: {names}")
