from __future__ import annotations

import re
import tempfile
import tomllib
from pathlib import Path, PurePosixPath
from typing import Annotated, Any, Optional
from urllib.parse import urlparse

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from build_hook.errors import ConfigError


DEFAULT_CONFIG_PATH = "config.toml"
DEFAULT_WORKSPACE_ROOT = Path(tempfile.gettempdir()) / "build-hook"

_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_HOST_RE = re.compile(r"^[A-Za-z0-9.\-:\[\]]+$")


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be empty")
    return value.strip()


NonBlank = Annotated[str, AfterValidator(_not_blank)]


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class BuilderSettings(_Model):
    name: NonBlank = "builder"
    driver: NonBlank = "kubernetes"
    namespace: NonBlank = "build"
    driver_opts: dict[str, str] = Field(default_factory=dict)


class AppConfig(_Model):
    registry: str
    workspace_root: Path = DEFAULT_WORKSPACE_ROOT
    command_timeout_sec: Optional[float] = Field(None, gt=0)
    runs_dir: Optional[Path] = None
    builder: BuilderSettings = Field(default_factory=BuilderSettings)

    @field_validator("registry")
    @classmethod
    def check_registry(cls, value: str) -> str:
        value = _not_blank(value).rstrip("/")
        if "://" in value:
            raise ValueError("must be a registry address without a URL scheme")
        return value


class CodeConfig(_Model):
    url: str
    branch: NonBlank

    @field_validator("url")
    @classmethod
    def check_https_url(cls, value: str) -> str:
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme != "https" or not parsed.netloc:
            raise ValueError("must be a valid HTTPS URL")
        host = parsed.netloc.rsplit("@", 1)[-1]
        if not host or not _HOST_RE.match(host):
            raise ValueError("must be a valid HTTPS URL")
        return value


class ImageConfig(_Model):
    repository: NonBlank
    location: str
    tag: NonBlank

    @field_validator("location")
    @classmethod
    def check_location(cls, value: str) -> str:
        value = _not_blank(value)
        path = PurePosixPath(value)
        if path.is_absolute():
            raise ValueError("must be a relative path")
        if any(part == ".." for part in path.parts):
            raise ValueError("must not contain parent paths")
        if value.endswith("/") or path.name in {"", "."}:
            raise ValueError("must name a Dockerfile, not a directory")
        return value


class DeploymentConfig(_Model):
    namespace: NonBlank
    resources: list[str] = Field(..., min_length=1)

    @field_validator("resources")
    @classmethod
    def check_resource_ids(cls, value: list[str]) -> list[str]:
        for resource in value:
            kind, sep, name = resource.partition("/")
            if not sep or not kind or not name or "/" in name or any(ch.isspace() for ch in resource):
                raise ValueError(f"'{resource}' must have the form <kind>/<name>")
        return value


class ProjectConfig(_Model):
    name: NonBlank
    slug: str
    code: CodeConfig
    image: list[ImageConfig] = Field(..., min_length=1)
    deployments: DeploymentConfig

    @field_validator("slug")
    @classmethod
    def check_slug(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        if not _SLUG_RE.match(value):
            raise ValueError("may only contain letters, digits, '.', '_' and '-' and must start with a letter or digit")
        return value


class HookConfig(_Model):
    app: AppConfig
    projects: list[ProjectConfig] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_unique_slugs(self) -> "HookConfig":
        seen: set[str] = set()
        for project in self.projects:
            if project.slug in seen:
                raise ValueError(f"duplicate project slug '{project.slug}'")
            seen.add(project.slug)
        return self

    def projects_by_slug(self) -> dict[str, ProjectConfig]:
        return {project.slug: project for project in self.projects}

    def workspace_for(self, slug: str) -> Path:
        return self.app.workspace_root / slug


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ())) or "config"
    message = error.get("msg", "invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, ") :]
    return f"{location}: {message}"


def parse_config(raw: dict[str, Any]) -> HookConfig:
    try:
        return HookConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(_first_error(exc)) from exc


def load_config(path: str | Path = DEFAULT_CONFIG_PATH) -> HookConfig:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file '{path}': {exc}") from exc
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse config file '{path}': {exc}") from exc
    return parse_config(raw)


def describe_config(config: HookConfig) -> str:
    lines = [
        "---",
        f"Image Registry: {config.app.registry}",
        f"Workspace Root: {config.app.workspace_root}",
        f"Builder: {config.app.builder.name} ({config.app.builder.driver}, namespace {config.app.builder.namespace})",
    ]
    for project in config.projects:
        lines.extend(
            [
                "",
                "---",
                f"Project: {project.name}",
                f"  Slug: {project.slug}",
                f"  Code URL: {project.code.url}",
                f"  Code Branch: {project.code.branch}",
            ]
        )
        for image in project.image:
            lines.append(f"  Image: {config.app.registry}/{image.repository}:{image.tag} <- {image.location}")
        lines.append(f"  Deployment Namespace: {project.deployments.namespace}")
        lines.append(f"  Deployment Resources: {', '.join(project.deployments.resources)}")
    return "\n".join(lines)
