from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from build_hook.config import DEFAULT_CONFIG_PATH
from build_hook.errors import ConfigError


def _split_tokens(raw: str) -> tuple[str, ...]:
    return tuple(token.strip() for token in raw.split(",") if token.strip())


def _parse_port(raw: str) -> int:
    try:
        port = int(raw)
    except ValueError:
        raise ConfigError(f"BUILD_HOOK_PORT: must be an integer, got {raw!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"BUILD_HOOK_PORT: must be between 1 and 65535, got {port}")
    return port


@dataclass(frozen=True)
class Settings:
    """Process-level settings read from the environment."""

    bearer_tokens: tuple[str, ...] = ()
    github_token: str = field(default="", repr=False)
    config_path: str = DEFAULT_CONFIG_PATH
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            bearer_tokens=_split_tokens(env.get("BEARER_TOKENS", "")),
            github_token=env.get("GITHUB_TOKEN", "").strip(),
            config_path=env.get("BUILD_HOOK_CONFIG", DEFAULT_CONFIG_PATH),
            host=env.get("BUILD_HOOK_HOST", "0.0.0.0"),
            port=_parse_port(env.get("BUILD_HOOK_PORT", "5000").strip()),
            log_level=env.get("BUILD_HOOK_LOG_LEVEL", "INFO").upper(),
        )
