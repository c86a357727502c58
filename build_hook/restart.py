from __future__ import annotations

import logging
from typing import Mapping, Sequence

from build_hook.errors import RestartError
from build_hook.runtime import CommandRunner, run_command


logger = logging.getLogger(__name__)


def rollout_command(namespace: str, resource: str) -> list[str]:
    return ["kubectl", "rollout", "restart", "-n", namespace, resource]


def restart_all(
    namespace: str,
    resources: Sequence[str],
    *,
    slug: str,
    runner: CommandRunner = run_command,
    timeout_sec: float | None = None,
    env: Mapping[str, str] | None = None,
) -> None:
    """Restart every resource, then raise once if any of them failed."""
    failures: list[tuple[str, str]] = []
    for resource in resources:
        logger.info("[%s] restarting `%s` in namespace `%s`", slug, resource, namespace)
        result = runner(rollout_command(namespace, resource), env=env, timeout_sec=timeout_sec)
        if result.ok:
            continue
        detail = result.detail()
        logger.warning("[%s] failed to restart `%s` in namespace `%s`: %s", slug, resource, namespace, detail)
        failures.append((resource, detail))

    if failures:
        raise RestartError(slug, failures)
