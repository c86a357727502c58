"""Lifecycle of the remote ``docker buildx`` builder.

The builder is process-wide. ``ensure_ready`` re-checks it on every call and
creates it only when ``docker buildx ls`` does not list it, so repeated calls
converge on the same selected builder.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from build_hook.config import BuilderSettings
from build_hook.errors import BuilderNotReadyError
from build_hook.runtime import CommandRunner, run_command


logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
KUBECONFIG_PATH = Path("/tmp/kubeconfig")
DOCKER_CONFIG_DIR = Path.home() / ".docker"


class BuilderState(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class BuilderStatus:
    state: BuilderState
    name: str
    reason: Optional[str] = None
    created: bool = False

    @property
    def ready(self) -> bool:
        return self.state is BuilderState.READY

    def as_dict(self) -> dict[str, object]:
        return {"state": self.state.value, "name": self.name, "reason": self.reason}


class _StepFailed(Exception):
    pass


def _list_builder_names(stdout: str) -> set[str]:
    names: set[str] = set()
    for line in stdout.splitlines():
        if not line.strip() or line[0].isspace():
            # node rows are indented under their builder
            continue
        first = line.split()[0]
        if first in {"NAME/NODE", "NAME"}:
            continue
        names.add(first.rstrip("*"))
    return names


class BuilderManager:
    def __init__(
        self,
        settings: BuilderSettings,
        *,
        runner: CommandRunner = run_command,
        service_account_dir: Path = SERVICE_ACCOUNT_DIR,
        kubeconfig_path: Path = KUBECONFIG_PATH,
        docker_config_dir: Path = DOCKER_CONFIG_DIR,
        environ: Mapping[str, str] | None = None,
        timeout_sec: float | None = None,
    ) -> None:
        self.settings = settings
        self._runner = runner
        self._service_account_dir = service_account_dir
        self._kubeconfig_path = kubeconfig_path
        self._docker_config_dir = docker_config_dir
        self._environ = os.environ if environ is None else environ
        self._timeout_sec = timeout_sec
        self._lock = threading.Lock()
        self._env: dict[str, str] = {}
        self._status = BuilderStatus(state=BuilderState.PENDING, name=settings.name)

    @property
    def name(self) -> str:
        return self.settings.name

    @property
    def status(self) -> BuilderStatus:
        return self._status

    @property
    def env(self) -> dict[str, str]:
        """Environment overlay for commands that talk to the builder."""
        return dict(self._env)

    def require_ready(self) -> None:
        status = self._status
        if not status.ready:
            raise BuilderNotReadyError(status.state.value, status.reason)

    def _run(self, description: str, cmd: list[str], env: Mapping[str, str] | None = None) -> str:
        result = self._runner(cmd, env=env if env is not None else self._env, timeout_sec=self._timeout_sec)
        if not result.ok:
            raise _StepFailed(f"Failed to {description}: {result.detail()}")
        return result.stdout

    def _provision_kubeconfig(self) -> None:
        token_path = self._service_account_dir / "token"
        if not token_path.exists():
            logger.info("Service account token not found, skipping kubeconfig setup")
            return

        host = self._environ.get("KUBERNETES_SERVICE_HOST")
        port = self._environ.get("KUBERNETES_SERVICE_PORT")
        if not host:
            raise _StepFailed("KUBERNETES_SERVICE_HOST not set")
        if not port:
            raise _StepFailed("KUBERNETES_SERVICE_PORT not set")
        try:
            token = token_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise _StepFailed(f"Failed to read service account token: {exc}") from exc

        env = {"KUBECONFIG": str(self._kubeconfig_path)}
        ca_cert = self._service_account_dir / "ca.crt"
        self._run(
            "set cluster",
            [
                "kubectl", "config", "set-cluster", "k8s",
                "--server", f"https://{host}:{port}",
                "--certificate-authority", str(ca_cert),
            ],
            env,
        )
        self._run("set credentials", ["kubectl", "config", "set-credentials", "k8s", "--token", token], env)
        self._run("set context", ["kubectl", "config", "set-context", "k8s", "--cluster", "k8s", "--user", "k8s"], env)
        self._run("use context", ["kubectl", "config", "use-context", "k8s"], env)
        self._env.update(env)
        logger.info("Wrote in-cluster kubeconfig to %s", self._kubeconfig_path)

    def _builder_exists(self) -> bool:
        stdout = self._run("list buildx builders", ["docker", "buildx", "ls"])
        return self.name in _list_builder_names(stdout)

    def _create_command(self) -> list[str]:
        cmd = [
            "docker", "buildx", "create",
            "--driver", self.settings.driver,
            "--name", self.name,
            "--driver-opt", f"namespace={self.settings.namespace}",
        ]
        for key, value in sorted(self.settings.driver_opts.items()):
            cmd.extend(["--driver-opt", f"{key}={value}"])
        return cmd

    def ensure_ready(self) -> BuilderStatus:
        with self._lock:
            logger.info(
                "Initializing buildx builder: %s (driver %s, namespace %s)",
                self.name,
                self.settings.driver,
                self.settings.namespace,
            )
            created = False
            try:
                self._provision_kubeconfig()
                try:
                    self._docker_config_dir.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    logger.warning("Could not create %s: %s", self._docker_config_dir, exc)

                if self._builder_exists():
                    logger.info("Builder %s already exists, using existing builder", self.name)
                else:
                    logger.info("Creating new buildx builder: %s", self.name)
                    self._run("create builder", self._create_command())
                    created = True
                    self._run("bootstrap builder", ["docker", "buildx", "inspect", "--bootstrap", self.name])
                self._run("use builder", ["docker", "buildx", "use", self.name])
            except _StepFailed as exc:
                logger.error("Buildx builder %s is not ready: %s", self.name, exc)
                self._status = BuilderStatus(state=BuilderState.FAILED, name=self.name, reason=str(exc))
                return self._status

            logger.info("Buildx builder %s ready", self.name)
            self._status = BuilderStatus(state=BuilderState.READY, name=self.name, created=created)
            return self._status

    def start_background(self, executor: Executor) -> Future:
        future = executor.submit(self.ensure_ready)
        future.add_done_callback(self._log_unexpected)
        return future

    def _log_unexpected(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Builder initialization crashed: %s", exc, exc_info=exc)
            self._status = BuilderStatus(state=BuilderState.FAILED, name=self.name, reason=str(exc))
