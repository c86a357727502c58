from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from git import GitCommandError, Repo

from build_hook.config import CodeConfig
from build_hook.errors import FetchError
from build_hook.runtime import remove_path


logger = logging.getLogger(__name__)

TOKEN_USERNAME = "x-access-token"
REDACTED = "***"

# never wait on a credential prompt
NON_INTERACTIVE_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_ASKPASS": "true",
    "SSH_ASKPASS": "true",
    "GCM_INTERACTIVE": "never",
}


class SourceFetcher(Protocol):
    def __call__(self, code: CodeConfig, token: str, workspace: Path, *, slug: str) -> Path: ...


def authenticated_url(url: str, token: str) -> str:
    if not token:
        return url
    parts = urlsplit(url)
    host = parts.netloc.rsplit("@", 1)[-1]
    netloc = f"{TOKEN_USERNAME}:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def redact(text: str, token: str) -> str:
    if not token:
        return text
    return text.replace(quote(token, safe=""), REDACTED).replace(token, REDACTED)


def _git_error_detail(exc: GitCommandError) -> str:
    stderr = (exc.stderr or "").strip()
    if stderr.startswith("stderr:"):
        stderr = stderr[len("stderr:") :].strip()
    return stderr.strip("'").strip() or f"git exited with status {exc.status}"


def fetch_source(code: CodeConfig, token: str, workspace: Path, *, slug: str = "") -> Path:
    """Replace ``workspace`` with a fresh shallow clone of ``code.branch``."""
    label = slug or workspace.name
    try:
        if remove_path(workspace):
            logger.debug("Removed stale workspace %s", workspace)
    except OSError as exc:
        raise FetchError(label, f"Failed to clean workspace {workspace}: {exc}") from exc
    try:
        workspace.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FetchError(label, f"Failed to prepare workspace {workspace.parent}: {exc}") from exc

    logger.info(
        "Cloning %s (branch %s) into %s%s",
        code.url,
        code.branch,
        workspace,
        " with access token" if token else "",
    )
    try:
        repo = Repo.clone_from(
            authenticated_url(code.url, token),
            workspace,
            depth=1,
            branch=code.branch,
            single_branch=True,
            env=NON_INTERACTIVE_ENV,
        )
    except GitCommandError as exc:
        detail = redact(_git_error_detail(exc), token)
        raise FetchError(label, f"Failed to clone {code.url} at branch '{code.branch}': {detail}") from None
    except OSError as exc:
        raise FetchError(label, f"Failed to clone {code.url}: {redact(str(exc), token)}") from None

    try:
        if token:
            repo.remotes.origin.set_url(code.url)
        head = repo.head.commit.hexsha
    except (GitCommandError, ValueError) as exc:
        raise FetchError(label, f"Cloned {code.url} but could not read it back: {redact(str(exc), token)}") from None
    finally:
        repo.close()

    logger.info("Checked out %s@%s (%s)", code.url, code.branch, head[:12])
    return workspace
