"""Extension commands: proxy-side operations with bespoke argument handling."""

from __future__ import annotations

import functools
import logging
import re
import subprocess
from pathlib import Path

from sandbox_proxy.core.models import EXIT_DENIED, EXIT_EXEC_ERROR
from sandbox_proxy.sandbox.executor import ExecutionResult, ExtensionContext

logger = logging.getLogger(__name__)

_RUN_ID_RE = re.compile(r"[0-9]+")
_SLUG_RE = re.compile(r"[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+")

_GITHUB_URL_PREFIXES = (
    "git@github.com:",
    "ssh://git@github.com/",
    "https://github.com/",
    "http://github.com/",
)


def parse_github_slug(url: str) -> str | None:
    """Extract "owner/repo" from a GitHub remote URL.

    Returns None for non-GitHub remotes or anything that does not look like a
    plain two-component slug.
    """
    url = url.strip()
    for prefix in _GITHUB_URL_PREFIXES:
        if url.startswith(prefix):
            slug = url[len(prefix):].rstrip("/")
            if slug.endswith(".git"):
                slug = slug[: -len(".git")]
            return slug if _SLUG_RE.fullmatch(slug) and ".." not in slug else None
    return None


@functools.lru_cache(maxsize=8)
def detect_repo(workspace: Path) -> str | None:
    """Detect the workspace repository slug from its origin remote (cached)."""
    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            capture_output=True,
            text=True,
            cwd=workspace,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not run git to detect repository: {e}")
        return None
    if result.returncode != 0:
        return None
    return parse_github_slug(result.stdout)


def handle_run_logs(args: tuple[str, ...], context: ExtensionContext) -> ExecutionResult:
    """gh ext run-logs <run-id>: download logs for a run in the workspace repo."""
    if len(args) != 1:
        return ExecutionResult.failure(EXIT_DENIED, "usage: gh ext run-logs <run-id>")

    run_id = args[0]
    # Digits only: the id is spliced into an API path
    if not _RUN_ID_RE.fullmatch(run_id):
        return ExecutionResult.failure(EXIT_DENIED, f"invalid run id: {run_id}")

    repo = detect_repo(context.workspace)
    if repo is None:
        return ExecutionResult.failure(
            EXIT_EXEC_ERROR, "could not detect repository from git remote"
        )

    api_path = f"/repos/{repo}/actions/runs/{run_id}/logs"
    return context.run_gh(["api", api_path])
