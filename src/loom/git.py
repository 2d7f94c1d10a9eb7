"""Best-effort git lookups for session metadata."""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 5


def get_git_branch(project_path: str | Path) -> str | None:
    """Current branch name of the repository containing ``project_path``.

    Returns None when git is missing, the path is not inside a repository,
    HEAD is detached, or the lookup fails for any other reason.
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=project_path,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("git branch lookup failed for %s: %s", project_path, e)
        return None

    if result.returncode != 0:
        return None

    branch = result.stdout.strip()
    if not branch or branch == "HEAD":
        return None
    return branch


async def get_git_branch_async(project_path: str | Path) -> str | None:
    return await asyncio.to_thread(get_git_branch, project_path)
