# site_diff/branches.py
"""
Git branch switching for the branch-to-branch comparison flow.

The working tree is treated as a black box: ``git checkout <branch>`` is run in
*repo_dir* and the caller waits *settle_delay* seconds for dev servers and
file watchers to pick the change up.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional, Sequence, Union

from site_diff.errors import SiteDiffError
from site_diff.logger import get_logger

log = get_logger("branches")


class BranchSwitchError(SiteDiffError):
    """``git checkout`` exited with a non-zero status."""


class BranchSwitcher:
    def __init__(
        self,
        repo_dir: Union[str, Path, None] = None,
        *,
        settle_delay: float = 2.0,
        git: str = "git",
    ) -> None:
        self.repo_dir = Path(repo_dir) if repo_dir else None
        self.settle_delay = settle_delay
        self.git = git

    async def _run(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            self.git,
            *args,
            cwd=str(self.repo_dir) if self.repo_dir else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", "replace").strip() or f"exit code {proc.returncode}"
            raise BranchSwitchError(f"git {' '.join(args)} failed: {detail}")
        return stdout.decode("utf-8", "replace").strip()

    async def current_branch(self) -> Optional[str]:
        name = await self._run("rev-parse", "--abbrev-ref", "HEAD")
        return None if name == "HEAD" else name

    async def switch(self, branch: str, extra_args: Sequence[str] = ()) -> None:
        """Check out *branch* and wait for the environment to settle."""
        log.info("Switching to branch %s", branch)
        await self._run("checkout", *extra_args, branch)
        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)
