"""git worktree provisioning for isolated sessions."""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from .errors import NotAVersionControlRepo, WorkspaceCreationFailed, WorkspaceRemovalFailed
from .pty import CommandResult, run_command

logger = logging.getLogger("agent_shells.worktree")

LOCAL_CONFIG_FILES = (".claude/settings.local.json",)


GitRunner = Callable[[Sequence[str], str], Awaitable[CommandResult]]


async def run_git(args: Sequence[str], cwd: str) -> CommandResult:
    return await run_command(["git", *args], cwd=cwd)


def branch_slug(branch: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", branch).strip("-.")
    return slug or "worktree"


@dataclass
class WorktreeResult:
    path: str
    branch: str
    origin_cwd: str
    created: bool = True


class WorktreeManager:
    def __init__(
        self,
        runner: Optional[GitRunner] = None,
        *,
        local_config_files: Sequence[str] = LOCAL_CONFIG_FILES,
    ):
        self._git = runner or run_git
        self.local_config_files = tuple(local_config_files)

    async def repo_root(self, cwd: str) -> Optional[str]:
        if not os.path.isdir(cwd):
            return None
        res = await self._git(["rev-parse", "--show-toplevel"], cwd)
        return res.stdout if res.ok and res.stdout else None

    async def current_branch(self, cwd: str) -> Optional[str]:
        if not os.path.isdir(cwd):
            return None
        res = await self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
        if not res.ok or not res.stdout or res.stdout == "HEAD":
            return None
        return res.stdout

    async def detect_origin(self, cwd: str) -> Optional[str]:
        """Main checkout root when ``cwd`` sits inside a linked worktree, else None."""
        if not os.path.isdir(cwd):
            return None
        res = await self._git(["rev-parse", "--git-common-dir", "--git-dir"], cwd)
        if not res.ok:
            return None
        lines = res.stdout.splitlines()
        if len(lines) < 2:
            return None
        # relative when cwd is the top of the main checkout
        common_dir = (Path(cwd) / lines[0]).resolve()
        git_dir = (Path(cwd) / lines[1]).resolve()
        if common_dir == git_dir:
            return None
        return str(common_dir.parent)

    async def _remote(self, root: str) -> Optional[str]:
        res = await self._git(["remote"], root)
        remotes = res.stdout.split() if res.ok else []
        for name in ("upstream", "origin"):
            if name in remotes:
                return name
        return None

    async def _ref_exists(self, root: str, ref: str) -> bool:
        res = await self._git(["rev-parse", "--verify", "--quiet", ref], root)
        return res.ok

    async def _base_ref(self, root: str, remote: Optional[str], base_branch: str) -> str:
        if remote and await self._ref_exists(root, f"refs/remotes/{remote}/{base_branch}"):
            return f"{remote}/{base_branch}"
        if await self._ref_exists(root, f"refs/heads/{base_branch}"):
            return base_branch
        return "HEAD"

    async def create(self, cwd: str, branch: str, base_branch: str = "main") -> WorktreeResult:
        """Create (or reuse) a worktree for ``branch`` next to the repository at ``cwd``.

        Raises NotAVersionControlRepo when ``cwd`` is not inside a git checkout
        and WorkspaceCreationFailed when git refuses to add the worktree or its
        directory cannot be created.
        """
        branch = (branch or "").strip()
        if not branch:
            raise WorkspaceCreationFailed(branch, "branch name is empty")
        root = await self.repo_root(cwd)
        if not root:
            raise NotAVersionControlRepo(cwd)

        root_path = Path(root)
        target = root_path.parent / f"{root_path.name}-worktrees" / branch_slug(branch)
        if target.exists():
            logger.info("Reusing existing worktree %s", target)
            return WorktreeResult(path=str(target), branch=branch, origin_cwd=root, created=False)

        remote = await self._remote(root)
        if remote:
            fetched = await self._git(["fetch", remote], root)
            if not fetched.ok:
                logger.warning("git fetch %s failed in %s: %s", remote, root, fetched.stderr)

        base_ref = await self._base_ref(root, remote, base_branch or "main")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceCreationFailed(branch, f"cannot create {target.parent}: {exc}") from exc

        args: List[str]
        if await self._ref_exists(root, f"refs/heads/{branch}"):
            args = ["worktree", "add", str(target), branch]
        elif await self._ref_exists(root, f"refs/remotes/upstream/{branch}"):
            args = ["worktree", "add", "--track", "-b", branch, str(target), f"upstream/{branch}"]
        elif await self._ref_exists(root, f"refs/remotes/origin/{branch}"):
            args = ["worktree", "add", "--track", "-b", branch, str(target), f"origin/{branch}"]
        else:
            args = ["worktree", "add", "-b", branch, str(target), base_ref]

        try:
            res = await self._git(args, root)
        except OSError as exc:
            raise WorkspaceCreationFailed(branch, str(exc)) from exc
        if not res.ok:
            raise WorkspaceCreationFailed(branch, res.stderr or f"git exited {res.returncode}")

        logger.info("Created worktree %s on %s (base %s)", target, branch, base_ref)
        self._copy_local_config(root_path, target)
        return WorktreeResult(path=str(target), branch=branch, origin_cwd=root)

    def _copy_local_config(self, root: Path, target: Path) -> None:
        for rel in self.local_config_files:
            src = root / rel
            if not src.is_file():
                continue
            dst = target / rel
            try:
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dst)
            except OSError as exc:
                logger.warning("Could not copy %s into %s: %s", rel, target, exc)

    async def remove(self, origin_cwd: Optional[str], path: str) -> None:
        """Remove a worktree, escalating until the directory is gone.

        Never raises; anything left behind is logged.
        """
        repo = origin_cwd if origin_cwd and os.path.isdir(origin_cwd) else None
        if repo is None:
            repo = str(Path(path).parent)
        try:
            await self._remove(repo, path)
        except WorkspaceRemovalFailed as exc:
            logger.error("%s", exc)

    async def _remove(self, repo: str, path: str) -> None:
        first = await self._git(["worktree", "remove", "--force", path], repo)
        if first.ok and not os.path.exists(path):
            await self._git(["worktree", "prune"], repo)
            logger.info("Removed worktree %s", path)
            return

        logger.warning("git worktree remove failed for %s: %s; pruning and retrying", path, first.stderr)
        await self._git(["worktree", "prune"], repo)
        retry = await self._git(["worktree", "remove", "--force", path], repo)
        if retry.ok and not os.path.exists(path):
            await self._git(["worktree", "prune"], repo)
            return

        if os.path.exists(path):
            await asyncio.to_thread(shutil.rmtree, path, True)
        await self._git(["worktree", "prune"], repo)
        if os.path.exists(path):
            raise WorkspaceRemovalFailed(path, retry.stderr or "directory still present after rmtree")
        logger.info("Removed worktree %s after prune fallback", path)
