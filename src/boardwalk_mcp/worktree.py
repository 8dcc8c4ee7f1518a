"""Per-task source isolation with git worktrees.

Each isolated task gets ``<project>/.boardwalk/worktrees/<short_id>`` checked
out on branch ``boardwalk/<short_id>``, branched from the primary branch tip.
``.boardwalk/`` is listed in ``.git/info/exclude`` so worktrees never make the
primary copy look dirty.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .agent.utils import sanitize_environment

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "boardwalk/"
PREVIEW_PREFIX = "boardwalk-preview/"
WORKTREE_ROOT = Path(".boardwalk") / "worktrees"
AUTOSTASH_MESSAGE = "boardwalk-autostash"
DIFF_EXCERPT_LIMIT = 8000

_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true", "GIT_MERGE_AUTOEDIT": "no"}


class WorktreeError(RuntimeError):
    """Raised when a worktree cannot be provisioned or a git call cannot run."""


@dataclass(slots=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def message(self) -> str:
        return (self.stderr.strip() or self.stdout.strip()) or f"git exited with {self.returncode}"


@dataclass(slots=True)
class MergeResult:
    success: bool
    error: str | None = None
    conflict_files: list[str] = field(default_factory=list)
    diff: str = ""


def branch_name(short_id: str) -> str:
    return f"{BRANCH_PREFIX}{short_id}"


def preview_branch_name(short_id: str) -> str:
    return f"{PREVIEW_PREFIX}{short_id}"


def is_preview_branch(name: str) -> bool:
    return name.startswith(PREVIEW_PREFIX)


def source_branch(preview: str) -> str:
    """Map ``boardwalk-preview/<id>`` back to ``boardwalk/<id>``."""

    return BRANCH_PREFIX + preview[len(PREVIEW_PREFIX):]


def _excerpt(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


class WorktreeManager:
    """Create, merge and remove task worktrees in a project repository."""

    def __init__(
        self,
        *,
        git: str = "git",
        primary_branch: str | None = None,
        diff_limit: int = DIFF_EXCERPT_LIMIT,
    ) -> None:
        self._git_bin = git
        self._primary_override = primary_branch
        self._diff_limit = diff_limit

    async def _git(self, *args: str, cwd: Path | str) -> GitResult:
        cmd = (self._git_bin, *args)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(_GIT_ENV),
            )
        except OSError as exc:
            raise WorktreeError(f"Unable to run git in {cwd}: {exc}") from exc
        stdout_bytes, stderr_bytes = await process.communicate()
        return GitResult(
            args=cmd,
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    def worktree_path(self, project_path: Path | str, short_id: str) -> Path:
        return Path(project_path) / WORKTREE_ROOT / short_id

    # Branch helpers

    async def branch_exists(self, project_path: Path | str, branch: str) -> bool:
        result = await self._git(
            "show-ref", "--verify", "--quiet", f"refs/heads/{branch}", cwd=project_path
        )
        return result.ok

    async def current_branch(self, project_path: Path | str) -> str:
        result = await self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=project_path)
        if not result.ok:
            raise WorktreeError(result.message)
        return result.stdout.strip()

    async def primary_branch(self, project_path: Path | str) -> str:
        if self._primary_override:
            return self._primary_override
        for candidate in ("main", "master"):
            if await self.branch_exists(project_path, candidate):
                return candidate
        return await self.current_branch(project_path)

    async def _is_dirty(self, path: Path | str) -> bool:
        result = await self._git("status", "--porcelain", cwd=path)
        return result.ok and bool(result.stdout.strip())

    async def _merge_in_progress(self, path: Path | str) -> bool:
        result = await self._git("rev-parse", "-q", "--verify", "MERGE_HEAD", cwd=path)
        return result.ok

    async def _unmerged_files(self, path: Path | str) -> list[str]:
        result = await self._git("diff", "--name-only", "--diff-filter=U", cwd=path)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def _stash(self, project_path: Path | str) -> bool:
        if not await self._is_dirty(project_path):
            return False
        result = await self._git(
            "stash", "push", "--include-untracked", "-m", AUTOSTASH_MESSAGE, cwd=project_path
        )
        if not result.ok:
            raise WorktreeError(f"Failed to stash local changes: {result.message}")
        logger.info("Auto-stashed local changes", extra={"project_path": str(project_path)})
        return True

    async def pop_auto_stash(self, project_path: Path | str) -> bool:
        """Restore the most recent auto-stash, if there is one."""

        listing = await self._git("stash", "list", "--format=%gd %s", cwd=project_path)
        if not listing.ok:
            return False
        for line in listing.stdout.splitlines():
            ref, _, subject = line.partition(" ")
            if AUTOSTASH_MESSAGE in subject:
                result = await self._git("stash", "pop", ref, cwd=project_path)
                if not result.ok:
                    logger.warning(
                        "Auto-stash could not be restored cleanly",
                        extra={"project_path": str(project_path), "error": result.message},
                    )
                    return False
                return True
        return False

    async def checkout_branch(
        self,
        project_path: Path | str,
        branch: str,
        *,
        skip_stash_pop: bool = False,
    ) -> bool:
        """Check out ``branch`` in the primary copy, carrying local changes in a stash.

        Returns ``True`` when local changes were stashed and left for the caller
        to restore (only possible with ``skip_stash_pop``).
        """

        stashed = await self._stash(project_path)
        result = await self._git("checkout", branch, cwd=project_path)
        if not result.ok:
            if stashed:
                await self.pop_auto_stash(project_path)
            raise WorktreeError(f"Failed to check out {branch}: {result.message}")
        if stashed and not skip_stash_pop:
            await self.pop_auto_stash(project_path)
            return False
        return stashed

    async def delete_preview_branch(self, project_path: Path | str, task_branch: str) -> None:
        preview = PREVIEW_PREFIX + task_branch[len(BRANCH_PREFIX):]
        if await self.branch_exists(project_path, preview):
            await self._git("branch", "-D", preview, cwd=project_path)

    async def ensure_not_on_task_branch(self, project_path: Path | str, task_branch: str) -> bool:
        """Move the primary copy off a task branch (or its preview) before merging/removal.

        Returns ``True`` when local changes were auto-stashed on the way.
        """

        stashed = False
        current = await self.current_branch(project_path)
        on_task = current == task_branch or (
            is_preview_branch(current) and source_branch(current) == task_branch
        )
        if on_task:
            primary = await self.primary_branch(project_path)
            stashed = await self.checkout_branch(project_path, primary, skip_stash_pop=True)
        await self.delete_preview_branch(project_path, task_branch)
        return stashed

    async def checkout_preview(self, project_path: Path | str, short_id: str) -> str:
        """Check out a throwaway copy of the task branch in the primary working copy."""

        task_branch = branch_name(short_id)
        if not await self.branch_exists(project_path, task_branch):
            raise WorktreeError(f"Branch {task_branch} does not exist")
        preview = preview_branch_name(short_id)
        await self._stash(project_path)
        result = await self._git("checkout", "-B", preview, task_branch, cwd=project_path)
        if not result.ok:
            raise WorktreeError(f"Failed to check out preview {preview}: {result.message}")
        return preview

    # Worktrees

    async def _ensure_excluded(self, project_path: Path) -> None:
        result = await self._git("rev-parse", "--git-common-dir", cwd=project_path)
        if not result.ok:
            return
        git_dir = Path(result.stdout.strip())
        if not git_dir.is_absolute():
            git_dir = project_path / git_dir
        exclude = git_dir / "info" / "exclude"
        pattern = "/.boardwalk/"
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if pattern not in existing.splitlines():
            exclude.parent.mkdir(parents=True, exist_ok=True)
            with exclude.open("a", encoding="utf-8") as handle:
                if existing and not existing.endswith("\n"):
                    handle.write("\n")
                handle.write(pattern + "\n")

    async def create_worktree(self, project_path: Path | str, short_id: str) -> Path:
        """Provision (or reuse) the task's worktree and return its path."""

        project = Path(project_path)
        probe = await self._git("rev-parse", "--is-inside-work-tree", cwd=project)
        if not probe.ok:
            raise WorktreeError(f"{project} is not a git repository: {probe.message}")

        path = self.worktree_path(project, short_id)
        branch = branch_name(short_id)
        if path.exists() and (path / ".git").exists():
            return path

        await self._ensure_excluded(project)
        await self._git("worktree", "prune", cwd=project)
        path.parent.mkdir(parents=True, exist_ok=True)

        if await self.branch_exists(project, branch):
            result = await self._git("worktree", "add", str(path), branch, cwd=project)
        else:
            primary = await self.primary_branch(project)
            result = await self._git("worktree", "add", "-b", branch, str(path), primary, cwd=project)
        if not result.ok:
            raise WorktreeError(f"Failed to create worktree for {short_id}: {result.message}")

        logger.info("Created worktree", extra={"path": str(path), "branch": branch})
        return path

    async def _commit_leftovers(self, worktree: Path, short_id: str) -> None:
        if not await self._is_dirty(worktree):
            return
        await self._git("add", "-A", cwd=worktree)
        result = await self._git(
            "commit", "-m", f"Uncommitted changes from task {short_id}", cwd=worktree
        )
        if result.ok:
            logger.info("Committed leftover worktree changes", extra={"short_id": short_id})
        else:
            logger.warning(
                "Could not commit leftover worktree changes",
                extra={"short_id": short_id, "error": result.message},
            )

    async def merge_worktree(self, project_path: Path | str, short_id: str) -> MergeResult:
        """Merge the task branch into the primary branch.

        On conflict the merge is aborted so the primary branch is left exactly
        as it was; the conflicting files and a diff excerpt are returned.
        """

        project = Path(project_path)
        branch = branch_name(short_id)
        stashed = False
        try:
            if not await self.branch_exists(project, branch):
                return MergeResult(success=False, error=f"Branch {branch} does not exist")

            worktree = self.worktree_path(project, short_id)
            if worktree.exists():
                await self._commit_leftovers(worktree, short_id)

            stashed = await self.ensure_not_on_task_branch(project, branch)
            primary = await self.primary_branch(project)
            if await self.current_branch(project) != primary:
                if await self.checkout_branch(project, primary, skip_stash_pop=True):
                    stashed = True
            if await self._stash(project):
                stashed = True

            merge = await self._git(
                "merge", "--no-ff", "-m", f"Merge task {short_id} ({branch})", branch, cwd=project
            )
            if merge.ok:
                logger.info("Merged task branch", extra={"branch": branch, "into": primary})
                await self.remove_worktree(project, short_id)
                return MergeResult(success=True)

            conflict_files = await self._unmerged_files(project)
            diff = await self._git("diff", cwd=project)
            if await self._merge_in_progress(project):
                await self._git("merge", "--abort", cwd=project)
            logger.warning(
                "Merge conflict",
                extra={"branch": branch, "files": conflict_files},
            )
            return MergeResult(
                success=False,
                error=merge.message,
                conflict_files=conflict_files,
                diff=_excerpt(diff.stdout, self._diff_limit),
            )
        except WorktreeError as exc:
            return MergeResult(success=False, error=str(exc))
        finally:
            if stashed:
                await self.pop_auto_stash(project)

    async def merge_main_into_worktree(self, project_path: Path | str, short_id: str) -> MergeResult:
        """Merge the primary branch into the task worktree, leaving conflict markers."""

        project = Path(project_path)
        worktree = self.worktree_path(project, short_id)
        if not worktree.exists():
            return MergeResult(success=False, error=f"Worktree for {short_id} not found")
        try:
            primary = await self.primary_branch(project)
            merge = await self._git("merge", "--no-edit", primary, cwd=worktree)
            if merge.ok:
                return MergeResult(success=True)
            conflict_files = await self._unmerged_files(worktree)
            if not conflict_files:
                return MergeResult(success=False, error=merge.message)
            diff = await self._git("diff", cwd=worktree)
            return MergeResult(
                success=True,
                conflict_files=conflict_files,
                diff=_excerpt(diff.stdout, self._diff_limit),
            )
        except WorktreeError as exc:
            return MergeResult(success=False, error=str(exc))

    async def remove_worktree(self, project_path: Path | str, short_id: str) -> None:
        """Tear down the task's worktree and branch. Never raises."""

        project = Path(project_path)
        path = self.worktree_path(project, short_id)
        branch = branch_name(short_id)
        try:
            if path.exists():
                result = await self._git("worktree", "remove", "--force", str(path), cwd=project)
                if not result.ok and path.exists():
                    shutil.rmtree(path, ignore_errors=True)
            await self._git("worktree", "prune", cwd=project)
            await self.delete_preview_branch(project, branch)
            if await self.branch_exists(project, branch):
                await self._git("branch", "-D", branch, cwd=project)
            logger.info("Removed worktree", extra={"path": str(path), "branch": branch})
        except (WorktreeError, OSError) as exc:
            logger.warning(
                "Failed to remove worktree",
                extra={"short_id": short_id, "error": str(exc)},
            )


__all__ = [
    "BRANCH_PREFIX",
    "GitResult",
    "MergeResult",
    "PREVIEW_PREFIX",
    "WorktreeError",
    "WorktreeManager",
    "branch_name",
    "is_preview_branch",
    "preview_branch_name",
    "source_branch",
]
