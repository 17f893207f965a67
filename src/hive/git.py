from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from hive.errors import HiveStateError

logger = logging.getLogger(__name__)

FALLBACK_IDENTITY = ("hive", "hive@localhost")


class WorktreeManager:
    """Thin wrapper over the git worktree/branch/merge commands the coordinator needs."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise HiveStateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _identity_args(self, cwd: Path) -> list[str]:
        proc = self._run_git(["config", "user.email"], cwd=cwd, check=False)
        if proc.returncode == 0 and proc.stdout.strip():
            return []
        name, email = FALLBACK_IDENTITY
        return ["-c", f"user.name={name}", "-c", f"user.email={email}"]

    def is_repository(self) -> bool:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def head_sha(self, cwd: Path | None = None) -> str:
        return self._run_git(["rev-parse", "HEAD"], cwd=cwd).stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
        )
        return proc.returncode == 0

    def add_worktree(self, path: Path, branch: str, base: str = "HEAD") -> Path:
        if path.exists():
            self.remove_worktree(path)
        if self.branch_exists(branch):
            self._run_git(["branch", "-D", branch])
        path.parent.mkdir(parents=True, exist_ok=True)
        self._run_git(["worktree", "add", "-b", branch, str(path), base])
        logger.debug("worktree %s on %s", path, branch)
        return path

    def remove_worktree(self, path: Path) -> None:
        self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        self.prune()

    def prune(self) -> None:
        self._run_git(["worktree", "prune"], check=False)

    def delete_branch(self, branch: str) -> None:
        self._run_git(["branch", "-D", branch], check=False)

    def commit_all(self, cwd: Path, message: str) -> str | None:
        """Stage and commit everything in `cwd`; returns the new sha or None when clean."""
        self._run_git(["add", "-A", "--", ".", ":(exclude).hive"], cwd=cwd)
        staged = self._run_git(["diff", "--cached", "--quiet"], cwd=cwd, check=False)
        if staged.returncode == 0:
            return None
        self._run_git([*self._identity_args(cwd), "commit", "-m", message], cwd=cwd)
        return self.head_sha(cwd)

    def changed_files(self, base: str, branch: str) -> list[str]:
        proc = self._run_git(["diff", "--name-only", f"{base}...{branch}"])
        return sorted(line.strip() for line in proc.stdout.splitlines() if line.strip())

    def merge(self, branch: str, message: str) -> list[str]:
        """Merge `branch` into the current branch; returns conflicted paths (empty on success)."""
        proc = self._run_git(
            [*self._identity_args(self.repo_root), "merge", "--no-ff", "-m", message, branch],
            check=False,
        )
        if proc.returncode == 0:
            return []
        conflicted = self.conflicted_files()
        if not conflicted:
            raise HiveStateError(proc.stderr.strip() or proc.stdout.strip())
        return conflicted

    def conflicted_files(self) -> list[str]:
        proc = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
        return sorted(line.strip() for line in proc.stdout.splitlines() if line.strip())

    def abort_merge(self) -> None:
        self._run_git(["merge", "--abort"], check=False)

    def commit_merge(self, message: str) -> str:
        self._run_git(["add", "-A", "--", ".", ":(exclude).hive"])
        self._run_git([*self._identity_args(self.repo_root), "commit", "--no-edit", "-m", message])
        return self.head_sha()
