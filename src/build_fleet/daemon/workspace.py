"""Per-job git worktrees and fleet-mode repository checkouts."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Protocol

from build_fleet.daemon.errors import StateStoreError, WorkspaceError
from build_fleet.daemon.fsutil import file_lock

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "daemon-issue-"
_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_WORKSPACE_RE = re.compile(rf"^{WORKSPACE_PREFIX}(\d+)$")


class GitRunner(Protocol):
    def __call__(self, args: Sequence[str], *, cwd: Path | None = None) -> str: ...


def run_git(args: Sequence[str], *, cwd: Path | None = None, timeout_seconds: int = 600) -> str:
    """Run `git <args>` and return stdout; raise WorkspaceError on any failure."""

    try:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        raise WorkspaceError(f"git {args[0]} could not run: {error}") from error
    if completed.returncode != 0:
        raise WorkspaceError(
            f"git {args[0]} failed ({completed.returncode}): {completed.stderr.strip()}",
        )
    return completed.stdout


def branch_name(issue: int) -> str:
    return f"daemon/issue-{issue}"


def split_repo(repo: str) -> tuple[str, str]:
    """Split `org/repo` into validated parts."""

    org, sep, name = repo.strip().partition("/")
    if not sep:
        raise WorkspaceError(f"Repository must look like org/repo, got {repo!r}")
    _validate_name(org, kind="organization")
    _validate_name(name, kind="repository")
    return org, name


def _validate_name(value: str, *, kind: str) -> None:
    if not _NAME_RE.match(value) or value in {".", ".."}:
        raise WorkspaceError(f"Invalid {kind} name: {value!r}")


class WorkspaceManager:
    """Creates isolated working trees so concurrent jobs never share a checkout."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repo_dir: Path,
        worktrees_dir: Path,
        repos_dir: Path,
        base_branch: str = "main",
        clone_url_template: str = "https://github.com/{org}/{repo}.git",
        git: GitRunner = run_git,
        lock_timeout_seconds: float = 30.0,
    ) -> None:
        self.repo_dir = repo_dir
        self.worktrees_dir = worktrees_dir
        self.repos_dir = repos_dir
        self.base_branch = base_branch
        self.clone_url_template = clone_url_template
        self.git = git
        self.lock_timeout_seconds = lock_timeout_seconds

    def repo_path(self, repo: str | None) -> Path:
        """Checkout location for `repo` (the local repository when empty); never clones."""

        if not repo:
            return self.repo_dir
        org, name = split_repo(repo)
        return self.repos_dir / org / name

    def repo_root_for(self, repo: str | None) -> Path:
        if not repo:
            return self.repo_dir
        org, name = split_repo(repo)
        return self.ensure_repo(org, name)

    def ensure_repo(self, org: str, repo: str) -> Path:
        """Return a ready checkout of `org/repo`, cloning only on first use."""

        _validate_name(org, kind="organization")
        _validate_name(repo, kind="repository")
        path = self.repos_dir / org / repo
        if (path / ".git").exists():
            logger.debug("Reusing checkout %s for %s/%s", path, org, repo)
            return path
        if path.exists() and any(path.iterdir()):
            raise WorkspaceError(f"{path} exists but is not a git checkout")

        url = self.clone_url_template.format(org=org, repo=repo)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise WorkspaceError(f"Cannot create {path.parent}: {error}") from error
        self.git(["clone", "--depth=1", url, str(path)])
        logger.info("Cloned %s/%s to %s", org, repo, path)
        return path

    def workspace_path(self, issue: int) -> Path:
        return self.worktrees_dir / f"{WORKSPACE_PREFIX}{issue}"

    def create_job_workspace(self, repo_root: Path, issue: int) -> Path:
        """Create `daemon-issue-<n>` on branch `daemon/issue-<n>` from the base branch.

        Worktree operations are serialized through a lock file because git
        itself does not tolerate concurrent `worktree add` on one repository.
        A leftover worktree or branch from an earlier run is removed first.
        Pruning always runs, since git keeps a branch checked out by a
        registered worktree even after its directory is gone.
        """

        path = self.workspace_path(issue)
        branch = branch_name(issue)
        try:
            with file_lock(
                self.worktrees_dir / ".worktree.lock",
                timeout_seconds=self.lock_timeout_seconds,
            ):
                if path.exists():
                    logger.info("Removing stale worktree %s", path)
                    self._try_git(["worktree", "remove", str(path), "--force"], cwd=repo_root)
                    if path.exists():
                        shutil.rmtree(path, ignore_errors=True)
                self._try_git(["worktree", "prune"], cwd=repo_root)
                self._try_git(["branch", "-D", branch], cwd=repo_root)
                self.git(
                    ["worktree", "add", str(path), "-b", branch, self.base_branch],
                    cwd=repo_root,
                )
        except StateStoreError as error:
            raise WorkspaceError(f"Worktree lock unavailable: {error}") from error
        logger.info("Worktree created at %s", path)
        return path

    def owning_repo(self, path: Path) -> Path | None:
        """Repository a worktree was added from, read from its `.git` pointer file."""

        try:
            pointer = (path / ".git").read_text(encoding="utf-8").strip()
        except OSError:
            return None
        prefix, _, gitdir = pointer.partition(":")
        if prefix.strip() != "gitdir" or not gitdir.strip():
            return None
        admin_dir = Path(gitdir.strip())
        if admin_dir.parent.name != "worktrees" or admin_dir.parent.parent.name != ".git":
            return None
        return admin_dir.parent.parent.parent

    def remove_job_workspace(self, path: Path, repo_root: Path | None = None) -> bool:
        """Best-effort release of a job worktree. Fleet clones are never removed.

        Without `repo_root` the owning repository is taken from the worktree
        itself, falling back to the local repository.
        """

        if not self._is_job_workspace(path):
            logger.debug("Not removing %s: outside %s", path, self.worktrees_dir)
            return False
        root = repo_root or self.owning_repo(path) or self.repo_dir
        issue = _issue_from_workspace(path)
        removed = True
        if path.exists():
            if not self._try_git(["worktree", "remove", str(path), "--force"], cwd=root):
                try:
                    shutil.rmtree(path)
                except OSError as error:
                    logger.warning("Failed to remove worktree %s: %s", path, error)
                    removed = False
        self._try_git(["worktree", "prune"], cwd=root)
        if issue is not None:
            self._try_git(["branch", "-D", branch_name(issue)], cwd=root)
        if removed:
            logger.info("Removed worktree %s", path)
        return removed

    def iter_job_workspaces(self) -> Iterator[tuple[int, Path]]:
        if not self.worktrees_dir.is_dir():
            return
        for child in sorted(self.worktrees_dir.iterdir()):
            issue = _issue_from_workspace(child)
            if issue is not None and child.is_dir():
                yield issue, child

    def _is_job_workspace(self, path: Path) -> bool:
        try:
            resolved = path.resolve()
            root = self.worktrees_dir.resolve()
        except OSError:
            return False
        return resolved.parent == root and _issue_from_workspace(resolved) is not None

    def _try_git(self, args: Sequence[str], *, cwd: Path) -> bool:
        try:
            self.git(args, cwd=cwd)
        except WorkspaceError as error:
            logger.debug("Ignoring git failure: %s", error)
            return False
        return True


def _issue_from_workspace(path: Path) -> int | None:
    match = _WORKSPACE_RE.match(path.name)
    return int(match.group(1)) if match else None
