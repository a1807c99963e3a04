"""Git subprocess wrappers for publishing and rolling back customer sites."""

import subprocess
from pathlib import Path

from upserver.db.models import Commit

LOG_FORMAT = "%H|%at|%s"


class GitError(Exception):
    """Raised when a git command fails."""


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        detail = e.stderr.strip() or e.stdout.strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from e
    except FileNotFoundError as e:
        raise GitError("git executable not found") from e


def is_git_repo(path: str | Path) -> bool:
    """Check if the path is inside a git work tree."""
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except GitError:
        return False


def has_remote(path: str | Path) -> bool:
    return bool(run_git(["remote"], cwd=path))


def status_porcelain(path: str | Path) -> str:
    """Machine-readable status; empty when the tree is clean."""
    return run_git(["status", "--porcelain"], cwd=path)


def add_all(path: str | Path) -> str:
    return run_git(["add", "."], cwd=path)


def commit(path: str | Path, message: str) -> str:
    """Commit staged changes and return the new HEAD hash."""
    run_git(["commit", "-m", message], cwd=path)
    return rev_parse(path)


def rev_parse(path: str | Path, ref: str = "HEAD") -> str:
    return run_git(["rev-parse", ref], cwd=path)


def verify_commit(path: str | Path, ref: str) -> str:
    """Resolve ``ref`` to a full commit hash. Raises GitError if it isn't a commit."""
    return run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=path)


def restore_from(path: str | Path, source: str) -> str:
    """Make index and work tree match ``source`` without moving HEAD."""
    return run_git(["restore", "--source", source, "--staged", "--worktree", "."], cwd=path)


def push(path: str | Path) -> str:
    return run_git(["push"], cwd=path)


def log(path: str | Path, limit: int = 10) -> list[Commit]:
    """Most recent commits on HEAD, newest first."""
    try:
        output = run_git(["log", "-n", str(limit), f"--format={LOG_FORMAT}"], cwd=path)
    except GitError:
        # Empty repository: no HEAD yet.
        if not is_git_repo(path):
            raise
        return []

    commits = []
    for line in output.splitlines():
        if not line:
            continue
        hash_, timestamp, subject = line.split("|", 2)
        commits.append(Commit(hash=hash_, timestamp=int(timestamp), subject=subject))
    return commits
