"""Publish and roll back customer sites through git.

Publishing commits the working tree and pushes. Rolling back never rewrites
history: the tree is restored from an older commit and committed on top.
"""

import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from upserver.core.errors import InvalidCommit, RollbackBlockedByLocalChanges
from upserver.db.models import Commit
from upserver.integrations import git
from upserver.integrations.git import GitError

logger = logging.getLogger(__name__)

COMMIT_HASH = re.compile(r"^[a-f0-9]{7,40}$", re.I)
MAX_HISTORY = 50

NO_CHANGES = "No changes to publish"
ALREADY_CURRENT = "This version is already current. Nothing to roll back."
NO_ROLLBACK_CHANGES = "Rollback produced no file changes."


@dataclass
class PublishResult:
    success: bool
    message: str
    commit_hash: str | None = None
    warning: str | None = None
    error: str | None = None
    rolled_back_to: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _notify(notifier, customer_id: str | None, message: str, commit_hash: str | None):
    if notifier is None:
        return
    notifier.notify("publish", customer_id=customer_id, message=message, commit_hash=commit_hash)


def publish(site_path: str | Path, notifier=None, customer_id: str | None = None) -> PublishResult:
    """Commit every local change and push it."""
    try:
        if not git.status_porcelain(site_path):
            return PublishResult(success=False, message=NO_CHANGES)

        git.add_all(site_path)
        commit_hash = git.commit(site_path, f"Updates via UpServer [{_timestamp()}]")
    except GitError as e:
        logger.error("Publish failed for %s: %s", site_path, e)
        return PublishResult(
            success=False, message=f"Failed to publish changes: {e}", error=str(e)
        )

    short = commit_hash[:7]
    try:
        git.push(site_path)
    except GitError as e:
        logger.warning("Push failed for %s after commit %s: %s", site_path, short, e)
        _notify(notifier, customer_id, "Changes committed locally but push failed", commit_hash)
        return PublishResult(
            success=True,
            commit_hash=commit_hash,
            message=(
                f"Changes committed locally ({short}) but push failed. "
                "You may need to push manually or check your git configuration."
            ),
            warning="push_failed",
        )

    logger.info("Published %s at %s", site_path, short)
    _notify(notifier, customer_id, "Changes published successfully", commit_hash)
    return PublishResult(
        success=True,
        commit_hash=commit_hash,
        message=f"Changes published successfully! Commit: {short}",
    )


def last_publish(site_path: str | Path) -> Commit | None:
    commits = git.log(site_path, limit=1)
    return commits[0] if commits else None


def history(site_path: str | Path, limit: int = 10) -> list[Commit]:
    """Recent commits, newest first; ``limit`` is clamped to 1..50."""
    limit = max(1, min(MAX_HISTORY, int(limit)))
    return git.log(site_path, limit=limit)


def _discard_partial_rollback(site_path: str | Path) -> None:
    """Put index and work tree back to HEAD after a rollback that did not commit."""
    try:
        git.restore_from(site_path, "HEAD")
    except GitError as e:
        logger.error("Could not reset %s after failed rollback: %s", site_path, e)


def rollback(
    site_path: str | Path,
    commit_hash: str,
    notifier=None,
    customer_id: str | None = None,
) -> PublishResult:
    """Restore the site to ``commit_hash`` as a new commit and push it.

    Raises InvalidCommit for a malformed or unknown hash and
    RollbackBlockedByLocalChanges when there is unpublished work.
    """
    if not commit_hash or not COMMIT_HASH.match(commit_hash):
        raise InvalidCommit(f"Invalid commit hash: {commit_hash!r}")

    if git.status_porcelain(site_path):
        raise RollbackBlockedByLocalChanges()

    try:
        target = git.verify_commit(site_path, commit_hash)
    except GitError as e:
        raise InvalidCommit(f"Unknown commit: {commit_hash}") from e

    if target == git.rev_parse(site_path):
        return PublishResult(success=False, message=ALREADY_CURRENT)

    short = target[:7]
    try:
        git.restore_from(site_path, target)
        if not git.status_porcelain(site_path):
            return PublishResult(success=False, message=NO_ROLLBACK_CHANGES)
        new_hash = git.commit(site_path, f"Rollback via UpServer [{_timestamp()}] to {short}")
    except GitError as e:
        logger.error("Rollback of %s to %s failed: %s", site_path, short, e)
        _discard_partial_rollback(site_path)
        return PublishResult(
            success=False, message=f"Failed to roll back changes: {e}", error=str(e)
        )

    try:
        git.push(site_path)
    except GitError as e:
        logger.warning("Push failed for %s after rollback to %s: %s", site_path, short, e)
        _notify(notifier, customer_id, f"Rollback to {short} committed locally but push failed", new_hash)
        return PublishResult(
            success=True,
            commit_hash=new_hash,
            rolled_back_to=target,
            message=f"Rolled back to {short} locally but push failed.",
            warning="push_failed",
        )

    logger.info("Rolled back %s to %s (new commit %s)", site_path, short, new_hash[:7])
    _notify(notifier, customer_id, f"Rollback completed to {short}", new_hash)
    return PublishResult(
        success=True,
        commit_hash=new_hash,
        rolled_back_to=target,
        message=f"Rolled back successfully to {short}.",
    )
