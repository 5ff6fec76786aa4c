"""Sync and commit-and-push workflows.

A repository lives at ``<repos_dir>/<identity>/<name>``. Syncing always
throws the existing working copy away and clones again; committing stages
everything, commits, pulls with rebase and pushes the current branch.
Both run under a per-repository lock.
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path

from errors import AuthRequired, InvalidArgument, NotFound, VcsFailure
from git_repo import (
    DEFAULT_PROVIDER,
    WorkingCopy,
    authenticated_url,
    clear_working_copy,
    repo_name_from_url,
)

logger = logging.getLogger(__name__)

NO_CHANGES_MESSAGE = "No changes to commit"

_locks: dict[tuple[str, str], threading.Lock] = {}
_locks_guard = threading.Lock()


@contextmanager
def repo_lock(identity: str, repo_name: str):
    key = (identity, repo_name)
    with _locks_guard:
        lock = _locks.setdefault(key, threading.Lock())
    with lock:
        yield


def check_repo_name(repo_name: str) -> str:
    if not repo_name or repo_name.startswith(".") or "/" in repo_name or "\\" in repo_name:
        raise InvalidArgument(f"Invalid repository name: {repo_name!r}")
    return repo_name


def user_repo_path(repos_dir: Path, identity: str, repo_name: str) -> Path:
    user_dir = Path(repos_dir) / identity
    user_dir.mkdir(parents=True, exist_ok=True)
    return user_dir / check_repo_name(repo_name)


def existing_repo_path(repos_dir: Path, identity: str, repo_name: str) -> Path:
    path = user_repo_path(repos_dir, identity, repo_name)
    if not path.is_dir():
        raise NotFound(f"Repository not found: {repo_name}")
    return path


def open_working_copy(repos_dir: Path, identity: str, repo_name: str) -> WorkingCopy:
    return WorkingCopy(existing_repo_path(repos_dir, identity, repo_name))


def sync_repository(repos_dir: Path, identity: str, repo_url: str, token: str,
                    provider: str = DEFAULT_PROVIDER) -> str:
    """Replace the local working copy of ``repo_url`` with a fresh clone.

    Returns the repository name used to address it afterwards.
    """
    if not token:
        raise AuthRequired("Access token is required for private repositories")
    if not repo_url:
        raise InvalidArgument("Repository URL is required")
    repo_name = repo_name_from_url(repo_url)
    clone_url = authenticated_url(repo_url, token, provider)

    with repo_lock(identity, repo_name):
        path = user_repo_path(repos_dir, identity, repo_name)
        if path.exists() or path.is_symlink():
            logger.info(f"Removing existing working copy {identity}/{repo_name}")
            clear_working_copy(path)
        logger.info(f"Cloning {repo_url} into {identity}/{repo_name}")
        try:
            wc = WorkingCopy.clone(clone_url, path, secret=token)
        except VcsFailure as e:
            logger.error(f"Sync of {repo_url} failed: {e.message}")
            clear_working_copy(path)
            raise
        wc.set_remote(repo_url, secret=token)
    return repo_name


def commit_and_push(repos_dir: Path, identity: str, repo_name: str, repo_url: str,
                    token: str, provider: str = DEFAULT_PROVIDER,
                    message: str = None, default_message: str = "Update markdown files") -> bool:
    """Commit every local change and push it to ``origin``.

    Returns ``False`` without touching the repository when there is nothing
    to commit. A failed rebase-pull that left no rebase behind (no upstream
    branch yet, empty remote) is logged and the push goes ahead; a conflicting
    rebase raises :class:`errors.RebaseConflict`.
    """
    if not token:
        raise AuthRequired("Access token is required to push changes")
    if not repo_url:
        raise InvalidArgument("Repository URL is required")
    push_url = authenticated_url(repo_url, token, provider)

    with repo_lock(identity, repo_name):
        wc = open_working_copy(repos_dir, identity, repo_name)
        if not wc.status().entries():
            logger.info(f"{identity}/{repo_name}: nothing to commit")
            return False

        wc.set_remote(push_url, secret=token)
        try:
            branch = wc.current_branch()
            wc.add_all()
            wc.commit((message or "").strip() or default_message)
            logger.info(f"{identity}/{repo_name}: committed on {branch}")
            try:
                wc.pull_rebase(branch, secret=token)
            except VcsFailure as e:
                logger.warning(f"{identity}/{repo_name}: pull --rebase skipped: {e.message}")
            wc.push(branch, secret=token)
            logger.info(f"{identity}/{repo_name}: pushed {branch}")
        finally:
            wc.set_remote(repo_url, secret=token)
    return True


def switch_branch(repos_dir: Path, identity: str, repo_name: str, branch: str) -> None:
    with repo_lock(identity, repo_name):
        open_working_copy(repos_dir, identity, repo_name).checkout(branch)
