"""GitPython wrapper around one working copy.

:class:`WorkingCopy` exposes the handful of git operations the editor needs
(clone, branches, checkout, status, add, commit, remote, pull, push) and turns
every git failure into :class:`errors.VcsFailure`. Remote URLs that carry an
access token are built with :func:`authenticated_url` right before use; any
error text is scrubbed with :func:`redact` so the token never reaches a log
line or an API response.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

import git
from git.exc import GitCommandError, GitError, InvalidGitRepositoryError, NoSuchPathError

from errors import InvalidArgument, NotFound, RebaseConflict, VcsFailure

logger = logging.getLogger(__name__)

PROVIDERS = ("github", "gitlab")
DEFAULT_PROVIDER = "github"
REMOTE_NAME = "origin"


def repo_name_from_url(repo_url: str) -> str:
    """``https://github.com/org/notes.git`` -> ``notes``."""
    name = repo_url.strip().rstrip("/").split("/")[-1]
    name = name.removesuffix(".git")
    if not name or name.startswith(".") or ":" in name or "\\" in name:
        raise InvalidArgument(f"Cannot derive a repository name from {repo_url!r}")
    return name


def authenticated_url(repo_url: str, token: str, provider: str = DEFAULT_PROVIDER) -> str:
    """Return ``repo_url`` with ``token`` placed in its authority.

    GitHub takes the bare token as user name, GitLab expects ``oauth2:<token>``.
    Only http(s) URLs have an authority to carry a credential; anything else
    (a local path, ``file://``, ssh) is returned as is.
    """
    if provider not in PROVIDERS:
        raise InvalidArgument(f"Unknown provider: {provider}")
    parts = urlsplit(repo_url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return repo_url
    host = parts.netloc.rpartition("@")[2]
    secret = quote(token, safe="")
    if provider == "gitlab":
        userinfo = f"oauth2:{secret}"
    else:
        userinfo = secret
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))


def redact(text: str, *secrets: Optional[str]) -> str:
    for secret in secrets:
        if not secret:
            continue
        text = text.replace(secret, "***")
        encoded = quote(secret, safe="")
        if encoded != secret:
            text = text.replace(encoded, "***")
    return text


def _git_message(error: GitError) -> str:
    if isinstance(error, GitCommandError):
        detail = (error.stderr or error.stdout or "").strip()
        if detail.startswith("stderr:"):
            detail = detail[len("stderr:"):].strip()
        detail = detail.strip("'").strip()
        if detail:
            return detail
    return str(error)


@dataclass
class StatusSummary:
    """Working tree changes split the way ``git status`` reports them."""

    modified: list = field(default_factory=list)
    created: list = field(default_factory=list)
    not_added: list = field(default_factory=list)
    deleted: list = field(default_factory=list)
    renamed: list = field(default_factory=list)
    staged: list = field(default_factory=list)

    def entries(self) -> list:
        """Flatten into ``[{"file": ..., "status": ...}]``.

        Staged paths not already reported by another bucket show up as
        ``modified``.
        """
        result = []
        for path in self.modified:
            result.append({"file": path, "status": "modified"})
        for path in self.created + self.not_added:
            result.append({"file": path, "status": "added"})
        for path in self.deleted:
            result.append({"file": path, "status": "deleted"})
        for _, new_path in self.renamed:
            result.append({"file": new_path, "status": "renamed"})
        seen = {entry["file"] for entry in result}
        for path in self.staged:
            if path not in seen:
                result.append({"file": path, "status": "modified"})
                seen.add(path)
        return result


def parse_porcelain(output: str) -> StatusSummary:
    """Parse ``git status --porcelain -z`` output."""
    summary = StatusSummary()
    records = output.split("\0")
    i = 0
    while i < len(records):
        record = records[i]
        i += 1
        if len(record) < 4:
            continue
        index, worktree, path = record[0], record[1], record[3:]
        if index == "?" and worktree == "?":
            summary.not_added.append(path)
            continue
        if index == "!":
            continue
        if index in ("R", "C"):
            # -z puts the rename source in the following record
            old_path = records[i] if i < len(records) else ""
            i += 1
            if index == "R":
                summary.renamed.append((old_path, path))
            else:
                summary.created.append(path)
        elif index == "A":
            summary.created.append(path)
        elif index == "D" or worktree == "D":
            summary.deleted.append(path)
        elif index == "M" or worktree == "M":
            summary.modified.append(path)
        if index not in (" ", "?"):
            summary.staged.append(path)
    return summary


class WorkingCopy:
    """One cloned repository on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._repo: Optional[git.Repo] = None

    @property
    def repo(self) -> git.Repo:
        if self._repo is None:
            try:
                self._repo = git.Repo(self.path)
            except (NoSuchPathError, InvalidGitRepositoryError):
                raise NotFound(f"Repository not found: {self.path.name}")
        return self._repo

    def exists(self) -> bool:
        return (self.path / ".git").exists()

    @classmethod
    def clone(cls, url: str, path: Path, secret: Optional[str] = None) -> "WorkingCopy":
        try:
            repo = git.Repo.clone_from(url, str(path))
        except GitError as e:
            raise VcsFailure(redact(_git_message(e), secret))
        wc = cls(path)
        wc._repo = repo
        return wc

    def branches(self) -> list:
        """Remote branch names without the remote prefix; ``HEAD`` is skipped."""
        names = []
        try:
            for remote in self.repo.remotes:
                for ref in remote.refs:
                    name = ref.remote_head
                    if name == "HEAD" or name in names:
                        continue
                    names.append(name)
        except GitError as e:
            raise VcsFailure(_git_message(e))
        return names

    def checkout(self, branch: str) -> None:
        if not branch or branch.startswith("-"):
            raise InvalidArgument("Branch name is required")
        self._run("checkout", branch)

    def current_branch(self) -> str:
        return self._run("rev_parse", "--abbrev-ref", "HEAD").strip()

    def status(self) -> StatusSummary:
        output = self._run("status", "--porcelain", "-z", "--untracked-files=all", strip_newline_and_ws=False)
        return parse_porcelain(output)

    def add_all(self) -> None:
        self._run("add", "-A")

    def commit(self, message: str) -> None:
        self._run("commit", "-m", message)

    def remote_url(self, name: str = REMOTE_NAME) -> Optional[str]:
        try:
            return self.repo.remote(name).url
        except ValueError:
            return None

    def set_remote(self, url: str, name: str = REMOTE_NAME, secret: Optional[str] = None) -> None:
        """Point remote ``name`` at ``url``, creating it when missing."""
        try:
            if name in [r.name for r in self.repo.remotes]:
                self.repo.remote(name).set_url(url)
            else:
                self.repo.create_remote(name, url)
        except GitError as e:
            raise VcsFailure(redact(_git_message(e), secret))

    def pull_rebase(self, branch: str, remote: str = REMOTE_NAME, secret: Optional[str] = None) -> None:
        """Pull ``branch`` with rebase.

        When the pull stops halfway through a rebase the rebase is aborted and
        :class:`errors.RebaseConflict` is raised. Other failures are raised as
        :class:`errors.VcsFailure`.
        """
        try:
            self.repo.git.pull("--rebase", remote, branch)
        except GitError as e:
            message = redact(_git_message(e), secret)
            if self.rebase_in_progress():
                self._abort_rebase()
                raise RebaseConflict(f"Remote changes on {branch} conflict with local changes: {message}")
            raise VcsFailure(message)

    def push(self, branch: str, remote: str = REMOTE_NAME, secret: Optional[str] = None) -> None:
        self._run("push", remote, branch, secret=secret)

    def rebase_in_progress(self) -> bool:
        git_dir = Path(self.repo.git_dir)
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def _abort_rebase(self) -> None:
        try:
            self.repo.git.rebase("--abort")
        except GitError as e:
            logger.error(f"Could not abort rebase in {self.path}: {_git_message(e)}")

    def _run(self, command: str, *args, secret: Optional[str] = None, **kwargs) -> str:
        try:
            return getattr(self.repo.git, command)(*args, **kwargs)
        except GitError as e:
            raise VcsFailure(redact(_git_message(e), secret))


def clear_working_copy(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)
