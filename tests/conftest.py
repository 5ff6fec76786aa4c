"""Shared fixtures.

Every test that touches git works against a local bare repository standing in
for the hosted remote, so nothing here needs network access.
"""

import logging
from pathlib import Path

import git
import pytest

import server

logging.getLogger("git").setLevel(logging.WARNING)

IDENTITY = "tester"
TOKEN = "s3cr3t-token"

PNG_BYTES = (
    b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01"
    b"\x08\x06\x00\x00\x00\x1f\x15\xc4\x89"
)


@pytest.fixture(autouse=True)
def git_env(tmp_path_factory, monkeypatch):
    """Give git a commit identity and an empty global config."""
    home = tmp_path_factory.mktemp("home")
    global_config = home / ".gitconfig"
    global_config.write_text("")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    return global_config


def commit_all(repo: git.Repo, message: str) -> None:
    repo.git.add("-A")
    repo.git.commit("-m", message)


@pytest.fixture
def remote_repo(tmp_path) -> Path:
    """A bare repository named ``notes.git`` with a small vault and two branches."""
    seed_dir = tmp_path / "seed"
    seed = git.Repo.init(seed_dir)
    (seed_dir / "README.md").write_text("# Notes\n")
    (seed_dir / "docs").mkdir()
    (seed_dir / "docs" / "intro.md").write_text("Intro\n")
    (seed_dir / "assets").mkdir()
    (seed_dir / "assets" / "logo.png").write_bytes(PNG_BYTES)
    (seed_dir / "build.py").write_text("print('not listed')\n")
    (seed_dir / ".hidden.md").write_text("hidden\n")
    commit_all(seed, "Initial commit")
    seed.git.branch("feature")
    bare_path = tmp_path / "notes.git"
    seed.clone(str(bare_path), bare=True)
    return bare_path


@pytest.fixture
def other_clone(tmp_path, remote_repo) -> git.Repo:
    """A second clone of the remote, used to push competing changes."""
    return git.Repo.clone_from(str(remote_repo), str(tmp_path / "other"))


@pytest.fixture
def repos_dir(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "repos"
    monkeypatch.setitem(server.app.config, "REPOS_DIR", path)
    monkeypatch.setattr(server, "resolve_identity", lambda: IDENTITY)
    return path


@pytest.fixture
def client(repos_dir, monkeypatch):
    monkeypatch.setitem(server.app.config, "TESTING", True)
    return server.app.test_client()


@pytest.fixture
def synced(client, remote_repo) -> str:
    resp = client.post("/api/repo/sync", json={"repoUrl": str(remote_repo), "token": TOKEN})
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()["repoPath"]
