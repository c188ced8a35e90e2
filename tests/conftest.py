"""
Shared fixtures for histguard tests.
"""

import os
import shutil
import subprocess

import pytest

from histguard.config import get_default_config
from histguard.infra.credentials import CredentialResolver
from histguard.infra.memory_repo import InMemoryRepository
from histguard.services.orchestrator import DeploymentOrchestrator

ORIGIN_URL = "https://git.example.com/team/app.git"
MIRROR_URL = "https://mirror.example.org/team/app.git"


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory, monkeypatch):
    """Keep tests away from the real ~/.histguard and HISTGUARD_* settings."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    for key in list(os.environ):
        if key.startswith("HISTGUARD_"):
            monkeypatch.delenv(key, raising=False)
    return home


@pytest.fixture
def config(tmp_path):
    cfg = get_default_config()
    cfg['network']['backoff_seconds'] = 0
    cfg['audit']['path'] = str(tmp_path / "audit.jsonl")
    return cfg


@pytest.fixture
def network():
    return {}


@pytest.fixture
def repo(tmp_path, network):
    return InMemoryRepository(metadata_dir=tmp_path / "meta", network=network)


@pytest.fixture
def history(repo):
    """
    Three revisions: README, then a secret, then a README edit that also
    deletes the secret.
    """
    r1 = repo.commit({"README.md": b"hello\n"}, "Initial commit")
    r2 = repo.commit({"secret.env": b"TOKEN=abc123\n"}, "Add config")
    r3 = repo.commit({"README.md": b"hello again\n", "secret.env": None}, "Update readme")
    return r1, r2, r3


@pytest.fixture
def credentials():
    return CredentialResolver(environ={"MIRROR_TOKEN": "tok-secret-123"})


@pytest.fixture
def orchestrator(repo, config, credentials):
    return DeploymentOrchestrator(repo, config=config, credentials=credentials)


@pytest.fixture
def origin(repo, history):
    """An origin remote holding the current history."""
    remote = repo.add_remote_repo("origin", ORIGIN_URL)
    outcome = repo.push("origin", "refs/heads/main")
    assert outcome.ok
    return remote


def git_available() -> bool:
    return shutil.which("git") is not None


requires_git = pytest.mark.skipif(not git_available(), reason="git is not installed")


def git(cwd, *args) -> str:
    result = subprocess.run(["git"] + list(args), cwd=str(cwd), capture_output=True, text=True, check=True)
    return result.stdout.strip()


@pytest.fixture
def git_repo(tmp_path):
    """A real git checkout with a secret committed in its second revision."""
    path = tmp_path / "work"
    path.mkdir()
    git(path, "init", "-q", "-b", "main")
    git(path, "config", "user.name", "Test User")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("hello\n")
    git(path, "add", "README.md")
    git(path, "commit", "-q", "-m", "Initial commit")
    (path / "secret.env").write_text("TOKEN=abc123\n")
    git(path, "add", "secret.env")
    git(path, "commit", "-q", "-m", "Add config")
    (path / "README.md").write_text("hello again\n")
    git(path, "add", "README.md")
    git(path, "commit", "-q", "-m", "Update readme")
    return path
