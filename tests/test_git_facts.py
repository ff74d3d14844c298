"""Events derived from a local git checkout."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from pipewright.git_facts import event_from_git, repository_name

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "site"
    path.mkdir()
    git(path, "init", "-q", "-b", "main")
    git(path, "config", "user.name", "octo")
    git(path, "config", "user.email", "octo@example.com")
    (path / "README.md").write_text("hi\n")
    git(path, "add", ".")
    git(path, "commit", "-q", "-m", "init")
    return path


def test_event_without_compare_ref(repo: Path) -> None:
    event = event_from_git(cwd=str(repo))
    assert event.ref == "refs/heads/main"
    assert event.repository == "site"
    assert event.actor == "octo"
    assert event.changed_paths == ()


def test_changed_paths_since_branch_point(repo: Path) -> None:
    git(repo, "checkout", "-q", "-b", "feature")
    (repo / "docs").mkdir()
    (repo / "docs" / "guide.md").write_text("guide\n")
    git(repo, "add", ".")
    git(repo, "commit", "-q", "-m", "docs")

    event = event_from_git("main", kind="manual", cwd=str(repo))

    assert event.branch == "feature"
    assert event.changed_paths == ("docs/guide.md",)
    assert event.kind == "manual"


def test_repository_name_from_origin(repo: Path) -> None:
    git(repo, "remote", "add", "origin", "git@github.com:acme/site.git")
    assert repository_name(str(repo)) == "acme/site"
