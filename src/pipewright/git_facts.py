# git_facts.py
# Small, focused wrapper around the Git CLI.
# The `event` command is the only caller: it turns the local checkout into
# an Event so workflows can be tried without a hosting service.

from __future__ import annotations

import getpass
import subprocess
from pathlib import Path
from typing import List, Optional

from .model import Event


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError when git exits non-zero,
        FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path of the repository root, as git sees it."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Full ref name of HEAD, e.g. refs/heads/main.

    A detached HEAD has no symbolic ref; the commit sha is returned instead.
    """
    try:
        return _git(["symbolic-ref", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd)


def repository_name(cwd: Optional[str] = None) -> str:
    """
    "owner/name" from the origin URL when there is one, otherwise the name of
    the checkout directory.
    """
    try:
        url = remote_url("origin", cwd)
    except subprocess.CalledProcessError:
        return repo_root(cwd).name
    path = url.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    # git@host:owner/name and https://host/owner/name
    path = path.replace(":", "/")
    return "/".join(path.split("/")[-2:])


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    if not out:
        return []
    return out.splitlines()


def merge_base(with_ref: str = "origin/main", cwd: Optional[str] = None) -> str:
    """Commit where HEAD diverged from `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def event_from_git(
    compare_ref: Optional[str] = None,
    kind: str = "push",
    cwd: Optional[str] = None,
) -> Event:
    """
    Describe the local checkout as an Event.

    With `compare_ref`, changed_paths lists what changed since HEAD diverged
    from that ref; without it the event carries no paths.
    """
    paths: List[str] = []
    if compare_ref:
        paths = changed_files(merge_base(compare_ref, cwd), cwd=cwd)
    try:
        actor = _git(["config", "user.name"], cwd)
    except subprocess.CalledProcessError:
        actor = getpass.getuser()
    return Event(
        repository=repository_name(cwd),
        ref=current_ref(cwd),
        changed_paths=tuple(paths),
        actor=actor,
        kind=kind,
    )
