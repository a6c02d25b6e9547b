# git.py
# Small, focused wrapper around the Git CLI.
# Used by the CLI to describe the local checkout as a TriggerEvent.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from matrixci.model import TriggerEvent


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError when git exits non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """Current branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files changed between two refs, relative to the repository root."""
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    return out.splitlines() if out else []


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def working_changes(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files that a CI run of this checkout would consider changed.

    Dirty tree: staged + unstaged + untracked files.
    Clean tree: diff against the merge-base with `compare_ref`, falling back
    to HEAD~1 when there is no such ref.
    """
    if is_dirty(cwd):
        files = set()
        for args in (
            ["diff", "--name-only"],
            ["diff", "--name-only", "--cached"],
            ["ls-files", "--others", "--exclude-standard"],
        ):
            out = _git(args, cwd=cwd)
            if out:
                files.update(out.splitlines())
        return sorted(files)

    try:
        base = merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        # no remote configured, first commit, etc.
        base = "HEAD~1"
    try:
        return changed_files(base, "HEAD", cwd=cwd)
    except subprocess.CalledProcessError:
        # single-commit repository: every tracked file counts as changed
        out = _git(["ls-files"], cwd=cwd)
        return out.splitlines() if out else []


def event_from_git(
    event: str = "push",
    compare_ref: str = "origin/main",
    cwd: Optional[str | Path] = None,
) -> TriggerEvent:
    return TriggerEvent(
        event=event,
        branch=current_branch(cwd),
        changed_files=tuple(working_changes(compare_ref, cwd)),
    )
