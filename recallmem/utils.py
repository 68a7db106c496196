from __future__ import annotations

import os
import subprocess
from pathlib import Path


def _git(args: list[str], cwd: str) -> str | None:
    try:
        out = subprocess.check_output(
            ["git", *args], cwd=cwd, stderr=subprocess.DEVNULL, text=True
        )
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
        return None
    return out.strip() or None


def repo_root(cwd: str) -> str | None:
    """Top of the main checkout, following a worktree back to its parent repo."""
    top = _git(["rev-parse", "--show-toplevel"], cwd)
    if not top or not Path(top).is_dir():
        return None
    common_dir = _git(["rev-parse", "--git-common-dir"], cwd)
    git_dir = _git(["rev-parse", "--git-dir"], cwd)
    if common_dir and git_dir and common_dir != git_dir:
        common_path = Path(common_dir)
        if not common_path.is_absolute():
            common_path = (Path(cwd) / common_path).resolve()
        if common_path.name == ".git":
            return str(common_path.parent)
    return top


def resolve_project(cwd: str | None = None, override: str | None = None) -> str:
    if override is not None and override.strip():
        return override.strip()
    env_project = os.environ.get("RECALLMEM_PROJECT", "").strip()
    if env_project:
        return env_project
    directory = cwd or os.getcwd()
    root = repo_root(directory)
    if root:
        return Path(root).name
    return Path(directory).resolve().name or "default"
