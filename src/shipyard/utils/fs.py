"""
shipyard — filesystem utilities

Purpose
- Guarded deletion of workspace trees and private-file writes for secrets.

Functional requirements
- Deletion refuses paths outside the configured workspace root.
- Private files are created owner-only (0600) and never follow an existing symlink.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

PathLike = str | os.PathLike[str]

_PRIVATE_FILE_MODE = 0o600

__all__ = [
    "is_within",
    "safe_delete",
    "write_private_file",
]


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    try:
        resolved_child = Path(child).resolve(strict=True)
    except FileNotFoundError:
        return False

    return _is_relative_to(resolved_child, resolved_parent)


def safe_delete(path: PathLike, workspace_root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``workspace_root``.

    Symlinks are unlinked without traversing into their targets.
    """

    workspace = Path(workspace_root).resolve(strict=True)
    if not workspace.is_dir():
        raise NotADirectoryError(f"{workspace!s} is not a directory")

    target = Path(path)
    parent_resolved = target.parent.resolve(strict=True)
    candidate = parent_resolved / target.name
    if not _is_relative_to(candidate, workspace) or candidate == workspace:
        raise ValueError(f"refusing to delete path outside workspace root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return

    resolved_target = target.resolve(strict=True)
    if not _is_relative_to(resolved_target, workspace):
        raise ValueError(f"refusing to delete path outside workspace root: {target!s}")

    if target.is_dir():
        shutil.rmtree(target)
        return

    target.unlink()


def write_private_file(path: PathLike, data: str, *, encoding: str = "utf-8") -> Path:
    """Create ``path`` with mode 0600 and write ``data``; an existing file is replaced."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    if target.is_symlink() or target.exists():
        target.unlink()

    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    fd = os.open(target, flags, _PRIVATE_FILE_MODE)
    with os.fdopen(fd, "w", encoding=encoding) as file_handle:
        file_handle.write(data)
        file_handle.flush()
    return target


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True
