"""Per-stage isolated workspace lifecycle: plain copies or git worktrees."""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from shipyard.constants import STATE_DIR, WORKSPACE_PRIVATE_DIR
from shipyard.domain.errors import ShipyardError
from shipyard.utils.fs import is_within, safe_delete

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

_WORKSPACE_METADATA_FILE = "workspace.json"
_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_HASHED_SLUG = re.compile(r"-[0-9a-f]{10}\Z")


class WorkspaceStrategy(StrEnum):
    COPY = "copy"
    GIT_WORKTREE = "git-worktree"


class WorkspaceError(ShipyardError):
    """A stage workspace could not be created or removed."""


@dataclass(frozen=True, slots=True)
class Workspace:
    """Workspace descriptor returned by the manager."""

    run_id: str
    stage: str
    attempt: int
    path: Path
    strategy: WorkspaceStrategy
    commit_ref: str | None
    created_at: datetime

    @property
    def private_dir(self) -> Path:
        return self.path / WORKSPACE_PRIVATE_DIR


class WorkspaceManager:
    """
    Create one workspace per stage attempt under ``<root>/<run_id>/<stage>/attempt-<n>``.

    The ``copy`` strategy copies ``source_dir`` (an empty directory is used when
    there is no source), skipping ``.git``, the ``.shipyard`` state directory and
    the workspace root itself. The
    ``git-worktree`` strategy checks out ``commit_ref`` as a detached worktree of
    the repository at ``source_dir``.
    """

    def __init__(
        self,
        root: str | Path,
        source_dir: str | Path | None = None,
        *,
        strategy: WorkspaceStrategy | str = WorkspaceStrategy.COPY,
        now_fn: Callable[[], datetime] | None = None,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self._root = Path(root).expanduser().resolve(strict=False)
        self._source_dir = (
            Path(source_dir).expanduser().resolve(strict=True) if source_dir is not None else None
        )
        if self._source_dir is not None and not self._source_dir.is_dir():
            raise NotADirectoryError(f"{self._source_dir} is not a directory")
        self._strategy = WorkspaceStrategy(strategy)
        if self._strategy is WorkspaceStrategy.GIT_WORKTREE and self._source_dir is None:
            raise ValueError("git-worktree strategy requires a source repository")
        self._now_fn: Callable[[], datetime] = now_fn if now_fn is not None else _utc_now
        self._env_overrides = dict(env_overrides or {})
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def strategy(self) -> WorkspaceStrategy:
        return self._strategy

    def create(
        self,
        run_id: str,
        stage: str,
        attempt: int,
        commit_ref: str | None = None,
    ) -> Workspace:
        """Create the isolated workspace for one stage attempt."""

        normalized_run = _validate_identifier(run_id, "run_id")
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        workspace_dir = self._root / normalized_run / stage_slug(stage) / f"attempt-{attempt}"

        with self._lock:
            workspace_dir.parent.mkdir(parents=True, exist_ok=True)
            if workspace_dir.exists() or workspace_dir.is_symlink():
                raise FileExistsError(f"workspace directory already exists: {workspace_dir}")

            if self._strategy is WorkspaceStrategy.GIT_WORKTREE:
                self._run_git(
                    [
                        "worktree",
                        "add",
                        "--quiet",
                        "--detach",
                        str(workspace_dir),
                        commit_ref or "HEAD",
                    ],
                    check=True,
                )
            elif self._source_dir is not None:
                shutil.copytree(
                    self._source_dir,
                    workspace_dir,
                    symlinks=True,
                    ignore=self._copy_ignore,
                )
            else:
                workspace_dir.mkdir()

            workspace = Workspace(
                run_id=normalized_run,
                stage=stage,
                attempt=attempt,
                path=workspace_dir,
                strategy=self._strategy,
                commit_ref=commit_ref,
                created_at=self._ensure_aware_utc(self._now_fn()),
            )
            try:
                self._write_workspace_metadata(workspace)
            except OSError:
                self._remove_internal(workspace_dir)
                raise
            return workspace

    def remove(self, workspace: Workspace | Path) -> None:
        """Remove one workspace; paths outside the root are refused."""

        path = workspace.path if isinstance(workspace, Workspace) else Path(workspace)
        with self._lock:
            self._remove_internal(path)

    def list_workspaces(self, run_id: str | None = None) -> tuple[Workspace, ...]:
        """Return workspaces with readable metadata, optionally for a single run."""

        if not self._root.is_dir():
            return ()
        if run_id is not None:
            run_dirs = [self._root / _validate_identifier(run_id, "run_id")]
        else:
            run_dirs = sorted(path for path in self._root.iterdir() if path.is_dir())

        found: list[Workspace] = []
        for run_dir in run_dirs:
            if not run_dir.is_dir() or run_dir.is_symlink():
                continue
            for stage_dir in sorted(run_dir.iterdir()):
                if stage_dir.is_symlink() or not stage_dir.is_dir():
                    continue
                for attempt_dir in sorted(stage_dir.iterdir()):
                    workspace = self._read_workspace_metadata(attempt_dir)
                    if workspace is not None:
                        found.append(workspace)
        found.sort(key=lambda item: item.path.as_posix())
        return tuple(found)

    def cleanup_run(self, run_id: str) -> tuple[Path, ...]:
        """Remove every workspace of ``run_id``; returns the removed paths."""

        normalized_run = _validate_identifier(run_id, "run_id")
        run_dir = self._root / normalized_run
        removed: list[Path] = []
        with self._lock:
            if not run_dir.exists():
                return ()
            for workspace in self.list_workspaces(normalized_run):
                self._remove_internal(workspace.path)
                removed.append(workspace.path)
            if run_dir.exists():
                safe_delete(run_dir, self._root)
        return tuple(removed)

    def gc(self, *, max_age_hours: float, dry_run: bool = False) -> tuple[Path, ...]:
        """Remove workspaces created more than ``max_age_hours`` ago.

        Only directories with readable metadata are considered, so anything the
        manager did not create is left alone. ``dry_run`` reports candidates
        without deleting them.
        """

        if max_age_hours < 0:
            raise ValueError("max_age_hours must be >= 0")
        cutoff = self._ensure_aware_utc(self._now_fn()) - timedelta(hours=max_age_hours)
        with self._lock:
            stale = [workspace for workspace in self.list_workspaces() if workspace.created_at < cutoff]
            if not dry_run:
                for workspace in stale:
                    self._remove_internal(workspace.path)
        return tuple(workspace.path for workspace in stale)

    def _remove_internal(self, path: Path) -> None:
        managed = path.parent.resolve(strict=False) / path.name
        if not is_within(managed.parent, self._root) or managed == self._root:
            raise ValueError(f"workspace path is outside workspace root: {path}")

        if self._strategy is WorkspaceStrategy.GIT_WORKTREE:
            self._run_git(["worktree", "remove", "--force", str(managed)], check=False)
        if managed.exists() or managed.is_symlink():
            safe_delete(managed, self._root)
        self._prune_empty_parents(managed)

    def _copy_ignore(self, directory: str, names: list[str]) -> set[str]:
        ignored = {name for name in names if name == ".git"}
        current = Path(directory).resolve(strict=False)
        if current == self._source_dir and STATE_DIR.name in names:
            ignored.add(STATE_DIR.name)
        for name in names:
            if current / name == self._root:
                ignored.add(name)
        return ignored

    def _write_workspace_metadata(self, workspace: Workspace) -> None:
        private_dir = workspace.private_dir
        private_dir.mkdir(mode=0o700, exist_ok=True)
        payload = {
            "run_id": workspace.run_id,
            "stage": workspace.stage,
            "attempt": workspace.attempt,
            "strategy": workspace.strategy.value,
            "commit_ref": workspace.commit_ref,
            "created_at": workspace.created_at.isoformat(),
        }
        (private_dir / _WORKSPACE_METADATA_FILE).write_text(
            json.dumps(payload, sort_keys=True, indent=2) + "\n",
            encoding="utf-8",
        )

    def _read_workspace_metadata(self, workspace_dir: Path) -> Workspace | None:
        metadata_path = workspace_dir / WORKSPACE_PRIVATE_DIR / _WORKSPACE_METADATA_FILE
        if not metadata_path.exists() or metadata_path.is_symlink():
            return None
        try:
            raw_payload = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(raw_payload, dict):
            return None

        try:
            return Workspace(
                run_id=str(raw_payload["run_id"]),
                stage=str(raw_payload["stage"]),
                attempt=int(raw_payload["attempt"]),
                path=workspace_dir,
                strategy=WorkspaceStrategy(raw_payload["strategy"]),
                commit_ref=raw_payload.get("commit_ref"),
                created_at=self._ensure_aware_utc(
                    datetime.fromisoformat(str(raw_payload["created_at"]))
                ),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool,
    ) -> subprocess.CompletedProcess[str]:
        assert self._source_dir is not None
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)
        proc = subprocess.run(
            ["git", *args],
            cwd=self._source_dir,
            env=env,
            check=False,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            cmd = "git " + " ".join(args)
            detail = proc.stderr.strip() or proc.stdout.strip()
            raise WorkspaceError(f"command failed with exit code {proc.returncode}: {cmd}: {detail}")
        return proc

    def _ensure_aware_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def _prune_empty_parents(self, workspace_dir: Path) -> None:
        for candidate in (workspace_dir.parent, workspace_dir.parent.parent):
            resolved = candidate.resolve(strict=False)
            if resolved == self._root or not _is_relative_to(resolved, self._root):
                continue
            if candidate.is_dir() and not any(candidate.iterdir()):
                candidate.rmdir()


def stage_slug(stage: str) -> str:
    """
    Filesystem-safe directory name for a stage, distinct for distinct names.

    Names that are already safe are used as-is. Any other name is sanitized and
    suffixed with a digest of the raw name, so ``build push`` and ``build/push``
    get separate directories. Safe names shaped like a suffixed slug are
    suffixed as well.
    """
    slug = _UNSAFE_CHARS.sub("_", stage).strip("._")
    if slug == stage and _HASHED_SLUG.search(stage) is None:
        return stage
    digest = hashlib.sha256(stage.encode("utf-8")).hexdigest()[:10]
    return f"{slug or 'stage'}-{digest}"


def _validate_identifier(value: str, field_name: str) -> str:
    if not value:
        raise ValueError(f"{field_name} must not be empty")
    if value in {".", ".."}:
        raise ValueError(f"{field_name} must not be '.' or '..'")
    if _SAFE_ID_PATTERN.fullmatch(value) is None:
        raise ValueError(f"{field_name} contains unsupported characters: {value!r}")
    return value


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = [
    "Workspace",
    "WorkspaceError",
    "WorkspaceManager",
    "WorkspaceStrategy",
    "stage_slug",
]
