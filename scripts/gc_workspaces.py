"""
shipyard — workspace garbage collection.

Purpose
- Remove stage workspaces left behind by kept or interrupted runs.
- Stay conservative: only directories carrying workspace metadata under the
  configured workspace root are considered, via `WorkspaceManager.gc(...)`.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"


def _ensure_src_path() -> None:
    if str(SRC_PATH) not in sys.path:
        sys.path.insert(0, str(SRC_PATH))


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Garbage-collect stale stage workspaces without touching anything outside the workspace root.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to shipyard TOML config (default: ./shipyard.toml if present).",
    )
    parser.add_argument(
        "--source",
        type=Path,
        default=None,
        help="Repository the git-worktree workspaces belong to (default: current directory).",
    )
    parser.add_argument(
        "--max-age-hours",
        type=float,
        default=168.0,
        help="Delete workspaces older than this many hours.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report stale workspaces without deleting them.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit machine-readable JSON output.",
    )
    return parser.parse_args(argv)


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _emit_text(payload: Mapping[str, object]) -> None:
    print(f"workspace_root: {payload['workspace_root']}")
    print(f"strategy: {payload['strategy']}")
    print(f"max_age_hours: {payload['max_age_hours']}")
    print(f"dry_run: {payload['dry_run']}")
    print(f"workspace_count: {payload['workspace_count']}")
    print(f"removed_count: {payload['removed_count']}")

    removed_paths_obj = payload.get("removed_paths")
    removed_paths = removed_paths_obj if isinstance(removed_paths_obj, list) else []
    if removed_paths:
        print("removed_paths:")
        for item in removed_paths:
            print(f"  - {item}")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    _ensure_src_path()
    from shipyard.config import ShipyardSettings, load_config
    from shipyard.integration_plane.workspace_manager import WorkspaceManager, WorkspaceStrategy

    try:
        settings = ShipyardSettings.from_mapping(load_config(args.config))
        strategy = WorkspaceStrategy(settings.workspace.strategy)
        source = args.source if args.source is not None else Path.cwd()
        manager = WorkspaceManager(
            settings.workspace.root,
            source if strategy is WorkspaceStrategy.GIT_WORKTREE else None,
            strategy=strategy,
        )
        existing = manager.list_workspaces()
        removed = manager.gc(max_age_hours=args.max_age_hours, dry_run=args.dry_run)
    except (OSError, ValueError) as exc:
        if args.json:
            _emit_json({"dry_run": bool(args.dry_run), "error": str(exc)})
        else:
            print(f"error: {exc}", file=sys.stderr)
        return 1

    payload: dict[str, object] = {
        "workspace_root": manager.root.as_posix(),
        "strategy": strategy.value,
        "max_age_hours": float(args.max_age_hours),
        "dry_run": bool(args.dry_run),
        "workspace_count": len(existing),
        "removed_count": len(removed),
        "removed_paths": sorted(path.as_posix() for path in removed),
    }
    if args.json:
        _emit_json(payload)
    else:
        _emit_text(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
