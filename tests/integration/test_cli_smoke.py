"""
shipyard — CLI subprocess smoke contracts

Purpose
- Enforce CLI behavior for `python -m shipyard` validate/run/trigger/history/show.
- Verify exit codes, deterministic JSON output, and persistent run/log side effects.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"

_PIPELINE = """\
name: web-app
on:
  push:
    branches: [main, "release/*"]
jobs:
  test:
    steps:
      - name: unit
        run: echo "tests on $SHIPYARD_BRANCH"
  deploy:
    needs: test
    env:
      KUBECONFIG: ${{ secrets.KUBE_CONFIG | file }}
    steps:
      - name: apply
        run: test -s "$KUBECONFIG"
"""


def _run_cli(repo_root: Path, *args: str, extra_env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    for key in [name for name in env if name.startswith("SHIPYARD_")]:
        del env[key]
    env.update(extra_env or {})
    return subprocess.run(
        [sys.executable, "-m", "shipyard", *args],
        cwd=repo_root,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def _write(path: Path, contents: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")


@pytest.fixture
def repo_root(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    _write(root / "ci.yml", _PIPELINE)
    _write(root / "src" / "app.py", "print('hello')\n")
    return root


def _json(completed: subprocess.CompletedProcess[str]) -> dict[str, object]:
    payload = json.loads(completed.stdout)
    assert isinstance(payload, dict)
    return payload


@pytest.mark.integration
def test_help_and_missing_subcommand(repo_root: Path) -> None:
    helped = _run_cli(repo_root, "--help")
    assert helped.returncode == 0
    assert "minimal CI/CD pipeline orchestrator" in helped.stdout

    bare = _run_cli(repo_root)
    assert bare.returncode == 2
    assert "usage:" in bare.stderr


@pytest.mark.integration
def test_validate_json_is_deterministic(repo_root: Path) -> None:
    first = _run_cli(repo_root, "validate", "ci.yml", "--json")
    second = _run_cli(repo_root, "validate", "ci.yml", "--json")

    assert first.returncode == 0, first.stderr
    assert first.stdout == second.stdout
    payload = _json(first)
    assert payload["order"] == ["test", "deploy"]
    assert payload["trigger_branches"] == ["main", "release/*"]


@pytest.mark.integration
def test_run_persists_state_and_logs_under_default_paths(repo_root: Path) -> None:
    completed = _run_cli(
        repo_root,
        "run",
        "ci.yml",
        "--branch",
        "release/1.4",
        "--commit",
        "3f2a1c9",
        "--json",
        extra_env={"SHIPYARD_SECRET_KUBE_CONFIG": "apiVersion: v1"},
    )

    assert completed.returncode == 0, completed.stderr
    payload = _json(completed)
    run_id = str(payload["run_id"])
    assert payload["status"] == "succeeded"
    assert (repo_root / ".shipyard" / "state.sqlite3").is_file()
    run_logs = repo_root / ".shipyard" / "logs" / run_id
    assert (run_logs / "orchestrator.jsonl").is_file()
    step_logs = sorted((run_logs / "test").glob("*.log"))
    assert len(step_logs) == 1
    assert "tests on release/1.4" in step_logs[0].read_text(encoding="utf-8")

    history = _run_cli(repo_root, "history", "--branch", "release/1.4", "--json")
    assert history.returncode == 0, history.stderr
    runs = _json(history)["runs"]
    assert isinstance(runs, list)
    assert [item["run_id"] for item in runs] == [run_id]

    shown = _run_cli(repo_root, "show", run_id)
    assert shown.returncode == 0, shown.stderr
    assert f"Run: {run_id}" in shown.stdout
    assert "manual release/1.4@3f2a1c9" in shown.stdout


@pytest.mark.integration
def test_run_without_secret_exits_one(repo_root: Path) -> None:
    completed = _run_cli(repo_root, "run", "ci.yml", "--json")

    assert completed.returncode == 1
    payload = _json(completed)
    assert payload["stage_statuses"] == {"test": "succeeded", "deploy": "failed"}


@pytest.mark.integration
def test_trigger_exit_codes(repo_root: Path) -> None:
    ignored = _run_cli(repo_root, "trigger", "ci.yml", "--branch", "feature/x", "--commit", "abc")
    assert ignored.returncode == 4
    assert "Ignored:" in ignored.stdout

    usage = _run_cli(repo_root, "trigger", "ci.yml", "--branch", "main")
    assert usage.returncode == 2
    assert "error:" in usage.stderr

    matched = _run_cli(
        repo_root,
        "trigger",
        "ci.yml",
        "--branch",
        "release/2.0",
        "--commit",
        "abc",
        extra_env={"SHIPYARD_SECRET_KUBE_CONFIG": "apiVersion: v1"},
    )
    assert matched.returncode == 0, matched.stderr
    assert "Status: succeeded" in matched.stdout
    assert "$ shipyard show run-" in matched.stdout


@pytest.mark.integration
def test_usage_errors_exit_two(repo_root: Path) -> None:
    assert _run_cli(repo_root, "validate", "absent.yml").returncode == 2
    assert _run_cli(repo_root, "show", "run-01ARZ3NDEKTSV4RRFFQ69G5FAV").returncode == 2
    assert _run_cli(repo_root, "history", "--status", "exploded").returncode == 2

    _write(repo_root / "shipyard.toml", "[runner]\nstep_timeout_seconds = -1\n")
    bad_config = _run_cli(repo_root, "history")
    assert bad_config.returncode == 2
    assert "runner.step_timeout_seconds" in bad_config.stderr
