"""Stable constants shared across shipyard components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Trigger defaults.
DEFAULT_TRIGGER_BRANCH: Final[str] = "main"
ZERO_COMMIT_SHA: Final[str] = "0" * 40

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1
RUN_RECORD_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the working directory unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".shipyard")
STATE_DB_PATH: Final[PurePosixPath] = STATE_DIR / "state.sqlite3"
WORKSPACES_DIR: Final[PurePosixPath] = STATE_DIR / "workspaces"
LOGS_DIR: Final[PurePosixPath] = STATE_DIR / "logs"

# Directory inside each stage workspace that holds runner-private files.
WORKSPACE_PRIVATE_DIR: Final[str] = ".shipyard-private"

# Environment variables exported to every step.
ENV_RUN_ID: Final[str] = "SHIPYARD_RUN_ID"
ENV_STAGE: Final[str] = "SHIPYARD_STAGE"
ENV_STEP: Final[str] = "SHIPYARD_STEP"
ENV_BRANCH: Final[str] = "SHIPYARD_BRANCH"
ENV_COMMIT_REF: Final[str] = "SHIPYARD_COMMIT_REF"
ENV_WORKSPACE: Final[str] = "SHIPYARD_WORKSPACE"
ENV_ATTEMPT: Final[str] = "SHIPYARD_ATTEMPT"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_TRIGGER_BRANCH",
    "ENV_ATTEMPT",
    "ENV_BRANCH",
    "ENV_COMMIT_REF",
    "ENV_RUN_ID",
    "ENV_STAGE",
    "ENV_STEP",
    "ENV_WORKSPACE",
    "LOGS_DIR",
    "RUN_RECORD_SCHEMA_VERSION",
    "STATE_DB_PATH",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "WORKSPACES_DIR",
    "WORKSPACE_PRIVATE_DIR",
    "ZERO_COMMIT_SHA",
]
