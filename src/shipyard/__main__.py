"""Module entrypoint for ``python -m shipyard``."""

from __future__ import annotations

from shipyard.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
