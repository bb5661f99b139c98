"""
shipyard — package root

Purpose
- Minimal CI/CD pipeline orchestrator: dependency-gated stages, just-in-time
  secret injection, failure propagation and cooperative cancellation.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
