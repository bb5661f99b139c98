"""
shipyard — integration plane

Purpose
- Boundaries with the outside world: push triggers and stage workspaces.
"""
