"""
shipyard — domain layer

Purpose
- Pipeline definitions, runs, stage and step results and the error taxonomy
  shared by every plane.

Non-functional requirements
- No IO side effects; minimal dependencies.
"""
