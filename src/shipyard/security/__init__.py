"""
shipyard — security utilities

Purpose
- Secret store adapters and redaction of secret material in output, logs and
  persisted records.
"""
