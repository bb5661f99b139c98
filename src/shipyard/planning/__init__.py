"""Dependency graph construction and ordering for pipeline stages."""
