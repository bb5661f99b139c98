"""Structured logging and correlation context."""
