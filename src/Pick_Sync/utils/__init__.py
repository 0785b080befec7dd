"""Shared utilities (exception hierarchy)."""
