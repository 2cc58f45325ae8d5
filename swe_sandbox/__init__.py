"""Sandbox lifecycle, command execution and dev server preview."""

__version__ = "0.1.0"
