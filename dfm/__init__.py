"""Dotfile tracking: a SQLite state store, checksummed snapshots, orphan cleanup, state import and a git backup repository."""

__version__ = "0.1.0"