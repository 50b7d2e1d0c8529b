"""Thoughts: note capture with keystroke journaling and replay."""

__version__ = "0.1.0"
