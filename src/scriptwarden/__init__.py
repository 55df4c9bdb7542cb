"""Checkpoint-based supervision of long-running scripted tasks."""

__version__ = "0.3.0"
