"""Resumable, checkpointed multi-stage pipeline coordinator."""

__version__ = "0.1.0"
