"""
State management contracts for checkpoint persistence.
"""

from .checkpoint_store import CheckpointStore

__all__ = [
    "CheckpointStore",
]
