"""Error taxonomy for the layered memory engine.

Only ``PersistenceWriteError`` ever crosses the engine boundary; the other
errors are raised and recovered internally so that each collaborator failure
maps onto one documented fallback.
"""

from __future__ import annotations


class MemoryEngineError(Exception):
    """Base class for layered memory errors."""


class CollaboratorUnavailable(MemoryEngineError):
    """An embedding, completion or search collaborator failed or timed out."""

    def __init__(self, collaborator: str, reason: str):
        self.collaborator = collaborator
        self.reason = reason
        super().__init__(f"{collaborator} unavailable: {reason}")


class MalformedModelOutput(MemoryEngineError):
    """The model-assisted extraction pass returned unusable output."""


class PersistenceWriteError(MemoryEngineError):
    """Writing a memory chunk to the store failed."""

    def __init__(self, chunk_id: str, reason: str):
        self.chunk_id = chunk_id
        super().__init__(f"Failed to store memory chunk {chunk_id}: {reason}")
