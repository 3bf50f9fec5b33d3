"""Store port used by the scorer, the retrievers and the manager."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..models import MemoryChunk, ScoredChunk, UserMemory, UserMemoryUpdate


@runtime_checkable
class MemoryStore(Protocol):
    """Persistence for memory chunks and user profiles.

    Chunks are write-once. Read methods return newest or most important
    first as documented per method.
    """

    async def initialize(self) -> None:
        ...

    async def insert_chunk(self, chunk: MemoryChunk) -> str:
        ...

    async def get_recent_chunks(
        self, conversation_id: str, limit: int = 50
    ) -> list[MemoryChunk]:
        """Newest first."""
        ...

    async def get_chunks_by_importance(
        self,
        conversation_id: str,
        min_importance: float = 0.0,
        limit: int = 50,
    ) -> list[MemoryChunk]:
        """Descending importance, ties broken newest first."""
        ...

    async def search_similar(
        self,
        embedding: list[float],
        conversation_id: str,
        workspace_id: str,
        limit: int = 20,
        query_text: str | None = None,
    ) -> list[ScoredChunk]:
        """Candidates scoped to (conversation, workspace), best first."""
        ...

    async def get_user_memory(self, user_id: str) -> UserMemory | None:
        ...

    async def merge_user_memory(
        self, user_id: str, workspace_id: str, update: UserMemoryUpdate
    ) -> UserMemory:
        """Create the profile if needed, then merge *update* into it."""
        ...

    async def close(self) -> None:
        ...
