"""SQLite storage backend for layered memory.

Persists memory chunks (with their three embedding vectors as float32 BLOBs)
and user profiles using aiosqlite. Similarity search loads the candidate
embeddings of one conversation and ranks them by cosine similarity, blended
with an FTS5 full-text match on the chunk content.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite
from loguru import logger

from ..embedding import cosine_similarity, deserialize_embedding, serialize_embedding
from ..models import (
    ChunkEmbeddings,
    ChunkMetadata,
    ChunkType,
    CommunicationStyle,
    CorrectionRecord,
    Entity,
    LongTermContext,
    MemoryChunk,
    ScoredChunk,
    UserMemory,
    UserMemoryUpdate,
)

# Bonus added to the semantic score, per unit of full-text match, capped at 1.0
TEXT_SIGNAL_WEIGHT = 0.2

_CHUNK_COLUMNS = (
    "id", "conversation_id", "user_id", "workspace_id", "chunk_type",
    "content", "importance_score", "entities", "metadata",
    "semantic_embedding", "entity_embedding", "intent_embedding", "created_at",
)
_CHUNK_SELECT = ", ".join(f"mc.{c}" for c in _CHUNK_COLUMNS)

_USER_COLUMNS = (
    "user_id", "workspace_id", "name", "email", "phone", "preferences",
    "communication_style", "long_term_context", "corrections_history",
    "created_at", "last_updated",
)


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteStore:
    """SQLite implementation of ``MemoryStore``.

    Uses WAL mode for concurrent reads. Profile merges are serialized with an
    ``asyncio.Lock`` because they read, modify and write back one row.
    """

    def __init__(self, db_path: str = "./memory/layered_memory.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._profile_lock = asyncio.Lock()
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist.

        Creates directory for database file if needed.
        Enables WAL mode for concurrent reads.
        """
        if self._db is not None:
            return

        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured database directory exists: {db_dir}")

        self._db = await aiosqlite.connect(self.db_path)

        await self._db.execute("PRAGMA journal_mode=WAL")

        await self._create_tables()
        await self._create_indexes()

        await self._db.commit()
        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_chunks (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                workspace_id TEXT NOT NULL,
                chunk_type TEXT NOT NULL,
                content TEXT NOT NULL,
                importance_score REAL DEFAULT 0.5,
                entities TEXT,
                metadata TEXT,
                semantic_embedding BLOB,
                entity_embedding BLOB,
                intent_embedding BLOB,
                created_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS user_memory (
                user_id TEXT PRIMARY KEY,
                workspace_id TEXT,
                name TEXT,
                email TEXT,
                phone TEXT,
                preferences TEXT,
                communication_style TEXT,
                long_term_context TEXT,
                corrections_history TEXT,
                created_at TEXT NOT NULL,
                last_updated TEXT NOT NULL
            )
        """)

        # FTS5 virtual table for full-text search on chunk content
        await self._db.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS memory_chunks_fts
            USING fts5(content, content=memory_chunks, content_rowid=rowid)
        """)

        # Chunks are never updated, so insert and delete triggers suffice
        await self._db.execute("""
            CREATE TRIGGER IF NOT EXISTS memory_chunks_ai AFTER INSERT ON memory_chunks BEGIN
                INSERT INTO memory_chunks_fts(rowid, content) VALUES (new.rowid, new.content);
            END
        """)

        await self._db.execute("""
            CREATE TRIGGER IF NOT EXISTS memory_chunks_ad AFTER DELETE ON memory_chunks BEGIN
                INSERT INTO memory_chunks_fts(memory_chunks_fts, rowid, content)
                VALUES('delete', old.rowid, old.content);
            END
        """)

        logger.debug("All tables created successfully")

    async def _create_indexes(self) -> None:
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_chunk_conversation_created
            ON memory_chunks(conversation_id, created_at DESC)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_chunk_conversation_importance
            ON memory_chunks(conversation_id, importance_score DESC)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_chunk_workspace
            ON memory_chunks(workspace_id)
        """)

        logger.debug("All indexes created successfully")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def insert_chunk(self, chunk: MemoryChunk) -> str:
        """Insert a memory chunk.

        Args:
            chunk: Fully built chunk; its embeddings are stored as BLOBs

        Returns:
            Chunk ID
        """
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        await self._db.execute(
            """
            INSERT INTO memory_chunks (
                id, conversation_id, user_id, workspace_id, chunk_type,
                content, importance_score, entities, metadata,
                semantic_embedding, entity_embedding, intent_embedding,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.id,
                chunk.conversation_id,
                chunk.user_id,
                chunk.workspace_id,
                chunk.chunk_type.value,
                chunk.content,
                chunk.importance_score,
                json.dumps([e.model_dump(mode="json") for e in chunk.entities]),
                chunk.metadata.model_dump_json(),
                serialize_embedding(chunk.embeddings.semantic),
                serialize_embedding(chunk.embeddings.entity),
                serialize_embedding(chunk.embeddings.intent),
                chunk.created_at.isoformat(),
            ),
        )

        await self._db.commit()
        logger.debug(f"Memory chunk inserted: {chunk.id}")
        return chunk.id

    async def get_recent_chunks(
        self, conversation_id: str, limit: int = 50
    ) -> list[MemoryChunk]:
        """Get the newest chunks of a conversation, newest first."""
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self._db.execute(
            f"""
            SELECT {_CHUNK_SELECT}
            FROM memory_chunks mc
            WHERE mc.conversation_id = ?
            ORDER BY mc.created_at DESC, mc.rowid DESC
            LIMIT ?
            """,
            (conversation_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_chunk(row) for row in rows]

    async def get_chunks_by_importance(
        self,
        conversation_id: str,
        min_importance: float = 0.0,
        limit: int = 50,
    ) -> list[MemoryChunk]:
        """Get chunks at or above *min_importance*, most important first."""
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self._db.execute(
            f"""
            SELECT {_CHUNK_SELECT}
            FROM memory_chunks mc
            WHERE mc.conversation_id = ? AND mc.importance_score >= ?
            ORDER BY mc.importance_score DESC, mc.created_at DESC
            LIMIT ?
            """,
            (conversation_id, min_importance, limit),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_chunk(row) for row in rows]

    async def search_similar(
        self,
        embedding: list[float],
        conversation_id: str,
        workspace_id: str,
        limit: int = 20,
        query_text: str | None = None,
    ) -> list[ScoredChunk]:
        """Rank a conversation's chunks by similarity to *embedding*.

        Each result carries ``semantic`` (cosine similarity) and ``text``
        (normalized FTS5 rank, 0 when not matched) signals.

        Args:
            embedding: Query semantic embedding
            conversation_id: Conversation scope
            workspace_id: Workspace scope
            limit: Maximum results
            query_text: Optional raw query for the full-text signal

        Returns:
            Scored chunks, best first
        """
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self._db.execute(
            f"""
            SELECT {_CHUNK_SELECT}
            FROM memory_chunks mc
            WHERE mc.conversation_id = ? AND mc.workspace_id = ?
            """,
            (conversation_id, workspace_id),
        ) as cursor:
            rows = await cursor.fetchall()

        text_scores = (
            await self._search_fts(query_text, conversation_id, workspace_id, limit * 2)
            if query_text
            else {}
        )

        results: list[ScoredChunk] = []
        for row in rows:
            chunk = self._row_to_chunk(row)
            semantic = max(0.0, cosine_similarity(embedding, chunk.embeddings.semantic))
            text = text_scores.get(chunk.id, 0.0)
            score = semantic
            if text > 0:
                score = min(1.0, semantic + TEXT_SIGNAL_WEIGHT * text)
            results.append(
                ScoredChunk(
                    chunk=chunk,
                    score=score,
                    signals={"semantic": semantic, "text": text},
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    async def _search_fts(
        self,
        query_text: str,
        conversation_id: str,
        workspace_id: str,
        limit: int,
    ) -> dict[str, float]:
        """Full-text match on chunk content, as ``{chunk_id: relevance}``."""
        fts_query = self._sanitize_fts_query(query_text)
        if not fts_query:
            return {}

        sql = """
            SELECT mc.id, rank
            FROM memory_chunks_fts fts
            JOIN memory_chunks mc ON mc.rowid = fts.rowid
            WHERE memory_chunks_fts MATCH ?
              AND mc.conversation_id = ?
              AND mc.workspace_id = ?
            ORDER BY rank
            LIMIT ?
        """
        try:
            async with self._db.execute(
                sql, (fts_query, conversation_id, workspace_id, limit)
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.warning(f"FTS search failed for query '{fts_query}': {e}")
            return {}

        # FTS5 rank is negative (lower = better), normalize to 0..1
        scores: dict[str, float] = {}
        for chunk_id, rank in rows:
            magnitude = abs(rank or 0.0)
            scores[chunk_id] = min(1.0, magnitude / 10.0) if magnitude > 0 else 0.5
        return scores

    @staticmethod
    def _sanitize_fts_query(query: str) -> str:
        """Quote each word and join with OR so FTS5 never sees raw syntax."""
        words = [w.replace('"', "") for w in query.split()]
        return " OR ".join(f'"{w}"' for w in words if w.strip())

    @staticmethod
    def _row_to_chunk(row) -> MemoryChunk:
        data = dict(zip(_CHUNK_COLUMNS, row))
        return MemoryChunk(
            id=data["id"],
            content=data["content"],
            created_at=_parse_timestamp(data["created_at"]),
            conversation_id=data["conversation_id"],
            user_id=data["user_id"],
            workspace_id=data["workspace_id"],
            chunk_type=ChunkType(data["chunk_type"]),
            importance_score=data["importance_score"],
            entities=[Entity.model_validate(e) for e in json.loads(data["entities"] or "[]")],
            embeddings=ChunkEmbeddings(
                semantic=deserialize_embedding(data["semantic_embedding"] or b""),
                entity=deserialize_embedding(data["entity_embedding"] or b""),
                intent=deserialize_embedding(data["intent_embedding"] or b""),
            ),
            metadata=ChunkMetadata.model_validate_json(data["metadata"]),
        )

    # ------------------------------------------------------------------
    # User profiles
    # ------------------------------------------------------------------

    async def get_user_memory(self, user_id: str) -> UserMemory | None:
        """Get a user's profile.

        Args:
            user_id: User identifier

        Returns:
            UserMemory or None if the user has no profile yet
        """
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self._db.execute(
            f"SELECT {', '.join(_USER_COLUMNS)} FROM user_memory WHERE user_id = ?",
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None

        data = dict(zip(_USER_COLUMNS, row))
        return UserMemory(
            user_id=data["user_id"],
            workspace_id=data["workspace_id"],
            name=data["name"],
            email=data["email"],
            phone=data["phone"],
            preferences=json.loads(data["preferences"] or "{}"),
            communication_style=CommunicationStyle.model_validate_json(
                data["communication_style"] or "{}"
            ),
            long_term_context=LongTermContext.model_validate_json(
                data["long_term_context"] or "{}"
            ),
            corrections_history=[
                CorrectionRecord.model_validate(c)
                for c in json.loads(data["corrections_history"] or "[]")
            ],
            created_at=_parse_timestamp(data["created_at"]),
            last_updated=_parse_timestamp(data["last_updated"]),
        )

    async def merge_user_memory(
        self, user_id: str, workspace_id: str, update: UserMemoryUpdate
    ) -> UserMemory:
        """Create the user's profile if missing and merge *update* into it.

        Args:
            user_id: User identifier
            workspace_id: Workspace recorded on first creation
            update: Incremental changes

        Returns:
            The stored profile after the merge
        """
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self._profile_lock:
            current = await self.get_user_memory(user_id)
            if current is None:
                current = UserMemory(user_id=user_id, workspace_id=workspace_id)
                logger.info(f"Creating user memory for {user_id}")
            merged = update.apply_to(current)

            await self._db.execute(
                """
                INSERT INTO user_memory (
                    user_id, workspace_id, name, email, phone, preferences,
                    communication_style, long_term_context,
                    corrections_history, created_at, last_updated
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    name = excluded.name,
                    email = excluded.email,
                    phone = excluded.phone,
                    preferences = excluded.preferences,
                    communication_style = excluded.communication_style,
                    long_term_context = excluded.long_term_context,
                    corrections_history = excluded.corrections_history,
                    last_updated = excluded.last_updated
                """,
                (
                    merged.user_id,
                    merged.workspace_id,
                    merged.name,
                    merged.email,
                    merged.phone,
                    json.dumps(merged.preferences),
                    merged.communication_style.model_dump_json(),
                    merged.long_term_context.model_dump_json(),
                    json.dumps(
                        [c.model_dump(mode="json") for c in merged.corrections_history]
                    ),
                    merged.created_at.isoformat(),
                    merged.last_updated.isoformat(),
                ),
            )
            await self._db.commit()

        logger.debug(f"User memory merged: {user_id}")
        return merged
