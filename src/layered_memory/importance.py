"""Multi-factor importance scoring for memory chunks.

The score is a weighted sum of nine factors, clamped to [0, 1]. Most factors
are pure functions of the text and its entities; the context factor reads
the latest chunks of the conversation from the store.
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING

from loguru import logger

from .config import ScoringConfig
from .models import Entity, EntityType, ScoredMessage, ScoringFactors

if TYPE_CHECKING:
    from .storage.base import MemoryStore


# ---------------------------------------------------------------------------
# Factor weights (question is a penalty)
# ---------------------------------------------------------------------------
WEIGHTS: dict[str, float] = {
    "entity": 0.25,
    "pattern": 0.20,
    "context": 0.15,
    "correction": 0.15,
    "preference": 0.10,
    "question": -0.05,
    "reference": 0.10,
    "length": 0.05,
    "engagement": 0.05,
}

ENTITY_TYPE_WEIGHTS: dict[EntityType, float] = {
    EntityType.PERSON: 0.9,
    EntityType.CORRECTION: 0.8,
    EntityType.PREFERENCE: 0.7,
    EntityType.ORG: 0.6,
    EntityType.PROJECT: 0.6,
    EntityType.EMAIL: 0.6,
    EntityType.PHONE: 0.6,
    EntityType.PRODUCT: 0.5,
    EntityType.DATE: 0.4,
    EntityType.LOCATION: 0.3,
}

_STRONG_ENTITY_TYPES = frozenset(
    {EntityType.PERSON, EntityType.CORRECTION, EntityType.PREFERENCE}
)

_NO_ENTITY_SCORE = 0.3

_THRESHOLDS: dict[str, float] = {"low": 0.3, "medium": 0.5, "high": 0.7}


def _compile(patterns: list[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


_HIGH_IMPORTANCE_PATTERNS = _compile(
    [
        # Identity and contact details
        r"\b(?:my name is|i'?m|call me|i am)\s+",
        r"\b(?:i work at|i'm employed by|my company is)",
        r"\b(?:my email is|you can reach me at)",
        # Corrections
        r"\b(?:actually|correction|i meant|no,?\s*i said|that's wrong|let me correct)",
        r"\bnot\s+\w+,?\s*(?:but|it's|i meant)",
        # Strong preferences
        r"\b(?:i always|i never|i prefer|i really like|i hate|i can't stand)",
        r"\b(?:please (?:don't|never)|always remember|make sure)",
        # Instructions
        r"\b(?:important|crucial|critical|essential|must remember)",
        r"\b(?:please note|for future reference|going forward)",
        # Goals and problem statements
        r"\b(?:my goal is|i want to|i need to|my objective)",
        r"\b(?:the problem is|the issue is|the main thing)",
    ]
)

_MEDIUM_IMPORTANCE_PATTERNS = _compile(
    [
        r"\b(?:i like|i enjoy|i don't like|i dislike)",
        r"\b(?:i usually|i typically|i often)",
        r"\b(?:we're working on|our project|my team|our company)",
        r"\b(?:in my experience|from what i've seen)",
        r"\b(?:the reason is|because|due to|caused by)",
        r"\b(?:located in|based in|headquarters)",
    ]
)

_LOW_IMPORTANCE_PATTERNS = _compile(
    [
        r"^(?:what|when|where|who|how|why)\s",
        r"\b(?:can you|could you|would you)\b",
        r"^(?:ok|okay|yes|no|thanks|thank you|got it)\b",
        r"\b(?:sounds good|looks good|makes sense)\b",
        r"\b(?:i think|i believe|maybe|perhaps|probably)\b",
        r"\b(?:by the way|anyway|so|well)\b",
    ]
)

_EMPHATIC_WORDS = ("definitely", "absolutely", "never", "always", "must", "crucial", "important")
_PERSONAL_PRONOUNS = ("my", "mine", "myself", "i am", "i'm")
_ELABORATION_WORDS = ("also", "additionally", "furthermore", "moreover", "in addition")
_CORRECTION_WORDS = _compile([r"actually", r"correction", r"i meant", r"that's wrong", r"let me correct"])
_STRONG_PREFERENCES = ("i always", "i never", "i hate", "i love", "i really like")
_MILD_PREFERENCES = ("i prefer", "i like", "i don't like", "i usually")
_QUESTION_OPENERS = ("what", "when", "where", "who", "why", "how", "can you", "could you", "would you")
_REFERENCE_PHRASES = (
    "you said", "we discussed", "earlier", "before", "previously",
    "you mentioned", "as we talked about", "from our conversation",
)


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


class ImportanceScorer:
    """Scores how important a message is for future retrieval."""

    def __init__(
        self,
        store: MemoryStore | None = None,
        config: ScoringConfig | None = None,
    ):
        """Initialize scorer.

        Args:
            store: Chunk store used for the context factor (optional)
            config: Scoring configuration
        """
        self._store = store
        self._config = config or ScoringConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def score(
        self,
        text: str,
        entities: list[Entity],
        conversation_id: str,
        user_id: str | None = None,
    ) -> float:
        """Return the importance of *text* in [0, 1].

        Never raises; an internal failure yields the configured failure
        score.
        """
        try:
            factors = await self._calculate_factors(text, entities, conversation_id, user_id)
        except Exception as e:
            logger.warning(f"Importance scoring failed, using failure score: {e}")
            return self._config.failure_score
        return self.combine(factors)

    async def score_with_details(
        self,
        text: str,
        entities: list[Entity],
        conversation_id: str,
        user_id: str | None = None,
    ) -> ScoredMessage:
        """Score *text* and return the factor breakdown with a short reasoning."""
        try:
            factors = await self._calculate_factors(text, entities, conversation_id, user_id)
            importance = self.combine(factors)
            reasoning = self.explain(factors)
        except Exception as e:
            logger.warning(f"Importance scoring failed, using failure score: {e}")
            factors = ScoringFactors()
            importance = self._config.failure_score
            reasoning = "Scoring failed"

        return ScoredMessage(
            content=text,
            importance_score=importance,
            factors=factors,
            reasoning=reasoning,
            entities=entities,
        )

    async def batch_score(self, messages: list[dict]) -> list[float]:
        """Score many messages concurrently.

        Args:
            messages: Dicts with ``content``, ``entities``, ``conversation_id``
                and optionally ``user_id``.
        """
        return list(
            await asyncio.gather(
                *(
                    self.score(
                        m["content"],
                        m.get("entities", []),
                        m["conversation_id"],
                        m.get("user_id"),
                    )
                    for m in messages
                )
            )
        )

    @staticmethod
    def get_importance_threshold(level: str) -> float:
        return _THRESHOLDS.get(level, 0.5)

    @staticmethod
    def combine(factors: ScoringFactors) -> float:
        """Weighted sum of *factors*, clamped to [0, 1]."""
        weighted = (
            factors.entity_score * WEIGHTS["entity"]
            + factors.pattern_score * WEIGHTS["pattern"]
            + factors.context_score * WEIGHTS["context"]
            + factors.correction_score * WEIGHTS["correction"]
            + factors.preference_score * WEIGHTS["preference"]
            + factors.question_score * WEIGHTS["question"]
            + factors.reference_score * WEIGHTS["reference"]
            + factors.length_score * WEIGHTS["length"]
            + factors.engagement_score * WEIGHTS["engagement"]
        )
        return max(0.0, min(1.0, weighted))

    @staticmethod
    def explain(factors: ScoringFactors) -> str:
        reasons: list[str] = []
        if factors.entity_score > 0.7:
            reasons.append("Contains important entities (names, corrections, preferences)")
        if factors.correction_score > 0.5:
            reasons.append("Contains corrections or clarifications")
        if factors.preference_score > 0.5:
            reasons.append("Expresses user preferences")
        if factors.pattern_score > 0.6:
            reasons.append("Contains high-importance linguistic patterns")
        if factors.context_score > 0.6:
            reasons.append("Important within conversation context")
        if factors.reference_score > 0.3:
            reasons.append("References past conversation")
        if factors.question_score < -0.1:
            reasons.append("Question (lower importance)")
        return "; ".join(reasons) if reasons else "Standard message importance"

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    async def _calculate_factors(
        self,
        text: str,
        entities: list[Entity],
        conversation_id: str,
        user_id: str | None,
    ) -> ScoringFactors:
        return ScoringFactors(
            entity_score=self.entity_score(entities),
            pattern_score=self.pattern_score(text),
            context_score=await self._context_score(text, conversation_id),
            correction_score=self.correction_score(text, entities),
            preference_score=self.preference_score(text, entities),
            question_score=self.question_score(text),
            reference_score=self.reference_score(text),
            length_score=self.length_score(text),
            # No per-user engagement model yet; neutral for everyone
            engagement_score=0.5,
        )

    @staticmethod
    def entity_score(entities: list[Entity]) -> float:
        """Noisy-or of ``type_weight * confidence`` over *entities*.

        Never drops below the no-entity base, so adding an entity or raising
        a confidence can only increase the score.
        """
        if not entities:
            return _NO_ENTITY_SCORE

        miss = 1.0
        for entity in entities:
            weight = ENTITY_TYPE_WEIGHTS.get(entity.type, 0.3)
            miss *= 1.0 - weight * entity.confidence
        score = max(_NO_ENTITY_SCORE, 1.0 - miss)

        strong = sum(
            1 for e in entities
            if e.type in _STRONG_ENTITY_TYPES and e.confidence > 0.8
        )
        if strong > 1:
            score *= 1.2

        return min(1.0, score)

    @staticmethod
    def pattern_score(text: str) -> float:
        lowered = text.lower()
        stripped = lowered.strip()
        score = 0.3

        score += 0.3 * sum(1 for p in _HIGH_IMPORTANCE_PATTERNS if p.search(text))
        score += 0.15 * sum(1 for p in _MEDIUM_IMPORTANCE_PATTERNS if p.search(text))
        score -= 0.1 * sum(1 for p in _LOW_IMPORTANCE_PATTERNS if p.search(stripped))

        score += 0.1 * sum(1 for w in _EMPHATIC_WORDS if _contains_word(lowered, w))
        score += 0.05 * sum(1 for w in _PERSONAL_PRONOUNS if _contains_word(lowered, w))

        return max(0.0, min(1.0, score))

    async def _context_score(self, text: str, conversation_id: str) -> float:
        if self._store is None:
            return 0.5

        try:
            recent = await self._store.get_recent_chunks(
                conversation_id, limit=self._config.context_lookback
            )
        except Exception as e:
            logger.warning(f"Context scoring could not read recent chunks: {e}")
            return 0.5

        if not recent:
            return 0.5

        score = 0.5
        average = sum(c.importance_score for c in recent) / len(recent)
        if average > 0.7:
            score += 0.2
        # recent[0] is the newest chunk
        if "?" in recent[0].content:
            score += 0.15
        lowered = text.lower()
        if any(_contains_word(lowered, w) for w in _ELABORATION_WORDS):
            score += 0.1

        return min(1.0, score)

    @staticmethod
    def correction_score(text: str, entities: list[Entity]) -> float:
        if any(e.type == EntityType.CORRECTION for e in entities):
            return 0.9
        if any(p.search(text) for p in _CORRECTION_WORDS):
            return 0.8
        return 0.0

    @staticmethod
    def preference_score(text: str, entities: list[Entity]) -> float:
        if any(e.type == EntityType.PREFERENCE for e in entities):
            return 0.7
        lowered = text.lower()
        if any(phrase in lowered for phrase in _STRONG_PREFERENCES):
            return 0.7
        if any(phrase in lowered for phrase in _MILD_PREFERENCES):
            return 0.5
        return 0.0

    @staticmethod
    def question_score(text: str) -> float:
        lowered = text.lower().strip()
        if "?" in text or any(lowered.startswith(w) for w in _QUESTION_OPENERS):
            return -0.2
        return 0.0

    @staticmethod
    def reference_score(text: str) -> float:
        lowered = text.lower()
        return 0.6 if any(phrase in lowered for phrase in _REFERENCE_PHRASES) else 0.0

    @staticmethod
    def length_score(text: str) -> float:
        length = len(text)
        if length < 10:
            return 0.2
        if length < 50:
            return 0.3
        if length <= 200:
            return 0.5
        if length <= 500:
            return 0.4
        return 0.3
