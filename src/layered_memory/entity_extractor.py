"""Entity extraction for incoming messages.

Two passes feed one resolution step:

1. A pattern pass over a static table of compiled regular expressions. It is
   synchronous, cheap and always available.
2. An optional model-assisted pass that asks the completion collaborator for
   a JSON list of entities. Any failure there contributes nothing.

Overlapping candidates of the same compatibility group are resolved in
favour of the higher confidence, low-confidence candidates are dropped and
the survivors are returned in text order.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass

from loguru import logger

from .config import ExtractionConfig
from .errors import MalformedModelOutput
from .llm import CompletionProvider
from .models import Entity, EntityType


@dataclass(frozen=True, slots=True)
class _PatternEntry:
    """A single compiled entity pattern with its base confidence."""

    pattern: re.Pattern[str]
    entity_type: EntityType
    confidence: float
    group_index: int = 1


# Capitalised word run used for names; matched case-sensitively even when the
# surrounding trigger phrase is not.
_NAME = r"([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)"
_ORG_NAME = r"([A-Z][\w&-]*(?:\s+(?:&\s+)?[A-Z][\w&-]*)*)"

_BASE_CONFIDENCE: float = 0.7

_MONTHS = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|jun(?:e)?|"
    r"jul(?:y)?|aug(?:ust)?|sep(?:tember)?|oct(?:ober)?|nov(?:ember)?|"
    r"dec(?:ember)?"
)


def _build_patterns() -> tuple[_PatternEntry, ...]:
    """Build and compile the pattern table.

    Entries are evaluated in order. Trigger phrases use scoped ``(?i:...)``
    groups so that name captures can still require capital letters.
    """
    raw: list[dict] = []

    # ===================================================================
    # PERSON
    # ===================================================================
    raw.append(
        {
            "pattern": rf"\b(?i:my name is)\s+{_NAME}",
            "type": EntityType.PERSON,
            "confidence": 0.95,
        }
    )
    raw.append(
        {
            "pattern": rf"\b(?i:i['’]?m|call me|i am)\s+{_NAME}",
            "type": EntityType.PERSON,
            "confidence": _BASE_CONFIDENCE,
        }
    )
    raw.append(
        {
            "pattern": rf"\b(?i:name):\s*{_NAME}",
            "type": EntityType.PERSON,
            "confidence": _BASE_CONFIDENCE,
        }
    )

    # ===================================================================
    # Contact details
    # ===================================================================
    raw.append(
        {
            "pattern": r"(?i)\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b",
            "type": EntityType.EMAIL,
            "confidence": 0.9,
            "group_index": 0,
        }
    )
    raw.append(
        {
            "pattern": r"(?:\+?1[-.\s]?)?\(?\b[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}\b",
            "type": EntityType.PHONE,
            "confidence": _BASE_CONFIDENCE,
            "group_index": 0,
        }
    )

    # ===================================================================
    # DATE
    # ===================================================================
    raw.append(
        {
            "pattern": rf"(?i)\b(?:{_MONTHS})\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b",
            "type": EntityType.DATE,
            "confidence": _BASE_CONFIDENCE,
            "group_index": 0,
        }
    )
    raw.append(
        {
            "pattern": r"\b\d{1,2}/\d{1,2}/\d{2,4}\b",
            "type": EntityType.DATE,
            "confidence": _BASE_CONFIDENCE,
            "group_index": 0,
        }
    )
    raw.append(
        {
            "pattern": r"\b\d{4}-\d{2}-\d{2}\b",
            "type": EntityType.DATE,
            "confidence": _BASE_CONFIDENCE,
            "group_index": 0,
        }
    )

    # ===================================================================
    # ORG
    # ===================================================================
    raw.append(
        {
            "pattern": rf"\b(?i:company|organization|organisation)\s*:?\s*{_ORG_NAME}",
            "type": EntityType.ORG,
            "confidence": _BASE_CONFIDENCE,
        }
    )
    raw.append(
        {
            "pattern": rf"\b(?i:work at|work for|working at|working for|employed by)\s+{_ORG_NAME}",
            "type": EntityType.ORG,
            "confidence": _BASE_CONFIDENCE,
        }
    )

    # ===================================================================
    # PREFERENCE
    # ===================================================================
    raw.append(
        {
            "pattern": r"(?i)\b(?:i prefer|i like|i love|my favou?rite|i enjoy)\s+([^.!?]+)",
            "type": EntityType.PREFERENCE,
            "confidence": _BASE_CONFIDENCE,
        }
    )
    raw.append(
        {
            "pattern": r"(?i)\b(?:i don['’]?t like|i hate|i dislike|i avoid)\s+([^.!?]+)",
            "type": EntityType.PREFERENCE,
            "confidence": _BASE_CONFIDENCE,
        }
    )

    # ===================================================================
    # CORRECTION
    # ===================================================================
    raw.append(
        {
            "pattern": r"(?i)\bactually\s*[,:;]?\s*([^.!?]+)",
            "type": EntityType.CORRECTION,
            "confidence": 0.85,
        }
    )
    raw.append(
        {
            "pattern": (
                r"(?i)\b(?:correction|i meant|no,?\s*i said|that['’]?s wrong|"
                r"let me correct)\s*[,:;]?\s*([^.!?]+)"
            ),
            "type": EntityType.CORRECTION,
            "confidence": _BASE_CONFIDENCE,
        }
    )
    raw.append(
        {
            "pattern": r"(?i)\bnot\s+\w+,?\s*(?:but|it['’]?s|i meant)\s+([^.!?]+)",
            "type": EntityType.CORRECTION,
            "confidence": _BASE_CONFIDENCE,
        }
    )

    return tuple(
        _PatternEntry(
            pattern=re.compile(r["pattern"]),
            entity_type=r["type"],
            confidence=r["confidence"],
            group_index=r.get("group_index", 1),
        )
        for r in raw
    )


# Compile once at module load
_PATTERNS: tuple[_PatternEntry, ...] = _build_patterns()

_NAME_INTRO_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    entry.pattern for entry in _PATTERNS if entry.entity_type == EntityType.PERSON
)[:2]

# Types in the same group compete for overlapping spans
_COMPATIBILITY_GROUPS: tuple[frozenset[EntityType], ...] = (
    frozenset({EntityType.PERSON}),
    frozenset({EntityType.ORG, EntityType.PRODUCT}),
    frozenset({EntityType.DATE}),
    frozenset({EntityType.PREFERENCE, EntityType.CORRECTION}),
    frozenset({EntityType.EMAIL, EntityType.PHONE}),
)

_ORG_MINOR_WORDS = frozenset({"and", "or", "the", "of", "in", "at"})

# Capitalised words that follow "I am" / "I'm" / "call me" without being names
_NON_NAME_WORDS = frozenset({
    "a", "actually", "afraid", "also", "always", "an", "at", "available", "back",
    "bored", "busy", "coming", "confused", "curious", "currently", "doing",
    "done", "excited", "feeling", "fine", "free", "from", "glad", "going", "good",
    "happy", "here", "home", "hungry", "in", "interested", "just", "late",
    "later", "leaving", "looking", "maybe", "never", "new", "not", "now", "ok",
    "okay", "only", "ready", "really", "sick", "so", "sorry", "still", "sure",
    "the", "thinking", "tired", "tomorrow", "trying", "very", "well", "working",
})

_EXTRACTION_PROMPT = """\
You are an expert entity extraction system. Extract important entities from \
this text with high precision.

Text: "{text}"

Extract these entity types:
- PERSON: Names of people (including the user's name)
- ORG: Companies, organizations
- PRODUCT: Products, services, tools, software
- DATE: Dates, times, deadlines
- PREFERENCE: User preferences, likes, dislikes
- CORRECTION: Corrections or clarifications the user makes
- LOCATION: Places, addresses, cities, countries
- PROJECT: Project names, initiatives
- EMAIL: Email addresses
- PHONE: Phone numbers

Rules:
- Only extract entities that are clearly mentioned
- Use the exact text span from the input
- Be conservative; only high-confidence entities

Output ONLY a JSON object, no other text:
{{"entities": [{{"text": "exact text from input", "type": "ENTITY_TYPE", \
"confidence": 0.95, "start_char": 10, "end_char": 15, \
"canonical_form": "normalized version"}}]}}"""


def types_compatible(a: EntityType, b: EntityType) -> bool:
    """Whether two entity types compete for the same span."""
    if a == b:
        return True
    return any(a in group and b in group for group in _COMPATIBILITY_GROUPS)


def canonicalize(entity_type: EntityType, text: str) -> str:
    """Normalize entity text to its canonical form.

    PERSON: each word capitalised. ORG: each word capitalised except minor
    words. EMAIL: lower-cased. Other types are returned unchanged.
    """
    text = text.strip()
    if entity_type == EntityType.PERSON:
        return " ".join(_capitalize(word) for word in text.split(" "))
    if entity_type == EntityType.ORG:
        return " ".join(
            word.lower() if word.lower() in _ORG_MINOR_WORDS else _capitalize(word)
            for word in text.split(" ")
        )
    if entity_type == EntityType.EMAIL:
        return text.lower()
    return text


def _capitalize(word: str) -> str:
    return word[:1].upper() + word[1:].lower()


def _context_window(text: str, start: int, end: int, width: int) -> str:
    return text[max(0, start - width):min(len(text), end + width)]


def _is_name(span: str) -> bool:
    words = span.split()
    return bool(words) and words[0].lower() not in _NON_NAME_WORDS


def _should_skip(entity_type: EntityType, span: str) -> bool:
    if entity_type == EntityType.PERSON and (len(span) <= 1 or not _is_name(span)):
        return True
    if entity_type == EntityType.ORG and len(span) <= 2:
        return True
    return False


class EntityExtractor:
    """Extracts typed entities from message text."""

    def __init__(
        self,
        config: ExtractionConfig | None = None,
        completion: CompletionProvider | None = None,
        timeout: float = 15.0,
    ):
        """Initialize extractor.

        Args:
            config: Extraction configuration
            completion: Optional completion collaborator for the model pass
            timeout: Seconds allowed for the model pass
        """
        self._config = config or ExtractionConfig()
        self._completion = completion
        self._timeout = timeout
        self._patterns = _PATTERNS

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def extract(self, text: str) -> list[Entity]:
        """Extract entities from *text*.

        Args:
            text: Raw message text.

        Returns:
            Entities with confidence at or above the configured threshold,
            at most ``max_entities`` of them, ordered by start offset.
        """
        if not text or not text.strip():
            return []

        candidates: list[Entity] = []
        if self._config.rule_based_enabled:
            candidates.extend(self.extract_with_patterns(text))
        if self._config.llm_enabled and self._completion is not None:
            candidates.extend(await self._extract_with_model(text))

        merged = self._merge_overlapping(candidates)
        selected = self._select(merged)

        logger.debug(
            f"Extracted {len(selected)} entities: "
            f"{', '.join(f'{e.type.value}:{e.text}' for e in selected)}"
        )
        return selected

    def extract_with_patterns(self, text: str) -> list[Entity]:
        """Run only the pattern pass. Unfiltered and unmerged."""
        width = self._config.context_window_chars
        entities: list[Entity] = []

        for entry in self._patterns:
            for match in entry.pattern.finditer(text):
                span = match.group(entry.group_index)
                if span is None:
                    continue
                stripped = span.strip()
                if not stripped or _should_skip(entry.entity_type, stripped):
                    continue

                # Offsets of the stripped capture inside the text
                start = match.start(entry.group_index) + (len(span) - len(span.lstrip()))
                end = start + len(stripped)

                confidence = entry.confidence
                if len(stripped) <= 2:
                    confidence *= 0.5

                entities.append(
                    Entity(
                        text=stripped,
                        type=entry.entity_type,
                        confidence=min(1.0, confidence),
                        start_char=start,
                        end_char=end,
                        canonical_form=canonicalize(entry.entity_type, stripped),
                        context=_context_window(text, start, end, width),
                    )
                )

        return entities

    async def extract_specific_type(
        self, text: str, entity_type: EntityType
    ) -> list[Entity]:
        entities = await self.extract(text)
        return [e for e in entities if e.type == entity_type]

    async def has_corrections(self, text: str) -> bool:
        corrections = await self.extract_specific_type(text, EntityType.CORRECTION)
        return len(corrections) > 0

    @staticmethod
    def find_introduced_name(text: str) -> str | None:
        """Name following "my name is", "I'm", "call me" or "I am", if any."""
        for pattern in _NAME_INTRO_PATTERNS:
            for match in pattern.finditer(text):
                name = match.group(1).strip()
                if _is_name(name):
                    return name
        return None

    async def extract_user_name(self, text: str) -> str | None:
        """Return the name the user introduces themselves with, if any.

        Introduction phrases win; otherwise the first PERSON entity with
        confidence >= 0.8 is used.
        """
        introduced = self.find_introduced_name(text)
        if introduced:
            return introduced

        people = await self.extract_specific_type(text, EntityType.PERSON)
        for person in people:
            if person.confidence >= 0.8:
                return person.canonical_form or person.text
        return None

    # ------------------------------------------------------------------
    # Model-assisted pass
    # ------------------------------------------------------------------

    async def _extract_with_model(self, text: str) -> list[Entity]:
        prompt = _EXTRACTION_PROMPT.format(text=text)
        try:
            response = await asyncio.wait_for(
                self._completion.complete(prompt), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Model entity extraction timed out after {self._timeout}s"
            )
            return []
        except Exception as e:
            logger.warning(f"Model entity extraction failed: {e}")
            return []

        try:
            return self._parse_response(response, text)
        except MalformedModelOutput as e:
            logger.warning(f"Discarding model entity output: {e}")
            logger.debug(f"Raw response: {str(response)[:500]}")
            return []

    def _parse_response(self, raw: str, text: str) -> list[Entity]:
        """Parse the first JSON object in *raw* into entities.

        Raises:
            MalformedModelOutput: No JSON object, or no ``entities`` list.
        """
        if not isinstance(raw, str):
            raise MalformedModelOutput(f"expected text, got {type(raw).__name__}")

        brace = raw.find("{")
        if brace == -1:
            raise MalformedModelOutput("no JSON object in response")
        try:
            data, _ = json.JSONDecoder().raw_decode(raw[brace:])
        except json.JSONDecodeError as e:
            raise MalformedModelOutput(f"invalid JSON: {e}") from e

        items = data.get("entities") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise MalformedModelOutput("missing 'entities' list")

        width = self._config.context_window_chars
        entities: list[Entity] = []
        for item in items:
            if not isinstance(item, dict):
                continue

            span = item.get("text")
            type_str = item.get("type")
            confidence = item.get("confidence")
            if not isinstance(span, str) or not span.strip() or not type_str:
                continue
            if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
                continue
            try:
                entity_type = EntityType(str(type_str).upper())
            except ValueError:
                continue

            span = span.strip()
            start, end = self._locate(span, text, item.get("start_char"), item.get("end_char"))
            canonical = item.get("canonical_form")
            if not isinstance(canonical, str) or not canonical.strip():
                canonical = canonicalize(entity_type, span)

            entities.append(
                Entity(
                    text=span,
                    type=entity_type,
                    confidence=max(0.0, min(1.0, float(confidence))),
                    start_char=start,
                    end_char=end,
                    canonical_form=canonical,
                    context=_context_window(text, start, end, width),
                )
            )

        return entities

    @staticmethod
    def _locate(span: str, text: str, start, end) -> tuple[int, int]:
        """Verify model-reported offsets, recomputing them when they are off.

        A span that cannot be found in the text keeps the reported offsets
        (or ``0..len(span)``) as a best effort.
        """
        has_offsets = (
            isinstance(start, int) and isinstance(end, int)
            and not isinstance(start, bool) and not isinstance(end, bool)
        )
        if has_offsets and 0 <= start < end <= len(text):
            if text[start:end].lower() == span.lower():
                return start, end

        index = text.lower().find(span.lower())
        if index != -1:
            return index, index + len(span)

        if has_offsets and 0 <= start < end:
            return start, end
        return 0, len(span)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_overlapping(entities: list[Entity]) -> list[Entity]:
        """Resolve overlapping candidates within each compatibility group.

        A candidate displaces the kept entities it overlaps only when its
        confidence is strictly higher than all of theirs.
        """
        ordered = sorted(entities, key=lambda e: (e.start_char, e.end_char))
        kept: list[Entity] = []

        for candidate in ordered:
            rivals = [
                k for k in kept
                if types_compatible(k.type, candidate.type) and k.overlaps(candidate)
            ]
            if not rivals:
                kept.append(candidate)
            elif candidate.confidence > max(r.confidence for r in rivals):
                kept = [k for k in kept if not any(k is r for r in rivals)]
                kept.append(candidate)

        return kept

    def _select(self, entities: list[Entity]) -> list[Entity]:
        confident = [
            e for e in entities if e.confidence >= self._config.confidence_threshold
        ]
        top = sorted(confident, key=lambda e: e.confidence, reverse=True)
        top = top[: self._config.max_entities]
        return sorted(top, key=lambda e: (e.start_char, e.end_char))
