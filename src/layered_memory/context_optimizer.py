"""Priority-ordered merge of context layers under a hard token ceiling.

The ceiling is ``total_budget * (1 - buffer_ratio)``. When every layer fits
together the layers are emitted untouched. Otherwise layers are visited in
descending priority and each receives ``remaining * priority / sum of the
unvisited priorities``; whatever a layer does not use stays in the pool for
the layers after it.
"""

from __future__ import annotations

import math
import re

from loguru import logger

from .models import (
    PRESENTATION_ORDER,
    ContextLayer,
    OptimizationInput,
    OptimizedContext,
)
from .token_counter import TokenCounter, max_chars_for

_SENTENCE = re.compile(r"[^.!?]*[.!?]+")
_ELLIPSIS = "..."


def truncate_text(text: str, max_tokens: int) -> str:
    """Shorten *text* to at most *max_tokens* estimated tokens.

    Whole sentences are kept when at least one fits; otherwise whole words
    followed by ``...``. Returns an empty string when not even one word fits.
    """
    max_chars = max_chars_for(max_tokens)
    if len(text) <= max_chars:
        return text

    kept = ""
    for match in _SENTENCE.finditer(text):
        candidate = kept + match.group(0)
        if len(candidate.strip()) > max_chars:
            break
        kept = candidate
    if kept.strip():
        return kept.strip()

    words: list[str] = []
    length = 0
    for word in text.split(" "):
        added = len(word) + (1 if words else 0)
        if length + added + len(_ELLIPSIS) > max_chars:
            break
        words.append(word)
        length += added
    if not any(w.strip() for w in words):
        return ""
    return " ".join(words).rstrip() + _ELLIPSIS


class ContextOptimizer:
    """Merges the four context layers into one bounded text blob."""

    def __init__(
        self,
        buffer_ratio: float = 0.05,
        deduplicate_lines: bool = True,
        token_counter: TokenCounter | None = None,
    ):
        """Initialize optimizer.

        Args:
            buffer_ratio: Share of the total budget that is never filled
            deduplicate_lines: Drop lines already emitted by a
                higher-priority layer when trimming is needed
            token_counter: Token counter instance
        """
        self._buffer_ratio = buffer_ratio
        self._deduplicate_lines = deduplicate_lines
        self.token_counter = token_counter or TokenCounter()

    def ceiling(self, total_budget: int) -> int:
        return max(0, math.floor(total_budget * (1 - self._buffer_ratio)))

    def optimize(self, request: OptimizationInput) -> OptimizedContext:
        """Merge the layers of *request* into one context.

        Never raises; an unexpected failure yields an empty context.
        """
        try:
            return self._optimize(request)
        except Exception as e:
            logger.error(f"Context optimization failed: {e}")
            return OptimizedContext(optimizations=[f"Optimization failed: {e}"])

    def _optimize(self, request: OptimizationInput) -> OptimizedContext:
        optimizations: list[str] = []

        layers = [layer for layer in request.layers() if not layer.is_empty]
        if len(layers) < len(PRESENTATION_ORDER):
            optimizations.append("Removed empty layers")

        ceiling = self.ceiling(request.total_budget)
        total = sum(layer.token_count for layer in layers)

        if total <= ceiling:
            logger.debug(f"All layers fit ({total}/{ceiling} tokens)")
            return self._build_result(layers, optimizations, request.layers())

        ordered = sorted(layers, key=lambda layer: layer.priority, reverse=True)
        if self._deduplicate_lines:
            ordered = self._deduplicate(ordered, optimizations)

        fitted = self._allocate(ordered, ceiling, optimizations)
        result = self._build_result(fitted, optimizations, request.layers())
        logger.debug(
            f"Trimmed context from {total} to {result.token_count} tokens "
            f"(ceiling: {ceiling})"
        )
        return result

    # ------------------------------------------------------------------
    # Trimming
    # ------------------------------------------------------------------

    def _allocate(
        self,
        ordered: list[ContextLayer],
        ceiling: int,
        optimizations: list[str],
    ) -> list[ContextLayer]:
        remaining = ceiling
        fitted: list[ContextLayer] = []

        for index, layer in enumerate(ordered):
            unvisited = ordered[index:]
            weight_sum = sum(max(0.0, other.priority) for other in unvisited)
            if weight_sum > 0:
                share = remaining * max(0.0, layer.priority) / weight_sum
            else:
                share = remaining / len(unvisited)
            allowance = max(0, math.floor(share))

            result = self._fit_layer(layer, allowance)
            if result.token_count < layer.token_count:
                optimizations.append(
                    f"Trimmed {layer.name.value} layer "
                    f"({layer.token_count} → {result.token_count} tokens)"
                )
            remaining -= result.token_count
            fitted.append(result)

        return fitted

    def _fit_layer(self, layer: ContextLayer, max_tokens: int) -> ContextLayer:
        """Keep whole lines while they fit, then at most one truncated line."""
        if layer.token_count <= max_tokens:
            return layer

        kept: list[str] = []
        used = 0
        for line in layer.content.split("\n"):
            cost = self.token_counter.count(line)
            if used + cost <= max_tokens:
                kept.append(line)
                used += cost
                continue

            partial = truncate_text(line, max_tokens - used)
            if partial:
                kept.append(partial)
                used += self.token_counter.count(partial)
            break

        return layer.model_copy(update={"content": "\n".join(kept), "token_count": used})

    def _deduplicate(
        self, ordered: list[ContextLayer], optimizations: list[str]
    ) -> list[ContextLayer]:
        """Remove lines already seen in an earlier (higher-priority) layer."""
        seen: set[str] = set()
        result: list[ContextLayer] = []

        for layer in ordered:
            lines = [line for line in layer.content.split("\n") if line.strip()]
            unique: list[str] = []
            for line in lines:
                key = line.strip().lower()
                if key in seen:
                    continue
                seen.add(key)
                unique.append(line)

            if len(unique) < len(lines):
                optimizations.append(
                    f"Deduplicated {layer.name.value} layer "
                    f"({len(lines)} → {len(unique)} lines)"
                )
                layer = layer.model_copy(
                    update={
                        "content": "\n".join(unique),
                        "token_count": self.token_counter.count_lines(unique),
                    }
                )
            result.append(layer)

        return result

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    @staticmethod
    def _build_result(
        layers: list[ContextLayer],
        optimizations: list[str],
        source_layers: list[ContextLayer],
    ) -> OptimizedContext:
        """Join *layers* in presentation order.

        ``sources`` is the ordered union of every layer in *source_layers*
        (given in presentation order), so a layer that trimming emptied still
        reports what it was built from.
        """
        by_name = {layer.name: layer for layer in layers if not layer.is_empty}
        sources: list[str] = []
        for layer in source_layers:
            for source in layer.sources:
                if source not in sources:
                    sources.append(source)

        sections: list[str] = []
        counts = {name.value: 0 for name in PRESENTATION_ORDER}
        total = 0

        for name in PRESENTATION_ORDER:
            layer = by_name.get(name)
            if layer is None:
                continue
            sections.append(f"=== {name.value.upper()} CONTEXT ===\n{layer.content}")
            counts[name.value] = layer.token_count
            total += layer.token_count

        return OptimizedContext(
            content="\n\n".join(sections),
            sources=sources,
            token_count=total,
            layers=counts,
            optimizations=optimizations,
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @staticmethod
    def analyze_distribution(result: OptimizedContext) -> dict:
        """Per-layer share of the context plus balance recommendations."""
        total = result.token_count
        percentages = {
            name: (count / total * 100 if total else 0.0)
            for name, count in result.layers.items()
        }

        recommendations: list[str] = []
        if percentages.get("critical", 0.0) > 30:
            recommendations.append(
                "High critical info usage - consider reviewing importance scoring"
            )
        if percentages.get("recent", 0.0) < 15:
            recommendations.append("Low recent context - may lose conversation flow")
        if percentages.get("session", 0.0) > 50:
            recommendations.append(
                "High session search usage - consider improving search relevance"
            )
        if percentages.get("user_profile", 0.0) == 0:
            recommendations.append("No user profile included - missing personalization")

        return {"percentages": percentages, "recommendations": recommendations}

    @staticmethod
    def create_summary(result: OptimizedContext) -> str:
        total = result.token_count

        def share(count: int) -> str:
            return f"{(count / total * 100) if total else 0.0:.1f}%"

        lines = [f"Context Summary ({total} tokens):"]
        for name in PRESENTATION_ORDER:
            count = result.layers.get(name.value, 0)
            lines.append(f"• {name.value}: {count} tokens ({share(count)})")
        lines.append(f"• Sources: {len(result.sources)}")
        lines.append(f"• Optimizations: {', '.join(result.optimizations) or 'None'}")
        return "\n".join(lines)
