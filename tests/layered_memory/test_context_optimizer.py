"""Tests for ContextOptimizer."""

from __future__ import annotations

import pytest

from layered_memory.context_optimizer import ContextOptimizer, truncate_text
from layered_memory.models import (
    ContextLayer,
    LayerName,
    OptimizationInput,
    OptimizedContext,
)
from layered_memory.token_counter import estimate_tokens

PRIORITIES = {
    LayerName.CRITICAL: 0.9,
    LayerName.SESSION: 0.8,
    LayerName.RECENT: 0.7,
    LayerName.USER_PROFILE: 0.6,
}


def _layer(name: LayerName, lines: list[str], sources: list[str]) -> ContextLayer:
    return ContextLayer(
        name=name,
        content="\n".join(lines),
        sources=sources,
        token_count=sum(estimate_tokens(line) for line in lines),
        priority=PRIORITIES[name],
    )


def _sized_layer(name: LayerName, tokens: int) -> ContextLayer:
    """Layer of unique 40-char (10-token) lines adding up to *tokens*."""
    lines = [f"{name.value}-{i:03d}".ljust(40, "-") for i in range(tokens // 10)]
    return _layer(name, lines, [f"{name.value}-a", f"{name.value}-b"])


def _request(total_budget: int, **layers: ContextLayer) -> OptimizationInput:
    return OptimizationInput(
        critical=layers.get("critical", ContextLayer(name=LayerName.CRITICAL)),
        recent=layers.get("recent", ContextLayer(name=LayerName.RECENT)),
        session=layers.get("session", ContextLayer(name=LayerName.SESSION)),
        user_profile=layers.get(
            "user_profile", ContextLayer(name=LayerName.USER_PROFILE)
        ),
        total_budget=total_budget,
    )


@pytest.fixture
def optimizer() -> ContextOptimizer:
    return ContextOptimizer(buffer_ratio=0.05)


# ---------------------------------------------------------------------------
# Ceiling
# ---------------------------------------------------------------------------


class TestCeiling:
    def test_over_budget_layers_are_trimmed_below_ceiling(self, optimizer):
        request = _request(
            1000,
            critical=_sized_layer(LayerName.CRITICAL, 500),
            recent=_sized_layer(LayerName.RECENT, 500),
            session=_sized_layer(LayerName.SESSION, 500),
            user_profile=_sized_layer(LayerName.USER_PROFILE, 500),
        )

        result = optimizer.optimize(request)

        assert result.token_count <= 950
        assert estimate_tokens(result.content) >= result.token_count
        assert all(count > 0 for count in result.layers.values())
        assert sum(result.layers.values()) == result.token_count
        assert any(o.startswith("Trimmed") for o in result.optimizations)

    def test_sources_are_ordered_union(self, optimizer):
        request = _request(
            1000,
            critical=_sized_layer(LayerName.CRITICAL, 500),
            recent=_sized_layer(LayerName.RECENT, 500),
            session=_sized_layer(LayerName.SESSION, 500),
            user_profile=_sized_layer(LayerName.USER_PROFILE, 500),
        )

        result = optimizer.optimize(request)

        assert result.sources == [
            "critical-a", "critical-b",
            "recent-a", "recent-b",
            "session-a", "session-b",
            "user_profile-a", "user_profile-b",
        ]

    def test_sources_kept_for_layer_emptied_by_trimming(self, optimizer):
        # ceiling 19: critical takes its 10-token line, session is left 9 tokens
        request = _request(
            21,
            critical=_sized_layer(LayerName.CRITICAL, 10),
            session=_sized_layer(LayerName.SESSION, 10),
        )

        result = optimizer.optimize(request)

        assert result.layers["critical"] == 10
        assert result.layers["session"] == 0
        assert "SESSION CONTEXT" not in result.content
        assert result.sources == [
            "critical-a", "critical-b", "session-a", "session-b",
        ]

    def test_presentation_order(self, optimizer):
        request = _request(
            1000,
            critical=_sized_layer(LayerName.CRITICAL, 500),
            recent=_sized_layer(LayerName.RECENT, 500),
            session=_sized_layer(LayerName.SESSION, 500),
            user_profile=_sized_layer(LayerName.USER_PROFILE, 500),
        )

        content = optimizer.optimize(request).content

        positions = [
            content.index("=== CRITICAL CONTEXT ==="),
            content.index("=== RECENT CONTEXT ==="),
            content.index("=== SESSION CONTEXT ==="),
            content.index("=== USER_PROFILE CONTEXT ==="),
        ]
        assert positions == sorted(positions)

    def test_higher_priority_gets_larger_share(self, optimizer):
        request = _request(
            1000,
            critical=_sized_layer(LayerName.CRITICAL, 500),
            user_profile=_sized_layer(LayerName.USER_PROFILE, 500),
        )

        result = optimizer.optimize(request)

        assert result.layers["critical"] > result.layers["user_profile"]

    def test_zero_budget_yields_empty_context(self, optimizer):
        request = _request(0, recent=_sized_layer(LayerName.RECENT, 100))

        result = optimizer.optimize(request)

        assert result.content == ""
        assert result.token_count == 0


# ---------------------------------------------------------------------------
# Layers that already fit
# ---------------------------------------------------------------------------


class TestFittingLayers:
    def test_emitted_unchanged(self, optimizer):
        critical = _layer(LayerName.CRITICAL, ["[Critical]: My name is Alice"], ["c1"])
        recent = _layer(LayerName.RECENT, ["[user]: hello", "[assistant]: hi"], ["r1", "r2"])
        session = _layer(LayerName.SESSION, ["we talked about tea"], ["s1"])
        profile = _layer(LayerName.USER_PROFILE, ["User's name: Alice"], ["user_profile_name"])

        result = optimizer.optimize(
            _request(1000, critical=critical, recent=recent, session=session,
                     user_profile=profile)
        )

        assert result.content == (
            "=== CRITICAL CONTEXT ===\n[Critical]: My name is Alice\n\n"
            "=== RECENT CONTEXT ===\n[user]: hello\n[assistant]: hi\n\n"
            "=== SESSION CONTEXT ===\nwe talked about tea\n\n"
            "=== USER_PROFILE CONTEXT ===\nUser's name: Alice"
        )
        assert result.token_count == sum(
            layer.token_count for layer in (critical, recent, session, profile)
        )
        assert result.optimizations == []

    def test_empty_critical_layer(self, optimizer):
        recent = _layer(LayerName.RECENT, ["[user]: hello"], ["r1"])
        session = _layer(LayerName.SESSION, ["tea"], ["s1"])

        result = optimizer.optimize(_request(1000, recent=recent, session=session))

        assert "CRITICAL" not in result.content
        assert result.layers["critical"] == 0
        assert result.layers["recent"] == recent.token_count
        assert result.sources == ["r1", "s1"]
        assert "Removed empty layers" in result.optimizations

    def test_all_layers_empty(self, optimizer):
        result = optimizer.optimize(_request(1000))

        assert result.content == ""
        assert result.token_count == 0
        assert result.sources == []


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


class TestDeduplication:
    def test_repeated_line_kept_in_higher_priority_layer(self, optimizer):
        critical = _layer(LayerName.CRITICAL, ["shared line", "crit only"], ["c1"])
        recent = _layer(LayerName.RECENT, ["shared line", "recent only"], ["r1"])

        result = optimizer.optimize(_request(12, critical=critical, recent=recent))

        assert result.content.count("shared line") == 1
        assert "recent only" in result.content
        assert any(o.startswith("Deduplicated recent") for o in result.optimizations)
        assert result.token_count <= optimizer.ceiling(12)

    def test_disabled(self):
        optimizer = ContextOptimizer(deduplicate_lines=False)
        critical = _layer(LayerName.CRITICAL, ["shared line", "crit only"], ["c1"])
        recent = _layer(LayerName.RECENT, ["shared line", "recent only"], ["r1"])

        result = optimizer.optimize(_request(12, critical=critical, recent=recent))

        assert not any(o.startswith("Deduplicated") for o in result.optimizations)


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


class TestTruncateText:
    def test_short_text_unchanged(self):
        assert truncate_text("short", 10) == "short"

    def test_keeps_whole_sentences(self):
        assert truncate_text("First sentence. Second sentence is long.", 5) == "First sentence."

    def test_falls_back_to_words(self):
        assert truncate_text("alpha beta gamma delta", 3) == "alpha..."

    def test_nothing_fits(self):
        assert truncate_text("supercalifragilistic", 1) == ""


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


class TestDiagnostics:
    @pytest.fixture
    def result(self) -> OptimizedContext:
        return OptimizedContext(
            content="x",
            sources=["a", "b"],
            token_count=100,
            layers={"critical": 40, "recent": 10, "session": 50, "user_profile": 0},
            optimizations=["Removed empty layers"],
        )

    def test_analyze_distribution(self, result):
        analysis = ContextOptimizer.analyze_distribution(result)

        assert analysis["percentages"]["critical"] == pytest.approx(40.0)
        assert analysis["percentages"]["session"] == pytest.approx(50.0)
        assert len(analysis["recommendations"]) == 3

    def test_analyze_empty_distribution(self):
        analysis = ContextOptimizer.analyze_distribution(OptimizedContext())
        assert all(p == 0.0 for p in analysis["percentages"].values())

    def test_create_summary(self, result):
        summary = ContextOptimizer.create_summary(result)

        assert summary.startswith("Context Summary (100 tokens):")
        assert "• critical: 40 tokens (40.0%)" in summary
        assert "• Sources: 2" in summary
        assert "Removed empty layers" in summary
