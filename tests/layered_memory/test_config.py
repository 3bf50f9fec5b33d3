"""Tests for configuration loading and logging setup."""

import sys

import pytest
from loguru import logger
from pydantic import ValidationError

from layered_memory.config import (
    BudgetAllocation,
    MemoryConfig,
    StorageConfig,
    load_config,
)
from layered_memory.log import setup_logging


class TestDefaults:
    def test_default_config(self):
        config = MemoryConfig()
        assert config.context.window_tokens == 30000
        assert config.context.budget_allocation.buffer == 0.05
        assert config.embedding.dimension == 1536
        assert config.extraction.confidence_threshold == 0.7
        assert config.retrieval.critical_threshold == 0.8
        assert config.scoring.failure_score == 0.1

    def test_budget_allocation_must_not_exceed_one(self):
        with pytest.raises(ValidationError, match="must not exceed 1.0"):
            BudgetAllocation(recent=0.5, session=0.5)

    def test_budget_allocation_may_leave_slack(self):
        allocation = BudgetAllocation(recent=0.1, session=0.1, user_profile=0.1, critical=0.1)
        assert allocation.buffer == 0.05

    def test_storage_rejects_parent_traversal(self):
        with pytest.raises(ValidationError, match="must not contain"):
            StorageConfig(sqlite_db_path="../outside/memory.db")

    def test_storage_normalizes_path(self):
        assert StorageConfig(sqlite_db_path="./memory//x.db").sqlite_db_path == "memory/x.db"

    def test_window_must_be_positive(self):
        with pytest.raises(ValidationError):
            MemoryConfig(context={"window_tokens": 0})


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_nested_memory_key_and_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LM_DB_PATH", "data/test.db")
        path = tmp_path / "conf.yaml"
        path.write_text(
            "memory:\n"
            "  storage:\n"
            "    backend: sqlite\n"
            "    sqlite_db_path: ${LM_DB_PATH}\n"
            "  context:\n"
            "    window_tokens: 8000\n"
            "    budget_allocation:\n"
            "      session: 0.30\n"
            "  embedding:\n"
            "    model: ${UNSET_MODEL_VAR}\n",
            encoding="utf-8",
        )

        config = load_config(path)

        assert config.storage.sqlite_db_path == "data/test.db"
        assert config.context.window_tokens == 8000
        assert config.context.budget_allocation.session == 0.30
        assert config.context.budget_allocation.recent == 0.20
        assert config.embedding.model == "${UNSET_MODEL_VAR}"

    def test_bare_config(self, tmp_path):
        path = tmp_path / "conf.yaml"
        path.write_text("extraction:\n  llm_enabled: false\n", encoding="utf-8")

        assert load_config(path).extraction.llm_enabled is False

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")

        assert load_config(path) == MemoryConfig()


class TestLogging:
    def test_setup_logging_installs_sink(self):
        messages = []
        try:
            setup_logging("debug", sink=messages.append)
            logger.debug("layered memory ready")
            logger.trace("too verbose")
        finally:
            logger.remove()
            logger.add(sys.stderr)

        assert len(messages) == 1
        assert "layered memory ready" in messages[0]
        assert "DEBUG" in messages[0]
