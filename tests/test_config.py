"""Tests for configuration and command line handling."""
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from todo_mcp.config import TodoConfig, config
from todo_mcp.main import parse_args, update_config
from todo_mcp.models.schema import BulkStrategy


class TestTodoConfig:
    """Tests for TodoConfig."""

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("TODO_MCP_SIMILARITY_THRESHOLD", "0.3")
        monkeypatch.setenv("TODO_MCP_BULK_STRATEGY", "iterative")
        monkeypatch.setenv("TODO_MCP_USER_ID", "user-env")

        cfg = TodoConfig()

        assert cfg.similarity_threshold == 0.3
        assert cfg.bulk_strategy is BulkStrategy.ITERATIVE
        assert cfg.user_id == "user-env"

    def test_blank_user_id_means_none(self, monkeypatch):
        monkeypatch.setenv("TODO_MCP_USER_ID", "")
        assert TodoConfig().user_id is None

    def test_ranking_tiers_must_be_ordered(self):
        with pytest.raises(PydanticValidationError):
            TodoConfig(prefix_match_rank=0.5, substring_match_rank=0.6)

    def test_threshold_below_substring_rank(self):
        with pytest.raises(PydanticValidationError):
            TodoConfig(similarity_threshold=0.7)

    def test_log_level_is_normalized(self):
        assert TodoConfig(log_level="debug").log_level == "DEBUG"

    def test_unknown_log_level(self):
        with pytest.raises(PydanticValidationError):
            TodoConfig(log_level="LOUD")

    def test_in_memory_url(self):
        assert TodoConfig(in_memory_db=True).get_db_url() == "sqlite://"

    def test_file_url_creates_parent(self, tmp_path):
        cfg = TodoConfig(database_path=tmp_path / "nested" / "todos.db")

        url = cfg.get_db_url()

        assert url == f"sqlite:///{tmp_path / 'nested' / 'todos.db'}"
        assert (tmp_path / "nested").is_dir()


class TestCommandLine:
    """Tests for argument parsing in main."""

    @pytest.fixture(autouse=True)
    def restore_config(self, monkeypatch):
        for name in ("database_path", "in_memory_db", "user_id", "bulk_strategy", "log_level"):
            monkeypatch.setattr(config, name, getattr(config, name))

    def test_parse_args(self):
        args = parse_args(
            ["--database-path", "/tmp/t.db", "--log-level", "DEBUG", "--user-id", "u1"]
        )

        assert args.database_path == "/tmp/t.db"
        assert args.log_level == "DEBUG"
        assert args.user_id == "u1"
        assert args.in_memory is False
        assert args.bulk_strategy is None

    def test_user_id_defaults_to_environment(self, monkeypatch):
        monkeypatch.setenv("TODO_MCP_USER_ID", "user-env")
        assert parse_args([]).user_id == "user-env"

    def test_unknown_bulk_strategy_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["--bulk-strategy", "parallel"])

    def test_update_config(self):
        update_config(parse_args([
            "--database-path", "/tmp/t.db", "--user-id", "u1",
            "--bulk-strategy", "iterative", "--in-memory", "--log-level", "WARNING",
        ]))

        assert config.database_path == Path("/tmp/t.db")
        assert config.user_id == "u1"
        assert config.bulk_strategy is BulkStrategy.ITERATIVE
        assert config.in_memory_db is True
        assert config.log_level == "WARNING"
        assert config.get_db_url() == "sqlite://"
