"""Configuration module for the Todo MCP server."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from todo_mcp import __version__
from todo_mcp.models.schema import BulkStrategy

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives next to the default database
_USER_ENV = Path.home() / ".todo-mcp" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class TodoConfig(BaseModel):
    """Configuration for the Todo MCP server."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("TODO_MCP_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("TODO_MCP_DATABASE_PATH", "data/db/todos.db")
        )
    )
    # When True, uses a private in-memory SQLite database (tests, demos)
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("TODO_MCP_IN_MEMORY_DB", "false")
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("TODO_MCP_SERVER_NAME", "todo-mcp"))
    server_version: str = Field(default=__version__)
    # Identity verified by the host process. Never taken from tool arguments.
    user_id: Optional[str] = Field(
        default_factory=lambda: os.getenv("TODO_MCP_USER_ID") or None
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("TODO_MCP_LOG_LEVEL", "INFO")
    )

    # Pagination
    items_per_page: int = Field(
        default_factory=lambda: int(os.getenv("TODO_MCP_ITEMS_PER_PAGE", "20"))
    )
    default_search_limit: int = Field(
        default_factory=lambda: int(os.getenv("TODO_MCP_SEARCH_LIMIT", "20"))
    )
    suggestion_limit: int = Field(
        default_factory=lambda: int(os.getenv("TODO_MCP_SUGGESTION_LIMIT", "5"))
    )

    # Ranking tiers. Tuned empirically, so they stay overridable.
    exact_match_rank: float = Field(
        default_factory=lambda: float(os.getenv("TODO_MCP_EXACT_MATCH_RANK", "1.0"))
    )
    prefix_match_rank: float = Field(
        default_factory=lambda: float(os.getenv("TODO_MCP_PREFIX_MATCH_RANK", "0.8"))
    )
    substring_match_rank: float = Field(
        default_factory=lambda: float(
            os.getenv("TODO_MCP_SUBSTRING_MATCH_RANK", "0.6")
        )
    )
    # Rows whose trigram similarity is at or below this are excluded
    similarity_threshold: float = Field(
        default_factory=lambda: float(
            os.getenv("TODO_MCP_SIMILARITY_THRESHOLD", "0.2")
        )
    )

    # Bulk operations
    bulk_strategy: BulkStrategy = Field(
        default_factory=lambda: BulkStrategy(
            os.getenv("TODO_MCP_BULK_STRATEGY", BulkStrategy.SET_BASED.value)
        )
    )

    # Caller-side retry for transient failures
    max_retries: int = Field(
        default_factory=lambda: int(os.getenv("TODO_MCP_MAX_RETRIES", "3"))
    )
    retry_delay: float = Field(
        default_factory=lambda: float(os.getenv("TODO_MCP_RETRY_DELAY", "1.0"))
    )

    model_config = {"validate_assignment": True}

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def _validate_ranking(self) -> "TodoConfig":
        """Validate that ranking tiers stay strictly ordered."""
        if not (
            1.0
            >= self.exact_match_rank
            > self.prefix_match_rank
            > self.substring_match_rank
            > self.similarity_threshold
            >= 0.0
        ):
            raise ValueError(
                "Ranking tiers must satisfy 1 >= exact > prefix > substring "
                "> similarity_threshold >= 0"
            )
        if self.items_per_page < 1:
            raise ValueError("items_per_page must be >= 1")
        if self.default_search_limit < 1:
            raise ValueError("default_search_limit must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite://"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = TodoConfig()
