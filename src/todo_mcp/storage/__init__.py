"""Storage layer for the Todo MCP server."""

from todo_mcp.storage.base import Repository
from todo_mcp.storage.category_repository import CategoryRepository
from todo_mcp.storage.search_repository import SearchRepository
from todo_mcp.storage.todo_repository import TodoRepository

__all__ = [
    "Repository",
    "CategoryRepository",
    "SearchRepository",
    "TodoRepository",
]
