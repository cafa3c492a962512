"""
Todo MCP - A multi-user to-do store served as an MCP server.
This package keeps per-user categories and todos in a relational store and
pushes the hard parts into the data layer: optimistic locking on single-row
updates, all-or-nothing bulk operations, and ranked search with cursor and
offset pagination.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("todo-mcp")
except PackageNotFoundError:
    __version__ = "0.3.0"
