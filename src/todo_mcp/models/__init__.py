"""Data models for the Todo MCP server."""
