"""Service layer for the Todo MCP server."""
