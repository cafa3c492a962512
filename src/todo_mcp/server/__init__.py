"""MCP server for the Todo MCP store."""
