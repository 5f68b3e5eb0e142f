"""MCP server surface for Notevault."""
