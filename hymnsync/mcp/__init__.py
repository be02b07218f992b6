"""MCP tool layer for hymnsync."""
