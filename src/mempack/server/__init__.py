"""MCP server for memory search."""

from mempack.server.mcp_server import create_mcp_server, format_read_result, format_search_response

__all__ = ["create_mcp_server", "format_read_result", "format_search_response"]
