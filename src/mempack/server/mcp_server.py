"""FastMCP server exposing a tenant's memory to an agent."""

from typing import Optional

from mcp.server.fastmcp import FastMCP

from mempack.errors import FileNotFoundInStoreError, PathError
from mempack.manager import MemorySearchManager
from mempack.models import MODE_AUTO, SearchOptions, SearchResponse, normalize_mode
from mempack.status import format_status

SNIPPET_PREVIEW_CHARS = 200


def format_search_response(query: str, response: SearchResponse) -> str:
    """Render search results as a numbered list for the agent."""
    if response.unavailable_reason:
        return f"Memory search unavailable: {response.unavailable_reason}"
    if not response.results:
        return f"No memories found for: {query}"

    lines = []
    for i, r in enumerate(response.results, 1):
        text = r.snippet[:SNIPPET_PREVIEW_CHARS].replace("\n", " ")
        if len(r.snippet) > SNIPPET_PREVIEW_CHARS:
            text += "..."
        lines.append(f"{i}. [{r.score:.3f}] {r.path}:{r.start_line}-{r.end_line} ({r.source})")
        lines.append(f"   {text}")
        lines.append("")
    for warning in response.warnings:
        lines.append(f"Note: {warning}")
    return "\n".join(lines).rstrip()


def format_read_result(result: dict) -> str:
    last = result["from"] + max(0, result["lines"] - 1)
    return f"{result['path']} (lines {result['from']}-{last})\n\n{result['text']}"


def create_mcp_server(manager: MemorySearchManager) -> FastMCP:
    """Create an MCP server bound to one memory manager.

    Design: 1 process = 1 tenant, so one agent never sees another's
    memory.

    Args:
        manager: Manager for the tenant being served

    Returns:
        Configured FastMCP server instance
    """
    mcp = FastMCP(
        name="mempack",
    )

    @mcp.tool()
    def memory_search(
        query: str,
        max_results: Optional[int] = None,
        min_score: Optional[float] = None,
        mode: str = MODE_AUTO,
    ) -> str:
        """Search long-term memory (notes and past conversations).

        Combines semantic similarity with keyword matching, so both
        paraphrases and exact names or identifiers are found.

        Args:
            query: What you want to remember, in natural language
            max_results: Maximum number of snippets (default from config)
            min_score: Minimum relevance between 0 and 1 (default from config)
            mode: "auto" (default), "semantic", "keyword", "hybrid", or "list"
                for the most recently updated files

        Returns:
            Ranked snippets with their path and line range
        """
        opts = SearchOptions(max_results=max_results, min_score=min_score, mode=normalize_mode(mode))
        response = manager.search(query, opts)
        return format_search_response(query, response)

    @mcp.tool()
    def memory_get(path: str, from_line: Optional[int] = None, lines: Optional[int] = None) -> str:
        """Read a memory file, or part of it.

        Args:
            path: Path as shown in memory_search results (e.g. "memory/people.md")
            from_line: First line to return, 1-based
            lines: Number of lines to return

        Returns:
            The requested text
        """
        try:
            result = manager.read_file(path, from_line=from_line, lines=lines)
        except (PathError, FileNotFoundInStoreError) as e:
            return f"Error: {e}"
        return format_read_result(result)

    @mcp.tool()
    def memory_status() -> str:
        """Report index size, engine availability and sync state.

        Returns:
            Human-readable status summary
        """
        return format_status(manager.status())

    return mcp
