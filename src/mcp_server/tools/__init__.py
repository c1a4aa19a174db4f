"""MCP tools for the torrent streaming bridge."""

from .key_tools import register_key_tools
from .stream_tools import register_stream_tools
from .torrent_tools import register_torrent_tools


def register_all_tools(mcp) -> None:
    """Register all MCP tools with the server."""
    register_torrent_tools(mcp)
    register_stream_tools(mcp)
    register_key_tools(mcp)
