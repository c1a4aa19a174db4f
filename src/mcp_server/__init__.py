"""
MCP Server package for the torrent streaming bridge.

Exposes magnet lookup and stream management via the Model Context Protocol.
"""

from mcp_server.server import mcp

__all__ = ["mcp"]
