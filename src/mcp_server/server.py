"""
Main MCP server setup and entry point.

This module initializes the FastMCP server and registers all tools and resources.
The HTTP streaming server runs inside the same process for the MCP server's lifetime.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from mcp_server import state
from mcp_server.resources import register_resources
from mcp_server.tools import register_all_tools


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[dict]:
    """Serve stream URLs while the MCP server is up."""
    await state.start_server()
    try:
        yield {}
    finally:
        await state.stop_server()


# Initialize FastMCP server
mcp = FastMCP(
    "Torrent Stream Bridge",
    instructions="Turns magnet links into seekable HTTP streams. "
    "Use the available tools to list a torrent's playable files, get stream URLs, and stop streams. "
    "Stream URLs are served by this process while it runs.",
    lifespan=lifespan,
)

# Register all tools and resources
register_all_tools(mcp)
register_resources(mcp)


def main() -> None:
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
