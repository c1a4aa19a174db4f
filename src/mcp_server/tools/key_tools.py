"""API key tools."""

from ..models import KeyStatus
from ..state import get_key_store


def api_key_status() -> KeyStatus:
    """
    Check whether the search API key is configured.

    The key itself is never returned, only a masked form.

    Returns:
        Whether a key is set, its masked value and the file it was read from.
    """
    store = get_key_store()
    has_key = store.load()
    return KeyStatus(
        has_api_key=has_key,
        masked_key=store.masked() if has_key else "",
        path=str(store.last_path) if has_key and store.last_path else None,
    )


def register_key_tools(mcp) -> None:
    """Register key-related tools with the MCP server."""
    mcp.tool()(api_key_status)
