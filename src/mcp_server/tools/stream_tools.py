"""Stream management tools."""

from stream_errors import StreamError

from ..models import StreamStatus
from ..state import get_registry, stream_url
from ..utils import tool_error


def list_streams() -> list[StreamStatus]:
    """
    List all active stream sessions.

    Returns:
        Status of each session, including how many players are reading from it.
    """
    return [
        StreamStatus(
            info_hash=session.info_hash,
            name=session.display_name,
            state=session.state.value,
            file_count=len(session.files),
            active_readers=session.active_readers,
            error_message=str(session.error) if session.error else None,
        )
        for session in get_registry().sessions()
    ]


async def prepare_file(info_hash: str, file_index: int) -> dict[str, str]:
    """
    Start downloading one file of a torrent ahead of playback.

    Args:
        info_hash: The 40-character info hash of an active stream.
        file_index: Index of the file in the torrent.

    Returns:
        The file name and the URL a player can stream it from.
    """
    try:
        session = get_registry().require(info_hash)
        await session.await_ready()
        entry = session.select_file(file_index)
    except StreamError as e:
        raise tool_error(e) from e

    return {
        "name": entry.name,
        "stream_url": stream_url(session.info_hash, entry.index),
    }


async def stop_stream(info_hash: str) -> dict[str, str]:
    """
    Stop a stream and delete its downloaded data.

    Args:
        info_hash: The 40-character info hash of the stream to stop.

    Returns:
        Confirmation of the stop.
    """
    if not await get_registry().destroy(info_hash):
        raise ValueError(f"not_found: no active stream with hash {info_hash}")
    return {"status": "stopped", "info_hash": info_hash.lower()}


def register_stream_tools(mcp) -> None:
    """Register stream-related tools with the MCP server."""
    mcp.tool()(list_streams)
    mcp.tool()(prepare_file)
    mcp.tool()(stop_stream)
