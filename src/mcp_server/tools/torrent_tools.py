"""Magnet parsing and torrent listing tools."""

import asyncio

from magnet import MagnetError, MagnetLink, is_magnet_link
from stream_errors import StreamError
from swarm_session import FileEntry

from ..models import MagnetInfo, TorrentFileInfo, TorrentManifest
from ..state import get_registry, stream_url
from ..utils import format_size, tool_error


def parse_magnet_link(magnet_uri: str) -> MagnetInfo:
    """
    Parse a magnet link and extract its information.

    Magnet links are URIs that identify content by hash rather than location.
    They contain the info hash and optionally display name and tracker URLs.

    Args:
        magnet_uri: The magnet URI to parse (starts with "magnet:?").

    Returns:
        Parsed magnet link information including info hash, name, and trackers.
    """
    try:
        magnet = MagnetLink.parse(magnet_uri)
    except MagnetError as e:
        raise ValueError(f"Failed to parse magnet link: {e}") from e

    return MagnetInfo(
        info_hash=magnet.info_hash_hex,
        display_name=magnet.display_name,
        trackers=magnet.trackers,
        exact_length=magnet.exact_length,
    )


def is_magnet(uri: str) -> bool:
    """
    Check if a string is a magnet link.

    Args:
        uri: The string to check.

    Returns:
        True if the string is a magnet link, False otherwise.
    """
    return is_magnet_link(uri)


def _file_kind(entry: FileEntry) -> str:
    if entry.is_video:
        return "video"
    if entry.is_subtitle:
        return "subtitle"
    return "other"


async def get_torrent_files(magnet_uri: str, timeout: float = 120.0) -> TorrentManifest:
    """
    Start streaming a magnet link and list its files once metadata arrives.

    The torrent keeps fetching metadata in the background if the timeout
    expires; call again later to pick up the result.

    Args:
        magnet_uri: The magnet URI of the torrent.
        timeout: Seconds to wait for metadata.

    Returns:
        The torrent's files with their stream URLs.
    """
    try:
        session = await get_registry().get_or_create(magnet_uri)
        files = await asyncio.wait_for(session.await_ready(), timeout)
    except StreamError as e:
        raise tool_error(e) from e
    except asyncio.TimeoutError:
        raise ValueError(f"not_ready: still fetching metadata for {magnet_uri}") from None

    total = sum(f.size for f in files)
    return TorrentManifest(
        name=session.display_name or session.info_hash,
        info_hash=session.info_hash,
        total_size_bytes=total,
        total_size_formatted=format_size(total),
        files=[
            TorrentFileInfo(
                index=f.index,
                path=f.path,
                size_bytes=f.size,
                size_formatted=format_size(f.size),
                kind=_file_kind(f),
                stream_url=stream_url(session.info_hash, f.index),
            )
            for f in files
        ],
    )


def register_torrent_tools(mcp) -> None:
    """Register torrent-related tools with the MCP server."""
    mcp.tool()(parse_magnet_link)
    mcp.tool()(is_magnet)
    mcp.tool()(get_torrent_files)
