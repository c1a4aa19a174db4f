"""Pydantic models for the MCP server."""

from pydantic import BaseModel


class TorrentFileInfo(BaseModel):
    """Information about a file in a torrent."""

    index: int
    path: str
    size_bytes: int
    size_formatted: str
    kind: str  # "video", "subtitle", "other"
    stream_url: str


class TorrentManifest(BaseModel):
    """Files of a torrent whose metadata has arrived."""

    name: str
    info_hash: str
    total_size_bytes: int
    total_size_formatted: str
    files: list[TorrentFileInfo]


class StreamStatus(BaseModel):
    """Status of an active stream session."""

    info_hash: str
    name: str | None = None
    state: str  # "pending", "ready", "errored", "destroyed"
    file_count: int
    active_readers: int
    error_message: str | None = None


class MagnetInfo(BaseModel):
    """Information parsed from a magnet link."""

    info_hash: str
    display_name: str | None = None
    trackers: list[str] = []
    exact_length: int | None = None


class KeyStatus(BaseModel):
    """Whether the search API key is configured."""

    has_api_key: bool
    masked_key: str
    path: str | None = None
