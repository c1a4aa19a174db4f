"""Shared state for the MCP server."""

from yarl import URL

from key_store import KeyStore
from range_server import RangeFileServer, stream_file_url
from stream_config import StreamerSettings
from swarm_registry import SwarmRegistry

settings = StreamerSettings.from_env()

# The MCP process hosts the HTTP streaming server, so stream URLs handed out
# by the tools are served from the same registry the tools manage.
server: RangeFileServer | None = None
registry: SwarmRegistry | None = None
key_store: KeyStore | None = None
_server_users = 0


async def start_server(streamer: RangeFileServer | None = None) -> RangeFileServer:
    """
    Start the HTTP streaming server, or join the one already running.

    Args:
        streamer: Server to start; built from ``settings`` when omitted
    """
    global server, registry, key_store, _server_users
    _server_users += 1
    if server is None:
        candidate = streamer or RangeFileServer(settings)
        try:
            await candidate.start()
        except BaseException:
            _server_users -= 1
            raise
        server = candidate
        registry = server.registry
        key_store = server.key_store
    return server


async def stop_server() -> None:
    """Leave the streaming server; the last user stops it and its sessions."""
    global server, registry, _server_users
    _server_users = max(0, _server_users - 1)
    if _server_users or server is None:
        return
    streamer, server, registry = server, None, None
    await streamer.stop()


def get_registry() -> SwarmRegistry:
    if registry is None:
        raise RuntimeError("The streaming server is not running")
    return registry


def get_key_store() -> KeyStore:
    global key_store
    if key_store is None:
        key_store = KeyStore(settings.user_data_dir, settings.install_dir)
    return key_store


def stream_url(info_hash: str, file_index: int) -> str:
    """URL of a file on the HTTP streaming server."""
    base_url = server.url if server is not None else URL.build(scheme="http", host=settings.host, port=settings.port)
    return stream_file_url(base_url, info_hash, file_index)
