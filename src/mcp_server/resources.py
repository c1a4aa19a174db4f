"""MCP resources for browsing streams and staging data."""

from . import state
from .state import get_registry, stream_url
from .tools.stream_tools import list_streams
from .utils import directory_size, format_size


def render_active_streams() -> str:
    """Markdown status of all active streams."""
    streams = list_streams()
    if not streams:
        return "No active streams."

    lines = ["# Active Streams\n"]
    for s in streams:
        lines.append(f"## {s.name or s.info_hash}")
        lines.append(f"- **Info hash**: `{s.info_hash}`")
        lines.append(f"- **State**: {s.state}")
        lines.append(f"- **Files**: {s.file_count}")
        lines.append(f"- **Readers**: {s.active_readers}")
        if s.error_message:
            lines.append(f"- **Error**: {s.error_message}")
        lines.append("")

    return "\n".join(lines)


def render_staging_usage() -> str:
    """Markdown listing of the per-torrent staging directories."""
    staging_root = state.settings.staging_root
    if not staging_root.exists():
        return "No staging data."

    active = {session.info_hash: session for session in get_registry().sessions()}
    lines = ["# Staging Directories\n"]
    for item in sorted(staging_root.iterdir()):
        if not item.is_dir() or item.is_symlink():
            continue
        session = active.get(item.name)
        owner = (session.display_name or item.name) if session else "orphaned"
        lines.append(f"- **{item.name}** ({owner})")
        lines.append(f"  Size: {format_size(directory_size(item))}\n")

    if len(lines) == 1:
        return "No staging data."
    return "\n".join(lines)


def render_stream_urls(info_hash: str) -> str:
    """Markdown list of stream URLs for a Ready torrent."""
    session = get_registry().get(info_hash)
    if session is None:
        return f"No active stream with hash {info_hash}."
    if not session.is_ready:
        return f"Stream {info_hash} is {session.state.value}."

    lines = [f"# {session.display_name or info_hash}\n"]
    for f in session.files:
        lines.append(f"- **{f.path}** ({format_size(f.size)})")
        lines.append(f"  `{stream_url(session.info_hash, f.index)}`\n")
    return "\n".join(lines)


def register_resources(mcp) -> None:
    """Register all MCP resources with the server."""

    @mcp.resource("streams://active")
    def resource_active_streams() -> str:
        """Show status of all active streams."""
        return render_active_streams()

    @mcp.resource("streams://staging")
    def resource_staging_usage() -> str:
        """Show disk usage of torrent staging directories."""
        return render_staging_usage()

    @mcp.resource("streams://{info_hash}/files")
    def resource_stream_urls(info_hash: str) -> str:
        """List the stream URLs of a torrent's files."""
        return render_stream_urls(info_hash)
