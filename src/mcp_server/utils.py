"""Utility functions for the MCP server."""

from pathlib import Path

from stream_errors import StreamError


def format_size(size_bytes: int) -> str:
    """Format bytes into human-readable size."""
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} PB"


def directory_size(path: Path) -> int:
    """Total size of the regular files under ``path``."""
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file() and not f.is_symlink())


def tool_error(error: StreamError) -> ValueError:
    """Convert a stream error into the ValueError MCP tools report."""
    return ValueError(f"{error.kind}: {error}")
