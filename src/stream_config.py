"""
Runtime settings for the streaming server.
"""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

ENV_PREFIX = "TORRENT_STREAM_"


class StreamerSettings(BaseModel):
    """Settings for the HTTP server, staging storage and swarm engine."""

    host: str = Field(default="127.0.0.1", description="Interface the HTTP server binds to")
    port: int = Field(default=3000, ge=0, le=65535, description="HTTP server port")
    staging_root: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "torrent-stream",
        description="Parent directory of the per-torrent staging directories",
    )
    user_data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".torrent-stream",
        description="Primary location of the API key file",
    )
    install_dir: Path = Field(
        default_factory=lambda: Path(sys.executable).resolve().parent,
        description="Legacy location of the API key file",
    )
    idle_timeout: float | None = Field(
        default=None, gt=0, description="Destroy sessions without readers after this many seconds"
    )
    reap_interval: float = Field(default=60.0, gt=0, description="Seconds between idle-session sweeps")
    max_peers: int = Field(default=50, ge=1, description="Maximum peer connections per torrent")
    peer_port: int = Field(default=6881, ge=1, le=65535, description="Port announced to trackers")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> "StreamerSettings":
        """
        Build settings from ``TORRENT_STREAM_*`` environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``
            **overrides: Explicit values that win over the environment

        Returns:
            Validated settings
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)
