"""
Magnet link parser and bencode codec.

Only hex-encoded BitTorrent v1 info hashes are accepted: the hash doubles as
the staging directory name, so anything outside ``[0-9a-f]{40}`` is refused.
"""

from __future__ import annotations

import re
import urllib.parse
from typing import Any

from pydantic import BaseModel, Field, computed_field

INFO_HASH_PATTERN = re.compile(r"^[0-9a-fA-F]{40}$")


class MagnetError(Exception):
    """Exception raised for magnet link errors."""

    pass


def is_valid_info_hash(value: str) -> bool:
    """Check that a string is a 40-character hex info hash."""
    return bool(INFO_HASH_PATTERN.match(value or ""))


def normalize_info_hash(value: str) -> str:
    """
    Validate an info hash and return it in lowercase.

    Raises:
        MagnetError: If the value is not 40 hex characters
    """
    if not is_valid_info_hash(value):
        raise MagnetError(f"Invalid info hash: {value!r}")
    return value.lower()


class MagnetLink(BaseModel):
    """Parsed magnet link data."""

    info_hash: bytes = Field(description="20-byte info hash")
    display_name: str | None = Field(default=None, description="Display name of the torrent")
    trackers: list[str] = Field(default_factory=list, description="List of tracker URLs")
    exact_length: int | None = Field(default=None, description="Exact file length if known")
    uri: str = Field(default="", description="The URI the link was parsed from")

    @computed_field
    @property
    def info_hash_hex(self) -> str:
        """Get info hash as lowercase hex string."""
        return self.info_hash.hex()

    @classmethod
    def parse(cls, magnet_uri: str) -> "MagnetLink":
        """
        Parse a magnet URI.

        Args:
            magnet_uri: The magnet URI to parse

        Returns:
            MagnetLink object with parsed data

        Raises:
            MagnetError: If the URI is not a magnet link or has no hex info hash
        """
        if not is_magnet_link(magnet_uri):
            raise MagnetError("Invalid magnet URI: must start with 'magnet:?'")

        params = urllib.parse.parse_qs(magnet_uri[len("magnet:?") :])

        info_hash: bytes | None = None
        for xt in params.get("xt", []):
            if not xt.lower().startswith("urn:btih:"):
                continue
            hash_str = xt[len("urn:btih:") :]
            try:
                info_hash = bytes.fromhex(normalize_info_hash(hash_str))
            except MagnetError as e:
                raise MagnetError(f"Magnet URI info hash must be 40 hex characters, got {hash_str!r}") from e
            break

        if info_hash is None:
            raise MagnetError("Magnet URI missing info hash (xt=urn:btih:...)")

        dn_list = params.get("dn", [])
        xl_list = params.get("xl", [])
        exact_length = int(xl_list[0]) if xl_list and xl_list[0].isdigit() else None

        return cls(
            info_hash=info_hash,
            display_name=dn_list[0] if dn_list else None,
            trackers=list(dict.fromkeys(params.get("tr", []))),
            exact_length=exact_length,
            uri=magnet_uri,
        )

    def to_uri(self) -> str:
        """Convert back to a magnet URI."""
        params = [f"xt=urn:btih:{self.info_hash_hex}"]
        if self.display_name:
            params.append(f"dn={urllib.parse.quote(self.display_name)}")
        for tracker in self.trackers:
            params.append(f"tr={urllib.parse.quote(tracker, safe='')}")
        if self.exact_length:
            params.append(f"xl={self.exact_length}")
        return "magnet:?" + "&".join(params)


def is_magnet_link(uri: str) -> bool:
    """Check if a string is a magnet link."""
    return isinstance(uri, str) and uri.startswith("magnet:?")


def bencode_encode(value: Any) -> bytes:
    """
    Encode a Python value to bencode format.

    Args:
        value: int, bytes, str, list or dict to encode

    Returns:
        Bencoded bytes
    """
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, int):
        return b"i%de" % value
    if isinstance(value, str):
        value = value.encode("utf-8")
    if isinstance(value, bytes):
        return b"%d:%s" % (len(value), value)
    if isinstance(value, list):
        return b"l" + b"".join(bencode_encode(item) for item in value) + b"e"
    if isinstance(value, dict):
        encoded = {(k.encode("utf-8") if isinstance(k, str) else k): v for k, v in value.items()}
        # keys must be sorted as raw bytes
        body = b"".join(bencode_encode(k) + bencode_encode(encoded[k]) for k in sorted(encoded))
        return b"d" + body + b"e"
    raise ValueError(f"Cannot encode type: {type(value)}")


def bencode_decode(data: bytes, index: int = 0) -> tuple[Any, int]:
    """
    Decode one bencoded value.

    Dictionary keys are returned as ``str``; string values stay ``bytes``.

    Args:
        data: The raw bytes to decode
        index: Position of the value in ``data``

    Returns:
        Tuple of (decoded_value, index just past the value)

    Raises:
        ValueError: On malformed input
    """
    if index >= len(data):
        raise ValueError(f"Unexpected end of data at index {index}")

    marker = data[index : index + 1]

    if marker == b"i":
        end = data.find(b"e", index + 1)
        if end == -1:
            raise ValueError(f"Unterminated integer at index {index}")
        return int(data[index + 1 : end]), end + 1

    if marker in (b"l", b"d"):
        index += 1
        items: list[Any] = []
        while index < len(data) and data[index : index + 1] != b"e":
            item, index = bencode_decode(data, index)
            items.append(item)
        if index >= len(data):
            raise ValueError(f"Unterminated container at index {index}")
        if marker == b"l":
            return items, index + 1
        if len(items) % 2:
            raise ValueError("Dictionary has a key without a value")
        result: dict[Any, Any] = {}
        for key, value in zip(items[::2], items[1::2]):
            if isinstance(key, bytes):
                key = key.decode("utf-8", errors="replace")
            result[key] = value
        return result, index + 1

    if marker.isdigit():
        colon = data.find(b":", index)
        if colon == -1:
            raise ValueError(f"No colon found for string at index {index}")
        start = colon + 1
        end = start + int(data[index:colon])
        if end > len(data):
            raise ValueError(f"String length exceeds data at index {index}")
        return data[start:end], end

    raise ValueError(f"Unexpected character '{marker.decode('latin-1', errors='replace')}' at index {index}")
