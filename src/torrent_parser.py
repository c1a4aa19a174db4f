"""
Models for the torrent 'info' dictionary fetched from peers.
Uses Pydantic for structured data validation and type safety.
"""

from __future__ import annotations

import hashlib
from typing import Any

from pydantic import BaseModel, Field, computed_field, model_validator

from magnet import bencode_decode


class BencodeError(Exception):
    """Exception raised for bencode parsing errors."""

    pass


def _decode_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class TorrentFile(BaseModel):
    """A single file in a torrent, positioned in the concatenated content."""

    length: int = Field(ge=0, description="File size in bytes")
    path: list[str] = Field(description="Path components for the file")
    offset: int = Field(default=0, ge=0, description="Byte offset of the file in the torrent content")

    @computed_field
    @property
    def full_path(self) -> str:
        """Get the relative path as a string."""
        return "/".join(self.path)

    @computed_field
    @property
    def name(self) -> str:
        """Get the file's basename."""
        return self.path[-1] if self.path else ""


class TorrentInfo(BaseModel):
    """The 'info' dictionary of a torrent."""

    name: str = Field(description="Name of the torrent (file or directory)")
    piece_length: int = Field(alias="piece length", ge=1, description="Size of each piece in bytes")
    pieces: bytes = Field(description="Concatenated SHA-1 hashes of all pieces")
    length: int | None = Field(default=None, ge=0, description="Total length for single-file torrents")
    files: list[TorrentFile] | None = Field(default=None, description="List of files for multi-file torrents")

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def decode_bytes_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Decode bencoded byte strings and lay files out by offset."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "name" in data:
            data["name"] = _decode_text(data["name"])

        raw_files = data.get("files")
        if raw_files:
            decoded_files = []
            offset = 0
            for file_info in raw_files:
                if isinstance(file_info, TorrentFile):
                    file_info = file_info.model_dump(exclude={"full_path", "name"})
                path = file_info.get("path.utf-8") or file_info.get("path", [])
                length = file_info.get("length", 0)
                decoded_files.append({"length": length, "path": [_decode_text(p) for p in path], "offset": offset})
                offset += length
            data["files"] = decoded_files
        return data

    @model_validator(mode="after")
    def check_piece_table(self) -> "TorrentInfo":
        """Ensure the piece hash table covers the content."""
        if len(self.pieces) % 20:
            raise ValueError("pieces length must be a multiple of 20")
        if self.length is None and not self.files:
            raise ValueError("info dictionary has neither 'length' nor 'files'")
        expected = -(-self.total_size // self.piece_length) if self.total_size else 0
        if self.piece_count != expected:
            raise ValueError(f"expected {expected} piece hashes, got {self.piece_count}")
        return self

    @computed_field
    @property
    def piece_count(self) -> int:
        """Get the number of pieces (each SHA-1 hash is 20 bytes)."""
        return len(self.pieces) // 20

    @computed_field
    @property
    def total_size(self) -> int:
        """Get the total size of all files."""
        if self.length is not None:
            return self.length
        return sum(f.length for f in self.files or [])

    def get_files(self) -> list[TorrentFile]:
        """Get the files in torrent order."""
        if self.files:
            return self.files
        return [TorrentFile(length=self.length or 0, path=[self.name], offset=0)]

    def get_piece_hash(self, piece_index: int) -> bytes:
        """Get the SHA-1 hash for a specific piece."""
        if piece_index < 0 or piece_index >= self.piece_count:
            raise IndexError(f"Piece index {piece_index} out of range (0-{self.piece_count - 1})")
        start = piece_index * 20
        return self.pieces[start : start + 20]

    def get_piece_size(self, piece_index: int) -> int:
        """Get the length of a piece (the last one may be shorter)."""
        if piece_index == self.piece_count - 1:
            return self.total_size - piece_index * self.piece_length
        return self.piece_length


def parse_info_dict(metadata: bytes, info_hash: bytes | None = None) -> TorrentInfo:
    """
    Parse a bencoded info dictionary received through BEP 9.

    Args:
        metadata: Bencoded info dictionary bytes
        info_hash: Expected SHA-1 of ``metadata``; verified when given

    Returns:
        Validated TorrentInfo

    Raises:
        BencodeError: If the data is not a valid info dictionary
    """
    if info_hash is not None and hashlib.sha1(metadata).digest() != info_hash:
        raise BencodeError("Info hash verification failed")

    try:
        info_dict, end = bencode_decode(metadata)
    except ValueError as e:
        raise BencodeError(f"Malformed metadata: {e}") from e

    if not isinstance(info_dict, dict):
        raise BencodeError("Metadata must be a dictionary")
    if end != len(metadata):
        raise BencodeError("Trailing data after info dictionary")

    try:
        return TorrentInfo.model_validate(info_dict)
    except ValueError as e:
        raise BencodeError(f"Invalid info dictionary: {e}") from e
