"""
Sparse on-disk store for torrent content.

Verified pieces are written straight into the torrent's file layout under the
session's staging directory; readers read file slices back once the pieces
covering them are complete.
"""

import logging
from pathlib import Path
from typing import BinaryIO

from torrent_parser import TorrentFile

logger = logging.getLogger(__name__)


class FileManager:
    """Maps piece data onto files and reads byte ranges back."""

    def __init__(self, output_dir: Path, files: list[TorrentFile], piece_length: int) -> None:
        """
        Args:
            output_dir: Staging directory of the torrent
            files: Files in torrent order, with their content offsets
            piece_length: Length of each piece in bytes
        """
        self.output_dir = Path(output_dir)
        self.files = files
        self.piece_length = piece_length
        self.file_handles: dict[int, BinaryIO] = {}
        self.closed = False
        root = self.output_dir.resolve()
        self._paths: list[Path] = []
        for file_info in files:
            path = (self.output_dir / file_info.full_path).resolve()
            if not path.is_relative_to(root):
                raise ValueError(f"File path escapes the staging directory: {file_info.full_path}")
            self._paths.append(path)

    def segments_for_piece(self, piece_index: int, piece_size: int) -> list[tuple[int, int, int, int]]:
        """
        Split a piece into per-file segments.

        Returns:
            List of (file_index, offset_in_file, length, offset_in_piece)
        """
        piece_start = piece_index * self.piece_length
        piece_end = piece_start + piece_size
        segments = []
        for file_index, file_info in enumerate(self.files):
            file_start = file_info.offset
            file_end = file_start + file_info.length
            overlap_start = max(piece_start, file_start)
            overlap_end = min(piece_end, file_end)
            if overlap_start < overlap_end:
                segments.append(
                    (file_index, overlap_start - file_start, overlap_end - overlap_start, overlap_start - piece_start)
                )
        return segments

    def _handle(self, file_index: int) -> BinaryIO:
        if self.closed:
            raise OSError("File store is closed")
        handle = self.file_handles.get(file_index)
        if handle is None:
            path = self._paths[file_index]
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(path, "r+b" if path.exists() else "w+b")
            self.file_handles[file_index] = handle
        return handle

    def write_piece(self, piece_index: int, piece_data: bytes) -> None:
        """Write a verified piece to the file(s) it spans."""
        for file_index, offset_in_file, length, offset_in_piece in self.segments_for_piece(
            piece_index, len(piece_data)
        ):
            handle = self._handle(file_index)
            handle.seek(offset_in_file)
            handle.write(piece_data[offset_in_piece : offset_in_piece + length])
            handle.flush()

    def read(self, file_index: int, offset: int, length: int) -> bytes:
        """
        Read bytes of one file; the caller guarantees the pieces are complete.

        Raises:
            OSError: If the store was closed or the read came up short
        """
        handle = self._handle(file_index)
        handle.seek(offset)
        data = handle.read(length)
        if len(data) != length:
            raise OSError(f"Short read from {self._paths[file_index]}: {len(data)} of {length} bytes")
        return data

    def close_all(self) -> None:
        """Close all open file handles; later reads fail with OSError."""
        self.closed = True
        for handle in self.file_handles.values():
            try:
                handle.close()
            except OSError as e:
                logger.warning(f"Error closing file handle: {e}")
        self.file_handles.clear()
