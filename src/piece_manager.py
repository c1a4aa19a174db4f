"""
Piece manager for streaming downloads.

Pieces are picked in two tiers: pieces a reader is blocked on (plus a short
look-ahead window) come first, then pieces of selected files in ascending
order. Readers wait on a per-piece event that fires once the piece has been
verified and written.
"""

import asyncio
import hashlib
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum

from stream_errors import StreamClosed
from torrent_parser import TorrentInfo

BLOCK_SIZE = 16 * 1024
READ_AHEAD_PIECES = 4


class PieceStatus(Enum):
    """Status of a piece."""

    MISSING = "missing"
    DOWNLOADING = "downloading"
    COMPLETE = "complete"


@dataclass
class Block:
    """A block within a piece."""

    offset: int
    length: int
    data: bytes | None = None
    requested: bool = False


@dataclass
class Piece:
    """A torrent piece and its blocks."""

    index: int
    length: int
    hash: bytes
    status: PieceStatus = PieceStatus.MISSING
    blocks: dict[int, Block] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.blocks:
            for offset in range(0, self.length, BLOCK_SIZE):
                self.blocks[offset] = Block(offset=offset, length=min(BLOCK_SIZE, self.length - offset))

    @property
    def is_full(self) -> bool:
        return all(block.data is not None for block in self.blocks.values())

    def reset(self) -> None:
        for block in self.blocks.values():
            block.data = None
            block.requested = False

    def assemble(self) -> bytes:
        return b"".join(self.blocks[offset].data or b"" for offset in sorted(self.blocks))


class PieceManager:
    """Tracks piece state, picks what to download next and wakes readers."""

    def __init__(self, info: TorrentInfo) -> None:
        """
        Args:
            info: Info dictionary of the torrent
        """
        self.piece_length = info.piece_length
        self.total_size = info.total_size
        self.pieces: dict[int, Piece] = {
            index: Piece(index=index, length=info.get_piece_size(index), hash=info.get_piece_hash(index))
            for index in range(info.piece_count)
        }
        self.completed: set[int] = set()
        self.wanted: set[int] = set()
        self.urgent: Counter[int] = Counter()
        self.closed = False
        self._events: dict[int, asyncio.Event] = {}
        self._wanted_changed = asyncio.Event()

    @property
    def total_pieces(self) -> int:
        return len(self.pieces)

    def pieces_for_range(self, start: int, end: int) -> range:
        """Piece indices covering absolute content bytes ``start..end`` inclusive."""
        if end < start:
            return range(0)
        return range(start // self.piece_length, end // self.piece_length + 1)

    def want_range(self, start: int, end: int) -> None:
        """Mark the pieces covering absolute bytes ``start..end`` for download."""
        before = len(self.wanted)
        self.wanted.update(i for i in self.pieces_for_range(start, end) if i not in self.completed)
        if len(self.wanted) != before:
            self._wanted_changed.set()

    def select_only(self, ranges: list[tuple[int, int]]) -> None:
        """
        Replace the wanted set with the pieces covering ``ranges``.

        Pieces readers are blocked on stay urgent regardless.

        Args:
            ranges: Absolute inclusive ``(start, end)`` byte ranges
        """
        self.wanted = {
            index
            for start, end in ranges
            for index in self.pieces_for_range(start, end)
            if index not in self.completed
        }
        self._wanted_changed.set()

    def has_work(self) -> bool:
        return bool(self.wanted - self.completed) or bool(+self.urgent)

    async def wait_for_work(self) -> None:
        """Sleep until some piece is wanted."""
        while not self.has_work() and not self.closed:
            self._wanted_changed.clear()
            await self._wanted_changed.wait()

    def claim_piece(self, peer_pieces: set[int]) -> Piece | None:
        """
        Pick the next missing piece the peer has and mark it downloading.

        Args:
            peer_pieces: Piece indices advertised by the peer

        Returns:
            The claimed piece, or None if the peer has nothing we need
        """
        if self.closed:
            return None
        urgent = sorted(i for i, count in self.urgent.items() if count > 0)
        for candidates in (urgent, sorted(self.wanted)):
            for index in candidates:
                piece = self.pieces.get(index)
                if piece and piece.status == PieceStatus.MISSING and index in peer_pieces:
                    piece.status = PieceStatus.DOWNLOADING
                    return piece
        return None

    def release_piece(self, index: int) -> None:
        """Return a piece that failed or whose peer went away to the pool."""
        piece = self.pieces.get(index)
        if piece and piece.status == PieceStatus.DOWNLOADING:
            piece.status = PieceStatus.MISSING
            piece.reset()

    def add_block(self, index: int, offset: int, data: bytes) -> Piece | None:
        """
        Store a received block.

        Returns:
            The piece when this block completed it, else None
        """
        piece = self.pieces.get(index)
        if not piece or piece.status != PieceStatus.DOWNLOADING:
            return None
        block = piece.blocks.get(offset)
        if not block or len(data) != block.length:
            return None
        block.data = data
        return piece if piece.is_full else None

    def verify(self, piece: Piece, data: bytes) -> bool:
        """Check assembled piece data against its SHA-1 hash."""
        return hashlib.sha1(data).digest() == piece.hash

    def mark_complete(self, index: int) -> None:
        """Record a verified, written piece and wake its readers."""
        piece = self.pieces[index]
        piece.status = PieceStatus.COMPLETE
        piece.blocks.clear()
        self.completed.add(index)
        self.wanted.discard(index)
        self._event(index).set()

    def is_complete(self, index: int) -> bool:
        return index in self.completed

    def _event(self, index: int) -> asyncio.Event:
        event = self._events.get(index)
        if event is None:
            event = self._events[index] = asyncio.Event()
        return event

    async def wait_for_piece(self, index: int) -> None:
        """
        Block until a piece is available locally.

        The piece and a short window after it are prioritized while waiting.

        Raises:
            StreamClosed: If the torrent is removed while waiting
        """
        if self.closed:
            raise StreamClosed(f"Torrent closed while waiting for piece {index}")
        if index in self.completed:
            return
        window = [i for i in range(index, min(index + READ_AHEAD_PIECES + 1, self.total_pieces))]
        self.urgent.update(window)
        self._wanted_changed.set()
        try:
            await self._event(index).wait()
        finally:
            self.urgent.subtract(window)
            self.urgent = +self.urgent
        if index not in self.completed:
            raise StreamClosed(f"Torrent closed while waiting for piece {index}")

    def close(self) -> None:
        """Fail pending waiters; called when the torrent is removed."""
        self.closed = True
        for event in self._events.values():
            event.set()
        self._wanted_changed.set()

    def get_progress(self) -> tuple[int, int, float]:
        """
        Get download progress.

        Returns:
            Tuple of (completed, total, percentage)
        """
        completed = len(self.completed)
        total = self.total_pieces
        return completed, total, (completed / total * 100) if total else 100.0
