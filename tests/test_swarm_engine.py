"""Tests for range reads and file selection on a peer swarm's local store."""

import asyncio
import hashlib
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import MAGNET_A
from magnet import MagnetLink
from swarm_engine import PeerSwarm, PeerSwarmEngine
from torrent_parser import TorrentInfo

PIECE_LENGTH = 512

# File offsets 0, 1000 and 2500 do not line up with piece boundaries
LAYOUT = [("show/ep1.mkv", 1000), ("show/ep2.mkv", 1500), ("show/ep2.srt", 300)]


@pytest.fixture
def content() -> bytes:
    return bytes(i * 7 % 251 for i in range(sum(length for _, length in LAYOUT)))


@pytest.fixture
def swarm(tmp_path: Path, content: bytes) -> PeerSwarm:
    pieces = b"".join(
        hashlib.sha1(content[i : i + PIECE_LENGTH]).digest() for i in range(0, len(content), PIECE_LENGTH)
    )
    info = TorrentInfo(
        name="show",
        piece_length=PIECE_LENGTH,
        pieces=pieces,
        files=[{"length": length, "path": path.split("/")} for path, length in LAYOUT],
    )
    swarm = PeerSwarm(
        PeerSwarmEngine(), MagnetLink.parse(MAGNET_A), tmp_path, on_ready=lambda *_: None, on_error=lambda _: None
    )
    swarm._apply_metadata(info)
    return swarm


def complete(swarm: PeerSwarm, content: bytes, *indices: int) -> None:
    for index in indices:
        swarm.file_manager.write_piece(index, content[index * PIECE_LENGTH : (index + 1) * PIECE_LENGTH])
        swarm.piece_manager.mark_complete(index)


async def collect(swarm: PeerSwarm, file_index: int, start: int, end: int) -> bytes:
    return b"".join([chunk async for chunk in swarm.read(file_index, start, end)])


class TestRead:
    """Tests for PeerSwarm.read()."""

    async def test_range_across_piece_and_file_boundaries(self, swarm: PeerSwarm, content: bytes) -> None:
        complete(swarm, content, *range(swarm.piece_manager.total_pieces))

        data = await collect(swarm, 1, 10, 1400)

        assert data == content[1010:2401]

    async def test_whole_files(self, swarm: PeerSwarm, content: bytes) -> None:
        complete(swarm, content, *range(swarm.piece_manager.total_pieces))

        assert await collect(swarm, 0, 0, 999) == content[:1000]
        assert await collect(swarm, 2, 0, 299) == content[2500:]

    async def test_waits_for_missing_piece(self, swarm: PeerSwarm, content: bytes) -> None:
        # ep2 covers pieces 1-4
        complete(swarm, content, 1, 3, 4)
        reader = asyncio.create_task(collect(swarm, 1, 0, 1499))
        for _ in range(5):
            await asyncio.sleep(0)

        assert not reader.done()
        assert swarm.piece_manager.urgent[2] > 0

        complete(swarm, content, 2)

        assert await asyncio.wait_for(reader, 1.0) == content[1000:2500]
        assert not +swarm.piece_manager.urgent

    async def test_stop_ends_waiting_reader(self, swarm: PeerSwarm, content: bytes) -> None:
        complete(swarm, content, 0)
        reader = asyncio.create_task(collect(swarm, 0, 0, 999))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not reader.done()

        await swarm.stop()

        assert await asyncio.wait_for(reader, 1.0) == content[:PIECE_LENGTH]

    async def test_read_marks_range_wanted(self, swarm: PeerSwarm, content: bytes) -> None:
        complete(swarm, content, *range(swarm.piece_manager.total_pieces - 1))
        reader = asyncio.create_task(collect(swarm, 2, 0, 299))
        for _ in range(5):
            await asyncio.sleep(0)

        assert swarm.piece_manager.wanted == {5}

        await swarm.stop()
        await reader


class TestSelectFile:
    """Tests for PeerSwarm.select_file()."""

    def test_selects_file_and_subtitles(self, swarm: PeerSwarm) -> None:
        swarm.select_file(0)

        # ep1 is pieces 0-1, the subtitles pieces 4-5
        assert swarm.piece_manager.wanted == {0, 1, 4, 5}

    def test_switching_files_drops_the_previous_one(self, swarm: PeerSwarm) -> None:
        swarm.select_file(0)
        swarm.select_file(1)

        assert swarm.piece_manager.wanted == {1, 2, 3, 4, 5}

    def test_completed_pieces_are_not_wanted(self, swarm: PeerSwarm, content: bytes) -> None:
        complete(swarm, content, 1, 2)

        swarm.select_file(1)

        assert swarm.piece_manager.wanted == {3, 4, 5}

    def test_before_metadata_is_a_no_op(self, tmp_path: Path) -> None:
        swarm = PeerSwarm(
            PeerSwarmEngine(), MagnetLink.parse(MAGNET_A), tmp_path, on_ready=lambda *_: None, on_error=lambda _: None
        )

        swarm.select_file(0)

        assert swarm.piece_manager is None
