"""Shared fixtures: an in-memory swarm engine that tests drive by hand."""

import asyncio
import sys
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from magnet import MagnetLink
from storage_janitor import StorageJanitor
from swarm_engine import ErrorCallback, ReadyCallback, SwarmEngine, TorrentHandle
from swarm_registry import SwarmRegistry
from torrent_parser import TorrentFile

HASH_A = "aa" * 20
HASH_B = "bb" * 20
MAGNET_A = f"magnet:?xt=urn:btih:{HASH_A}&dn=Movie+A&tr=udp://tracker.example.com:6969"
MAGNET_B = f"magnet:?xt=urn:btih:{HASH_B}&dn=Movie+B"


class FakeHandle(TorrentHandle):
    """Torrent whose bytes live in memory."""

    def __init__(self, engine: "FakeEngine", magnet: MagnetLink, storage_path: Path, on_ready, on_error) -> None:
        self.engine = engine
        self.info_hash = magnet.info_hash_hex
        self.storage_path = storage_path
        self.on_ready: ReadyCallback = on_ready
        self.on_error: ErrorCallback = on_error
        self.name = None
        self.files: list[TorrentFile] = []
        self.contents: list[bytes] = []
        self.selected: list[int] = []
        self.open_readers = 0
        self.stopped = False

    def read(self, file_index: int, start: int, end: int) -> AsyncIterator[bytes]:
        return self._read(file_index, start, end)

    async def _read(self, file_index: int, start: int, end: int) -> AsyncIterator[bytes]:
        self.open_readers += 1
        self.engine.reads.append((self.info_hash, file_index, start, end))
        try:
            data = self.contents[file_index]
            position = start
            while position <= end and not self.stopped:
                if self.engine.gate is not None:
                    await self.engine.gate.wait()
                if self.stopped:
                    return
                chunk_end = min(end, position + self.engine.chunk_size - 1)
                yield data[position : chunk_end + 1]
                position = chunk_end + 1
                # let other tasks run between chunks
                await asyncio.sleep(0)
        finally:
            self.open_readers -= 1

    def select_file(self, file_index: int) -> None:
        self.selected.append(file_index)


class FakeEngine(SwarmEngine):
    """
    Engine that never touches the network.

    Torrents registered with :meth:`publish` become ready on the next loop
    iteration after ``add``; others stay pending until :meth:`make_ready` or
    :meth:`fail` is called.
    """

    def __init__(self, chunk_size: int = 100) -> None:
        self.chunk_size = chunk_size
        self.manifests: dict[str, tuple[str, dict[str, bytes]]] = {}
        self.handles: list[FakeHandle] = []
        self.reads: list[tuple[str, int, int, int]] = []
        self.events: list[str] = []
        self.gate: asyncio.Event | None = None
        self.remove_gate: asyncio.Event | None = None
        self.closed = False

    def publish(self, info_hash: str, name: str, files: dict[str, bytes]) -> None:
        self.manifests[info_hash] = (name, files)

    def add(self, magnet: MagnetLink, storage_path: Path, on_ready, on_error) -> FakeHandle:
        handle = FakeHandle(self, magnet, storage_path, on_ready, on_error)
        self.handles.append(handle)
        self.events.append(f"add:{handle.info_hash}")
        if handle.info_hash in self.manifests:
            asyncio.get_running_loop().call_soon(self.make_ready, handle.info_hash)
        return handle

    def handle_for(self, info_hash: str) -> FakeHandle:
        return [h for h in self.handles if h.info_hash == info_hash][-1]

    def make_ready(self, info_hash: str, name: str | None = None, files: dict[str, bytes] | None = None) -> None:
        handle = self.handle_for(info_hash)
        if handle.stopped:
            return
        if files is None:
            name, files = self.manifests[info_hash]
        offset = 0
        handle.files = []
        handle.contents = []
        for path, data in files.items():
            handle.files.append(TorrentFile(length=len(data), path=path.split("/"), offset=offset))
            handle.contents.append(data)
            offset += len(data)
        handle.name = name
        handle.on_ready(name, handle.files)

    def fail(self, info_hash: str, error: Exception) -> None:
        self.handle_for(info_hash).on_error(error)

    async def remove(self, handle: TorrentHandle) -> None:
        assert isinstance(handle, FakeHandle)
        if self.remove_gate is not None:
            await self.remove_gate.wait()
        self.events.append(f"remove:{handle.info_hash}:dir_exists={handle.storage_path.exists()}")
        handle.stopped = True
        if self.gate is not None:
            # wake paced readers so they observe the stop
            self.gate.set()

    async def close(self) -> None:
        self.closed = True

    @property
    def open_readers(self) -> int:
        return sum(h.open_readers for h in self.handles)


class RecordingJanitor(StorageJanitor):
    """Janitor that logs wipes into the engine's event list."""

    def __init__(self, staging_root: Path, events: list[str]) -> None:
        super().__init__(staging_root)
        self.events = events

    async def wipe(self, path: Path) -> int:
        self.events.append(f"wipe:{Path(path).name}")
        return await super().wipe(path)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def staging_root(tmp_path: Path) -> Path:
    root = tmp_path / "staging"
    root.mkdir()
    return root


@pytest.fixture
def registry(engine: FakeEngine, staging_root: Path) -> SwarmRegistry:
    return SwarmRegistry(engine, RecordingJanitor(staging_root, engine.events))


@pytest.fixture
def movie_files() -> dict[str, bytes]:
    """A two-file torrent: a video and its subtitles."""
    return {
        "Movie A/movie.mp4": bytes(range(256)) * 40,
        "Movie A/movie.en.srt": b"1\n00:00:01,000 --> 00:00:02,000\nHello\n" * 10,
    }
