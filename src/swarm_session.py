"""
Lifecycle of one torrent being streamed.

A session starts Pending, turns Ready exactly once when the engine delivers
the file manifest (or Errored when it fails), and ends Destroyed. Every
caller of :meth:`SwarmSession.await_ready` is released by the same
transition.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from byte_range import ByteRange
from magnet import MagnetLink
from stream_errors import FileIndexOutOfRange, MetadataFetchFailed, NotFound, NotReady
from swarm_engine import SwarmEngine, TorrentHandle
from torrent_parser import TorrentFile

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".avi", ".mov")
SUBTITLE_EXTENSIONS = (".srt", ".vtt", ".ass")


class SessionState(Enum):
    """State of a swarm session."""

    PENDING = "pending"
    READY = "ready"
    ERRORED = "errored"
    DESTROYED = "destroyed"


class FileEntry(BaseModel):
    """One file of a torrent, indexed by its position in the manifest."""

    model_config = ConfigDict(frozen=True)

    index: int
    path: str
    name: str
    size: int

    @property
    def is_video(self) -> bool:
        return self.name.lower().endswith(VIDEO_EXTENSIONS)

    @property
    def is_subtitle(self) -> bool:
        return self.name.lower().endswith(SUBTITLE_EXTENSIONS)


class SwarmSession:
    """Owns one torrent handle from add to teardown."""

    def __init__(
        self,
        magnet: MagnetLink,
        storage_path: Path,
        engine: SwarmEngine,
        on_failure: Callable[["SwarmSession"], None] | None = None,
    ) -> None:
        """
        Args:
            magnet: Parsed magnet link
            storage_path: Staging directory owned by this session
            engine: Engine that downloads the torrent
            on_failure: Called once when the engine reports an error
        """
        self.magnet = magnet
        self.info_hash = magnet.info_hash_hex
        self.magnet_uri = magnet.uri
        self.display_name = magnet.display_name
        self.storage_path = storage_path
        self.state = SessionState.PENDING
        self.files: tuple[FileEntry, ...] = ()
        self.error: Exception | None = None
        self.active_readers = 0
        self.last_activity = time.monotonic()

        self._engine = engine
        self._on_failure = on_failure
        self._handle: TorrentHandle | None = None
        self._ready: asyncio.Future[tuple[FileEntry, ...]] = asyncio.get_running_loop().create_future()

    def start(self) -> None:
        """Hand the magnet to the engine; does not wait for metadata."""
        self._handle = self._engine.add(self.magnet, self.storage_path, self._on_ready, self._on_error)

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    def _on_ready(self, name: str, files: list[TorrentFile]) -> None:
        if self.state != SessionState.PENDING:
            return
        self.files = tuple(
            FileEntry(index=index, path=f.full_path, name=f.name, size=f.length) for index, f in enumerate(files)
        )
        self.display_name = name or self.display_name
        self.state = SessionState.READY
        self._ready.set_result(self.files)
        logger.info(f"Torrent {self.info_hash} ready: {self.display_name} ({len(self.files)} files)")

    def _on_error(self, exc: Exception) -> None:
        if self.state in (SessionState.ERRORED, SessionState.DESTROYED):
            return
        error = exc if isinstance(exc, MetadataFetchFailed) else MetadataFetchFailed(str(exc) or type(exc).__name__)
        logger.error(f"Torrent {self.info_hash} failed in state {self.state.value}: {exc}")
        self.error = error
        self.state = SessionState.ERRORED
        self._fail_waiters(error)
        if self._on_failure is not None:
            self._on_failure(self)

    def _fail_waiters(self, error: Exception) -> None:
        if not self._ready.done():
            self._ready.set_exception(error)
            # mark retrieved; waiters that arrive later still see it
            self._ready.exception()

    async def await_ready(self) -> list[FileEntry]:
        """
        Wait until the file manifest is known.

        Raises:
            MetadataFetchFailed: If the engine failed to fetch metadata
            NotFound: If the session was stopped before metadata arrived
        """
        if self.state == SessionState.READY:
            return list(self.files)
        if self.state == SessionState.ERRORED and self.error is not None:
            raise self.error
        # shield: a cancelled waiter must not cancel the shared future
        return list(await asyncio.shield(self._ready))

    def list_files(self) -> list[FileEntry]:
        """
        Get the manifest of a Ready session.

        Raises:
            NotReady: If metadata has not arrived yet
        """
        if self.state != SessionState.READY:
            raise NotReady(f"Torrent {self.info_hash} is {self.state.value}, metadata not available")
        return list(self.files)

    def get_file(self, index: int) -> FileEntry:
        """
        Raises:
            NotReady: If metadata has not arrived yet
            FileIndexOutOfRange: If ``index`` is not in the manifest
        """
        files = self.list_files()
        if not 0 <= index < len(files):
            raise FileIndexOutOfRange(f"File index {index} out of range (0-{len(files) - 1})")
        return files[index]

    def select_file(self, index: int) -> FileEntry:
        """Prioritize downloading one file (and the subtitles) ahead of playback."""
        entry = self.get_file(index)
        self._handle.select_file(index)
        self.last_activity = time.monotonic()
        return entry

    def open_file_stream(self, index: int, byte_range: ByteRange | None = None) -> AsyncIterator[bytes]:
        """
        Open a reader over a file, or a byte range of it.

        Validation happens here, before any byte is requested from the
        engine. Close the returned iterator (``aclose``) to release it early.

        Raises:
            NotReady: If metadata has not arrived yet
            FileIndexOutOfRange: If ``index`` is not in the manifest
            InvalidRange: If ``byte_range`` does not fit the file
        """
        entry = self.get_file(index)
        if byte_range is None:
            if entry.size == 0:
                return _empty_stream()
            byte_range = ByteRange.full(entry.size)
        byte_range.validate(entry.size)
        return self._stream(entry, byte_range)

    async def _stream(self, entry: FileEntry, byte_range: ByteRange) -> AsyncIterator[bytes]:
        self.active_readers += 1
        self.last_activity = time.monotonic()
        reader = self._handle.read(entry.index, byte_range.start, byte_range.end)
        try:
            async for chunk in reader:
                yield chunk
        finally:
            await reader.aclose()
            self.active_readers -= 1
            self.last_activity = time.monotonic()

    async def destroy(self) -> bool:
        """
        Stop the engine handle and release its resources.

        Returns:
            False if the session was already destroyed
        """
        if self.state == SessionState.DESTROYED:
            return False
        self.state = SessionState.DESTROYED
        self._fail_waiters(NotFound(f"Torrent {self.info_hash} was stopped"))
        if self._handle is not None:
            try:
                await self._engine.remove(self._handle)
            except Exception as e:
                logger.error(f"Error removing torrent {self.info_hash} from engine: {e}")
        logger.info(f"Torrent {self.info_hash} destroyed")
        return True


async def _empty_stream() -> AsyncIterator[bytes]:
    return
    yield  # pragma: no cover
