"""
BitTorrent swarm engine.

The streaming core only talks to the engine through :class:`SwarmEngine` and
:class:`TorrentHandle`: add a magnet, get a ready or error callback, list the
files, read a byte range of one file, remove the torrent.
:class:`PeerSwarmEngine` implements that interface on top of the tracker,
peer and piece modules of this package.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import aiohttp

from file_manager import FileManager
from magnet import MagnetLink
from peer import MessageType, Peer, PeerError
from piece_manager import Piece, PieceManager
from stream_errors import MetadataFetchFailed, StreamClosed
from torrent_parser import BencodeError, TorrentFile, TorrentInfo, parse_info_dict
from tracker import PeerAddress, Tracker, TrackerError, generate_peer_id

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
SUBTITLE_EXTENSIONS = (".srt", ".vtt", ".ass")

ReadyCallback = Callable[[str, list[TorrentFile]], None]
ErrorCallback = Callable[[Exception], None]


class TorrentHandle(ABC):
    """One torrent inside an engine."""

    info_hash: str
    name: str | None = None
    files: list[TorrentFile]

    @abstractmethod
    def read(self, file_index: int, start: int, end: int) -> AsyncIterator[bytes]:
        """
        Stream bytes ``start..end`` (inclusive) of one file as pieces arrive.

        The iterator ends early, without raising, when the torrent is removed.
        """

    @abstractmethod
    def select_file(self, file_index: int) -> None:
        """Start downloading a file (and the torrent's subtitles) without reading it."""


class SwarmEngine(ABC):
    """Adds and removes torrents."""

    @abstractmethod
    def add(
        self, magnet: MagnetLink, storage_path: Path, on_ready: ReadyCallback, on_error: ErrorCallback
    ) -> TorrentHandle:
        """
        Start fetching a torrent; returns immediately.

        ``on_ready(name, files)`` fires once when metadata is available and
        ``on_error(exc)`` fires on any engine failure.
        """

    @abstractmethod
    async def remove(self, handle: TorrentHandle) -> None:
        """Stop a torrent and release every file handle it holds."""

    async def close(self) -> None:
        """Release engine-wide resources."""


class PeerSwarmEngine(SwarmEngine):
    """Engine that speaks the peer wire protocol directly."""

    def __init__(
        self,
        max_peers: int = 50,
        peer_port: int = 6881,
        announce_interval: float = 120.0,
        metadata_retry_interval: float = 15.0,
    ) -> None:
        """
        Args:
            max_peers: Maximum simultaneous peer connections per torrent
            peer_port: Port announced to trackers
            announce_interval: Minimum seconds between tracker announces
            metadata_retry_interval: Seconds between metadata fetch rounds
        """
        self.max_peers = max_peers
        self.peer_port = peer_port
        self.announce_interval = announce_interval
        self.metadata_retry_interval = metadata_retry_interval
        self.peer_id = generate_peer_id()
        self._http: aiohttp.ClientSession | None = None

    @property
    def http_session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return self._http

    def add(
        self, magnet: MagnetLink, storage_path: Path, on_ready: ReadyCallback, on_error: ErrorCallback
    ) -> "PeerSwarm":
        swarm = PeerSwarm(self, magnet, storage_path, on_ready, on_error)
        swarm.start()
        return swarm

    async def remove(self, handle: TorrentHandle) -> None:
        if isinstance(handle, PeerSwarm):
            await handle.stop()

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None


class PeerSwarm(TorrentHandle):
    """Metadata fetch, peer management and piece download for one torrent."""

    max_pipeline_blocks = 16
    max_pieces_per_peer = 2
    stall_timeout = 30.0
    failed_peer_backoff = 60.0

    def __init__(
        self,
        engine: PeerSwarmEngine,
        magnet: MagnetLink,
        storage_path: Path,
        on_ready: ReadyCallback,
        on_error: ErrorCallback,
    ) -> None:
        self.engine = engine
        self.magnet = magnet
        self.info_hash = magnet.info_hash_hex
        self.name = magnet.display_name
        self.files = []
        self.storage_path = storage_path
        self.on_ready = on_ready
        self.on_error = on_error

        self.info: TorrentInfo | None = None
        self.piece_manager: PieceManager | None = None
        self.file_manager: FileManager | None = None
        self.known_peers: dict[str, PeerAddress] = {}
        self.active_peers: set[str] = set()
        self.failed_peers: dict[str, float] = {}
        self.stopping = False
        self._main_task: asyncio.Task | None = None
        self._peer_tasks: set[asyncio.Task] = set()

    def start(self) -> None:
        self._main_task = asyncio.create_task(self._run(), name=f"swarm-{self.info_hash}")

    async def _run(self) -> None:
        try:
            metadata = await self._fetch_metadata()
            try:
                info = parse_info_dict(metadata, self.magnet.info_hash)
            except BencodeError as e:
                raise MetadataFetchFailed(f"Malformed torrent metadata: {e}") from e

            self._apply_metadata(info)
            logger.info(f"Metadata ready for {self.info_hash}: {info.name} ({len(self.files)} files)")
            self.on_ready(info.name, self.files)

            await self._download_loop()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self.stopping:
                logger.error(f"Swarm {self.info_hash} failed: {e}")
                self.on_error(e)

    def _apply_metadata(self, info: TorrentInfo) -> None:
        self.info = info
        self.name = info.name
        self.files = info.get_files()
        self.piece_manager = PieceManager(info)
        self.file_manager = FileManager(self.storage_path, self.files, info.piece_length)

    # Peer discovery

    async def _announce(self) -> tuple[int, int]:
        """
        Announce to every tracker concurrently and record new peers.

        Returns:
            Tuple of (trackers that answered, trackers that failed)
        """
        left = self.info.total_size if self.info else 0
        trackers = [
            Tracker(
                announce_url=url,
                info_hash=self.magnet.info_hash,
                peer_id=self.engine.peer_id,
                port=self.engine.peer_port,
                left=left,
                numwant=self.engine.max_peers,
                http_session=self.engine.http_session,
            )
            for url in self.magnet.trackers
        ]
        results = await asyncio.gather(*(tracker.announce() for tracker in trackers), return_exceptions=True)

        answered = failed = 0
        for tracker, result in zip(trackers, results):
            if isinstance(result, TrackerError):
                failed += 1
                logger.debug(f"Failed to get peers from {tracker.announce_url}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            answered += 1
            logger.debug(f"Got {len(result.peers)} peers from {tracker.announce_url}")
            for address in result.peers:
                self.known_peers.setdefault(address.key, address)
        return answered, failed

    def _candidate_peers(self, limit: int) -> list[PeerAddress]:
        now = time.monotonic()
        candidates = []
        for key, address in self.known_peers.items():
            if key in self.active_peers:
                continue
            if now - self.failed_peers.get(key, -self.failed_peer_backoff) < self.failed_peer_backoff:
                continue
            candidates.append(address)
            if len(candidates) >= limit:
                break
        return candidates

    # Metadata (BEP 9)

    async def _fetch_metadata(self) -> bytes:
        """
        Fetch the info dictionary from peers, retrying rounds until it arrives.

        Raises:
            MetadataFetchFailed: If there are no trackers or all of them fail
        """
        if not self.magnet.trackers:
            raise MetadataFetchFailed("Magnet link has no trackers")

        while True:
            answered, failed = await self._announce()
            if not answered:
                raise MetadataFetchFailed(f"All {failed} trackers are unreachable")

            candidates = self._candidate_peers(limit=20)
            logger.info(f"Trying {len(candidates)} peers for metadata of {self.info_hash}")
            tasks = [asyncio.create_task(self._metadata_from_peer(address)) for address in candidates]
            try:
                for next_done in asyncio.as_completed(tasks):
                    metadata = await next_done
                    if metadata:
                        return metadata
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

            await asyncio.sleep(self.engine.metadata_retry_interval)

    async def _metadata_from_peer(self, address: PeerAddress) -> bytes | None:
        peer = Peer(address.ip, address.port, self.magnet.info_hash, self.engine.peer_id)
        try:
            await peer.connect()
            if not await peer.wait_for_extension_handshake():
                logger.debug(f"Peer {peer.key} doesn't support metadata exchange")
                return None
            return await peer.fetch_metadata()
        except PeerError as e:
            logger.debug(f"Failed to fetch metadata from {peer.key}: {e}")
            self.failed_peers[peer.key] = time.monotonic()
            return None
        finally:
            await peer.disconnect()

    # Download

    async def _download_loop(self) -> None:
        last_announce = time.monotonic()
        while not self.stopping:
            if time.monotonic() - last_announce >= self.engine.announce_interval:
                last_announce = time.monotonic()
                try:
                    await self._announce()
                except Exception as e:
                    logger.warning(f"Announce failed for {self.info_hash}: {e}")

            await self.piece_manager.wait_for_work()
            if self.stopping:
                break

            for address in self._candidate_peers(self.engine.max_peers - len(self.active_peers)):
                self.active_peers.add(address.key)
                task = asyncio.create_task(self._peer_worker(address))
                self._peer_tasks.add(task)
                task.add_done_callback(self._peer_tasks.discard)

            await asyncio.sleep(1.0)

    async def _peer_worker(self, address: PeerAddress) -> None:
        peer = Peer(address.ip, address.port, self.magnet.info_hash, self.engine.peer_id)
        claimed: dict[int, Piece] = {}
        outstanding: set[tuple[int, int]] = set()
        last_block = time.monotonic()
        try:
            await peer.connect()
            await peer.send_interested()
            logger.debug(f"Connected to {peer.key}")

            while not self.stopping and peer.connected:
                if not peer.peer_choking:
                    await self._fill_requests(peer, claimed, outstanding)

                try:
                    message_type, payload = await peer.receive_message(timeout=1.0)
                except PeerError:
                    if not peer.connected:
                        break
                    if outstanding and time.monotonic() - last_block > self.stall_timeout:
                        logger.debug(f"Peer {peer.key} stalled")
                        break
                    continue

                if message_type == MessageType.CHOKE:
                    for index in list(claimed):
                        self.piece_manager.release_piece(index)
                    claimed.clear()
                    outstanding.clear()
                elif message_type == MessageType.PIECE:
                    index, offset, block = Peer.parse_piece(payload)
                    outstanding.discard((index, offset))
                    last_block = time.monotonic()
                    piece = self.piece_manager.add_block(index, offset, block)
                    if piece is not None:
                        claimed.pop(index, None)
                        self._finish_piece(piece)
        except PeerError as e:
            logger.debug(f"Peer {address.key} failed: {e}")
            self.failed_peers[address.key] = time.monotonic()
        finally:
            for index in claimed:
                self.piece_manager.release_piece(index)
            self.active_peers.discard(address.key)
            await peer.disconnect()

    async def _fill_requests(self, peer: Peer, claimed: dict[int, Piece], outstanding: set[tuple[int, int]]) -> None:
        while len(claimed) < self.max_pieces_per_peer:
            piece = self.piece_manager.claim_piece(peer.pieces)
            if piece is None:
                break
            claimed[piece.index] = piece

        sent = 0
        for piece in claimed.values():
            for block in piece.blocks.values():
                if len(outstanding) >= self.max_pipeline_blocks:
                    break
                if block.requested or block.data is not None:
                    continue
                block.requested = True
                outstanding.add((piece.index, block.offset))
                await peer.send_request(piece.index, block.offset, block.length, drain=False)
                sent += 1
        if sent:
            await peer.flush()

    def _finish_piece(self, piece: Piece) -> None:
        data = piece.assemble()
        if not self.piece_manager.verify(piece, data):
            logger.warning(f"Piece {piece.index} of {self.info_hash} failed verification")
            self.piece_manager.release_piece(piece.index)
            return
        try:
            self.file_manager.write_piece(piece.index, data)
        except OSError as e:
            logger.error(f"Cannot write piece {piece.index} of {self.info_hash}: {e}")
            self.piece_manager.release_piece(piece.index)
            if not self.stopping:
                self.on_error(e)
            return
        self.piece_manager.mark_complete(piece.index)
        logger.debug(f"Downloaded and verified piece {piece.index} of {self.info_hash}")

    # TorrentHandle

    def select_file(self, file_index: int) -> None:
        if self.piece_manager is None:
            return
        targets = [self.files[file_index]] + [f for f in self.files if f.name.lower().endswith(SUBTITLE_EXTENSIONS)]
        self.piece_manager.select_only([(f.offset, f.offset + f.length - 1) for f in targets if f.length])
        logger.debug(f"Selected file {file_index} of {self.info_hash}")

    async def read(self, file_index: int, start: int, end: int) -> AsyncIterator[bytes]:
        if self.piece_manager is None or self.file_manager is None:
            return
        file_info = self.files[file_index]
        self.piece_manager.want_range(file_info.offset + start, file_info.offset + end)

        position = start
        while position <= end:
            absolute = file_info.offset + position
            piece_index = absolute // self.piece_manager.piece_length
            try:
                await self.piece_manager.wait_for_piece(piece_index)
            except StreamClosed:
                return
            piece_last = (piece_index + 1) * self.piece_manager.piece_length - 1 - file_info.offset
            length = min(end, piece_last) - position + 1
            while length > 0:
                chunk = min(length, READ_CHUNK_SIZE)
                try:
                    data = self.file_manager.read(file_index, position, chunk)
                except OSError:
                    if self.stopping:
                        return
                    raise
                yield data
                position += chunk
                length -= chunk

    async def stop(self) -> None:
        """Cancel every task, then close pieces and file handles."""
        self.stopping = True
        tasks = [task for task in [self._main_task, *self._peer_tasks] if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.piece_manager is not None:
            self.piece_manager.close()
        if self.file_manager is not None:
            self.file_manager.close_all()
        logger.info(f"Swarm {self.info_hash} stopped")
