"""
BitTorrent peer wire protocol.
Handles connections, handshakes, piece messages and BEP 9/10 metadata exchange.
"""

import asyncio
import hashlib
import logging
import struct
from enum import IntEnum

from magnet import bencode_decode, bencode_encode

logger = logging.getLogger(__name__)

PROTOCOL = b"BitTorrent protocol"
HANDSHAKE_LENGTH = 68
METADATA_PIECE_SIZE = 16 * 1024
MAX_MESSAGE_LENGTH = 2 * 1024 * 1024
MAX_METADATA_SIZE = 8 * 1024 * 1024

# Extension message IDs (BEP 10)
EXTENSION_HANDSHAKE = 0
UT_METADATA = 1  # our local ID for ut_metadata


class MessageType(IntEnum):
    """BitTorrent protocol message types."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8
    PORT = 9
    EXTENDED = 20
    KEEP_ALIVE = -1  # no message ID, length = 0


class MetadataMessageType(IntEnum):
    """ut_metadata message types (BEP 9)."""

    REQUEST = 0
    DATA = 1
    REJECT = 2


class PeerError(Exception):
    """Exception raised for peer communication errors."""

    pass


class Peer:
    """A connection to one remote peer."""

    def __init__(self, ip: str, port: int, info_hash: bytes, peer_id: bytes) -> None:
        """
        Args:
            ip: Peer IP address
            port: Peer port
            info_hash: SHA-1 hash of the info dictionary
            peer_id: Our peer ID
        """
        self.ip = ip
        self.port = port
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self.remote_peer_id: bytes | None = None
        self.connected = False
        self.am_interested = False
        self.peer_choking = True
        self.pieces: set[int] = set()

        self.supports_extensions = False
        self.remote_extensions: dict[str, int] = {}
        self.metadata_size: int | None = None

    @property
    def key(self) -> str:
        return f"{self.ip}:{self.port}"

    async def connect(self, timeout: float = 10.0) -> None:
        """
        Open the TCP connection and exchange handshakes.

        The extension bit is always advertised; the BEP 10 handshake is sent
        when the remote side advertises it too.

        Raises:
            PeerError: If the connection or handshake fails
        """
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.ip, self.port), timeout=timeout
            )
            await asyncio.wait_for(self._handshake(), timeout=timeout)
        except (OSError, TimeoutError, asyncio.IncompleteReadError) as e:
            await self.disconnect()
            raise PeerError(f"Connection to {self.key} failed: {e}") from e
        except PeerError:
            await self.disconnect()
            raise
        self.connected = True
        if self.supports_extensions:
            await self.send_extension_handshake()

    async def _handshake(self) -> None:
        reserved = bytearray(8)
        reserved[5] |= 0x10  # BEP 10 extension protocol
        self.writer.write(struct.pack(">B19s8s20s20s", len(PROTOCOL), PROTOCOL, bytes(reserved), self.info_hash, self.peer_id))
        await self.writer.drain()

        response = await self.reader.readexactly(HANDSHAKE_LENGTH)
        if response[0] != len(PROTOCOL) or response[1:20] != PROTOCOL:
            raise PeerError("Invalid protocol string in handshake")
        if response[28:48] != self.info_hash:
            raise PeerError("Info hash mismatch in handshake")
        self.supports_extensions = bool(response[25] & 0x10)
        self.remote_peer_id = response[48:68]

    async def disconnect(self) -> None:
        """Best-effort close of the underlying stream."""
        writer, self.writer, self.reader = self.writer, None, None
        self.connected = False
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, asyncio.CancelledError):
            pass

    async def send_message(self, message_type: MessageType, payload: bytes = b"", drain: bool = True) -> None:
        """
        Send a length-prefixed message.

        Args:
            message_type: Type of message to send
            payload: Message payload
            drain: Whether to drain the write buffer immediately
        """
        if not self.writer:
            raise PeerError("Not connected to peer")
        if message_type == MessageType.KEEP_ALIVE:
            message = struct.pack(">I", 0)
        else:
            message = struct.pack(">IB", 1 + len(payload), message_type) + payload
        self.writer.write(message)
        if drain:
            await self.writer.drain()

    async def flush(self) -> None:
        """Flush buffered writes to the peer."""
        if self.writer:
            await self.writer.drain()

    async def receive_message(self, timeout: float | None = None) -> tuple[MessageType, bytes]:
        """
        Receive one message and update choke/have state from it.

        Returns:
            Tuple of (message_type, payload)

        Raises:
            PeerError: On timeout, disconnect or protocol violation
        """
        if not self.reader:
            raise PeerError("Not connected to peer")
        try:
            (length,) = struct.unpack(">I", await asyncio.wait_for(self.reader.readexactly(4), timeout=timeout))
            if length == 0:
                return MessageType.KEEP_ALIVE, b""
            if length > MAX_MESSAGE_LENGTH:
                raise PeerError(f"Message too large: {length}")
            data = await asyncio.wait_for(self.reader.readexactly(length), timeout=timeout)
        except TimeoutError as e:
            raise PeerError("Message receive timeout") from e
        except (OSError, asyncio.IncompleteReadError) as e:
            self.connected = False
            raise PeerError(f"Error receiving message: {e}") from e

        try:
            message_type = MessageType(data[0])
        except ValueError as e:
            raise PeerError(f"Unknown message id {data[0]}") from e
        payload = data[1:]
        self._track_state(message_type, payload)
        return message_type, payload

    def _track_state(self, message_type: MessageType, payload: bytes) -> None:
        if message_type == MessageType.CHOKE:
            self.peer_choking = True
        elif message_type == MessageType.UNCHOKE:
            self.peer_choking = False
        elif message_type == MessageType.HAVE and len(payload) == 4:
            self.pieces.add(struct.unpack(">I", payload)[0])
        elif message_type == MessageType.BITFIELD:
            for byte_index, byte_value in enumerate(payload):
                for bit in range(8):
                    if byte_value & (0x80 >> bit):
                        self.pieces.add(byte_index * 8 + bit)
        elif message_type == MessageType.EXTENDED and payload[:1] == bytes([EXTENSION_HANDSHAKE]):
            self._handle_extension_handshake(payload[1:])

    async def send_interested(self) -> None:
        await self.send_message(MessageType.INTERESTED)
        self.am_interested = True

    async def send_request(self, piece_index: int, offset: int, length: int, drain: bool = True) -> None:
        """Request one block of a piece."""
        await self.send_message(MessageType.REQUEST, struct.pack(">III", piece_index, offset, length), drain=drain)

    @staticmethod
    def parse_piece(payload: bytes) -> tuple[int, int, bytes]:
        """Split a PIECE payload into (piece_index, offset, block)."""
        if len(payload) < 8:
            raise PeerError("PIECE message too short")
        piece_index, offset = struct.unpack(">II", payload[:8])
        return piece_index, offset, payload[8:]

    def has_piece(self, piece_index: int) -> bool:
        return piece_index in self.pieces

    # Extension protocol (BEP 10) and metadata exchange (BEP 9)

    async def send_extension_handshake(self) -> None:
        """Advertise ut_metadata support."""
        payload = bencode_encode({"m": {"ut_metadata": UT_METADATA}})
        await self.send_message(MessageType.EXTENDED, bytes([EXTENSION_HANDSHAKE]) + payload)

    def _handle_extension_handshake(self, payload: bytes) -> None:
        try:
            decoded, _ = bencode_decode(payload)
        except ValueError:
            logger.debug(f"Malformed extension handshake from {self.key}")
            return
        if not isinstance(decoded, dict):
            return
        extensions = decoded.get("m", {})
        if isinstance(extensions, dict):
            for name, ext_id in extensions.items():
                if isinstance(ext_id, int):
                    self.remote_extensions[name] = ext_id
        size = decoded.get("metadata_size")
        if isinstance(size, int) and 0 < size <= MAX_METADATA_SIZE:
            self.metadata_size = size
        elif size is not None:
            logger.debug(f"Ignoring metadata_size {size!r} from {self.key}")

    @property
    def supports_metadata(self) -> bool:
        return self.remote_extensions.get("ut_metadata", 0) > 0 and self.metadata_size is not None

    async def wait_for_extension_handshake(self, timeout: float = 10.0) -> bool:
        """Read messages until the BEP 10 handshake arrives or time runs out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.supports_metadata:
            remaining = deadline - loop.time()
            if remaining <= 0 or not self.supports_extensions:
                return False
            try:
                await self.receive_message(timeout=remaining)
            except PeerError:
                return False
        return True

    async def request_metadata_piece(self, piece_index: int) -> None:
        message = bencode_encode({"msg_type": int(MetadataMessageType.REQUEST), "piece": piece_index})
        await self.send_message(MessageType.EXTENDED, bytes([self.remote_extensions["ut_metadata"]]) + message)

    @staticmethod
    def parse_metadata_message(payload: bytes) -> tuple[int, int, bytes | None]:
        """
        Parse a ut_metadata message (after the extension id byte).

        Returns:
            Tuple of (msg_type, piece_index, data or None)

        Raises:
            PeerError: If the header is not a dictionary with integer fields
        """
        try:
            header, end = bencode_decode(payload)
        except ValueError as e:
            raise PeerError(f"Malformed metadata message: {e}") from e
        if not isinstance(header, dict):
            raise PeerError("Invalid metadata response format")
        msg_type = header.get("msg_type", -1)
        piece_index = header.get("piece", -1)
        if not isinstance(msg_type, int) or not isinstance(piece_index, int):
            raise PeerError(f"Invalid metadata message header: {header!r}")
        if msg_type == MetadataMessageType.DATA:
            return msg_type, piece_index, payload[end:]
        return msg_type, piece_index, None

    async def fetch_metadata(self, timeout: float = 30.0) -> bytes | None:
        """
        Download the info dictionary from this peer and verify it.

        Returns:
            Metadata bytes matching the info hash, or None
        """
        if not self.supports_metadata:
            return None

        num_pieces = -(-self.metadata_size // METADATA_PIECE_SIZE)
        received: dict[int, bytes] = {}
        for piece_index in range(num_pieces):
            await self.request_metadata_piece(piece_index)

        while len(received) < num_pieces:
            message_type, payload = await self.receive_message(timeout=timeout)
            if message_type != MessageType.EXTENDED or payload[:1] != bytes([UT_METADATA]):
                continue
            msg_type, piece_index, data = self.parse_metadata_message(payload[1:])
            if msg_type == MetadataMessageType.REJECT:
                logger.debug(f"{self.key} rejected metadata piece {piece_index}")
                return None
            if msg_type == MetadataMessageType.DATA and 0 <= piece_index < num_pieces and data:
                received[piece_index] = data

        metadata = b"".join(received[i] for i in range(num_pieces))[: self.metadata_size]
        if hashlib.sha1(metadata).digest() != self.info_hash:
            logger.debug(f"Metadata from {self.key} failed hash check")
            return None
        return metadata
