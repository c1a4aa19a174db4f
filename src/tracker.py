"""
Tracker communication for peer discovery.
Handles HTTP/HTTPS (aiohttp) and UDP (BEP 15) announces.
"""

import asyncio
import logging
import random
import socket
import struct
import urllib.parse

import aiohttp
from pydantic import BaseModel, Field
from yarl import URL

from magnet import bencode_decode

logger = logging.getLogger(__name__)

UDP_PROTOCOL_ID = 0x41727101980
UDP_EVENTS = {"none": 0, "completed": 1, "started": 2, "stopped": 3}


class TrackerError(Exception):
    """Exception raised for tracker communication errors."""

    pass


class PeerAddress(BaseModel):
    """A peer endpoint returned by a tracker."""

    ip: str
    port: int = Field(ge=1, le=65535)

    @property
    def key(self) -> str:
        return f"{self.ip}:{self.port}"


class AnnounceResponse(BaseModel):
    """Parsed tracker announce response."""

    interval: int = 1800
    complete: int = 0
    incomplete: int = 0
    peers: list[PeerAddress] = Field(default_factory=list)


def parse_compact_peers(data: bytes) -> list[PeerAddress]:
    """Decode a compact IPv4 peer list (6 bytes per peer)."""
    peers = []
    for i in range(0, len(data) - len(data) % 6, 6):
        ip = socket.inet_ntoa(data[i : i + 4])
        (port,) = struct.unpack(">H", data[i + 4 : i + 6])
        if port:
            peers.append(PeerAddress(ip=ip, port=port))
    return peers


class Tracker:
    """Announces one torrent to one tracker."""

    def __init__(
        self,
        announce_url: str,
        info_hash: bytes,
        peer_id: bytes,
        port: int = 6881,
        left: int = 0,
        numwant: int | None = None,
        http_session: aiohttp.ClientSession | None = None,
        timeout: float = 15.0,
    ) -> None:
        """
        Args:
            announce_url: Tracker announce URL
            info_hash: SHA-1 hash of the info dictionary (20 bytes)
            peer_id: Our peer ID (20 bytes)
            port: Port announced for incoming connections
            left: Bytes remaining to download
            numwant: Number of peers requested
            http_session: Shared aiohttp session for HTTP trackers
            timeout: Per-request timeout in seconds
        """
        if len(info_hash) != 20 or len(peer_id) != 20:
            raise TrackerError("Info hash and peer id must be 20 bytes")
        self.announce_url = announce_url
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.port = port
        self.left = left
        self.numwant = numwant
        self.http_session = http_session
        self.timeout = timeout

    async def announce(self, event: str = "started", downloaded: int = 0, uploaded: int = 0) -> AnnounceResponse:
        """
        Announce to the tracker and get a peer list.

        Raises:
            TrackerError: On unsupported scheme, network failure or tracker failure reason
        """
        scheme = urllib.parse.urlparse(self.announce_url).scheme
        if scheme in ("http", "https"):
            return await self._announce_http(event, downloaded, uploaded)
        if scheme == "udp":
            return await self._announce_udp(event, downloaded, uploaded)
        raise TrackerError(f"Unsupported tracker protocol: {self.announce_url}")

    async def _announce_http(self, event: str, downloaded: int, uploaded: int) -> AnnounceResponse:
        params = {
            "info_hash": self.info_hash,
            "peer_id": self.peer_id,
            "port": self.port,
            "uploaded": uploaded,
            "downloaded": downloaded,
            "left": self.left,
            "compact": 1,
            "event": event,
        }
        if self.numwant is not None:
            params["numwant"] = self.numwant

        separator = "&" if "?" in self.announce_url else "?"
        url = self.announce_url + separator + urllib.parse.urlencode(params)

        session = self.http_session or aiohttp.ClientSession()
        try:
            # encoded=True keeps the percent-encoded binary info_hash intact
            async with session.get(
                URL(url, encoded=True), timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    raise TrackerError(f"Tracker returned status {response.status}")
                return self.parse_http_response(await response.read())
        except TrackerError:
            raise
        except (aiohttp.ClientError, TimeoutError) as e:
            raise TrackerError(f"HTTP tracker error: {e}") from e
        finally:
            if self.http_session is None:
                await session.close()

    @staticmethod
    def parse_http_response(data: bytes) -> AnnounceResponse:
        """
        Parse a bencoded HTTP tracker response.

        Raises:
            TrackerError: If the response is malformed or reports a failure
        """
        try:
            response, _ = bencode_decode(data)
        except ValueError as e:
            raise TrackerError(f"Malformed tracker response: {e}") from e

        if not isinstance(response, dict):
            raise TrackerError("Invalid tracker response format")
        if "failure reason" in response:
            reason = response["failure reason"]
            raise TrackerError(f"Tracker failure: {reason.decode('utf-8', 'replace') if isinstance(reason, bytes) else reason}")

        peers_data = response.get("peers", b"")
        if isinstance(peers_data, bytes):
            peers = parse_compact_peers(peers_data)
        else:
            peers = []
            for peer in peers_data:
                if not isinstance(peer, dict):
                    continue
                ip = peer.get("ip", b"")
                ip = ip.decode("utf-8", errors="replace") if isinstance(ip, bytes) else str(ip)
                port = peer.get("port", 0)
                if ip and isinstance(port, int) and 0 < port < 65536:
                    peers.append(PeerAddress(ip=ip, port=port))

        return AnnounceResponse(
            interval=response.get("interval", 1800),
            complete=response.get("complete", 0),
            incomplete=response.get("incomplete", 0),
            peers=peers,
        )

    async def _announce_udp(self, event: str, downloaded: int, uploaded: int) -> AnnounceResponse:
        parsed = urllib.parse.urlparse(self.announce_url)
        if not parsed.hostname:
            raise TrackerError(f"UDP tracker URL has no host: {self.announce_url}")

        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(parsed.hostname, parsed.port or 80, family=socket.AF_INET, type=socket.SOCK_DGRAM)
        except OSError as e:
            raise TrackerError(f"Cannot resolve {parsed.hostname}: {e}") from e
        addr = infos[0][4]

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)
        try:
            connection_id = await self._udp_connect(loop, sock, addr)
            return await self._udp_announce(loop, sock, addr, connection_id, event, downloaded, uploaded)
        except (OSError, TimeoutError) as e:
            raise TrackerError(f"UDP tracker error: {e}") from e
        finally:
            sock.close()

    async def _udp_request(
        self, loop: asyncio.AbstractEventLoop, sock: socket.socket, addr: tuple, packet: bytes, action: int
    ) -> bytes:
        transaction_id = struct.unpack(">I", packet[12:16])[0]
        await loop.sock_sendto(sock, packet, addr)
        data, _ = await asyncio.wait_for(loop.sock_recvfrom(sock, 4096), timeout=self.timeout)
        if len(data) < 8:
            raise TrackerError("Short UDP tracker response")
        recv_action, recv_transaction = struct.unpack(">II", data[:8])
        if recv_transaction != transaction_id:
            raise TrackerError("Transaction ID mismatch")
        if recv_action == 3:
            raise TrackerError(f"Tracker failure: {data[8:].decode('utf-8', 'replace')}")
        if recv_action != action:
            raise TrackerError(f"Unexpected UDP action {recv_action}")
        return data

    async def _udp_connect(self, loop: asyncio.AbstractEventLoop, sock: socket.socket, addr: tuple) -> int:
        packet = struct.pack(">QII", UDP_PROTOCOL_ID, 0, random.getrandbits(32))
        data = await self._udp_request(loop, sock, addr, packet, action=0)
        if len(data) < 16:
            raise TrackerError("Invalid UDP connect response")
        return struct.unpack(">Q", data[8:16])[0]

    async def _udp_announce(
        self,
        loop: asyncio.AbstractEventLoop,
        sock: socket.socket,
        addr: tuple,
        connection_id: int,
        event: str,
        downloaded: int,
        uploaded: int,
    ) -> AnnounceResponse:
        packet = struct.pack(
            ">QII20s20sQQQIIIiH",
            connection_id,
            1,
            random.getrandbits(32),
            self.info_hash,
            self.peer_id,
            downloaded,
            self.left,
            uploaded,
            UDP_EVENTS.get(event, 0),
            0,  # IP: use sender address
            random.getrandbits(32),
            self.numwant if self.numwant is not None else -1,
            self.port,
        )
        data = await self._udp_request(loop, sock, addr, packet, action=1)
        if len(data) < 20:
            raise TrackerError("Invalid UDP announce response")
        interval, leechers, seeders = struct.unpack(">III", data[8:20])
        return AnnounceResponse(
            interval=interval, complete=seeders, incomplete=leechers, peers=parse_compact_peers(data[20:])
        )


def generate_peer_id() -> bytes:
    """
    Generate a random peer ID.

    Returns:
        20-byte peer ID in Azureus style
    """
    return b"-TB0100-" + bytes(random.getrandbits(8) for _ in range(12))
