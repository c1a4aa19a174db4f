"""
HTTP surface of the streaming bridge.

Turns magnet links into file listings and serves torrent files with
``Range`` support so media players can seek while the swarm downloads.
"""

import asyncio
import contextlib
import json
import logging
import mimetypes
from typing import Any

from aiohttp import hdrs, web
from yarl import URL

from byte_range import parse_range_header
from key_store import KeyStore
from storage_janitor import StorageJanitor
from stream_config import StreamerSettings
from stream_errors import BadRequest, InvalidMagnet, InvalidRange, StreamError
from stream_models import FileInfo, PreparedFile, StreamSummary, TorrentFiles
from swarm_engine import PeerSwarmEngine, SwarmEngine
from swarm_registry import SwarmRegistry

logger = logging.getLogger(__name__)

API_BASE_PATH = "/api"

mimetypes.add_type("video/x-matroska", ".mkv")
mimetypes.add_type("application/x-subrip", ".srt")
mimetypes.add_type("text/vtt", ".vtt")
mimetypes.add_type("text/x-ssa", ".ass")


def stream_file_url(base_url: URL, info_hash: str, file_index: int) -> str:
    """URL a media player streams one torrent file from."""
    return str(base_url.with_path(f"{API_BASE_PATH}/stream-file").with_query(hash=info_hash, file=file_index))


def content_type_for(filename: str) -> str:
    """Guess a ``Content-Type`` from the file extension."""
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or "application/octet-stream"


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Turn errors into JSON bodies with a distinguishable ``error`` kind."""
    try:
        return await handler(request)
    except asyncio.CancelledError:
        raise
    except web.HTTPException:
        raise
    except StreamError as e:
        headers = {}
        if isinstance(e, InvalidRange) and e.size is not None:
            headers[hdrs.CONTENT_RANGE] = f"bytes */{e.size}"
        logger.info(f"{request.method} {request.path_qs} -> {e.status} {e.kind}: {e}")
        return web.json_response(e.to_dict(), status=e.status, headers=headers)
    except Exception:
        logger.exception(f"Error handling request {request.method} {request.path}")
        return web.json_response({"error": "internal_error", "message": "Internal server error"}, status=500)


class RangeFileServer:
    """aiohttp application wired to a swarm registry and key store."""

    def __init__(
        self,
        settings: StreamerSettings | None = None,
        engine: SwarmEngine | None = None,
        registry: SwarmRegistry | None = None,
        key_store: KeyStore | None = None,
    ) -> None:
        """
        Args:
            settings: Server settings; defaults to :meth:`StreamerSettings.from_env`
            engine: Swarm engine; defaults to a :class:`PeerSwarmEngine`
            registry: Session registry; built over ``engine`` when omitted
            key_store: API key store; built from the settings when omitted
        """
        self.settings = settings or StreamerSettings.from_env()
        if registry is not None:
            self.engine = registry.engine
            self.registry = registry
        else:
            self.engine = engine or PeerSwarmEngine(
                max_peers=self.settings.max_peers, peer_port=self.settings.peer_port
            )
            self.registry = SwarmRegistry(self.engine, StorageJanitor(self.settings.staging_root))
        self.key_store = key_store or KeyStore(self.settings.user_data_dir, self.settings.install_dir)

        self.app = web.Application(middlewares=[error_middleware])
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self._reaper: asyncio.Task | None = None

        self._setup_routes()
        self.app.on_startup.append(self._on_startup)
        self.app.on_shutdown.append(self._on_shutdown)
        self.app.on_cleanup.append(self._on_cleanup)

    def _setup_routes(self) -> None:
        router = self.app.router
        router.add_get(f"{API_BASE_PATH}/torrent-files", self._handle_torrent_files)
        router.add_get(f"{API_BASE_PATH}/stream-file", self._handle_stream_file)
        router.add_get(f"{API_BASE_PATH}/prepare-file", self._handle_prepare_file)
        router.add_get(f"{API_BASE_PATH}/stop-stream", self._handle_stop_stream)
        router.add_get(f"{API_BASE_PATH}/streams", self._handle_list_streams)
        router.add_get(f"{API_BASE_PATH}/check-api-key", self._handle_check_api_key)
        router.add_post(f"{API_BASE_PATH}/set-api-key", self._handle_set_api_key)
        router.add_get(f"{API_BASE_PATH}/get-api-key", self._handle_get_api_key)
        router.add_get(f"{API_BASE_PATH}/key-location", self._handle_key_location)

    async def start(self) -> None:
        """Bind and start serving."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.settings.host, self.settings.port)
        await self.site.start()
        logger.info(f"Streaming server listening on {self.url}")

    @property
    def url(self) -> URL:
        """Base URL of the server; reports the bound port once started."""
        host, port = self.settings.host, self.settings.port
        if self.runner is not None and self.runner.addresses:
            host, port = self.runner.addresses[0][:2]
        return URL.build(scheme="http", host=host, port=port)

    def stream_url(self, info_hash: str, file_index: int) -> str:
        return stream_file_url(self.url, info_hash, file_index)

    async def stop(self) -> None:
        """Stop serving and destroy every session."""
        if self.runner:
            await self.runner.cleanup()
        self.runner = None
        self.site = None
        logger.info("Streaming server stopped")

    async def _on_startup(self, app: web.Application) -> None:
        if self.settings.idle_timeout is not None:
            self._reaper = asyncio.create_task(
                self.registry.run_reaper(self.settings.idle_timeout, self.settings.reap_interval)
            )
            logger.info(f"Idle sessions are destroyed after {self.settings.idle_timeout:.0f}s")

    async def _on_shutdown(self, app: web.Application) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper
            self._reaper = None
        await self.registry.shutdown()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.engine.close()

    @staticmethod
    def _required(request: web.Request, name: str) -> str:
        value = request.query.get(name, "").strip()
        if not value:
            raise BadRequest(f"Missing query parameter: {name}")
        return value

    @classmethod
    def _file_index(cls, request: web.Request) -> int:
        raw = cls._required(request, "file")
        try:
            return int(raw)
        except ValueError:
            raise BadRequest(f"File index must be an integer, got {raw!r}") from None

    async def _handle_torrent_files(self, request: web.Request) -> web.Response:
        magnet = request.query.get("magnet", "").strip()
        if not magnet:
            raise InvalidMagnet("Missing magnet")

        session = await self.registry.get_or_create(magnet)
        files = await session.await_ready()
        return web.json_response(TorrentFiles.from_session(session, files).model_dump(by_alias=True))

    async def _handle_stream_file(self, request: web.Request) -> web.StreamResponse:
        info_hash = self._required(request, "hash")
        index = self._file_index(request)
        session = self.registry.require(info_hash)
        entry = session.get_file(index)
        byte_range = parse_range_header(request.headers.get(hdrs.RANGE), entry.size)
        stream = session.open_file_stream(index, byte_range)
        if request.method != hdrs.METH_HEAD:
            session.select_file(index)

        headers = {
            hdrs.ACCEPT_RANGES: "bytes",
            hdrs.CONTENT_TYPE: content_type_for(entry.name),
        }
        if byte_range is None:
            response = web.StreamResponse(status=200, headers=headers)
            response.content_length = entry.size
        else:
            headers[hdrs.CONTENT_RANGE] = byte_range.content_range(entry.size)
            response = web.StreamResponse(status=206, headers=headers)
            response.content_length = byte_range.length

        async with contextlib.aclosing(stream):
            await response.prepare(request)
            if request.method == hdrs.METH_HEAD:
                return response
            try:
                async for chunk in stream:
                    await response.write(chunk)
            except ConnectionResetError:
                logger.debug(f"Client went away while streaming {session.info_hash}/{index}")
                return response
            except OSError as e:
                logger.warning(f"Stream {session.info_hash}/{index} aborted: {e}")
                return response

        await response.write_eof()
        return response

    async def _handle_prepare_file(self, request: web.Request) -> web.Response:
        info_hash = self._required(request, "hash")
        index = self._file_index(request)
        session = self.registry.require(info_hash)
        await session.await_ready()
        entry = session.select_file(index)
        prepared = PreparedFile(file=FileInfo.from_entry(entry), info_hash=session.info_hash)
        return web.json_response(prepared.model_dump(by_alias=True))

    async def _handle_stop_stream(self, request: web.Request) -> web.Response:
        info_hash = self._required(request, "hash")
        if await self.registry.destroy(info_hash):
            return web.json_response({"success": True})
        return web.json_response(
            {"success": False, "error": "not_found", "message": f"Torrent {info_hash} not found"}, status=404
        )

    async def _handle_list_streams(self, request: web.Request) -> web.Response:
        streams = [StreamSummary.from_session(s).model_dump(by_alias=True) for s in self.registry.sessions()]
        return web.json_response({"streams": streams})

    async def _handle_check_api_key(self, request: web.Request) -> web.Response:
        self.key_store.load()
        return web.json_response({"hasApiKey": self.key_store.has_key_file()})

    async def _handle_set_api_key(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise BadRequest("Request body must be JSON") from None
        api_key = body.get("apiKey") if isinstance(body, dict) else None
        if not isinstance(api_key, str) or not api_key.strip():
            raise BadRequest("Invalid API key")

        try:
            self.key_store.save(api_key)
        except OSError as e:
            logger.error(f"Failed to save API key: {e}")
            return web.json_response({"error": "key_write_failed", "message": "Failed to save API key"}, status=500)
        return web.json_response({"success": True})

    async def _handle_get_api_key(self, request: web.Request) -> web.Response:
        if self.key_store.load():
            return web.json_response({"apiKey": self.key_store.masked(), "hasApiKey": True})
        return web.json_response({"apiKey": "", "hasApiKey": False})

    async def _handle_key_location(self, request: web.Request) -> web.Response:
        return web.json_response(self.key_store.location())


def create_app(
    settings: StreamerSettings | None = None,
    engine: SwarmEngine | None = None,
    registry: SwarmRegistry | None = None,
    key_store: KeyStore | None = None,
) -> web.Application:
    """Build the aiohttp application without binding a socket."""
    return RangeFileServer(settings, engine=engine, registry=registry, key_store=key_store).app
