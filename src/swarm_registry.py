"""
Registry of active swarm sessions, keyed by info hash.
"""

import asyncio
import functools
import logging
import time

from magnet import MagnetError, MagnetLink, is_valid_info_hash
from storage_janitor import StorageJanitor
from stream_errors import InvalidInfoHash, InvalidMagnet, NotFound
from swarm_engine import SwarmEngine
from swarm_session import SessionState, SwarmSession

logger = logging.getLogger(__name__)


class SwarmRegistry:
    """
    Maps info hashes to at most one live session each.

    A hash's staging directory belongs to one session at a time: a new
    session for a hash is only created once the previous one's teardown
    (engine stop and wipe) has finished.
    """

    def __init__(self, engine: SwarmEngine, janitor: StorageJanitor) -> None:
        """
        Args:
            engine: Engine every session downloads through
            janitor: Wipes a session's staging directory after teardown
        """
        self.engine = engine
        self.janitor = janitor
        self._sessions: dict[str, SwarmSession] = {}
        # in-flight creations and teardowns, one per hash
        self._creating: dict[str, asyncio.Task[SwarmSession]] = {}
        self._teardowns: dict[str, asyncio.Task[None]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, info_hash: str) -> bool:
        return self.get(info_hash) is not None

    def sessions(self) -> list[SwarmSession]:
        return list(self._sessions.values())

    async def get_or_create(self, magnet_uri: str) -> SwarmSession:
        """
        Return the session for the magnet's info hash, starting one if needed.

        Concurrent calls for one hash share a single session and a single
        engine download; calls for different hashes do not wait on each
        other. Does not wait for metadata.

        Raises:
            InvalidMagnet: If the URI has no 40-hex-digit info hash
        """
        try:
            magnet = MagnetLink.parse(magnet_uri)
        except MagnetError as e:
            raise InvalidMagnet(str(e)) from e

        info_hash = magnet.info_hash_hex
        session = self._sessions.get(info_hash)
        if session is not None:
            return session

        creating = self._creating.get(info_hash)
        if creating is None or creating.done():
            creating = asyncio.create_task(self._create(magnet), name=f"create-{info_hash}")
            self._creating[info_hash] = creating
            creating.add_done_callback(functools.partial(self._discard, self._creating, info_hash))
        # one caller giving up must not cancel the creation for the others
        return await asyncio.shield(creating)

    async def _create(self, magnet: MagnetLink) -> SwarmSession:
        info_hash = magnet.info_hash_hex
        teardown = self._teardowns.get(info_hash)
        if teardown is not None:
            logger.debug(f"Waiting for the previous {info_hash} session to finish stopping")
            await asyncio.wait({teardown})

        storage_path = self.janitor.staging_path(info_hash)
        await asyncio.to_thread(storage_path.mkdir, parents=True, exist_ok=True)

        session = SwarmSession(magnet, storage_path, self.engine, on_failure=self._on_session_failure)
        self._sessions[info_hash] = session
        try:
            session.start()
        except Exception:
            self._sessions.pop(info_hash, None)
            raise
        logger.info(f"Added torrent {info_hash} ({magnet.display_name or 'unnamed'})")
        return session

    @staticmethod
    def _discard(tasks: dict[str, asyncio.Task], info_hash: str, task: asyncio.Task) -> None:
        if tasks.get(info_hash) is task:
            del tasks[info_hash]

    def get(self, info_hash: str) -> SwarmSession | None:
        """Look up a session without side effects."""
        if not is_valid_info_hash(info_hash):
            return None
        return self._sessions.get(info_hash.lower())

    def require(self, info_hash: str) -> SwarmSession:
        """
        Look up a session or raise.

        Raises:
            InvalidInfoHash: If ``info_hash`` is not 40 hex characters
            NotFound: If no session is registered for it
        """
        if not is_valid_info_hash(info_hash):
            raise InvalidInfoHash(f"Invalid info hash: {info_hash!r}")
        session = self._sessions.get(info_hash.lower())
        if session is None:
            raise NotFound(f"Torrent {info_hash} not found")
        return session

    def remove(self, info_hash: str) -> None:
        """Drop the entry for ``info_hash``; a no-op if it is absent."""
        if is_valid_info_hash(info_hash):
            self._sessions.pop(info_hash.lower(), None)

    async def destroy(self, info_hash: str) -> bool:
        """
        Stop a session and wipe its staging directory.

        Returns:
            False if no session was registered ("not found")
        """
        session = self.get(info_hash)
        if session is None:
            return False
        self._forget(session)
        await asyncio.shield(self._schedule_teardown(session))
        return True

    def _forget(self, session: SwarmSession) -> None:
        if self._sessions.get(session.info_hash) is session:
            del self._sessions[session.info_hash]

    def _schedule_teardown(self, session: SwarmSession) -> asyncio.Task[None]:
        task = asyncio.create_task(self._teardown(session), name=f"teardown-{session.info_hash}")
        self._teardowns[session.info_hash] = task
        task.add_done_callback(functools.partial(self._discard, self._teardowns, session.info_hash))
        return task

    async def _teardown(self, session: SwarmSession) -> None:
        # engine stop closes the file handles before the directory goes
        if not await session.destroy():
            return
        failures = await self.janitor.wipe(session.storage_path)
        if failures:
            logger.warning(f"{failures} entries left behind in {session.storage_path}")

    def _on_session_failure(self, session: SwarmSession) -> None:
        self._forget(session)
        if session.info_hash in self._teardowns:
            # already being destroyed
            return
        self._schedule_teardown(session)

    async def wait_for_teardowns(self) -> None:
        """Wait for every scheduled teardown to finish."""
        if self._teardowns:
            await asyncio.gather(*list(self._teardowns.values()), return_exceptions=True)

    async def reap_idle(self, max_idle: float) -> list[str]:
        """
        Destroy Ready or Errored sessions with no readers for ``max_idle`` seconds.

        Returns:
            Info hashes of the destroyed sessions
        """
        now = time.monotonic()
        idle = [
            session
            for session in self._sessions.values()
            if session.state in (SessionState.READY, SessionState.ERRORED)
            and session.active_readers == 0
            and now - session.last_activity >= max_idle
        ]
        for session in idle:
            logger.info(f"Reaping idle torrent {session.info_hash}")
            await self.destroy(session.info_hash)
        return [session.info_hash for session in idle]

    async def run_reaper(self, max_idle: float, interval: float) -> None:
        """Periodically reap idle sessions until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap_idle(max_idle)
            except Exception as e:
                logger.error(f"Idle reaper failed: {e}")

    async def shutdown(self) -> None:
        """Destroy every session; used on process shutdown."""
        if self._creating:
            await asyncio.gather(*list(self._creating.values()), return_exceptions=True)
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            self._schedule_teardown(session)
        await self.wait_for_teardowns()
        logger.info(f"Shut down {len(sessions)} torrents")
