"""Tests for the swarm session state machine."""

import asyncio
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from byte_range import ByteRange
from conftest import HASH_A, MAGNET_A, FakeEngine
from stream_errors import FileIndexOutOfRange, InvalidRange, MetadataFetchFailed, NotFound, NotReady
from swarm_registry import SwarmRegistry
from swarm_session import FileEntry, SessionState


async def collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


@pytest.fixture
async def ready_session(registry: SwarmRegistry, engine: FakeEngine, movie_files: dict[str, bytes]):
    engine.publish(HASH_A, "Movie A", movie_files)
    session = await registry.get_or_create(MAGNET_A)
    await session.await_ready()
    return session


class TestReadiness:
    """Tests for await_ready() and the Pending -> Ready transition."""

    async def test_new_session_is_pending(self, registry: SwarmRegistry) -> None:
        session = await registry.get_or_create(MAGNET_A)

        assert session.state == SessionState.PENDING
        assert session.display_name == "Movie A"
        assert session.info_hash == HASH_A

    async def test_all_waiters_released_by_one_event(
        self, registry: SwarmRegistry, engine: FakeEngine, movie_files: dict[str, bytes]
    ) -> None:
        """Test that every waiter sees the same manifest."""
        session = await registry.get_or_create(MAGNET_A)
        waiters = [asyncio.create_task(session.await_ready()) for _ in range(5)]
        await asyncio.sleep(0)
        assert not any(w.done() for w in waiters)

        engine.make_ready(HASH_A, "Movie A", movie_files)
        results = await asyncio.gather(*waiters)

        assert all(r == results[0] for r in results)
        assert [f.name for f in results[0]] == ["movie.mp4", "movie.en.srt"]
        assert session.state == SessionState.READY

    async def test_manifest_identical_before_and_after_ready(
        self, registry: SwarmRegistry, engine: FakeEngine, movie_files: dict[str, bytes]
    ) -> None:
        """Test that late callers get the same manifest without waiting."""
        session = await registry.get_or_create(MAGNET_A)
        early = asyncio.create_task(session.await_ready())
        await asyncio.sleep(0)
        engine.make_ready(HASH_A, "Movie A", movie_files)

        assert await early == await session.await_ready() == session.list_files()

    async def test_ready_fires_once(
        self, registry: SwarmRegistry, engine: FakeEngine, movie_files: dict[str, bytes]
    ) -> None:
        """Test that a second ready event does not replace the manifest."""
        session = await registry.get_or_create(MAGNET_A)
        engine.make_ready(HASH_A, "Movie A", movie_files)
        engine.make_ready(HASH_A, "Other", {"other.mkv": b"x"})

        assert [f.name for f in session.list_files()] == ["movie.mp4", "movie.en.srt"]
        assert session.display_name == "Movie A"

    async def test_cancelled_waiter_does_not_cancel_others(
        self, registry: SwarmRegistry, engine: FakeEngine, movie_files: dict[str, bytes]
    ) -> None:
        session = await registry.get_or_create(MAGNET_A)
        abandoned = asyncio.create_task(session.await_ready())
        patient = asyncio.create_task(session.await_ready())
        await asyncio.sleep(0)

        abandoned.cancel()
        with pytest.raises(asyncio.CancelledError):
            await abandoned

        engine.make_ready(HASH_A, "Movie A", movie_files)
        assert len(await patient) == 2

    async def test_error_reaches_all_waiters(self, registry: SwarmRegistry, engine: FakeEngine) -> None:
        session = await registry.get_or_create(MAGNET_A)
        waiters = [asyncio.create_task(session.await_ready()) for _ in range(3)]
        await asyncio.sleep(0)

        engine.fail(HASH_A, ConnectionError("no peers"))
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, MetadataFetchFailed) for r in results)
        assert session.state in (SessionState.ERRORED, SessionState.DESTROYED)
        with pytest.raises(MetadataFetchFailed):
            await session.await_ready()
        await registry.wait_for_teardowns()

    async def test_destroy_while_pending_releases_waiters(self, registry: SwarmRegistry) -> None:
        session = await registry.get_or_create(MAGNET_A)
        waiter = asyncio.create_task(session.await_ready())
        await asyncio.sleep(0)

        await registry.destroy(HASH_A)

        with pytest.raises(NotFound):
            await waiter


class TestFileListing:
    """Tests for list_files() and file classification."""

    async def test_list_files_before_ready(self, registry: SwarmRegistry) -> None:
        session = await registry.get_or_create(MAGNET_A)

        with pytest.raises(NotReady):
            session.list_files()

    async def test_two_file_torrent(self, ready_session, movie_files: dict[str, bytes]) -> None:
        files = ready_session.list_files()

        assert [f.index for f in files] == [0, 1]
        assert files[0].path == "Movie A/movie.mp4"
        assert files[0].size == len(movie_files["Movie A/movie.mp4"])
        assert files[0].is_video and not files[0].is_subtitle
        assert files[1].is_subtitle and not files[1].is_video

    @pytest.mark.parametrize(
        "name, video, subtitle",
        [
            ("a.MKV", True, False),
            ("a.avi", True, False),
            ("a.mov", True, False),
            ("a.vtt", False, True),
            ("a.ass", False, True),
            ("a.nfo", False, False),
            ("mp4", False, False),
        ],
    )
    def test_classification(self, name: str, video: bool, subtitle: bool) -> None:
        entry = FileEntry(index=0, path=name, name=name, size=1)

        assert entry.is_video is video
        assert entry.is_subtitle is subtitle


class TestFileStreams:
    """Tests for open_file_stream()."""

    async def test_stream_before_ready(self, registry: SwarmRegistry, engine: FakeEngine) -> None:
        session = await registry.get_or_create(MAGNET_A)

        with pytest.raises(NotReady):
            session.open_file_stream(0)
        assert engine.reads == []

    @pytest.mark.parametrize("index", [2, -1, 99])
    async def test_index_out_of_range(self, ready_session, engine: FakeEngine, index: int) -> None:
        with pytest.raises(FileIndexOutOfRange):
            ready_session.open_file_stream(index)
        assert engine.reads == []

    async def test_full_range_equals_content(self, ready_session, movie_files: dict[str, bytes]) -> None:
        data = movie_files["Movie A/movie.mp4"]

        whole = await collect(ready_session.open_file_stream(0))
        ranged = await collect(ready_session.open_file_stream(0, ByteRange(0, len(data) - 1)))

        assert whole == ranged == data

    async def test_partial_range(self, ready_session, movie_files: dict[str, bytes]) -> None:
        data = movie_files["Movie A/movie.mp4"]

        assert await collect(ready_session.open_file_stream(0, ByteRange(250, 749))) == data[250:750]

    async def test_range_past_end(self, ready_session, engine: FakeEngine) -> None:
        size = ready_session.list_files()[0].size

        with pytest.raises(InvalidRange):
            ready_session.open_file_stream(0, ByteRange(size, size + 10))
        assert engine.reads == []

    async def test_empty_file(self, registry: SwarmRegistry, engine: FakeEngine) -> None:
        engine.publish(HASH_A, "Empty", {"empty.mp4": b""})
        session = await registry.get_or_create(MAGNET_A)
        await session.await_ready()

        assert await collect(session.open_file_stream(0)) == b""
        with pytest.raises(InvalidRange):
            session.open_file_stream(0, ByteRange(0, 0))

    async def test_reader_count_tracks_open_streams(self, ready_session, engine: FakeEngine) -> None:
        stream = ready_session.open_file_stream(0)
        assert ready_session.active_readers == 0

        await stream.__anext__()
        assert ready_session.active_readers == 1
        assert engine.open_readers == 1

        await stream.aclose()
        assert ready_session.active_readers == 0
        assert engine.open_readers == 0

    async def test_repeated_aborts_do_not_leak(self, ready_session, engine: FakeEngine) -> None:
        """Test a player seeking: many streams opened and dropped early."""
        for start in range(0, 5000, 250):
            stream = ready_session.open_file_stream(0, ByteRange(start, start + 999))
            await stream.__anext__()
            await stream.aclose()

        assert ready_session.active_readers == 0
        assert engine.open_readers == 0

    async def test_concurrent_readers_are_independent(self, ready_session, movie_files: dict[str, bytes]) -> None:
        data = movie_files["Movie A/movie.mp4"]

        first, second = await asyncio.gather(
            collect(ready_session.open_file_stream(0, ByteRange(0, 4999))),
            collect(ready_session.open_file_stream(0, ByteRange(5000, len(data) - 1))),
        )

        assert first + second == data

    async def test_destroy_ends_in_flight_reader(self, ready_session, engine: FakeEngine) -> None:
        engine.gate = asyncio.Event()
        engine.gate.set()
        stream = ready_session.open_file_stream(0)
        await stream.__anext__()
        engine.gate.clear()

        pending = asyncio.create_task(collect(stream))
        await asyncio.sleep(0)
        assert await ready_session.destroy() is True

        await asyncio.wait_for(pending, timeout=1)
        assert ready_session.active_readers == 0

    async def test_select_file(self, ready_session, engine: FakeEngine) -> None:
        entry = ready_session.select_file(0)

        assert entry.name == "movie.mp4"
        assert engine.handle_for(HASH_A).selected == [0]

    async def test_select_file_out_of_range(self, ready_session) -> None:
        with pytest.raises(FileIndexOutOfRange):
            ready_session.select_file(5)


class TestDestroy:
    """Tests for destroy()."""

    async def test_destroy_is_idempotent(self, ready_session) -> None:
        assert await ready_session.destroy() is True
        assert await ready_session.destroy() is False
        assert ready_session.state == SessionState.DESTROYED

    async def test_destroyed_session_is_not_ready(self, ready_session) -> None:
        await ready_session.destroy()

        with pytest.raises(NotReady):
            ready_session.list_files()
