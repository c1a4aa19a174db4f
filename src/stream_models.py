"""Pydantic response models shared by the HTTP and MCP surfaces."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from swarm_session import FileEntry, SwarmSession


class CamelModel(BaseModel):
    """Serializes field names in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileInfo(CamelModel):
    """A file as shown to clients."""

    index: int
    name: str
    size: int

    @classmethod
    def from_entry(cls, entry: FileEntry) -> "FileInfo":
        return cls(index=entry.index, name=entry.name, size=entry.size)


class TorrentFiles(CamelModel):
    """Playable and subtitle files of a Ready torrent."""

    info_hash: str
    name: str
    video_files: list[FileInfo]
    subtitle_files: list[FileInfo]

    @classmethod
    def from_session(cls, session: SwarmSession, files: list[FileEntry]) -> "TorrentFiles":
        """Classify files by extension, largest video first."""
        videos = sorted((f for f in files if f.is_video), key=lambda f: f.size, reverse=True)
        return cls(
            info_hash=session.info_hash,
            name=session.display_name or session.info_hash,
            video_files=[FileInfo.from_entry(f) for f in videos],
            subtitle_files=[FileInfo.from_entry(f) for f in files if f.is_subtitle],
        )


class PreparedFile(CamelModel):
    """Result of selecting a file for download ahead of playback."""

    success: bool = True
    file: FileInfo
    info_hash: str


class StreamSummary(CamelModel):
    """One active session."""

    info_hash: str
    name: str | None = None
    state: str
    file_count: int
    active_readers: int

    @classmethod
    def from_session(cls, session: SwarmSession) -> "StreamSummary":
        return cls(
            info_hash=session.info_hash,
            name=session.display_name,
            state=session.state.value,
            file_count=len(session.files),
            active_readers=session.active_readers,
        )
