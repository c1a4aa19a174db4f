"""
Error taxonomy for the streaming bridge.

Every error carries a machine-readable ``kind`` and the HTTP status the
server answers with, so callers can tell "still fetching metadata" from
"file not found" from "invalid range".
"""


class StreamError(Exception):
    """Base class for errors surfaced to streaming clients."""

    kind = "stream_error"
    status = 500

    def to_dict(self) -> dict[str, str]:
        """Serialize the error for a JSON response body."""
        return {"error": self.kind, "message": str(self)}


class BadRequest(StreamError):
    """A required request parameter is missing or malformed."""

    kind = "bad_request"
    status = 400


class InvalidMagnet(StreamError):
    """The magnet URI lacks a well-formed 40-hex-digit info hash."""

    kind = "invalid_magnet"
    status = 400


class InvalidInfoHash(StreamError):
    """An info hash parameter is not a 40-hex-digit string."""

    kind = "invalid_info_hash"
    status = 400


class MetadataFetchFailed(StreamError):
    """The swarm engine failed to fetch torrent metadata."""

    kind = "metadata_fetch_failed"
    status = 502


class NotReady(StreamError):
    """The session has not fetched its metadata yet."""

    kind = "not_ready"
    status = 409


class FileIndexOutOfRange(StreamError):
    """The requested file index does not exist in the torrent."""

    kind = "file_index_out_of_range"
    status = 404


class InvalidRange(StreamError):
    """The requested byte range is unparsable or out of bounds."""

    kind = "range_not_satisfiable"
    status = 416

    def __init__(self, message: str, size: int | None = None) -> None:
        super().__init__(message)
        self.size = size


# HTTP name for the same condition
RangeNotSatisfiable = InvalidRange


class NotFound(StreamError):
    """No session is registered for the info hash."""

    kind = "not_found"
    status = 404


class StreamClosed(Exception):
    """Raised inside the engine when a torrent is removed under a reader."""

    pass
