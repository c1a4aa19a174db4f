"""
HTTP byte-range parsing.
"""

import re
from dataclasses import dataclass

from stream_errors import InvalidRange

RANGE_PATTERN = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte offsets within one file."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        """Value of the ``Content-Range`` response header."""
        return f"bytes {self.start}-{self.end}/{size}"

    @classmethod
    def full(cls, size: int) -> "ByteRange":
        return cls(0, size - 1)

    def validate(self, size: int) -> "ByteRange":
        """
        Check ``0 <= start <= end < size``.

        Raises:
            InvalidRange: If the range does not fit the file
        """
        if not 0 <= self.start <= self.end < size:
            raise InvalidRange(f"Range {self.start}-{self.end} not satisfiable for size {size}", size=size)
        return self


def parse_range_header(header: str | None, size: int) -> ByteRange | None:
    """
    Parse a single-range ``Range`` header against a file size.

    ``bytes=start-end``, ``bytes=start-`` (to the last byte) and
    ``bytes=-suffix`` (the last ``suffix`` bytes) are accepted.

    Args:
        header: Raw header value, or None
        size: File size in bytes

    Returns:
        The validated range, or None when no header was sent

    Raises:
        InvalidRange: If the header is malformed, multi-range or out of bounds
    """
    if header is None:
        return None

    match = RANGE_PATTERN.match(header)
    if not match:
        raise InvalidRange(f"Unsupported Range header: {header!r}", size=size)

    first, last = match.groups()
    if first == "" and last == "":
        raise InvalidRange(f"Empty byte range: {header!r}", size=size)

    if first == "":
        suffix = int(last)
        if suffix == 0:
            raise InvalidRange("Zero-length suffix range", size=size)
        return ByteRange(max(0, size - suffix), size - 1).validate(size)

    start = int(first)
    end = int(last) if last != "" else size - 1
    return ByteRange(start, end).validate(size)
