"""Tests for magnet link parsing."""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from magnet import (
    MagnetError,
    MagnetLink,
    bencode_decode,
    bencode_encode,
    is_magnet_link,
    is_valid_info_hash,
    normalize_info_hash,
)

HASH = "dd8255ecdc7ca55fb0bbf81323d87062db1f6d1c"


class TestMagnetLinkParsing:
    """Tests for MagnetLink.parse()."""

    def test_parse_simple_magnet(self) -> None:
        """Test parsing a simple magnet link with just info hash."""
        uri = f"magnet:?xt=urn:btih:{HASH}"
        magnet = MagnetLink.parse(uri)

        assert magnet.info_hash_hex == HASH
        assert len(magnet.info_hash) == 20
        assert magnet.display_name is None
        assert magnet.trackers == []
        assert magnet.uri == uri

    def test_parse_magnet_with_display_name(self) -> None:
        """Test parsing magnet with display name."""
        magnet = MagnetLink.parse(f"magnet:?xt=urn:btih:{HASH}&dn=Big+Buck+Bunny")

        assert magnet.info_hash_hex == HASH
        assert magnet.display_name == "Big Buck Bunny"

    def test_parse_magnet_with_trackers(self) -> None:
        """Test parsing magnet with tracker URLs."""
        uri = (
            f"magnet:?xt=urn:btih:{HASH}"
            "&tr=udp://tracker1.example.com:6969"
            "&tr=udp://tracker2.example.com:6969"
        )
        magnet = MagnetLink.parse(uri)

        assert len(magnet.trackers) == 2
        assert "udp://tracker1.example.com:6969" in magnet.trackers
        assert "udp://tracker2.example.com:6969" in magnet.trackers

    def test_duplicate_trackers_are_collapsed(self) -> None:
        """Test that repeated tracker URLs appear once, in order."""
        uri = f"magnet:?xt=urn:btih:{HASH}&tr=http://a/announce&tr=http://b/announce&tr=http://a/announce"
        magnet = MagnetLink.parse(uri)

        assert magnet.trackers == ["http://a/announce", "http://b/announce"]

    def test_parse_magnet_with_all_fields(self) -> None:
        """Test parsing magnet with all common fields."""
        uri = (
            f"magnet:?xt=urn:btih:{HASH}"
            "&dn=Big+Buck+Bunny+1080p"
            "&xl=4000000000"
            "&tr=udp://tracker.example.com:6969"
        )
        magnet = MagnetLink.parse(uri)

        assert magnet.info_hash_hex == HASH
        assert magnet.display_name == "Big Buck Bunny 1080p"
        assert magnet.exact_length == 4000000000
        assert len(magnet.trackers) == 1

    def test_uppercase_hash_is_normalized(self) -> None:
        """Test that the info hash is lowercased."""
        magnet = MagnetLink.parse(f"magnet:?xt=urn:btih:{HASH.upper()}")

        assert magnet.info_hash_hex == HASH

    def test_base32_info_hash_is_rejected(self) -> None:
        """Test that only hex info hashes are accepted."""
        with pytest.raises(MagnetError, match="40 hex characters"):
            MagnetLink.parse("magnet:?xt=urn:btih:3WBIF3K4R4FVPHMZEYYWZQZQ4KNBPXB4")

    def test_parse_invalid_uri_format(self) -> None:
        """Test that invalid URI format raises error."""
        with pytest.raises(MagnetError, match="must start with"):
            MagnetLink.parse("http://example.com/file.torrent")

    def test_parse_missing_info_hash(self) -> None:
        """Test that missing info hash raises error."""
        with pytest.raises(MagnetError, match="missing info hash"):
            MagnetLink.parse("magnet:?dn=SomeTorrent")

    def test_parse_invalid_hex_hash(self) -> None:
        """Test that invalid hex info hash raises error."""
        with pytest.raises(MagnetError, match="40 hex characters"):
            MagnetLink.parse("magnet:?xt=urn:btih:zzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzz")

    def test_parse_invalid_hash_length(self) -> None:
        """Test that invalid hash length raises error."""
        with pytest.raises(MagnetError, match="40 hex characters"):
            MagnetLink.parse("magnet:?xt=urn:btih:abc123")


class TestInfoHashValidation:
    """Tests for is_valid_info_hash() and normalize_info_hash()."""

    def test_valid_hash(self) -> None:
        assert is_valid_info_hash(HASH) is True
        assert is_valid_info_hash(HASH.upper()) is True

    @pytest.mark.parametrize(
        "value",
        ["", "abc", HASH + "0", HASH[:-1] + "g", "../" + HASH[3:], HASH[:20] + "/" + HASH[21:]],
    )
    def test_invalid_hash(self, value: str) -> None:
        assert is_valid_info_hash(value) is False
        with pytest.raises(MagnetError):
            normalize_info_hash(value)

    def test_normalize_lowercases(self) -> None:
        assert normalize_info_hash(HASH.upper()) == HASH


class TestMagnetLinkToUri:
    """Tests for MagnetLink.to_uri()."""

    def test_to_uri_simple(self) -> None:
        """Test converting back to URI."""
        magnet = MagnetLink.parse(f"magnet:?xt=urn:btih:{HASH}")
        result = magnet.to_uri()

        assert f"xt=urn:btih:{HASH}" in result
        assert result.startswith("magnet:?")

    def test_to_uri_with_name(self) -> None:
        """Test converting with display name."""
        magnet = MagnetLink.parse(f"magnet:?xt=urn:btih:{HASH}&dn=Test")

        assert "dn=Test" in magnet.to_uri()


class TestIsMagnetLink:
    """Tests for is_magnet_link()."""

    def test_valid_magnet(self) -> None:
        """Test that valid magnet links are detected."""
        assert is_magnet_link("magnet:?xt=urn:btih:abc123") is True

    def test_torrent_file(self) -> None:
        """Test that torrent files are not magnet links."""
        assert is_magnet_link("/path/to/file.torrent") is False
        assert is_magnet_link("file.torrent") is False

    def test_http_url(self) -> None:
        """Test that HTTP URLs are not magnet links."""
        assert is_magnet_link("http://example.com/file.torrent") is False


class TestBencode:
    """Tests for bencode encode/decode functions."""

    def test_encode_dict_sorts_keys(self) -> None:
        """Test that dictionary keys are written in sorted order."""
        assert bencode_encode({"b": 1, "a": b"x"}) == b"d1:a1:x1:bi1ee"

    def test_decode_nested(self) -> None:
        """Test decoding nested structures."""
        decoded, end = bencode_decode(b"d4:dictd6:nested5:valuee4:listli1ei2ei3eee")

        assert decoded["list"] == [1, 2, 3]
        assert decoded["dict"]["nested"] == b"value"
        assert end == len(b"d4:dictd6:nested5:valuee4:listli1ei2ei3eee")

    def test_decode_reports_end_offset(self) -> None:
        """Test that trailing data is left for the caller."""
        decoded, end = bencode_decode(b"i42etrailing")

        assert decoded == 42
        assert end == 4

    @pytest.mark.parametrize("data", [b"", b"i42", b"l1:a", b"5:abc", b"x"])
    def test_decode_malformed(self, data: bytes) -> None:
        """Test that malformed input raises ValueError."""
        with pytest.raises(ValueError):
            bencode_decode(data)
