"""
Human-readable quantity formatting and parsing.
"""
import pytest

from gguf_parser.units import (
    format_bpw,
    format_bytes,
    format_parameters,
    format_size,
    parse_bytes,
    parse_size,
)


class TestFormatting:
    @pytest.mark.parametrize(
        "n, expected",
        [(0, "0 B"), (512, "512 B"), (1024, "1 KiB"), (1536, "1.50 KiB"), (536870912, "512 MiB")],
    )
    def test_bytes(self, n: int, expected: str) -> None:
        assert format_bytes(n) == expected

    def test_parameters(self) -> None:
        assert format_parameters(6738415616) == "6.7 B"
        assert format_parameters(125_000_000) == "125.0 M"
        assert format_parameters(999) == "999"

    def test_bpw(self) -> None:
        assert format_bpw(4.5312) == "4.53 bpw"

    def test_size(self) -> None:
        assert format_size(0) == "0"
        assert format_size(32 * 1024) == "32K"
        assert format_size(3 * 1024 * 1024 // 2) == "1.50M"
        assert format_size(100) == "100"


class TestParsing:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("1024", 1024),
            ("512 MiB", 512 * 1024 * 1024),
            ("1.5GB", 1_500_000_000),
            ("10kb", 10_000),
            ("2 KiB", 2048),
        ],
    )
    def test_bytes(self, text: str, expected: int) -> None:
        assert parse_bytes(text) == expected

    @pytest.mark.parametrize("text", ["", "abc", "10 XB", "-5 MB"])
    def test_bad_bytes(self, text: str) -> None:
        with pytest.raises(ValueError):
            parse_bytes(text)

    @pytest.mark.parametrize(
        "text, expected",
        [("32K", 32 * 1024), ("32KiB", 32 * 1024), ("1.5M", 3 * 1024 * 1024 // 2), ("4096", 4096)],
    )
    def test_size(self, text: str, expected: int) -> None:
        assert parse_size(text) == expected

    def test_bad_size(self) -> None:
        with pytest.raises(ValueError):
            parse_size("12Q")
