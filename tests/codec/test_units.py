"""Tests for byte-unit and resource-quantity parsing."""

import pytest

from berth.codec.units import (
    format_bytes,
    parse_bytes,
    parse_cpu_quantity,
    parse_io_pair,
    parse_memory_quantity,
    parse_percent,
)


class TestParseBytes:
    def test_binary_unit(self):
        assert parse_bytes("2.133MiB") == pytest.approx(2.133 * 1024 ** 2)

    def test_decimal_units(self):
        assert parse_bytes("1.5kB") == 1500.0
        assert parse_bytes("2GB") == 2_000_000_000.0
        assert parse_bytes("12B") == 12.0

    def test_suffix_is_case_insensitive(self):
        assert parse_bytes("1kib") == 1024.0
        assert parse_bytes("1KIB") == 1024.0
        assert parse_bytes("1Kb") == 1000.0

    def test_longest_suffix_wins(self):
        # "MiB" must not be read as "<number>Mi" + "B"
        assert parse_bytes("1MiB") == 1024.0 ** 2

    def test_bare_number(self):
        assert parse_bytes("512") == 512.0

    def test_space_between_number_and_unit(self):
        assert parse_bytes("3 MB") == 3_000_000.0

    @pytest.mark.parametrize("blank", ["", "  ", "--", "N/A"])
    def test_blank_is_zero(self, blank):
        assert parse_bytes(blank) == 0.0

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_bytes("lots")


class TestFormatBytes:
    def test_binary(self):
        assert format_bytes(2236279) == "2.133MiB"
        assert format_bytes(1024) == "1KiB"

    def test_decimal(self):
        assert format_bytes(1500, binary=False) == "1.5kB"

    def test_below_one_unit(self):
        assert format_bytes(512) == "512B"
        assert format_bytes(0) == "0B"

    def test_largest_unit(self):
        assert format_bytes(3 * 1024 ** 4) == "3TiB"


class TestPercentAndPairs:
    def test_percent_is_fraction(self):
        assert parse_percent("12.5%") == pytest.approx(0.125)
        assert parse_percent("0.00%") == 0.0

    def test_percent_blank(self):
        assert parse_percent("--") == 0.0

    def test_io_pair(self):
        assert parse_io_pair("1.5MB / 2kB") == (1_500_000.0, 2000.0)

    def test_io_pair_mem_usage(self):
        used, limit = parse_io_pair("2.133MiB / 256MiB")
        assert used == pytest.approx(2.133 * 1024 ** 2)
        assert limit == 256 * 1024 ** 2

    def test_io_pair_missing_side(self):
        assert parse_io_pair("1kB") == (1000.0, 0.0)


class TestQuantities:
    @pytest.mark.parametrize(
        "text, cores",
        [("2", 2.0), ("250m", 0.25), ("1500000n", 0.0015), ("500u", 0.0005), ("0.5", 0.5)],
    )
    def test_cpu(self, text, cores):
        assert parse_cpu_quantity(text) == pytest.approx(cores)

    def test_cpu_unknown_unit(self):
        with pytest.raises(ValueError, match="Unknown CPU unit"):
            parse_cpu_quantity("3x")

    @pytest.mark.parametrize(
        "text, size",
        [("64Mi", 64 * 1024 ** 2), ("1G", 1e9), ("1048576", 1048576.0), ("2Ki", 2048.0), ("1k", 1000.0)],
    )
    def test_memory(self, text, size):
        assert parse_memory_quantity(text) == pytest.approx(size)

    def test_memory_unknown_unit(self):
        with pytest.raises(ValueError):
            parse_memory_quantity("5Zi")

    def test_blank_quantities(self):
        assert parse_cpu_quantity("") == 0.0
        assert parse_memory_quantity("") == 0.0
