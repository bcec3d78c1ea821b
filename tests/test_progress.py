"""Tests for progress parsing and formatting."""

import pytest

from device_repair.storage.progress import (
    ProgressUpdate,
    format_eta,
    human_size,
    parse_progress_line,
)


class TestFormatting:
    @pytest.mark.parametrize(
        "seconds, expected",
        [(None, None), (-1, None), (0, "00:00"), (59, "00:59"), (61, "01:01"), (3725, "1:02:05")],
    )
    def test_format_eta(self, seconds, expected):
        assert format_eta(seconds) == expected

    @pytest.mark.parametrize(
        "size, expected",
        [(None, "0B"), (512, "512.0B"), (1536, "1.5KB"), (128 * 1024 ** 2, "128.0MB")],
    )
    def test_human_size(self, size, expected):
        assert human_size(size) == expected


class TestParseProgressLine:
    def test_dd_status_line(self):
        sample = parse_progress_line(
            "134217728 bytes (134 MB, 128 MiB) copied, 2 s, 64.0 MiB/s"
        )

        assert sample.bytes_copied == 134217728
        assert sample.rate == 64 * 1024 * 1024
        assert sample.percent is None
        assert not sample.is_empty

    @pytest.mark.parametrize(
        "rate, expected",
        [
            ("215 MB/s", 215_000_000),
            ("1.5 GB/s", 1_500_000_000),
            ("980 kB/s", 980_000),
        ],
    )
    def test_gnu_dd_si_rates(self, rate, expected):
        sample = parse_progress_line(
            f"2147483648 bytes (2.1 GB, 2.0 GiB) copied, 10 s, {rate}"
        )

        assert sample.rate == expected

    def test_percent_only(self):
        sample = parse_progress_line("Sanitize 42.5% complete")

        assert sample.percent == 42.5
        assert sample.bytes_copied is None

    def test_unrelated_line(self):
        assert parse_progress_line("dd: warning: partial read").is_empty


class TestProgressUpdate:
    def test_ratio_prefers_byte_counts(self):
        update = ProgressUpdate("IMAGE", 256, 1024, percent=90.0, rate=None, eta=None)

        assert update.ratio == 0.25

    def test_ratio_is_clamped(self):
        update = ProgressUpdate("IMAGE", 2048, 1024, percent=None, rate=None, eta=None)

        assert update.ratio == 1.0

    def test_message(self):
        update = ProgressUpdate(
            "IMAGE /dev/sda4",
            512 * 1024 ** 2,
            1024 ** 3,
            percent=None,
            rate=64 * 1024 ** 2,
            eta="00:08",
        )

        assert update.message == "IMAGE /dev/sda4 - wrote 512.0MB (50.0%) - 64.0MB/s ETA 00:08"

    def test_message_without_data(self):
        update = ProgressUpdate("IMAGE", None, None, None, None, None)

        assert update.message == "IMAGE - working..."
